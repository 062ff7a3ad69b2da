# app/models/parking_zone.py
"""
Parking zones table. `occupied_slots` holds the taken slot labels as a
comma-separated list ("1,2,5").
"""

from sqlalchemy import Boolean, Column, Integer, String, Text
from app.database import Base


class ParkingZoneRecord(Base):
    __tablename__ = "parking_zones"

    id = Column(String(36), primary_key=True)
    zone_code = Column(String(20), unique=True, nullable=False)
    zone_name = Column(String(100))
    zone_description = Column(Text)
    total_slots = Column(Integer, nullable=False)
    available_slots = Column(Integer, nullable=False)
    occupied_slots = Column(Text, nullable=False, default="")
    priority = Column(Integer, nullable=False, default=999)
    is_active = Column(Boolean, nullable=False, default=True)
    version = Column(Integer, nullable=False, default=1)

    def __repr__(self):
        return f"<ParkingZoneRecord {self.zone_code} {self.available_slots}/{self.total_slots}>"
