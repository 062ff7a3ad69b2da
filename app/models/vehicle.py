# app/models/vehicle.py
"""
Valet vehicles table, one row per visit, from curb drop-off to close.
`version` backs the compare-and-swap writes in SqlVehicleStore.
"""

from sqlalchemy import Column, Integer, String, DateTime, Index
from app.database import Base


class VehicleRecord(Base):
    __tablename__ = "vehicles"

    id = Column(String(36), primary_key=True)
    token = Column(String(32), unique=True, nullable=False, index=True)
    plate_number = Column(String(20), nullable=False, index=True)
    customer_phone = Column(String(15), nullable=False, index=True)
    customer_type = Column(String(50))
    zone = Column(String(20), nullable=False)
    zone_id = Column(String(36), nullable=False)
    slot = Column(String(10), nullable=False)
    state = Column(String(30), nullable=False, index=True)

    entry_operator_id = Column(String(36))
    parking_valet_id = Column(String(36))
    retrieval_valet_id = Column(String(36))

    arrived_at = Column(DateTime, nullable=False, index=True)
    parked_at = Column(DateTime)
    markout_requested_at = Column(DateTime)
    scheduled_at = Column(DateTime)
    retrieval_started_at = Column(DateTime)
    delivered_at = Column(DateTime)
    closed_at = Column(DateTime)

    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("ix_vehicles_plate_state", "plate_number", "state"),
    )

    def __repr__(self):
        return f"<VehicleRecord {self.token} plate={self.plate_number} state={self.state}>"
