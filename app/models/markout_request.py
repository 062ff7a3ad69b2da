# app/models/markout_request.py
"""Mark-out requests: the customer's "bring my car in N minutes"."""

from sqlalchemy import Column, DateTime, Integer, String
from app.database import Base


class MarkOutRequestRecord(Base):
    __tablename__ = "markout_requests"

    id = Column(String(36), primary_key=True)
    vehicle_id = Column(String(36), nullable=False, index=True)
    selected_minutes = Column(Integer, nullable=False)
    requested_at = Column(DateTime, nullable=False)
    retrieve_at = Column(DateTime, nullable=False)
    source = Column(String(20), nullable=False)        # WHATSAPP | OPERATOR | DEFAULT
    status = Column(String(20), nullable=False, index=True)  # PENDING | COMPLETED | CANCELLED
    version = Column(Integer, nullable=False, default=1)

    def __repr__(self):
        return f"<MarkOutRequestRecord {self.id} vehicle={self.vehicle_id} status={self.status}>"
