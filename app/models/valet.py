# app/models/valet.py
"""Valet staff table with the round-robin counters used by ValetDispatcher."""

from sqlalchemy import Boolean, Column, Integer, String, Time
from app.database import Base


class ValetRecord(Base):
    __tablename__ = "valets"

    id = Column(String(36), primary_key=True)
    name = Column(String(200), nullable=False)
    phone = Column(String(15), nullable=False)
    employee_id = Column(String(100), unique=True)
    status = Column(String(20), nullable=False, default="FREE", index=True)
    assignment_sequence = Column(Integer, nullable=False, default=0)
    today_count = Column(Integer, nullable=False, default=0)
    total_count = Column(Integer, nullable=False, default=0)
    shift_start = Column(Time)
    shift_end = Column(Time)
    is_active = Column(Boolean, nullable=False, default=True)
    version = Column(Integer, nullable=False, default=1)

    def __repr__(self):
        return f"<ValetRecord {self.name} status={self.status} today={self.today_count}>"
