# app/models/state_transition.py
"""Audit trail, one row per vehicle state change, written by SqlAuditSink."""

from sqlalchemy import Column, DateTime, Integer, JSON, String
from app.database import Base


class StateTransition(Base):
    __tablename__ = "state_transitions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    vehicle_id = Column(String(36), nullable=False, index=True)
    from_state = Column(String(30))          # NULL for the entry row
    to_state = Column(String(30), nullable=False)
    triggered_by = Column(String(20), nullable=False)
    triggered_by_id = Column(String(36))
    transition_metadata = Column("metadata", JSON)
    created_at = Column(DateTime, nullable=False, index=True)

    def __repr__(self):
        return f"<StateTransition {self.vehicle_id} {self.from_state}→{self.to_state}>"
