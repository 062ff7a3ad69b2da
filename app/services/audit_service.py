# app/services/audit_service.py
"""
Audit sinks for vehicle state changes.
SqlAuditSink keeps the trail in `state_transitions`; LoggingAuditSink only
writes it to the log (memory backend, tests).
"""

from typing import Callable, List

from sqlalchemy.orm import Session

from app.database import SessionLocal
from app.domain.intents import AuditIntent
from app.models.state_transition import StateTransition
from app.repositories.base import AuditSink
from app.repositories.sql import audit_row
from app.utils.logger import get_logger

logger = get_logger(__name__)


def _describe(intent: AuditIntent) -> str:
    source = intent.from_state.value if intent.from_state else "∅"
    actor = intent.triggered_by.value
    if intent.triggered_by_id:
        actor = f"{actor}:{intent.triggered_by_id}"
    return f"vehicle={intent.vehicle_id} {source} → {intent.to_state.value} by {actor}"


class SqlAuditSink(AuditSink):
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def record(self, intent: AuditIntent) -> None:
        db = self.session_factory()
        try:
            db.add(audit_row(intent))
            db.commit()
        finally:
            db.close()

    def history(self, vehicle_id: str) -> List[StateTransition]:
        db = self.session_factory()
        try:
            return (
                db.query(StateTransition)
                .filter(StateTransition.vehicle_id == vehicle_id)
                .order_by(StateTransition.created_at, StateTransition.id)
                .all()
            )
        finally:
            db.close()


class LoggingAuditSink(AuditSink):
    def record(self, intent: AuditIntent) -> None:
        logger.info(f"[AUDIT] {_describe(intent)}")
