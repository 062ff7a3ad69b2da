# app/services/side_effects.py
"""
Best-effort delivery of the intents a vehicle transition returns.

The transition is already committed when this runs, so a failed WhatsApp
message or audit write is logged and reported back, never raised.
"""

from typing import List, Optional

from app.domain.intents import AuditIntent, Intent, NotificationIntent, TransitionResult
from app.repositories.base import AuditSink, NotificationSink
from app.utils.logger import get_logger

logger = get_logger(__name__)


def execute_intents(result: TransitionResult, notifier: Optional[NotificationSink],
                    auditor: Optional[AuditSink]) -> List[Intent]:
    """Deliver every intent in order. Returns the ones that failed."""
    failed: List[Intent] = []
    for intent in result.intents:
        try:
            if isinstance(intent, NotificationIntent):
                if notifier is not None:
                    notifier.send(intent)
            elif isinstance(intent, AuditIntent):
                if auditor is not None:
                    auditor.record(intent)
        except Exception as e:
            logger.error(
                f"[SIDE EFFECT] {type(intent).__name__} failed for vehicle "
                f"{result.vehicle.token}: {e}",
                exc_info=True,
            )
            failed.append(intent)
    return failed
