# app/services/markout_scheduler.py
"""
Mark-out timing: "call my car in N minutes".

Turns the customer's lead time into an absolute retrieval time, decides what
counts as overdue, and keeps the MarkOutRequest records (at most one PENDING
per vehicle). The lead-time policy lives here so it can change without
touching the vehicle state machine.
"""

from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional

from app.config import settings
from app.domain.entities import MarkOutRequest, Vehicle, new_id
from app.domain.exceptions import InvalidLeadTimeError
from app.domain.states import MarkOutSource, VehicleState
from app.repositories.base import MarkOutStore
from app.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_LEAD_MINUTES = frozenset({5, 7, 10})
DEFAULT_OVERDUE_MINUTES = 2


def compute_retrieve_at(now: datetime, selected_minutes: int) -> datetime:
    """Absolute time the car must be at the exit."""
    return now + timedelta(minutes=selected_minutes)


def is_overdue(scheduled_at: Optional[datetime], now: datetime,
               threshold_minutes: int = DEFAULT_OVERDUE_MINUTES) -> bool:
    """True once `now` is more than `threshold_minutes` past `scheduled_at`."""
    if scheduled_at is None:
        return False
    return now - scheduled_at > timedelta(minutes=threshold_minutes)


class MarkOutScheduler:
    def __init__(self, markout_store: MarkOutStore,
                 lead_minutes: Optional[Iterable[int]] = None,
                 overdue_threshold_minutes: Optional[int] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.requests = markout_store
        self.lead_minutes = frozenset(lead_minutes or settings.MARKOUT_LEAD_MINUTES or DEFAULT_LEAD_MINUTES)
        self.overdue_threshold_minutes = (
            overdue_threshold_minutes if overdue_threshold_minutes is not None
            else settings.OVERDUE_THRESHOLD_MINUTES
        )
        self.clock = clock

    def validate_lead_time(self, selected_minutes) -> int:
        # bool is an int subclass; True must not pass as 1 minute
        if isinstance(selected_minutes, bool) or selected_minutes not in self.lead_minutes:
            raise InvalidLeadTimeError(selected_minutes, self.lead_minutes)
        return int(selected_minutes)

    def options(self) -> List[int]:
        return sorted(self.lead_minutes)

    def compute_retrieve_at(self, now: datetime, selected_minutes: int) -> datetime:
        return compute_retrieve_at(now, self.validate_lead_time(selected_minutes))

    def is_overdue(self, scheduled_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
        return is_overdue(scheduled_at, now or self.clock(), self.overdue_threshold_minutes)

    # ── Request records ──────────────────────────────────────────────────────

    def open_request(self, vehicle_id: str, selected_minutes: int, now: datetime,
                     source: MarkOutSource = MarkOutSource.OPERATOR) -> MarkOutRequest:
        """Store a PENDING request. ConflictError if the vehicle already has one."""
        minutes = self.validate_lead_time(selected_minutes)
        request = MarkOutRequest(
            id=new_id(),
            vehicle_id=vehicle_id,
            selected_minutes=minutes,
            requested_at=now,
            retrieve_at=compute_retrieve_at(now, minutes),
            source=source,
        )
        request = self.requests.add(request)
        logger.info(
            f"[MARKOUT] Vehicle {vehicle_id}: {minutes} min via {source.value}, "
            f"retrieve at {request.retrieve_at:%H:%M:%S}"
        )
        return request

    def complete_pending(self, vehicle_id: str) -> Optional[MarkOutRequest]:
        pending = self.requests.find_pending(vehicle_id)
        if not pending:
            return None
        return self.requests.update(pending.complete())

    def cancel_pending(self, vehicle_id: str) -> Optional[MarkOutRequest]:
        pending = self.requests.find_pending(vehicle_id)
        if not pending:
            return None
        logger.info(f"[MARKOUT] Cancelled pending request {pending.id} for vehicle {vehicle_id}")
        return self.requests.update(pending.cancel())

    def history(self, vehicle_id: str) -> List[MarkOutRequest]:
        return self.requests.list_for_vehicle(vehicle_id)

    # ── Scans ────────────────────────────────────────────────────────────────

    def due_for_retrieval(self, vehicles: Iterable[Vehicle], now: Optional[datetime] = None) -> List[Vehicle]:
        """Scheduled vehicles whose retrieval time has arrived."""
        now = now or self.clock()
        return [
            v for v in vehicles
            if v.state in (VehicleState.SCHEDULED, VehicleState.RETRIEVAL_ASSIGNED)
            and v.is_retrieval_time_reached(now)
        ]

    def overdue(self, vehicles: Iterable[Vehicle], now: Optional[datetime] = None) -> List[Vehicle]:
        """SCHEDULED vehicles still waiting more than the threshold past their time."""
        now = now or self.clock()
        return [
            v for v in vehicles
            if v.is_overdue_for_retrieval(now, self.overdue_threshold_minutes)
        ]
