"""
Immutable snapshots of the valet domain: Vehicle, Valet, ParkingZone, MarkOutRequest.

Entities never mutate in place. Each business step is a pure function that
returns a new snapshot with `version` bumped by one; the store persists it with
a compare-and-swap on that version.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, time, timedelta
from typing import FrozenSet, Optional

from app.domain.exceptions import InvalidStateError, OverReleaseError, NoCapacityError
from app.domain.states import (
    MarkOutSource,
    MarkOutStatus,
    ValetStatus,
    VehicleState,
    assert_vehicle_transition,
    is_active,
)


def new_id() -> str:
    return str(uuid.uuid4())


def _minutes_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[int]:
    if not start or not end:
        return None
    return int((end - start).total_seconds() // 60)


# ── Vehicle ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Vehicle:
    id: str
    token: str
    plate_number: str          # normalized
    customer_phone: str        # normalized, 10 digits
    zone: str                  # zone code
    zone_id: str
    slot: str
    state: VehicleState
    arrived_at: datetime
    customer_type: Optional[str] = None
    entry_operator_id: Optional[str] = None
    parking_valet_id: Optional[str] = None
    retrieval_valet_id: Optional[str] = None
    parked_at: Optional[datetime] = None
    markout_requested_at: Optional[datetime] = None
    scheduled_at: Optional[datetime] = None
    retrieval_started_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    version: int = 1

    @property
    def is_active(self) -> bool:
        return is_active(self.state)

    def transition(self, target: VehicleState, **changes) -> "Vehicle":
        """Return a copy in `target` state. Raises InvalidTransitionError if not allowed."""
        assert_vehicle_transition(self.state, target)
        return replace(self, state=target, version=self.version + 1, **changes)

    # Derived read-only queries
    def total_duration(self) -> Optional[int]:
        """Minutes from parked to delivered."""
        return _minutes_between(self.parked_at, self.delivered_at)

    def retrieval_duration(self) -> Optional[int]:
        """Minutes from retrieval start to delivery."""
        return _minutes_between(self.retrieval_started_at, self.delivered_at)

    def is_retrieval_time_reached(self, now: datetime) -> bool:
        return self.scheduled_at is not None and now >= self.scheduled_at

    def is_overdue_for_retrieval(self, now: datetime, threshold_minutes: int) -> bool:
        """Still SCHEDULED more than `threshold_minutes` past `scheduled_at`."""
        if self.state != VehicleState.SCHEDULED or not self.scheduled_at:
            return False
        return now - self.scheduled_at > timedelta(minutes=threshold_minutes)


# ── Valet ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Valet:
    id: str
    name: str
    phone: str
    status: ValetStatus = ValetStatus.FREE
    assignment_sequence: int = 0
    today_count: int = 0
    total_count: int = 0
    employee_id: Optional[str] = None
    shift_start: Optional[time] = None
    shift_end: Optional[time] = None
    is_active: bool = True
    version: int = 1

    def is_in_shift(self, now: datetime) -> bool:
        """No shift window means always in shift. Overnight windows wrap past midnight."""
        if self.shift_start is None or self.shift_end is None:
            return True
        current = now.time().replace(second=0, microsecond=0)
        if self.shift_end < self.shift_start:
            return current >= self.shift_start or current <= self.shift_end
        return self.shift_start <= current <= self.shift_end

    def can_be_assigned(self, now: datetime) -> bool:
        return self.is_active and self.status == ValetStatus.FREE and self.is_in_shift(now)

    def _with(self, **changes) -> "Valet":
        return replace(self, version=self.version + 1, **changes)

    def assign_task(self) -> "Valet":
        if self.status != ValetStatus.FREE:
            raise InvalidStateError(
                f"Valet {self.name} cannot be assigned. Status: {self.status.value}",
                valet_id=self.id, status=self.status.value,
            )
        return self._with(
            status=ValetStatus.BUSY,
            assignment_sequence=self.assignment_sequence + 1,
            today_count=self.today_count + 1,
            total_count=self.total_count + 1,
        )

    def complete_task(self) -> "Valet":
        if self.status != ValetStatus.BUSY:
            raise InvalidStateError(
                f"Cannot complete task. Valet status: {self.status.value}",
                valet_id=self.id, status=self.status.value,
            )
        return self._with(status=ValetStatus.FREE)

    def withdraw_task(self) -> "Valet":
        """Take back one assignment: counters down (floored at 0), valet FREE if it was BUSY."""
        status = ValetStatus.FREE if self.status == ValetStatus.BUSY else self.status
        return self._with(
            status=status,
            assignment_sequence=max(0, self.assignment_sequence - 1),
            today_count=max(0, self.today_count - 1),
            total_count=max(0, self.total_count - 1),
        )

    def take_break(self) -> "Valet":
        if self.status == ValetStatus.BUSY:
            raise InvalidStateError("Cannot take break while busy with a task", valet_id=self.id)
        return self._with(status=ValetStatus.BREAK)

    def return_from_break(self) -> "Valet":
        if self.status != ValetStatus.BREAK:
            raise InvalidStateError(
                f"Valet is not on break. Current status: {self.status.value}", valet_id=self.id
            )
        return self._with(status=ValetStatus.FREE)

    def go_off_duty(self) -> "Valet":
        if self.status == ValetStatus.BUSY:
            raise InvalidStateError("Cannot go off duty while busy with a task", valet_id=self.id)
        return self._with(status=ValetStatus.OFF_DUTY)

    def start_duty(self) -> "Valet":
        if self.status != ValetStatus.OFF_DUTY:
            raise InvalidStateError(
                f"Valet is not off duty. Current status: {self.status.value}", valet_id=self.id
            )
        return self._with(status=ValetStatus.FREE)

    def reset_daily_counters(self) -> "Valet":
        return self._with(assignment_sequence=0, today_count=0)

    def is_overworked(self, average_count: float, threshold: int = 2) -> bool:
        return self.today_count > average_count + threshold


# ── ParkingZone ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ParkingZone:
    id: str
    zone_code: str
    total_slots: int
    available_slots: int
    is_active: bool = True
    priority: int = 999        # lower = preferred
    zone_name: Optional[str] = None
    zone_description: Optional[str] = None
    occupied_slots: FrozenSet[str] = field(default_factory=frozenset)
    version: int = 1

    def __post_init__(self):
        if not 0 <= self.available_slots <= self.total_slots:
            raise ValueError(
                f"Zone {self.zone_code}: available_slots {self.available_slots} "
                f"outside [0, {self.total_slots}]"
            )

    def has_availability(self) -> bool:
        return self.is_active and self.available_slots > 0

    @property
    def occupancy_rate(self) -> float:
        if not self.total_slots:
            return 0.0
        return round((self.total_slots - self.available_slots) / self.total_slots * 100, 1)

    def next_slot_label(self) -> str:
        """Lowest numeric label in 1..total_slots not currently occupied."""
        for number in range(1, self.total_slots + 1):
            label = str(number)
            if label not in self.occupied_slots:
                return label
        raise NoCapacityError(f"Zone {self.zone_code} has no free slot label")

    def occupy_slot(self, label: Optional[str] = None) -> "ParkingZone":
        if self.available_slots <= 0:
            raise NoCapacityError(f"No slots available in zone {self.zone_code}")
        label = label or self.next_slot_label()
        if label in self.occupied_slots:
            raise InvalidStateError(f"Slot {self.zone_code}-{label} is already occupied")
        return replace(
            self,
            available_slots=self.available_slots - 1,
            occupied_slots=self.occupied_slots | {label},
            version=self.version + 1,
        )

    def release_slot(self, label: Optional[str] = None) -> "ParkingZone":
        if self.available_slots >= self.total_slots:
            raise OverReleaseError(
                f"All slots already free in zone {self.zone_code}", zone_id=self.id
            )
        return replace(
            self,
            available_slots=self.available_slots + 1,
            occupied_slots=self.occupied_slots - {label} if label else self.occupied_slots,
            version=self.version + 1,
        )


# ── MarkOutRequest ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class MarkOutRequest:
    id: str
    vehicle_id: str
    selected_minutes: int
    requested_at: datetime
    retrieve_at: datetime
    source: MarkOutSource = MarkOutSource.OPERATOR
    status: MarkOutStatus = MarkOutStatus.PENDING
    version: int = 1

    @property
    def is_pending(self) -> bool:
        return self.status == MarkOutStatus.PENDING

    def _finish(self, status: MarkOutStatus) -> "MarkOutRequest":
        if not self.is_pending:
            raise InvalidStateError(
                f"Mark-out request is already {self.status.value}", markout_id=self.id
            )
        return replace(self, status=status, version=self.version + 1)

    def complete(self) -> "MarkOutRequest":
        return self._finish(MarkOutStatus.COMPLETED)

    def cancel(self) -> "MarkOutRequest":
        return self._finish(MarkOutStatus.CANCELLED)
