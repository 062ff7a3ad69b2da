# app/services/valet_dispatcher.py
"""
Round-robin valet dispatch.

Fair, automatic assignment: every valet gets an equal share of tasks (±1-2).

Algorithm:
  1. Take all employed valets that are FREE and inside their shift window
  2. Nobody eligible → NoAvailableValetError with a status breakdown
  3. Sort by assignment_sequence, ties broken by today_count, then id
  4. Pick the first one
  5. Bump sequence / today / total counters and mark BUSY

Selection and the BUSY write happen under one lock so two dispatch requests
can never take the same FREE valet.
"""

import threading
from collections import Counter
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Dict, List, Optional

from app.domain.entities import Valet, new_id
from app.domain.exceptions import InvalidStateError, NoAvailableValetError, NotFoundError
from app.domain.states import TaskType, ValetStatus
from app.repositories.base import ValetStore
from app.utils.logger import get_logger

logger = get_logger(__name__)

# Spread between busiest and idlest valet still considered fair
BALANCE_THRESHOLD = 2


@dataclass(frozen=True)
class AssignmentStats:
    total_valets: int
    free_valets: int
    busy_valets: int
    on_break: int
    avg_count: float
    min_count: int
    max_count: int
    variance: int
    is_balanced: bool


class ValetDispatcher:
    def __init__(self, valet_store: ValetStore, clock: Callable[[], datetime] = datetime.now):
        self.valets = valet_store
        self.clock = clock
        self._lock = threading.Lock()

    # ── Assignment ───────────────────────────────────────────────────────────

    def assign(self, task_type: TaskType) -> Valet:
        with self._lock:
            return self._assign_locked(task_type)

    def _assign_locked(self, task_type: TaskType, exclude: Optional[str] = None) -> Valet:
        now = self.clock()
        active = self.valets.list_active()
        eligible = [v for v in active if v.can_be_assigned(now) and v.id != exclude]
        if not eligible:
            raise NoAvailableValetError(self._breakdown(active, now))

        eligible.sort(key=lambda v: (v.assignment_sequence, v.today_count, v.id))
        selected = self.valets.update(eligible[0].assign_task())

        logger.info(
            f"[VALET ASSIGNMENT] Type: {task_type.value}, "
            f"Assigned: {selected.name} (ID: {selected.id}), "
            f"Sequence: {selected.assignment_sequence}, "
            f"Today Count: {selected.today_count}, "
            f"Available Valets: {len(eligible)}"
        )
        return selected

    def complete(self, valet_id: str) -> Valet:
        """Finish the valet's task. Raises InvalidStateError unless BUSY."""
        with self._lock:
            valet = self.valets.update(self._get(valet_id).complete_task())
        logger.info(f"[VALET] {valet.name} completed task, now FREE")
        return valet

    def withdraw(self, valet_id: str) -> Valet:
        """Undo one assignment of this valet (counters floored at 0)."""
        with self._lock:
            valet = self.valets.update(self._get(valet_id).withdraw_task())
        logger.info(f"[VALET] Assignment withdrawn from {valet.name} (today={valet.today_count})")
        return valet

    def reassign(self, valet_id: str, task_type: TaskType) -> Valet:
        """Move a task away from `valet_id` to the next fair pick.

        The abandoned valet's today_count and assignment_sequence go down by one
        (floored at 0). A BUSY valet is released to FREE since it no longer
        holds the task; BREAK and OFF_DUTY are left alone. The abandoned valet is
        never the new pick.
        """
        with self._lock:
            new_valet = self._assign_locked(task_type, exclude=valet_id)
            current = self.valets.get(valet_id)
            if current:
                status = ValetStatus.FREE if current.status == ValetStatus.BUSY else current.status
                self.valets.update(replace(
                    current,
                    status=status,
                    today_count=max(0, current.today_count - 1),
                    assignment_sequence=max(0, current.assignment_sequence - 1),
                    version=current.version + 1,
                ))

        logger.warning(
            f"[VALET] {task_type.value} task reassigned from {valet_id} to {new_valet.name}"
        )
        return new_valet

    def restore(self, snapshot: Valet) -> Valet:
        """Write an earlier snapshot's status and counters back over the stored valet."""
        with self._lock:
            current = self._get(snapshot.id)
            valet = self.valets.update(replace(snapshot, version=current.version + 1))
        logger.info(
            f"[VALET] {valet.name} restored to {valet.status.value} (today={valet.today_count})"
        )
        return valet

    def reset_daily_counters(self) -> int:
        """Zero assignment_sequence and today_count for every valet. Idempotent."""
        with self._lock:
            valets = self.valets.list_all()
            for valet in valets:
                if valet.assignment_sequence or valet.today_count:
                    self.valets.update(valet.reset_daily_counters())
        logger.info(f"Daily counters reset for {len(valets)} valets")
        return len(valets)

    # ── Duty status ──────────────────────────────────────────────────────────

    def set_status(self, valet_id: str, status: ValetStatus) -> Valet:
        """Operator-driven status change. BUSY is only reachable through assign()."""
        with self._lock:
            valet = self._get(valet_id)
            if valet.status == status:
                return valet
            if status == ValetStatus.BREAK:
                updated = valet.take_break()
            elif status == ValetStatus.OFF_DUTY:
                updated = valet.go_off_duty()
            elif status == ValetStatus.FREE and valet.status == ValetStatus.BREAK:
                updated = valet.return_from_break()
            elif status == ValetStatus.FREE and valet.status == ValetStatus.OFF_DUTY:
                updated = valet.start_duty()
            else:
                raise InvalidStateError(
                    f"Cannot change valet status from {valet.status.value} to {status.value}",
                    valet_id=valet_id,
                )
            updated = self.valets.update(updated)
        logger.info(f"[VALET] {updated.name}: {valet.status.value} → {updated.status.value}")
        return updated

    def take_break(self, valet_id: str) -> Valet:
        return self.set_status(valet_id, ValetStatus.BREAK)

    def return_from_break(self, valet_id: str) -> Valet:
        return self.set_status(valet_id, ValetStatus.FREE)

    def go_off_duty(self, valet_id: str) -> Valet:
        return self.set_status(valet_id, ValetStatus.OFF_DUTY)

    def start_duty(self, valet_id: str) -> Valet:
        return self.set_status(valet_id, ValetStatus.FREE)

    # ── Onboarding / queries ─────────────────────────────────────────────────

    def create_valet(self, name: str, phone: str, employee_id: Optional[str] = None,
                     shift_start=None, shift_end=None) -> Valet:
        valet = Valet(id=new_id(), name=name, phone=phone, employee_id=employee_id,
                      shift_start=shift_start, shift_end=shift_end)
        logger.info(f"[VALET] Onboarded {name} ({employee_id or 'no employee id'})")
        return self.valets.add(valet)

    def get(self, valet_id: str) -> Valet:
        return self._get(valet_id)

    def list_valets(self, status: Optional[ValetStatus] = None) -> List[Valet]:
        return self.valets.list_all(status)

    def assignment_stats(self) -> AssignmentStats:
        active = self.valets.list_active()
        counts = [v.today_count for v in active]
        statuses = Counter(v.status for v in active)
        min_count = min(counts) if counts else 0
        max_count = max(counts) if counts else 0
        variance = max_count - min_count
        return AssignmentStats(
            total_valets=len(active),
            free_valets=statuses[ValetStatus.FREE],
            busy_valets=statuses[ValetStatus.BUSY],
            on_break=statuses[ValetStatus.BREAK],
            avg_count=round(sum(counts) / len(counts), 1) if counts else 0.0,
            min_count=min_count,
            max_count=max_count,
            variance=variance,
            is_balanced=variance <= BALANCE_THRESHOLD,
        )

    def _breakdown(self, valets: List[Valet], now: datetime) -> Dict[str, int]:
        breakdown = {status.value: 0 for status in ValetStatus}
        for valet in valets:
            breakdown[valet.status.value] += 1
        breakdown["out_of_shift"] = sum(1 for v in valets if not v.is_in_shift(now))
        return breakdown

    def _get(self, valet_id: str) -> Valet:
        valet = self.valets.get(valet_id)
        if not valet:
            raise NotFoundError("Valet", valet_id)
        return valet
