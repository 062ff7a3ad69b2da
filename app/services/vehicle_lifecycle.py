# app/services/vehicle_lifecycle.py
"""
Vehicle lifecycle: the valet flow from curb to curb.

  createEntry → PARKING → PARKED → (WAITING_MARKOUT) → SCHEDULED
    → RETRIEVAL_ASSIGNED → ON_THE_WAY → DELIVERED → CLOSED

Each operation is one atomic step: state check, calls into ZoneAllocator /
ValetDispatcher, then the vehicle write. Operations on the same vehicle are
serialized; different vehicles proceed in parallel. Every completed sub-step
registers a compensation, so a failure part-way unwinds what was already done
and the caller sees state exactly as before.

Operations return a TransitionResult: the new vehicle snapshot plus the
notification and audit intents for the caller to deliver best-effort.
"""

import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from app.config import settings
from app.domain.entities import Valet, Vehicle, new_id
from app.domain.exceptions import (
    DuplicateEntryError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    RetrievalTooEarlyError,
    TokenCollisionError,
    ValidationError,
)
from app.domain.intents import (
    Actor,
    AuditIntent,
    Intent,
    NotificationIntent,
    NotificationKind,
    TransitionResult,
)
from app.domain.states import (
    MARKOUT_SOURCE_STATES,
    RETRIEVAL_READY_STATES,
    MarkOutSource,
    TaskType,
    VehicleState,
    assert_vehicle_transition,
)
from app.repositories.base import VehicleStore
from app.services.markout_scheduler import MarkOutScheduler
from app.services.valet_dispatcher import ValetDispatcher
from app.services.zone_allocator import ZoneAllocator
from app.utils.logger import get_logger
from app.utils.token import generate_token
from app.utils.validators import mask_phone, normalize_phone, normalize_plate

logger = get_logger(__name__)

_SOURCE_ACTORS = {
    MarkOutSource.WHATSAPP: Actor.CUSTOMER,
    MarkOutSource.OPERATOR: Actor.OPERATOR,
    MarkOutSource.DEFAULT: Actor.SYSTEM,
}


class _Rollback:
    """Compensations for completed sub-steps, unwound in reverse order on failure."""

    def __init__(self, operation: str):
        self.operation = operation
        self._steps: List[Tuple[str, Callable[[], object]]] = []

    def push(self, description: str, undo: Callable[[], object]):
        self._steps.append((description, undo))

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None or not self._steps:
            return False
        logger.warning(f"[ROLLBACK] {self.operation} failed ({exc}); undoing {len(self._steps)} step(s)")
        for description, undo in reversed(self._steps):
            try:
                undo()
                logger.info(f"[ROLLBACK] {self.operation}: {description}")
            except Exception as e:
                logger.error(f"[ROLLBACK] {self.operation}: could not {description}: {e}", exc_info=True)
        return False


class _KeyedLocks:
    """One lock per key (vehicle id, plate), dropped when its last holder leaves."""

    def __init__(self):
        # key → [lock, holders waiting on or inside it]
        self._locks: Dict[str, list] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


class VehicleLifecycle:
    def __init__(self, vehicle_store: VehicleStore, zone_allocator: ZoneAllocator,
                 valet_dispatcher: ValetDispatcher, markout_scheduler: MarkOutScheduler,
                 clock: Callable[[], datetime] = datetime.now,
                 token_factory: Callable[[], str] = generate_token,
                 token_retry_attempts: Optional[int] = None):
        self.vehicles = vehicle_store
        self.zones = zone_allocator
        self.dispatcher = valet_dispatcher
        self.scheduler = markout_scheduler
        self.clock = clock
        self.token_factory = token_factory
        self.token_retry_attempts = token_retry_attempts or settings.TOKEN_RETRY_ATTEMPTS
        self._locks = _KeyedLocks()

    # ── Entry ────────────────────────────────────────────────────────────────

    def create_entry(self, plate: str, phone: str, customer_type: Optional[str] = None,
                     operator_id: Optional[str] = None) -> TransitionResult:
        """Walk-up arrival: reserve a slot, dispatch a parking valet, issue a token."""
        plate_number = normalize_plate(plate)
        customer_phone = normalize_phone(phone)

        with self._locks.hold(f"plate:{plate_number}"):
            existing = self.vehicles.find_active_by_plate(plate_number)
            if existing:
                raise DuplicateEntryError(
                    f"Vehicle {plate_number} is already parked. "
                    f"Token: {existing.token}, State: {existing.state.value}",
                    vehicle_id=existing.id, token=existing.token,
                )

            with _Rollback("create_entry") as rollback:
                slot = self.zones.reserve_slot()
                rollback.push(f"release slot {slot.zone_code}-{slot.slot_label}",
                              lambda: self.zones.release_slot(slot.zone_id, slot.slot_label))

                valet = self.dispatcher.assign(TaskType.PARKING)
                rollback.push(f"withdraw valet {valet.name}", lambda: self.dispatcher.withdraw(valet.id))

                vehicle = self._insert_vehicle(
                    plate_number=plate_number,
                    customer_phone=customer_phone,
                    zone=slot.zone_code,
                    zone_id=slot.zone_id,
                    slot=slot.slot_label,
                    customer_type=customer_type,
                    entry_operator_id=operator_id,
                    parking_valet_id=valet.id,
                )

        logger.info(
            f"[ENTRY] {vehicle.plate_number} token={vehicle.token} "
            f"at {vehicle.zone}-{vehicle.slot} valet={valet.name} phone={mask_phone(customer_phone)}"
        )
        return TransitionResult(vehicle, [
            NotificationIntent(customer_phone, NotificationKind.ENTRY_CONFIRMATION, {
                "token": vehicle.token,
                "vehicle_number": vehicle.plate_number,
                "zone": vehicle.zone,
                "slot": vehicle.slot,
            }),
            self._audit(None, vehicle, Actor.OPERATOR, operator_id,
                        zone=vehicle.zone, slot=vehicle.slot,
                        valet_id=valet.id, valet_name=valet.name),
        ])

    def _insert_vehicle(self, **fields) -> Vehicle:
        now = self.clock()
        for attempt in range(1, self.token_retry_attempts + 1):
            vehicle = Vehicle(
                id=new_id(),
                token=self.token_factory(),
                state=VehicleState.PARKING,
                arrived_at=now,
                **fields,
            )
            try:
                return self.vehicles.add(vehicle)
            except TokenCollisionError:
                logger.warning(
                    f"[ENTRY] Token collision on {vehicle.token} "
                    f"(attempt {attempt}/{self.token_retry_attempts})"
                )
                if attempt == self.token_retry_attempts:
                    raise

    # ── Parking ──────────────────────────────────────────────────────────────

    def mark_parked(self, vehicle_id: str) -> TransitionResult:
        with self._locks.hold(vehicle_id):
            vehicle = self._get(vehicle_id)
            assert_vehicle_transition(vehicle.state, VehicleState.PARKED)
            if not vehicle.parking_valet_id:
                raise InvalidStateError("No parking valet assigned to this vehicle", vehicle_id=vehicle_id)

            with _Rollback("mark_parked") as rollback:
                parked = self._write(vehicle, vehicle.transition(VehicleState.PARKED, parked_at=self.clock()), rollback)
                self.dispatcher.complete(vehicle.parking_valet_id)

        return TransitionResult(parked, [
            self._audit(vehicle.state, parked, Actor.VALET, vehicle.parking_valet_id),
        ])

    # ── Mark-out ─────────────────────────────────────────────────────────────

    def send_markout_options(self, vehicle_id: str) -> TransitionResult:
        """Offer the customer the lead-time choices; PARKED → WAITING_MARKOUT."""
        with self._locks.hold(vehicle_id):
            vehicle = self._get(vehicle_id)
            waiting = self.vehicles.update(vehicle.transition(VehicleState.WAITING_MARKOUT))

        return TransitionResult(waiting, [
            NotificationIntent(waiting.customer_phone, NotificationKind.MARKOUT_OPTIONS, {
                "token": waiting.token,
                "vehicle_number": waiting.plate_number,
                "options": self.scheduler.options(),
            }),
            self._audit(vehicle.state, waiting, Actor.SYSTEM, None),
        ])

    def request_mark_out(self, vehicle_id: str, selected_minutes: int,
                         source: MarkOutSource = MarkOutSource.OPERATOR,
                         actor_id: Optional[str] = None) -> TransitionResult:
        """Customer picked a lead time: PARKED/WAITING_MARKOUT → SCHEDULED."""
        with self._locks.hold(vehicle_id):
            vehicle = self._get(vehicle_id)
            if vehicle.state not in MARKOUT_SOURCE_STATES:
                raise InvalidTransitionError(
                    vehicle.state, VehicleState.SCHEDULED,
                    f"Cannot request mark-out. Current state: {vehicle.state.value}",
                )
            minutes = self.scheduler.validate_lead_time(selected_minutes)
            now = self.clock()
            scheduled = vehicle.transition(
                VehicleState.SCHEDULED,
                markout_requested_at=now,
                scheduled_at=self.scheduler.compute_retrieve_at(now, minutes),
            )

            with _Rollback("request_mark_out") as rollback:
                request = self.scheduler.open_request(vehicle.id, minutes, now, source)
                rollback.push("cancel mark-out request", lambda: self.scheduler.cancel_pending(vehicle.id))
                scheduled = self.vehicles.update(scheduled)

        return TransitionResult(scheduled, [
            self._audit(vehicle.state, scheduled, _SOURCE_ACTORS[source], actor_id,
                        selected_minutes=minutes, source=source.value, markout_id=request.id),
        ])

    # ── Retrieval ────────────────────────────────────────────────────────────

    def assign_retrieval_valet(self, vehicle_id: str) -> TransitionResult:
        """Dispatch a retrieval valet. Already-assigned vehicles are returned unchanged."""
        with self._locks.hold(vehicle_id):
            vehicle = self._get(vehicle_id)
            if vehicle.state == VehicleState.RETRIEVAL_ASSIGNED:
                return TransitionResult(vehicle, [])
            assert_vehicle_transition(vehicle.state, VehicleState.RETRIEVAL_ASSIGNED)

            with _Rollback("assign_retrieval_valet") as rollback:
                assigned, valet = self._assign_retrieval(vehicle, rollback)

        return TransitionResult(assigned, [
            self._audit(vehicle.state, assigned, Actor.SYSTEM, None,
                        valet_id=valet.id, valet_name=valet.name),
        ])

    def reassign_retrieval_valet(self, vehicle_id: str) -> TransitionResult:
        """Hand the retrieval to another valet when the assigned one became unavailable."""
        with self._locks.hold(vehicle_id):
            vehicle = self._get(vehicle_id)
            if vehicle.state != VehicleState.RETRIEVAL_ASSIGNED or not vehicle.retrieval_valet_id:
                raise InvalidStateError(
                    f"Cannot reassign retrieval. Current state: {vehicle.state.value}",
                    vehicle_id=vehicle_id,
                )
            previous_valet_id = vehicle.retrieval_valet_id
            previous = self._find_valet(previous_valet_id)

            with _Rollback("reassign_retrieval_valet") as rollback:
                valet = self.dispatcher.reassign(previous_valet_id, TaskType.RETRIEVAL)
                if previous:
                    rollback.push(f"restore valet {previous.name}", lambda: self.dispatcher.restore(previous))
                rollback.push(f"withdraw valet {valet.name}", lambda: self.dispatcher.withdraw(valet.id))
                updated = self.vehicles.update(
                    replace(vehicle, retrieval_valet_id=valet.id, version=vehicle.version + 1)
                )

        return TransitionResult(updated, [
            self._audit(vehicle.state, updated, Actor.SYSTEM, None,
                        previous_valet_id=previous_valet_id, valet_id=valet.id, valet_name=valet.name),
        ])

    def start_retrieval(self, vehicle_id: str, actor_id: Optional[str] = None) -> TransitionResult:
        """Valet taps START RETRIEVAL. Only allowed once scheduled_at has passed.

        A SCHEDULED vehicle without a retrieval valet gets one dispatched in the
        same step (SCHEDULED → RETRIEVAL_ASSIGNED → ON_THE_WAY).
        """
        with self._locks.hold(vehicle_id):
            vehicle = self._get(vehicle_id)
            if vehicle.state not in RETRIEVAL_READY_STATES:
                raise InvalidTransitionError(
                    vehicle.state, VehicleState.ON_THE_WAY,
                    f"Cannot start retrieval. Current state: {vehicle.state.value}",
                )
            now = self.clock()
            if not vehicle.is_retrieval_time_reached(now):
                raise RetrievalTooEarlyError(vehicle.scheduled_at)

            intents: List[Intent] = []
            with _Rollback("start_retrieval") as rollback:
                current = vehicle
                if current.state == VehicleState.SCHEDULED:
                    current, valet = self._assign_retrieval(current, rollback)
                    intents.append(self._audit(vehicle.state, current, Actor.SYSTEM, None,
                                               valet_id=valet.id, valet_name=valet.name))
                else:
                    valet = self._find_valet(current.retrieval_valet_id)

                on_the_way = self._write(
                    current, current.transition(VehicleState.ON_THE_WAY, retrieval_started_at=now), rollback
                )
                self.scheduler.complete_pending(vehicle.id)

        intents.append(self._audit(current.state, on_the_way, Actor.VALET,
                                   actor_id or on_the_way.retrieval_valet_id))
        intents.insert(0, NotificationIntent(on_the_way.customer_phone, NotificationKind.RETRIEVAL_STARTED, {
            "token": on_the_way.token,
            "vehicle_number": on_the_way.plate_number,
            "valet_name": valet.name if valet else None,
        }))
        return TransitionResult(on_the_way, intents)

    def mark_delivered(self, vehicle_id: str, operator_id: Optional[str] = None) -> TransitionResult:
        """Keys handed over: free the retrieval valet and give the slot back."""
        with self._locks.hold(vehicle_id):
            vehicle = self._get(vehicle_id)
            delivered = vehicle.transition(VehicleState.DELIVERED, delivered_at=self.clock())

            with _Rollback("mark_delivered") as rollback:
                delivered = self._write(vehicle, delivered, rollback)
                self.zones.release_slot(vehicle.zone_id, vehicle.slot)
                rollback.push(f"reclaim slot {vehicle.zone}-{vehicle.slot}",
                              lambda: self.zones.reclaim_slot(vehicle.zone_id, vehicle.slot))
                if vehicle.retrieval_valet_id:
                    self.dispatcher.complete(vehicle.retrieval_valet_id)

        return TransitionResult(delivered, [
            NotificationIntent(delivered.customer_phone, NotificationKind.DELIVERY_CONFIRMATION, {
                "token": delivered.token,
                "vehicle_number": delivered.plate_number,
                "total_minutes": delivered.total_duration(),
            }),
            self._audit(vehicle.state, delivered, Actor.OPERATOR, operator_id,
                        retrieval_minutes=delivered.retrieval_duration()),
        ])

    def close(self, vehicle_id: str, actor_id: Optional[str] = None) -> TransitionResult:
        with self._locks.hold(vehicle_id):
            vehicle = self._get(vehicle_id)
            closed = self.vehicles.update(vehicle.transition(VehicleState.CLOSED, closed_at=self.clock()))

        return TransitionResult(closed, [
            self._audit(vehicle.state, closed, Actor.CUSTOMER if actor_id is None else Actor.OPERATOR, actor_id),
        ])

    # ── Queries ──────────────────────────────────────────────────────────────

    def get_vehicle(self, vehicle_id: str) -> Vehicle:
        return self._get(vehicle_id)

    def find_vehicle(self, vehicle_id: Optional[str] = None, token: Optional[str] = None,
                     plate: Optional[str] = None, phone: Optional[str] = None) -> Vehicle:
        """Resolve a vehicle by id, token, plate (active) or phone (single active)."""
        if vehicle_id:
            return self._get(vehicle_id)
        if token:
            vehicle = self.vehicles.find_by_token(token.strip().upper())
            if not vehicle:
                raise NotFoundError("Vehicle with token", token)
            return vehicle
        if plate:
            vehicle = self.vehicles.find_active_by_plate(normalize_plate(plate))
            if not vehicle:
                raise NotFoundError("Active vehicle", plate)
            return vehicle
        if phone:
            matches = self.vehicles.find_active_by_phone(normalize_phone(phone))
            if not matches:
                raise NotFoundError("Active vehicle for phone", mask_phone(phone))
            if len(matches) > 1:
                raise ValidationError(
                    "Several active vehicles for this phone; use the token instead",
                    tokens=[v.token for v in matches],
                )
            return matches[0]
        raise ValidationError("Provide a vehicle id, token, plate or phone")

    def list_vehicles(self, state: Optional[VehicleState] = None,
                      limit: int = 100, offset: int = 0) -> List[Vehicle]:
        if state:
            return self.vehicles.list_by_state(state)[offset:offset + limit]
        return self.vehicles.list_all(limit=limit, offset=offset)

    def is_overdue_for_retrieval(self, vehicle: Vehicle, now: Optional[datetime] = None) -> bool:
        return vehicle.is_overdue_for_retrieval(now or self.clock(), self.scheduler.overdue_threshold_minutes)

    def overdue_vehicles(self, now: Optional[datetime] = None) -> List[Vehicle]:
        return self.scheduler.overdue(self.vehicles.list_by_state(VehicleState.SCHEDULED), now)

    # ── Internals ────────────────────────────────────────────────────────────

    def _assign_retrieval(self, vehicle: Vehicle, rollback: _Rollback) -> Tuple[Vehicle, Valet]:
        valet = self.dispatcher.assign(TaskType.RETRIEVAL)
        rollback.push(f"withdraw valet {valet.name}", lambda: self.dispatcher.withdraw(valet.id))
        assigned = self._write(
            vehicle,
            vehicle.transition(VehicleState.RETRIEVAL_ASSIGNED, retrieval_valet_id=valet.id),
            rollback,
        )
        return assigned, valet

    def _write(self, before: Vehicle, after: Vehicle, rollback: _Rollback) -> Vehicle:
        """CAS-write `after`; on rollback write `before` back on top of it."""
        saved = self.vehicles.update(after)
        rollback.push(
            f"restore vehicle {before.id} to {before.state.value}",
            lambda: self.vehicles.update(replace(before, version=saved.version + 1)),
        )
        return saved

    def _get(self, vehicle_id: str) -> Vehicle:
        vehicle = self.vehicles.get(vehicle_id)
        if not vehicle:
            raise NotFoundError("Vehicle", vehicle_id)
        return vehicle

    def _find_valet(self, valet_id: Optional[str]) -> Optional[Valet]:
        return self.dispatcher.valets.get(valet_id) if valet_id else None

    def _audit(self, from_state: Optional[VehicleState], vehicle: Vehicle, actor: Actor,
               actor_id: Optional[str], **metadata) -> AuditIntent:
        logger.info(
            f"[TRANSITION] {vehicle.plate_number} ({vehicle.token}): "
            f"{from_state.value if from_state else '∅'} → {vehicle.state.value} by {actor.value}"
        )
        return AuditIntent(
            vehicle_id=vehicle.id,
            from_state=from_state,
            to_state=vehicle.state,
            triggered_by=actor,
            triggered_by_id=actor_id,
            timestamp=self.clock(),
            metadata=metadata,
        )
