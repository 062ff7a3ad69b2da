"""
SQLAlchemy-backed stores.

Each call opens its own short session from `session_factory` and commits
before returning. `update()` is a conditional UPDATE on (id, version - 1), so
two writers racing on the same snapshot cannot both succeed.
"""

from contextlib import contextmanager
from datetime import date, datetime, time, timedelta
from typing import Callable, List, Optional

from sqlalchemy import update as sql_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.database import SessionLocal
from app.domain.entities import MarkOutRequest, ParkingZone, Valet, Vehicle
from app.domain.exceptions import (
    ConflictError,
    DuplicateEntryError,
    NotFoundError,
    StaleWriteError,
    TokenCollisionError,
)
from app.domain.intents import AuditIntent
from app.domain.states import (
    ACTIVE_STATES,
    MarkOutSource,
    MarkOutStatus,
    ValetStatus,
    VehicleState,
)
from app.models.markout_request import MarkOutRequestRecord
from app.models.parking_zone import ParkingZoneRecord
from app.models.state_transition import StateTransition
from app.models.valet import ValetRecord
from app.models.vehicle import VehicleRecord
from app.repositories.base import MarkOutStore, ValetStore, VehicleStore, ZoneStore

_ACTIVE_VALUES = [s.value for s in ACTIVE_STATES]


class _SqlTable:
    model = None
    resource = "Record"

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    @contextmanager
    def _session(self):
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    def _to_entity(self, row):
        raise NotImplementedError

    def _to_columns(self, entity) -> dict:
        raise NotImplementedError

    def _insert(self, entity):
        with self._session() as db:
            db.add(self.model(**self._to_columns(entity)))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise ConflictError(f"{self.resource} {entity.id} conflicts with an existing record")
        return entity

    def update(self, entity):
        columns = self._to_columns(entity)
        columns.pop("id")
        with self._session() as db:
            result = db.execute(
                sql_update(self.model)
                .where(self.model.id == entity.id, self.model.version == entity.version - 1)
                .values(**columns)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                db.commit()
                return entity
            db.rollback()
            current = db.get(self.model, entity.id)
            if current is None:
                raise NotFoundError(self.resource, entity.id)
            raise StaleWriteError(
                f"{self.resource} {entity.id} changed concurrently "
                f"(stored v{current.version}, write v{entity.version})"
            )

    def get(self, entity_id: str):
        with self._session() as db:
            row = db.get(self.model, entity_id)
            return self._to_entity(row) if row else None

    def _query(self, *criteria, order_by=None, limit=None, offset=None) -> list:
        with self._session() as db:
            q = db.query(self.model).filter(*criteria)
            if order_by is not None:
                q = q.order_by(order_by)
            if offset:
                q = q.offset(offset)
            if limit is not None:
                q = q.limit(limit)
            return [self._to_entity(row) for row in q.all()]


class SqlVehicleStore(_SqlTable, VehicleStore):
    model = VehicleRecord
    resource = "Vehicle"

    def add(self, vehicle: Vehicle) -> Vehicle:
        if self.find_by_token(vehicle.token):
            raise TokenCollisionError(f"Token {vehicle.token} already issued")
        existing = self.find_active_by_plate(vehicle.plate_number)
        if existing:
            raise DuplicateEntryError(
                f"Vehicle {vehicle.plate_number} is already parked. "
                f"Token: {existing.token}, State: {existing.state.value}"
            )
        with self._session() as db:
            db.add(VehicleRecord(**self._to_columns(vehicle)))
            try:
                db.commit()
            except IntegrityError:
                # token is the only unique column besides the primary key
                db.rollback()
                raise TokenCollisionError(f"Token {vehicle.token} already issued")
        return vehicle

    def find_by_token(self, token: str) -> Optional[Vehicle]:
        rows = self._query(VehicleRecord.token == token, limit=1)
        return rows[0] if rows else None

    def find_active_by_plate(self, plate_number: str) -> Optional[Vehicle]:
        rows = self._query(
            VehicleRecord.plate_number == plate_number,
            VehicleRecord.state.in_(_ACTIVE_VALUES),
            limit=1,
        )
        return rows[0] if rows else None

    def find_active_by_phone(self, phone: str) -> List[Vehicle]:
        return self._query(
            VehicleRecord.customer_phone == phone,
            VehicleRecord.state.in_(_ACTIVE_VALUES),
            order_by=VehicleRecord.arrived_at,
        )

    def list_by_state(self, *states: VehicleState) -> List[Vehicle]:
        return self._query(
            VehicleRecord.state.in_([s.value for s in states]),
            order_by=VehicleRecord.arrived_at,
        )

    def list_by_date(self, day: date) -> List[Vehicle]:
        start = datetime.combine(day, time.min)
        return self._query(
            VehicleRecord.arrived_at >= start,
            VehicleRecord.arrived_at < start + timedelta(days=1),
            order_by=VehicleRecord.arrived_at,
        )

    def list_delivered_between(self, start: datetime, end: datetime) -> List[Vehicle]:
        return self._query(
            VehicleRecord.delivered_at >= start,
            VehicleRecord.delivered_at < end,
            order_by=VehicleRecord.delivered_at,
        )

    def list_all(self, limit: int = 100, offset: int = 0) -> List[Vehicle]:
        return self._query(order_by=VehicleRecord.arrived_at.desc(), limit=limit, offset=offset)

    def _to_columns(self, v: Vehicle) -> dict:
        return {
            "id": v.id,
            "token": v.token,
            "plate_number": v.plate_number,
            "customer_phone": v.customer_phone,
            "customer_type": v.customer_type,
            "zone": v.zone,
            "zone_id": v.zone_id,
            "slot": v.slot,
            "state": v.state.value,
            "entry_operator_id": v.entry_operator_id,
            "parking_valet_id": v.parking_valet_id,
            "retrieval_valet_id": v.retrieval_valet_id,
            "arrived_at": v.arrived_at,
            "parked_at": v.parked_at,
            "markout_requested_at": v.markout_requested_at,
            "scheduled_at": v.scheduled_at,
            "retrieval_started_at": v.retrieval_started_at,
            "delivered_at": v.delivered_at,
            "closed_at": v.closed_at,
            "version": v.version,
        }

    def _to_entity(self, row: VehicleRecord) -> Vehicle:
        return Vehicle(
            id=row.id,
            token=row.token,
            plate_number=row.plate_number,
            customer_phone=row.customer_phone,
            customer_type=row.customer_type,
            zone=row.zone,
            zone_id=row.zone_id,
            slot=row.slot,
            state=VehicleState(row.state),
            entry_operator_id=row.entry_operator_id,
            parking_valet_id=row.parking_valet_id,
            retrieval_valet_id=row.retrieval_valet_id,
            arrived_at=row.arrived_at,
            parked_at=row.parked_at,
            markout_requested_at=row.markout_requested_at,
            scheduled_at=row.scheduled_at,
            retrieval_started_at=row.retrieval_started_at,
            delivered_at=row.delivered_at,
            closed_at=row.closed_at,
            version=row.version,
        )


class SqlValetStore(_SqlTable, ValetStore):
    model = ValetRecord
    resource = "Valet"

    def add(self, valet: Valet) -> Valet:
        return self._insert(valet)

    def list_active(self) -> List[Valet]:
        return self._query(ValetRecord.is_active.is_(True), order_by=ValetRecord.name)

    def list_all(self, status: Optional[ValetStatus] = None) -> List[Valet]:
        if status:
            return self._query(ValetRecord.status == status.value, order_by=ValetRecord.name)
        return self._query(order_by=ValetRecord.name)

    def _to_columns(self, v: Valet) -> dict:
        return {
            "id": v.id,
            "name": v.name,
            "phone": v.phone,
            "employee_id": v.employee_id,
            "status": v.status.value,
            "assignment_sequence": v.assignment_sequence,
            "today_count": v.today_count,
            "total_count": v.total_count,
            "shift_start": v.shift_start,
            "shift_end": v.shift_end,
            "is_active": v.is_active,
            "version": v.version,
        }

    def _to_entity(self, row: ValetRecord) -> Valet:
        return Valet(
            id=row.id,
            name=row.name,
            phone=row.phone,
            employee_id=row.employee_id,
            status=ValetStatus(row.status),
            assignment_sequence=row.assignment_sequence,
            today_count=row.today_count,
            total_count=row.total_count,
            shift_start=row.shift_start,
            shift_end=row.shift_end,
            is_active=row.is_active,
            version=row.version,
        )


class SqlZoneStore(_SqlTable, ZoneStore):
    model = ParkingZoneRecord
    resource = "Parking zone"

    def add(self, zone: ParkingZone) -> ParkingZone:
        return self._insert(zone)

    def list_all(self) -> List[ParkingZone]:
        zones = self._query()
        return sorted(zones, key=lambda z: (z.priority, z.zone_code))

    def _to_columns(self, z: ParkingZone) -> dict:
        return {
            "id": z.id,
            "zone_code": z.zone_code,
            "zone_name": z.zone_name,
            "zone_description": z.zone_description,
            "total_slots": z.total_slots,
            "available_slots": z.available_slots,
            "occupied_slots": ",".join(sorted(z.occupied_slots, key=_slot_order)),
            "priority": z.priority,
            "is_active": z.is_active,
            "version": z.version,
        }

    def _to_entity(self, row: ParkingZoneRecord) -> ParkingZone:
        return ParkingZone(
            id=row.id,
            zone_code=row.zone_code,
            zone_name=row.zone_name,
            zone_description=row.zone_description,
            total_slots=row.total_slots,
            available_slots=row.available_slots,
            occupied_slots=frozenset(s for s in (row.occupied_slots or "").split(",") if s),
            priority=row.priority,
            is_active=row.is_active,
            version=row.version,
        )


def _slot_order(label: str):
    return (0, int(label), "") if label.isdigit() else (1, 0, label)


class SqlMarkOutStore(_SqlTable, MarkOutStore):
    model = MarkOutRequestRecord
    resource = "Mark-out request"

    def add(self, request: MarkOutRequest) -> MarkOutRequest:
        if request.is_pending and self.find_pending(request.vehicle_id):
            raise ConflictError(
                f"Vehicle {request.vehicle_id} already has a pending mark-out request"
            )
        return self._insert(request)

    def find_pending(self, vehicle_id: str) -> Optional[MarkOutRequest]:
        rows = self._query(
            MarkOutRequestRecord.vehicle_id == vehicle_id,
            MarkOutRequestRecord.status == MarkOutStatus.PENDING.value,
            limit=1,
        )
        return rows[0] if rows else None

    def list_for_vehicle(self, vehicle_id: str) -> List[MarkOutRequest]:
        return self._query(
            MarkOutRequestRecord.vehicle_id == vehicle_id,
            order_by=MarkOutRequestRecord.requested_at,
        )

    def _to_columns(self, r: MarkOutRequest) -> dict:
        return {
            "id": r.id,
            "vehicle_id": r.vehicle_id,
            "selected_minutes": r.selected_minutes,
            "requested_at": r.requested_at,
            "retrieve_at": r.retrieve_at,
            "source": r.source.value,
            "status": r.status.value,
            "version": r.version,
        }

    def _to_entity(self, row: MarkOutRequestRecord) -> MarkOutRequest:
        return MarkOutRequest(
            id=row.id,
            vehicle_id=row.vehicle_id,
            selected_minutes=row.selected_minutes,
            requested_at=row.requested_at,
            retrieve_at=row.retrieve_at,
            source=MarkOutSource(row.source),
            status=MarkOutStatus(row.status),
            version=row.version,
        )


def audit_row(intent: AuditIntent) -> StateTransition:
    return StateTransition(
        vehicle_id=intent.vehicle_id,
        from_state=intent.from_state.value if intent.from_state else None,
        to_state=intent.to_state.value,
        triggered_by=intent.triggered_by.value,
        triggered_by_id=intent.triggered_by_id,
        transition_metadata=intent.metadata or None,
        created_at=intent.timestamp,
    )
