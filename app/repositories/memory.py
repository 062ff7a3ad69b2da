"""
In-memory stores. Thread-safe, used by the test-suite and STORE_BACKEND=memory.
Enforce the same uniqueness and compare-and-swap rules as the SQL stores.
"""

import threading
from datetime import date, datetime
from typing import Dict, List, Optional

from app.domain.entities import MarkOutRequest, ParkingZone, Valet, Vehicle
from app.domain.exceptions import (
    ConflictError,
    DuplicateEntryError,
    NotFoundError,
    StaleWriteError,
    TokenCollisionError,
)
from app.domain.states import ValetStatus, VehicleState
from app.repositories.base import MarkOutStore, ValetStore, VehicleStore, ZoneStore


class _MemoryTable:
    """id → snapshot map with version-checked writes."""

    resource = "Record"

    def __init__(self):
        self._rows: Dict[str, object] = {}
        self._lock = threading.RLock()

    def _insert(self, entity):
        with self._lock:
            if entity.id in self._rows:
                raise ConflictError(f"{self.resource} {entity.id} already exists")
            self._rows[entity.id] = entity
            return entity

    def update(self, entity):
        with self._lock:
            current = self._rows.get(entity.id)
            if current is None:
                raise NotFoundError(self.resource, entity.id)
            if current.version != entity.version - 1:
                raise StaleWriteError(
                    f"{self.resource} {entity.id} changed concurrently "
                    f"(stored v{current.version}, write v{entity.version})"
                )
            self._rows[entity.id] = entity
            return entity

    def get(self, entity_id: str):
        with self._lock:
            return self._rows.get(entity_id)

    def _values(self) -> list:
        with self._lock:
            return list(self._rows.values())


class InMemoryVehicleStore(_MemoryTable, VehicleStore):
    resource = "Vehicle"

    def add(self, vehicle: Vehicle) -> Vehicle:
        with self._lock:
            if self.find_by_token(vehicle.token):
                raise TokenCollisionError(f"Token {vehicle.token} already issued")
            existing = self.find_active_by_plate(vehicle.plate_number)
            if existing:
                raise DuplicateEntryError(
                    f"Vehicle {vehicle.plate_number} is already parked. "
                    f"Token: {existing.token}, State: {existing.state.value}"
                )
            return self._insert(vehicle)

    def find_by_token(self, token: str) -> Optional[Vehicle]:
        return next((v for v in self._values() if v.token == token), None)

    def find_active_by_plate(self, plate_number: str) -> Optional[Vehicle]:
        return next(
            (v for v in self._values() if v.plate_number == plate_number and v.is_active), None
        )

    def find_active_by_phone(self, phone: str) -> List[Vehicle]:
        return [v for v in self._values() if v.customer_phone == phone and v.is_active]

    def list_by_state(self, *states: VehicleState) -> List[Vehicle]:
        return sorted(
            (v for v in self._values() if v.state in states), key=lambda v: v.arrived_at
        )

    def list_by_date(self, day: date) -> List[Vehicle]:
        return sorted(
            (v for v in self._values() if v.arrived_at.date() == day), key=lambda v: v.arrived_at
        )

    def list_delivered_between(self, start: datetime, end: datetime) -> List[Vehicle]:
        return sorted(
            (v for v in self._values() if v.delivered_at and start <= v.delivered_at < end),
            key=lambda v: v.delivered_at,
        )

    def list_all(self, limit: int = 100, offset: int = 0) -> List[Vehicle]:
        rows = sorted(self._values(), key=lambda v: v.arrived_at, reverse=True)
        return rows[offset:offset + limit]


class InMemoryValetStore(_MemoryTable, ValetStore):
    resource = "Valet"

    def add(self, valet: Valet) -> Valet:
        return self._insert(valet)

    def list_active(self) -> List[Valet]:
        return [v for v in self._values() if v.is_active]

    def list_all(self, status: Optional[ValetStatus] = None) -> List[Valet]:
        return [v for v in self._values() if status is None or v.status == status]


class InMemoryZoneStore(_MemoryTable, ZoneStore):
    resource = "Parking zone"

    def add(self, zone: ParkingZone) -> ParkingZone:
        with self._lock:
            if any(z.zone_code == zone.zone_code for z in self._values()):
                raise ConflictError(f"Zone code {zone.zone_code} already exists")
            return self._insert(zone)

    def list_all(self) -> List[ParkingZone]:
        return sorted(self._values(), key=lambda z: (z.priority, z.zone_code))


class InMemoryMarkOutStore(_MemoryTable, MarkOutStore):
    resource = "Mark-out request"

    def add(self, request: MarkOutRequest) -> MarkOutRequest:
        with self._lock:
            if request.is_pending and self.find_pending(request.vehicle_id):
                raise ConflictError(
                    f"Vehicle {request.vehicle_id} already has a pending mark-out request"
                )
            return self._insert(request)

    def find_pending(self, vehicle_id: str) -> Optional[MarkOutRequest]:
        return next(
            (r for r in self._values() if r.vehicle_id == vehicle_id and r.is_pending), None
        )

    def list_for_vehicle(self, vehicle_id: str) -> List[MarkOutRequest]:
        return sorted(
            (r for r in self._values() if r.vehicle_id == vehicle_id),
            key=lambda r: r.requested_at,
        )
