"""
Store and sink contracts consumed by the valet engine.

Stores own durability and uniqueness. Every `update()` is a compare-and-swap:
it persists the snapshot only when the stored version equals
`entity.version - 1`, otherwise it raises StaleWriteError.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import List, Optional

from app.domain.entities import MarkOutRequest, ParkingZone, Valet, Vehicle
from app.domain.intents import AuditIntent, NotificationIntent
from app.domain.states import ValetStatus, VehicleState


class VehicleStore(ABC):
    @abstractmethod
    def add(self, vehicle: Vehicle) -> Vehicle:
        """Insert a new vehicle.

        Raises:
            TokenCollisionError: token already taken
            DuplicateEntryError: an active record exists for the plate
        """

    @abstractmethod
    def update(self, vehicle: Vehicle) -> Vehicle:
        """Compare-and-swap write of a new vehicle snapshot."""

    @abstractmethod
    def get(self, vehicle_id: str) -> Optional[Vehicle]:
        pass

    @abstractmethod
    def find_by_token(self, token: str) -> Optional[Vehicle]:
        pass

    @abstractmethod
    def find_active_by_plate(self, plate_number: str) -> Optional[Vehicle]:
        pass

    @abstractmethod
    def find_active_by_phone(self, phone: str) -> List[Vehicle]:
        pass

    @abstractmethod
    def list_by_state(self, *states: VehicleState) -> List[Vehicle]:
        pass

    @abstractmethod
    def list_by_date(self, day: date) -> List[Vehicle]:
        """Vehicles that arrived on `day`."""

    @abstractmethod
    def list_delivered_between(self, start: datetime, end: datetime) -> List[Vehicle]:
        """Vehicles with `start <= delivered_at < end`, any state."""

    @abstractmethod
    def list_all(self, limit: int = 100, offset: int = 0) -> List[Vehicle]:
        pass


class ValetStore(ABC):
    @abstractmethod
    def add(self, valet: Valet) -> Valet:
        pass

    @abstractmethod
    def update(self, valet: Valet) -> Valet:
        pass

    @abstractmethod
    def get(self, valet_id: str) -> Optional[Valet]:
        pass

    @abstractmethod
    def list_active(self) -> List[Valet]:
        """Valets still employed (is_active), any status."""

    @abstractmethod
    def list_all(self, status: Optional[ValetStatus] = None) -> List[Valet]:
        pass


class ZoneStore(ABC):
    @abstractmethod
    def add(self, zone: ParkingZone) -> ParkingZone:
        pass

    @abstractmethod
    def update(self, zone: ParkingZone) -> ParkingZone:
        pass

    @abstractmethod
    def get(self, zone_id: str) -> Optional[ParkingZone]:
        pass

    @abstractmethod
    def list_all(self) -> List[ParkingZone]:
        pass


class MarkOutStore(ABC):
    @abstractmethod
    def add(self, request: MarkOutRequest) -> MarkOutRequest:
        pass

    @abstractmethod
    def update(self, request: MarkOutRequest) -> MarkOutRequest:
        pass

    @abstractmethod
    def find_pending(self, vehicle_id: str) -> Optional[MarkOutRequest]:
        pass

    @abstractmethod
    def list_for_vehicle(self, vehicle_id: str) -> List[MarkOutRequest]:
        pass


class NotificationSink(ABC):
    @abstractmethod
    def send(self, intent: NotificationIntent) -> None:
        """Deliver one notification. May raise; callers treat failures as non-fatal."""


class AuditSink(ABC):
    @abstractmethod
    def record(self, intent: AuditIntent) -> None:
        pass
