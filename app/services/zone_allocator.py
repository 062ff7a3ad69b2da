# app/services/zone_allocator.py
"""
Parking-zone slot allocation.

reserve_slot picks the active zone with free capacity, lowest priority first,
zone code breaking ties, and hands out the lowest free slot label in that zone.
release_slot gives the slot back on delivery. Both run as one critical section
per allocator so two entries can never spend the last slot twice.
"""

import threading
from dataclasses import dataclass, replace
from typing import List, Optional

from app.domain.entities import ParkingZone, new_id
from app.domain.exceptions import NoCapacityError, NotFoundError
from app.repositories.base import ZoneStore
from app.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SlotReservation:
    zone_id: str
    zone_code: str
    slot_label: str


class ZoneAllocator:
    def __init__(self, zone_store: ZoneStore):
        self.zones = zone_store
        self._lock = threading.Lock()

    def reserve_slot(self) -> SlotReservation:
        with self._lock:
            eligible = [z for z in self.zones.list_all() if z.has_availability()]
            if not eligible:
                raise NoCapacityError()

            zone = min(eligible, key=lambda z: (z.priority, z.zone_code))
            label = zone.next_slot_label()
            self.zones.update(zone.occupy_slot(label))

        logger.info(
            f"[ZONE] Reserved {zone.zone_code}-{label} "
            f"({zone.available_slots - 1}/{zone.total_slots} left)"
        )
        return SlotReservation(zone_id=zone.id, zone_code=zone.zone_code, slot_label=label)

    def release_slot(self, zone_id: str, slot_label: Optional[str] = None) -> ParkingZone:
        """Return one slot to the zone. Raises OverReleaseError if the zone is already empty."""
        with self._lock:
            zone = self._get(zone_id)
            released = self.zones.update(zone.release_slot(slot_label))

        logger.info(
            f"[ZONE] Released {zone.zone_code}-{slot_label or '?'} "
            f"({released.available_slots}/{released.total_slots} free)"
        )
        return released

    def reclaim_slot(self, zone_id: str, slot_label: str) -> ParkingZone:
        """Re-occupy a specific label after a release had to be rolled back."""
        with self._lock:
            zone = self._get(zone_id)
            reclaimed = self.zones.update(zone.occupy_slot(slot_label))
        logger.warning(f"[ZONE] Reclaimed {zone.zone_code}-{slot_label}")
        return reclaimed

    def create_zone(self, zone_code: str, total_slots: int, priority: int = 999,
                    zone_name: Optional[str] = None, zone_description: Optional[str] = None,
                    is_active: bool = True) -> ParkingZone:
        zone = ParkingZone(
            id=new_id(),
            zone_code=zone_code.strip().upper(),
            total_slots=total_slots,
            available_slots=total_slots,
            is_active=is_active,
            priority=priority,
            zone_name=zone_name,
            zone_description=zone_description,
        )
        logger.info(f"[ZONE] Created zone {zone.zone_code} with {total_slots} slots (priority {priority})")
        return self.zones.add(zone)

    def set_active(self, zone_id: str, is_active: bool) -> ParkingZone:
        with self._lock:
            zone = self._get(zone_id)
            if zone.is_active == is_active:
                return zone
            return self.zones.update(replace(zone, is_active=is_active, version=zone.version + 1))

    def list_zones(self) -> List[ParkingZone]:
        return self.zones.list_all()

    def _get(self, zone_id: str) -> ParkingZone:
        zone = self.zones.get(zone_id)
        if not zone:
            raise NotFoundError("Parking zone", zone_id)
        return zone
