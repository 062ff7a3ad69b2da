# app/services/dashboard_service.py
"""
Live counters for the operator dashboard and daily entry statistics.
Read-only: everything is computed from the stores on each call.
"""

from collections import Counter
from dataclasses import asdict
from datetime import date, datetime, time, timedelta
from typing import Callable, Optional

from app.domain.states import ACTIVE_STATES, VehicleState
from app.repositories.base import VehicleStore
from app.services.markout_scheduler import MarkOutScheduler
from app.services.valet_dispatcher import ValetDispatcher
from app.services.zone_allocator import ZoneAllocator

PEAK_HOURS_SHOWN = 3


class DashboardService:
    def __init__(self, vehicle_store: VehicleStore, zone_allocator: ZoneAllocator,
                 valet_dispatcher: ValetDispatcher, markout_scheduler: MarkOutScheduler,
                 clock: Callable[[], datetime] = datetime.now):
        self.vehicles = vehicle_store
        self.zones = zone_allocator
        self.dispatcher = valet_dispatcher
        self.scheduler = markout_scheduler
        self.clock = clock

    def dashboard(self) -> dict:
        now = self.clock()
        active = self.vehicles.list_by_state(*ACTIVE_STATES)
        by_state = Counter(v.state for v in active)

        midnight = datetime.combine(now.date(), time.min)
        delivered_today = self.vehicles.list_delivered_between(midnight, midnight + timedelta(days=1))
        retrieval_minutes = [
            v.retrieval_duration() for v in delivered_today if v.retrieval_duration() is not None
        ]

        return {
            "timestamp": now.isoformat(),
            "vehicles_inside": len(active),
            "parking": by_state[VehicleState.PARKING],
            "parked": by_state[VehicleState.PARKED] + by_state[VehicleState.WAITING_MARKOUT],
            "scheduled": by_state[VehicleState.SCHEDULED],
            "retrieval_assigned": by_state[VehicleState.RETRIEVAL_ASSIGNED],
            "on_the_way": by_state[VehicleState.ON_THE_WAY],
            "delivered_today": len(delivered_today),
            "overdue": len(self.scheduler.overdue(active, now)),
            "avg_exit_time_minutes": (
                round(sum(retrieval_minutes) / len(retrieval_minutes), 1) if retrieval_minutes else None
            ),
            "valets": asdict(self.dispatcher.assignment_stats()),
            "zones": self.zone_occupancy(),
        }

    def zone_occupancy(self) -> list:
        return [
            {
                "zone_code": z.zone_code,
                "zone_name": z.zone_name,
                "total_slots": z.total_slots,
                "available_slots": z.available_slots,
                "occupancy_rate": z.occupancy_rate,
                "is_active": z.is_active,
            }
            for z in self.zones.list_zones()
        ]

    def entry_stats(self, day: Optional[date] = None) -> dict:
        day = day or self.clock().date()
        entries = self.vehicles.list_by_date(day)
        hours = Counter(v.arrived_at.hour for v in entries)
        return {
            "date": day.isoformat(),
            "total_entries": len(entries),
            "parking": sum(1 for v in entries if v.state == VehicleState.PARKING),
            "parked": sum(1 for v in entries if v.state != VehicleState.PARKING),
            "peak_hours": [
                {"hour": f"{hour:02d}:00", "entries": count}
                for hour, count in sorted(hours.items(), key=lambda kv: (-kv[1], kv[0]))[:PEAK_HOURS_SHOWN]
            ],
        }
