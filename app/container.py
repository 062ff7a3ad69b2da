# app/container.py
"""
Wires stores, engine services and side-effect sinks together.

STORE_BACKEND=sql (default) persists to DATABASE_URL; STORE_BACKEND=memory
keeps everything in-process, which is what the test-suite uses.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from app.config import settings
from app.domain.intents import Intent, TransitionResult
from app.repositories.base import AuditSink, NotificationSink
from app.services.dashboard_service import DashboardService
from app.services.markout_scheduler import MarkOutScheduler
from app.services.side_effects import execute_intents
from app.services.valet_dispatcher import ValetDispatcher
from app.services.vehicle_lifecycle import VehicleLifecycle
from app.services.zone_allocator import ZoneAllocator
from app.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class Container:
    lifecycle: VehicleLifecycle
    zones: ZoneAllocator
    dispatcher: ValetDispatcher
    scheduler: MarkOutScheduler
    dashboard: DashboardService
    notifier: Optional[NotificationSink] = None
    auditor: Optional[AuditSink] = None

    def deliver(self, result: TransitionResult) -> List[Intent]:
        """Run the side effects of a committed transition. Returns the ones that failed."""
        return execute_intents(result, self.notifier, self.auditor)


def build_container(backend: Optional[str] = None, session_factory=None,
                    notifier: Optional[NotificationSink] = None,
                    auditor: Optional[AuditSink] = None,
                    clock: Callable[[], datetime] = datetime.now) -> Container:
    backend = (backend or settings.STORE_BACKEND).lower()

    if backend == "memory":
        from app.repositories.memory import (
            InMemoryMarkOutStore, InMemoryValetStore, InMemoryVehicleStore, InMemoryZoneStore,
        )
        from app.services.audit_service import LoggingAuditSink

        vehicles, valets = InMemoryVehicleStore(), InMemoryValetStore()
        zones, markouts = InMemoryZoneStore(), InMemoryMarkOutStore()
        auditor = auditor or LoggingAuditSink()
    elif backend == "sql":
        from app.database import SessionLocal
        from app.repositories.sql import SqlMarkOutStore, SqlValetStore, SqlVehicleStore, SqlZoneStore
        from app.services.audit_service import SqlAuditSink

        factory = session_factory or SessionLocal
        vehicles, valets = SqlVehicleStore(factory), SqlValetStore(factory)
        zones, markouts = SqlZoneStore(factory), SqlMarkOutStore(factory)
        auditor = auditor or SqlAuditSink(factory)
    else:
        raise ValueError(f"Unknown STORE_BACKEND: {backend}")

    if notifier is None:
        from app.services.notification_service import WhatsAppNotifier
        notifier = WhatsAppNotifier()

    zone_allocator = ZoneAllocator(zones)
    dispatcher = ValetDispatcher(valets, clock=clock)
    scheduler = MarkOutScheduler(markouts, clock=clock)
    lifecycle = VehicleLifecycle(vehicles, zone_allocator, dispatcher, scheduler, clock=clock)
    logger.info(f"Valet engine wired with {backend} stores")

    return Container(
        lifecycle=lifecycle,
        zones=zone_allocator,
        dispatcher=dispatcher,
        scheduler=scheduler,
        dashboard=DashboardService(vehicles, zone_allocator, dispatcher, scheduler, clock=clock),
        notifier=notifier,
        auditor=auditor,
    )


_container: Optional[Container] = None


def get_container() -> Container:
    """FastAPI dependency: one engine per process."""
    global _container
    if _container is None:
        _container = build_container()
    return _container


def set_container(container: Optional[Container]):
    global _container
    _container = container
