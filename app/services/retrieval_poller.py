# app/services/retrieval_poller.py
"""
Retrieval poller: background loop that keeps scheduled retrievals moving.

Every RETRIEVAL_POLL_SECONDS it:
  1. Dispatches a retrieval valet to each SCHEDULED vehicle whose time has come
  2. Logs vehicles still waiting more than OVERDUE_THRESHOLD_MINUTES past schedule

Engine calls are blocking, so each tick runs in a worker thread. A failing
tick is logged and the loop carries on.
"""

import asyncio
from typing import List

from app.config import settings
from app.container import Container
from app.domain.exceptions import ValetParkingError
from app.domain.states import VehicleState
from app.utils.logger import get_logger

logger = get_logger(__name__)


def poll_once(container: Container) -> List[str]:
    """One pass over SCHEDULED vehicles. Returns ids that got a retrieval valet."""
    lifecycle = container.lifecycle
    now = lifecycle.clock()
    scheduled = lifecycle.vehicles.list_by_state(VehicleState.SCHEDULED)
    assigned = []

    for vehicle in container.scheduler.due_for_retrieval(scheduled, now):
        try:
            result = lifecycle.assign_retrieval_valet(vehicle.id)
        except ValetParkingError as e:
            logger.warning(f"[POLLER] {vehicle.token}: retrieval not assigned ({e.detail})")
            continue
        container.deliver(result)
        assigned.append(vehicle.id)

    for vehicle in lifecycle.overdue_vehicles(now):
        minutes = int((now - vehicle.scheduled_at).total_seconds() // 60)
        logger.warning(
            f"[POLLER] OVERDUE {vehicle.token} ({vehicle.plate_number}) "
            f"zone {vehicle.zone}-{vehicle.slot}: {minutes} min past schedule"
        )
    return assigned


async def start_retrieval_polling(container: Container, interval_seconds: int = None):
    """Loop forever. Called once at backend startup when RETRIEVAL_POLLER_ENABLED."""
    interval = interval_seconds or settings.RETRIEVAL_POLL_SECONDS
    logger.info(f"🚀 Retrieval poller started (every {interval}s)")

    while True:
        try:
            assigned = await asyncio.to_thread(poll_once, container)
            if assigned:
                logger.info(f"[POLLER] Retrieval valets dispatched for {len(assigned)} vehicle(s)")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[POLLER] tick failed: {e}", exc_info=True)

        await asyncio.sleep(interval)
