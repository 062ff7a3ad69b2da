"""Vehicle state machine and the status enums of the valet domain.

Vehicle states, in order:
- PARKING: entry created, parking valet driving to the slot
- PARKED: car in its slot
- WAITING_MARKOUT: mark-out options sent to the customer
- SCHEDULED: customer picked a lead time, retrieval due at scheduled_at
- RETRIEVAL_ASSIGNED: a retrieval valet holds the task
- ON_THE_WAY: valet driving the car to the exit
- DELIVERED: keys handed over
- CLOSED: record archived (terminal)
"""

from enum import Enum

from app.domain.exceptions import InvalidTransitionError


class VehicleState(str, Enum):
    PARKING = "PARKING"
    PARKED = "PARKED"
    WAITING_MARKOUT = "WAITING_MARKOUT"
    SCHEDULED = "SCHEDULED"
    RETRIEVAL_ASSIGNED = "RETRIEVAL_ASSIGNED"
    ON_THE_WAY = "ON_THE_WAY"
    DELIVERED = "DELIVERED"
    CLOSED = "CLOSED"


class ValetStatus(str, Enum):
    FREE = "FREE"            # Available for assignment
    BUSY = "BUSY"            # Currently handling a task
    BREAK = "BREAK"          # On break, do not assign
    OFF_DUTY = "OFF_DUTY"    # Not in shift


class TaskType(str, Enum):
    PARKING = "PARKING"
    RETRIEVAL = "RETRIEVAL"


class MarkOutStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class MarkOutSource(str, Enum):
    WHATSAPP = "WHATSAPP"
    OPERATOR = "OPERATOR"
    DEFAULT = "DEFAULT"


VEHICLE_TRANSITIONS = {
    VehicleState.PARKING: {VehicleState.PARKED},
    VehicleState.PARKED: {VehicleState.SCHEDULED, VehicleState.WAITING_MARKOUT},
    VehicleState.WAITING_MARKOUT: {VehicleState.SCHEDULED},
    VehicleState.SCHEDULED: {VehicleState.RETRIEVAL_ASSIGNED},
    VehicleState.RETRIEVAL_ASSIGNED: {VehicleState.ON_THE_WAY},
    VehicleState.ON_THE_WAY: {VehicleState.DELIVERED},
    VehicleState.DELIVERED: {VehicleState.CLOSED},
    VehicleState.CLOSED: set(),
}

# A vehicle in any of these states counts against its plate
ACTIVE_STATES = frozenset(VEHICLE_TRANSITIONS) - {VehicleState.DELIVERED, VehicleState.CLOSED}

MARKOUT_SOURCE_STATES = frozenset({VehicleState.PARKED, VehicleState.WAITING_MARKOUT})
RETRIEVAL_READY_STATES = frozenset({VehicleState.SCHEDULED, VehicleState.RETRIEVAL_ASSIGNED})


def can_transition(current: VehicleState, target: VehicleState) -> bool:
    return target in VEHICLE_TRANSITIONS.get(current, set())


def assert_vehicle_transition(current: VehicleState, target: VehicleState) -> None:
    """Validate a vehicle state transition.

    Raises:
        InvalidTransitionError: If `target` is not reachable from `current`
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)


def is_active(state: VehicleState) -> bool:
    return state in ACTIVE_STATES
