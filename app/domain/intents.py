"""Side-effect intents returned by vehicle transitions.

The engine does not talk to WhatsApp or the audit log itself; it describes
what should happen and the caller delivers it best-effort.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from app.domain.entities import Vehicle
from app.domain.states import VehicleState


class NotificationKind(str, Enum):
    ENTRY_CONFIRMATION = "ENTRY_CONFIRMATION"
    MARKOUT_OPTIONS = "MARKOUT_OPTIONS"
    RETRIEVAL_STARTED = "RETRIEVAL_STARTED"
    DELIVERY_CONFIRMATION = "DELIVERY_CONFIRMATION"


class Actor(str, Enum):
    OPERATOR = "OPERATOR"
    VALET = "VALET"
    CUSTOMER = "CUSTOMER"
    SYSTEM = "SYSTEM"


@dataclass(frozen=True)
class NotificationIntent:
    recipient_phone: str
    kind: NotificationKind
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AuditIntent:
    vehicle_id: str
    from_state: Optional[VehicleState]
    to_state: VehicleState
    triggered_by: Actor
    triggered_by_id: Optional[str]
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


Intent = Union[NotificationIntent, AuditIntent]


@dataclass(frozen=True)
class TransitionResult:
    """Updated vehicle plus the side effects the caller should run."""

    vehicle: Vehicle
    intents: List[Intent] = field(default_factory=list)

    @property
    def notifications(self) -> List[NotificationIntent]:
        return [i for i in self.intents if isinstance(i, NotificationIntent)]

    @property
    def audits(self) -> List[AuditIntent]:
        return [i for i in self.intents if isinstance(i, AuditIntent)]
