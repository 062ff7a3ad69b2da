"""Error taxonomy for the valet engine.

The engine never imports the web framework; each error carries the HTTP
status the API layer should answer with, and `to_dict()` for the body.
"""

from datetime import datetime
from typing import Any, Dict, Optional


class ValetParkingError(Exception):
    """Base engine exception."""

    status_code: int = 500

    def __init__(self, detail: str = "An unexpected error occurred", **extra: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        body = {"detail": self.detail, "error": type(self).__name__}
        for key, value in self.extra.items():
            body[key] = value.isoformat() if isinstance(value, datetime) else value
        return body


# ── Families ─────────────────────────────────────────────────────────────────

class ValidationError(ValetParkingError):
    """Malformed input: the caller's fault."""

    status_code = 422


class ConflictError(ValetParkingError):
    """Concurrent-state conflict (duplicates, stale writes, double release)."""

    status_code = 409


class NotFoundError(ValetParkingError):
    """Unknown vehicle, valet, zone or mark-out id."""

    status_code = 404

    def __init__(self, resource: str = "Resource", identifier: Optional[str] = None) -> None:
        detail = f"{resource} not found"
        if identifier:
            detail = f"{resource} with ID '{identifier}' not found"
        super().__init__(detail, resource=resource, identifier=identifier)


class CapacityError(ValetParkingError):
    """Transient resource exhaustion (no slot, no valet)."""

    status_code = 503


class InvalidTransitionError(ValetParkingError):
    """A vehicle operation was requested from a state that forbids it."""

    status_code = 409

    def __init__(self, from_state: Any, to_state: Any, detail: Optional[str] = None) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            detail or f"Invalid state transition from {_name(from_state)} to {_name(to_state)}",
            from_state=_name(from_state),
            to_state=_name(to_state),
        )


class InvalidStateError(ValetParkingError):
    """An operation is not allowed for the entity's current status."""

    status_code = 409


# ── Validation ───────────────────────────────────────────────────────────────

class InvalidPlateError(ValidationError):
    pass


class InvalidPhoneError(ValidationError):
    pass


class InvalidLeadTimeError(ValidationError):
    def __init__(self, selected_minutes: Any, allowed) -> None:
        allowed = sorted(allowed)
        super().__init__(
            f"Invalid mark-out time {selected_minutes!r}. Must be one of {allowed} minutes",
            selected_minutes=selected_minutes,
            allowed=allowed,
        )


# ── Conflicts ────────────────────────────────────────────────────────────────

class DuplicateEntryError(ConflictError):
    pass


class OverReleaseError(ConflictError):
    pass


class StaleWriteError(ConflictError):
    """Compare-and-swap failed: the record changed since it was read."""


class TokenCollisionError(ConflictError):
    """The store already holds a vehicle with this customer token. Retryable."""


# ── Capacity ─────────────────────────────────────────────────────────────────

class NoCapacityError(CapacityError):
    def __init__(self, detail: str = "No parking slots available. All zones are full.") -> None:
        super().__init__(detail)


class NoAvailableValetError(CapacityError):
    def __init__(self, breakdown: Dict[str, int]) -> None:
        self.breakdown = breakdown
        out_of_shift = breakdown.get("out_of_shift", 0)
        statuses = {k: v for k, v in breakdown.items() if k != "out_of_shift"}
        super().__init__(
            "No available valets for assignment. "
            f"Status breakdown: {statuses}. Out of shift: {out_of_shift}. "
            "Please ensure at least one valet is FREE and in shift.",
            breakdown=breakdown,
        )


# ── State ────────────────────────────────────────────────────────────────────

class RetrievalTooEarlyError(InvalidStateError):
    def __init__(self, scheduled_at: Optional[datetime]) -> None:
        self.scheduled_at = scheduled_at
        super().__init__("Retrieval time has not been reached yet", scheduled_at=scheduled_at)


def _name(state: Any) -> Optional[str]:
    return getattr(state, "value", state)
