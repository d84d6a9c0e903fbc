# backend/eventstock/services/event_state.py
"""
Event lifecycle state machine.

LIFECYCLE:
1. DRAFT: Event created, nothing sent out
2. DISPATCHED: Stock Out recorded (a re-dispatch returns here)
3. PARTIALLY_RETURNED: Some lines of the latest dispatch still outstanding
4. CLOSED: Every line settled; terminal

return_closed mirrors CLOSED and is set in the same transition.
"""
from __future__ import annotations

from ..models import Event
from ..validation import ConflictError

EVENT_STATUS_DRAFT = "DRAFT"
EVENT_STATUS_DISPATCHED = "DISPATCHED"
EVENT_STATUS_PARTIALLY_RETURNED = "PARTIALLY_RETURNED"
EVENT_STATUS_CLOSED = "CLOSED"

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    EVENT_STATUS_DRAFT: frozenset({EVENT_STATUS_DISPATCHED}),
    EVENT_STATUS_DISPATCHED: frozenset({
        EVENT_STATUS_DISPATCHED,
        EVENT_STATUS_PARTIALLY_RETURNED,
        EVENT_STATUS_CLOSED,
    }),
    EVENT_STATUS_PARTIALLY_RETURNED: frozenset({
        EVENT_STATUS_DISPATCHED,
        EVENT_STATUS_PARTIALLY_RETURNED,
        EVENT_STATUS_CLOSED,
    }),
    EVENT_STATUS_CLOSED: frozenset(),
}


class EventStateError(ConflictError):
    """Raised when an operation is not allowed in the event's current state."""
    code = "INVALID_STATE"


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def can_dispatch(event: Event) -> bool:
    return can_transition(event.status, EVENT_STATUS_DISPATCHED)


def can_return(event: Event) -> bool:
    return event.status in (EVENT_STATUS_DISPATCHED, EVENT_STATUS_PARTIALLY_RETURNED)


def require_can_dispatch(event: Event) -> None:
    if not can_dispatch(event):
        raise EventStateError(f"Event {event.id} is {event.status}; dispatch not allowed")


def require_can_return(event: Event) -> None:
    if not can_return(event):
        raise EventStateError(f"Event {event.id} is {event.status}; return not allowed")


def transition(event: Event, target: str) -> None:
    if not can_transition(event.status, target):
        raise EventStateError(f"Cannot move event {event.id} from {event.status} to {target}")
    event.status = target
    event.return_closed = target == EVENT_STATUS_CLOSED


def mark_dispatched(event: Event) -> None:
    transition(event, EVENT_STATUS_DISPATCHED)


def mark_returned(event: Event, *, outstanding_remaining: bool) -> None:
    transition(
        event,
        EVENT_STATUS_PARTIALLY_RETURNED if outstanding_remaining else EVENT_STATUS_CLOSED,
    )
