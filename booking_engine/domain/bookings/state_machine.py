"""
Booking lifecycle state machine

Statuses: pending → confirmed → completed
          pending/confirmed → cancelled
          pending → expired

completed, cancelled and expired are terminal. Pure logic, no storage access.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Union

from ...exceptions import InvalidTransitionError


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class BookingEvent(str, Enum):
    CONFIRM = "confirm"
    CANCEL = "cancel"
    EXPIRE = "expire"
    COMPLETE = "complete"


TERMINAL_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.EXPIRED})

_EDGES = {
    (BookingStatus.PENDING, BookingEvent.CONFIRM): BookingStatus.CONFIRMED,
    (BookingStatus.PENDING, BookingEvent.CANCEL): BookingStatus.CANCELLED,
    (BookingStatus.PENDING, BookingEvent.EXPIRE): BookingStatus.EXPIRED,
    (BookingStatus.CONFIRMED, BookingEvent.COMPLETE): BookingStatus.COMPLETED,
    (BookingStatus.CONFIRMED, BookingEvent.CANCEL): BookingStatus.CANCELLED,
}


@dataclass(frozen=True)
class Transition:
    previous: BookingStatus
    new_status: BookingStatus
    no_op: bool = False


@dataclass(frozen=True)
class Rejected:
    current: str
    event: BookingEvent
    reason: str


def _coerce_status(status) -> Union[BookingStatus, None]:
    try:
        return BookingStatus(status)
    except ValueError:
        return None


def transition(current_status, event: BookingEvent) -> Union[Transition, Rejected]:
    """Decide whether `event` is legal from `current_status`"""
    event = BookingEvent(event)
    current = _coerce_status(current_status)

    if current is None:
        return Rejected(str(current_status), event, f"unknown booking status '{current_status}'")

    # Confirming twice is an idempotent success
    if current == BookingStatus.CONFIRMED and event == BookingEvent.CONFIRM:
        return Transition(current, current, no_op=True)

    if current == BookingStatus.COMPLETED and event == BookingEvent.COMPLETE:
        return Rejected(current.value, event, "booking already completed")

    target = _EDGES.get((current, event))
    if target is None:
        return Rejected(current.value, event, f"cannot {event.value} a {current.value} booking")

    return Transition(current, target)


def require_transition(current_status, event: BookingEvent) -> Transition:
    """Like transition(), but raises InvalidTransitionError on rejection"""
    result = transition(current_status, event)
    if isinstance(result, Rejected):
        raise InvalidTransitionError(result.reason, current_status=result.current, event=result.event.value)
    return result


def is_terminal(status) -> bool:
    return _coerce_status(status) in TERMINAL_STATUSES
