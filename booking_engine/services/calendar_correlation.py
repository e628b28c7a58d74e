"""
Correlation between bookings and calendar events.

A calendar event belongs to a booking when its description carries the
marker "Booking Ref: <ref>" and the reference is not followed by another
alphanumeric character (so TS005 never matches an event for TS0051).
"""

import re
from dataclasses import dataclass
from typing import Optional

MARKER_PREFIX = "Booking Ref:"

_REF_PATTERN = re.compile(r"Booking Ref:\s*([0-9A-Za-z]+)")


@dataclass(frozen=True)
class CorrelationKey:
    booking_ref: str

    def __post_init__(self):
        if not self.booking_ref or not self.booking_ref.strip():
            raise ValueError("booking_ref is required for a correlation key")

    @property
    def marker(self) -> str:
        return f"{MARKER_PREFIX} {self.booking_ref}"

    def matches(self, description: Optional[str]) -> bool:
        if not description:
            return False
        pattern = re.escape(self.marker) + r"(?![0-9A-Za-z])"
        return re.search(pattern, description) is not None


def extract_booking_refs(description: Optional[str]) -> list[str]:
    """All booking references mentioned by markers in an event description"""
    if not description:
        return []
    return _REF_PATTERN.findall(description)
