"""
Drift report between the booking store and the calendar.

Read-only: lists disagreements for an admin to resolve, never repairs them.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import date, timedelta
from typing import Callable, Optional

from ..domain.bookings.repository import BookingStore
from ..domain.bookings.state_machine import BookingStatus
from ..utils.timezones import local_day_bounds, local_today, utcnow
from .calendar_correlation import extract_booking_refs
from .google_calendar_service import CalendarGateway

logger = logging.getLogger(__name__)

ORPHANED_CALENDAR_EVENT = "orphaned_calendar_event"
MISSING_CALENDAR_EVENT = "missing_calendar_event"
CALENDAR_LINK_MISMATCH = "calendar_link_mismatch"

# Statuses that should have a live calendar event
SCHEDULED_STATUSES = frozenset({BookingStatus.CONFIRMED.value, BookingStatus.COMPLETED.value})


@dataclass
class DriftFinding:
    kind: str
    booking_ref: Optional[str]
    calendar_event_id: Optional[str] = None
    booking_status: Optional[str] = None
    detail: str = ""


class DriftDetector:
    def __init__(
        self,
        store: BookingStore,
        calendar: CalendarGateway,
        days_back: int = 30,
        days_ahead: int = 90,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.calendar = calendar
        self.days_back = days_back
        self.days_ahead = days_ahead
        self.clock = clock

    async def scan(self, start_day: Optional[date] = None, end_day: Optional[date] = None) -> dict:
        today = local_today(self.clock())
        start_day = start_day or today - timedelta(days=self.days_back)
        end_day = end_day or today + timedelta(days=self.days_ahead)

        bookings = {b.booking_ref: b for b in self.store.get_bookings_between(start_day, end_day)}
        range_start, _ = local_day_bounds(start_day)
        _, range_end = local_day_bounds(end_day)
        events = await self.calendar.get_events_in_range(range_start, range_end)

        findings: list[DriftFinding] = []
        events_by_ref: dict[str, list] = {}

        for event in events:
            if event.status == "cancelled":
                continue
            for ref in extract_booking_refs(event.description):
                events_by_ref.setdefault(ref, []).append(event)
                booking = bookings.get(ref) or self.store.get_booking_by_ref(ref)
                if booking is None:
                    findings.append(
                        DriftFinding(ORPHANED_CALENDAR_EVENT, ref, event.id, None, "no booking with this reference")
                    )
                elif booking.status not in SCHEDULED_STATUSES:
                    findings.append(
                        DriftFinding(
                            ORPHANED_CALENDAR_EVENT,
                            ref,
                            event.id,
                            booking.status,
                            f"calendar event exists for a {booking.status} booking",
                        )
                    )

        for ref, booking in bookings.items():
            if booking.status != BookingStatus.CONFIRMED.value:
                continue
            matched = events_by_ref.get(ref, [])
            if not matched:
                findings.append(
                    DriftFinding(
                        MISSING_CALENDAR_EVENT,
                        ref,
                        booking.calendar_event_id,
                        booking.status,
                        "confirmed booking has no calendar event",
                    )
                )
            elif booking.calendar_event_id and booking.calendar_event_id not in {e.id for e in matched}:
                findings.append(
                    DriftFinding(
                        CALENDAR_LINK_MISMATCH,
                        ref,
                        booking.calendar_event_id,
                        booking.status,
                        f"linked event differs from calendar event(s) {', '.join(e.id for e in matched)}",
                    )
                )

        if findings:
            logger.warning(f"⚠️ Drift report: {len(findings)} finding(s) between {start_day} and {end_day}")
        else:
            logger.info(f"✅ No drift between store and calendar ({start_day} to {end_day})")

        return {
            "windowStart": start_day.isoformat(),
            "windowEnd": end_day.isoformat(),
            "bookingsChecked": len(bookings),
            "eventsChecked": len(events),
            "findings": [asdict(f) for f in findings],
        }
