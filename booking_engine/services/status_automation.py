"""
Automated status transitions for bookings
Handles confirmed → completed once the hire has ended, and pending → expired
once the event day has passed without confirmation.
Should be run as a scheduled job (see worker.py) or triggered by an admin.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Optional

from ..config import DEFAULT_EVENT_END_HOUR
from ..domain.bookings.audit import AuditContext
from ..domain.bookings.repository import BookingStore
from ..domain.bookings.service import CALENDAR_FAILURES, ReconciliationService
from ..domain.bookings.state_machine import BookingStatus
from ..utils.timezones import as_utc, at_local_time, local_day_bounds, local_today, utcnow
from .calendar_correlation import CorrelationKey
from .google_calendar_service import CalendarGateway

logger = logging.getLogger(__name__)

SOURCE_EXPLICIT_END_DATE = "explicit_end_date"
SOURCE_CALENDAR_EVENT = "calendar_event"
SOURCE_DEFAULT_FALLBACK = "default_fallback"

SOURCE_LABELS = {
    SOURCE_EXPLICIT_END_DATE: "explicit end date",
    SOURCE_CALENDAR_EVENT: "calendar event",
    SOURCE_DEFAULT_FALLBACK: f"default {DEFAULT_EVENT_END_HOUR:02d}:00",
}


@dataclass(frozen=True)
class _Candidate:
    """Plain copy of the fields the sweep needs, detached from the session"""

    id: int
    booking_ref: str
    customer_name: str
    date: date
    end_date: Optional[datetime]


@dataclass
class SweepSummary:
    total_checked: int = 0
    transitions_completed: int = 0
    transitions: list = field(default_factory=list)
    errors: list = field(default_factory=list)
    calendar_lookup_failures: int = 0

    def as_dict(self) -> dict:
        return {
            "totalChecked": self.total_checked,
            "transitionsCompleted": self.transitions_completed,
            "transitions": self.transitions,
            "errors": self.errors,
            "calendarLookupFailures": self.calendar_lookup_failures,
        }


def _candidates(store: BookingStore, status: BookingStatus) -> list[_Candidate]:
    return [
        _Candidate(b.id, b.booking_ref, b.customer_name, b.date, as_utc(b.end_date))
        for b in store.get_bookings_by_status(status.value)
    ]


class CompletionSweeper:
    def __init__(
        self,
        store: BookingStore,
        calendar: CalendarGateway,
        service: ReconciliationService,
        concurrency: int = 4,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.calendar = calendar
        self.service = service
        self.concurrency = max(1, concurrency)
        self.clock = clock

    async def resolve_end_time(self, candidate: _Candidate, summary: Optional[SweepSummary] = None):
        """
        End instant of a hire, in priority order: explicit end date, end of the
        matching calendar event, then the event day at the default end hour.
        Returns (end_time, source).
        """
        if candidate.end_date:
            return candidate.end_date, SOURCE_EXPLICIT_END_DATE

        day_start, day_end = local_day_bounds(candidate.date)
        try:
            event = await self.calendar.find_booking_event(CorrelationKey(candidate.booking_ref), day_start, day_end)
        except CALENDAR_FAILURES as e:
            logger.warning(f"⚠️ Calendar lookup failed for {candidate.booking_ref}, using default end time: {e}")
            if summary is not None:
                summary.calendar_lookup_failures += 1
            event = None

        if event and event.end:
            return event.end, SOURCE_CALENDAR_EVENT

        return at_local_time(candidate.date, DEFAULT_EVENT_END_HOUR), SOURCE_DEFAULT_FALLBACK

    async def run(self) -> SweepSummary:
        """Complete every confirmed booking whose hire has ended"""
        now = self.clock()
        summary = SweepSummary()
        candidates = _candidates(self.store, BookingStatus.CONFIRMED)
        self.store.end_transaction()
        summary.total_checked = len(candidates)

        semaphore = asyncio.Semaphore(self.concurrency)

        async def check(candidate: _Candidate):
            async with semaphore:
                try:
                    await self._check_one(candidate, now, summary)
                except Exception as e:
                    logger.error(f"❌ Completion check failed for {candidate.booking_ref}: {e}")
                    summary.errors.append({"bookingId": candidate.id, "bookingRef": candidate.booking_ref, "error": str(e)})

        await asyncio.gather(*(check(c) for c in candidates))

        if summary.transitions_completed:
            logger.info(
                f"📊 Completion sweep: {summary.transitions_completed}/{summary.total_checked} bookings completed"
            )
        else:
            logger.debug("ℹ️ No bookings needed completing")
        return summary

    async def _check_one(self, candidate: _Candidate, now: datetime, summary: SweepSummary) -> None:
        end_time, source = await self.resolve_end_time(candidate, summary)
        if end_time > now:
            return

        reason = f"Event ended at {end_time.isoformat()} ({SOURCE_LABELS[source]})"
        await self.service.complete_booking(
            candidate.id,
            reason,
            AuditContext.system("completion_check", details="completion sweep"),
            details={"endTimeSource": source, "endTime": end_time.isoformat()},
        )
        summary.transitions_completed += 1
        summary.transitions.append(
            {
                "bookingId": candidate.id,
                "bookingRef": candidate.booking_ref,
                "fromStatus": BookingStatus.CONFIRMED.value,
                "toStatus": BookingStatus.COMPLETED.value,
                "reason": reason,
                "endTimeSource": source,
            }
        )

    def upcoming_transitions(self, hours_ahead: int = 24) -> list[dict]:
        """
        Confirmed bookings expected to complete within the next `hours_ahead` hours.
        Uses the explicit end date or the default end time, without calendar calls.
        """
        now = self.clock()
        cutoff = now + timedelta(hours=hours_ahead)
        upcoming = []

        for candidate in _candidates(self.store, BookingStatus.CONFIRMED):
            if candidate.end_date:
                end_time, source = candidate.end_date, SOURCE_EXPLICIT_END_DATE
            else:
                end_time, source = at_local_time(candidate.date, DEFAULT_EVENT_END_HOUR), SOURCE_DEFAULT_FALLBACK

            if now < end_time <= cutoff:
                upcoming.append(
                    {
                        "bookingId": candidate.id,
                        "bookingRef": candidate.booking_ref,
                        "customerName": candidate.customer_name,
                        "expectedTransitionTime": end_time.isoformat(),
                        "minutesUntilTransition": round((end_time - now).total_seconds() / 60),
                        "endTimeSource": source,
                    }
                )

        upcoming.sort(key=lambda item: item["expectedTransitionTime"])
        return upcoming

    async def expire_stale_pending(self) -> dict:
        """Pending bookings whose event day has passed are moved to expired"""
        today = local_today(self.clock())
        stale = [c for c in _candidates(self.store, BookingStatus.PENDING) if c.date < today]
        self.store.end_transaction()

        summary = {"totalChecked": len(stale), "expired": 0, "expiredRefs": [], "errors": []}
        context = AuditContext.system("expiry_check", details="expiry sweep")

        for candidate in stale:
            try:
                await self.service.expire_booking(
                    candidate.id, f"Event date {candidate.date.isoformat()} passed without confirmation", context
                )
            except Exception as e:
                logger.error(f"❌ Failed to expire {candidate.booking_ref}: {e}")
                summary["errors"].append({"bookingRef": candidate.booking_ref, "error": str(e)})
                continue
            summary["expired"] += 1
            summary["expiredRefs"].append(candidate.booking_ref)

        if summary["expired"]:
            logger.info(f"📊 Expired {summary['expired']} stale pending booking(s)")
        return summary
