"""
Booking reconciliation service - lifecycle changes kept consistent across
the store of record and the Google Calendar schedule.

Ordering rules:
  - the calendar is always written first, the store second, and no store
    transaction is held open across a calendar call
  - every state-affecting store write appends an audit entry in the same
    transaction
  - a calendar success followed by a store failure is reported, never rolled
    back on the calendar side (the drift report picks it up)
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from ...config import DEFAULT_EVENT_END_HOUR, DEFAULT_EVENT_START_HOUR
from ...exceptions import (
    BookingNotFoundError,
    CalendarError,
    CalendarUnavailableError,
    CircuitOpenError,
    InvalidTransitionError,
    PartialFailureError,
    RetryExhaustedError,
    StoreUnavailableError,
)
from ...models import Booking
from ...services.calendar_correlation import CorrelationKey
from ...services.google_calendar_service import BookingEventPayload, CalendarGateway
from ...services.notification_service import DeclineNotifier
from ...utils.timezones import as_utc, at_local_time, local_day_bounds, utcnow
from .audit import (
    ACTION_AGREEMENT_SIGNED,
    ACTION_CALENDAR_CLEANUP_FAILED,
    ACTION_CALENDAR_EVENT_ORPHANED,
    ACTION_COMPLETED,
    ACTION_CONFIRMED,
    ACTION_DECLINED,
    ACTION_DELETED,
    ACTION_EXPIRED,
    AuditContext,
)
from .repository import BookingStore
from .schemas import AgreementSignature
from .state_machine import BookingEvent, BookingStatus, require_transition

logger = logging.getLogger(__name__)

# Errors meaning "the calendar could not be reached or refused the write"
CALENDAR_FAILURES = (CalendarError, RetryExhaustedError, CircuitOpenError)

CALENDAR_UNAVAILABLE_MESSAGE = "calendar service unavailable after retries"


class BookingLocks:
    """
    Per-booking asyncio locks, shared by every service instance in the process.
    Locks are dropped automatically once no coroutine holds a reference.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

    def for_booking(self, booking_id: int) -> asyncio.Lock:
        lock = self._locks.get(booking_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[booking_id] = lock
        return lock


@dataclass
class ConfirmResult:
    booking: Booking
    already_confirmed: bool
    calendar_event_id: Optional[str]
    reused_calendar_event: bool = False


@dataclass
class DeclineResult:
    booking_id: int
    booking_ref: Optional[str]
    previous_status: str
    notified: bool = False
    calendar_events_deleted: int = 0
    calendar_cleanup_failed: bool = False
    deleted: bool = False


def _format_money(value) -> str:
    return f"£{float(value or 0):.2f}"


def build_event_window(booking: Booking) -> tuple[datetime, datetime]:
    """
    Explicit start/end wins; then start + duration; otherwise the event day
    at the default business hours (09:00-17:00 local).
    """
    start = as_utc(booking.start_date)
    end = as_utc(booking.end_date)
    default_start = at_local_time(booking.date, DEFAULT_EVENT_START_HOUR)
    default_end = at_local_time(booking.date, DEFAULT_EVENT_END_HOUR)

    if start and end and end > start:
        return start, end
    if start and booking.duration_hours:
        return start, start + timedelta(hours=booking.duration_hours)
    if start:
        return start, start + (default_end - default_start)
    if end and end > default_start:
        return default_start, end
    return default_start, default_end


def build_event_payload(booking: Booking) -> BookingEventPayload:
    castle = booking.castle_name or "Bouncy Castle"
    key = CorrelationKey(booking.booking_ref)

    lines = [
        "🏰 Bouncy Castle Booking",
        "",
        key.marker,
        f"Customer: {booking.customer_name}",
    ]
    if booking.customer_email:
        lines.append(f"Email: {booking.customer_email}")
    if booking.customer_phone:
        lines.append(f"Phone: {booking.customer_phone}")
    if booking.customer_address:
        lines.append(f"Location: {booking.customer_address}")
    lines.append(f"Castle Type: {castle}")
    lines.append(f"Total: {_format_money(booking.total_price)}")
    lines.append(f"Deposit: {_format_money(booking.deposit)}")
    lines.append(f"Balance due: {_format_money((booking.total_price or 0) - (booking.payment_amount or 0))}")
    if booking.payment_method:
        lines.append(f"Payment: {booking.payment_method}")
    if booking.notes:
        lines.extend(["", f"Notes: {booking.notes}"])

    start, end = build_event_window(booking)
    return BookingEventPayload(
        summary=f"🏰 {booking.customer_name} - {castle}",
        description="\n".join(lines),
        start=start,
        end=end,
        location=booking.customer_address,
    )


def _agreement_details(agreement: AgreementSignature) -> dict:
    return {
        "signedBy": agreement.signed_by,
        "signedAt": as_utc(agreement.signed_at).isoformat(),
        "method": agreement.method,
    }


class ReconciliationService:
    """Service layer for booking lifecycle operations"""

    def __init__(
        self,
        store: BookingStore,
        calendar: CalendarGateway,
        notifier: Optional[DeclineNotifier] = None,
        locks: Optional[BookingLocks] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.calendar = calendar
        self.notifier = notifier
        self.locks = locks or BookingLocks()
        self.clock = clock

    def _load(self, booking_id: int) -> Booking:
        try:
            booking = self.store.get_booking(booking_id)
        except SQLAlchemyError as e:
            logger.error(f"❌ Failed to load booking {booking_id}: {e}")
            raise StoreUnavailableError("booking store unavailable") from e
        if not booking:
            raise BookingNotFoundError("Booking not found")
        return booking

    # ------------------------------------------------------------------
    # Confirm
    # ------------------------------------------------------------------

    async def confirm_booking(
        self,
        booking_id: int,
        agreement: Optional[AgreementSignature] = None,
        context: Optional[AuditContext] = None,
    ) -> ConfirmResult:
        context = context or AuditContext.system("confirm_booking")

        async with self.locks.for_booking(booking_id):
            booking = self._load(booking_id)
            result = require_transition(booking.status, BookingEvent.CONFIRM)

            if result.no_op:
                self._record_late_agreement(booking, agreement, context)
                logger.info(f"ℹ️ Booking {booking.booking_ref} already confirmed")
                return ConfirmResult(booking, already_confirmed=True, calendar_event_id=booking.calendar_event_id)

            booking_ref = booking.booking_ref
            key = CorrelationKey(booking_ref)
            payload = build_event_payload(booking)
            day_start, day_end = local_day_bounds(booking.date)
            search_start, search_end = min(day_start, payload.start), max(day_end, payload.end)
            self.store.end_transaction()

            try:
                existing = await self.calendar.find_booking_event(key, search_start, search_end)
                if existing:
                    event_id, reused = existing.id, True
                    logger.info(f"♻️ Reusing calendar event {event_id} for {booking_ref}")
                else:
                    event_id, reused = await self.calendar.create_booking_event(payload), False
            except CALENDAR_FAILURES as e:
                logger.error(f"❌ Calendar write failed for {booking_ref}, booking left {result.previous.value}: {e}")
                raise CalendarUnavailableError(CALENDAR_UNAVAILABLE_MESSAGE) from e

            try:
                with self.store.atomic():
                    self.store.update_booking_status(booking, result.new_status.value)
                    agreement_recorded = bool(agreement) and self.store.update_booking_agreement(booking, agreement)
                    self.store.link_calendar_event(booking, event_id)
                    details = {
                        "previousStatus": result.previous.value,
                        "calendarEventId": event_id,
                        "reusedCalendarEvent": reused,
                    }
                    if agreement_recorded:
                        details["agreement"] = _agreement_details(agreement)
                    self.store.append_audit_entry(booking_id, booking_ref, ACTION_CONFIRMED, context, details)
            except SQLAlchemyError as e:
                logger.error(f"❌ Calendar event {event_id} created but booking {booking_ref} was not saved: {e}")
                self._record_orphaned_event(booking_id, booking_ref, event_id, context)
                raise PartialFailureError(
                    "booking could not be saved after the calendar event was created",
                    booking_ref=booking_ref,
                    calendar_event_id=event_id,
                ) from e

            logger.info(f"✅ Booking {booking_ref} confirmed (calendar event {event_id})")
            return ConfirmResult(booking, already_confirmed=False, calendar_event_id=event_id, reused_calendar_event=reused)

    def _record_late_agreement(
        self, booking: Booking, agreement: Optional[AgreementSignature], context: AuditContext
    ) -> None:
        """Already confirmed: store the agreement only if none was recorded yet"""
        if not agreement or booking.agreement_signed:
            return
        try:
            with self.store.atomic():
                self.store.update_booking_agreement(booking, agreement)
                self.store.append_audit_entry(
                    booking.id, booking.booking_ref, ACTION_AGREEMENT_SIGNED, context, _agreement_details(agreement)
                )
        except SQLAlchemyError as e:
            raise StoreUnavailableError("booking store unavailable") from e
        logger.info(f"✍️ Agreement recorded for {booking.booking_ref}")

    def _record_orphaned_event(
        self, booking_id: int, booking_ref: str, event_id: str, context: AuditContext
    ) -> None:
        try:
            with self.store.atomic():
                self.store.append_audit_entry(
                    booking_id,
                    booking_ref,
                    ACTION_CALENDAR_EVENT_ORPHANED,
                    context,
                    {"calendarEventId": event_id, "reason": "store write failed after calendar write"},
                )
        except SQLAlchemyError as e:
            logger.error(f"❌ Could not record orphaned calendar event {event_id} for {booking_ref}: {e}")

    # ------------------------------------------------------------------
    # Decline / delete
    # ------------------------------------------------------------------

    async def decline_booking(
        self,
        booking_id: int,
        reason_key: Optional[str] = None,
        note: Optional[str] = None,
        context: Optional[AuditContext] = None,
        delete: bool = False,
    ) -> DeclineResult:
        context = context or AuditContext.system("decline_booking")

        async with self.locks.for_booking(booking_id):
            booking = self._load(booking_id)
            result = require_transition(booking.status, BookingEvent.CANCEL)
            booking_ref = booking.booking_ref
            event_day = booking.date

            try:
                with self.store.atomic():
                    self.store.update_booking_status(booking, result.new_status.value)
                    self.store.append_audit_entry(
                        booking_id,
                        booking_ref,
                        ACTION_DECLINED,
                        context,
                        {"reasonKey": reason_key, "note": note, "previousStatus": result.previous.value},
                    )
            except SQLAlchemyError as e:
                raise StoreUnavailableError("booking store unavailable") from e

            logger.info(f"🚫 Booking {booking_ref} declined ({result.previous.value} → cancelled)")
            outcome = DeclineResult(booking_id, booking_ref, previous_status=result.previous.value)

            if reason_key and self.notifier:
                try:
                    outcome.notified = await self.notifier.send_decline_notice(booking, reason_key)
                except Exception as e:
                    logger.warning(f"⚠️ Decline notice for {booking_ref} failed: {e}")

            if result.previous == BookingStatus.CONFIRMED:
                await self._remove_calendar_events(booking_id, booking_ref, event_day, context, outcome)

            if delete:
                self._delete(booking, context)
                outcome.deleted = True

            return outcome

    async def _remove_calendar_events(self, booking_id, booking_ref, event_day, context, outcome: DeclineResult):
        start, end = local_day_bounds(event_day)
        try:
            outcome.calendar_events_deleted = await self.calendar.delete_booking_events(
                CorrelationKey(booking_ref), start, end
            )
        except CALENDAR_FAILURES as e:
            outcome.calendar_cleanup_failed = True
            logger.warning(f"⚠️ Calendar cleanup failed for {booking_ref}: {e}")
            try:
                with self.store.atomic():
                    self.store.append_audit_entry(
                        booking_id, booking_ref, ACTION_CALENDAR_CLEANUP_FAILED, context, {"error": e.__class__.__name__}
                    )
            except SQLAlchemyError as db_error:
                logger.error(f"❌ Could not record calendar cleanup failure for {booking_ref}: {db_error}")

    async def delete_booking(self, booking_id: int, context: Optional[AuditContext] = None) -> None:
        """Remove a cancelled or expired booking; the audit trail survives the row"""
        context = context or AuditContext.system("delete_booking")
        async with self.locks.for_booking(booking_id):
            booking = self._load(booking_id)
            if booking.status not in (BookingStatus.CANCELLED.value, BookingStatus.EXPIRED.value):
                raise InvalidTransitionError(
                    "only cancelled or expired bookings can be deleted", current_status=booking.status, event="delete"
                )
            self._delete(booking, context)

    def _delete(self, booking: Booking, context: AuditContext) -> None:
        booking_id, booking_ref = booking.id, booking.booking_ref
        try:
            with self.store.atomic():
                self.store.append_audit_entry(
                    booking_id, booking_ref, ACTION_DELETED, context, {"finalStatus": booking.status}
                )
                self.store.delete_booking(booking)
        except SQLAlchemyError as e:
            raise StoreUnavailableError("booking store unavailable") from e
        logger.info(f"🗑️ Booking {booking_ref} deleted")

    # ------------------------------------------------------------------
    # Complete / expire
    # ------------------------------------------------------------------

    async def complete_booking(
        self,
        booking_id: int,
        reason: str,
        context: Optional[AuditContext] = None,
        details: Optional[dict] = None,
    ) -> Booking:
        context = context or AuditContext.system("completion_check")
        return await self._terminal_transition(
            booking_id, BookingEvent.COMPLETE, ACTION_COMPLETED, reason, context, details
        )

    async def manually_complete_booking(
        self,
        booking_id: int,
        reason: str,
        actor: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Booking:
        context = AuditContext.admin(actor, method="manual_completion", ip_address=ip_address, user_agent=user_agent)
        return await self.complete_booking(booking_id, reason, context)

    async def expire_booking(self, booking_id: int, reason: str, context: Optional[AuditContext] = None) -> Booking:
        context = context or AuditContext.system("expiry_check")
        return await self._terminal_transition(booking_id, BookingEvent.EXPIRE, ACTION_EXPIRED, reason, context)

    async def _terminal_transition(
        self,
        booking_id: int,
        event: BookingEvent,
        action: str,
        reason: str,
        context: AuditContext,
        details: Optional[dict] = None,
    ) -> Booking:
        async with self.locks.for_booking(booking_id):
            booking = self._load(booking_id)
            result = require_transition(booking.status, event)
            try:
                with self.store.atomic():
                    self.store.update_booking_status(booking, result.new_status.value)
                    self.store.append_audit_entry(
                        booking_id,
                        booking.booking_ref,
                        action,
                        context,
                        {"reason": reason, "previousStatus": result.previous.value, **(details or {})},
                        timestamp=self.clock(),
                    )
            except SQLAlchemyError as e:
                raise StoreUnavailableError("booking store unavailable") from e

            logger.info(f"✅ Booking {booking.booking_ref}: {result.previous.value} → {result.new_status.value} ({reason})")
            return booking
