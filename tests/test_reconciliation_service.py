import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from booking_engine.domain.bookings.audit import AuditContext
from booking_engine.domain.bookings.repository import BookingStore
from booking_engine.domain.bookings.schemas import AgreementSignature
from booking_engine.domain.bookings.service import BookingLocks, ReconciliationService, build_event_window
from booking_engine.exceptions import (
    BookingNotFoundError,
    CalendarUnavailableError,
    InvalidTransitionError,
    PartialFailureError,
    RetryExhaustedError,
)
from booking_engine.services.calendar_correlation import CorrelationKey
from booking_engine.utils.timezones import as_utc

from conftest import NOW, TODAY, RecordingNotifier

ADMIN = AuditContext.admin("admin@tsb.test", ip_address="198.51.100.7")


def signature(name="Jane Smith"):
    return AgreementSignature(signed_by=name, signed_at=NOW, method="online", ip_address="203.0.113.9")


def actions(store, booking_id):
    return [entry.action for entry in store.get_audit_trail(booking_id)]


# ============================================================================
# CONFIRM
# ============================================================================


@pytest.mark.asyncio
async def test_confirm_creates_event_and_commits_everything_together(service, store, calendar, make_booking):
    booking = make_booking()

    result = await service.confirm_booking(booking.id, agreement=signature(), context=ADMIN)

    assert not result.already_confirmed
    assert booking.status == "confirmed"
    assert booking.calendar_event_id == result.calendar_event_id
    assert booking.agreement_signed
    assert booking.agreement_signed_by == "Jane Smith"

    payload = calendar.created[0]
    assert payload.summary == "🏰 Jane Smith - Princess Palace"
    assert CorrelationKey(booking.booking_ref).matches(payload.description)
    assert "Total: £120.00" in payload.description

    trail = store.get_audit_trail(booking.id)
    assert [e.action for e in trail] == ["confirmed"]
    assert trail[0].actorDetails == "admin@tsb.test"
    assert trail[0].details["previousStatus"] == "pending"
    assert trail[0].details["calendarEventId"] == result.calendar_event_id


def test_default_event_window_is_nine_to_five_london_time(make_booking):
    booking = make_booking()
    start, end = build_event_window(booking)
    # British Summer Time is UTC+1
    assert start == datetime(2025, 6, 15, 8, 0, tzinfo=timezone.utc)
    assert end == datetime(2025, 6, 15, 16, 0, tzinfo=timezone.utc)


def test_event_window_uses_start_and_duration(make_booking):
    start = datetime(2025, 6, 15, 10, 0, tzinfo=timezone.utc)
    booking = make_booking(start_date=start, duration_hours=4)
    window = build_event_window(booking)
    assert (as_utc(window[0]), as_utc(window[1])) == (start, start + timedelta(hours=4))


@pytest.mark.asyncio
async def test_confirm_reuses_existing_event_with_same_reference(service, calendar, make_booking):
    booking = make_booking()
    existing = calendar.add_event(
        f"Booking Ref: {booking.booking_ref}",
        datetime(2025, 6, 15, 8, 0, tzinfo=timezone.utc),
        datetime(2025, 6, 15, 16, 0, tzinfo=timezone.utc),
    )

    result = await service.confirm_booking(booking.id, context=ADMIN)

    assert result.reused_calendar_event
    assert result.calendar_event_id == existing.id
    assert calendar.created == []
    assert len(calendar.events) == 1


@pytest.mark.asyncio
async def test_confirm_twice_is_idempotent(service, store, calendar, make_booking):
    booking = make_booking()
    await service.confirm_booking(booking.id, context=ADMIN)

    second = await service.confirm_booking(booking.id, context=ADMIN)

    assert second.already_confirmed
    assert len(calendar.created) == 1
    assert actions(store, booking.id) == ["confirmed"]


@pytest.mark.asyncio
async def test_concurrent_confirms_create_one_event(service, store, calendar, make_booking):
    booking = make_booking()
    calendar.create_delay = True

    results = await asyncio.gather(
        service.confirm_booking(booking.id, context=ADMIN),
        service.confirm_booking(booking.id, context=ADMIN),
    )

    assert sorted(r.already_confirmed for r in results) == [False, True]
    assert len(calendar.created) == 1
    assert actions(store, booking.id) == ["confirmed"]


@pytest.mark.asyncio
async def test_confirm_from_a_second_session_sees_committed_confirmation(session_factory, calendar, make_booking):
    booking = make_booking()
    booking_id, booking_ref = booking.id, booking.booking_ref
    locks = BookingLocks()
    admin_session, customer_session = session_factory(), session_factory()
    try:
        admin_store, customer_store = BookingStore(admin_session), BookingStore(customer_session)
        # The customer route loads by reference before taking the lock
        assert customer_store.get_booking_by_ref(booking_ref).status == "pending"

        await ReconciliationService(admin_store, calendar, locks=locks).confirm_booking(booking_id, context=ADMIN)
        result = await ReconciliationService(customer_store, calendar, locks=locks).confirm_booking(
            booking_id, agreement=signature(), context=AuditContext.customer("Jane Smith")
        )

        assert result.already_confirmed
        assert len(calendar.created) == 1
        actions_seen = [e.action for e in customer_store.get_audit_trail(booking_id)]
        assert actions_seen.count("confirmed") == 1
    finally:
        admin_session.close()
        customer_session.close()


@pytest.mark.asyncio
async def test_already_confirmed_records_missing_agreement_once(service, store, calendar, make_booking):
    booking = make_booking()
    await service.confirm_booking(booking.id, context=ADMIN)

    await service.confirm_booking(booking.id, agreement=signature(), context=AuditContext.customer("Jane Smith"))
    await service.confirm_booking(booking.id, agreement=signature("Someone Else"), context=AuditContext.customer("x"))

    assert booking.agreement_signed_by == "Jane Smith"
    assert actions(store, booking.id) == ["confirmed", "agreement_signed"]
    assert len(calendar.created) == 1


@pytest.mark.asyncio
async def test_calendar_outage_leaves_store_untouched(service, store, calendar, make_booking):
    booking = make_booking()
    calendar.fail_creates_with = RetryExhaustedError("create calendar event", 3, ConnectionError("reset"))

    with pytest.raises(CalendarUnavailableError) as exc_info:
        await service.confirm_booking(booking.id, agreement=signature(), context=ADMIN)

    assert exc_info.value.message == "calendar service unavailable after retries"
    assert store.get_booking(booking.id).status == "pending"
    assert not store.get_booking(booking.id).agreement_signed
    assert actions(store, booking.id) == []


@pytest.mark.asyncio
async def test_store_failure_after_calendar_write_is_reported(service, store, calendar, make_booking, monkeypatch):
    booking = make_booking()

    def broken_link(*args, **kwargs):
        raise OperationalError("UPDATE bookings", {}, Exception("database is locked"))

    monkeypatch.setattr(store, "link_calendar_event", broken_link)

    with pytest.raises(PartialFailureError) as exc_info:
        await service.confirm_booking(booking.id, context=ADMIN)

    event_id = exc_info.value.calendar_event_id
    assert event_id in calendar.events
    assert store.get_booking(booking.id).status == "pending"

    trail = store.get_audit_trail(booking.id)
    assert [e.action for e in trail] == ["calendar_event_orphaned"]
    assert trail[0].details["calendarEventId"] == event_id


@pytest.mark.asyncio
async def test_confirm_rejects_terminal_and_missing_bookings(service, make_booking):
    booking = make_booking(status="completed")

    with pytest.raises(InvalidTransitionError):
        await service.confirm_booking(booking.id, context=ADMIN)
    with pytest.raises(BookingNotFoundError):
        await service.confirm_booking(9999, context=ADMIN)


# ============================================================================
# DECLINE / DELETE
# ============================================================================


@pytest.mark.asyncio
async def test_declining_pending_booking_with_reason(service, store, calendar, notifier, make_booking):
    for _ in range(4):
        make_booking()
    booking = make_booking()
    assert booking.booking_ref == "TS005"

    result = await service.decline_booking(booking.id, reason_key="distance_too_far", context=ADMIN)

    assert store.get_booking(booking.id).status == "cancelled"
    trail = store.get_audit_trail(booking.id)
    assert [e.action for e in trail] == ["declined"]
    assert trail[0].details["reasonKey"] == "distance_too_far"
    assert trail[0].details["previousStatus"] == "pending"
    assert calendar.created == []
    assert calendar.list_calls == 0
    assert notifier.sent == [("TS005", "distance_too_far")]
    assert result.notified


@pytest.mark.asyncio
async def test_declining_confirmed_booking_removes_its_calendar_events(service, store, calendar, make_booking):
    booking = make_booking()
    await service.confirm_booking(booking.id, context=ADMIN)
    other = make_booking()
    await service.confirm_booking(other.id, context=ADMIN)

    result = await service.decline_booking(booking.id, context=ADMIN)

    assert result.calendar_events_deleted == 1
    assert [e.description for e in calendar.events.values()] == [calendar.created[1].description]


@pytest.mark.asyncio
async def test_calendar_cleanup_failure_is_audited_not_raised(service, store, calendar, make_booking, calendar_outage):
    booking = make_booking()
    await service.confirm_booking(booking.id, context=ADMIN)
    calendar.fail_with = calendar_outage

    result = await service.decline_booking(booking.id, context=ADMIN)

    assert result.calendar_cleanup_failed
    assert store.get_booking(booking.id).status == "cancelled"
    assert actions(store, booking.id) == ["confirmed", "declined", "calendar_cleanup_failed"]


@pytest.mark.asyncio
async def test_notifier_failure_does_not_block_decline(store, calendar, make_booking):
    service = ReconciliationService(store, calendar, notifier=RecordingNotifier(fail=True))
    booking = make_booking()

    result = await service.decline_booking(booking.id, reason_key="weather", context=ADMIN)

    assert not result.notified
    assert store.get_booking(booking.id).status == "cancelled"


@pytest.mark.asyncio
async def test_decline_and_delete_keeps_audit_trail(service, store, make_booking):
    booking = make_booking()
    booking_id = booking.id

    result = await service.decline_booking(booking_id, reason_key="date_unavailable", context=ADMIN, delete=True)

    assert result.deleted
    assert store.get_booking(booking_id) is None
    assert actions(store, booking_id) == ["declined", "deleted"]


@pytest.mark.asyncio
async def test_only_cancelled_or_expired_bookings_can_be_deleted(service, make_booking):
    booking = make_booking(status="confirmed")
    with pytest.raises(InvalidTransitionError):
        await service.delete_booking(booking.id, context=ADMIN)


@pytest.mark.asyncio
async def test_decline_of_completed_booking_is_rejected(service, make_booking):
    booking = make_booking(status="completed")
    with pytest.raises(InvalidTransitionError):
        await service.decline_booking(booking.id, context=ADMIN)


# ============================================================================
# COMPLETE / EXPIRE
# ============================================================================


@pytest.mark.asyncio
async def test_manual_completion_records_admin(service, store, make_booking):
    booking = make_booking(status="confirmed")

    await service.manually_complete_booking(booking.id, "collected early", actor="admin@tsb.test")

    trail = store.get_audit_trail(booking.id)
    assert booking.status == "completed"
    assert trail[-1].action == "completed"
    assert trail[-1].actor == "admin"
    assert trail[-1].method == "manual_completion"
    assert trail[-1].details["reason"] == "collected early"


@pytest.mark.asyncio
async def test_completing_twice_reports_already_completed(service, make_booking):
    booking = make_booking(status="confirmed")
    await service.complete_booking(booking.id, "event ended")

    with pytest.raises(InvalidTransitionError) as exc_info:
        await service.complete_booking(booking.id, "event ended")
    assert exc_info.value.message == "booking already completed"


@pytest.mark.asyncio
async def test_pending_booking_cannot_be_completed(service, make_booking):
    booking = make_booking()
    with pytest.raises(InvalidTransitionError):
        await service.complete_booking(booking.id, "event ended")


@pytest.mark.asyncio
async def test_expire_pending_booking(service, store, make_booking):
    booking = make_booking(date=TODAY - timedelta(days=3))

    await service.expire_booking(booking.id, "event date passed")

    assert booking.status == "expired"
    assert actions(store, booking.id) == ["expired"]
