import pytest

from booking_engine.domain.bookings.audit import AuditContext
from booking_engine.exceptions import AuditTrailImmutableError
from booking_engine.models import BookingAuditEntry


def test_entries_are_returned_in_insertion_order(store, db, make_booking):
    booking = make_booking()
    with store.atomic():
        store.append_audit_entry(booking.id, booking.booking_ref, "confirmed", AuditContext.admin("admin"))
        store.append_audit_entry(
            booking.id, booking.booking_ref, "payment_status_update", AuditContext.system("payment_webhook"),
            {"newStatus": "deposit_paid"},
        )

    trail = store.get_audit_trail(booking.id)

    assert [e.action for e in trail] == ["confirmed", "payment_status_update"]
    assert trail[0].actor == "admin"
    assert trail[1].details == {"newStatus": "deposit_paid"}


def test_persisted_shape_uses_camel_case(store, make_booking):
    booking = make_booking()
    context = AuditContext.customer("Jane Smith", ip_address="203.0.113.9", user_agent="Mozilla/5.0")
    with store.atomic():
        store.append_audit_entry(booking.id, booking.booking_ref, "agreement_signed", context)

    dumped = store.get_audit_trail(booking.id)[0].model_dump()

    assert set(dumped) == {
        "timestamp", "action", "actor", "actorDetails", "method", "ipAddress", "userAgent", "details",
    }
    assert dumped["actorDetails"] == "Jane Smith"
    assert dumped["method"] == "online_agreement"
    assert dumped["ipAddress"] == "203.0.113.9"


def test_entries_cannot_be_modified(store, db, make_booking):
    booking = make_booking()
    with store.atomic():
        store.append_audit_entry(booking.id, booking.booking_ref, "confirmed", AuditContext.admin("admin"))

    entry = db.query(BookingAuditEntry).first()
    entry.action = "tampered"
    with pytest.raises(AuditTrailImmutableError):
        db.flush()
    db.rollback()


def test_entries_cannot_be_deleted(store, db, make_booking):
    booking = make_booking()
    with store.atomic():
        store.append_audit_entry(booking.id, booking.booking_ref, "confirmed", AuditContext.admin("admin"))

    db.delete(db.query(BookingAuditEntry).first())
    with pytest.raises(AuditTrailImmutableError):
        db.flush()
    db.rollback()


def test_trail_survives_booking_deletion(store, make_booking):
    booking = make_booking(status="cancelled")
    booking_id = booking.id
    with store.atomic():
        store.append_audit_entry(booking_id, booking.booking_ref, "deleted", AuditContext.admin("admin"))
        store.delete_booking(booking)

    assert store.get_booking(booking_id) is None
    assert [e.action for e in store.get_audit_trail(booking_id)] == ["deleted"]


def test_booking_refs_follow_ids(make_booking):
    first = make_booking()
    second = make_booking()
    assert first.booking_ref == f"TS{first.id:03d}"
    assert second.booking_ref == f"TS{second.id:03d}"
