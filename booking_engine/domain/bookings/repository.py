"""Booking store - Database operations for bookings and their audit trail"""

import logging
from contextlib import contextmanager
from datetime import date
from typing import Iterator, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models import Booking, BookingAuditEntry
from ...utils.timezones import utcnow
from ..payments.schemas import PaymentStatusUpdate
from .audit import AuditContext, AuditEntry
from .schemas import AgreementSignature

logger = logging.getLogger(__name__)


def format_booking_ref(booking_id: int) -> str:
    """TS + id zero-padded to three digits (TS001, TS042, TS1234)"""
    return f"TS{booking_id:03d}"


class BookingStore:
    """
    Store of record for bookings.

    Mutating methods only flush; the caller decides the transaction boundary
    with atomic() so a status change and its audit entry commit together.
    """

    def __init__(self, db: Session):
        self.db = db

    @contextmanager
    def atomic(self) -> Iterator["BookingStore"]:
        """Commit on success, roll back and re-raise on any error"""
        try:
            yield self
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    # populate_existing: a booking already in the session is refreshed from the
    # row, so a status committed by another session is seen after a lock wait
    def get_booking(self, booking_id: int) -> Optional[Booking]:
        return self.db.query(Booking).populate_existing().filter(Booking.id == booking_id).first()

    def get_booking_by_ref(self, booking_ref: str) -> Optional[Booking]:
        return self.db.query(Booking).populate_existing().filter(Booking.booking_ref == booking_ref).first()

    def get_bookings_by_status(self, status: str) -> list[Booking]:
        return (
            self.db.query(Booking)
            .filter(Booking.status == status)
            .order_by(Booking.date.asc(), Booking.id.asc())
            .all()
        )

    def get_bookings_between(self, start: date, end: date, status: Optional[str] = None) -> list[Booking]:
        """Bookings whose event day falls in [start, end]"""
        query = self.db.query(Booking).filter(Booking.date >= start, Booking.date <= end)
        if status:
            query = query.filter(Booking.status == status)
        return query.order_by(Booking.date.asc(), Booking.id.asc()).all()

    def count_by_status(self) -> dict[str, int]:
        rows = self.db.query(Booking.status, func.count(Booking.id)).group_by(Booking.status).all()
        return {status: count for status, count in rows}

    def get_audit_trail(self, booking_id: int) -> list[AuditEntry]:
        rows = (
            self.db.query(BookingAuditEntry)
            .filter(BookingAuditEntry.booking_id == booking_id)
            .order_by(BookingAuditEntry.id.asc())
            .all()
        )
        return [AuditEntry.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Writes (flush only)
    # ------------------------------------------------------------------

    def create_booking(self, **booking_data) -> Booking:
        """Insert a booking and assign its permanent reference from the new id"""
        booking = Booking(**booking_data)
        booking.status = booking_data.get("status") or "pending"
        booking.payment_status = booking_data.get("payment_status") or "pending"
        self.db.add(booking)
        self.db.flush()
        if not booking.booking_ref:
            booking.booking_ref = format_booking_ref(booking.id)
            self.db.flush()
        logger.info(f"📥 Booking created: {booking.booking_ref}")
        return booking

    def update_booking_status(self, booking: Booking, status: str) -> Booking:
        booking.status = status
        self.db.flush()
        return booking

    def update_booking_agreement(
        self, booking: Booking, signature: AgreementSignature, override: bool = False
    ) -> bool:
        """
        Record the agreement evidence.
        Returns False without writing if one is already recorded and override is not set.
        """
        if booking.agreement_signed and not override:
            return False
        booking.agreement_signed = True
        booking.agreement_signed_at = signature.signed_at
        booking.agreement_signed_by = signature.signed_by
        booking.agreement_signed_method = signature.method
        booking.agreement_ip_address = signature.ip_address
        booking.agreement_user_agent = signature.user_agent
        self.db.flush()
        return True

    def link_calendar_event(self, booking: Booking, event_id: Optional[str]) -> Booking:
        booking.calendar_event_id = event_id
        self.db.flush()
        return booking

    def update_booking_payment_status(self, booking_ref: str, update: PaymentStatusUpdate) -> Optional[Booking]:
        booking = self.get_booking_by_ref(booking_ref)
        if not booking:
            return None
        booking.payment_status = update.payment_status.value
        if update.payment_intent_id is not None:
            booking.payment_intent_id = update.payment_intent_id
        if update.payment_amount is not None:
            booking.payment_amount = update.payment_amount
        if update.payment_type is not None:
            booking.payment_type = update.payment_type
        booking.payment_failure_reason = update.failure_reason
        if update.payment_date is not None:
            booking.payment_date = update.payment_date
        self.db.flush()
        return booking

    def append_audit_entry(
        self,
        booking_id: int,
        booking_ref: Optional[str],
        action: str,
        context: AuditContext,
        details: Optional[dict] = None,
        timestamp=None,
    ) -> BookingAuditEntry:
        entry = BookingAuditEntry(
            booking_id=booking_id,
            booking_ref=booking_ref,
            timestamp=timestamp or utcnow(),
            action=action,
            actor=context.actor,
            actor_details=context.actor_details,
            method=context.method,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            details={**context.extra, **(details or {})},
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def end_transaction(self) -> None:
        """Close the implicit read transaction before slow external I/O"""
        self.db.commit()

    def delete_booking(self, booking: Booking) -> None:
        """Remove the booking row; its audit entries stay"""
        self.db.delete(booking)
        self.db.flush()
