from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    event,
)
from sqlalchemy.sql import func

from .database import Base
from .exceptions import AuditTrailImmutableError


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    # Human friendly reference (TS001, TS002...) - assigned once on creation, never changed
    booking_ref = Column(String(20), unique=True, index=True, nullable=True)
    customer_name = Column(String(255), nullable=False)
    customer_email = Column(String(255), nullable=False)
    customer_phone = Column(String(50), nullable=True)
    customer_address = Column(Text, nullable=True)
    castle_id = Column(Integer, nullable=True)
    castle_name = Column(String(255), nullable=True)

    # Lifecycle: pending → confirmed → completed, pending/confirmed → cancelled, pending → expired
    status = Column(String(20), default="pending", nullable=False, index=True)

    # Scheduling - date is the hire day, start/end are optional explicit instants
    date = Column(Date, nullable=False)
    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    duration_hours = Column(Integer, nullable=True)

    # Pricing (GBP, whole pounds)
    payment_method = Column(String(50), nullable=True)  # cash, card, online
    total_price = Column(Float, nullable=False, default=0)
    deposit = Column(Float, nullable=False, default=0)
    notes = Column(Text, nullable=True)

    # Payment sub-state - independent of lifecycle status
    payment_status = Column(String(20), default="pending", nullable=False)
    payment_intent_id = Column(String(255), nullable=True, index=True)
    payment_amount = Column(Float, nullable=True)  # total received to date
    payment_type = Column(String(20), nullable=True)  # deposit, full
    payment_failure_reason = Column(Text, nullable=True)
    payment_date = Column(DateTime(timezone=True), nullable=True)

    # Hire agreement evidence - written once when signed
    agreement_signed = Column(Boolean, default=False, nullable=False)
    agreement_signed_at = Column(DateTime(timezone=True), nullable=True)
    agreement_signed_by = Column(String(255), nullable=True)
    agreement_signed_method = Column(String(50), nullable=True)
    agreement_ip_address = Column(String(100), nullable=True)
    agreement_user_agent = Column(Text, nullable=True)

    # Soft link to the Google Calendar event (may be missing or stale)
    calendar_event_id = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class BookingAuditEntry(Base):
    """
    Append-only audit log.

    Keyed by booking id without a foreign key so entries outlive the booking
    row (declined bookings may be deleted after cancellation).
    """

    __tablename__ = "booking_audit_entries"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, nullable=False, index=True)
    booking_ref = Column(String(20), nullable=True, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    action = Column(String(100), nullable=False)
    actor = Column(String(20), nullable=False)  # admin, customer, system
    actor_details = Column(String(255), nullable=False)
    method = Column(String(100), nullable=False)
    ip_address = Column(String(100), nullable=True)
    user_agent = Column(Text, nullable=True)
    details = Column(JSON, default=dict, nullable=False)


@event.listens_for(BookingAuditEntry, "before_update")
def _reject_audit_update(_mapper, _connection, target):
    raise AuditTrailImmutableError(f"Audit entry {target.id} cannot be modified")


@event.listens_for(BookingAuditEntry, "before_delete")
def _reject_audit_delete(_mapper, _connection, target):
    raise AuditTrailImmutableError(f"Audit entry {target.id} cannot be deleted")
