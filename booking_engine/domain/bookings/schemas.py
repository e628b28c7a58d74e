"""Booking domain schemas - Pydantic models for validation"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel


@dataclass(frozen=True)
class AgreementSignature:
    """Evidence captured when a hire agreement is signed"""

    signed_by: str
    signed_at: datetime
    method: str = "online"
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class ConfirmBookingRequest(BaseModel):
    """Admin confirmation; optionally records a manual agreement signature"""

    agreementSigned: bool = False
    agreementSignedBy: Optional[str] = None
    agreementMethod: str = "manual"


class CustomerConfirmRequest(BaseModel):
    """Customer signing the hire agreement online"""

    customerName: str
    agreementAccepted: bool


class DeclineBookingRequest(BaseModel):
    reasonKey: Optional[str] = None
    note: Optional[str] = None
    deleteBooking: bool = False


class CompleteBookingRequest(BaseModel):
    reason: str = "manually completed by admin"


class BookingResponse(BaseModel):
    id: int
    bookingRef: Optional[str]
    status: str
    paymentStatus: str
    customerName: str
    castleName: Optional[str] = None
    eventDate: date
    calendarEventId: Optional[str] = None
    agreementSigned: bool = False
    agreementSignedAt: Optional[datetime] = None

    @classmethod
    def from_model(cls, booking) -> "BookingResponse":
        return cls(
            id=booking.id,
            bookingRef=booking.booking_ref,
            status=booking.status,
            paymentStatus=booking.payment_status,
            customerName=booking.customer_name,
            castleName=booking.castle_name,
            eventDate=booking.date,
            calendarEventId=booking.calendar_event_id,
            agreementSigned=bool(booking.agreement_signed),
            agreementSignedAt=booking.agreement_signed_at,
        )


class ActionResponse(BaseModel):
    success: bool = True
    message: str
    booking: Optional[BookingResponse] = None
    alreadyConfirmed: bool = False
    calendarEventId: Optional[str] = None
