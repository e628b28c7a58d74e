"""
Customer notifications for declined bookings.

Email composition and delivery live outside this service; a sender coroutine
`(to, subject, body) -> Any` is injected. Without one the notice is only logged.
"""

import logging
from typing import Any, Awaitable, Callable, Optional

from ..models import Booking

logger = logging.getLogger(__name__)

EmailSender = Callable[[str, str, str], Awaitable[Any]]

DECLINE_REASONS = {
    "distance_too_far": "Unfortunately your address is outside our delivery area.",
    "date_unavailable": "Unfortunately we have no castles available on your chosen date.",
    "castle_unavailable": "Unfortunately the castle you chose is unavailable on that date.",
    "weather": "Unfortunately the weather forecast makes the hire unsafe.",
    "incomplete_details": "Unfortunately we could not confirm your booking details.",
}


def describe_decline_reason(reason_key: str) -> str:
    return DECLINE_REASONS.get(reason_key, "Unfortunately we are unable to accept your booking.")


class DeclineNotifier:
    def __init__(self, email_sender: Optional[EmailSender] = None):
        self.email_sender = email_sender

    async def send_decline_notice(self, booking: Booking, reason_key: str) -> bool:
        """Returns True when a message was handed to the sender"""
        subject = f"Your booking {booking.booking_ref} could not be accepted"
        body = (
            f"Hi {booking.customer_name},\n\n"
            f"{describe_decline_reason(reason_key)}\n\n"
            f"Booking Ref: {booking.booking_ref}\n"
            f"Date: {booking.date.isoformat()}\n"
        )

        if not self.email_sender:
            logger.info(f"📧 No email sender configured - decline notice for {booking.booking_ref} not sent")
            return False

        await self.email_sender(booking.customer_email, subject, body)
        logger.info(f"📧 Decline notice sent for {booking.booking_ref} ({reason_key})")
        return True
