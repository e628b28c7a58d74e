"""
Payment reconciliation - applies payment provider events to a booking's
payment sub-state. Lifecycle status is never touched here.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from ...exceptions import StoreUnavailableError
from ...models import Booking
from ...utils.timezones import utcnow
from ..bookings.audit import ACTION_PAYMENT_STATUS_UPDATE, AuditContext
from ..bookings.repository import BookingStore
from .schemas import PaymentApplication, PaymentEventType, PaymentStatus, PaymentStatusUpdate

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = frozenset({PaymentStatus.DEPOSIT_PAID.value, PaymentStatus.PAID_FULL.value})

WEBHOOK_CONTEXT = AuditContext.system(method="payment_webhook", details="payment provider")


def _resolve_success_status(booking: Booking, cumulative: float, payment_type: Optional[str]) -> PaymentStatus:
    """Explicit payment type metadata wins; otherwise compare what was paid against the price"""
    if payment_type == "full":
        return PaymentStatus.PAID_FULL
    if payment_type == "deposit":
        return PaymentStatus.DEPOSIT_PAID
    total = booking.total_price or 0
    if total > 0 and cumulative >= total:
        return PaymentStatus.PAID_FULL
    return PaymentStatus.DEPOSIT_PAID


class PaymentReconciler:
    def __init__(self, store: BookingStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    def _already_applied(self, booking: Booking, event_type: PaymentEventType, provider_payment_id: str) -> bool:
        """Has this exact provider event already been applied to the booking?"""
        for entry in self.store.get_audit_trail(booking.id):
            if entry.action != ACTION_PAYMENT_STATUS_UPDATE:
                continue
            if (
                entry.details.get("paymentIntentId") == provider_payment_id
                and entry.details.get("eventType") == event_type.value
            ):
                return True
        return False

    def apply_payment_event(
        self,
        booking_ref: str,
        event_type: PaymentEventType,
        amount: float,
        provider_payment_id: str,
        failure_reason: Optional[str] = None,
        payment_type: Optional[str] = None,
    ) -> PaymentApplication:
        """
        Apply one provider event.

        Raises:
            StoreUnavailableError: the store could not be read or written, so the
                provider should retry delivery
        """
        event_type = PaymentEventType(event_type)
        try:
            return self._apply(booking_ref, event_type, amount, provider_payment_id, failure_reason, payment_type)
        except SQLAlchemyError as e:
            logger.error(f"❌ Payment update for {booking_ref} failed: {e}")
            raise StoreUnavailableError("booking store unavailable") from e

    def _apply(self, booking_ref, event_type, amount, provider_payment_id, failure_reason, payment_type):
        booking = self.store.get_booking_by_ref(booking_ref)
        if not booking:
            logger.warning(f"⚠️ Payment event {provider_payment_id} for unknown booking {booking_ref} ignored")
            return PaymentApplication(outcome="unknown_booking", booking_ref=booking_ref)

        previous = booking.payment_status
        same_intent = booking.payment_intent_id == provider_payment_id

        if event_type == PaymentEventType.SUCCEEDED:
            if (same_intent and previous in SUCCESS_STATUSES) or self._already_applied(
                booking, event_type, provider_payment_id
            ):
                return self._duplicate(booking, previous)

            cumulative = (booking.payment_amount or 0) + amount
            new_status = _resolve_success_status(booking, cumulative, payment_type)
            update = PaymentStatusUpdate(
                payment_status=new_status,
                payment_intent_id=provider_payment_id,
                payment_amount=cumulative,
                payment_type=payment_type or ("full" if new_status == PaymentStatus.PAID_FULL else "deposit"),
                payment_date=self.clock(),
            )
        else:
            new_status = PaymentStatus.FAILED if event_type == PaymentEventType.FAILED else PaymentStatus.CANCELLED

            if (same_intent and previous == new_status.value) or self._already_applied(
                booking, event_type, provider_payment_id
            ):
                return self._duplicate(booking, previous)

            # Money already received is never un-recorded by a later failure
            if previous in SUCCESS_STATUSES:
                logger.warning(
                    f"⚠️ Ignoring {event_type.value} event {provider_payment_id} for {booking_ref}: already {previous}"
                )
                return PaymentApplication(
                    outcome="stale", booking_ref=booking_ref, payment_status=previous, previous_status=previous
                )

            update = PaymentStatusUpdate(
                payment_status=new_status,
                payment_intent_id=provider_payment_id,
                failure_reason=failure_reason,
            )

        with self.store.atomic():
            self.store.update_booking_payment_status(booking_ref, update)
            self.store.append_audit_entry(
                booking.id,
                booking_ref,
                ACTION_PAYMENT_STATUS_UPDATE,
                WEBHOOK_CONTEXT,
                {
                    "eventType": event_type.value,
                    "paymentIntentId": provider_payment_id,
                    "amount": amount,
                    "previousStatus": previous,
                    "newStatus": update.payment_status.value,
                    "paymentAmount": update.payment_amount,
                    "failureReason": failure_reason,
                },
                timestamp=self.clock(),
            )

        logger.info(f"💳 Booking {booking_ref} payment: {previous} → {update.payment_status.value}")
        return PaymentApplication(
            outcome="applied",
            booking_ref=booking_ref,
            payment_status=update.payment_status.value,
            previous_status=previous,
        )

    def _duplicate(self, booking: Booking, status: str) -> PaymentApplication:
        logger.info(f"ℹ️ Payment event already applied to {booking.booking_ref}")
        return PaymentApplication(
            outcome="duplicate", booking_ref=booking.booking_ref, payment_status=status, previous_status=status
        )
