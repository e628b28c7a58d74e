"""Payment webhook router - provider events in, booking payment state out"""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from ... import config
from ...dependencies import get_payment_reconciler
from ...exceptions import StoreUnavailableError
from ...webhook_security import verify_stripe_webhook
from .reconciler import PaymentReconciler
from .schemas import PROVIDER_EVENT_TYPES, PaymentWebhookResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/payments", response_model=PaymentWebhookResponse)
async def payment_webhook(request: Request, reconciler: PaymentReconciler = Depends(get_payment_reconciler)):
    """
    Payment provider webhook.

    Answers 2xx for anything that can never succeed on redelivery (unknown
    event types, missing or unknown booking references, already applied
    events) and 503 when the store is down so the provider retries.
    """
    if not config.PAYMENT_WEBHOOK_SECRET:
        logger.error("❌ PAYMENT_WEBHOOK_SECRET not configured")
        raise HTTPException(status_code=500, detail="Webhook not configured")

    raw_body = await verify_stripe_webhook(request, config.PAYMENT_WEBHOOK_SECRET)

    try:
        event = json.loads(raw_body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid event payload")

    event_name = event.get("type")
    event_type = PROVIDER_EVENT_TYPES.get(event_name)
    if event_type is None:
        logger.info(f"ℹ️ Unhandled payment event type {event_name}")
        return PaymentWebhookResponse(outcome="ignored")

    data = event.get("data")
    payment_intent = data.get("object") if isinstance(data, dict) else None
    if not isinstance(payment_intent, dict) or not payment_intent.get("id"):
        logger.error(f"❌ Payment event {event.get('id')} has no payment intent id")
        raise HTTPException(status_code=400, detail="Invalid event payload")

    payment_intent_id = payment_intent["id"]
    metadata = payment_intent.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}
    booking_ref = metadata.get("bookingRef")
    if not booking_ref:
        logger.error(f"❌ No booking reference in payment intent {payment_intent_id} metadata")
        return PaymentWebhookResponse(outcome="missing_booking_ref")

    # Amounts arrive in minor units (pence)
    amount = (payment_intent.get("amount_received") or payment_intent.get("amount") or 0) / 100
    failure = payment_intent.get("last_payment_error")
    if not isinstance(failure, dict):
        failure = {}

    try:
        result = reconciler.apply_payment_event(
            booking_ref,
            event_type,
            amount,
            payment_intent_id,
            failure_reason=failure.get("message") or payment_intent.get("cancellation_reason"),
            payment_type=metadata.get("paymentType"),
        )
    except StoreUnavailableError:
        raise HTTPException(status_code=503, detail="Booking store unavailable, retry later")

    return PaymentWebhookResponse(
        outcome=result.outcome, bookingRef=result.booking_ref, paymentStatus=result.payment_status
    )
