"""Payment domain schemas"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class PaymentStatus(str, Enum):
    PENDING = "pending"
    DEPOSIT_PAID = "deposit_paid"
    PAID_FULL = "paid_full"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentEventType(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Provider event name → internal event type
PROVIDER_EVENT_TYPES = {
    "payment_intent.succeeded": PaymentEventType.SUCCEEDED,
    "payment_intent.payment_failed": PaymentEventType.FAILED,
    "payment_intent.canceled": PaymentEventType.CANCELLED,
}


@dataclass(frozen=True)
class PaymentStatusUpdate:
    """Fields written to the booking's payment sub-state"""

    payment_status: PaymentStatus
    payment_intent_id: Optional[str] = None
    payment_amount: Optional[float] = None
    payment_type: Optional[str] = None
    failure_reason: Optional[str] = None
    payment_date: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentApplication:
    """Result of applying one provider event"""

    outcome: str  # applied, duplicate, unknown_booking, stale
    booking_ref: str
    payment_status: Optional[str] = None
    previous_status: Optional[str] = None


class PaymentWebhookResponse(BaseModel):
    received: bool = True
    outcome: Optional[str] = None
    bookingRef: Optional[str] = None
    paymentStatus: Optional[str] = None
