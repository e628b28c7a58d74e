"""Audit trail entries - who did what to a booking, and how"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel

from ...models import BookingAuditEntry
from ...utils.timezones import as_utc

ACTION_CONFIRMED = "confirmed"
ACTION_AGREEMENT_SIGNED = "agreement_signed"
ACTION_DECLINED = "declined"
ACTION_COMPLETED = "completed"
ACTION_EXPIRED = "expired"
ACTION_DELETED = "deleted"
ACTION_PAYMENT_STATUS_UPDATE = "payment_status_update"
ACTION_CALENDAR_EVENT_ORPHANED = "calendar_event_orphaned"
ACTION_CALENDAR_CLEANUP_FAILED = "calendar_cleanup_failed"

Actor = Literal["admin", "customer", "system"]


class AuditEntry(BaseModel):
    """Persisted audit shape; field names are part of the stored contract"""

    timestamp: datetime
    action: str
    actor: Actor
    actorDetails: str
    method: str
    ipAddress: Optional[str] = None
    userAgent: Optional[str] = None
    details: dict[str, Any] = {}

    @classmethod
    def from_row(cls, row: BookingAuditEntry) -> "AuditEntry":
        return cls(
            timestamp=as_utc(row.timestamp),
            action=row.action,
            actor=row.actor,
            actorDetails=row.actor_details,
            method=row.method,
            ipAddress=row.ip_address,
            userAgent=row.user_agent,
            details=row.details or {},
        )


@dataclass(frozen=True)
class AuditContext:
    """Who triggered an operation and through which channel"""

    actor: Actor
    actor_details: str
    method: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    extra: dict = field(default_factory=dict)

    @classmethod
    def system(cls, method: str, details: str = "system") -> "AuditContext":
        return cls(actor="system", actor_details=details, method=method)

    @classmethod
    def admin(
        cls,
        username: str,
        method: str = "admin_dashboard",
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "AuditContext":
        return cls(
            actor="admin",
            actor_details=username,
            method=method,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    @classmethod
    def customer(
        cls,
        name: str,
        method: str = "online_agreement",
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "AuditContext":
        return cls(
            actor="customer",
            actor_details=name,
            method=method,
            ip_address=ip_address,
            user_agent=user_agent,
        )
