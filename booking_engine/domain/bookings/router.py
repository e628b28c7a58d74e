"""Booking router - lifecycle endpoints for admins and customers"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from ...auth import AdminIdentity, get_client_ip, require_admin
from ...dependencies import get_booking_store, get_reconciliation_service
from ...exceptions import BookingNotFoundError
from ...utils.timezones import utcnow
from .audit import AuditContext, AuditEntry
from .repository import BookingStore
from .schemas import (
    ActionResponse,
    AgreementSignature,
    BookingResponse,
    CompleteBookingRequest,
    ConfirmBookingRequest,
    CustomerConfirmRequest,
    DeclineBookingRequest,
)
from .service import ReconciliationService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Bookings"])


def _admin_context(admin: AdminIdentity, method: str = "admin_dashboard") -> AuditContext:
    return AuditContext.admin(admin.username, method=method, ip_address=admin.ip_address, user_agent=admin.user_agent)


# ============================================================================
# ADMIN LIFECYCLE ACTIONS
# ============================================================================


@router.post("/admin/bookings/{booking_id}/confirm", response_model=ActionResponse)
async def confirm_booking(
    booking_id: int,
    data: ConfirmBookingRequest = ConfirmBookingRequest(),
    admin: AdminIdentity = Depends(require_admin),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Confirm a booking and put it on the calendar"""
    agreement = None
    if data.agreementSigned:
        agreement = AgreementSignature(
            signed_by=data.agreementSignedBy or admin.username,
            signed_at=utcnow(),
            method=data.agreementMethod,
            ip_address=admin.ip_address,
            user_agent=admin.user_agent,
        )

    result = await service.confirm_booking(booking_id, agreement=agreement, context=_admin_context(admin))
    message = "Booking already confirmed" if result.already_confirmed else "Booking confirmed"
    return ActionResponse(
        message=message,
        booking=BookingResponse.from_model(result.booking),
        alreadyConfirmed=result.already_confirmed,
        calendarEventId=result.calendar_event_id,
    )


@router.post("/admin/bookings/{booking_id}/decline", response_model=ActionResponse)
async def decline_booking(
    booking_id: int,
    data: DeclineBookingRequest = DeclineBookingRequest(),
    admin: AdminIdentity = Depends(require_admin),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Cancel a pending or confirmed booking, optionally deleting it afterwards"""
    result = await service.decline_booking(
        booking_id,
        reason_key=data.reasonKey,
        note=data.note,
        context=_admin_context(admin),
        delete=data.deleteBooking,
    )
    message = f"Booking {result.booking_ref} declined"
    if result.calendar_cleanup_failed:
        message += " (calendar event could not be removed)"
    if result.deleted:
        message += " and deleted"
    return ActionResponse(message=message)


@router.post("/admin/bookings/{booking_id}/complete", response_model=ActionResponse)
async def complete_booking(
    booking_id: int,
    data: CompleteBookingRequest = CompleteBookingRequest(),
    admin: AdminIdentity = Depends(require_admin),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Manually mark a confirmed booking as completed"""
    booking = await service.manually_complete_booking(
        booking_id, data.reason, admin.username, ip_address=admin.ip_address, user_agent=admin.user_agent
    )
    return ActionResponse(message="Booking completed", booking=BookingResponse.from_model(booking))


@router.delete("/admin/bookings/{booking_id}", response_model=ActionResponse)
async def delete_booking(
    booking_id: int,
    admin: AdminIdentity = Depends(require_admin),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Delete a cancelled or expired booking (its audit trail is kept)"""
    await service.delete_booking(booking_id, context=_admin_context(admin))
    return ActionResponse(message="Booking deleted")


@router.get("/admin/bookings/{booking_id}/audit", response_model=list[AuditEntry])
async def get_booking_audit_trail(
    booking_id: int,
    admin: AdminIdentity = Depends(require_admin),
    store: BookingStore = Depends(get_booking_store),
):
    """Audit trail in insertion order; available after the booking row is deleted"""
    return store.get_audit_trail(booking_id)


# ============================================================================
# CUSTOMER AGREEMENT SIGNING
# ============================================================================


@router.post("/bookings/{booking_ref}/confirm", response_model=ActionResponse)
async def customer_confirm_booking(
    booking_ref: str,
    data: CustomerConfirmRequest,
    request: Request,
    store: BookingStore = Depends(get_booking_store),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Customer signs the hire agreement, which confirms the booking"""
    if not data.agreementAccepted:
        raise HTTPException(status_code=400, detail="The hire agreement must be accepted to confirm the booking")

    booking = store.get_booking_by_ref(booking_ref)
    if not booking:
        raise BookingNotFoundError("Booking not found")

    ip_address = get_client_ip(request)
    user_agent = request.headers.get("User-Agent")
    agreement = AgreementSignature(
        signed_by=data.customerName,
        signed_at=utcnow(),
        method="online",
        ip_address=ip_address,
        user_agent=user_agent,
    )
    context = AuditContext.customer(data.customerName, ip_address=ip_address, user_agent=user_agent)

    result = await service.confirm_booking(booking.id, agreement=agreement, context=context)
    logger.info(f"✍️ Customer agreement received for {booking_ref}")
    return ActionResponse(
        message="Booking already confirmed" if result.already_confirmed else "Booking confirmed",
        booking=BookingResponse.from_model(result.booking),
        alreadyConfirmed=result.already_confirmed,
        calendarEventId=result.calendar_event_id,
    )
