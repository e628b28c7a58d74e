"""
API endpoints for status automation, reconciliation reports and the
calendar integration's health
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from .. import config
from ..auth import AdminIdentity, require_admin
from ..database import get_db
from ..dependencies import (
    CalendarResilience,
    get_booking_store,
    get_calendar_resilience,
    get_completion_sweeper,
    get_drift_detector,
)
from ..domain.bookings.repository import BookingStore
from ..domain.bookings.service import CALENDAR_FAILURES, CALENDAR_UNAVAILABLE_MESSAGE
from ..domain.bookings.state_machine import BookingStatus
from ..exceptions import CalendarUnavailableError
from ..services.drift_detector import DriftDetector
from ..services.google_calendar_service import save_calendar_credentials
from ..services.status_automation import CompletionSweeper

router = APIRouter(prefix="/admin", tags=["status"])


class StatusSummary(BaseModel):
    pending: int
    confirmed: int
    completed: int
    cancelled: int
    expired: int
    total: int


class CalendarCredentialsRequest(BaseModel):
    refreshToken: str
    accessToken: Optional[str] = None
    expiresIn: Optional[int] = None
    googleAccountEmail: Optional[str] = None
    googleCalendarId: Optional[str] = None


@router.get("/status/analytics", response_model=StatusSummary)
async def get_status_analytics(
    admin: AdminIdentity = Depends(require_admin), store: BookingStore = Depends(get_booking_store)
):
    """Count of bookings by lifecycle status"""
    summary = {status.value: 0 for status in BookingStatus}

    for status, count in store.count_by_status().items():
        if status in summary:
            summary[status] = count

    return StatusSummary(**summary, total=sum(summary.values()))


@router.post("/completion-check")
async def run_completion_check(
    admin: AdminIdentity = Depends(require_admin),
    sweeper: CompletionSweeper = Depends(get_completion_sweeper),
):
    """
    Manually trigger the completion sweep
    (In production this runs on the worker's schedule)
    """
    summary = await sweeper.run()
    return summary.as_dict()


@router.get("/completion-check/upcoming")
async def get_upcoming_completions(
    hours_ahead: int = Query(24, ge=1, le=24 * 14, alias="hoursAhead"),
    admin: AdminIdentity = Depends(require_admin),
    sweeper: CompletionSweeper = Depends(get_completion_sweeper),
):
    """Confirmed bookings due to complete within the next hours"""
    upcoming = sweeper.upcoming_transitions(hours_ahead)
    return {"hoursAhead": hours_ahead, "count": len(upcoming), "upcoming": upcoming}


@router.post("/bookings/update-expired")
async def update_expired_bookings(
    admin: AdminIdentity = Depends(require_admin),
    sweeper: CompletionSweeper = Depends(get_completion_sweeper),
):
    """Expire pending bookings whose event day has passed"""
    return await sweeper.expire_stale_pending()


@router.get("/reconciliation/drift")
async def get_drift_report(
    admin: AdminIdentity = Depends(require_admin),
    detector: DriftDetector = Depends(get_drift_detector),
):
    """Disagreements between bookings and calendar events (report only)"""
    try:
        return await detector.scan()
    except CALENDAR_FAILURES as e:
        raise CalendarUnavailableError(CALENDAR_UNAVAILABLE_MESSAGE) from e


@router.get("/calendar/status")
async def get_calendar_status(
    admin: AdminIdentity = Depends(require_admin),
    resilience: CalendarResilience = Depends(get_calendar_resilience),
):
    return {
        "circuitBreaker": resilience.circuit_breaker.snapshot(),
        "rateLimiter": resilience.rate_limiter.snapshot(),
    }


@router.post("/calendar/reset")
async def reset_calendar_circuit(
    admin: AdminIdentity = Depends(require_admin),
    resilience: CalendarResilience = Depends(get_calendar_resilience),
):
    """Close the calendar circuit breaker after a known outage has been resolved"""
    resilience.circuit_breaker.reset()
    return {"success": True, "circuitBreaker": resilience.circuit_breaker.snapshot()}


@router.put("/calendar/credentials")
async def update_calendar_credentials(
    data: CalendarCredentialsRequest,
    admin: AdminIdentity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Store the Google OAuth tokens used by the calendar integration"""
    if not config.CALENDAR_TOKEN_ENCRYPTION_KEY:
        raise HTTPException(status_code=500, detail="Calendar token encryption key not configured")

    credential = save_calendar_credentials(
        db,
        config.CALENDAR_TOKEN_ENCRYPTION_KEY,
        refresh_token=data.refreshToken,
        access_token=data.accessToken,
        expires_in=data.expiresIn,
        google_account_email=data.googleAccountEmail,
        google_calendar_id=data.googleCalendarId,
    )
    return {"success": True, "googleAccountEmail": credential.google_account_email}
