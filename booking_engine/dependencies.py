"""
FastAPI dependency wiring.

The calendar circuit breaker and rate limiter are process-wide: every
booking operation shares them, so an outage backs off the whole process
instead of each booking separately.
"""

from dataclasses import dataclass
from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from . import config
from .circuit_breaker import CircuitBreaker
from .database import SessionLocal, get_db
from .domain.bookings.repository import BookingStore
from .domain.bookings.service import BookingLocks, ReconciliationService
from .domain.payments.reconciler import PaymentReconciler
from .rate_limiter import SlidingWindowRateLimiter
from .retry import RetryExecutor, RetryPolicy
from .services.drift_detector import DriftDetector
from .services.google_calendar_service import (
    CalendarGateway,
    CalendarTokenProvider,
    GoogleCalendarGateway,
)
from .services.notification_service import DeclineNotifier
from .services.status_automation import CompletionSweeper


@dataclass
class CalendarResilience:
    circuit_breaker: CircuitBreaker
    rate_limiter: SlidingWindowRateLimiter
    retry_executor: RetryExecutor


@lru_cache
def get_calendar_resilience() -> CalendarResilience:
    return CalendarResilience(
        circuit_breaker=CircuitBreaker(
            "google_calendar",
            failure_threshold=config.CALENDAR_BREAKER_FAILURE_THRESHOLD,
            recovery_timeout=config.CALENDAR_BREAKER_RECOVERY_TIMEOUT,
            window_seconds=config.CALENDAR_BREAKER_WINDOW_SECONDS,
        ),
        rate_limiter=SlidingWindowRateLimiter(
            max_requests=config.CALENDAR_RATE_LIMIT_REQUESTS,
            window_seconds=config.CALENDAR_RATE_LIMIT_WINDOW_SECONDS,
            name="google_calendar",
        ),
        retry_executor=RetryExecutor(
            RetryPolicy(
                max_attempts=config.CALENDAR_RETRY_MAX_ATTEMPTS,
                base_delay=config.CALENDAR_RETRY_BASE_DELAY,
                max_delay=config.CALENDAR_RETRY_MAX_DELAY,
                multiplier=config.CALENDAR_RETRY_MULTIPLIER,
            )
        ),
    )


@lru_cache
def get_calendar_gateway() -> CalendarGateway:
    resilience = get_calendar_resilience()
    token_provider = CalendarTokenProvider(
        session_factory=SessionLocal,
        encryption_key=config.CALENDAR_TOKEN_ENCRYPTION_KEY,
        client_id=config.GOOGLE_CLIENT_ID,
        client_secret=config.GOOGLE_CLIENT_SECRET,
    )
    return GoogleCalendarGateway(
        token_provider=token_provider,
        calendar_id=config.GOOGLE_CALENDAR_ID,
        circuit_breaker=resilience.circuit_breaker,
        rate_limiter=resilience.rate_limiter,
        retry_executor=resilience.retry_executor,
    )


@lru_cache
def get_booking_locks() -> BookingLocks:
    return BookingLocks()


@lru_cache
def get_decline_notifier() -> DeclineNotifier:
    return DeclineNotifier()


def get_booking_store(db: Session = Depends(get_db)) -> BookingStore:
    return BookingStore(db)


def get_reconciliation_service(
    store: BookingStore = Depends(get_booking_store),
    calendar: CalendarGateway = Depends(get_calendar_gateway),
    notifier: DeclineNotifier = Depends(get_decline_notifier),
    locks: BookingLocks = Depends(get_booking_locks),
) -> ReconciliationService:
    return ReconciliationService(store, calendar, notifier=notifier, locks=locks)


def get_payment_reconciler(store: BookingStore = Depends(get_booking_store)) -> PaymentReconciler:
    return PaymentReconciler(store)


def get_completion_sweeper(
    store: BookingStore = Depends(get_booking_store),
    calendar: CalendarGateway = Depends(get_calendar_gateway),
    service: ReconciliationService = Depends(get_reconciliation_service),
) -> CompletionSweeper:
    return CompletionSweeper(store, calendar, service, concurrency=config.COMPLETION_SWEEP_CONCURRENCY)


def get_drift_detector(
    store: BookingStore = Depends(get_booking_store),
    calendar: CalendarGateway = Depends(get_calendar_gateway),
) -> DriftDetector:
    return DriftDetector(store, calendar)
