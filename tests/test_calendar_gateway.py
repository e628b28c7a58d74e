import json
from datetime import datetime, timezone

import httpx
import pytest
from cryptography.fernet import Fernet

from booking_engine.circuit_breaker import CircuitBreaker, CircuitState
from booking_engine.exceptions import CalendarAPIError, CalendarAuthError, CircuitOpenError, RetryExhaustedError
from booking_engine.models_google_calendar import CalendarCredential
from booking_engine.rate_limiter import SlidingWindowRateLimiter
from booking_engine.retry import RetryExecutor, RetryPolicy
from booking_engine.services.calendar_correlation import CorrelationKey
from booking_engine.services.google_calendar_service import (
    BookingEventPayload,
    CalendarTokenProvider,
    GoogleCalendarGateway,
    save_calendar_credentials,
)

START = datetime(2025, 6, 15, 0, 0, tzinfo=timezone.utc)
END = datetime(2025, 6, 16, 0, 0, tzinfo=timezone.utc)


class StaticToken:
    async def get_access_token(self):
        return "test-token"


async def no_sleep(_delay):
    return None


def event_item(event_id, ref, status="confirmed"):
    return {
        "id": event_id,
        "summary": "🏰 Jane Smith - Princess Palace",
        "description": f"Booking Ref: {ref}\nCustomer: Jane Smith",
        "start": {"dateTime": "2025-06-15T09:00:00+01:00"},
        "end": {"dateTime": "2025-06-15T17:00:00+01:00"},
        "status": status,
    }


class Recorder:
    """MockTransport handler that answers from a queue of responses"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status_code, body = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return httpx.Response(status_code, json=body)


def make_gateway(handler, failure_threshold=5):
    breaker = CircuitBreaker("google_calendar_test", failure_threshold=failure_threshold, recovery_timeout=60.0)
    limiter = SlidingWindowRateLimiter(max_requests=100, window_seconds=100.0)
    executor = RetryExecutor(RetryPolicy(max_attempts=3, base_delay=1.0), sleep=no_sleep)
    gateway = GoogleCalendarGateway(
        StaticToken(),
        "primary",
        circuit_breaker=breaker,
        rate_limiter=limiter,
        retry_executor=executor,
        transport=httpx.MockTransport(handler),
    )
    return gateway, breaker, limiter


def payload():
    return BookingEventPayload(
        summary="🏰 Jane Smith - Princess Palace",
        description="Booking Ref: TS001",
        start=datetime(2025, 6, 15, 8, 0, tzinfo=timezone.utc),
        end=datetime(2025, 6, 15, 16, 0, tzinfo=timezone.utc),
        location="1 High Street, Bristol",
    )


@pytest.mark.asyncio
async def test_listing_follows_every_page():
    handler = Recorder(
        (200, {"items": [event_item("evt_1", "TS001")], "nextPageToken": "page-2"}),
        (200, {"items": [event_item("evt_2", "TS002")]}),
    )
    gateway, _, limiter = make_gateway(handler)

    events = await gateway.get_events_in_range(START, END)

    assert [e.id for e in events] == ["evt_1", "evt_2"]
    assert events[0].start == datetime(2025, 6, 15, 8, 0, tzinfo=timezone.utc)
    assert "pageToken" not in handler.requests[0].url.params
    assert handler.requests[1].url.params["pageToken"] == "page-2"
    assert handler.requests[0].url.params["singleEvents"] == "true"
    assert handler.requests[0].headers["Authorization"] == "Bearer test-token"
    assert limiter.snapshot()["inWindow"] == 2


@pytest.mark.asyncio
async def test_retried_listing_takes_a_limiter_slot_per_attempt():
    handler = Recorder(
        (503, {"error": {"message": "Backend Error"}}),
        (200, {"items": [event_item("evt_1", "TS001")]}),
    )
    gateway, _, limiter = make_gateway(handler)

    events = await gateway.get_events_in_range(START, END)

    assert [e.id for e in events] == ["evt_1"]
    assert len(handler.requests) == 2
    assert limiter.snapshot()["inWindow"] == 2


@pytest.mark.asyncio
async def test_find_booking_event_skips_cancelled_and_other_refs():
    items = [
        event_item("evt_old", "TS001", status="cancelled"),
        event_item("evt_other", "TS0010"),
        event_item("evt_live", "TS001"),
    ]
    handler = Recorder((200, {"items": items}))
    gateway, _, _ = make_gateway(handler)

    event = await gateway.find_booking_event(CorrelationKey("TS001"), START, END)

    assert event.id == "evt_live"


@pytest.mark.asyncio
async def test_transient_errors_are_retried():
    handler = Recorder(
        (503, {"error": {"message": "Backend Error"}}),
        (503, {"error": {"message": "Backend Error"}}),
        (200, {"id": "evt_9"}),
    )
    gateway, breaker, _ = make_gateway(handler)

    event_id = await gateway.create_booking_event(payload())

    assert event_id == "evt_9"
    assert len(handler.requests) == 3
    body = json.loads(handler.requests[-1].content)
    assert body["colorId"] == "10"
    assert body["start"]["timeZone"] == "Europe/London"
    assert body["location"] == "1 High Street, Bristol"
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_client_errors_are_not_retried_and_do_not_trip_the_breaker():
    handler = Recorder((400, {"error": {"message": "Invalid start time"}}))
    gateway, breaker, _ = make_gateway(handler, failure_threshold=1)

    with pytest.raises(CalendarAPIError) as exc_info:
        await gateway.create_booking_event(payload())

    assert exc_info.value.status_code == 400
    assert "Invalid start time" in exc_info.value.message
    assert len(handler.requests) == 1
    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 0


@pytest.mark.asyncio
async def test_exhausted_retries_open_the_circuit():
    handler = Recorder((503, {"error": {"message": "Backend Error"}}))
    gateway, breaker, _ = make_gateway(handler, failure_threshold=1)

    with pytest.raises(RetryExhaustedError):
        await gateway.create_booking_event(payload())
    assert len(handler.requests) == 3
    assert breaker.state == CircuitState.OPEN

    with pytest.raises(CircuitOpenError):
        await gateway.get_events_in_range(START, END)
    assert len(handler.requests) == 3


@pytest.mark.asyncio
async def test_deleting_a_missing_event_is_not_an_error():
    handler = Recorder((404, {"error": {"message": "Not Found"}}))
    gateway, breaker, _ = make_gateway(handler)

    assert await gateway.delete_event("evt_gone") is False
    assert handler.requests[0].method == "DELETE"
    assert breaker.failure_count == 0


@pytest.mark.asyncio
async def test_delete_booking_events_counts_removed():
    listing = {"items": [event_item("evt_1", "TS001"), event_item("evt_2", "TS001")]}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, json=listing)
        if request.url.path.endswith("/evt_1"):
            return httpx.Response(204)
        return httpx.Response(410)

    gateway, _, _ = make_gateway(handler)

    assert await gateway.delete_booking_events(CorrelationKey("TS001"), START, END) == 1


# ============================================================================
# TOKEN PROVIDER
# ============================================================================


@pytest.fixture
def encryption_key():
    return Fernet.generate_key().decode()


@pytest.mark.asyncio
async def test_expired_token_is_refreshed_and_cached(db, session_factory, encryption_key):
    save_calendar_credentials(db, encryption_key, refresh_token="refresh-123", google_account_email="ops@tsb.test")
    handler = Recorder((200, {"access_token": "fresh-token", "expires_in": 3600}))
    provider = CalendarTokenProvider(
        session_factory, encryption_key, "client-id", "client-secret", transport=httpx.MockTransport(handler)
    )

    assert await provider.get_access_token() == "fresh-token"
    assert await provider.get_access_token() == "fresh-token"

    assert len(handler.requests) == 1
    sent = handler.requests[0].content.decode()
    assert "grant_type=refresh_token" in sent
    assert "refresh_token=refresh-123" in sent

    db.expire_all()
    stored = db.query(CalendarCredential).one()
    assert stored.refresh_token != "refresh-123"
    assert Fernet(encryption_key.encode()).decrypt(stored.access_token.encode()) == b"fresh-token"


@pytest.mark.asyncio
async def test_refused_refresh_is_an_auth_error(db, session_factory, encryption_key):
    save_calendar_credentials(db, encryption_key, refresh_token="revoked")
    handler = Recorder((400, {"error": "invalid_grant"}))
    provider = CalendarTokenProvider(
        session_factory, encryption_key, "client-id", "client-secret", transport=httpx.MockTransport(handler)
    )

    with pytest.raises(CalendarAuthError):
        await provider.get_access_token()


@pytest.mark.asyncio
async def test_missing_connection_is_an_auth_error(session_factory, encryption_key):
    provider = CalendarTokenProvider(session_factory, encryption_key, "client-id", "client-secret")

    with pytest.raises(CalendarAuthError):
        await provider.get_access_token()
