"""
Google Calendar Service
Booking events as the operational schedule: create, update, list and delete,
guarded by rate limiting, a circuit breaker and retries.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import httpx
from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.orm import Session

from ..circuit_breaker import CircuitBreaker
from ..config import BUSINESS_TIMEZONE, GOOGLE_CALENDAR_TIMEOUT_SECONDS
from ..exceptions import CalendarAPIError, CalendarAuthError
from ..models_google_calendar import CalendarCredential
from ..rate_limiter import SlidingWindowRateLimiter
from ..retry import RetryExecutor
from ..utils.timezones import as_utc, utcnow
from .calendar_correlation import CorrelationKey

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"

# Google "basil" green for bookings
BOOKING_EVENT_COLOR_ID = "10"
MAX_RESULTS_PER_PAGE = 2500


@dataclass
class CalendarEvent:
    id: str
    summary: str = ""
    description: str = ""
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    status: str = "confirmed"

    @classmethod
    def from_api(cls, item: dict) -> "CalendarEvent":
        return cls(
            id=item["id"],
            summary=item.get("summary", ""),
            description=item.get("description", ""),
            start=_parse_event_time(item.get("start")),
            end=_parse_event_time(item.get("end")),
            status=item.get("status", "confirmed"),
        )


def _parse_event_time(value: Optional[dict]) -> Optional[datetime]:
    """Event times are either {'dateTime': ...} or all-day {'date': 'YYYY-MM-DD'}"""
    if not value:
        return None
    if value.get("dateTime"):
        return as_utc(datetime.fromisoformat(value["dateTime"].replace("Z", "+00:00")))
    if value.get("date"):
        return as_utc(datetime.fromisoformat(value["date"]))
    return None


@dataclass
class BookingEventPayload:
    summary: str
    description: str
    start: datetime
    end: datetime
    location: Optional[str] = None
    time_zone: str = BUSINESS_TIMEZONE
    color_id: str = BOOKING_EVENT_COLOR_ID

    def to_api_body(self) -> dict:
        body = {
            "summary": self.summary,
            "description": self.description,
            "start": {"dateTime": as_utc(self.start).isoformat(), "timeZone": self.time_zone},
            "end": {"dateTime": as_utc(self.end).isoformat(), "timeZone": self.time_zone},
            "colorId": self.color_id,
        }
        if self.location:
            body["location"] = self.location
        return body


class CalendarGateway(ABC):
    """
    Calendar capability used by the reconciliation services.

    Booking events are found and removed by correlation key rather than by
    stored event id, since the id may never have reached the store.
    """

    @abstractmethod
    async def create_booking_event(self, payload: BookingEventPayload) -> str:
        ...

    @abstractmethod
    async def update_booking_event(self, event_id: str, payload: BookingEventPayload) -> None:
        ...

    @abstractmethod
    async def get_events_in_range(self, start: datetime, end: datetime) -> list[CalendarEvent]:
        ...

    @abstractmethod
    async def delete_event(self, event_id: str) -> bool:
        """Returns False if the event was already gone"""
        ...

    async def find_booking_events(self, key: CorrelationKey, start: datetime, end: datetime) -> list[CalendarEvent]:
        events = await self.get_events_in_range(start, end)
        return [e for e in events if e.status != "cancelled" and key.matches(e.description)]

    async def find_booking_event(
        self, key: CorrelationKey, start: datetime, end: datetime
    ) -> Optional[CalendarEvent]:
        matches = await self.find_booking_events(key, start, end)
        return matches[0] if matches else None

    async def delete_booking_events(self, key: CorrelationKey, start: datetime, end: datetime) -> int:
        """Delete every event carrying the key in the range. Returns how many were removed."""
        deleted = 0
        for event in await self.find_booking_events(key, start, end):
            if await self.delete_event(event.id):
                deleted += 1
        logger.info(f"🗑️ Deleted {deleted} calendar event(s) for {key.booking_ref}")
        return deleted


class CalendarTokenProvider:
    """
    Supplies a valid OAuth access token, refreshing it when it expires within
    five minutes. Tokens are stored Fernet-encrypted in calendar_credentials.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        encryption_key: Optional[str],
        client_id: Optional[str],
        client_secret: Optional[str],
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = GOOGLE_CALENDAR_TIMEOUT_SECONDS,
    ):
        self.session_factory = session_factory
        self.encryption_key = encryption_key
        self.client_id = client_id
        self.client_secret = client_secret
        self._transport = transport
        self.timeout = timeout

    def _cipher(self) -> Fernet:
        if not self.encryption_key:
            raise CalendarAuthError("Calendar token encryption key is not configured")
        return Fernet(self.encryption_key.encode())

    def _decrypt(self, cipher_suite: Fernet, value: str) -> str:
        try:
            return cipher_suite.decrypt(value.encode()).decode()
        except InvalidToken:
            raise CalendarAuthError("Stored calendar token could not be decrypted")

    async def get_access_token(self) -> str:
        db = self.session_factory()
        try:
            credential = db.query(CalendarCredential).order_by(CalendarCredential.id.desc()).first()
            if not credential:
                raise CalendarAuthError("Google Calendar is not connected")

            cipher_suite = self._cipher()
            expires_at = as_utc(credential.token_expires_at)

            if credential.access_token and expires_at and expires_at > utcnow() + timedelta(minutes=5):
                return self._decrypt(cipher_suite, credential.access_token)

            logger.info("🔄 Google Calendar token expired, refreshing...")
            refresh_token = self._decrypt(cipher_suite, credential.refresh_token)

            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.post(
                    GOOGLE_TOKEN_URL,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "refresh_token": refresh_token,
                        "grant_type": "refresh_token",
                    },
                )

            if response.status_code >= 500 or response.status_code == 429:
                raise CalendarAPIError(response.status_code, "token endpoint unavailable", "token refresh")
            if response.status_code != 200:
                logger.error(f"❌ Token refresh failed: {response.text}")
                raise CalendarAuthError("Google Calendar token refresh was refused")

            tokens = response.json()
            new_access_token = tokens.get("access_token")
            expires_in = tokens.get("expires_in", 3600)
            if not new_access_token:
                raise CalendarAuthError("No access token in refresh response")

            credential.access_token = cipher_suite.encrypt(new_access_token.encode()).decode()
            credential.token_expires_at = utcnow() + timedelta(seconds=expires_in)
            db.commit()

            logger.info("✅ Google Calendar token refreshed successfully")
            return new_access_token
        finally:
            db.close()


def save_calendar_credentials(
    db: Session,
    encryption_key: str,
    refresh_token: str,
    access_token: Optional[str] = None,
    expires_in: Optional[int] = None,
    google_account_email: Optional[str] = None,
    google_calendar_id: Optional[str] = None,
) -> CalendarCredential:
    """Encrypt and store the OAuth tokens, replacing any previous connection"""
    cipher_suite = Fernet(encryption_key.encode())

    credential = db.query(CalendarCredential).order_by(CalendarCredential.id.desc()).first()
    if not credential:
        credential = CalendarCredential(refresh_token="")
        db.add(credential)

    credential.refresh_token = cipher_suite.encrypt(refresh_token.encode()).decode()
    credential.access_token = cipher_suite.encrypt(access_token.encode()).decode() if access_token else None
    credential.token_expires_at = utcnow() + timedelta(seconds=expires_in) if access_token and expires_in else None
    credential.google_account_email = google_account_email
    credential.google_calendar_id = google_calendar_id
    db.commit()
    db.refresh(credential)
    logger.info(f"✅ Google Calendar credentials saved for {google_account_email or 'unknown account'}")
    return credential


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json().get("error", {}).get("message") or response.text
    except ValueError:
        return response.text


@dataclass
class _Request:
    method: str
    path: str
    operation: str
    params: Optional[dict] = None
    json: Optional[dict] = None
    tolerated_statuses: tuple = field(default_factory=tuple)
    rate_limited: bool = False


class GoogleCalendarGateway(CalendarGateway):
    def __init__(
        self,
        token_provider: CalendarTokenProvider,
        calendar_id: str,
        circuit_breaker: CircuitBreaker,
        rate_limiter: SlidingWindowRateLimiter,
        retry_executor: RetryExecutor,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = GOOGLE_CALENDAR_TIMEOUT_SECONDS,
    ):
        self.token_provider = token_provider
        self.calendar_id = calendar_id
        self.circuit_breaker = circuit_breaker
        self.rate_limiter = rate_limiter
        self.retry_executor = retry_executor
        self._transport = transport
        self.timeout = timeout

    @property
    def _events_url(self) -> str:
        return f"{GOOGLE_CALENDAR_API}/calendars/{self.calendar_id}/events"

    async def _send(self, request: _Request) -> httpx.Response:
        access_token = await self.token_provider.get_access_token()
        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
            response = await client.request(
                request.method,
                f"{self._events_url}{request.path}",
                headers={"Authorization": f"Bearer {access_token}"},
                params=request.params,
                json=request.json,
            )

        if response.status_code in request.tolerated_statuses:
            return response
        if response.status_code >= 400:
            raise CalendarAPIError(response.status_code, _error_message(response), request.operation)
        return response

    async def _request(self, request: _Request) -> httpx.Response:
        async def attempt():
            # Each attempt, retries included, spends quota
            if request.rate_limited:
                await self.rate_limiter.acquire()
            return await self._send(request)

        return await self.circuit_breaker.call(self.retry_executor.run, attempt, request.operation)

    async def create_booking_event(self, payload: BookingEventPayload) -> str:
        response = await self._request(
            _Request("POST", "", "create calendar event", json=payload.to_api_body())
        )
        event_id = response.json()["id"]
        logger.info(f"✅ Google Calendar event created: {event_id}")
        return event_id

    async def update_booking_event(self, event_id: str, payload: BookingEventPayload) -> None:
        await self._request(
            _Request("PUT", f"/{event_id}", "update calendar event", json=payload.to_api_body())
        )
        logger.info(f"✅ Google Calendar event updated: {event_id}")

    async def get_events_in_range(self, start: datetime, end: datetime) -> list[CalendarEvent]:
        params: dict[str, Any] = {
            "timeMin": as_utc(start).isoformat(),
            "timeMax": as_utc(end).isoformat(),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": MAX_RESULTS_PER_PAGE,
        }
        events: list[CalendarEvent] = []

        while True:
            response = await self._request(
                _Request("GET", "", "list calendar events", params=dict(params), rate_limited=True)
            )
            data = response.json()
            events.extend(CalendarEvent.from_api(item) for item in data.get("items", []))

            page_token = data.get("nextPageToken")
            if not page_token:
                break
            params["pageToken"] = page_token

        logger.debug(f"📅 Fetched {len(events)} calendar events between {start} and {end}")
        return events

    async def delete_event(self, event_id: str) -> bool:
        response = await self._request(
            _Request("DELETE", f"/{event_id}", "delete calendar event", tolerated_statuses=(404, 410))
        )
        if response.status_code in (404, 410):
            logger.info(f"ℹ️ Google Calendar event {event_id} already gone")
            return False
        logger.info(f"✅ Google Calendar event deleted: {event_id}")
        return True
