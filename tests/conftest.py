import asyncio
import itertools
import os
from datetime import date, datetime, timezone

# Keep the module-level engine off disk; tests bind their own in-memory engine
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("DB_LOG_SLOW_QUERIES", "false")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from booking_engine import models, models_google_calendar  # noqa: F401
from booking_engine.auth import AdminDirectory, get_admin_directory
from booking_engine.database import Base, get_db
from booking_engine.dependencies import get_calendar_gateway, get_decline_notifier
from booking_engine.domain.bookings.repository import BookingStore
from booking_engine.domain.bookings.service import BookingLocks, ReconciliationService
from booking_engine.exceptions import CalendarAPIError
from booking_engine.main import app
from booking_engine.services.google_calendar_service import (
    BookingEventPayload,
    CalendarEvent,
    CalendarGateway,
)

# Midday on a summer Sunday; London is UTC+1
NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)
TODAY = date(2025, 6, 15)

ADMIN_HEADERS = {"X-Admin-User": "admin@tsb.test"}


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def store(db):
    return BookingStore(db)


@pytest.fixture
def make_booking(store, db):
    """Factory for committed bookings; references follow the id (TS001, TS002...)"""

    def _make(**overrides):
        data = {
            "customer_name": "Jane Smith",
            "customer_email": "jane@example.com",
            "customer_phone": "07700 900123",
            "customer_address": "1 High Street, Bristol",
            "castle_id": 1,
            "castle_name": "Princess Palace",
            "date": TODAY,
            "total_price": 120.0,
            "deposit": 40.0,
            "payment_method": "cash",
        }
        data.update(overrides)
        booking = store.create_booking(**data)
        db.commit()
        return booking

    return _make


class FakeCalendarGateway(CalendarGateway):
    """In-memory calendar with failure injection"""

    def __init__(self):
        self.events: dict[str, CalendarEvent] = {}
        self._ids = itertools.count(1)
        self.created: list[BookingEventPayload] = []
        self.deleted: list[str] = []
        self.list_calls = 0
        self.fail_with: Exception | None = None
        self.fail_creates_with: Exception | None = None
        self.fail_deletes_with: Exception | None = None
        self.create_delay = False

    def add_event(self, description: str, start: datetime, end: datetime, event_id: str | None = None, status="confirmed"):
        event_id = event_id or f"evt_{next(self._ids)}"
        self.events[event_id] = CalendarEvent(
            id=event_id, summary="existing", description=description, start=start, end=end, status=status
        )
        return self.events[event_id]

    async def create_booking_event(self, payload: BookingEventPayload) -> str:
        if self.fail_with or self.fail_creates_with:
            raise self.fail_with or self.fail_creates_with
        if self.create_delay:
            await asyncio.sleep(0)
        event = self.add_event(payload.description, payload.start, payload.end)
        event.summary = payload.summary
        self.created.append(payload)
        return event.id

    async def update_booking_event(self, event_id: str, payload: BookingEventPayload) -> None:
        if self.fail_with:
            raise self.fail_with
        event = self.events[event_id]
        event.summary, event.description = payload.summary, payload.description
        event.start, event.end = payload.start, payload.end

    async def get_events_in_range(self, start: datetime, end: datetime) -> list[CalendarEvent]:
        self.list_calls += 1
        if self.fail_with:
            raise self.fail_with
        return [e for e in self.events.values() if e.start < end and e.end > start]

    async def delete_event(self, event_id: str) -> bool:
        if self.fail_with or self.fail_deletes_with:
            raise self.fail_with or self.fail_deletes_with
        if self.events.pop(event_id, None) is None:
            return False
        self.deleted.append(event_id)
        return True


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send_decline_notice(self, booking, reason_key):
        if self.fail:
            raise ConnectionError("smtp down")
        self.sent.append((booking.booking_ref, reason_key))
        return True


@pytest.fixture
def calendar():
    return FakeCalendarGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(store, calendar, notifier):
    return ReconciliationService(store, calendar, notifier=notifier, locks=BookingLocks(), clock=lambda: NOW)


@pytest.fixture
def calendar_outage():
    return CalendarAPIError(503, "Backend Error", "list calendar events")


@pytest.fixture
def client(session_factory, calendar, notifier):
    """API client bound to the in-memory store, fake calendar and a single admin account"""

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_calendar_gateway] = lambda: calendar
    app.dependency_overrides[get_decline_notifier] = lambda: notifier
    app.dependency_overrides[get_admin_directory] = lambda: AdminDirectory(["admin@tsb.test"])
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
