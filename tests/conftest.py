"""Test configuration and fixtures for the event scanner.

FakeClock: settable clock passed to services
Builders: session / registration row factories
Fixtures: in-memory remote and local stores, wired services
"""
from datetime import datetime, timedelta, timezone

import pytest

from event_scanner.models import ScannerContext, Session, SessionRegistration
from event_scanner.offline import ConnectivityMonitor, OfflineActionQueue, OfflineCache
from event_scanner.remote import InMemoryRemoteStore
from event_scanner.repositories import InMemoryLocalStore
from event_scanner.services import RegistrationService, ScanService, SessionService
from event_scanner.sync import SyncReconciler

NOW = datetime(2025, 6, 1, 10, 0, tzinfo=timezone.utc)
EVENT_ID = "event-1"


class FakeClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def session_row(
    session_id="s1",
    name="Keynote",
    start=NOW - timedelta(minutes=30),
    end=NOW + timedelta(minutes=30),
    config=None,
    booth_capacities=None,
    event_id=EVENT_ID,
) -> dict:
    return {
        "id": session_id,
        "event_id": event_id,
        "name": name,
        "start_time": start.isoformat(),
        "end_time": end.isoformat(),
        "config": config or {},
        "booth_capacities": booth_capacities or {},
    }


def registration_row(
    registration_id="r1",
    attendee_id="A1",
    session_id="s1",
    expected_booth_id=None,
    status="Registered",
    event_id=EVENT_ID,
) -> dict:
    return {
        "id": registration_id,
        "event_id": event_id,
        "session_id": session_id,
        "attendee_id": attendee_id,
        "expected_booth_id": expected_booth_id,
        "status": status,
        "registration_time": (NOW - timedelta(days=1)).isoformat(),
    }


def make_session(**kwargs) -> Session:
    return Session.from_dict(session_row(**kwargs))


def make_registration(**kwargs) -> SessionRegistration:
    return SessionRegistration.from_dict(registration_row(**kwargs))


BOOTH_MEETING = {
    "scanning_context": "booth_meeting",
    "requires_pre_assignment": True,
    "allows_walk_ins": False,
    "booth_restriction": "assigned",
    "booth_ids": ["B7", "B9"],
}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def remote() -> InMemoryRemoteStore:
    return InMemoryRemoteStore({
        "sessions": [],
        "session_registrations": [],
        "scan_records": [],
        "event_attendees": [],
    })


@pytest.fixture
def local_store() -> InMemoryLocalStore:
    return InMemoryLocalStore()


@pytest.fixture
def monitor(remote) -> ConnectivityMonitor:
    return ConnectivityMonitor(remote)


@pytest.fixture
def queue(local_store, clock) -> OfflineActionQueue:
    return OfflineActionQueue(local_store, clock)


@pytest.fixture
def cache(local_store, clock) -> OfflineCache:
    return OfflineCache(local_store, clock)


@pytest.fixture
def session_service(remote, cache, monitor, clock) -> SessionService:
    return SessionService(remote, cache, monitor, clock, grace_minutes=5)


@pytest.fixture
def scan_service(remote, queue, session_service, monitor, clock) -> ScanService:
    return ScanService(remote, queue, session_service, monitor, clock)


@pytest.fixture
def registration_service(remote, queue, session_service, monitor, clock) -> RegistrationService:
    return RegistrationService(remote, queue, session_service, monitor, clock)


@pytest.fixture
def reconciler(queue, remote, monitor, clock) -> SyncReconciler:
    return SyncReconciler(queue, remote, monitor, clock=clock)


@pytest.fixture
def context() -> ScannerContext:
    return ScannerContext(operator_id="op1", event_id=EVENT_ID, device_id="device-1")
