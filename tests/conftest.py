"""Shared pytest fixtures for SafeZone Guardian.

Every service is built from explicit collaborators, so the fixtures here
wire a complete in-process stack around:
- a Settings instance that ignores any local .env file
- a controllable clock (FakeClock) injected wherever time matters
- an in-memory document store, audit sink and a recording dispatcher
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Tuple

import pytest

from safezone.core.settings import Settings
from safezone.services.case_ledger import CaseLedger
from safezone.services.case_service import CaseService
from safezone.services.escalation_engine import EscalationEngine
from safezone.services.event_bus import EventBus
from safezone.services.geofence_registry import GeofenceRegistry
from safezone.services.guardian import GuardianServices
from safezone.services.location_tracker import LocationTracker
from safezone.services.outbound import InMemoryAuditSink, NotificationDispatcher, OutboundExecutor
from safezone.stores import InMemoryDocumentStore

START = datetime(2026, 1, 15, 8, 0, tzinfo=timezone.utc)

# Home zone used across the tracker tests (East District, Hsinchu)
HOME = {"lat": 24.8047, "lng": 120.9688}


# =============================================================================
# Helpers
# =============================================================================


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingDispatcher(NotificationDispatcher):
    """Keeps every notification instead of delivering it."""

    name = "recording"

    def __init__(self, fail: bool = False):
        self.fail = fail
        self._lock = threading.Lock()
        self.sent: List[Tuple[str, Dict[str, Any]]] = []

    def notify(self, user_id: str, message: Dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionError("dispatcher down")
        with self._lock:
            self.sent.append((user_id, message))

    def events_for(self, user_id: str) -> List[str]:
        with self._lock:
            return [m["event_type"] for uid, m in self.sent if uid == user_id]


def offset(point: Dict[str, float], north_m: float = 0.0) -> Dict[str, float]:
    """Point roughly north_m meters north of point (1e-3 deg lat ~ 111.2 m)."""
    return {"lat": point["lat"] + north_m / 111195.0, "lng": point["lng"]}


def make_case_data(**overrides) -> Dict[str, Any]:
    data = {
        "reporter_id": "reporter-1",
        "subject": {"name": "Chen Mei", "age": 34},
        "last_known_location": {"lat": 24.8047, "lng": 120.9688, "address": "East District"},
        "circumstances": {"transportation_method": "walking"},
    }
    data.update(overrides)
    return data


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def config() -> Settings:
    return Settings(_env_file=None, USE_MOCK_DB=True, NOTIFICATION_WEBHOOK_URL=None)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def audit() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def outbound(config):
    executor = OutboundExecutor(config=config)
    yield executor
    executor.shutdown()


@pytest.fixture
def bus(config) -> EventBus:
    return EventBus(config)


@pytest.fixture
def registry(config, store, outbound, audit, clock) -> GeofenceRegistry:
    return GeofenceRegistry(config, store, outbound, audit, clock)


@pytest.fixture
def tracker(registry, config, bus, clock) -> LocationTracker:
    return LocationTracker(registry, config, bus, clock)


@pytest.fixture
def ledger(config, store, outbound, dispatcher, bus, clock) -> CaseLedger:
    return CaseLedger(config, store, outbound, dispatcher, bus, clock)


@pytest.fixture
def case_service(ledger, config, bus, outbound, audit, clock) -> CaseService:
    return CaseService(ledger, config, bus, outbound, audit, clock=clock)


@pytest.fixture
def engine(case_service, config, clock) -> EscalationEngine:
    return EscalationEngine(case_service, config, clock)


@pytest.fixture
def guardian(config, store, dispatcher, audit, clock):
    services = GuardianServices(config, store, dispatcher, audit, clock)
    services.initialize(start_workers=False)
    yield services
    services.shutdown(timeout=5.0)
