"""
Guardian Services - wires every component and exposes the library API.

DESIGN PRINCIPLES:
- One container per process; components receive their collaborators explicitly
- initialize() restores state from the durable store, then starts the workers
- shutdown() stops workers, drains in-flight work, then drains outbound calls
- After shutdown every mutating call raises ServiceUnavailable
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from safezone.core.errors import ServiceUnavailable
from safezone.core.settings import Settings, settings
from safezone.models.case import Case, Lead, TimelineEntry
from safezone.models.geofence import Geofence, LocationSample, TransitionEvent
from safezone.services.case_ledger import CaseLedger
from safezone.services.case_service import CaseService
from safezone.services.escalation_engine import EscalationEngine, SweepReport
from safezone.services.event_bus import EventBus, Subscription, Topic
from safezone.services.geofence_registry import GeofenceRegistry
from safezone.services.location_tracker import LocationTracker
from safezone.services.outbound import (
    AuditSink,
    NotificationDispatcher,
    OutboundExecutor,
    StoreAuditSink,
    build_dispatcher,
)
from safezone.stores.base import DocumentStore
from safezone.utils.timeutils import Clock, utc_now

logger = logging.getLogger(__name__)


class GuardianServices:
    """
    Container for the geofence registry, location tracker, case ledger,
    case service and escalation engine.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        store: Optional[DocumentStore] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        audit: Optional[AuditSink] = None,
        clock: Clock = utc_now,
    ):
        self.config = config or settings
        if store is None:
            from safezone.config.firebase import get_store
            store = get_store()
        self.store = store
        self.clock = clock

        self.bus = EventBus(self.config)
        self.outbound = OutboundExecutor(config=self.config)
        self.dispatcher = dispatcher or build_dispatcher(self.config)
        self.audit = audit or StoreAuditSink(store)

        self.registry = GeofenceRegistry(self.config, store, self.outbound, self.audit, clock)
        self.tracker = LocationTracker(self.registry, self.config, self.bus, clock)
        self.ledger = CaseLedger(self.config, store, self.outbound, self.dispatcher, self.bus, clock)
        self.cases = CaseService(self.ledger, self.config, self.bus, self.outbound, self.audit, clock=clock)
        self.escalation = EscalationEngine(self.cases, self.config, clock)

        self.initialized = False
        self.started_at: Optional[datetime] = None
        self._shut_down = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, start_workers: bool = True) -> "GuardianServices":
        """
        Restore geofences and cases from the store, connect the case service
        to geofence events and start the periodic workers.
        """
        if self.initialized:
            return self
        if self._shut_down:
            raise ServiceUnavailable("Guardian services have been shut down")

        geofences = self.registry.load()
        cases = self.ledger.load()
        self.cases.subscribe(self.bus)
        if start_workers:
            self.tracker.start()
            self.escalation.start()

        self.initialized = True
        self.started_at = self.clock()
        logger.info(f"{self.config.APP_NAME} initialized ({geofences} geofences, {cases} cases)")
        return self

    def shutdown(self, timeout: Optional[float] = 30.0) -> bool:
        """
        Stop workers and drain in-flight work.

        Returns:
            False if anything was still running when timeout expired
        """
        if self._shut_down:
            return True
        self._shut_down = True
        logger.info(f"Shutting down {self.config.APP_NAME}")

        self.escalation.stop(timeout=timeout)
        drained = self.tracker.close(timeout=timeout)
        drained = self.cases.close(timeout=timeout) and drained
        drained = self.outbound.flush(timeout=timeout) and drained
        self.outbound.shutdown()

        if not drained:
            logger.warning("Shutdown timed out with work still in flight")
        return drained

    @property
    def is_running(self) -> bool:
        return self.initialized and not self._shut_down

    # ------------------------------------------------------------------
    # Location & geofences
    # ------------------------------------------------------------------

    def update_location(self, subject_id: str, sample) -> List[TransitionEvent]:
        return self.tracker.update_location(subject_id, sample)

    def get_location(self, subject_id: str) -> Optional[LocationSample]:
        return self.tracker.get_location(subject_id)

    def create_geofence(self, owner_id: str, payload) -> Geofence:
        self._check_open()
        return self.registry.create(owner_id, payload)

    def update_geofence(self, geofence_id: str, patch, owner_id: Optional[str] = None) -> Geofence:
        self._check_open()
        return self.registry.update(geofence_id, patch, owner_id)

    def delete_geofence(self, geofence_id: str, owner_id: str) -> bool:
        self._check_open()
        return self.registry.delete(geofence_id, owner_id)

    def list_geofences(self, owner_id: str) -> List[Geofence]:
        return self.registry.list_for_owner(owner_id)

    def nearby_geofences(self, location, search_radius: float = GeofenceRegistry.DEFAULT_NEARBY_RADIUS) -> List[Tuple[Geofence, float]]:
        return self.registry.nearby(location, search_radius)

    # ------------------------------------------------------------------
    # Cases
    # ------------------------------------------------------------------

    def create_case(self, data) -> Case:
        return self.cases.create_case(data)

    def get_case(self, case_id: str) -> Case:
        return self.cases.get_case(case_id)

    def update_case(self, case_id: str, updates, actor: str) -> Case:
        return self.cases.update_case(case_id, updates, actor)

    def close_case(self, case_id: str, closure, actor: str) -> Case:
        return self.cases.close_case(case_id, closure, actor)

    def reopen_case(self, case_id: str, reason: Optional[str], actor: str) -> Case:
        return self.cases.reopen_case(case_id, reason, actor)

    def add_timeline_entry(self, case_id: str, entry, actor: str) -> TimelineEntry:
        return self.cases.add_timeline_entry(case_id, entry, actor)

    def add_lead(self, case_id: str, lead, actor: str) -> Lead:
        return self.cases.add_lead(case_id, lead, actor)

    def update_lead(self, case_id: str, lead_id: str, updates, actor: str) -> Lead:
        return self.cases.update_lead(case_id, lead_id, updates, actor)

    def search_cases(self, filters: Optional[Dict[str, Any]] = None) -> List[Case]:
        return self.cases.search_cases(filters)

    def add_watcher(self, case_id: str, user_id: str) -> bool:
        self._check_open()
        return self.cases.add_watcher(case_id, user_id)

    def remove_watcher(self, case_id: str, user_id: str) -> bool:
        self._check_open()
        return self.cases.remove_watcher(case_id, user_id)

    def run_escalation_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        return self.escalation.sweep(now)

    def subscribe(self, topic: Topic, handler: Callable[[Any], None], name: Optional[str] = None) -> Subscription:
        return self.bus.subscribe(topic, handler, name)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        return {
            "geofences": self.registry.get_stats(),
            "tracker": self.tracker.get_stats(),
            "cases": self.cases.get_stats(),
            "escalation": self.escalation.get_stats(),
            "event_bus": self.bus.get_stats(),
            "outbound": self.outbound.get_stats(),
        }

    def get_health_status(self) -> Dict[str, Any]:
        outbound = self.outbound.get_stats()
        healthy = self.is_running
        return {
            "status": "healthy" if healthy else "unavailable",
            "initialized": self.initialized,
            "shut_down": self._shut_down,
            "store": type(self.store).__name__,
            "dispatcher": self.dispatcher.name,
            "workers": {
                "location_reaper": self.tracker.get_stats()["reaper_running"],
                "escalation_sweep": self.escalation.get_stats()["running"],
            },
            "outbound_failures": outbound["failed"],
            "uptime_seconds": (
                (self.clock() - self.started_at).total_seconds() if self.started_at else 0
            ),
        }

    def _check_open(self) -> None:
        if self._shut_down:
            raise ServiceUnavailable("Guardian services have been shut down")


# Singleton instance
_guardian_services: Optional[GuardianServices] = None


def get_guardian_services() -> GuardianServices:
    """
    Get or create the GuardianServices singleton instance.

    Returns:
        GuardianServices: The process-wide container (not yet initialized)
    """
    global _guardian_services
    if _guardian_services is None:
        _guardian_services = GuardianServices()
    return _guardian_services


def reset_guardian_services() -> None:
    """Shut down and drop the singleton (used between tests)."""
    global _guardian_services
    if _guardian_services is not None:
        _guardian_services.shutdown(timeout=5.0)
    _guardian_services = None
