"""
Location Tracker - edge-triggered geofence transitions.

DESIGN PRINCIPLES:
- Only the most recent sample per subject is retained
- A transition is emitted only when containment CHANGES between samples
- Reports for one subject are serialized; different subjects run in parallel
- Late (out-of-order) samples yield the same transitions as in-order delivery
- Events are published after the subject lock is released
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Union

from pydantic import ValidationError as PydanticValidationError

from safezone.core.errors import InvalidLocation, ServiceUnavailable, validation_error_from_pydantic
from safezone.core.settings import Settings, settings
from safezone.models.geofence import Geofence, LocationSample, TransitionEvent, TransitionType
from safezone.services.event_bus import EventBus, Topic
from safezone.services.geofence_registry import GeofenceRegistry
from safezone.services.scheduler import PeriodicWorker
from safezone.utils.concurrency import InFlightCounter, KeyedLock
from safezone.utils.geo import distance_meters
from safezone.utils.timeutils import Clock, utc_now

logger = logging.getLogger(__name__)


@dataclass
class _SubjectState:
    """
    Retained sample plus what preceded it.

    prior_inside is the set of zone ids that contained the subject just
    before `sample` (empty when `sample` was the first report), and
    prior_captured_at is that predecessor's timestamp (None when there was
    none). Together they let a late sample be slotted in between.
    """
    sample: LocationSample
    received_at: datetime
    prior_inside: Set[str] = field(default_factory=set)
    prior_captured_at: Optional[datetime] = None


class LocationTracker:
    """
    Turns location reports into entry/exit events against the subject's
    enabled geofences.
    """

    def __init__(
        self,
        registry: GeofenceRegistry,
        config: Optional[Settings] = None,
        bus: Optional[EventBus] = None,
        clock: Clock = utc_now,
    ):
        self.registry = registry
        self.config = config or settings
        self.bus = bus
        self.clock = clock
        self._locks = KeyedLock()
        self._states_lock = threading.Lock()
        self._states: Dict[str, _SubjectState] = {}
        self._inflight = InFlightCounter()
        self._reaper = PeriodicWorker(
            "location-reaper",
            self.config.GEOFENCE_CHECK_INTERVAL_MS / 1000,
            self.sweep_stale,
        )
        self.samples_processed = 0
        self.samples_discarded = 0
        self.events_emitted = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def update_location(
        self, subject_id: str, sample: Union[LocationSample, Dict[str, Any]]
    ) -> List[TransitionEvent]:
        """
        Process one location report.

        Args:
            subject_id: Monitored subject; also the owner of the zones checked
            sample: LocationSample or dict with lat, lng, accuracy_meters, captured_at

        Returns:
            Transition events caused by this report, oldest first

        Raises:
            InvalidLocation: Missing subject, coordinates out of range or accuracy too poor
            ServiceUnavailable: Tracker has been closed
        """
        sample = self._validate(subject_id, sample)

        if not self._inflight.try_enter():
            raise ServiceUnavailable("Location tracker is shut down")
        try:
            with self._locks.hold(subject_id):
                events = self._apply(subject_id, sample)
            if events:
                self._count("events_emitted", len(events))
                logger.info(
                    f"Subject {subject_id}: "
                    + ", ".join(f"{e.type.value} {e.geofence_name}" for e in events)
                )
                if self.bus is not None:
                    for event in events:
                        self.bus.publish(Topic.GEOFENCE_EVENTS, event)
        finally:
            self._inflight.exit()
        return events

    def get_location(self, subject_id: str) -> Optional[LocationSample]:
        with self._states_lock:
            state = self._states.get(subject_id)
        return state.sample.model_copy() if state else None

    def tracked_subjects(self) -> List[str]:
        with self._states_lock:
            return list(self._states)

    def sweep_stale(self, now: Optional[datetime] = None) -> int:
        """
        Drop retained samples received more than STALE_LOCATION_SECONDS ago.

        Returns:
            Number of subjects dropped
        """
        now = now or self.clock()
        cutoff = now - timedelta(seconds=self.config.STALE_LOCATION_SECONDS)
        with self._states_lock:
            candidates = [sid for sid, state in self._states.items() if state.received_at < cutoff]

        removed = 0
        for subject_id in candidates:
            with self._locks.hold(subject_id):
                with self._states_lock:
                    state = self._states.get(subject_id)
                    if state is not None and state.received_at < cutoff:
                        del self._states[subject_id]
                        removed += 1

        if removed:
            logger.info(f"Dropped {removed} stale location samples")
        return removed

    def start(self) -> None:
        self._reaper.start()

    def close(self, timeout: Optional[float] = None) -> bool:
        """
        Stop the reaper, refuse new reports and wait for running ones.

        Returns:
            False if in-flight updates did not finish within timeout
        """
        self._reaper.stop(timeout=timeout)
        self._inflight.close()
        return self._inflight.wait_idle(timeout=timeout)

    def get_stats(self) -> Dict[str, Any]:
        with self._states_lock:
            stats = {
                "tracked_subjects": len(self._states),
                "samples_processed": self.samples_processed,
                "samples_discarded": self.samples_discarded,
                "events_emitted": self.events_emitted,
            }
        return {
            **stats,
            "in_flight": len(self._inflight),
            "reaper_running": self._reaper.is_running,
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _count(self, counter: str, amount: int = 1) -> None:
        with self._states_lock:
            setattr(self, counter, getattr(self, counter) + amount)

    def _validate(self, subject_id: str, sample: Union[LocationSample, Dict[str, Any]]) -> LocationSample:
        if not subject_id or not isinstance(subject_id, str):
            raise InvalidLocation("subject_id is required")
        try:
            if isinstance(sample, LocationSample):
                sample = LocationSample.model_validate(sample.model_dump())
            else:
                sample = LocationSample.model_validate(sample)
        except PydanticValidationError as e:
            error = validation_error_from_pydantic(e, "location")
            raise InvalidLocation(error.message, details=error.details) from e

        ceiling = self.config.MAX_LOCATION_ACCURACY_METERS
        if sample.accuracy_meters > ceiling:
            raise InvalidLocation(
                f"Location accuracy {sample.accuracy_meters}m exceeds {ceiling}m",
                details={"accuracy_meters": sample.accuracy_meters, "max": ceiling},
            )
        return sample.model_copy(update={"subject_id": subject_id})

    def _apply(self, subject_id: str, sample: LocationSample) -> List[TransitionEvent]:
        """Run under the subject lock."""
        zones = self.registry.list_active(subject_id)
        now_inside = self._containment(sample, zones)
        received_at = self.clock()

        with self._states_lock:
            state = self._states.get(subject_id)

        if state is None:
            events = self._edges(subject_id, zones, set(), now_inside, sample)
            new_state = _SubjectState(sample=sample, received_at=received_at)
        elif sample.captured_at > state.sample.captured_at:
            was_inside = self._containment(state.sample, zones)
            events = self._edges(subject_id, zones, was_inside, now_inside, sample)
            new_state = _SubjectState(
                sample=sample,
                received_at=received_at,
                prior_inside=was_inside,
                prior_captured_at=state.sample.captured_at,
            )
        else:
            events, new_state = self._insert_late(subject_id, zones, state, sample, now_inside)
            if new_state is None:
                return []

        with self._states_lock:
            self._states[subject_id] = new_state
            self.samples_processed += 1
        return events

    def _insert_late(self, subject_id, zones, state: _SubjectState, sample: LocationSample, late_inside: Set[str]):
        """
        Slot a sample older than the retained one between its predecessor and it.

        For each zone, with a = containment before, b = containment at the
        late sample and c = containment at the retained sample: when a == c
        and b differs, in-order delivery would have produced a -> b and
        b -> c, neither of which was emitted. Any other combination was
        already reported correctly.
        """
        too_old = state.prior_captured_at is not None and sample.captured_at <= state.prior_captured_at
        if sample.captured_at == state.sample.captured_at or too_old:
            self._count("samples_discarded")
            logger.warning(
                f"Discarding stale sample for {subject_id} captured at "
                f"{sample.captured_at.isoformat()} (retained {state.sample.captured_at.isoformat()})"
            )
            return [], None

        latest_inside = self._containment(state.sample, zones)
        events: List[TransitionEvent] = []
        for zone in zones:
            before = zone.id in state.prior_inside
            during = zone.id in late_inside
            after = zone.id in latest_inside
            if before == after and during != before:
                first = self._edge(subject_id, zone, before, during, sample)
                second = self._edge(subject_id, zone, during, after, state.sample)
                events.extend(e for e in (first, second) if e is not None)

        events.sort(key=lambda e: e.occurred_at)
        logger.debug(f"Inserted late sample for {subject_id}, {len(events)} events")
        new_state = _SubjectState(
            sample=state.sample,
            received_at=state.received_at,
            prior_inside=late_inside,
            prior_captured_at=sample.captured_at,
        )
        return events, new_state

    @staticmethod
    def _containment(sample: LocationSample, zones: List[Geofence]) -> Set[str]:
        return {zone.id for zone in zones if GeofenceRegistry.is_inside(sample, zone)}

    def _edges(self, subject_id, zones, was_inside: Set[str], now_inside: Set[str], sample) -> List[TransitionEvent]:
        events = []
        for zone in zones:
            event = self._edge(subject_id, zone, zone.id in was_inside, zone.id in now_inside, sample)
            if event is not None:
                events.append(event)
        return events

    @staticmethod
    def _edge(subject_id: str, zone: Geofence, was: bool, now: bool, sample: LocationSample) -> Optional[TransitionEvent]:
        if now and not was and zone.alert_on_entry:
            kind = TransitionType.ENTRY
        elif was and not now and zone.alert_on_exit:
            kind = TransitionType.EXIT
        else:
            return None
        return TransitionEvent(
            type=kind,
            subject_id=subject_id,
            geofence_id=zone.id,
            geofence_name=zone.name,
            geofence_kind=zone.kind,
            location=sample.coordinates,
            accuracy_meters=sample.accuracy_meters,
            occurred_at=sample.captured_at,
            distance_meters=round(distance_meters(sample, zone.center), 2),
        )
