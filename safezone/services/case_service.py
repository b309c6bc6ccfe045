"""
Case Service - missing-person case lifecycle.

DESIGN PRINCIPLES:
- Every mutation runs under the case lock and appends an IMMUTABLE timeline entry
- Derived fields (category, risk, search radius) are recomputed centrally
- CLOSED is terminal except for an explicit reopen
- Side effects (events, watcher notifications, audit) happen after the lock
  is released and never fail the mutation
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from safezone.core.errors import (
    AlreadyClosed,
    InvalidTransition,
    NotClosed,
    NotFound,
    QuotaExceeded,
    ServiceUnavailable,
    ValidationError,
    validation_error_from_pydantic,
)
from safezone.core.settings import Settings, settings
from safezone.models.case import (
    Case,
    CaseCreate,
    CaseStatus,
    CaseUpdate,
    Closure,
    LastKnownLocation,
    Lead,
    LeadCreate,
    LeadUpdate,
    Priority,
    TimelineEntry,
    TimelineEntryCreate,
    TimelineEntryType,
)
from safezone.models.events import CaseEvent, CaseEventType
from safezone.models.geofence import Coordinates, TransitionEvent, TransitionType
from safezone.services.case_ledger import CaseLedger
from safezone.services.event_bus import EventBus, Topic
from safezone.services.outbound import AuditSink, OutboundExecutor, build_audit_event
from safezone.services.risk_scoring import RiskScorer
from safezone.services.status_workflow import CaseStatusWorkflow
from safezone.utils.concurrency import InFlightCounter, KeyedLock
from safezone.utils.ids import generate_case_id, generate_lead_id, generate_timeline_id
from safezone.utils.timeutils import Clock, utc_now

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class CaseService:
    """
    Opens, updates, annotates and closes cases held in the CaseLedger.
    """

    def __init__(
        self,
        ledger: CaseLedger,
        config: Optional[Settings] = None,
        bus: Optional[EventBus] = None,
        outbound: Optional[OutboundExecutor] = None,
        audit: Optional[AuditSink] = None,
        scorer: Optional[RiskScorer] = None,
        clock: Clock = utc_now,
    ):
        self.ledger = ledger
        self.config = config or settings
        self.bus = bus
        self.outbound = outbound
        self.audit = audit
        self.scorer = scorer or RiskScorer()
        self.clock = clock
        self._reporter_locks = KeyedLock()
        self._inflight = InFlightCounter()
        self._subscription = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def subscribe(self, bus: Optional[EventBus] = None) -> None:
        """Start annotating cases with geofence transitions of their subject."""
        bus = bus or self.bus
        if bus is None or self._subscription is not None:
            return
        self._subscription = bus.subscribe(Topic.GEOFENCE_EVENTS, self.handle_transition, name="case-annotator")

    @property
    def accepting(self) -> bool:
        return not self._inflight.closed

    def close(self, timeout: Optional[float] = None) -> bool:
        """Refuse new mutations and wait for running ones."""
        if self._subscription is not None and self.bus is not None:
            self.bus.unsubscribe(self._subscription)
            self._subscription = None
        self._inflight.close()
        return self._inflight.wait_idle(timeout=timeout)

    @contextmanager
    def mutation(self, case_id: str) -> Iterator[Case]:
        """
        Hold the case lock and yield a working copy of the case.

        The copy is only persisted if the caller calls ledger.upsert().
        """
        if not self._inflight.try_enter():
            raise ServiceUnavailable("Case service is shut down")
        try:
            with self.ledger.lock(case_id):
                yield self.ledger.require(case_id)
        finally:
            self._inflight.exit()

    # ------------------------------------------------------------------
    # Cases
    # ------------------------------------------------------------------

    def create_case(self, data: Union[CaseCreate, Dict[str, Any]]) -> Case:
        """
        Open a new case.

        Args:
            data: CaseCreate or dict with reporter_id, subject, last_known_location,
                circumstances and optional priority

        Returns:
            The created case with derived fields computed

        Raises:
            ValidationError: Missing reporter, subject name or last known location
            QuotaExceeded: Reporter already has MAX_ACTIVE_CASES_PER_REPORTER open cases
        """
        data = self._parse(CaseCreate, data, "case")
        if not self._inflight.try_enter():
            raise ServiceUnavailable("Case service is shut down")
        try:
            with self._reporter_locks.hold(data.reporter_id):
                open_cases = self.ledger.count_open_for_reporter(data.reporter_id)
                limit = self.config.MAX_ACTIVE_CASES_PER_REPORTER
                if open_cases >= limit:
                    raise QuotaExceeded(
                        f"Reporter {data.reporter_id} already has {open_cases} open cases (max {limit})",
                        details={"reporter_id": data.reporter_id, "limit": limit},
                    )
                case = self._build_case(data)
                with self.ledger.lock(case.case_id):
                    self.ledger.upsert(case)
        finally:
            self._inflight.exit()

        logger.info(
            f"Created case {case.case_id} ({case.category.value}, priority {case.priority.value}, "
            f"risk {case.risk_level.value}) for reporter {case.reporter_id}"
        )
        self.publish_event(CaseEventType.CASE_CREATED, case, {
            "priority": case.priority.value,
            "risk_level": case.risk_level.value,
            "category": case.category.value,
        })
        self._record("case_created", case.case_id, case.reporter_id, {"priority": case.priority.value})

        if case.priority == Priority.CRITICAL:
            self.publish_escalation(case, Priority.CRITICAL, Priority.CRITICAL, "critical priority on creation")
        return case

    def _build_case(self, data: CaseCreate) -> Case:
        now = self.clock()
        circumstances = data.circumstances
        if circumstances.time_of_disappearance is None:
            circumstances = circumstances.model_copy(update={"time_of_disappearance": now})
        location = data.last_known_location
        if location.timestamp is None:
            location = location.model_copy(update={"timestamp": now})

        case_id = generate_case_id(now)
        case = Case(
            case_id=case_id,
            reporter_id=data.reporter_id,
            subject=data.subject,
            last_known_location=location,
            circumstances=circumstances,
            priority=data.priority,
            status=CaseStatus.ACTIVE,
            watchers={data.reporter_id},
            created_at=now,
            updated_at=now,
            last_activity_at=now,
        )
        self.apply_assessment(case, now)
        self._append(case, TimelineEntry(
            id=generate_timeline_id(),
            type=TimelineEntryType.CASE_CREATED.value,
            description=f"Case opened for {case.subject.name}",
            actor=data.reporter_id,
            timestamp=now,
            data={
                "priority": case.priority.value,
                "category": case.category.value,
                "risk_level": case.risk_level.value,
                "risk_score": case.risk_score,
            },
            location=Coordinates(lat=location.lat, lng=location.lng),
        ))
        return case

    def get_case(self, case_id: str) -> Case:
        """
        Raises:
            NotFound: Unknown case id
        """
        return self.ledger.require(case_id)

    def search_cases(self, filters: Optional[Dict[str, Any]] = None) -> List[Case]:
        return self.ledger.search(filters)

    def update_case(self, case_id: str, updates: Union[CaseUpdate, Dict[str, Any]], actor: str) -> Case:
        """
        Apply a manual update (status, priority, subject, circumstances,
        last known location). Each changed aspect gets its own timeline entry.

        Raises:
            NotFound: Unknown case id
            InvalidTransition: Case is closed, or the status move is not allowed
            ValidationError: Malformed update
        """
        self._require_actor(actor)
        updates = self._parse(CaseUpdate, updates, "case update")

        with self.mutation(case_id) as case:
            if case.is_closed:
                raise InvalidTransition(f"Case {case_id} is closed; reopen it before updating")

            now = self.clock()
            entries: List[TimelineEntry] = []

            if updates.status is not None and updates.status != case.status:
                entries.append(CaseStatusWorkflow.validate_and_transition(
                    case.status, updates.status, actor, updates.status_reason, now
                ))
                case.status = updates.status

            if updates.priority is not None and updates.priority != case.priority:
                entries.append(self._priority_entry(
                    TimelineEntryType.PRIORITY_CHANGED, case.priority, updates.priority,
                    actor, now, updates.priority_reason or "",
                ))
                case.priority = updates.priority

            changed_fields = []
            if updates.subject is not None and updates.subject != case.subject:
                case.subject = updates.subject
                changed_fields.append("subject")
            if updates.circumstances is not None:
                circumstances = updates.circumstances
                if circumstances.time_of_disappearance is None:
                    circumstances = circumstances.model_copy(
                        update={"time_of_disappearance": case.circumstances.time_of_disappearance}
                    )
                if circumstances != case.circumstances:
                    case.circumstances = circumstances
                    changed_fields.append("circumstances")
            if updates.last_known_location is not None:
                location = updates.last_known_location
                if location.timestamp is None:
                    location = location.model_copy(update={"timestamp": now})
                if location != case.last_known_location:
                    case.last_known_location = location
                    changed_fields.append("last_known_location")

            if changed_fields:
                previous_level = case.risk_level
                self.apply_assessment(case, now)
                entries.append(TimelineEntry(
                    id=generate_timeline_id(),
                    type=TimelineEntryType.DETAILS_UPDATED.value,
                    description=f"Updated {', '.join(changed_fields)}",
                    actor=actor,
                    timestamp=now,
                    data={
                        "fields": changed_fields,
                        "previous_risk_level": previous_level.value,
                        "new_risk_level": case.risk_level.value,
                    },
                ))

            if not entries:
                logger.debug(f"Update of case {case_id} changed nothing")
                return case

            for entry in entries:
                self._append(case, entry)
            self.ledger.upsert(case)

        logger.info(f"Case {case_id} updated by {actor}: {[e.type for e in entries]}")
        payload = {"changes": [{**e.data, "type": e.type} for e in entries]}
        self.publish_event(CaseEventType.CASE_UPDATED, case, payload)
        self.ledger.notify_watchers(case_id, CaseEventType.CASE_UPDATED.value, payload)
        self._record("case_updated", case_id, actor, payload)
        return case

    def close_case(self, case_id: str, closure: Union[Closure, Dict[str, Any], None], actor: str) -> Case:
        """
        Close a case with its outcome.

        Raises:
            AlreadyClosed: Case is already closed
        """
        self._require_actor(actor)
        closure = self._parse(Closure, closure or {}, "closure")

        with self.mutation(case_id) as case:
            if case.is_closed:
                raise AlreadyClosed(f"Case {case_id} is already closed")
            now = self.clock()
            previous_status = case.status
            case.status = CaseStatus.CLOSED
            case.closure = closure
            case.closed_at = now
            case.closed_by = actor
            self._append(case, TimelineEntry(
                id=generate_timeline_id(),
                type=TimelineEntryType.CASE_CLOSED.value,
                description=f"Case closed: {closure.outcome.value}",
                actor=actor,
                timestamp=now,
                data={
                    "previous_status": previous_status.value,
                    "outcome": closure.outcome.value,
                    "condition": closure.condition,
                    "found_by": closure.found_by,
                },
                location=closure.found_location,
            ))
            self.ledger.upsert(case)

        logger.info(f"Case {case_id} closed by {actor} ({closure.outcome.value})")
        payload = {"outcome": closure.outcome.value, "condition": closure.condition}
        self.publish_event(CaseEventType.CASE_CLOSED, case, payload)
        self.ledger.notify_watchers(case_id, CaseEventType.CASE_CLOSED.value, payload)
        self._record("case_closed", case_id, actor, payload)
        return case

    def reopen_case(self, case_id: str, reason: Optional[str], actor: str) -> Case:
        """
        Reopen a closed case; it becomes active again.

        Raises:
            NotClosed: Case is not closed
        """
        self._require_actor(actor)
        with self.mutation(case_id) as case:
            if not case.is_closed:
                raise NotClosed(f"Case {case_id} is not closed (status {case.status.value})")
            now = self.clock()
            case.status = CaseStatus.ACTIVE
            case.reopened_at = now
            case.reopen_reason = reason or ""
            case.closed_at = None
            case.closed_by = None
            case.archived = False
            self.apply_assessment(case, now)
            self._append(case, TimelineEntry(
                id=generate_timeline_id(),
                type=TimelineEntryType.CASE_REOPENED.value,
                description="Case reopened",
                actor=actor,
                timestamp=now,
                data={"reason": reason or ""},
            ))
            self.ledger.upsert(case)

        logger.info(f"Case {case_id} reopened by {actor}")
        payload = {"reason": reason or ""}
        self.publish_event(CaseEventType.CASE_REOPENED, case, payload)
        self.ledger.notify_watchers(case_id, CaseEventType.CASE_REOPENED.value, payload)
        self._record("case_reopened", case_id, actor, payload)
        return case

    # ------------------------------------------------------------------
    # Timeline & leads
    # ------------------------------------------------------------------

    def add_timeline_entry(
        self, case_id: str, entry: Union[TimelineEntryCreate, Dict[str, Any]], actor: str
    ) -> TimelineEntry:
        """Append a free-form entry (search update, note, ...)."""
        self._require_actor(actor)
        entry = self._parse(TimelineEntryCreate, entry, "timeline entry")

        with self.mutation(case_id) as case:
            now = self.clock()
            record = TimelineEntry(
                id=generate_timeline_id(),
                type=entry.type,
                description=entry.description,
                actor=actor,
                timestamp=entry.timestamp or now,
                data=entry.data,
                location=entry.location,
            )
            self._append(case, record, activity_at=now)
            self.ledger.upsert(case)

        logger.info(f"Timeline entry {record.type} added to {case_id} by {actor}")
        payload = {"entry_id": record.id, "type": record.type}
        self.publish_event(CaseEventType.TIMELINE_ENTRY_ADDED, case, payload)
        self.ledger.notify_watchers(case_id, CaseEventType.TIMELINE_ENTRY_ADDED.value, payload)
        self._record("timeline_entry_added", case_id, actor, payload)
        return record

    def add_lead(self, case_id: str, lead: Union[LeadCreate, Dict[str, Any]], actor: str) -> Lead:
        self._require_actor(actor)
        lead = self._parse(LeadCreate, lead, "lead")

        with self.mutation(case_id) as case:
            now = self.clock()
            record = Lead(
                id=generate_lead_id(),
                type=lead.type,
                description=lead.description,
                location=lead.location,
                timestamp=lead.timestamp or now,
                reported_by=actor,
                reported_at=now,
                priority=lead.priority,
                credibility=lead.credibility,
                follow_up_required=lead.follow_up_required,
            )
            case.leads.append(record)
            self._append(case, TimelineEntry(
                id=generate_timeline_id(),
                type=TimelineEntryType.LEAD_ADDED.value,
                description=f"New {record.type} lead",
                actor=actor,
                timestamp=now,
                data={"lead_id": record.id, "lead_type": record.type, "priority": record.priority.value},
                location=record.location,
            ))
            self.ledger.upsert(case)

        logger.info(f"Lead {record.id} added to {case_id} by {actor}")
        payload = {"lead_id": record.id, "lead_type": record.type}
        self.publish_event(CaseEventType.LEAD_ADDED, case, payload)
        self.ledger.notify_watchers(case_id, CaseEventType.LEAD_ADDED.value, payload)
        self._record("lead_added", case_id, actor, payload)
        return record

    def update_lead(
        self, case_id: str, lead_id: str, updates: Union[LeadUpdate, Dict[str, Any]], actor: str
    ) -> Lead:
        """
        Raises:
            NotFound: Unknown case or lead id
        """
        self._require_actor(actor)
        updates = self._parse(LeadUpdate, updates, "lead update")
        changes = {k: v for k, v in updates.model_dump(exclude_unset=True).items() if v is not None}

        with self.mutation(case_id) as case:
            lead = case.find_lead(lead_id)
            if lead is None:
                raise NotFound(f"Lead {lead_id} not found in case {case_id}")

            diff = {
                field: {"previous": _plain(getattr(lead, field)), "new": _plain(value)}
                for field, value in changes.items()
                if getattr(lead, field) != value
            }
            if not diff:
                logger.debug(f"Update of lead {lead_id} changed nothing")
                return lead

            now = self.clock()
            for field in diff:
                setattr(lead, field, changes[field])
            lead.updated_at = now
            lead.updated_by = actor
            self._append(case, TimelineEntry(
                id=generate_timeline_id(),
                type=TimelineEntryType.LEAD_UPDATED.value,
                description=f"Lead {lead_id} updated: {', '.join(sorted(diff))}",
                actor=actor,
                timestamp=now,
                data={"lead_id": lead_id, "changes": diff},
            ))
            self.ledger.upsert(case)

        logger.info(f"Lead {lead_id} on {case_id} updated by {actor}: {sorted(diff)}")
        payload = {"lead_id": lead_id, "changes": diff}
        self.publish_event(CaseEventType.LEAD_UPDATED, case, payload)
        self.ledger.notify_watchers(case_id, CaseEventType.LEAD_UPDATED.value, payload)
        self._record("lead_updated", case_id, actor, payload)
        return lead

    # ------------------------------------------------------------------
    # Watchers
    # ------------------------------------------------------------------

    def add_watcher(self, case_id: str, user_id: str) -> bool:
        added = self.ledger.add_watcher(case_id, user_id)
        if added:
            self._record("watcher_added", case_id, user_id, {})
        return added

    def remove_watcher(self, case_id: str, user_id: str) -> bool:
        removed = self.ledger.remove_watcher(case_id, user_id)
        if removed:
            self._record("watcher_removed", case_id, user_id, {})
        return removed

    # ------------------------------------------------------------------
    # Derived fields & escalation
    # ------------------------------------------------------------------

    def apply_assessment(self, case: Case, now: Optional[datetime] = None) -> bool:
        """
        Recompute derived fields in place. Returns True if anything changed.
        """
        assessment = self.scorer.assess(case.subject, case.circumstances, now or self.clock())
        changed = (
            case.category != assessment.category
            or case.risk_score != assessment.risk_score
            or case.risk_level != assessment.risk_level
            or case.search_radius_meters != assessment.search_radius_meters
        )
        case.category = assessment.category
        case.risk_score = assessment.risk_score
        case.risk_level = assessment.risk_level
        case.search_radius_meters = assessment.search_radius_meters
        return changed

    def refresh_derived(self, case_id: str, now: Optional[datetime] = None) -> Case:
        """Recompute derived fields (risk grows with elapsed time) and save if changed."""
        with self.mutation(case_id) as case:
            if self.apply_assessment(case, now):
                self.ledger.upsert(case)
                logger.debug(
                    f"Refreshed derived fields of {case_id}: risk {case.risk_level.value}, "
                    f"radius {case.search_radius_meters}m"
                )
        return case

    def publish_escalation(self, case: Case, previous: Priority, new: Priority, reason: str) -> None:
        """Publish case_escalated and notify the case's watchers."""
        payload = {
            "previous_priority": previous.value,
            "new_priority": new.value,
            "reason": reason,
            "risk_level": case.risk_level.value,
        }
        logger.info(f"Case {case.case_id} escalated {previous.value} -> {new.value}: {reason}")
        self.publish_event(CaseEventType.CASE_ESCALATED, case, payload)
        self.ledger.notify_watchers(case.case_id, CaseEventType.CASE_ESCALATED.value, payload)
        self._record("case_escalated", case.case_id, SYSTEM_ACTOR, payload)

    @staticmethod
    def _priority_entry(entry_type, previous: Priority, new: Priority, actor: str, now, reason: str) -> TimelineEntry:
        return TimelineEntry(
            id=generate_timeline_id(),
            type=entry_type.value,
            description=f"Priority changed from {previous.value} to {new.value}",
            actor=actor,
            timestamp=now,
            data={"previous_priority": previous.value, "new_priority": new.value, "reason": reason},
        )

    def escalation_entry(self, previous: Priority, new: Priority, now, data: Dict[str, Any]) -> TimelineEntry:
        entry = self._priority_entry(
            TimelineEntryType.AUTO_ESCALATION, previous, new, SYSTEM_ACTOR, now,
            data.get("reason", "time threshold exceeded"),
        )
        return entry.model_copy(update={"data": {**entry.data, **data}})

    # ------------------------------------------------------------------
    # Geofence transitions
    # ------------------------------------------------------------------

    def handle_transition(self, event: TransitionEvent) -> None:
        """Event bus subscriber: annotate open cases of the subject."""
        for case_id in self.ledger.find_by_subject(event.subject_id):
            try:
                self._annotate_transition(case_id, event)
            except NotFound:
                logger.debug(f"Case {case_id} vanished before annotation")
            except Exception as e:
                logger.error(f"Failed to annotate case {case_id} with {event.type.value}: {e}", exc_info=True)

    def _annotate_transition(self, case_id: str, event: TransitionEvent) -> None:
        entry_type = (
            TimelineEntryType.GEOFENCE_ENTRY if event.type == TransitionType.ENTRY
            else TimelineEntryType.GEOFENCE_EXIT
        )
        with self.mutation(case_id) as case:
            if case.is_closed:
                return
            now = self.clock()
            verb = "entered" if event.type == TransitionType.ENTRY else "left"
            self._append(case, TimelineEntry(
                id=generate_timeline_id(),
                type=entry_type.value,
                description=f"Subject {verb} {event.geofence_kind.value} '{event.geofence_name}'",
                actor=SYSTEM_ACTOR,
                timestamp=now,
                data={
                    "geofence_id": event.geofence_id,
                    "geofence_name": event.geofence_name,
                    "geofence_kind": event.geofence_kind.value,
                    "occurred_at": event.occurred_at.isoformat(),
                    "distance_meters": event.distance_meters,
                },
                location=event.location,
            ))
            current = case.last_known_location.timestamp
            if current is None or event.occurred_at >= current:
                case.last_known_location = LastKnownLocation(
                    lat=event.location.lat,
                    lng=event.location.lng,
                    timestamp=event.occurred_at,
                    accuracy_meters=event.accuracy_meters,
                )
            self.ledger.upsert(case)

        payload = {"geofence_id": event.geofence_id, "transition": event.type.value}
        self.ledger.notify_watchers(case_id, entry_type.value, payload)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        return {**self.ledger.get_stats(), "in_flight": len(self._inflight), "accepting": self.accepting}

    @staticmethod
    def _append(case: Case, entry: TimelineEntry, activity_at: Optional[datetime] = None) -> None:
        case.timeline.append(entry)
        case.updated_at = activity_at or entry.timestamp
        case.last_activity_at = activity_at or entry.timestamp

    def publish_event(self, event_type: CaseEventType, case: Case, data: Dict[str, Any]) -> None:
        if self.bus is None:
            return
        self.bus.publish(
            Topic.CASE_EVENTS,
            CaseEvent(type=event_type, case_id=case.case_id, timestamp=self.clock(), data=data),
        )

    def _record(self, event_type: str, case_id: str, actor: str, data: Dict[str, Any]) -> None:
        if self.audit is None or self.outbound is None:
            return
        event = build_audit_event(event_type, "case", case_id, actor, data)
        self.outbound.submit(f"audit {event_type}", self.audit.record, event, key=case_id)

    @staticmethod
    def _require_actor(actor: str) -> None:
        if not actor or not isinstance(actor, str):
            raise ValidationError("actor is required")

    @staticmethod
    def _parse(model, value, what: str):
        if isinstance(value, model):
            return value
        if isinstance(value, BaseModel):
            value = value.model_dump(exclude_unset=True)
        try:
            return model.model_validate(value)
        except PydanticValidationError as e:
            raise validation_error_from_pydantic(e, what) from e


def _plain(value: Any) -> Any:
    return getattr(value, "value", value)
