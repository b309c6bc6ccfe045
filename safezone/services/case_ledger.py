"""
Case Ledger - authoritative in-memory case records.

DESIGN PRINCIPLES:
- One lock per case; callers hold ledger.lock(case_id) across read-modify-write
- Every read returns a COPY; mutation only happens through upsert()
- Writes are mirrored to the durable store fire-and-forget
- Watchers are part of the case record
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Set

from pydantic import ValidationError as PydanticValidationError

from safezone.core.errors import NotFound, ValidationError
from safezone.core.settings import Settings, settings
from safezone.models.case import PRIORITY_ORDER, Case, CaseStatus, Priority, RiskLevel
from safezone.models.events import CaseEvent, CaseEventType
from safezone.models.geofence import Coordinates
from safezone.services.event_bus import EventBus, Topic
from safezone.services.outbound import NotificationDispatcher, OutboundExecutor
from safezone.stores.base import DocumentStore
from safezone.utils.concurrency import KeyedLock
from safezone.utils.geo import distance_meters
from safezone.utils.timeutils import Clock, ensure_utc, utc_now

logger = logging.getLogger(__name__)

RISK_LEVEL_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


class CaseLedger:
    """Holds every case and answers filtered searches."""

    COLLECTION = "cases"

    # Configuration: Search defaults
    DEFAULT_SORT_BY = "created_at"
    DEFAULT_SORT_ORDER = "desc"
    DEFAULT_LIMIT = 50
    SORTABLE_FIELDS = {
        "created_at", "updated_at", "last_activity_at", "closed_at",
        "priority", "risk_level", "risk_score", "status",
    }

    def __init__(
        self,
        config: Optional[Settings] = None,
        store: Optional[DocumentStore] = None,
        outbound: Optional[OutboundExecutor] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        bus: Optional[EventBus] = None,
        clock: Clock = utc_now,
    ):
        self.config = config or settings
        self.store = store
        self.outbound = outbound
        self.dispatcher = dispatcher
        self.bus = bus
        self.clock = clock
        self._guard = threading.Lock()
        self._locks = KeyedLock()
        self._cases: Dict[str, Case] = {}

    @contextmanager
    def lock(self, case_id: str) -> Iterator[None]:
        """Serialize read-modify-write on one case."""
        with self._locks.hold(case_id):
            yield

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def get(self, case_id: str) -> Optional[Case]:
        with self._guard:
            case = self._cases.get(case_id)
            return case.model_copy(deep=True) if case else None

    def require(self, case_id: str) -> Case:
        case = self.get(case_id)
        if case is None:
            raise NotFound(f"Case {case_id} not found")
        return case

    def upsert(self, case: Case) -> Case:
        """Store a case record (callers hold the case lock)."""
        stored = case.model_copy(deep=True)
        with self._guard:
            self._cases[stored.case_id] = stored
        self._mirror(stored)
        return case

    def ids(self, status: Optional[CaseStatus] = None) -> List[str]:
        with self._guard:
            if status is None:
                return list(self._cases)
            status = CaseStatus(status)
            return [cid for cid, case in self._cases.items() if case.status == status]

    def find_by_subject(self, subject_id: str, include_closed: bool = False) -> List[str]:
        """Ids of cases whose subject is the given monitored subject."""
        with self._guard:
            return [
                cid for cid, case in self._cases.items()
                if case.subject.subject_id == subject_id and (include_closed or not case.is_closed)
            ]

    def count_open_for_reporter(self, reporter_id: str) -> int:
        with self._guard:
            return sum(
                1 for case in self._cases.values()
                if case.reporter_id == reporter_id and not case.is_closed
            )

    def __len__(self) -> int:
        with self._guard:
            return len(self._cases)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, filters: Optional[Dict[str, Any]] = None) -> List[Case]:
        """
        Filter, sort and paginate cases.

        Supported filters (all optional, combined with AND):
            status, priority, reporter_id, category, risk_level, archived,
            location + radius (meters), date_from, date_to (on created_at),
            sort_by, sort_order ("asc" | "desc"), offset, limit.
        Unknown keys are ignored.

        Raises:
            ValidationError: Malformed filter values
        """
        filters = dict(filters or {})
        predicates = self._build_predicates(filters)
        sort_by = filters.get("sort_by") or self.DEFAULT_SORT_BY
        sort_order = filters.get("sort_order") or self.DEFAULT_SORT_ORDER
        offset = self._int_filter(filters, "offset", 0)
        limit = self._int_filter(filters, "limit", self.DEFAULT_LIMIT)

        if sort_by not in self.SORTABLE_FIELDS:
            raise ValidationError(f"Cannot sort by {sort_by}", details={"allowed": sorted(self.SORTABLE_FIELDS)})
        if sort_order not in ("asc", "desc"):
            raise ValidationError("sort_order must be 'asc' or 'desc'")

        with self._guard:
            cases = list(self._cases.values())

        matched = [case for case in cases if all(p(case) for p in predicates)]
        matched.sort(key=lambda case: self._sort_key(case, sort_by), reverse=(sort_order == "desc"))
        page = matched[offset:offset + limit]
        return [case.model_copy(deep=True) for case in page]

    def _build_predicates(self, filters: Dict[str, Any]):
        predicates = []
        try:
            if filters.get("status") is not None:
                status = CaseStatus(filters["status"])
                predicates.append(lambda c: c.status == status)
            if filters.get("priority") is not None:
                priority = Priority(filters["priority"])
                predicates.append(lambda c: c.priority == priority)
            if filters.get("risk_level") is not None:
                risk_level = RiskLevel(filters["risk_level"])
                predicates.append(lambda c: c.risk_level == risk_level)
        except ValueError as e:
            raise ValidationError(f"Invalid search filter: {e}")

        if filters.get("reporter_id") is not None:
            reporter_id = filters["reporter_id"]
            predicates.append(lambda c: c.reporter_id == reporter_id)
        if filters.get("category") is not None:
            category = str(getattr(filters["category"], "value", filters["category"]))
            predicates.append(lambda c: c.category.value == category)
        if filters.get("archived") is not None:
            archived = bool(filters["archived"])
            predicates.append(lambda c: c.archived == archived)

        if filters.get("location") is not None and filters.get("radius") is not None:
            try:
                center = Coordinates.model_validate(filters["location"], from_attributes=True)
                radius = float(filters["radius"])
            except (PydanticValidationError, TypeError, ValueError) as e:
                raise ValidationError(f"Invalid location filter: {e}")
            predicates.append(lambda c: distance_meters(c.last_known_location, center) <= radius)

        date_from = self._date_filter(filters, "date_from")
        date_to = self._date_filter(filters, "date_to")
        if date_from is not None:
            predicates.append(lambda c: c.created_at >= date_from)
        if date_to is not None:
            predicates.append(lambda c: c.created_at <= date_to)
        return predicates

    @staticmethod
    def _date_filter(filters: Dict[str, Any], key: str) -> Optional[datetime]:
        value = filters.get(key)
        if value is None:
            return None
        try:
            return ensure_utc(value)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid {key}: {e}")

    @staticmethod
    def _int_filter(filters: Dict[str, Any], key: str, default: int) -> int:
        value = filters.get(key)
        if value is None:
            return default
        try:
            value = int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{key} must be an integer")
        if value < 0:
            raise ValidationError(f"{key} must be non-negative")
        return value

    @staticmethod
    def _sort_key(case: Case, sort_by: str):
        if sort_by == "priority":
            return (False, PRIORITY_ORDER.index(case.priority))
        if sort_by == "risk_level":
            return (False, RISK_LEVEL_ORDER.index(case.risk_level))
        value = getattr(case, sort_by)
        if value is None:
            return (True, 0) if sort_by != "status" else (True, "")
        if sort_by == "status":
            return (False, value.value)
        if isinstance(value, datetime):
            return (False, value.timestamp())
        return (False, value)

    # ------------------------------------------------------------------
    # Watchers
    # ------------------------------------------------------------------

    def add_watcher(self, case_id: str, user_id: str) -> bool:
        """Returns False if the user was already watching."""
        if not user_id:
            raise ValidationError("user_id is required")
        with self.lock(case_id):
            case = self.require(case_id)
            if user_id in case.watchers:
                return False
            case.watchers.add(user_id)
            self.upsert(case)
        logger.info(f"User {user_id} now watching case {case_id}")
        return True

    def remove_watcher(self, case_id: str, user_id: str) -> bool:
        """Returns False if the user was not watching."""
        with self.lock(case_id):
            case = self.require(case_id)
            if user_id not in case.watchers:
                return False
            case.watchers.discard(user_id)
            self.upsert(case)
        logger.info(f"User {user_id} stopped watching case {case_id}")
        return True

    def watchers(self, case_id: str) -> Set[str]:
        return set(self.require(case_id).watchers)

    def notify_watchers(self, case_id: str, event_type: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """
        Fan a case event out to every watcher.

        Publishes one watcher_notification per watcher on case_events and
        hands each notification to the dispatcher without waiting.

        Returns:
            Number of watchers notified
        """
        watchers = sorted(self.watchers(case_id))
        payload = payload or {}
        now = self.clock()
        for user_id in watchers:
            message = {"event_type": event_type, "case_id": case_id, "data": payload}
            if self.bus is not None:
                self.bus.publish(
                    Topic.CASE_EVENTS,
                    CaseEvent(
                        type=CaseEventType.WATCHER_NOTIFICATION,
                        case_id=case_id,
                        timestamp=now,
                        data={"user_id": user_id, **message},
                    ),
                )
            if self.dispatcher is not None and self.outbound is not None:
                self.outbound.submit(
                    f"notify {user_id} of {event_type}", self.dispatcher.notify, user_id, message, key=user_id
                )
        if watchers:
            logger.debug(f"Notified {len(watchers)} watchers of {event_type} on {case_id}")
        return len(watchers)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> int:
        """Restore cases from the durable store. Returns the number loaded."""
        if self.store is None:
            return 0
        loaded = 0
        for doc in self.store.query(self.COLLECTION):
            try:
                case = Case.model_validate(doc)
            except PydanticValidationError as e:
                logger.warning(f"Skipping malformed case document {doc.get('case_id')}: {e}")
                continue
            with self._guard:
                self._cases[case.case_id] = case
            loaded += 1
        logger.info(f"Loaded {loaded} cases from store")
        return loaded

    def get_stats(self) -> Dict[str, Any]:
        with self._guard:
            cases = list(self._cases.values())
        by_status = {status.value: 0 for status in CaseStatus}
        by_priority = {priority.value: 0 for priority in Priority}
        for case in cases:
            by_status[case.status.value] += 1
            by_priority[case.priority.value] += 1
        return {
            "total": len(cases),
            "archived": sum(1 for c in cases if c.archived),
            "by_status": by_status,
            "by_priority": by_priority,
        }

    def _mirror(self, case: Case) -> None:
        if self.store is None or self.outbound is None:
            return
        self.outbound.submit(
            f"save case {case.case_id}",
            self.store.put,
            self.COLLECTION,
            case.case_id,
            case.model_dump(mode="json"),
            key=case.case_id,
        )
