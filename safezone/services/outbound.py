"""
Outbound side effects - durable-store mirror writes, watcher notifications
and audit records.

DESIGN PRINCIPLES:
- Fire-and-forget: callers never wait for delivery
- Failures are LOGGED, never raised back into a core operation
- Dispatchers and sinks are swappable (logging, webhook, Firestore, memory)
"""

import logging
import threading
import uuid
import zlib
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, List, Optional, Set

import requests

from safezone.core.settings import Settings, settings
from safezone.stores.base import DocumentStore
from safezone.utils.timeutils import utc_now

logger = logging.getLogger(__name__)


class OutboundExecutor:
    """
    Small striped worker pool for side effects.

    Tasks submitted with the same key (document id, user id) run on the same
    single-threaded lane, in submission order, so mirror writes of one
    document never overtake each other. Every call is wrapped so that an
    exception is logged with the task description and counted; nothing
    propagates to the submitter.
    """

    def __init__(self, max_workers: Optional[int] = None, config: Optional[Settings] = None):
        config = config or settings
        lanes = max(1, max_workers or config.OUTBOUND_WORKERS)
        self._lanes = [
            ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"safezone-outbound-{i}")
            for i in range(lanes)
        ]
        self._lock = threading.Lock()
        self._pending: Set[Future] = set()
        self._closed = False
        self._next_lane = 0
        self.submitted = 0
        self.failed = 0

    def submit(
        self, description: str, fn: Callable[..., Any], *args, key: Optional[str] = None, **kwargs
    ) -> Optional[Future]:
        """Schedule fn(*args, **kwargs). Returns None once shut down."""
        with self._lock:
            if self._closed:
                logger.warning(f"Outbound executor closed, dropping task: {description}")
                return None
            self.submitted += 1
            if key is None:
                lane = self._next_lane
                self._next_lane = (self._next_lane + 1) % len(self._lanes)
            else:
                lane = zlib.crc32(key.encode("utf-8")) % len(self._lanes)
            future = self._lanes[lane].submit(self._run, description, fn, args, kwargs)
            self._pending.add(future)
        future.add_done_callback(self._discard)
        return future

    def _run(self, description: str, fn: Callable[..., Any], args, kwargs) -> Any:
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            with self._lock:
                self.failed += 1
            logger.error(f"Outbound task failed ({description}): {e}", exc_info=True)
            return None

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for every task submitted so far. Returns False on timeout."""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_pending: bool = True) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        for lane in self._lanes:
            lane.shutdown(wait=wait_for_pending)
        logger.info(f"Outbound executor stopped (submitted={self.submitted}, failed={self.failed})")

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "lanes": len(self._lanes),
                "submitted": self.submitted,
                "failed": self.failed,
                "pending": len(self._pending),
                "closed": self._closed,
            }


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

class NotificationDispatcher(ABC):
    """Delivers a notification payload to one user."""

    name = "base"

    @abstractmethod
    def notify(self, user_id: str, message: Dict[str, Any]) -> None:
        """
        Deliver one notification.

        Implementations may raise; the outbound executor logs the failure.
        """


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Writes notifications to the log. Default when no webhook is configured."""

    name = "logging"

    def notify(self, user_id: str, message: Dict[str, Any]) -> None:
        logger.info(
            f"[NOTIFY] user={user_id} event={message.get('event_type')} case={message.get('case_id')}"
        )


class WebhookNotificationDispatcher(NotificationDispatcher):
    """POSTs each notification as JSON to a configured URL."""

    name = "webhook"

    def __init__(self, url: str, timeout: Optional[float] = None, session: Optional[requests.Session] = None):
        if not url:
            raise ValueError("Webhook URL is required")
        self.url = url
        self.timeout = timeout if timeout is not None else settings.NOTIFICATION_TIMEOUT_SECONDS
        self.session = session or requests.Session()

    def notify(self, user_id: str, message: Dict[str, Any]) -> None:
        payload = {"user_id": user_id, **message}
        response = self.session.post(self.url, json=payload, timeout=self.timeout)
        response.raise_for_status()
        logger.debug(f"Webhook notification delivered to {user_id} ({response.status_code})")


def build_dispatcher(config: Optional[Settings] = None) -> NotificationDispatcher:
    config = config or settings
    if config.NOTIFICATION_WEBHOOK_URL:
        logger.info("Using webhook notification dispatcher")
        return WebhookNotificationDispatcher(
            config.NOTIFICATION_WEBHOOK_URL,
            timeout=config.NOTIFICATION_TIMEOUT_SECONDS,
        )
    return LoggingNotificationDispatcher()


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

def build_audit_event(
    event_type: str,
    entity_type: str,
    entity_id: str,
    actor: str,
    data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "id": uuid.uuid4().hex,
        "type": event_type,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "actor": actor,
        "timestamp": utc_now().isoformat(),
        "data": data or {},
    }


class AuditSink(ABC):
    """Append-only record of who did what."""

    @abstractmethod
    def record(self, event: Dict[str, Any]) -> None:
        pass


class InMemoryAuditSink(AuditSink):

    def __init__(self):
        self._lock = threading.Lock()
        self._events: List[Dict[str, Any]] = []

    def record(self, event: Dict[str, Any]) -> None:
        with self._lock:
            self._events.append(dict(event))

    def events(self, entity_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            if entity_id is None:
                return list(self._events)
            return [e for e in self._events if e.get("entity_id") == entity_id]


class StoreAuditSink(AuditSink):
    """Persists audit events into the audit_events collection."""

    COLLECTION = "audit_events"

    def __init__(self, store: DocumentStore):
        self.store = store

    def record(self, event: Dict[str, Any]) -> None:
        self.store.put(self.COLLECTION, event["id"], event)
