"""Tests for fire-and-forget side effects: executor, dispatchers, audit sinks."""

import threading
from unittest.mock import MagicMock

import pytest
import requests

from safezone.services.outbound import (
    InMemoryAuditSink,
    LoggingNotificationDispatcher,
    OutboundExecutor,
    StoreAuditSink,
    WebhookNotificationDispatcher,
    build_audit_event,
    build_dispatcher,
)
from safezone.stores import InMemoryDocumentStore


class TestOutboundExecutor:

    def test_runs_tasks(self, outbound):
        results = []
        outbound.submit("append", results.append, 1)
        outbound.submit("append", results.append, 2)
        assert outbound.flush(timeout=5)
        assert sorted(results) == [1, 2]
        assert outbound.get_stats()["submitted"] == 2

    def test_failures_counted_not_raised(self, outbound):
        def boom():
            raise ConnectionError("store offline")

        future = outbound.submit("boom", boom)
        assert outbound.flush(timeout=5)
        assert future.result() is None
        assert outbound.get_stats()["failed"] == 1

    def test_same_key_runs_in_submission_order(self, config):
        executor = OutboundExecutor(max_workers=4, config=config)
        gate = threading.Event()
        order = []

        def first():
            gate.wait(timeout=5)
            order.append("first")

        try:
            executor.submit("first", first, key="doc-1")
            executor.submit("second", order.append, "second", key="doc-1")
            gate.set()
            assert executor.flush(timeout=5)
        finally:
            executor.shutdown()
        assert order == ["first", "second"]

    def test_closed_executor_drops_tasks(self, config):
        executor = OutboundExecutor(max_workers=1, config=config)
        executor.shutdown()
        assert executor.submit("late", print) is None
        assert executor.get_stats()["closed"] is True

    def test_kwargs_forwarded(self, outbound):
        store = InMemoryDocumentStore()
        outbound.submit("put", store.put, "things", "a", data={"x": 1}, key="a")
        assert outbound.flush(timeout=5)
        assert store.get("things", "a") == {"x": 1}


class TestDispatchers:

    def test_build_dispatcher_defaults_to_logging(self, config):
        assert isinstance(build_dispatcher(config), LoggingNotificationDispatcher)

    def test_build_dispatcher_webhook(self, config):
        dispatcher = build_dispatcher(config.model_copy(update={"NOTIFICATION_WEBHOOK_URL": "https://hooks.example/n"}))
        assert isinstance(dispatcher, WebhookNotificationDispatcher)
        assert dispatcher.timeout == config.NOTIFICATION_TIMEOUT_SECONDS

    def test_webhook_posts_json(self):
        session = MagicMock(spec=requests.Session)
        session.post.return_value.status_code = 204
        dispatcher = WebhookNotificationDispatcher("https://hooks.example/n", timeout=2, session=session)

        dispatcher.notify("family-1", {"event_type": "case_closed", "case_id": "CASE-1"})

        session.post.assert_called_once_with(
            "https://hooks.example/n",
            json={"user_id": "family-1", "event_type": "case_closed", "case_id": "CASE-1"},
            timeout=2,
        )
        session.post.return_value.raise_for_status.assert_called_once()

    def test_webhook_http_error_propagates_to_executor(self, outbound):
        session = MagicMock(spec=requests.Session)
        session.post.return_value.raise_for_status.side_effect = requests.HTTPError("502")
        dispatcher = WebhookNotificationDispatcher("https://hooks.example/n", session=session)

        with pytest.raises(requests.HTTPError):
            dispatcher.notify("family-1", {"event_type": "lead_added"})

        outbound.submit("notify", dispatcher.notify, "family-1", {"event_type": "lead_added"})
        assert outbound.flush(timeout=5)
        assert outbound.get_stats()["failed"] == 1

    def test_webhook_requires_url(self):
        with pytest.raises(ValueError):
            WebhookNotificationDispatcher("")


class TestAudit:

    def test_audit_event_shape(self):
        event = build_audit_event("case_created", "case", "CASE-1", "reporter-1", {"priority": "high"})
        assert set(event) == {"id", "type", "entity_type", "entity_id", "actor", "timestamp", "data"}
        assert event["data"] == {"priority": "high"}

    def test_in_memory_sink_filters_by_entity(self):
        sink = InMemoryAuditSink()
        sink.record(build_audit_event("a", "case", "CASE-1", "x"))
        sink.record(build_audit_event("b", "case", "CASE-2", "x"))
        assert [e["type"] for e in sink.events("CASE-2")] == ["b"]
        assert len(sink.events()) == 2

    def test_store_sink_persists(self):
        store = InMemoryDocumentStore()
        event = build_audit_event("geofence_created", "geofence", "gf_1", "owner-1")
        StoreAuditSink(store).record(event)
        assert store.get(StoreAuditSink.COLLECTION, event["id"]) == event
