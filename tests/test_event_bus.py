"""Tests for the in-process event bus."""

import pytest

from safezone.core.errors import QuotaExceeded, ValidationError
from safezone.services.event_bus import EventBus, Topic


class TestSubscribe:

    def test_delivery_in_subscription_order(self, bus):
        received = []
        bus.subscribe(Topic.CASE_EVENTS, lambda m: received.append(("first", m)))
        bus.subscribe(Topic.CASE_EVENTS, lambda m: received.append(("second", m)))
        assert bus.publish(Topic.CASE_EVENTS, "hello") == 2
        assert received == [("first", "hello"), ("second", "hello")]

    def test_topics_are_independent(self, bus):
        received = []
        bus.subscribe(Topic.GEOFENCE_EVENTS, received.append)
        assert bus.publish(Topic.CASE_EVENTS, "case") == 0
        assert received == []

    def test_topic_by_name(self, bus):
        received = []
        bus.subscribe("geofence_events", received.append)
        bus.publish(Topic.GEOFENCE_EVENTS, 1)
        assert received == [1]

    def test_unknown_topic(self, bus):
        with pytest.raises(ValidationError):
            bus.subscribe("weather", print)
        with pytest.raises(ValidationError):
            bus.publish("weather", {})

    def test_handler_must_be_callable(self, bus):
        with pytest.raises(ValidationError):
            bus.subscribe(Topic.CASE_EVENTS, "not callable")

    def test_subscriber_quota(self, config):
        bus = EventBus(config.model_copy(update={"MAX_SUBSCRIBERS_PER_TOPIC": 2}))
        bus.subscribe(Topic.CASE_EVENTS, print)
        bus.subscribe(Topic.CASE_EVENTS, print)
        with pytest.raises(QuotaExceeded):
            bus.subscribe(Topic.CASE_EVENTS, print)
        # Quota is per topic
        bus.subscribe(Topic.GEOFENCE_EVENTS, print)

    def test_unsubscribe(self, bus):
        received = []
        subscription = bus.subscribe(Topic.CASE_EVENTS, received.append, name="collector")
        assert subscription.name == "collector"
        assert bus.unsubscribe(subscription) is True
        assert bus.unsubscribe(subscription) is False
        bus.publish(Topic.CASE_EVENTS, "late")
        assert received == []
        assert bus.subscriber_count(Topic.CASE_EVENTS) == 0


class TestFailures:

    def test_failing_subscriber_isolated(self, bus):
        received = []

        def broken(message):
            raise RuntimeError("subscriber bug")

        bus.subscribe(Topic.CASE_EVENTS, broken)
        bus.subscribe(Topic.CASE_EVENTS, received.append)

        assert bus.publish(Topic.CASE_EVENTS, "event") == 1
        assert received == ["event"]
        stats = bus.get_stats()["case_events"]
        assert stats == {"subscribers": 2, "published": 1, "failures": 1}

    def test_subscriber_may_unsubscribe_during_delivery(self, bus):
        received = []
        holder = {}

        def once(message):
            received.append(message)
            bus.unsubscribe(holder["subscription"])

        holder["subscription"] = bus.subscribe(Topic.CASE_EVENTS, once)
        bus.publish(Topic.CASE_EVENTS, 1)
        bus.publish(Topic.CASE_EVENTS, 2)
        assert received == [1]
