"""Tests for the wired service container.

Tests cover:
- Geofence transitions annotating the subject's open cases
- Restoring geofences and cases from the durable store
- Shutdown semantics and health reporting
"""

import pytest

from safezone.core.errors import ServiceUnavailable
from safezone.models.case import TimelineEntryType
from safezone.services.event_bus import Topic
from safezone.services.guardian import GuardianServices

from conftest import HOME, make_case_data, offset

SUBJECT = "subject-42"


@pytest.fixture
def tracked_case(guardian):
    guardian.create_geofence(SUBJECT, {"name": "Care Home", "center": HOME, "radius_meters": 150, "kind": "safe_zone"})
    return guardian.create_case(make_case_data(
        subject={"name": "Lin Wei", "age": 80, "subject_id": SUBJECT, "medical_conditions": ["dementia"]},
    ))


class TestGeofenceAnnotation:

    def test_transitions_recorded_on_case(self, guardian, tracked_case, clock):
        guardian.update_location(SUBJECT, {"lat": HOME["lat"], "lng": HOME["lng"], "captured_at": clock()})
        exit_at = clock.advance(minutes=5)
        outside = offset(HOME, 600)
        guardian.update_location(SUBJECT, {**outside, "captured_at": exit_at, "accuracy_meters": 12})

        case = guardian.get_case(tracked_case.case_id)
        types = [entry.type for entry in case.timeline]
        assert types[-2:] == [TimelineEntryType.GEOFENCE_ENTRY.value, TimelineEntryType.GEOFENCE_EXIT.value]
        assert case.timeline[-1].data["geofence_name"] == "Care Home"
        assert case.last_known_location.lat == pytest.approx(outside["lat"])
        assert case.last_known_location.timestamp == exit_at
        assert case.last_known_location.accuracy_meters == 12

    def test_naive_reported_location_time_still_annotated(self, guardian, clock):
        guardian.create_geofence(SUBJECT, {"name": "Care Home", "center": HOME, "radius_meters": 150})
        case = guardian.create_case(make_case_data(
            subject={"name": "Lin Wei", "age": 80, "subject_id": SUBJECT},
            last_known_location={**HOME, "timestamp": "2026-01-15T07:00:00"},
        ))
        assert case.last_known_location.timestamp.tzinfo is not None

        guardian.update_location(SUBJECT, {**HOME, "captured_at": clock()})

        stored = guardian.get_case(case.case_id)
        assert stored.timeline[-1].type == TimelineEntryType.GEOFENCE_ENTRY.value
        assert stored.last_known_location.timestamp == clock()

    def test_closed_cases_not_annotated(self, guardian, tracked_case, clock):
        guardian.close_case(tracked_case.case_id, {"outcome": "resolved"}, "officer-1")
        before = len(guardian.get_case(tracked_case.case_id).timeline)
        guardian.update_location(SUBJECT, {**HOME, "captured_at": clock()})
        assert len(guardian.get_case(tracked_case.case_id).timeline) == before

    def test_watchers_hear_about_transitions(self, guardian, tracked_case, clock, dispatcher):
        guardian.add_watcher(tracked_case.case_id, "family-1")
        guardian.update_location(SUBJECT, {**HOME, "captured_at": clock()})
        assert guardian.outbound.flush(timeout=5)
        assert "geofence_entry" in dispatcher.events_for("family-1")

    def test_external_subscribers_see_both_topics(self, guardian, tracked_case, clock):
        seen = []
        guardian.subscribe(Topic.GEOFENCE_EVENTS, lambda e: seen.append(("geofence", e.type.value)))
        guardian.subscribe(Topic.CASE_EVENTS, lambda e: seen.append(("case", e.type.value)))
        guardian.update_location(SUBJECT, {**HOME, "captured_at": clock()})
        guardian.add_lead(tracked_case.case_id, {"description": "Seen at the gate"}, "volunteer-1")
        assert ("geofence", "entry") in seen
        assert ("case", "lead_added") in seen


class TestPersistence:

    def test_state_survives_restart(self, config, store, dispatcher, audit, clock):
        first = GuardianServices(config, store, dispatcher, audit, clock).initialize(start_workers=False)
        geofence = first.create_geofence(SUBJECT, {"name": "Home", "center": HOME})
        case = first.create_case(make_case_data())
        first.add_lead(case.case_id, {"description": "Called from a payphone"}, "volunteer-1")
        assert first.shutdown(timeout=5)

        second = GuardianServices(config, store, dispatcher, audit, clock).initialize(start_workers=False)
        try:
            assert second.list_geofences(SUBJECT)[0].id == geofence.id
            restored = second.get_case(case.case_id)
            assert len(restored.leads) == 1
            assert restored.watchers == {"reporter-1"}
            assert [c.case_id for c in second.search_cases()] == [case.case_id]
        finally:
            second.shutdown(timeout=5)

    def test_audit_trail_written(self, guardian, tracked_case, audit):
        assert guardian.outbound.flush(timeout=5)
        assert [e["type"] for e in audit.events(tracked_case.case_id)] == ["case_created"]
        assert any(e["type"] == "geofence_created" for e in audit.events())


class TestShutdown:

    def test_calls_rejected_after_shutdown(self, guardian, tracked_case, clock):
        assert guardian.shutdown(timeout=5)
        with pytest.raises(ServiceUnavailable):
            guardian.update_location(SUBJECT, {**HOME, "captured_at": clock()})
        with pytest.raises(ServiceUnavailable):
            guardian.create_case(make_case_data())
        with pytest.raises(ServiceUnavailable):
            guardian.add_lead(tracked_case.case_id, {"description": "late"}, "volunteer-1")
        with pytest.raises(ServiceUnavailable):
            guardian.create_geofence(SUBJECT, {"name": "Late", "center": HOME})
        with pytest.raises(ServiceUnavailable):
            guardian.run_escalation_sweep()

    def test_reads_still_work_after_shutdown(self, guardian, tracked_case):
        guardian.shutdown(timeout=5)
        assert guardian.get_case(tracked_case.case_id).case_id == tracked_case.case_id

    def test_shutdown_is_idempotent(self, guardian):
        assert guardian.shutdown(timeout=5)
        assert guardian.shutdown(timeout=5)

    def test_cannot_initialize_after_shutdown(self, guardian):
        guardian.shutdown(timeout=5)
        guardian.initialized = False
        with pytest.raises(ServiceUnavailable):
            guardian.initialize()

    def test_health_status(self, guardian):
        health = guardian.get_health_status()
        assert health["status"] == "healthy"
        assert health["dispatcher"] == "recording"
        assert health["workers"] == {"location_reaper": False, "escalation_sweep": False}
        guardian.shutdown(timeout=5)
        assert guardian.get_health_status()["status"] == "unavailable"

    def test_workers_start_and_stop(self, config, store, dispatcher, audit, clock):
        services = GuardianServices(config, store, dispatcher, audit, clock).initialize()
        try:
            assert services.get_health_status()["workers"] == {"location_reaper": True, "escalation_sweep": True}
        finally:
            services.shutdown(timeout=5)
        assert services.get_health_status()["workers"] == {"location_reaper": False, "escalation_sweep": False}
