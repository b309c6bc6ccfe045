"""Tests for the geofence registry.

Tests cover:
- Creation defaults and radius bounds
- Per-owner quota
- Owner checks on update and delete
- Containment and proximity search, disabled zones excluded
- Store mirroring and restore on load
"""

import pytest

from safezone.core.errors import NotFound, QuotaExceeded, Unauthorized, ValidationError
from safezone.models.geofence import GeofenceKind
from safezone.services.geofence_registry import GeofenceRegistry

from conftest import HOME, offset


def zone(name="Home", center=HOME, **extra):
    return {"name": name, "center": center, **extra}


class TestCreate:

    def test_defaults(self, registry, config, clock):
        geofence = registry.create("subject-1", zone())
        assert geofence.id.startswith("gf_")
        assert geofence.owner_id == "subject-1"
        assert geofence.radius_meters == config.DEFAULT_GEOFENCE_RADIUS
        assert geofence.kind == GeofenceKind.SAFE_ZONE
        assert geofence.alert_on_entry and geofence.alert_on_exit and geofence.enabled
        assert geofence.created_at == clock()

    def test_radius_below_minimum_rejected(self, registry):
        """Radius 30 with a 50 m minimum is a validation error."""
        with pytest.raises(ValidationError):
            registry.create("subject-1", zone(radius_meters=30))
        assert registry.list_for_owner("subject-1") == []

    def test_radius_above_maximum_rejected(self, registry):
        with pytest.raises(ValidationError):
            registry.create("subject-1", zone(radius_meters=5001))

    def test_bounds_are_inclusive(self, registry):
        assert registry.create("subject-1", zone(radius_meters=50)).radius_meters == 50
        assert registry.create("subject-1", zone(radius_meters=5000)).radius_meters == 5000

    def test_invalid_center_rejected(self, registry):
        with pytest.raises(ValidationError):
            registry.create("subject-1", zone(center={"lat": 95, "lng": 0}))

    def test_missing_owner_rejected(self, registry):
        with pytest.raises(ValidationError):
            registry.create("", zone())

    def test_quota_per_owner(self, registry, config):
        for i in range(config.MAX_GEOFENCES_PER_OWNER):
            registry.create("subject-1", zone(name=f"Zone {i}"))
        with pytest.raises(QuotaExceeded):
            registry.create("subject-1", zone(name="One too many"))
        # Other owners are unaffected
        assert registry.create("subject-2", zone()).owner_id == "subject-2"


class TestUpdateAndDelete:

    def test_update_fields(self, registry, clock):
        geofence = registry.create("subject-1", zone())
        clock.advance(minutes=5)
        updated = registry.update(geofence.id, {"name": "School", "radius_meters": 300}, owner_id="subject-1")
        assert updated.name == "School"
        assert updated.radius_meters == 300
        assert updated.updated_at > updated.created_at
        assert registry.get(geofence.id).name == "School"

    def test_update_revalidates_radius(self, registry):
        geofence = registry.create("subject-1", zone())
        with pytest.raises(ValidationError):
            registry.update(geofence.id, {"radius_meters": 10})
        assert registry.get(geofence.id).radius_meters == 500

    def test_update_unknown_id(self, registry):
        with pytest.raises(NotFound):
            registry.update("gf_missing", {"name": "x"})

    def test_update_by_non_owner(self, registry):
        geofence = registry.create("subject-1", zone())
        with pytest.raises(Unauthorized):
            registry.update(geofence.id, {"name": "Mine now"}, owner_id="someone-else")

    def test_delete_by_owner(self, registry):
        geofence = registry.create("subject-1", zone())
        assert registry.delete(geofence.id, "subject-1") is True
        assert registry.get(geofence.id) is None
        assert registry.list_active("subject-1") == []

    def test_delete_unknown_is_idempotent(self, registry):
        assert registry.delete("gf_missing", "subject-1") is False

    def test_delete_by_non_owner(self, registry):
        geofence = registry.create("subject-1", zone())
        with pytest.raises(Unauthorized):
            registry.delete(geofence.id, "someone-else")
        assert registry.get(geofence.id) is not None


class TestQueries:

    def test_list_active_skips_disabled(self, registry):
        registry.create("subject-1", zone(name="On"))
        registry.create("subject-1", zone(name="Off", enabled=False))
        assert [g.name for g in registry.list_active("subject-1")] == ["On"]
        assert len(registry.list_for_owner("subject-1")) == 2

    def test_contains_boundary(self, registry):
        geofence = registry.create("subject-1", zone(radius_meters=100))
        assert registry.contains(HOME, geofence.id)
        assert registry.contains(offset(HOME, 99), geofence.id)
        assert not registry.contains(offset(HOME, 150), geofence.id)

    def test_contains_unknown(self, registry):
        with pytest.raises(NotFound):
            registry.contains(HOME, "gf_missing")

    def test_contains_rejects_invalid_location(self, registry):
        geofence = registry.create("subject-1", zone())
        with pytest.raises(ValidationError):
            registry.contains({"lat": 95.0, "lng": HOME["lng"]}, geofence.id)

    def test_disabled_zone_contains_nothing(self, registry):
        geofence = registry.create("subject-1", zone(enabled=False))
        assert registry.contains(HOME, geofence.id) is False
        registry.update(geofence.id, {"enabled": True})
        assert registry.contains(HOME, geofence.id) is True

    def test_nearby_skips_disabled(self, registry):
        registry.create("a", zone(name="Off", enabled=False))
        registry.create("b", zone(name="On", center=offset(HOME, 200)))
        assert [g.name for g, _ in registry.nearby(HOME, search_radius=10)] == ["On"]

    def test_nearby_sorted_and_inclusive(self, registry):
        near = registry.create("a", zone(name="Near", center=offset(HOME, 1000), radius_meters=100))
        far = registry.create("b", zone(name="Far", center=offset(HOME, 3000), radius_meters=100))
        edge = registry.create("c", zone(name="Edge", center=offset(HOME, 2400), radius_meters=500))
        registry.create("d", zone(name="Out", center=offset(HOME, 2700), radius_meters=100))

        results = registry.nearby(HOME, search_radius=2000)
        names = [g.name for g, _ in results]
        assert names == ["Near", "Edge"]
        distances = [d for _, d in results]
        assert distances == sorted(distances)
        assert far.id not in {g.id for g, _ in results}
        assert near.id == results[0][0].id and edge.id == results[1][0].id

    def test_returned_objects_are_copies(self, registry):
        geofence = registry.create("subject-1", zone())
        geofence.name = "Tampered"
        assert registry.get(geofence.id).name == "Home"


class TestPersistence:

    def test_writes_mirrored_and_restored(self, registry, store, outbound, config, clock):
        kept = registry.create("subject-1", zone(name="Kept"))
        dropped = registry.create("subject-1", zone(name="Dropped"))
        registry.delete(dropped.id, "subject-1")
        assert outbound.flush(timeout=5)

        assert store.get(GeofenceRegistry.COLLECTION, kept.id)["name"] == "Kept"
        assert store.get(GeofenceRegistry.COLLECTION, dropped.id) is None

        restored = GeofenceRegistry(config, store, outbound, clock=clock)
        assert restored.load() == 1
        assert restored.get(kept.id).center.lat == pytest.approx(HOME["lat"])

    def test_audit_events_recorded(self, registry, outbound, audit):
        geofence = registry.create("subject-1", zone())
        registry.update(geofence.id, {"enabled": False}, owner_id="subject-1")
        assert outbound.flush(timeout=5)
        types = [e["type"] for e in audit.events(geofence.id)]
        assert types == ["geofence_created", "geofence_updated"]
