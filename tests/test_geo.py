"""Tests for great-circle geometry helpers."""

import pytest

from safezone.models.geofence import Coordinates
from safezone.utils.geo import distance_meters, haversine_distance, is_valid_coordinate


class TestDistance:

    def test_identity_is_zero(self):
        point = {"lat": 24.8047, "lng": 120.9688}
        assert distance_meters(point, point) == 0

    def test_symmetric(self):
        a = {"lat": 24.8047, "lng": 120.9688}
        b = {"lat": 25.0330, "lng": 121.5654}
        assert distance_meters(a, b) == pytest.approx(distance_meters(b, a))

    def test_one_degree_of_latitude(self):
        """One degree of latitude on a 6,371 km sphere is ~111.2 km."""
        assert haversine_distance(0, 0, 1, 0) == pytest.approx(111195, rel=1e-3)

    def test_accepts_models_and_dicts(self):
        model = Coordinates(lat=24.8047, lng=120.9688)
        as_dict = {"lat": 24.8060, "lng": 120.9688}
        assert distance_meters(model, as_dict) == pytest.approx(144.6, abs=1.0)

    def test_antipodal_points(self):
        assert haversine_distance(0, 0, 0, 180) == pytest.approx(20015086, rel=1e-4)

    @pytest.mark.parametrize("bad", [{"lat": 91, "lng": 0}, {"lat": 0, "lng": -181}])
    def test_out_of_range_rejected(self, bad):
        with pytest.raises(ValueError):
            distance_meters(bad, {"lat": 0, "lng": 0})


class TestCoordinateValidation:

    @pytest.mark.parametrize("lat,lng", [(0, 0), (90, 180), (-90, -180), (24.8, 120.9)])
    def test_valid(self, lat, lng):
        assert is_valid_coordinate(lat, lng)

    @pytest.mark.parametrize("lat,lng", [(91, 0), (-91, 0), (0, 181), (0, -181), ("north", 0), (None, 0)])
    def test_invalid(self, lat, lng):
        assert not is_valid_coordinate(lat, lng)
