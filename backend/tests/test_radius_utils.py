"""
test_radius_utils.py — Haversine distance and per-user radius filtering.

Run:
    pytest backend/tests/test_radius_utils.py -v

Covers:
    1. Haversine distance calculations
    2. Point-in-radius checks
    3. Candidate filtering with per-user radii and the bounding-box pre-filter
    4. Edge cases (poles, antimeridian, invalid coordinates)
"""

from __future__ import annotations

import pytest

from backend.app.core.config import KM_PER_MILE
from backend.app.spatial.radius_utils import (
    Coordinate,
    UserLocation,
    bounding_box,
    haversine,
    is_inside_radius,
    miles_to_km,
    users_within_radius,
)

HOUSTON = Coordinate(29.7604, -95.3698)
DALLAS = Coordinate(32.7767, -96.7970)
GALVESTON = Coordinate(29.3013, -94.7977)


def _north_of(center: Coordinate, km: float) -> Coordinate:
    # one degree of latitude ≈ 111.195 km on the mean sphere
    return Coordinate(center.latitude + km / 111.195, center.longitude)


# =========================================================================
# Section 1: Haversine
# =========================================================================

class TestHaversine:

    def test_same_point_is_zero(self):
        assert haversine(HOUSTON, HOUSTON) == 0.0

    def test_houston_to_dallas(self):
        assert haversine(HOUSTON, DALLAS) == pytest.approx(362, abs=3)

    def test_symmetric(self):
        assert haversine(HOUSTON, GALVESTON) == haversine(GALVESTON, HOUSTON)

    def test_one_degree_of_latitude(self):
        assert haversine(Coordinate(0, 0), Coordinate(1, 0)) == pytest.approx(111.195, abs=0.01)

    def test_antipodal_points(self):
        half_circumference = haversine(Coordinate(0, 0), Coordinate(0, 180))
        assert half_circumference == pytest.approx(20_015, abs=2)


# =========================================================================
# Section 2: Point-in-radius
# =========================================================================

class TestIsInsideRadius:

    def test_inside(self):
        inside, dist = is_inside_radius(HOUSTON, _north_of(HOUSTON, 5), radius_km=8.0)
        assert inside is True
        assert dist == pytest.approx(5, abs=0.05)

    def test_outside(self):
        inside, dist = is_inside_radius(HOUSTON, DALLAS, radius_km=50.0)
        assert inside is False
        assert dist > 50.0

    @pytest.mark.parametrize("radius", [0, -1.0])
    def test_non_positive_radius_rejected(self, radius):
        with pytest.raises(ValueError):
            is_inside_radius(HOUSTON, GALVESTON, radius_km=radius)

    def test_miles_conversion(self):
        assert miles_to_km(5) == pytest.approx(5 * KM_PER_MILE)
        assert miles_to_km(5) == pytest.approx(8.0467, abs=0.001)


# =========================================================================
# Section 3: Candidate filtering
# =========================================================================

class TestUsersWithinRadius:

    def _candidates(self):
        return [
            UserLocation(1, _north_of(HOUSTON, 3)),
            UserLocation(2, _north_of(HOUSTON, 1)),
            UserLocation(3, _north_of(HOUSTON, 12)),
            UserLocation(4, DALLAS),
        ]

    def test_nearest_first_with_distances(self):
        matched = users_within_radius(HOUSTON, self._candidates(), lambda c: 8.0)
        assert [m.user_id for m in matched] == [2, 1]
        assert matched[0].distance_km == pytest.approx(1, abs=0.02)

    def test_per_user_radius(self):
        radii = {1: 2.0, 2: 2.0, 3: 20.0, 4: 2.0}
        matched = users_within_radius(HOUSTON, self._candidates(), lambda c: radii[c.user_id])
        assert [m.user_id for m in matched] == [2, 3]

    def test_zero_radius_skips_candidate(self):
        matched = users_within_radius(
            HOUSTON, self._candidates(), lambda c: 0.0 if c.user_id == 2 else 8.0,
        )
        assert [m.user_id for m in matched] == [1]

    def test_bounding_box_prefilter_matches_full_scan(self):
        full = users_within_radius(HOUSTON, self._candidates(), lambda c: 15.0)
        boxed = users_within_radius(HOUSTON, self._candidates(), lambda c: 15.0, max_radius_km=15.0)
        assert [m.user_id for m in boxed] == [m.user_id for m in full] == [2, 1, 3]

    def test_empty_candidates(self):
        assert users_within_radius(HOUSTON, [], lambda c: 10.0) == []


# =========================================================================
# Section 4: Edge cases
# =========================================================================

class TestEdgeCases:

    @pytest.mark.parametrize("lat,lon", [(91, 0), (-90.5, 0), (0, 181), (0, -180.1)])
    def test_invalid_coordinates(self, lat, lon):
        with pytest.raises(ValueError):
            Coordinate(lat, lon)

    def test_bounding_box_contains_center(self):
        min_lat, max_lat, min_lon, max_lon = bounding_box(HOUSTON, 10.0)
        assert min_lat < HOUSTON.latitude < max_lat
        assert min_lon < HOUSTON.longitude < max_lon

    def test_bounding_box_at_pole_spans_all_longitudes(self):
        _, max_lat, min_lon, max_lon = bounding_box(Coordinate(90.0, 0.0), 50.0)
        assert max_lat == 90.0
        assert (min_lon, max_lon) == (-180.0, 180.0)

    def test_bounding_box_wraps_antimeridian(self):
        _, _, min_lon, max_lon = bounding_box(Coordinate(0.0, 179.99), 10.0)
        assert min_lon > max_lon
        assert min_lon == pytest.approx(179.90, abs=0.01)
        assert max_lon == pytest.approx(-179.92, abs=0.01)

    def test_neighbour_across_antimeridian_is_matched(self):
        center = Coordinate(0.0, 179.99)
        candidates = [UserLocation(1, Coordinate(0.0, -179.99)), UserLocation(2, Coordinate(0.0, -179.0))]
        matched = users_within_radius(center, candidates, lambda c: 10.0, max_radius_km=10.0)
        assert [m.user_id for m in matched] == [1]
        assert matched[0].distance_km == pytest.approx(2.22, abs=0.01)

    def test_high_latitude_box_covers_tangent_meridian(self):
        # ~986 km from the center, 60° of longitude away
        center = Coordinate(80.0, 0.0)
        candidates = [UserLocation(1, Coordinate(83.0, 60.0))]
        full = users_within_radius(center, candidates, lambda c: 1000.0)
        boxed = users_within_radius(center, candidates, lambda c: 1000.0, max_radius_km=1000.0)
        assert [m.user_id for m in boxed] == [m.user_id for m in full] == [1]

    def test_circle_over_pole_keeps_far_side(self):
        center = Coordinate(89.0, 0.0)
        candidates = [UserLocation(1, Coordinate(89.8, 170.0))]
        boxed = users_within_radius(center, candidates, lambda c: 150.0, max_radius_km=150.0)
        assert [m.user_id for m in boxed] == [1]
