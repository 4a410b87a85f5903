"""Tests for geo helpers."""

import pytest

from trustshield.utils.geo import (
    geocell,
    haversine_km,
    haversine_meters,
    is_valid_coordinate,
    neighbor_span,
    wrapped_lon_cells,
)

NEW_YORK = (40.7128, -74.0060)
LONDON = (51.5074, -0.1278)
SYDNEY = (-33.8688, 151.2093)


class TestHaversine:
    """Tests for great-circle distance."""

    def test_distance_to_self_is_zero(self):
        """A point is zero meters from itself."""
        for lat, lon in (NEW_YORK, LONDON, SYDNEY, (0.0, 0.0), (89.9, 179.9)):
            assert haversine_meters(lat, lon, lat, lon) == 0.0

    def test_distance_is_symmetric(self):
        """Swapping the endpoints gives the same distance."""
        pairs = [(NEW_YORK, LONDON), (LONDON, SYDNEY), (SYDNEY, NEW_YORK)]
        for (lat1, lon1), (lat2, lon2) in pairs:
            assert haversine_meters(lat1, lon1, lat2, lon2) == pytest.approx(
                haversine_meters(lat2, lon2, lat1, lon1)
            )

    def test_known_distance(self):
        """New York to London is roughly 5570km."""
        assert haversine_km(*NEW_YORK, *LONDON) == pytest.approx(5570, rel=0.01)

    def test_km_and_meters_agree(self):
        assert haversine_km(*LONDON, *SYDNEY) * 1000 == pytest.approx(haversine_meters(*LONDON, *SYDNEY))

    def test_one_degree_of_latitude(self):
        """One degree of latitude is about 111km anywhere."""
        assert haversine_km(10.0, 20.0, 11.0, 20.0) == pytest.approx(111.2, rel=0.01)


class TestCoordinateValidation:
    """Tests for coordinate range checks."""

    def test_valid_coordinates(self):
        assert is_valid_coordinate(0.0, 0.0) is True
        assert is_valid_coordinate(-90.0, 180.0) is True
        assert is_valid_coordinate(*NEW_YORK) is True

    def test_out_of_range_coordinates(self):
        assert is_valid_coordinate(91.0, 0.0) is False
        assert is_valid_coordinate(0.0, -181.0) is False

    def test_missing_coordinates(self):
        assert is_valid_coordinate(None, 10.0) is False
        assert is_valid_coordinate(10.0, None) is False


class TestGeocell:
    """Tests for the spatial bucketing used by the coordinated-change index."""

    def test_nearby_points_share_a_cell(self):
        assert geocell(40.71, -74.20) == geocell(40.72, -74.21)

    def test_distant_points_differ(self):
        assert geocell(*NEW_YORK) != geocell(*LONDON)

    def test_antimeridian_shares_a_cell(self):
        assert geocell(0.0, 180.0) == geocell(0.0, -180.0)

    def test_longitude_cells_wrap(self):
        assert wrapped_lon_cells(719, 1) == {718, 719, 0}
        assert wrapped_lon_cells(0, 1) == {719, 0, 1}

    def test_longitude_span_grows_toward_poles(self):
        """Longitude degrees shrink with latitude, so more cells are needed for the same radius."""
        _, equator_span = neighbor_span(0.0, 50.0)
        _, north_span = neighbor_span(70.0, 50.0)
        assert north_span >= equator_span
