import pytest

from models.geo import distance_km

from helpers import CENTER, km_north


class TestDistance:
    def test_same_point_is_zero(self):
        assert distance_km(*CENTER, *CENTER) == pytest.approx(0.0)

    def test_madrid_to_barcelona(self):
        # ~505 km great-circle
        assert distance_km(40.4168, -3.7038, 41.3874, 2.1686) == pytest.approx(505, abs=5)

    def test_is_symmetric(self):
        a, b = (40.0, -3.0), (41.5, 2.2)
        assert distance_km(*a, *b) == pytest.approx(distance_km(*b, *a))

    def test_one_degree_of_latitude(self):
        assert distance_km(0, 0, 1, 0) == pytest.approx(111.19, abs=0.01)

    def test_km_north_helper_matches(self):
        assert distance_km(*CENTER, *km_north(CENTER, 3)) == pytest.approx(3, abs=0.01)
