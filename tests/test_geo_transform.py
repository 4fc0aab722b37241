#!/usr/bin/env python3
"""
Tests for the UTM and affine transform library
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import numpy as np
import pytest

from models.calibration import BilinearAnchor, BilinearQuad
from utils.geo_transform import (bilinear_forward, bilinear_inverse, decimal_to_dms, dms_to_decimal,
                                 fit_affine, fit_axis_parallel, solve_affine, utm_to_wgs84,
                                 utm_to_wgs84_array, utm_zone_for_lon, wgs84_to_utm)


class TestUTM:
    """WGS84 <-> UTM conversion"""

    def test_zone_for_lon(self):
        assert utm_zone_for_lon(-180.0) == 1
        assert utm_zone_for_lon(0.5) == 31
        assert utm_zone_for_lon(13.4) == 33
        assert utm_zone_for_lon(180.0) == 60

    def test_central_meridian_has_false_easting(self):
        easting, northing = wgs84_to_utm(0.0, 15.0, 33)
        assert easting == pytest.approx(500000.0, abs=1e-6)
        assert northing == pytest.approx(0.0, abs=1e-6)

    @pytest.mark.parametrize("lat,lon,zone,southern", [
        (47.8, 13.7, 33, False),
        (-33.87, 151.21, 56, True),
        (64.1, -21.9, 27, False),
    ])
    def test_round_trip(self, lat, lon, zone, southern):
        easting, northing = wgs84_to_utm(lat, lon, zone, southern)
        back_lat, back_lon = utm_to_wgs84(easting, northing, zone, southern)
        assert back_lat == pytest.approx(lat, abs=1e-6)
        assert back_lon == pytest.approx(lon, abs=1e-6)

    def test_array_variant_matches_scalar(self):
        eastings = np.array([400000.0, 450000.0, 500000.0])
        northings = np.array([5300000.0, 5310000.0, 5320000.0])
        lats, lons = utm_to_wgs84_array(eastings, northings, 33)
        for e, n, lat, lon in zip(eastings, northings, lats, lons):
            assert (lat, lon) == pytest.approx(utm_to_wgs84(e, n, 33))


class TestAffine:
    """Affine fitting from point correspondences"""

    def test_solve_affine_is_exact_through_three_points(self):
        points = [(0, 0, 10, 20), (100, 0, 110, 25), (0, 50, 5, 120)]
        transform = solve_affine(*points)

        for sx, sy, dx, dy in points:
            assert transform.apply(sx, sy) == pytest.approx((dx, dy))

    def test_solve_affine_rejects_collinear_points(self):
        assert solve_affine((0, 0, 1, 1), (1, 1, 2, 2), (2, 2, 3, 3)) is None

    def test_fit_affine_least_squares_recovers_transform(self):
        # e = 400000 + 10x, n = 5300000 - 10y
        points = [(x, y, 400000 + 10 * x, 5300000 - 10 * y)
                  for x, y in ((0, 0), (512, 0), (512, 512), (0, 512), (256, 100))]
        transform = fit_affine(points)

        assert transform.a == pytest.approx(10.0)
        assert transform.b == pytest.approx(0.0, abs=1e-9)
        assert transform.c == pytest.approx(400000.0)
        assert transform.e == pytest.approx(-10.0)
        assert transform.f == pytest.approx(5300000.0)

    def test_fit_affine_two_points_is_axis_parallel(self):
        transform = fit_affine([(0, 0, 100, 200), (10, 20, 120, 160)])
        assert (transform.a, transform.b, transform.d, transform.e) == (2.0, 0.0, 0.0, -2.0)

    def test_fit_affine_three_points_is_exact(self):
        points = [(0, 0, 10, 20), (100, 0, 110, 25), (0, 50, 5, 120)]
        assert fit_affine(points) == solve_affine(*points)

    def test_fit_affine_degenerate_without_fallback(self):
        collinear = [(0, 0, 0, 0), (1, 1, 1, 1), (2, 2, 2, 2)]
        assert fit_affine(collinear, fallback=False) is None
        assert fit_affine(collinear) is not None

    def test_strict_axis_parallel_needs_both_axes(self):
        assert fit_axis_parallel((0, 0, 0, 0), (10, 0, 5, 5), strict=True) is None

    def test_inverse(self):
        transform = solve_affine((0, 0, 3, 4), (1, 0, 5, 4), (0, 1, 3, 7))
        inverse = transform.inverse()
        assert inverse.apply(*transform.apply(12.5, -3.0)) == pytest.approx((12.5, -3.0))


class TestBilinear:
    """Four-corner bilinear mapping"""

    def quad(self) -> BilinearQuad:
        return BilinearQuad(
            top_left=BilinearAnchor(0, 0, 1000, 2000),
            top_right=BilinearAnchor(200, 0, 3000, 2000),
            bottom_right=BilinearAnchor(200, 100, 3000, 1000),
            bottom_left=BilinearAnchor(0, 100, 1000, 1000),
        )

    def test_corners_map_exactly(self):
        quad = self.quad()
        assert bilinear_forward(quad, 0, 0) == (1000, 2000)
        assert bilinear_forward(quad, 200, 100) == (3000, 1000)

    def test_inverse_undoes_forward(self):
        quad = self.quad()
        e, n = bilinear_forward(quad, 50.0, 25.0)
        assert bilinear_inverse(quad, e, n) == pytest.approx((50.0, 25.0))


class TestDMS:

    def test_dms_to_decimal_hemisphere(self):
        assert dms_to_decimal(47, 54, 0.0, 'N') == pytest.approx(47.9)
        assert dms_to_decimal(47, 54, 0.0, 'S') == pytest.approx(-47.9)
        assert dms_to_decimal(11, 6, 0.0, 'W') == pytest.approx(-11.1)

    def test_decimal_to_dms(self):
        degrees, minutes, seconds = decimal_to_dms(-47.5)
        assert (degrees, minutes) == (47, 30)
        assert seconds == pytest.approx(0.0, abs=1e-6)


if __name__ == "__main__":
    pytest.main([__file__])
