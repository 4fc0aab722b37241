"""Coordinate transforms shared by every map component.

UTM <-> WGS84 uses the ellipsoidal Transverse Mercator series on the WGS84
ellipsoid (k0 = 0.9996). The series is sub-metre inside a zone and degrades
smoothly away from the central meridian; nothing here raises for points
outside the zone, so callers pick the zone for their area of interest.

All UTM functions accept plain floats or numpy arrays. The ``*_array``
variants return arrays and are used by the raster resamplers.
"""
import math
from typing import Optional, Sequence, Tuple, Union

import numpy as np

from models.calibration import AffineTransform, BilinearQuad

ArrayLike = Union[float, np.ndarray]

WGS84_A = 6378137.0
WGS84_F = 1 / 298.257223563
UTM_K0 = 0.9996
UTM_FALSE_EASTING = 500000.0
UTM_FALSE_NORTHING_SOUTH = 10000000.0

_E2 = 2 * WGS84_F - WGS84_F * WGS84_F
_EP2 = _E2 / (1 - _E2)
_E1 = (1 - math.sqrt(1 - _E2)) / (1 + math.sqrt(1 - _E2))

AFFINE_EPSILON = 1e-10

# (src_x, src_y, dst_x, dst_y)
Correspondence = Tuple[float, float, float, float]


def central_meridian(zone: int) -> float:
    return (zone - 1) * 6 - 180 + 3


def utm_zone_for_lon(lon: float) -> int:
    """Standard 6-degree zone number for a longitude"""
    zone = int(math.floor((lon + 180.0) / 6.0)) + 1
    return min(max(zone, 1), 60)


def wgs84_to_utm_array(lat: ArrayLike, lon: ArrayLike, zone: int,
                       southern: bool = False) -> Tuple[np.ndarray, np.ndarray]:
    lat_rad = np.radians(lat)
    lon_rad = np.radians(lon)
    lon0_rad = math.radians(central_meridian(zone))

    sin_lat = np.sin(lat_rad)
    cos_lat = np.cos(lat_rad)
    tan_lat = np.tan(lat_rad)

    n = WGS84_A / np.sqrt(1 - _E2 * sin_lat * sin_lat)
    t = tan_lat * tan_lat
    c = _EP2 * cos_lat * cos_lat
    a = cos_lat * (lon_rad - lon0_rad)

    m = WGS84_A * ((1 - _E2 / 4 - 3 * _E2 ** 2 / 64 - 5 * _E2 ** 3 / 256) * lat_rad
                   - (3 * _E2 / 8 + 3 * _E2 ** 2 / 32 + 45 * _E2 ** 3 / 1024) * np.sin(2 * lat_rad)
                   + (15 * _E2 ** 2 / 256 + 45 * _E2 ** 3 / 1024) * np.sin(4 * lat_rad)
                   - (35 * _E2 ** 3 / 3072) * np.sin(6 * lat_rad))

    easting = UTM_K0 * n * (a + (1 - t + c) * a ** 3 / 6
                            + (5 - 18 * t + t * t + 72 * c - 58 * _EP2) * a ** 5 / 120) + UTM_FALSE_EASTING
    northing = UTM_K0 * (m + n * tan_lat * (a ** 2 / 2
                                            + (5 - t + 9 * c + 4 * c * c) * a ** 4 / 24
                                            + (61 - 58 * t + t * t + 600 * c - 330 * _EP2) * a ** 6 / 720))
    if southern:
        northing = northing + UTM_FALSE_NORTHING_SOUTH
    return easting, northing


def utm_to_wgs84_array(easting: ArrayLike, northing: ArrayLike, zone: int,
                       southern: bool = False) -> Tuple[np.ndarray, np.ndarray]:
    x = np.asarray(easting, dtype=np.float64) - UTM_FALSE_EASTING
    y = np.asarray(northing, dtype=np.float64)
    if southern:
        y = y - UTM_FALSE_NORTHING_SOUTH

    m = y / UTM_K0
    mu = m / (WGS84_A * (1 - _E2 / 4 - 3 * _E2 ** 2 / 64 - 5 * _E2 ** 3 / 256))

    phi1 = (mu + (3 * _E1 / 2 - 27 * _E1 ** 3 / 32) * np.sin(2 * mu)
            + (21 * _E1 ** 2 / 16 - 55 * _E1 ** 4 / 32) * np.sin(4 * mu)
            + (151 * _E1 ** 3 / 96) * np.sin(6 * mu)
            + (1097 * _E1 ** 4 / 512) * np.sin(8 * mu))

    sin_phi = np.sin(phi1)
    cos_phi = np.cos(phi1)
    tan_phi = np.tan(phi1)

    n1 = WGS84_A / np.sqrt(1 - _E2 * sin_phi * sin_phi)
    t1 = tan_phi * tan_phi
    c1 = _EP2 * cos_phi * cos_phi
    r1 = WGS84_A * (1 - _E2) / np.power(1 - _E2 * sin_phi * sin_phi, 1.5)
    d = x / (n1 * UTM_K0)

    lat = phi1 - (n1 * tan_phi / r1) * (
        d ** 2 / 2
        - (5 + 3 * t1 + 10 * c1 - 4 * c1 * c1 - 9 * _EP2) * d ** 4 / 24
        + (61 + 90 * t1 + 298 * c1 + 45 * t1 * t1 - 252 * _EP2 - 3 * c1 * c1) * d ** 6 / 720
    )
    lon = central_meridian(zone) + np.degrees(
        (d
         - (1 + 2 * t1 + c1) * d ** 3 / 6
         + (5 - 2 * c1 + 28 * t1 - 3 * c1 * c1 + 8 * _EP2 + 24 * t1 * t1) * d ** 5 / 120) / cos_phi
    )
    return np.degrees(lat), lon


def wgs84_to_utm(lat: float, lon: float, zone: int, southern: bool = False) -> Tuple[float, float]:
    """WGS84 degrees to (easting, northing) in the given zone"""
    easting, northing = wgs84_to_utm_array(lat, lon, zone, southern)
    return float(easting), float(northing)


def utm_to_wgs84(easting: float, northing: float, zone: int, southern: bool = False) -> Tuple[float, float]:
    """(easting, northing) in the given zone to WGS84 (lat, lon) degrees"""
    lat, lon = utm_to_wgs84_array(easting, northing, zone, southern)
    return float(lat), float(lon)


def solve_affine(p1: Correspondence, p2: Correspondence,
                 p3: Correspondence) -> Optional[AffineTransform]:
    """Exact affine through three correspondences (Cramer's rule).

    Returns None when the source points are (nearly) collinear.
    """
    x1, y1, u1, v1 = p1
    x2, y2, u2, v2 = p2
    x3, y3, u3, v3 = p3

    det = x1 * (y2 - y3) - y1 * (x2 - x3) + (x2 * y3 - x3 * y2)
    if abs(det) < AFFINE_EPSILON:
        return None

    def solve(r1: float, r2: float, r3: float) -> Tuple[float, float, float]:
        a = (r1 * (y2 - y3) - y1 * (r2 - r3) + (r2 * y3 - r3 * y2)) / det
        b = (x1 * (r2 - r3) - r1 * (x2 - x3) + (x2 * r3 - x3 * r2)) / det
        c = (x1 * (y2 * r3 - y3 * r2) - y1 * (x2 * r3 - x3 * r2) + r1 * (x2 * y3 - x3 * y2)) / det
        return a, b, c

    a, b, c = solve(u1, u2, u3)
    d, e, f = solve(v1, v2, v3)
    return AffineTransform(a, b, c, d, e, f)


def fit_axis_parallel(p1: Correspondence, p2: Correspondence,
                      strict: bool = False) -> Optional[AffineTransform]:
    """Scale-and-offset transform from two points (no rotation).

    With ``strict`` the points must differ in both axes, otherwise a zero
    delta is treated as 1.
    """
    sx1, sy1, dx1, dy1 = p1
    sx2, sy2, dx2, dy2 = p2
    dsx = sx2 - sx1
    dsy = sy2 - sy1
    if strict and (abs(dsx) <= 0.001 or abs(dsy) <= 0.001):
        return None
    dsx = dsx or 1.0
    dsy = dsy or 1.0
    a = (dx2 - dx1) / dsx
    e = (dy2 - dy1) / dsy
    return AffineTransform(a, 0.0, dx1 - sx1 * a, 0.0, e, dy1 - sy1 * e)


def fit_affine(points: Sequence[Correspondence], fallback: bool = True) -> Optional[AffineTransform]:
    """Exact affine for 3 points, least squares for more, axis-parallel fit for 2.

    A degenerate 3+ point set falls back to the first two points unless
    ``fallback`` is False, in which case None is returned.
    """
    n = len(points)
    if n < 2:
        return None
    if n == 2:
        return fit_axis_parallel(points[0], points[1])
    if n == 3:
        exact = solve_affine(points[0], points[1], points[2])
        if exact is None and fallback:
            return fit_axis_parallel(points[0], points[1])
        return exact

    data = np.asarray(points, dtype=np.float64)
    design = np.column_stack([data[:, 0], data[:, 1], np.ones(n)])
    normal = design.T @ design
    if abs(np.linalg.det(normal)) < AFFINE_EPSILON:
        return fit_axis_parallel(points[0], points[1]) if fallback else None

    coeff_x, _, _, _ = np.linalg.lstsq(design, data[:, 2], rcond=None)
    coeff_y, _, _, _ = np.linalg.lstsq(design, data[:, 3], rcond=None)
    return AffineTransform(float(coeff_x[0]), float(coeff_x[1]), float(coeff_x[2]),
                           float(coeff_y[0]), float(coeff_y[1]), float(coeff_y[2]))


def bilinear_forward(quad: BilinearQuad, px: ArrayLike, py: ArrayLike) -> Tuple[ArrayLike, ArrayLike]:
    """Pixel to projected position by blending the four corner anchors"""
    tl, tr, br, bl = quad.top_left, quad.top_right, quad.bottom_right, quad.bottom_left
    px_min = min(tl.px, bl.px)
    px_max = max(tr.px, br.px)
    py_min = min(tl.py, tr.py)
    py_max = max(bl.py, br.py)

    u = (px - px_min) / ((px_max - px_min) or 1.0)
    v = (py - py_min) / ((py_max - py_min) or 1.0)
    u1 = 1 - u
    v1 = 1 - v
    e = tl.e * u1 * v1 + tr.e * u * v1 + bl.e * u1 * v + br.e * u * v
    n = tl.n * u1 * v1 + tr.n * u * v1 + bl.n * u1 * v + br.n * u * v
    return e, n


def bilinear_inverse(quad: BilinearQuad, easting: ArrayLike, northing: ArrayLike) -> Tuple[ArrayLike, ArrayLike]:
    """Projected position to pixel through the four corner anchors.

    u/v are normalised against the easting/northing extents of the quad
    and the corner pixels are blended bilinearly.
    """
    tl, tr, br, bl = quad.top_left, quad.top_right, quad.bottom_right, quad.bottom_left
    e_min = min(tl.e, bl.e)
    e_max = max(tr.e, br.e)
    n_min = min(bl.n, br.n)
    n_max = max(tl.n, tr.n)

    u = (easting - e_min) / ((e_max - e_min) or 1.0)
    v = (n_max - northing) / ((n_max - n_min) or 1.0)
    u1 = 1 - u
    v1 = 1 - v
    px = tl.px * u1 * v1 + tr.px * u * v1 + bl.px * u1 * v + br.px * u * v
    py = tl.py * u1 * v1 + tr.py * u * v1 + bl.py * u1 * v + br.py * u * v
    return px, py


def dms_to_decimal(degrees: float, minutes: float, seconds: float, hemisphere: str = '') -> float:
    value = abs(degrees) + minutes / 60.0 + seconds / 3600.0
    if hemisphere.strip().upper() in ('S', 'W'):
        value = -value
    return value


def decimal_to_dms(value: float) -> Tuple[int, int, float]:
    """Absolute value split into whole degrees, whole minutes, seconds"""
    value = abs(value)
    degrees = int(math.floor(value))
    minutes_full = (value - degrees) * 60
    minutes = int(math.floor(minutes_full))
    seconds = (minutes_full - minutes) * 60
    return degrees, minutes, seconds
