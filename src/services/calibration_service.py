"""Pixel <-> geographic conversion for calibrated rasters.

Conversion order for ``pixel_to_geo``:
  1. UTM calibration (bilinear corner quad, else the pixel->UTM affine)
  2. fewer than 2 points: linear over the bounds
  3. exactly 4 points (TL, TR, BR, BL): bilinear blend
  4. otherwise a least-squares affine

``geo_to_pixel`` goes through UTM and the inverse affine when a UTM
calibration exists and at least 2 points are present.
"""
import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from exceptions.tile_engine_exceptions import CalibrationError
from models.calibration import (AffineTransform, BilinearAnchor, BilinearQuad, CalibrationPoint,
                                CornerPoints, MapCalibration, UTMCalibration)
from models.geo import Bounds, GeoPoint
from utils.geo_transform import (bilinear_forward, fit_affine, fit_axis_parallel, utm_to_wgs84,
                                 wgs84_to_utm, wgs84_to_utm_array)

logger = logging.getLogger(__name__)


def _pixel_geo_pairs(points: Sequence[CalibrationPoint]) -> List[Tuple[float, float, float, float]]:
    return [(p.pixel_x, p.pixel_y, p.longitude, p.latitude) for p in points]


def _geo_pixel_pairs(points: Sequence[CalibrationPoint]) -> List[Tuple[float, float, float, float]]:
    return [(p.longitude, p.latitude, p.pixel_x, p.pixel_y) for p in points]


def _points_quad(points: Sequence[CalibrationPoint]) -> BilinearQuad:
    tl, tr, br, bl = (BilinearAnchor(p.pixel_x, p.pixel_y, p.longitude, p.latitude) for p in points[:4])
    return BilinearQuad(tl, tr, br, bl)


def pixel_to_utm(x: float, y: float, utm: UTMCalibration) -> Tuple[float, float]:
    if utm.bilinear_points is not None:
        return bilinear_forward(utm.bilinear_points, x, y)
    return utm.pixel_to_utm.apply(x, y)


def pixel_to_geo(x: float, y: float, calibration: MapCalibration) -> GeoPoint:
    utm = calibration.utm_calibration
    if utm is not None:
        easting, northing = pixel_to_utm(x, y, utm)
        lat, lon = utm_to_wgs84(easting, northing, utm.zone, utm.southern)
        return GeoPoint(lat=lat, lon=lon)

    points = calibration.calibration_points
    bounds = calibration.bounds
    if len(points) < 2:
        x_ratio = x / (calibration.image_width or 1)
        y_ratio = y / (calibration.image_height or 1)
        return GeoPoint(lat=bounds.north - (bounds.north - bounds.south) * y_ratio,
                        lon=bounds.west + (bounds.east - bounds.west) * x_ratio)

    if len(points) == 4:
        lon, lat = bilinear_forward(_points_quad(points), x, y)
        return GeoPoint(lat=float(lat), lon=float(lon))

    transform = fit_affine(_pixel_geo_pairs(points))
    if transform is None:
        raise CalibrationError(f"No pixel to geo transform for {calibration.filename}")
    lon, lat = transform.apply(x, y)
    return GeoPoint(lat=lat, lon=lon)


def geo_to_pixel(lat: float, lon: float, calibration: MapCalibration) -> Tuple[float, float]:
    points = calibration.calibration_points
    bounds = calibration.bounds
    if len(points) < 2:
        x_ratio = (lon - bounds.west) / ((bounds.east - bounds.west) or 1)
        y_ratio = (bounds.north - lat) / ((bounds.north - bounds.south) or 1)
        return x_ratio * calibration.image_width, y_ratio * calibration.image_height

    utm = calibration.utm_calibration
    if utm is not None:
        easting, northing = wgs84_to_utm(lat, lon, utm.zone, utm.southern)
        return utm.utm_to_pixel.apply(easting, northing)

    transform = fit_affine(_geo_pixel_pairs(points))
    if transform is None:
        raise CalibrationError(f"No geo to pixel transform for {calibration.filename}")
    return transform.apply(lon, lat)


def geo_to_pixel_array(lat: np.ndarray, lon: np.ndarray,
                       calibration: MapCalibration) -> Tuple[np.ndarray, np.ndarray]:
    """Vectorized geo_to_pixel"""
    utm = calibration.utm_calibration
    if utm is not None and len(calibration.calibration_points) >= 2:
        easting, northing = wgs84_to_utm_array(lat, lon, utm.zone, utm.southern)
        t = utm.utm_to_pixel
        return t.a * easting + t.b * northing + t.c, t.d * easting + t.e * northing + t.f
    px, py = np.vectorize(lambda la, lo: geo_to_pixel(la, lo, calibration), otypes=[float, float])(lat, lon)
    return px, py


def compute_corner_points(calibration: MapCalibration) -> CornerPoints:
    """WGS84 position of the four image corners"""
    w, h = calibration.image_width, calibration.image_height
    return CornerPoints(
        top_left=pixel_to_geo(0, 0, calibration),
        top_right=pixel_to_geo(w, 0, calibration),
        bottom_right=pixel_to_geo(w, h, calibration),
        bottom_left=pixel_to_geo(0, h, calibration),
    )


def bounds_from_corners(corners: CornerPoints) -> Bounds:
    return Bounds.from_points(corners.as_list())


def compute_bounds_from_points(points: Sequence[CalibrationPoint], image_width: int,
                               image_height: int) -> Bounds:
    """Bounds of the image corners pushed through the points' affine"""
    temp = MapCalibration(calibration_points=list(points), bounds=Bounds(0.0, 0.0, 0.0, 0.0),
                          image_width=image_width, image_height=image_height)
    return bounds_from_corners(compute_corner_points(temp))


def build_utm_calibration(grid_points: Sequence[Tuple[float, float, float, float]], zone: int,
                          image_width: int, image_height: int,
                          southern: bool = False) -> Optional[UTMCalibration]:
    """Fit pixel -> UTM from (pixel_x, pixel_y, easting, northing) grid points.

    Two points give an axis-parallel scale (they must differ in both axes),
    three an exact affine, more a least-squares one. Fewer than two points
    give None; a degenerate fit or inverse raises CalibrationError.
    """
    if len(grid_points) < 2:
        return None
    if len(grid_points) == 2:
        forward = fit_axis_parallel(grid_points[0], grid_points[1], strict=True)
    else:
        forward = fit_affine(grid_points, fallback=False)
    if forward is None:
        raise CalibrationError(f"{len(grid_points)} degenerate UTM grid points in zone {zone}")

    inverse = forward.inverse()
    if inverse is None:
        raise CalibrationError(f"Singular pixel to UTM transform in zone {zone}")

    quad = None
    if image_width > 0 and image_height > 0:
        quad = corner_quad(forward, image_width, image_height)

    logger.debug(f"UTM calibration zone {zone} from {len(grid_points)} points, bilinear={quad is not None}")
    return UTMCalibration(zone=zone, pixel_to_utm=forward, utm_to_pixel=inverse,
                          bilinear_points=quad, southern=southern)


def corner_quad(forward: AffineTransform, image_width: int, image_height: int) -> BilinearQuad:
    """Image corners (0,0), (W,0), (W,H), (0,H) with their affine UTM positions"""
    anchors = []
    for px, py in ((0, 0), (image_width, 0), (image_width, image_height), (0, image_height)):
        e, n = forward.apply(px, py)
        anchors.append(BilinearAnchor(px, py, e, n))
    return BilinearQuad(*anchors)
