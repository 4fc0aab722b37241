"""OziExplorer .map calibration files.

A .map file is CRLF text: a fixed 5-line header (signature, title, image
path, map code, datum), up to 30 ``PointNN`` calibration lines and optional
moving-map (MMPXY/MMPLL) and image size (IWH) lines.
"""
import logging
import os
from typing import List, Optional, Tuple

from exceptions.tile_engine_exceptions import CalibrationError, MapFormatError
from models.calibration import CalibrationPoint, CornerPoints, MapCalibration
from models.geo import Bounds, GeoPoint
from services.calibration_service import (bounds_from_corners, build_utm_calibration,
                                          compute_corner_points)
from utils.geo_transform import decimal_to_dms, dms_to_decimal, utm_to_wgs84

logger = logging.getLogger(__name__)

MAP_SIGNATURE = 'OziExplorer Map Data File'
POINT_SLOTS = 30
MIN_POINT_FIELDS = 17

# (pixel_x, pixel_y, easting, northing)
GridPoint = Tuple[float, float, float, float]


def _parse_int(value: str) -> Optional[int]:
    try:
        return int(float(value.strip()))
    except ValueError:
        return None


def _parse_float(value: str) -> Optional[float]:
    try:
        return float(value.strip())
    except ValueError:
        return None


def _field(parts: List[str], index: int) -> str:
    return parts[index].strip() if index < len(parts) else ''


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else repr(float(value))


def find_map_file(ozf_path: str) -> Optional[str]:
    """Locate the .map that belongs to an .ozf2/.ozf3/.ozfx3 image"""
    directory = os.path.dirname(ozf_path)
    base_name = os.path.basename(ozf_path)
    stem, ext = os.path.splitext(base_name)
    if ext.lower() in ('.ozf', '.ozf2', '.ozf3', '.ozfx3', '.ozfx'):
        base_name = stem

    for candidate in (base_name + '.map', base_name + '.MAP',
                      base_name.lower() + '.map', base_name.upper() + '.MAP'):
        path = os.path.join(directory, candidate)
        if os.path.exists(path):
            return path
    return None


class OziMapFileReader:
    """Parses .map files into MapCalibration"""

    @staticmethod
    def parse(map_path: str, image_size: Optional[Tuple[int, int]] = None) -> MapCalibration:
        """Parse a .map file. ``image_size`` overrides its IWH line."""
        try:
            with open(map_path, 'r', encoding='utf-8', errors='replace') as f:
                content = f.read()
        except OSError as e:
            raise MapFormatError(f"Cannot read map file {map_path}: {e}")
        return OziMapFileReader.parse_text(content, os.path.basename(map_path), image_size)

    @staticmethod
    def parse_text(content: str, filename: str = '',
                   image_size: Optional[Tuple[int, int]] = None) -> MapCalibration:
        calibration = MapCalibration(filename=filename)
        mmpll: List[GeoPoint] = []
        mmpxy: List[Tuple[int, int]] = []
        grid_points: List[Tuple[GridPoint, int, bool]] = []

        for index, raw in enumerate(content.splitlines()):
            line = raw.strip()
            if index == 0:
                if not line.startswith(MAP_SIGNATURE):
                    logger.warning(f"{filename}: unexpected header {line[:40]!r}")
                continue
            if index == 1:
                calibration.title = line
                continue
            if index == 2:
                calibration.image_path = line
                continue
            if index == 3:
                continue
            if index == 4:
                calibration.datum = line.split(',')[0] or 'WGS 84'
                continue

            if line.startswith('Point') and ',' in line:
                parsed = OziMapFileReader.parse_point_line(line)
                if parsed is not None:
                    point, grid = parsed
                    calibration.calibration_points.append(point)
                    if grid is not None:
                        grid_points.append(grid)
            elif line.startswith('IWH,'):
                parts = line.split(',')
                if len(parts) >= 4:
                    calibration.image_width = _parse_int(parts[2]) or 0
                    calibration.image_height = _parse_int(parts[3]) or 0
            elif line.startswith('Map Projection,'):
                calibration.projection = line.split(',')[1] or 'Latitude/Longitude'
            elif line.startswith('MMPXY,'):
                parts = line.split(',')
                if len(parts) >= 4:
                    x, y = _parse_int(parts[2]), _parse_int(parts[3])
                    if x is not None and y is not None:
                        mmpxy.append((x, y))
            elif line.startswith('MMPLL,'):
                parts = line.split(',')
                if len(parts) >= 4:
                    lon, lat = _parse_float(parts[2]), _parse_float(parts[3])
                    if lon is not None and lat is not None:
                        mmpll.append(GeoPoint(lat=lat, lon=lon))

        if image_size is not None and image_size[0] > 0 and image_size[1] > 0:
            calibration.image_width, calibration.image_height = image_size

        OziMapFileReader._apply_utm(calibration, grid_points)
        OziMapFileReader._apply_bounds(calibration, mmpll, mmpxy)
        return calibration

    @staticmethod
    def parse_point_line(line: str) -> Optional[Tuple[CalibrationPoint, Optional[Tuple[GridPoint, int, bool]]]]:
        """Parse one PointNN line into a calibration point and optional UTM grid data"""
        parts = line.split(',')
        if len(parts) < MIN_POINT_FIELDS:
            return None

        pixel_x = _parse_int(_field(parts, 2))
        pixel_y = _parse_int(_field(parts, 3))
        if pixel_x is None or pixel_y is None:
            return None

        latitude = 0.0
        longitude = 0.0
        if _field(parts, 5) == 'deg':
            latitude = dms_to_decimal(_parse_int(_field(parts, 6)) or 0,
                                      _parse_int(_field(parts, 7)) or 0,
                                      _parse_float(_field(parts, 8)) or 0.0,
                                      _field(parts, 9))
            longitude = dms_to_decimal(_parse_int(_field(parts, 10)) or 0,
                                       _parse_int(_field(parts, 11)) or 0,
                                       _parse_float(_field(parts, 12)) or 0.0,
                                       _field(parts, 13))

        grid = None
        grid_index = next((i for i, p in enumerate(parts) if p.strip().lower() == 'grid'), -1)
        if grid_index >= 0 and len(parts) > grid_index + 3:
            zone = _parse_int(_field(parts, grid_index + 1)) or 0
            easting = _parse_float(_field(parts, grid_index + 2)) or 0.0
            northing = _parse_float(_field(parts, grid_index + 3)) or 0.0
            southern = (_field(parts, grid_index + 4) or 'N').upper() == 'S'
            if zone > 0 and easting > 0 and northing > 0:
                grid = ((float(pixel_x), float(pixel_y), easting, northing), zone, southern)
                if latitude == 0 and longitude == 0:
                    latitude, longitude = utm_to_wgs84(easting, northing, zone, southern)

        if latitude == 0 and longitude == 0:
            return None
        return CalibrationPoint(pixel_x=pixel_x, pixel_y=pixel_y,
                                latitude=latitude, longitude=longitude), grid

    @staticmethod
    def _apply_utm(calibration: MapCalibration, grid_points: List[Tuple[GridPoint, int, bool]]) -> None:
        if len(grid_points) < 2:
            return
        zone = grid_points[0][1]
        if any(g[1] != zone for g in grid_points):
            logger.info(f"{calibration.filename}: grid points span several UTM zones, UTM calibration skipped")
            return
        try:
            calibration.utm_calibration = build_utm_calibration(
                [g[0] for g in grid_points], zone,
                calibration.image_width, calibration.image_height,
                southern=grid_points[0][2],
            )
        except CalibrationError as e:
            logger.warning(f"{calibration.filename}: UTM calibration skipped: {e}")

    @staticmethod
    def _apply_bounds(calibration: MapCalibration, mmpll: List[GeoPoint],
                      mmpxy: List[Tuple[int, int]]) -> None:
        points = calibration.calibration_points

        if calibration.utm_calibration is not None and calibration.has_image_size:
            corners = compute_corner_points(calibration)
        elif len(mmpll) >= 4 and len(mmpxy) >= 4:
            corners = CornerPoints(*mmpll[:4])
            if len(points) < 2:
                calibration.calibration_points = [
                    CalibrationPoint(pixel_x=xy[0], pixel_y=xy[1], latitude=ll.lat, longitude=ll.lon)
                    for xy, ll in zip(mmpxy[:4], mmpll[:4])
                ]
        elif len(points) >= 3 and calibration.has_image_size:
            corners = compute_corner_points(calibration)
        elif len(mmpll) >= 4:
            corners = CornerPoints(*mmpll[:4])
        elif len(points) >= 2 and calibration.has_image_size:
            corners = compute_corner_points(calibration)
        elif points:
            calibration.bounds = Bounds(
                north=max(p.latitude for p in points),
                south=min(p.latitude for p in points),
                east=max(p.longitude for p in points),
                west=min(p.longitude for p in points),
            )
            return
        else:
            return

        calibration.corner_points = corners
        calibration.bounds = bounds_from_corners(corners)


class OziMapFileWriter:
    """Writes MapCalibration back out as an OziExplorer 2.2 .map file"""

    @staticmethod
    def render(calibration: MapCalibration, name: str = '', image_name: str = '') -> str:
        lines = [
            'OziExplorer Map Data File Version 2.2',
            calibration.title or name,
            image_name or calibration.image_path or 'map.png',
            '1 ,Map Code,',
            f"{calibration.datum},WGS 84, 0.0, 0.0,WGS 84",
            'Reserved 1',
            'Reserved 2',
            'Magnetic Variation,,,E',
            f"Map Projection,{calibration.projection},PolyCal,No,AutoCalOnly,No,BSBUseWPX,No",
        ]

        for i in range(POINT_SLOTS):
            num = f"{i + 1:02d}"
            if i < len(calibration.calibration_points):
                p = calibration.calibration_points[i]
                lat_deg, lat_min, lat_sec = decimal_to_dms(p.latitude)
                lon_deg, lon_min, lon_sec = decimal_to_dms(p.longitude)
                lines.append(
                    f"Point{num},xy,{_format_number(p.pixel_x)},{_format_number(p.pixel_y)},in,deg,"
                    f"{lat_deg},{lat_min},{lat_sec:.3f},{'N' if p.latitude >= 0 else 'S'},"
                    f"{lon_deg},{lon_min},{lon_sec:.3f},{'E' if p.longitude >= 0 else 'W'},grid,,,,,N"
                )
            else:
                lines.append(f"Point{num},xy,,,in,deg,,,,,N,,,,,E,grid,,,,,N")

        w, h = calibration.image_width, calibration.image_height
        b = calibration.bounds
        lines.extend([
            'Projection Setup,,,,,,,,,,',
            'Map Feature = MF ; Map Comment = MC     These follow if they exist',
            'Track File = TF      These follow if they exist',
            'Moving Map Parameters = MM?    These follow if they exist',
            'MM0,Yes',
            'MMPNUM,4',
            'MMPXY,1,0,0',
            f"MMPXY,2,{w},0",
            f"MMPXY,3,{w},{h}",
            f"MMPXY,4,0,{h}",
            f"MMPLL,1,{b.west:.6f},{b.north:.6f}",
            f"MMPLL,2,{b.east:.6f},{b.north:.6f}",
            f"MMPLL,3,{b.east:.6f},{b.south:.6f}",
            f"MMPLL,4,{b.west:.6f},{b.south:.6f}",
            f"IWH,Map Image Width/Height,{w},{h}",
        ])
        return '\r\n'.join(lines)

    @staticmethod
    def write(map_path: str, calibration: MapCalibration, name: str = '', image_name: str = '') -> None:
        directory = os.path.dirname(map_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(map_path, 'w', encoding='utf-8', newline='') as f:
            f.write(OziMapFileWriter.render(calibration, name, image_name))
        logger.info(f"Map file written: {map_path}")
