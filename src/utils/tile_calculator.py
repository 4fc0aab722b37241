import math
from typing import Iterable, Iterator, List, Tuple

from shapely.geometry import MultiPoint

from models.geo import Bounds, GeoPoint

# Web Mercator latitude limit
MAX_LATITUDE = 85.05112878


class TileCalculator:
    """Utility class for Web Mercator tile coordinate calculations"""

    @staticmethod
    def lon_lat_to_tile(lon: float, lat: float, zoom: int) -> Tuple[int, int]:
        """Convert lon/lat to tile coordinates, clamped to the zoom's grid"""
        n = 2 ** zoom
        lat_rad = math.radians(min(max(lat, -MAX_LATITUDE), MAX_LATITUDE))
        x = int(math.floor((lon + 180.0) / 360.0 * n))
        y = int(math.floor((1.0 - math.asinh(math.tan(lat_rad)) / math.pi) / 2.0 * n))
        return min(max(x, 0), n - 1), min(max(y, 0), n - 1)

    @staticmethod
    def tile_to_lon_lat_bounds(x: int, y: int, zoom: int) -> Bounds:
        """Return geographic bounds of an XYZ tile"""
        n = 2 ** zoom

        def y_to_lat(y_val: int) -> float:
            return math.degrees(math.atan(math.sinh(math.pi * (1 - 2 * y_val / n))))

        return Bounds(
            north=y_to_lat(y),
            south=y_to_lat(y + 1),
            east=(x + 1) / n * 360.0 - 180.0,
            west=x / n * 360.0 - 180.0,
        )

    @staticmethod
    def points_to_bounds(points: Iterable[GeoPoint]) -> Bounds:
        """Bounding box of the polygon's extreme points"""
        min_lon, min_lat, max_lon, max_lat = MultiPoint([(p.lon, p.lat) for p in points]).bounds
        return Bounds(north=max_lat, south=min_lat, east=max_lon, west=min_lon)

    @staticmethod
    def tile_range(bounds: Bounds, zoom: int) -> Tuple[int, int, int, int]:
        """Return (min_x, max_x, min_y, max_y) covering the bounds"""
        min_x, min_y = TileCalculator.lon_lat_to_tile(bounds.west, bounds.north, zoom)
        max_x, max_y = TileCalculator.lon_lat_to_tile(bounds.east, bounds.south, zoom)
        return min_x, max_x, min_y, max_y

    @staticmethod
    def iter_tiles_for_bounds(bounds: Bounds, min_zoom: int, max_zoom: int) -> Iterator[Tuple[int, int, int]]:
        for zoom in range(min_zoom, max_zoom + 1):
            min_x, max_x, min_y, max_y = TileCalculator.tile_range(bounds, zoom)
            for x in range(min_x, max_x + 1):
                for y in range(min_y, max_y + 1):
                    yield zoom, x, y

    @staticmethod
    def get_tiles_for_polygon(points: List[GeoPoint], min_zoom: int, max_zoom: int) -> List[Tuple[int, int, int]]:
        """All (z, x, y) tiles covering the bounding box of a polygon"""
        if not points:
            return []
        bounds = TileCalculator.points_to_bounds(points)
        return list(TileCalculator.iter_tiles_for_bounds(bounds, min_zoom, max_zoom))

    @staticmethod
    def calculate_tile_count(points: List[GeoPoint], min_zoom: int, max_zoom: int) -> int:
        """Number of tiles get_tiles_for_polygon would return"""
        if not points:
            return 0
        bounds = TileCalculator.points_to_bounds(points)
        total = 0
        for zoom in range(min_zoom, max_zoom + 1):
            min_x, max_x, min_y, max_y = TileCalculator.tile_range(bounds, zoom)
            total += (max_x - min_x + 1) * (max_y - min_y + 1)
        return total
