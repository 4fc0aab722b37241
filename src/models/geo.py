from dataclasses import dataclass
from typing import Dict, Any, Iterable, Tuple


@dataclass
class GeoPoint:
    """WGS84 position"""
    lat: float
    lon: float

    def to_dict(self) -> Dict[str, float]:
        return {'lat': self.lat, 'lon': self.lon}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GeoPoint':
        return cls(lat=float(data['lat']), lon=float(data['lon']))


@dataclass
class Bounds:
    """Geographic bounding box in degrees"""
    north: float
    south: float
    east: float
    west: float

    def contains(self, lat: float, lon: float) -> bool:
        return self.south <= lat <= self.north and self.west <= lon <= self.east

    def intersects(self, other: 'Bounds') -> bool:
        return not (other.east < self.west or other.west > self.east or
                    other.south > self.north or other.north < self.south)

    @property
    def width(self) -> float:
        return self.east - self.west

    @property
    def height(self) -> float:
        return self.north - self.south

    def to_dict(self) -> Dict[str, float]:
        return {'north': self.north, 'south': self.south, 'east': self.east, 'west': self.west}

    def to_bbox(self) -> Tuple[float, float, float, float]:
        """Return (min_lon, min_lat, max_lon, max_lat)"""
        return (self.west, self.south, self.east, self.north)

    def copy(self) -> 'Bounds':
        return Bounds(self.north, self.south, self.east, self.west)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Bounds':
        return cls(north=float(data['north']), south=float(data['south']),
                   east=float(data['east']), west=float(data['west']))

    @classmethod
    def from_points(cls, points: Iterable[GeoPoint]) -> 'Bounds':
        points = list(points)
        if not points:
            raise ValueError("at least one point is required")
        return cls(north=max(p.lat for p in points), south=min(p.lat for p in points),
                   east=max(p.lon for p in points), west=min(p.lon for p in points))

    @classmethod
    def empty(cls) -> 'Bounds':
        return cls(north=-90.0, south=90.0, east=-180.0, west=180.0)


@dataclass
class UTMBounds:
    """Projected bounding box in metres"""
    min_e: float
    max_e: float
    min_n: float
    max_n: float

    def to_dict(self) -> Dict[str, float]:
        return {'minE': self.min_e, 'maxE': self.max_e, 'minN': self.min_n, 'maxN': self.max_n}
