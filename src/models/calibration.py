from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Tuple

from models.geo import Bounds, GeoPoint


@dataclass
class CalibrationPoint:
    """Pixel position paired with its WGS84 coordinate"""
    pixel_x: float
    pixel_y: float
    latitude: float
    longitude: float

    def to_dict(self) -> Dict[str, float]:
        return {'pixelX': self.pixel_x, 'pixelY': self.pixel_y,
                'latitude': self.latitude, 'longitude': self.longitude}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CalibrationPoint':
        return cls(pixel_x=float(data['pixelX']), pixel_y=float(data['pixelY']),
                   latitude=float(data['latitude']), longitude=float(data['longitude']))


@dataclass
class AffineTransform:
    """x' = a*x + b*y + c, y' = d*x + e*y + f"""
    a: float
    b: float
    c: float
    d: float
    e: float
    f: float

    def apply(self, x: float, y: float) -> Tuple[float, float]:
        return (self.a * x + self.b * y + self.c,
                self.d * x + self.e * y + self.f)

    # Alias matching the calibration API naming
    transform_point = apply

    def determinant(self) -> float:
        return self.a * self.e - self.b * self.d

    def inverse(self, eps: float = 1e-10) -> Optional['AffineTransform']:
        det = self.determinant()
        if abs(det) <= eps:
            return None
        a = self.e / det
        b = -self.b / det
        d = -self.d / det
        e = self.a / det
        c = -(a * self.c + b * self.f)
        f = -(d * self.c + e * self.f)
        return AffineTransform(a, b, c, d, e, f)

    def to_dict(self) -> Dict[str, float]:
        return {'a': self.a, 'b': self.b, 'c': self.c, 'd': self.d, 'e': self.e, 'f': self.f}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AffineTransform':
        return cls(*(float(data[k]) for k in 'abcdef'))


@dataclass
class BilinearAnchor:
    """Image corner with its UTM position"""
    px: float
    py: float
    e: float
    n: float

    def to_dict(self) -> Dict[str, float]:
        return {'px': self.px, 'py': self.py, 'e': self.e, 'n': self.n}


@dataclass
class BilinearQuad:
    top_left: BilinearAnchor
    top_right: BilinearAnchor
    bottom_right: BilinearAnchor
    bottom_left: BilinearAnchor

    def to_dict(self) -> Dict[str, Any]:
        return {'topLeft': self.top_left.to_dict(), 'topRight': self.top_right.to_dict(),
                'bottomRight': self.bottom_right.to_dict(), 'bottomLeft': self.bottom_left.to_dict()}


@dataclass
class UTMCalibration:
    zone: int
    pixel_to_utm: AffineTransform
    utm_to_pixel: AffineTransform
    bilinear_points: Optional[BilinearQuad] = None
    southern: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'zone': self.zone,
            'pixelToUtm': self.pixel_to_utm.to_dict(),
            'utmToPixel': self.utm_to_pixel.to_dict(),
            'bilinearPoints': self.bilinear_points.to_dict() if self.bilinear_points else None,
        }


@dataclass
class CornerPoints:
    top_left: GeoPoint
    top_right: GeoPoint
    bottom_right: GeoPoint
    bottom_left: GeoPoint

    def to_dict(self) -> Dict[str, Any]:
        return {'topLeft': self.top_left.to_dict(), 'topRight': self.top_right.to_dict(),
                'bottomRight': self.bottom_right.to_dict(), 'bottomLeft': self.bottom_left.to_dict()}

    def as_list(self) -> List[GeoPoint]:
        return [self.top_left, self.top_right, self.bottom_right, self.bottom_left]


@dataclass
class MapCalibration:
    """Everything known about how a raster maps onto the globe"""
    filename: str = ''
    title: str = ''
    image_path: str = ''
    projection: str = 'Latitude/Longitude'
    datum: str = 'WGS 84'
    calibration_points: List[CalibrationPoint] = field(default_factory=list)
    bounds: Bounds = field(default_factory=Bounds.empty)
    image_width: int = 0
    image_height: int = 0
    corner_points: Optional[CornerPoints] = None
    utm_calibration: Optional[UTMCalibration] = None

    @property
    def has_image_size(self) -> bool:
        return self.image_width > 0 and self.image_height > 0
