from dataclasses import dataclass
from typing import Dict, Any, Optional

from models.calibration import MapCalibration, CornerPoints
from models.geo import Bounds


@dataclass
class LoadedMap:
    """A registered map and its calibration"""
    id: str
    name: str
    calibration: MapCalibration
    ozf_path: str = ''
    map_path: str = ''

    @property
    def is_ozf(self) -> bool:
        return bool(self.ozf_path)

    def to_index_entry(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'ozfPath': self.ozf_path,
            'mapPath': self.map_path,
            'bounds': self.calibration.bounds.to_dict(),
        }


@dataclass
class MapInfo:
    """Summary of a map handed to viewers"""
    id: str
    name: str
    filename: str
    bounds: Bounds
    image_width: int
    image_height: int
    image_path: str
    is_loaded: bool = True
    corner_points: Optional[CornerPoints] = None
    has_tiles: bool = False
    utm_zone: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'filename': self.filename,
            'bounds': self.bounds.to_dict(),
            'imageWidth': self.image_width,
            'imageHeight': self.image_height,
            'isLoaded': self.is_loaded,
            'imagePath': self.image_path,
            'cornerPoints': self.corner_points.to_dict() if self.corner_points else None,
            'hasTiles': self.has_tiles,
            'utmZone': self.utm_zone,
        }
