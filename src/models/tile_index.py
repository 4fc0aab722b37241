from dataclasses import dataclass, field
from typing import Dict, Any, List

from models.geo import Bounds, GeoPoint


@dataclass
class TileInfo:
    """One generated tile: its pixel rectangle and WGS84 corners"""
    x: int
    y: int
    top_left: GeoPoint
    top_right: GeoPoint
    bottom_left: GeoPoint
    bottom_right: GeoPoint
    pixel_x: int
    pixel_y: int
    pixel_width: int
    pixel_height: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'x': self.x,
            'y': self.y,
            'topLeft': self.top_left.to_dict(),
            'topRight': self.top_right.to_dict(),
            'bottomLeft': self.bottom_left.to_dict(),
            'bottomRight': self.bottom_right.to_dict(),
            'pixelX': self.pixel_x,
            'pixelY': self.pixel_y,
            'pixelWidth': self.pixel_width,
            'pixelHeight': self.pixel_height,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TileInfo':
        return cls(
            x=int(data['x']),
            y=int(data['y']),
            top_left=GeoPoint.from_dict(data['topLeft']),
            top_right=GeoPoint.from_dict(data['topRight']),
            bottom_left=GeoPoint.from_dict(data['bottomLeft']),
            bottom_right=GeoPoint.from_dict(data['bottomRight']),
            pixel_x=int(data['pixelX']),
            pixel_y=int(data['pixelY']),
            pixel_width=int(data['pixelWidth']),
            pixel_height=int(data['pixelHeight']),
        )


@dataclass
class TileIndex:
    """Contents of tile-index.json"""
    tile_size: int
    image_width: int
    image_height: int
    tiles_x: int
    tiles_y: int
    total_tiles: int
    utm_zone: int
    bounds: Bounds
    tiles: List[TileInfo] = field(default_factory=list)
    version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'tileSize': self.tile_size,
            'imageWidth': self.image_width,
            'imageHeight': self.image_height,
            'tilesX': self.tiles_x,
            'tilesY': self.tiles_y,
            'totalTiles': self.total_tiles,
            'utmZone': self.utm_zone,
            'bounds': self.bounds.to_dict(),
            'tiles': [t.to_dict() for t in self.tiles],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TileIndex':
        return cls(
            version=int(data.get('version', 1)),
            tile_size=int(data['tileSize']),
            image_width=int(data['imageWidth']),
            image_height=int(data['imageHeight']),
            tiles_x=int(data['tilesX']),
            tiles_y=int(data['tilesY']),
            total_tiles=int(data['totalTiles']),
            utm_zone=int(data['utmZone']),
            bounds=Bounds.from_dict(data['bounds']),
            tiles=[TileInfo.from_dict(t) for t in data.get('tiles', [])],
        )
