"""Cuts a UTM-calibrated raster into 256 px JPEG tiles plus a JSON index.

Layout under the output directory::

    tile-index.json
    tiles/{ty}_{tx}.jpg
"""
import json
import logging
import math
import os
from typing import Generator, List, Optional

from PIL import Image

from models.calibration import MapCalibration
from models.geo import Bounds, GeoPoint
from models.progress import ProgressEvent
from models.tile_index import TileIndex, TileInfo
from utils.file_utils import FileUtils
from utils.geo_transform import utm_to_wgs84
from utils.raster_utils import TILE_SIZE

logger = logging.getLogger(__name__)

INDEX_FILE = 'tile-index.json'
TILES_DIR = 'tiles'
TILE_QUALITY = 90


def get_tile_path(map_dir: str, tile_x: int, tile_y: int) -> str:
    return os.path.join(map_dir, TILES_DIR, f"{tile_y}_{tile_x}.jpg")


def has_tiles(map_dir: str) -> bool:
    return os.path.exists(os.path.join(map_dir, INDEX_FILE))


def load_tile_index(map_dir: str) -> Optional[TileIndex]:
    index_path = os.path.join(map_dir, INDEX_FILE)
    if not os.path.exists(index_path):
        return None
    try:
        with open(index_path, 'r', encoding='utf-8') as f:
            return TileIndex.from_dict(json.load(f))
    except (OSError, ValueError, KeyError) as e:
        logger.error(f"Unreadable tile index {index_path}: {e}")
        return None


def _corner(calibration: MapCalibration, px: float, py: float) -> Optional[GeoPoint]:
    utm = calibration.utm_calibration
    easting, northing = utm.pixel_to_utm.apply(px, py)
    lat, lon = utm_to_wgs84(easting, northing, utm.zone, utm.southern)
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return None
    return GeoPoint(lat=lat, lon=lon)


def generate_tiles(image_path: str, calibration: MapCalibration,
                   output_dir: str) -> Generator[ProgressEvent, None, Optional[TileIndex]]:
    utm = calibration.utm_calibration
    if utm is None:
        logger.warning(f"Cannot generate tiles for {image_path}: no UTM calibration")
        return None

    yield ProgressEvent('Loading image...', 5)
    tiles_dir = os.path.join(output_dir, TILES_DIR)
    FileUtils.ensure_directory_exists(tiles_dir)

    with Image.open(image_path) as source:
        image = source.convert('RGB')
    width, height = image.size
    tiles_x = math.ceil(width / TILE_SIZE)
    tiles_y = math.ceil(height / TILE_SIZE)
    total = tiles_x * tiles_y
    logger.info(f"Generating {total} tiles ({tiles_x}x{tiles_y}) from {image_path}")

    tiles: List[TileInfo] = []
    corners: List[GeoPoint] = []
    processed = 0
    for ty in range(tiles_y):
        for tx in range(tiles_x):
            processed += 1
            px = tx * TILE_SIZE
            py = ty * TILE_SIZE
            pw = min(TILE_SIZE, width - px)
            ph = min(TILE_SIZE, height - py)

            tl = _corner(calibration, px, py)
            tr = _corner(calibration, px + pw, py)
            bl = _corner(calibration, px, py + ph)
            br = _corner(calibration, px + pw, py + ph)
            if None in (tl, tr, bl, br):
                logger.warning(f"Skipping tile {tx},{ty}: corner coordinates unavailable")
                continue

            image.crop((px, py, px + pw, py + ph)).save(get_tile_path(output_dir, tx, ty),
                                                       format='JPEG', quality=TILE_QUALITY)
            tiles.append(TileInfo(x=tx, y=ty, top_left=tl, top_right=tr, bottom_left=bl,
                                  bottom_right=br, pixel_x=px, pixel_y=py,
                                  pixel_width=pw, pixel_height=ph))
            corners.extend((tl, tr, bl, br))

            if processed % 50 == 0 or processed == total:
                yield ProgressEvent(f"Tile {processed}/{total}",
                                    10 + math.floor(processed / total * 85), processed, total)

    yield ProgressEvent('Writing tile index...', 98, processed, total)
    bounds = Bounds.from_points(corners) if corners else calibration.bounds.copy()
    index = TileIndex(tile_size=TILE_SIZE, image_width=width, image_height=height,
                      tiles_x=tiles_x, tiles_y=tiles_y, total_tiles=len(tiles),
                      utm_zone=utm.zone, bounds=bounds, tiles=tiles)
    with open(os.path.join(output_dir, INDEX_FILE), 'w', encoding='utf-8') as f:
        json.dump(index.to_dict(), f, indent=2)

    logger.info(f"Wrote {len(tiles)} tiles and index to {output_dir}")
    yield ProgressEvent('Done', 100, processed, total)
    return index
