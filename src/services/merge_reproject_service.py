import io
import logging
import os
from typing import Generator, List, Optional

import numpy as np
from PIL import Image, UnidentifiedImageError

from models.geo import Bounds, GeoPoint, UTMBounds
from models.progress import MergedImage, ProgressEvent
from services.tile_cache_service import TileCacheService
from utils.file_utils import FileUtils
from utils.geo_transform import utm_to_wgs84_array, wgs84_to_utm
from utils.raster_utils import TILE_SIZE, RasterUtils
from utils.tile_calculator import TileCalculator

logger = logging.getLogger(__name__)

MAX_OUTPUT_SIDE = 8000
ROW_BLOCK = 100
WHITE = (255, 255, 255)


class MergeReprojectService:
    """Stitches cached provider tiles into one UTM-aligned JPEG"""

    def __init__(self, cache: TileCacheService, output_dir: str):
        self.cache = cache
        self.output_dir = output_dir

    def output_path(self, zoom: int, utm_zone: int) -> str:
        return os.path.join(self.output_dir, f"competition_z{zoom}_utm{utm_zone}.jpg")

    def merge_and_reproject_tiles(self, provider: str, points: List[GeoPoint], zoom: int,
                                  utm_zone: int) -> Generator[ProgressEvent, None, Optional[MergedImage]]:
        yield ProgressEvent('Calculating tile range...', 0)
        if not points:
            logger.warning(f"No area given for merging {provider} tiles")
            return None
        area = TileCalculator.points_to_bounds(points)
        min_x, max_x, min_y, max_y = TileCalculator.tile_range(area, zoom)
        cols = max_x - min_x + 1
        rows = max_y - min_y + 1
        total = cols * rows
        logger.info(f"Merging {total} tiles of {provider} at z{zoom} into UTM zone {utm_zone}")

        yield ProgressEvent('Loading tiles...', 5, 0, total)
        merged = Image.new('RGB', (cols * TILE_SIZE, rows * TILE_SIZE), WHITE)
        loaded = 0
        processed = 0
        for x in range(min_x, max_x + 1):
            for y in range(min_y, max_y + 1):
                data = self.cache.get_tile(provider, zoom, x, y)
                if data is not None and self._paste_tile(merged, data, x - min_x, y - min_y):
                    loaded += 1
                processed += 1
                if processed % 50 == 0:
                    yield ProgressEvent('Loading tiles...', 5 + 20 * processed / total, processed, total)

        if loaded == 0:
            logger.warning(f"No cached {provider} tiles at z{zoom} for the requested area")
            return None

        yield ProgressEvent('Calculating UTM bounds...', 30, loaded, total)
        north_west = TileCalculator.tile_to_lon_lat_bounds(min_x, min_y, zoom)
        south_east = TileCalculator.tile_to_lon_lat_bounds(max_x, max_y, zoom)
        image_bounds = Bounds(north=north_west.north, south=south_east.south,
                              east=south_east.east, west=north_west.west)
        southern = (image_bounds.north + image_bounds.south) / 2 < 0

        nw = wgs84_to_utm(image_bounds.north, image_bounds.west, utm_zone, southern)
        ne = wgs84_to_utm(image_bounds.north, image_bounds.east, utm_zone, southern)
        sw = wgs84_to_utm(image_bounds.south, image_bounds.west, utm_zone, southern)
        se = wgs84_to_utm(image_bounds.south, image_bounds.east, utm_zone, southern)
        utm_bounds = UTMBounds(min_e=min(nw[0], sw[0]), max_e=max(ne[0], se[0]),
                               min_n=min(sw[1], se[1]), max_n=max(nw[1], ne[1]))

        utm_width = utm_bounds.max_e - utm_bounds.min_e
        utm_height = utm_bounds.max_n - utm_bounds.min_n
        src_width, src_height = merged.size
        metres_per_pixel = max(utm_width, utm_height) / max(src_width, src_height)
        target_width = max(1, min(MAX_OUTPUT_SIDE, round(utm_width / metres_per_pixel)))
        target_height = max(1, min(MAX_OUTPUT_SIDE, round(utm_height / metres_per_pixel)))
        logger.debug(f"Merged {src_width}x{src_height} px -> {target_width}x{target_height} px "
                     f"at {metres_per_pixel:.2f} m/px")

        yield ProgressEvent('Reprojecting to UTM...', 50)
        src = np.asarray(merged, dtype=np.uint8)
        out = np.empty((target_height, target_width, 3), dtype=np.uint8)
        dst_x = np.arange(target_width, dtype=np.float64)
        easting_row = utm_bounds.min_e + dst_x / target_width * utm_width
        lon_range = image_bounds.east - image_bounds.west
        lat_range = image_bounds.north - image_bounds.south

        for start in range(0, target_height, ROW_BLOCK):
            stop = min(start + ROW_BLOCK, target_height)
            dst_y = np.arange(start, stop, dtype=np.float64)[:, None]
            northing = utm_bounds.max_n - dst_y / target_height * utm_height
            easting = np.broadcast_to(easting_row, (stop - start, target_width))
            northing = np.broadcast_to(northing, easting.shape)
            lat, lon = utm_to_wgs84_array(easting, northing, utm_zone, southern)

            norm_x = (lon - image_bounds.west) / lon_range
            norm_y = (image_bounds.north - lat) / lat_range
            inside = (norm_x >= 0) & (norm_x <= 1) & (norm_y >= 0) & (norm_y <= 1)
            src_x = np.floor(norm_x * (src_width - 1))
            src_y = np.floor(norm_y * (src_height - 1))

            block = RasterUtils.nearest_sample(src, src_x, src_y)
            block[~inside] = WHITE
            out[start:stop] = block

            yield ProgressEvent('Reprojecting to UTM...', 50 + 40 * stop / target_height, stop, target_height)

        yield ProgressEvent('Saving image...', 95)
        FileUtils.ensure_directory_exists(self.output_dir)
        image_path = self.output_path(zoom, utm_zone)
        RasterUtils.save_jpeg(RasterUtils.to_image(out), image_path, quality=90)
        logger.info(f"Merged image written to {image_path}")

        yield ProgressEvent('Done', 100)
        return MergedImage(image_path=image_path, bounds=image_bounds, utm_bounds=utm_bounds)

    @staticmethod
    def _paste_tile(canvas: Image.Image, data: bytes, col: int, row: int) -> bool:
        try:
            with Image.open(io.BytesIO(data)) as tile:
                tile = tile.convert('RGBA')
                canvas.paste(tile, (col * TILE_SIZE, row * TILE_SIZE), tile)
            return True
        except (UnidentifiedImageError, OSError) as e:
            logger.warning(f"Skipping undecodable tile at block position {col},{row}: {e}")
            return False
