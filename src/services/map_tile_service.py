import base64
import logging
import math
import os
import threading
from typing import Any, Dict, Generator, Optional, Tuple

import numpy as np
from PIL import Image, ImageOps

from adapters.ozf_reader import OZF_TILE_SIZE, OZFReader, OZFTileTable
from core.lru_cache import TileMemoryCache
from exceptions.tile_engine_exceptions import CalibrationError, MapFormatError
from models.calibration import AffineTransform, MapCalibration
from models.geo import Bounds
from models.map_info import LoadedMap
from models.progress import ProgressEvent, ReprojectedImage
from models.tile_index import TileIndex
from services import calibration_service, tile_generator_service
from services.map_registry_service import MapRegistryService
from utils.file_utils import FileUtils
from utils.geo_transform import bilinear_inverse, wgs84_to_utm_array
from utils.raster_utils import TILE_SIZE, RasterUtils
from utils.tile_calculator import TileCalculator

logger = logging.getLogger(__name__)

MAX_CACHE_SIZE = 500
MAX_REPROJECTED_SIDE = 16000
REPROJECT_ROW_BLOCK = 256
OZF_TILE_BYTES = OZF_TILE_SIZE * OZF_TILE_SIZE

IMAGE_MIME_TYPES = {
    '.png': 'image/png',
    '.jpg': 'image/jpeg',
    '.jpeg': 'image/jpeg',
    '.bmp': 'image/bmp',
}


class MapTileService:
    """Serves 256 px web-mercator tiles rendered from registered maps.

    Lookup order is RAM (LRU) -> disk cache -> synthesis from the OZF
    container or the stored raster. Synthesized tiles are written to both
    caches.
    """

    def __init__(self, registry: MapRegistryService, tile_cache_dir: str, reprojected_dir: str,
                 memory_cache: Optional[TileMemoryCache] = None):
        self.registry = registry
        self.tile_cache_dir = tile_cache_dir
        self.reprojected_dir = reprojected_dir
        self.memory_cache = memory_cache or TileMemoryCache(MAX_CACHE_SIZE)
        self._ozf_tables: Dict[str, OZFTileTable] = {}
        self._ozf_lock = threading.Lock()
        FileUtils.ensure_directory_exists(self.tile_cache_dir)
        FileUtils.ensure_directory_exists(self.reprojected_dir)

    # Tile cache

    def _disk_path(self, map_id: str, z: int, x: int, y: int) -> str:
        return FileUtils.get_tile_path(os.path.join(self.tile_cache_dir, map_id), z, x, y)

    def _store(self, map_id: str, z: int, x: int, y: int, data: bytes) -> None:
        try:
            FileUtils.write_bytes_atomic(self._disk_path(map_id, z, x, y), data)
        except OSError as e:
            logger.error(f"Cannot cache tile {map_id} {z}/{x}/{y}: {e}")

    def get_tile(self, map_id: str, z: int, x: int, y: int) -> Optional[bytes]:
        loaded = self.registry.get(map_id)
        if loaded is None:
            logger.debug(f"get_tile: unknown map {map_id}")
            return None

        key = f"{map_id}-{z}-{x}-{y}"
        data = self.memory_cache.get(key)
        if data is not None:
            return data

        data = FileUtils.read_bytes(self._disk_path(map_id, z, x, y))
        if data:
            self.memory_cache.put(key, data)
            return data

        data = self._synthesize(loaded, z, x, y)
        if data is not None:
            self.memory_cache.put(key, data)
            self._store(map_id, z, x, y, data)
        return data

    def _synthesize(self, loaded: LoadedMap, z: int, x: int, y: int) -> Optional[bytes]:
        try:
            if loaded.ozf_path and os.path.exists(loaded.ozf_path):
                return self._tile_from_ozf(loaded, z, x, y)
            image_path = self.registry.get_image_path(loaded.id)
            if not image_path:
                logger.debug(f"No source image for map {loaded.id}")
                return None
            return self._tile_from_image(loaded, image_path, z, x, y)
        except (OSError, ValueError, CalibrationError) as e:
            logger.error(f"Tile synthesis failed for {loaded.id} {z}/{x}/{y}: {e}")
            return None

    # OZF synthesis

    def _tile_table(self, loaded: LoadedMap) -> Optional[OZFTileTable]:
        with self._ozf_lock:
            table = self._ozf_tables.get(loaded.id)
            if table is None:
                table = OZFReader(loaded.ozf_path).read_tile_table()
                if table is not None:
                    self._ozf_tables[loaded.id] = table
            return table

    def _tile_from_ozf(self, loaded: LoadedMap, z: int, x: int, y: int) -> Optional[bytes]:
        cal = loaded.calibration
        bounds = cal.bounds
        tile_bounds = TileCalculator.tile_to_lon_lat_bounds(x, y, z)
        if not tile_bounds.intersects(bounds) or not cal.has_image_size:
            return None
        if bounds.width <= 0 or bounds.height <= 0:
            return None

        px_per_lon = cal.image_width / bounds.width
        px_per_lat = cal.image_height / bounds.height
        pixel_left = max(0.0, (tile_bounds.west - bounds.west) * px_per_lon)
        pixel_right = min(cal.image_width, (tile_bounds.east - bounds.west) * px_per_lon)
        pixel_top = max(0.0, (bounds.north - tile_bounds.north) * px_per_lat)
        pixel_bottom = min(cal.image_height, (bounds.north - tile_bounds.south) * px_per_lat)

        start_tx = math.floor(pixel_left / OZF_TILE_SIZE)
        start_ty = math.floor(pixel_top / OZF_TILE_SIZE)
        end_tx = math.ceil(pixel_right / OZF_TILE_SIZE)
        end_ty = math.ceil(pixel_bottom / OZF_TILE_SIZE)

        table = self._tile_table(loaded)
        if table is None:
            logger.warning(f"No OZF tile table for {loaded.id}")
            return None

        region_width = (end_tx - start_tx) * OZF_TILE_SIZE
        region_height = (end_ty - start_ty) * OZF_TILE_SIZE
        if region_width <= 0 or region_height <= 0:
            return None
        region = Image.new('RGBA', (region_width, region_height), (255, 255, 255, 0))

        reader = OZFReader(loaded.ozf_path)
        pasted = 0
        for ty in range(start_ty, end_ty):
            for tx in range(start_tx, end_tx):
                raw = reader.extract_tile(tx, ty, table)
                if raw is None or len(raw) < OZF_TILE_BYTES:
                    continue
                gray = np.frombuffer(raw[:OZF_TILE_BYTES], dtype=np.uint8).reshape(OZF_TILE_SIZE, OZF_TILE_SIZE)
                rgb = np.repeat(gray[..., None], 3, axis=2)
                region.paste(RasterUtils.to_image(rgb),
                             ((tx - start_tx) * OZF_TILE_SIZE, (ty - start_ty) * OZF_TILE_SIZE))
                pasted += 1

        if pasted == 0:
            return None

        crop_left = math.floor(pixel_left) - start_tx * OZF_TILE_SIZE
        crop_top = math.floor(pixel_top) - start_ty * OZF_TILE_SIZE
        crop_width = min(math.floor(pixel_right - pixel_left), region_width - crop_left)
        crop_height = min(math.floor(pixel_bottom - pixel_top), region_height - crop_top)
        if crop_width <= 0 or crop_height <= 0:
            return None

        left = max(0, crop_left)
        top = max(0, crop_top)
        cropped = region.crop((left, top, left + crop_width, top + crop_height))
        return RasterUtils.encode_png(ImageOps.fit(cropped, (TILE_SIZE, TILE_SIZE)))

    # Raster synthesis

    def _tile_from_image(self, loaded: LoadedMap, image_path: str, z: int, x: int, y: int) -> Optional[bytes]:
        cal = loaded.calibration
        tile_bounds = TileCalculator.tile_to_lon_lat_bounds(x, y, z)
        if not tile_bounds.intersects(cal.bounds):
            return None

        width, height = cal.image_width, cal.image_height
        if not cal.has_image_size:
            width, height = RasterUtils.image_size(image_path)

        tl = calibration_service.geo_to_pixel(tile_bounds.north, tile_bounds.west, cal)
        tr = calibration_service.geo_to_pixel(tile_bounds.north, tile_bounds.east, cal)
        bl = calibration_service.geo_to_pixel(tile_bounds.south, tile_bounds.west, cal)
        br = calibration_service.geo_to_pixel(tile_bounds.south, tile_bounds.east, cal)
        xs = (tl[0], tr[0], bl[0], br[0])
        ys = (tl[1], tr[1], bl[1], br[1])

        src_left = max(0, math.floor(min(xs)) - 2)
        src_right = min(width, math.ceil(max(xs)) + 2)
        src_top = max(0, math.floor(min(ys)) - 2)
        src_bottom = min(height, math.ceil(max(ys)) + 2)
        if src_right - src_left <= 0 or src_bottom - src_top <= 0:
            return None

        tile_max = TILE_SIZE - 1
        c = tl[0] - src_left
        a = (tr[0] - src_left - c) / tile_max
        b = (bl[0] - src_left - c) / tile_max
        f = tl[1] - src_top
        d = (tr[1] - src_top - f) / tile_max
        e = (bl[1] - src_top - f) / tile_max

        src = RasterUtils.load_array(image_path, 'RGBA', box=(src_left, src_top, src_right, src_bottom))
        pixels = RasterUtils.affine_tile(src, AffineTransform(a, b, c, d, e, f))
        return RasterUtils.encode_png(RasterUtils.to_image(pixels))

    # Reprojected overlay

    def get_reprojected_path(self, map_id: str) -> str:
        return os.path.join(self.reprojected_dir, f"{map_id}.jpg")

    def has_reprojected_image(self, map_id: str) -> bool:
        return os.path.exists(self.get_reprojected_path(map_id))

    def reproject_image(self, map_id: str) -> Generator[ProgressEvent, None, Optional[ReprojectedImage]]:
        """Warp a map raster onto a regular lat/lon grid over its bounds"""
        loaded = self.registry.get(map_id)
        if loaded is None:
            return None
        cal = loaded.calibration
        bounds = cal.bounds

        output_path = self.get_reprojected_path(map_id)
        if os.path.exists(output_path):
            logger.info(f"Reprojected image already present: {output_path}")
            return ReprojectedImage(image_path=output_path, bounds=bounds)

        image_path = self.registry.get_image_path(map_id)
        if not image_path:
            logger.error(f"No source image to reproject for {map_id}")
            return None

        lat_range = bounds.north - bounds.south
        lon_range = bounds.east - bounds.west
        if lat_range <= 0 or lon_range <= 0:
            logger.error(f"Cannot reproject {map_id}: empty bounds {bounds.to_dict()}")
            return None

        try:
            yield ProgressEvent('Loading source image...', 5)
            src = RasterUtils.load_array(image_path, 'RGBA')
            src_height, src_width = src.shape[:2]
            if src_width == 0 or src_height == 0:
                logger.error(f"Invalid image size for {image_path}")
                return None

            yield ProgressEvent('Calculating target size...', 10)
            dst_width, dst_height = _reprojected_size(src_width, src_height, bounds)
            logger.info(f"Reprojecting {map_id}: {src_width}x{src_height} -> {dst_width}x{dst_height}")
            yield ProgressEvent(f"Reprojecting image ({dst_width}x{dst_height})...", 15)

            out = yield from self._warp(src, cal, dst_width, dst_height)

            yield ProgressEvent('Saving reprojected image...', 95)
            RasterUtils.save_jpeg(RasterUtils.to_image(out), output_path, quality=95)
        except (OSError, ValueError, CalibrationError) as e:
            logger.error(f"Reprojection of {map_id} from {image_path} failed: {e}")
            return None
        logger.info(f"Reprojected image saved: {output_path}")

        yield ProgressEvent('Done', 100)
        return ReprojectedImage(image_path=output_path, bounds=bounds)

    def _warp(self, src: np.ndarray, cal: MapCalibration, dst_width: int,
              dst_height: int) -> Generator[ProgressEvent, None, np.ndarray]:
        bounds = cal.bounds
        lat_range = bounds.north - bounds.south
        lon_range = bounds.east - bounds.west

        out = np.zeros((dst_height, dst_width, 4), dtype=np.uint8)
        u = np.arange(dst_width, dtype=np.float64) / max(dst_width - 1, 1)
        lon_row = bounds.west + u * lon_range
        utm = cal.utm_calibration
        last_percent = 15

        for start in range(0, dst_height, REPROJECT_ROW_BLOCK):
            stop = min(start + REPROJECT_ROW_BLOCK, dst_height)
            v = np.arange(start, stop, dtype=np.float64)[:, None] / max(dst_height - 1, 1)
            lat = np.broadcast_to(bounds.north - v * lat_range, (stop - start, dst_width))
            lon = np.broadcast_to(lon_row, lat.shape)

            if utm is not None:
                easting, northing = wgs84_to_utm_array(lat, lon, utm.zone, utm.southern)
                if utm.bilinear_points is not None:
                    src_x, src_y = bilinear_inverse(utm.bilinear_points, easting, northing)
                else:
                    t = utm.utm_to_pixel
                    src_x = t.a * easting + t.b * northing + t.c
                    src_y = t.d * easting + t.e * northing + t.f
            else:
                src_x, src_y = calibration_service.geo_to_pixel_array(lat, lon, cal)

            out[start:stop] = RasterUtils.bilinear_sample(src, np.asarray(src_x), np.asarray(src_y)).astype(np.uint8)

            percent = 15 + math.floor(stop / dst_height * 80)
            if percent > last_percent + 4:
                yield ProgressEvent(f"Reprojecting... {round(stop / dst_height * 100)}%", percent)
                last_percent = percent
        return out

    # Generated tile pyramid

    def generate_map_tiles(self, map_id: str) -> Generator[ProgressEvent, None, Optional[TileIndex]]:
        loaded = self.registry.get(map_id)
        if loaded is None:
            logger.error(f"generate_map_tiles: unknown map {map_id}")
            return None

        map_dir = self.registry.map_dir(map_id)
        if tile_generator_service.has_tiles(map_dir):
            logger.info(f"Tiles already generated for {map_id}")
            return tile_generator_service.load_tile_index(map_dir)

        image_path = self.registry.get_image_path(map_id)
        if not image_path:
            logger.error(f"generate_map_tiles: no image for {map_id}")
            return None
        if loaded.calibration.utm_calibration is None:
            logger.error(f"generate_map_tiles: no UTM calibration for {map_id}")
            return None

        return (yield from tile_generator_service.generate_tiles(image_path, loaded.calibration, map_dir))

    def has_map_tiles(self, map_id: str) -> bool:
        return tile_generator_service.has_tiles(self.registry.map_dir(map_id))

    def get_map_tile_index(self, map_id: str) -> Optional[TileIndex]:
        return tile_generator_service.load_tile_index(self.registry.map_dir(map_id))

    def get_generated_tile_data_url(self, map_id: str, tile_x: int, tile_y: int) -> Optional[str]:
        tile_path = tile_generator_service.get_tile_path(self.registry.map_dir(map_id), tile_x, tile_y)
        data = FileUtils.read_bytes(tile_path)
        if data is None:
            return None
        return f"data:image/jpeg;base64,{base64.b64encode(data).decode('ascii')}"

    # Pre-rendering

    def prepare_tiles(self, map_id: str, min_zoom: int = 10,
                      max_zoom: int = 14) -> Generator[ProgressEvent, None, bool]:
        """Render every tile covering the map for a zoom range onto disk"""
        loaded = self.registry.get(map_id)
        if loaded is None:
            return False
        if not loaded.ozf_path and not self.registry.get_image_path(map_id):
            logger.error(f"prepare_tiles: no source for {map_id}")
            return False

        tiles = list(TileCalculator.iter_tiles_for_bounds(loaded.calibration.bounds, min_zoom, max_zoom))
        total = len(tiles)
        logger.info(f"Preparing {total} tiles for {map_id}, zoom {min_zoom}-{max_zoom}")
        yield ProgressEvent('Preparing tiles...', 0, 0, total)

        done = 0
        for z, x, y in tiles:
            if not os.path.exists(self._disk_path(map_id, z, x, y)):
                data = self._synthesize(loaded, z, x, y)
                if data is not None:
                    self._store(map_id, z, x, y, data)
            done += 1
            if done % 20 == 0:
                yield ProgressEvent('Preparing tiles...', done / total * 100, done, total)

        yield ProgressEvent('Done', 100, total, total)
        return True

    def are_tiles_cached(self, map_id: str) -> bool:
        cache_dir = os.path.join(self.tile_cache_dir, map_id)
        count = 0
        for _, _, files in os.walk(cache_dir):
            count += len(files)
            if count > 5:
                return True
        return False

    # Viewer helpers

    def get_map_tile_info(self, map_id: str, base_url: str) -> Optional[Dict[str, Any]]:
        loaded = self.registry.get(map_id)
        if loaded is None:
            return None
        cal = loaded.calibration
        max_dim = max(cal.image_width, cal.image_height)
        max_zoom = math.ceil(math.log2(max_dim / TILE_SIZE)) if max_dim > 0 else 0

        image_path = self.registry.get_image_path(map_id)
        ext = os.path.splitext(image_path)[1].lower() if image_path else ''
        return {
            'tileUrl': f"{base_url}/tile/{map_id}/{{z}}/{{x}}/{{y}}.png",
            'imageUrl': f"{base_url}/image/{map_id}{ext}",
            'bounds': cal.bounds.to_dict(),
            'minZoom': 0,
            'maxZoom': max(0, max_zoom),
            'tileSize': TILE_SIZE,
            'imageWidth': cal.image_width,
            'imageHeight': cal.image_height,
        }

    def get_image_data_url(self, map_id: str) -> Optional[str]:
        image_path = self.registry.get_image_path(map_id)
        if not image_path:
            return None
        ext = os.path.splitext(image_path)[1].lower()
        if ext in ('.tif', '.tiff'):
            raise MapFormatError(f"TIFF image for {map_id} must be re-imported as JPEG")
        with open(image_path, 'rb') as f:
            data = f.read()
        mime = IMAGE_MIME_TYPES.get(ext, 'image/jpeg')
        return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def _reprojected_size(src_width: int, src_height: int, bounds: Bounds) -> Tuple[int, int]:
    """Output size keeping the longer source side, capped at MAX_REPROJECTED_SIDE"""
    lat_range = bounds.north - bounds.south
    lon_range = bounds.east - bounds.west
    aspect = lon_range / lat_range * math.cos(math.radians((bounds.north + bounds.south) / 2))

    if src_width >= src_height:
        dst_width = min(src_width, MAX_REPROJECTED_SIDE)
        dst_height = round(dst_width / aspect)
    else:
        dst_height = min(src_height, MAX_REPROJECTED_SIDE)
        dst_width = round(dst_height * aspect)
    if dst_width > MAX_REPROJECTED_SIDE:
        dst_width = MAX_REPROJECTED_SIDE
        dst_height = round(MAX_REPROJECTED_SIDE / aspect)
    if dst_height > MAX_REPROJECTED_SIDE:
        dst_height = MAX_REPROJECTED_SIDE
        dst_width = round(MAX_REPROJECTED_SIDE * aspect)
    return max(1, dst_width), max(1, dst_height)
