import json
import logging
import os
import shutil
import threading
from typing import Any, Dict, Generator, List, Optional, Sequence

from PIL import Image

from adapters.ozf_reader import OZFReader, map_id_for_path
from adapters.ozi_map_file import OziMapFileReader, OziMapFileWriter, find_map_file
from core.lru_cache import TileMemoryCache
from exceptions.tile_engine_exceptions import MapFormatError
from models.calibration import CalibrationPoint
from models.geo import GeoPoint
from models.map_info import LoadedMap, MapInfo
from models.progress import ProgressEvent
from services import calibration_service, tile_generator_service
from utils.file_utils import FileUtils
from utils.geo_transform import fit_affine
from utils.raster_utils import RasterUtils

logger = logging.getLogger(__name__)

INDEX_FILE = 'index.json'
IMAGE_EXTENSIONS = ('.jpg', '.jpeg', '.png', '.bmp', '.tif', '.tiff')
SIBLING_IMAGE_EXTENSIONS = ('.png', '.jpg', '.jpeg', '.bmp', '.tif', '.tiff')
TIFF_EXTENSIONS = ('.tif', '.tiff')
OZF_SUFFIXES = ('.ozfx3', '.ozf2', '.ozf3', '.ozfx', '.ozf')


def _strip_ozf_suffix(file_name: str) -> str:
    lower = file_name.lower()
    for suffix in OZF_SUFFIXES:
        if lower.endswith(suffix):
            return file_name[:-len(suffix)]
    return file_name


class MapRegistryService:
    """Registry of imported calibrated maps, persisted in {maps_dir}/index.json"""

    def __init__(self, maps_dir: str, tile_cache_dir: str, reprojected_dir: str,
                 memory_cache: Optional[TileMemoryCache] = None):
        self.maps_dir = maps_dir
        self.tile_cache_dir = tile_cache_dir
        self.reprojected_dir = reprojected_dir
        self.memory_cache = memory_cache
        self._maps: Dict[str, LoadedMap] = {}
        self._lock = threading.RLock()
        FileUtils.ensure_directory_exists(self.maps_dir)
        self.load_index()

    # Persistence

    def load_index(self) -> None:
        index_path = os.path.join(self.maps_dir, INDEX_FILE)
        if not os.path.exists(index_path):
            return
        try:
            with open(index_path, 'r', encoding='utf-8') as f:
                entries = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading map index {index_path}: {e}")
            return

        for entry in entries:
            map_path = entry.get('mapPath')
            if not map_path or not os.path.exists(map_path):
                logger.warning(f"Skipping map {entry.get('id')}: calibration file missing")
                continue
            try:
                image_size = None
                ozf_path = entry.get('ozfPath') or ''
                if ozf_path:
                    header = OZFReader(ozf_path).read_header()
                    if header is not None:
                        image_size = (header.width, header.height)
                calibration = OziMapFileReader.parse(map_path, image_size)
            except MapFormatError as e:
                logger.error(f"Error loading map {entry.get('name')}: {e}")
                continue

            self._maps[entry['id']] = LoadedMap(
                id=entry['id'],
                name=entry.get('name') or calibration.title,
                calibration=calibration,
                ozf_path=ozf_path,
                map_path=map_path,
            )
        logger.info(f"Loaded {len(self._maps)} maps from {index_path}")

    def save_index(self) -> None:
        index_path = os.path.join(self.maps_dir, INDEX_FILE)
        with self._lock:
            entries = [m.to_index_entry() for m in self._maps.values()]
        data = json.dumps(entries, indent=2).encode('utf-8')
        FileUtils.write_bytes_atomic(index_path, data)

    # Import

    def map_dir(self, map_id: str) -> str:
        return os.path.join(self.maps_dir, map_id)

    def add_ozf_map(self, ozf_path: str) -> MapInfo:
        """Register an OZF raster with its sibling .map file"""
        header = OZFReader(ozf_path).read_header()
        if header is None:
            raise MapFormatError(f"Cannot read OZF header: {ozf_path}")
        map_path = find_map_file(ozf_path)
        if map_path is None:
            raise MapFormatError(f"No .map calibration file next to {ozf_path}")

        calibration = OziMapFileReader.parse(map_path, image_size=(header.width, header.height))
        map_id = map_id_for_path(ozf_path)
        target_dir = self.map_dir(map_id)
        FileUtils.ensure_directory_exists(target_dir)

        new_ozf_path = os.path.join(target_dir, os.path.basename(ozf_path))
        shutil.copyfile(ozf_path, new_ozf_path)
        new_map_path = os.path.join(target_dir, os.path.basename(map_path))
        shutil.copyfile(map_path, new_map_path)
        self._copy_sibling_image(ozf_path, target_dir)

        base_name = os.path.splitext(os.path.basename(ozf_path))[0]
        loaded = LoadedMap(id=map_id, name=calibration.title or base_name, calibration=calibration,
                           ozf_path=new_ozf_path, map_path=new_map_path)
        with self._lock:
            self._maps[map_id] = loaded
        self.save_index()
        logger.info(f"Added OZF map {loaded.name} ({map_id}), {header.width}x{header.height} px")
        return self._to_map_info(loaded)

    def _copy_sibling_image(self, ozf_path: str, target_dir: str) -> str:
        """Copy a raster lying next to the OZF as map.<ext>; TIFF becomes PNG"""
        directory = os.path.dirname(ozf_path)
        base_name = _strip_ozf_suffix(os.path.basename(ozf_path))

        for ext in SIBLING_IMAGE_EXTENSIONS:
            candidates = (base_name + ext, base_name + ext.upper(),
                          base_name.lower() + ext, base_name.upper() + ext.upper())
            for candidate in candidates:
                source = os.path.join(directory, candidate)
                if not os.path.exists(source):
                    continue
                if ext in TIFF_EXTENSIONS:
                    dest = os.path.join(target_dir, 'map.png')
                    try:
                        with Image.open(source) as img:
                            img.save(dest, format='PNG')
                        logger.info(f"Converted TIFF {source} -> {dest}")
                        return dest
                    except OSError as e:
                        logger.error(f"TIFF conversion failed for {source}, copying as is: {e}")
                dest = os.path.join(target_dir, 'map' + ext)
                shutil.copyfile(source, dest)
                return dest

        logger.info(f"No raster image next to {ozf_path}; tiles will be read from the OZF")
        return ''

    def import_map_with_image(self, map_path: str, image_path: str
                              ) -> Generator[ProgressEvent, None, Optional[MapInfo]]:
        """Register a .map file together with its raster image; None when either cannot be read"""
        map_id = map_id_for_path(map_path)
        known = self.get(map_id) is not None
        try:
            return (yield from self._import_map_with_image(map_id, map_path, image_path))
        except (OSError, MapFormatError) as e:
            logger.error(f"Import of {map_path} with image {image_path} failed: {e}")
            if not known:
                shutil.rmtree(self.map_dir(map_id), ignore_errors=True)
            yield ProgressEvent(f"Import failed: {e}", 0)
            return None

    def _import_map_with_image(self, map_id: str, map_path: str, image_path: str
                               ) -> Generator[ProgressEvent, None, MapInfo]:
        yield ProgressEvent('Reading calibration...', 5)
        if not os.path.isfile(image_path):
            raise FileNotFoundError(f"Image not found: {image_path}")
        calibration = OziMapFileReader.parse(map_path)
        if not calibration.has_image_size:
            try:
                calibration = OziMapFileReader.parse(map_path, image_size=RasterUtils.image_size(image_path))
            except OSError as e:
                logger.error(f"Cannot read image size of {image_path}: {e}")

        target_dir = self.map_dir(map_id)
        FileUtils.ensure_directory_exists(target_dir)

        yield ProgressEvent('Copying calibration file...', 10)
        new_map_path = os.path.join(target_dir, os.path.basename(map_path))
        shutil.copyfile(map_path, new_map_path)

        ext = os.path.splitext(image_path)[1].lower()
        if ext in TIFF_EXTENSIONS:
            yield ProgressEvent('Converting TIFF to JPEG...', 20)
            new_image_path = os.path.join(target_dir, 'map.jpg')
            try:
                with Image.open(image_path) as img:
                    img.convert('RGB').save(new_image_path, format='JPEG', quality=92, subsampling=0)
            except OSError as e:
                logger.error(f"TIFF conversion failed for {image_path}, copying as is: {e}")
                yield ProgressEvent('Copying TIFF...', 85)
                new_image_path = os.path.join(target_dir, 'map.tif')
                shutil.copyfile(image_path, new_image_path)
        else:
            yield ProgressEvent('Copying image...', 50)
            new_image_path = os.path.join(target_dir, 'map' + ext)
            shutil.copyfile(image_path, new_image_path)
        yield ProgressEvent('Image stored', 90)

        yield ProgressEvent('Saving map index...', 95)
        name = calibration.title or os.path.splitext(os.path.basename(map_path))[0]
        loaded = LoadedMap(id=map_id, name=name, calibration=calibration, map_path=new_map_path)
        with self._lock:
            self._maps[map_id] = loaded
        self.save_index()
        logger.info(f"Imported map {name} ({map_id}) with image {new_image_path}")

        yield ProgressEvent('Done', 100)
        return self._to_map_info(loaded)

    # Queries

    def get(self, map_id: str) -> Optional[LoadedMap]:
        with self._lock:
            return self._maps.get(map_id)

    def _to_map_info(self, loaded: LoadedMap) -> MapInfo:
        cal = loaded.calibration
        return MapInfo(
            id=loaded.id,
            name=loaded.name,
            filename=os.path.basename(loaded.ozf_path or loaded.map_path),
            bounds=cal.bounds,
            image_width=cal.image_width,
            image_height=cal.image_height,
            image_path=self.get_image_path(loaded.id),
            corner_points=cal.corner_points,
            has_tiles=tile_generator_service.has_tiles(self.map_dir(loaded.id)),
            utm_zone=cal.utm_calibration.zone if cal.utm_calibration else None,
        )

    def get_map_list(self) -> List[MapInfo]:
        with self._lock:
            maps = list(self._maps.values())
        return [self._to_map_info(m) for m in maps]

    def get_map_by_id(self, map_id: str) -> Optional[MapInfo]:
        loaded = self.get(map_id)
        return self._to_map_info(loaded) if loaded else None

    def get_image_path(self, map_id: str) -> str:
        """Stored raster of a map, converted formats preferred over TIFF; '' when absent"""
        target_dir = self.map_dir(map_id)
        for ext in IMAGE_EXTENSIONS:
            image_path = os.path.join(target_dir, 'map' + ext)
            if os.path.exists(image_path):
                return image_path
        return ''

    def covers_area(self, map_id: str, lat: float, lon: float) -> bool:
        loaded = self.get(map_id)
        return loaded is not None and loaded.calibration.bounds.contains(lat, lon)

    def find_maps_for_location(self, lat: float, lon: float) -> List[MapInfo]:
        return [m for m in self.get_map_list() if m.bounds.contains(lat, lon)]

    # Coordinates

    def pixel_to_geo(self, map_id: str, x: float, y: float) -> Optional[GeoPoint]:
        loaded = self.get(map_id)
        if loaded is None:
            return None
        return calibration_service.pixel_to_geo(x, y, loaded.calibration)

    def geo_to_pixel(self, map_id: str, lat: float, lon: float) -> Optional[Dict[str, float]]:
        loaded = self.get(map_id)
        if loaded is None:
            return None
        x, y = calibration_service.geo_to_pixel(lat, lon, loaded.calibration)
        return {'x': x, 'y': y}

    def geo_to_display_coord(self, map_id: str, lat: float, lon: float) -> Optional[GeoPoint]:
        """Position of a WGS84 point on the map image laid linearly over its bounds"""
        loaded = self.get(map_id)
        if loaded is None:
            return None
        cal = loaded.calibration
        if not cal.has_image_size:
            return None
        x, y = calibration_service.geo_to_pixel(lat, lon, cal)
        u = x / cal.image_width
        v = y / cal.image_height
        bounds = cal.bounds
        return GeoPoint(lat=bounds.north - v * (bounds.north - bounds.south),
                        lon=bounds.west + u * (bounds.east - bounds.west))

    def get_utm_calibration(self, map_id: str) -> Optional[Dict[str, Any]]:
        loaded = self.get(map_id)
        if loaded is None or loaded.calibration.utm_calibration is None:
            return None
        cal = loaded.calibration
        return {
            'imageWidth': cal.image_width,
            'imageHeight': cal.image_height,
            'bounds': cal.bounds.to_dict(),
            'utmZone': cal.utm_calibration.zone,
            'utmToPixel': cal.utm_calibration.utm_to_pixel.to_dict(),
        }

    # Mutation

    def invalidate_rendered(self, map_id: str) -> None:
        """Drop synthesized tiles (disk and RAM) and the reprojected image"""
        FileUtils.remove_path(os.path.join(self.tile_cache_dir, map_id))
        FileUtils.remove_path(os.path.join(self.reprojected_dir, f"{map_id}.jpg"))
        if self.memory_cache is not None:
            evicted = self.memory_cache.evict_prefix(f"{map_id}-")
            logger.debug(f"Evicted {evicted} RAM tiles of {map_id}")

    def remove_map(self, map_id: str) -> bool:
        with self._lock:
            if self._maps.pop(map_id, None) is None:
                return False
        FileUtils.remove_path(self.map_dir(map_id))
        self.invalidate_rendered(map_id)
        self.save_index()
        logger.info(f"Removed map {map_id}")
        return True

    def update_calibration(self, map_id: str, points: Sequence[CalibrationPoint]) -> bool:
        """Replace a map's calibration points and rewrite its .map file.

        Needs at least 3 points whose affine fit is non-singular; otherwise
        nothing changes. The UTM grid calibration no longer matches the new
        points and is discarded.
        """
        loaded = self.get(map_id)
        if loaded is None:
            logger.error(f"update_calibration: unknown map {map_id}")
            return False

        points = list(points)
        if len(points) < 3:
            logger.error(f"update_calibration: {len(points)} points given, at least 3 required")
            return False
        transform = fit_affine([(p.pixel_x, p.pixel_y, p.longitude, p.latitude) for p in points],
                               fallback=False)
        if transform is None or transform.inverse() is None:
            logger.error(f"update_calibration: points for {map_id} are collinear")
            return False

        cal = loaded.calibration
        with self._lock:
            cal.calibration_points = points
            cal.utm_calibration = None
            corners = calibration_service.compute_corner_points(cal)
            cal.corner_points = corners
            cal.bounds = calibration_service.bounds_from_corners(corners)

            if not loaded.map_path:
                loaded.map_path = os.path.join(self.map_dir(map_id), 'calibration.map')
        logger.info(f"New bounds for {map_id}: {cal.bounds.to_dict()}")

        image_name = os.path.basename(self.get_image_path(map_id)) or cal.image_path or 'map.png'
        try:
            FileUtils.ensure_directory_exists(os.path.dirname(loaded.map_path))
            OziMapFileWriter.write(loaded.map_path, cal, loaded.name, image_name)
        except OSError as e:
            logger.error(f"Cannot write calibration file {loaded.map_path}: {e}")

        self.save_index()
        self.invalidate_rendered(map_id)
        return True
