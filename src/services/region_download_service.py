import json
import logging
import os
import re
from datetime import datetime
from typing import Any, Dict, Generator, List, Optional

import requests

from core.cancellation import CancellationToken, is_cancelled, sleep_unless_cancelled
from models.geo import Bounds
from models.progress import DownloadProgress, RegionDownloadResult
from models.tile_provider import TileProvider
from utils.file_utils import FileUtils
from utils.tile_calculator import TileCalculator

logger = logging.getLogger(__name__)

METADATA_FILE = 'metadata.json'


def region_slug(name: str) -> str:
    return re.sub(r'[^a-z0-9]', '-', name.lower())


class RegionDownloadService:
    """Exports a bounding box as a standalone z/x/y tile folder with metadata"""

    def __init__(self, regions_dir: str, session: requests.Session, timeout: float = 10.0,
                 delay_ms: int = 500):
        self.regions_dir = regions_dir
        self.session = session
        self.timeout = timeout
        self.delay = delay_ms / 1000.0

    def region_folder(self, name: str, min_zoom: int, max_zoom: int) -> str:
        return os.path.join(self.regions_dir, f"{region_slug(name)}-z{min_zoom}-{max_zoom}")

    def download_region(self, name: str, bounds: Bounds, min_zoom: int, max_zoom: int,
                        provider: TileProvider, token: Optional[CancellationToken] = None
                        ) -> Generator[DownloadProgress, None, RegionDownloadResult]:
        folder = self.region_folder(name, min_zoom, max_zoom)
        if os.path.exists(folder):
            logger.info(f"Replacing existing region folder {folder}")
            FileUtils.remove_path(folder)
        FileUtils.ensure_directory_exists(folder)

        tiles = list(TileCalculator.iter_tiles_for_bounds(bounds, min_zoom, max_zoom))
        self._write_metadata(folder, {
            'name': name,
            'bounds': bounds.to_dict(),
            'minZoom': min_zoom,
            'maxZoom': max_zoom,
            'tileCount': len(tiles),
            'downloadedAt': datetime.now().isoformat(),
            'provider': provider.get_name(),
        })
        logger.info(f"Region {name!r}: {len(tiles)} tiles from {provider.get_name()} into {folder}")

        progress = DownloadProgress(total=len(tiles))
        for i, (zoom, x, y) in enumerate(tiles):
            if is_cancelled(token):
                logger.info(f"Region {name!r} cancelled after {progress.done} tiles")
                return RegionDownloadResult(success=False, output_path=folder, error='Download cancelled')

            progress.current_tile = f"z{zoom}/x{x}/y{y}"
            tile_path = FileUtils.get_tile_path(folder, zoom, x, y)
            if FileUtils.file_exists(tile_path):
                progress.cached += 1
            elif self._download_tile(provider, zoom, x, y, tile_path):
                progress.downloaded += 1
                sleep_unless_cancelled(token, self.delay)
            else:
                progress.failed += 1

            if i % 10 == 0 or i == len(tiles) - 1:
                yield progress.snapshot()

        logger.info(f"Region {name!r} finished: {progress.downloaded} downloaded, "
                    f"{progress.cached} cached, {progress.failed} failed")
        return RegionDownloadResult(success=True, output_path=folder)

    def _download_tile(self, provider: TileProvider, zoom: int, x: int, y: int, tile_path: str) -> bool:
        url = provider.get_tile_url(zoom, x, y)
        try:
            response = self.session.get(url, headers=provider.get_headers(), timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"Region tile {zoom}/{x}/{y} failed: {e}")
            return False

        if response.status_code != 200 or not FileUtils.is_valid_tile_data(response.content):
            logger.warning(f"Region tile {zoom}/{x}/{y} rejected (HTTP {response.status_code})")
            return False

        try:
            FileUtils.write_bytes_atomic(tile_path, response.content)
        except OSError as e:
            logger.error(f"Cannot write region tile {tile_path}: {e}")
            return False
        return True

    @staticmethod
    def _write_metadata(folder: str, metadata: Dict[str, Any]) -> None:
        with open(os.path.join(folder, METADATA_FILE), 'w', encoding='utf-8') as f:
            json.dump(metadata, f, indent=2, ensure_ascii=False)

    def list_downloaded_regions(self) -> List[Dict[str, Any]]:
        """Name, path, size in bytes and creation time of each exported region"""
        regions = []
        if not os.path.isdir(self.regions_dir):
            return regions

        for entry in sorted(os.listdir(self.regions_dir)):
            folder = os.path.join(self.regions_dir, entry)
            if not os.path.isdir(folder):
                continue
            metadata = {}
            metadata_path = os.path.join(folder, METADATA_FILE)
            if os.path.isfile(metadata_path):
                try:
                    with open(metadata_path, 'r', encoding='utf-8') as f:
                        metadata = json.load(f)
                except (OSError, json.JSONDecodeError) as e:
                    logger.warning(f"Unreadable region metadata {metadata_path}: {e}")

            _count, size = FileUtils.get_directory_stats(folder)
            created = metadata.get('downloadedAt') or \
                datetime.fromtimestamp(os.path.getmtime(folder)).isoformat()
            regions.append({
                'name': metadata.get('name', entry),
                'path': folder,
                'size': size,
                'created': created,
            })
        return regions
