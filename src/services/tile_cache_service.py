import base64
import binascii
import logging
import os
import re
import shutil
from typing import Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from interfaces.services import ITileDownloader
from interfaces.tile_source import ITileStore
from models.engine_config import DEFAULT_USER_AGENT
from models.progress import CacheStats
from utils.file_utils import FileUtils

logger = logging.getLogger(__name__)

ESTIMATED_TILE_BYTES = 15 * 1024

# Old provider folder -> current name
PROVIDER_MIGRATIONS: Dict[str, str] = {
    'osm': 'openstreetmap',
}


def sanitize_provider(provider: str) -> str:
    """Provider name or URL -> safe folder name"""
    name = re.sub(r'^https?://', '', provider)
    name = re.sub(r'[^a-zA-Z0-9]', '_', name)
    return name[:50]


def create_session(user_agent: str = DEFAULT_USER_AGENT, max_redirects: int = 5,
                   pool_size: int = 20) -> requests.Session:
    """Create a pooled session that makes one attempt per tile.

    Failed tiles are retried by the bulk download pass, so the adapter does
    not retry on its own. Redirects are followed by requests up to
    ``max_redirects``.
    """
    session = requests.Session()

    retry_strategy = Retry(total=0, allowed_methods=["GET"])

    adapter = HTTPAdapter(
        max_retries=retry_strategy,
        pool_connections=pool_size,
        pool_maxsize=pool_size
    )

    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.max_redirects = max_redirects
    session.headers.update({
        'User-Agent': user_agent,
        'Accept': 'image/png,image/*',
    })
    return session


class TileCacheService(ITileStore, ITileDownloader):
    """Disk cache of online provider tiles at {cache_dir}/{provider}/{z}/{x}/{y}.png"""

    def __init__(self, cache_dir: str, user_agent: str = DEFAULT_USER_AGENT,
                 timeout: float = 10.0, max_redirects: int = 5,
                 session: Optional[requests.Session] = None):
        self.cache_dir = cache_dir
        self.user_agent = user_agent
        self.timeout = timeout
        self.max_redirects = max_redirects
        self._session = session
        FileUtils.ensure_directory_exists(self.cache_dir)
        self.migrate_provider_names()

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = create_session(self.user_agent, self.max_redirects)
        return self._session

    def migrate_provider_names(self) -> None:
        """Rename legacy provider folders so their tiles stay reachable"""
        for old_name, new_name in PROVIDER_MIGRATIONS.items():
            old_dir = os.path.join(self.cache_dir, old_name)
            new_dir = os.path.join(self.cache_dir, new_name)
            if os.path.isdir(old_dir) and not os.path.exists(new_dir):
                try:
                    os.rename(old_dir, new_dir)
                    logger.info(f"Migrated tile cache folder {old_name} -> {new_name}")
                except OSError as e:
                    logger.error(f"Tile cache migration {old_name} -> {new_name} failed: {e}")

    def get_tile_path(self, provider: str, zoom: int, x: int, y: int) -> str:
        return FileUtils.get_tile_path(os.path.join(self.cache_dir, sanitize_provider(provider)), zoom, x, y)

    def has_tile(self, provider: str, zoom: int, x: int, y: int) -> bool:
        return os.path.exists(self.get_tile_path(provider, zoom, x, y))

    def get_tile(self, provider: str, zoom: int, x: int, y: int) -> Optional[bytes]:
        """Cached bytes; corrupt files are deleted and reported as a miss"""
        tile_path = self.get_tile_path(provider, zoom, x, y)
        try:
            data = FileUtils.read_bytes(tile_path)
        except OSError as e:
            logger.error(f"Error reading cached tile {tile_path}: {e}")
            return None
        if data is None:
            return None

        if not FileUtils.is_valid_tile_data(data):
            logger.warning(f"Discarding invalid cached tile {provider} {zoom}/{x}/{y}")
            try:
                os.remove(tile_path)
            except OSError as e:
                logger.error(f"Cannot delete invalid tile {tile_path}: {e}")
            return None
        return data

    def get_tile_data_url(self, provider: str, zoom: int, x: int, y: int) -> Optional[str]:
        data = self.get_tile(provider, zoom, x, y)
        if data is None:
            return None
        return to_data_url(data)

    def save_tile(self, provider: str, zoom: int, x: int, y: int, data: bytes) -> bool:
        """Store a PNG or JPEG tile; anything else is rejected"""
        if not FileUtils.is_valid_tile_data(data):
            logger.warning(f"Refusing to cache non-image tile {provider} {zoom}/{x}/{y}")
            return False
        tile_path = self.get_tile_path(provider, zoom, x, y)
        try:
            FileUtils.write_bytes_atomic(tile_path, data)
            return True
        except OSError as e:
            logger.error(f"Error saving tile {provider} {zoom}/{x}/{y}: {e}")
            return False

    def save_tile_base64(self, provider: str, zoom: int, x: int, y: int, data: str) -> bool:
        try:
            raw = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as e:
            logger.error(f"Invalid base64 tile {provider} {zoom}/{x}/{y}: {e}")
            return False
        return self.save_tile(provider, zoom, x, y, raw)

    def fetch_and_cache_tile(self, url: str, provider: str, zoom: int, x: int, y: int) -> Optional[bytes]:
        """Return the tile from cache or download it; None on any failure"""
        cached = self.get_tile(provider, zoom, x, y)
        if cached is not None:
            return cached

        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            logger.debug(f"Tile request failed {url}: {e}")
            return None

        if response.status_code != 200:
            logger.debug(f"Tile request {url} returned HTTP {response.status_code}")
            return None

        content = response.content
        if not FileUtils.is_valid_tile_data(content):
            logger.debug(f"Rejected non-image payload for {url} ({len(content or b'')} bytes)")
            return None

        self.save_tile(provider, zoom, x, y, content)
        return content

    def get_stats(self) -> CacheStats:
        stats = CacheStats()
        if not os.path.isdir(self.cache_dir):
            return stats

        for entry in sorted(os.listdir(self.cache_dir)):
            provider_dir = os.path.join(self.cache_dir, entry)
            if not os.path.isdir(provider_dir):
                continue
            count, size = FileUtils.get_directory_stats(provider_dir)
            stats.total_tiles += count
            stats.total_size += size
            if count:
                stats.providers[entry] = count
        return stats

    def clear_cache(self, provider: Optional[str] = None) -> bool:
        try:
            if provider:
                provider_dir = os.path.join(self.cache_dir, sanitize_provider(provider))
                if os.path.isdir(provider_dir):
                    shutil.rmtree(provider_dir)
            elif os.path.isdir(self.cache_dir):
                shutil.rmtree(self.cache_dir)
                FileUtils.ensure_directory_exists(self.cache_dir)
            return True
        except OSError as e:
            logger.error(f"Error clearing cache: {e}")
            return False

    def get_cache_directory(self) -> str:
        return self.cache_dir

    @staticmethod
    def estimate_download_size(tile_count: int) -> int:
        return tile_count * ESTIMATED_TILE_BYTES


def to_data_url(data: bytes) -> str:
    mime = FileUtils.detect_image_mime(data)
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"
