import os
from dataclasses import dataclass, field
from typing import Dict, Any, List

from models.tile_provider import TileProvider


DEFAULT_USER_AGENT = 'MapTileEngine/1.0 (offline map tile cache)'


@dataclass
class EngineConfig:
    """Resolved engine settings"""
    data_dir: str = './data'
    maps_dir: str = ''
    map_tile_cache_dir: str = ''
    reprojected_dir: str = ''
    provider_cache_dir: str = ''
    regions_dir: str = ''
    merged_dir: str = ''
    server_host: str = '127.0.0.1'
    server_port: int = 0
    max_ram_tiles: int = 500
    worker_threads: int = 4
    concurrent_downloads: int = 6
    chunk_delay_ms: int = 200
    retry_delay_ms: int = 2000
    region_delay_ms: int = 500
    request_timeout: float = 10.0
    max_redirects: int = 5
    user_agent: str = DEFAULT_USER_AGENT
    providers: List[TileProvider] = field(default_factory=list)
    logging: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        # Unset directories live under data_dir
        defaults = {
            'maps_dir': 'maps',
            'map_tile_cache_dir': 'map-tile-cache',
            'reprojected_dir': 'reprojected',
            'provider_cache_dir': 'tile-cache',
            'regions_dir': 'regions',
            'merged_dir': 'reprojected-competition',
        }
        for attr, sub in defaults.items():
            if not getattr(self, attr):
                setattr(self, attr, os.path.join(self.data_dir, sub))

    def get_provider(self, name: str) -> TileProvider:
        for provider in self.providers:
            if provider.name == name:
                return provider
        raise KeyError(name)
