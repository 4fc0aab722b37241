from abc import ABC, abstractmethod
from typing import Dict, Any, Optional


class ITileDownloader(ABC):
    """Interface for single-tile download implementations"""

    @abstractmethod
    def fetch_and_cache_tile(self, url: str, provider: str, zoom: int, x: int, y: int) -> Optional[bytes]:
        """Return tile bytes from cache or network, None on failure"""
        pass


class IConfigLoader(ABC):
    """Interface for configuration loading"""

    @abstractmethod
    def load_config(self, config_path: str) -> Dict[str, Any]:
        """Load configuration from file"""
        pass

    @abstractmethod
    def validate_config(self, config: Dict[str, Any]) -> bool:
        """Validate configuration"""
        pass
