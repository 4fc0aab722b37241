from abc import ABC, abstractmethod
from typing import Dict, Iterator, Optional, Tuple


class ITileStore(ABC):
    """Interface for provider-keyed z/x/y tile storage"""

    @abstractmethod
    def has_tile(self, provider: str, zoom: int, x: int, y: int) -> bool:
        """Check if a valid tile is stored"""
        pass

    @abstractmethod
    def get_tile(self, provider: str, zoom: int, x: int, y: int) -> Optional[bytes]:
        """Get stored tile bytes, None on miss"""
        pass

    @abstractmethod
    def save_tile(self, provider: str, zoom: int, x: int, y: int, data: bytes) -> bool:
        """Store tile bytes, False when rejected"""
        pass


class ITileExtractor(ABC):
    """Interface for tile extraction from local archives"""

    @abstractmethod
    def get_metadata(self) -> Dict[str, str]:
        """Get archive metadata"""
        pass

    @abstractmethod
    def get_tile_count(self) -> int:
        """Number of tiles in the archive"""
        pass

    @abstractmethod
    def iter_tiles(self) -> Iterator[Tuple[int, int, int, bytes]]:
        """Yield (zoom, column, row, data) in storage order"""
        pass

    @abstractmethod
    def validate_source(self) -> bool:
        """Validate if source file exists and is readable"""
        pass
