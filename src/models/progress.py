from dataclasses import dataclass, field, replace
from typing import Dict, Optional

from models.geo import Bounds, UTMBounds


@dataclass
class ProgressEvent:
    """Generic progress step: message plus percent complete"""
    message: str
    percent: float
    done: int = 0
    total: int = 0


@dataclass
class DownloadProgress:
    total: int
    downloaded: int = 0
    cached: int = 0
    failed: int = 0
    current_tile: str = ''

    @property
    def done(self) -> int:
        return self.downloaded + self.cached + self.failed

    def snapshot(self) -> 'DownloadProgress':
        return replace(self)


@dataclass
class BoundsDownloadResult:
    success: bool = True
    tiles_downloaded: int = 0
    tiles_cached: int = 0
    tiles_failed: int = 0
    total_size: int = 0


@dataclass
class MBTilesImportProgress:
    total: int = 0
    imported: int = 0
    skipped: int = 0
    failed: int = 0
    current_tile: str = ''
    phase: str = 'reading'  # reading | importing | done

    @property
    def done(self) -> int:
        return self.imported + self.skipped + self.failed

    def snapshot(self) -> 'MBTilesImportProgress':
        return replace(self)


@dataclass
class MBTilesImportResult:
    success: bool = False
    tiles_imported: int = 0
    tiles_skipped: int = 0
    tiles_failed: int = 0
    total_size: int = 0
    bounds: Optional[Bounds] = None
    min_zoom: int = 99
    max_zoom: int = 0
    name: str = ''


@dataclass
class ReprojectedImage:
    image_path: str
    bounds: Bounds


@dataclass
class MergedImage:
    image_path: str
    bounds: Bounds
    utm_bounds: UTMBounds


@dataclass
class RegionDownloadResult:
    success: bool
    output_path: Optional[str] = None
    error: Optional[str] = None


@dataclass
class CacheStats:
    total_tiles: int = 0
    total_size: int = 0
    providers: Dict[str, int] = field(default_factory=dict)
