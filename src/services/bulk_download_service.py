import itertools
import logging
from concurrent.futures import Executor, ThreadPoolExecutor, as_completed
from typing import Generator, Iterator, List, Optional, Sequence, Tuple

from core.cancellation import CancellationToken, is_cancelled, sleep_unless_cancelled
from models.geo import GeoPoint
from models.progress import BoundsDownloadResult, DownloadProgress
from models.tile_provider import build_tile_url
from services.tile_cache_service import ESTIMATED_TILE_BYTES, TileCacheService
from utils.tile_calculator import TileCalculator

logger = logging.getLogger(__name__)

Tile = Tuple[int, int, int]

SUBDOMAINS = ('a', 'b', 'c')


def _chunks(tiles: Sequence[Tile], size: int) -> Iterator[Sequence[Tile]]:
    for i in range(0, len(tiles), size):
        yield tiles[i:i + size]


class BulkDownloadService:
    """Downloads every tile covering an area into the provider tile cache.

    Tiles go out in chunks of ``concurrent_downloads`` on a thread pool;
    a chunk finishes before the next one starts.
    """

    def __init__(self, cache: TileCacheService, concurrent_downloads: int = 6,
                 chunk_delay_ms: int = 200, retry_delay_ms: int = 2000,
                 executor: Optional[Executor] = None):
        self.cache = cache
        self.concurrent_downloads = concurrent_downloads
        self.chunk_delay = chunk_delay_ms / 1000.0
        self.retry_delay = retry_delay_ms / 1000.0
        self._executor = executor

    @staticmethod
    def count_for_bounds(points: List[GeoPoint], min_zoom: int, max_zoom: int) -> int:
        return TileCalculator.calculate_tile_count(points, min_zoom, max_zoom)

    def _run_chunk(self, executor: Executor, chunk: Sequence[Tile], url_template: str,
                   provider: str, subdomains: Iterator[str]) -> List[Tuple[Tile, Optional[bytes]]]:
        futures = {}
        for tile in chunk:
            zoom, x, y = tile
            url = build_tile_url(url_template, zoom, x, y, next(subdomains))
            futures[executor.submit(self.cache.fetch_and_cache_tile, url, provider, zoom, x, y)] = tile

        results = []
        for future in as_completed(futures):
            tile = futures[future]
            try:
                results.append((tile, future.result()))
            except Exception as e:
                logger.error(f"Download of {provider} {tile} raised: {e}")
                results.append((tile, None))
        return results

    def download_tiles_for_bounds(self, url_template: str, provider: str, points: List[GeoPoint],
                                  min_zoom: int, max_zoom: int,
                                  token: Optional[CancellationToken] = None
                                  ) -> Generator[DownloadProgress, None, BoundsDownloadResult]:
        tiles = TileCalculator.get_tiles_for_polygon(points, min_zoom, max_zoom)
        logger.info(f"Bulk download {provider}: {len(tiles)} tiles, zoom {min_zoom}-{max_zoom}")

        result = BoundsDownloadResult()
        progress = DownloadProgress(total=len(tiles))
        subdomains = itertools.cycle(SUBDOMAINS)

        own_executor = self._executor is None
        executor = self._executor or ThreadPoolExecutor(max_workers=self.concurrent_downloads)
        try:
            chunks = list(_chunks(tiles, self.concurrent_downloads))
            for index, chunk in enumerate(chunks):
                if is_cancelled(token):
                    result.success = False
                    logger.info(f"Bulk download {provider} cancelled after {progress.done} tiles")
                    break

                pending = []
                for tile in chunk:
                    progress.current_tile = f"z{tile[0]}/x{tile[1]}/y{tile[2]}"
                    if self.cache.has_tile(provider, *tile):
                        progress.cached += 1
                        result.tiles_cached += 1
                    else:
                        pending.append(tile)

                for _tile, data in self._run_chunk(executor, pending, url_template, provider, subdomains):
                    if data is not None:
                        progress.downloaded += 1
                        result.tiles_downloaded += 1
                        result.total_size += ESTIMATED_TILE_BYTES
                    else:
                        progress.failed += 1
                        result.tiles_failed += 1

                yield progress.snapshot()

                if index + 1 < len(chunks):
                    sleep_unless_cancelled(token, self.chunk_delay)

                if progress.done % 100 == 0:
                    logger.info(f"Bulk download {provider}: {progress.downloaded + progress.cached}/{progress.total}")

            if result.tiles_failed > 0 and not is_cancelled(token):
                yield from self._retry_missing(executor, tiles, url_template, provider,
                                               subdomains, result, progress, token)
        finally:
            if own_executor:
                executor.shutdown(wait=True)

        if is_cancelled(token):
            result.success = False
        logger.info(f"Bulk download {provider} finished: {result}")
        return result

    def _retry_missing(self, executor: Executor, tiles: Sequence[Tile], url_template: str,
                       provider: str, subdomains: Iterator[str], result: BoundsDownloadResult,
                       progress: DownloadProgress, token: Optional[CancellationToken]
                       ) -> Generator[DownloadProgress, None, None]:
        missing = [t for t in tiles if not self.cache.has_tile(provider, *t)]
        if not missing:
            return
        logger.info(f"Retrying {len(missing)} missing tiles for {provider}")
        sleep_unless_cancelled(token, self.retry_delay)

        for chunk in _chunks(missing, self.concurrent_downloads):
            if is_cancelled(token):
                break
            for _tile, data in self._run_chunk(executor, chunk, url_template, provider, subdomains):
                if data is not None:
                    result.tiles_failed -= 1
                    result.tiles_downloaded += 1
                    result.total_size += ESTIMATED_TILE_BYTES
                    progress.failed -= 1
                    progress.downloaded += 1
            yield progress.snapshot()
            sleep_unless_cancelled(token, self.chunk_delay)

        logger.info(f"Retry finished for {provider}, {result.tiles_failed} tiles still missing")
