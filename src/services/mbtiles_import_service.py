import logging
import sqlite3
from typing import Generator, Optional

from adapters.mbtiles_adapter import MBTilesReader
from core.cancellation import CancellationToken, is_cancelled
from exceptions.tile_engine_exceptions import MapFormatError
from models.progress import MBTilesImportProgress, MBTilesImportResult
from services.tile_cache_service import TileCacheService
from utils.mbtiles_utils import MBTilesUtils

logger = logging.getLogger(__name__)

PROGRESS_EVERY = 50


class MBTilesImportService:
    """Copies the tiles of an MBTiles archive into the provider tile cache"""

    def __init__(self, cache: TileCacheService):
        self.cache = cache

    def import_mbtiles(self, mbtiles_path: str, provider: str,
                       token: Optional[CancellationToken] = None
                       ) -> Generator[MBTilesImportProgress, None, MBTilesImportResult]:
        result = MBTilesImportResult()
        yield MBTilesImportProgress(current_tile='Reading MBTiles file...', phase='reading')
        logger.info(f"MBTiles import {mbtiles_path} -> {provider}")

        try:
            with MBTilesReader(mbtiles_path) as reader:
                self._read_metadata(reader, result)

                progress = MBTilesImportProgress(total=reader.get_tile_count(), phase='importing')
                logger.info(f"MBTiles archive holds {progress.total} tiles")
                yield progress.snapshot()

                processed = 0
                for zoom, column, tile_row, data in reader.iter_tiles():
                    if is_cancelled(token):
                        logger.info(f"MBTiles import cancelled after {processed} rows")
                        return result

                    y = MBTilesUtils.tms_to_xyz_y(zoom, tile_row)
                    result.min_zoom = min(result.min_zoom, zoom)
                    result.max_zoom = max(result.max_zoom, zoom)
                    progress.current_tile = f"z{zoom}/x{column}/y{y}"

                    if self.cache.has_tile(provider, zoom, column, y):
                        result.tiles_skipped += 1
                        progress.skipped += 1
                    elif self.cache.save_tile(provider, zoom, column, y, data):
                        result.tiles_imported += 1
                        result.total_size += len(data)
                        progress.imported += 1
                    else:
                        result.tiles_failed += 1
                        progress.failed += 1

                    processed += 1
                    if processed % PROGRESS_EVERY == 0:
                        yield progress.snapshot()

                progress.phase = 'done'
                yield progress.snapshot()
        except (MapFormatError, sqlite3.Error) as e:
            logger.error(f"MBTiles import of {mbtiles_path} failed: {e}")
            result.success = False
            return result

        result.success = True
        logger.info(f"MBTiles import finished: {result.tiles_imported} new, "
                    f"{result.tiles_skipped} skipped, {result.tiles_failed} failed")
        return result

    @staticmethod
    def _read_metadata(reader: MBTilesReader, result: MBTilesImportResult) -> None:
        metadata = reader.get_metadata()
        result.name = metadata.get('name', '')
        result.bounds = MBTilesUtils.parse_bounds(metadata.get('bounds'))
        min_zoom = MBTilesUtils.parse_zoom(metadata.get('minzoom'))
        max_zoom = MBTilesUtils.parse_zoom(metadata.get('maxzoom'))
        if min_zoom is not None:
            result.min_zoom = min_zoom
        if max_zoom is not None:
            result.max_zoom = max_zoom
        logger.debug(f"MBTiles metadata name={result.name!r} bounds={result.bounds} "
                     f"zoom={result.min_zoom}-{result.max_zoom}")
