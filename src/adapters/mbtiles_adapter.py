import logging
import os
import sqlite3
from typing import Dict, Iterator, Optional, Tuple

from exceptions.tile_engine_exceptions import MapFormatError
from interfaces.tile_source import ITileExtractor
from utils.mbtiles_utils import MBTilesUtils

logger = logging.getLogger(__name__)


class MBTilesReader(ITileExtractor):
    """Read-only streaming access to an MBTiles archive.

    Rows are read through a cursor so archives larger than memory can be
    imported. Use as a context manager.
    """

    def __init__(self, file_path: str):
        self.file_path = file_path
        self.connection: Optional[sqlite3.Connection] = None
        self._metadata: Optional[Dict[str, str]] = None

    def open(self) -> 'MBTilesReader':
        if not self.validate_source():
            raise MapFormatError(f"Not a readable MBTiles file: {self.file_path}")
        self.connection = sqlite3.connect(f"file:{self.file_path}?mode=ro", uri=True,
                                          check_same_thread=False)
        return self

    def close(self) -> None:
        if self.connection is not None:
            self.connection.close()
            self.connection = None

    def __enter__(self) -> 'MBTilesReader':
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _conn(self) -> sqlite3.Connection:
        if self.connection is None:
            self.open()
        return self.connection

    def validate_source(self) -> bool:
        """Validate if source file exists and has a tiles table"""
        return os.path.isfile(self.file_path) and MBTilesUtils.validate_mbtiles_file(self.file_path)

    def get_metadata(self) -> Dict[str, str]:
        """Get MBTiles metadata"""
        if self._metadata is None:
            self._metadata = MBTilesUtils.read_metadata(self._conn())
            logger.debug(f"MBTiles metadata for {self.file_path}: {self._metadata}")
        return dict(self._metadata)

    def get_tile_count(self) -> int:
        row = self._conn().execute("SELECT COUNT(*) FROM tiles").fetchone()
        return int(row[0]) if row else 0

    def iter_tiles(self) -> Iterator[Tuple[int, int, int, bytes]]:
        cursor = self._conn().execute(
            "SELECT zoom_level, tile_column, tile_row, tile_data FROM tiles"
        )
        try:
            for zoom, column, row, data in cursor:
                yield int(zoom), int(column), int(row), bytes(data) if data is not None else b''
        finally:
            cursor.close()
