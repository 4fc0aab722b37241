import math
import os
import sqlite3
from typing import Any, Dict, Optional

from models.geo import Bounds


class MBTilesUtils:
    """Utility class for MBTiles operations"""

    @staticmethod
    def validate_mbtiles_file(file_path: str) -> bool:
        """Validate if file is a SQLite database with tiles and metadata tables"""
        if not os.path.isfile(file_path):
            return False

        try:
            with sqlite3.connect(f"file:{file_path}?mode=ro", uri=True) as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT name FROM sqlite_master WHERE type IN ('table', 'view')")
                tables = {row[0] for row in cursor.fetchall()}
                return 'tiles' in tables
        except sqlite3.Error:
            return False

    @staticmethod
    def read_metadata(conn: sqlite3.Connection) -> Dict[str, str]:
        """name -> value rows of the metadata table ({} when missing)"""
        try:
            cursor = conn.execute("SELECT name, value FROM metadata")
            return {str(name): str(value) for name, value in cursor.fetchall()}
        except sqlite3.Error:
            return {}

    @staticmethod
    def parse_bounds(value: Optional[str]) -> Optional[Bounds]:
        """Parse "west,south,east,north"; None unless exactly 4 numbers"""
        if not value:
            return None
        parts = value.split(',')
        if len(parts) != 4:
            return None
        try:
            west, south, east, north = (float(p) for p in parts)
        except ValueError:
            return None
        if any(math.isnan(v) for v in (west, south, east, north)):
            return None
        return Bounds(north=north, south=south, east=east, west=west)

    @staticmethod
    def parse_zoom(value: Any) -> Optional[int]:
        try:
            return int(str(value).strip())
        except (TypeError, ValueError):
            return None

    @staticmethod
    def tms_to_xyz_y(zoom: int, tile_row: int) -> int:
        """TMS rows count from the south; slippy-map rows from the north"""
        return (2 ** zoom - 1) - tile_row
