"""OziExplorer OZF2/OZF3 raster container.

OZF2 layout: u16 magic, u32 pointer to the tile table, u32 width, u32
height; the image is stored as zlib-compressed 64x64 tiles whose start
offsets (plus an end marker) form the tile table at the end of the file.
"""
import hashlib
import logging
import math
import struct
import zlib
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)

OZF_TILE_SIZE = 64
OZF_MAGIC_VERSIONS = {
    0x7778: 2,   # OZF2
    0x7779: 3,   # OZF3
    0x777A: 4,   # OZFX3
}
HEADER_BYTES = 64


@dataclass
class OZFHeader:
    magic: int
    version: int
    width: int
    height: int
    depth: int
    zoom_levels: int
    tile_width: int = OZF_TILE_SIZE
    tile_height: int = OZF_TILE_SIZE

    @property
    def tiles_x(self) -> int:
        return math.ceil(self.width / self.tile_width)

    @property
    def tiles_y(self) -> int:
        return math.ceil(self.height / self.tile_height)


@dataclass
class OZFTileTable:
    table_offset: int
    tiles_x: int
    tiles_y: int
    offsets: List[int]


def map_id_for_path(path: str) -> str:
    """Stable map id: first 16 hex chars of md5 over the lowercased path"""
    return hashlib.md5(path.lower().encode('utf-8')).hexdigest()[:16]


class OZFReader:
    """Reads headers and tiles from an OZF file"""

    def __init__(self, path: str):
        self.path = path

    def read_header(self) -> Optional[OZFHeader]:
        try:
            with open(self.path, 'rb') as f:
                data = f.read(HEADER_BYTES)
        except OSError as e:
            logger.error(f"Cannot read OZF header {self.path}: {e}")
            return None
        if len(data) < 16:
            logger.warning(f"OZF file too short: {self.path}")
            return None

        magic = struct.unpack_from('<H', data, 0)[0]
        version = OZF_MAGIC_VERSIONS.get(magic)
        if version is None:
            logger.warning(f"Unknown OZF format {magic:#06x}: {self.path}")
            return None

        if magic == 0x7778:
            # Same fields the tile table reader uses: table pointer, width, height
            width, height = struct.unpack_from('<II', data, 6)
        else:
            width, height = struct.unpack_from('<II', data, 4)
        depth, zoom_levels = struct.unpack_from('<HH', data, 12)
        return OZFHeader(magic=magic, version=version, width=width, height=height,
                         depth=depth, zoom_levels=zoom_levels or 1)

    def read_tile_table(self) -> Optional[OZFTileTable]:
        """Offsets of every 64x64 tile; OZF2 only"""
        try:
            with open(self.path, 'rb') as f:
                header = f.read(14)
                if len(header) < 14:
                    return None
                magic = struct.unpack_from('<H', header, 0)[0]
                if magic != 0x7778:
                    logger.info(f"Tile table unsupported for format {magic:#06x}: {self.path}")
                    return None

                table_offset, width, height = struct.unpack_from('<III', header, 2)
                tiles_x = math.ceil(width / OZF_TILE_SIZE)
                tiles_y = math.ceil(height / OZF_TILE_SIZE)
                count = tiles_x * tiles_y + 1

                f.seek(table_offset)
                raw = f.read(count * 4)
        except OSError as e:
            logger.error(f"Cannot read OZF tile table {self.path}: {e}")
            return None

        if len(raw) < count * 4:
            logger.warning(f"Truncated OZF tile table in {self.path}")
            return None

        offsets = list(struct.unpack(f'<{count}I', raw))
        logger.debug(f"OZF2 {width}x{height}, {tiles_x}x{tiles_y} tiles, table at {table_offset}")
        return OZFTileTable(table_offset=table_offset, tiles_x=tiles_x, tiles_y=tiles_y, offsets=offsets)

    def extract_tile(self, tile_x: int, tile_y: int, table: OZFTileTable) -> Optional[bytes]:
        """Inflated pixel bytes of one tile, None when out of range or unreadable"""
        if tile_x < 0 or tile_y < 0 or tile_x >= table.tiles_x or tile_y >= table.tiles_y:
            return None
        index = tile_y * table.tiles_x + tile_x
        if index >= len(table.offsets) - 1:
            return None

        start = table.offsets[index]
        size = table.offsets[index + 1] - start
        if size <= 0:
            return None

        try:
            with open(self.path, 'rb') as f:
                f.seek(start)
                compressed = f.read(size)
            return zlib.decompress(compressed)
        except (OSError, zlib.error) as e:
            logger.warning(f"Cannot extract OZF tile {tile_x},{tile_y} from {self.path}: {e}")
            return None
