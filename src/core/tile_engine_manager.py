import argparse
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, List, Optional

from core.cancellation import CancellationToken
from core.lru_cache import TileMemoryCache
from core.operation import BackgroundOperation, Operation, run_operation
from exceptions.tile_engine_exceptions import ConfigurationError
from infrastructure.logging import LoggingManager
from models.calibration import CalibrationPoint
from models.engine_config import EngineConfig
from models.geo import Bounds, GeoPoint
from models.progress import DownloadProgress, MBTilesImportProgress, ProgressEvent
from models.tile_provider import TileProvider
from services.bulk_download_service import BulkDownloadService
from services.config_service import ConfigService
from services.http_server_service import MapTileHTTPServer
from services.map_registry_service import MapRegistryService
from services.map_tile_service import MapTileService
from services.mbtiles_import_service import MBTilesImportService
from services.merge_reproject_service import MergeReprojectService
from services.region_download_service import RegionDownloadService
from services.tile_cache_service import TileCacheService
from utils.geo_transform import utm_zone_for_lon

logger = logging.getLogger(__name__)


class TileEngine:
    """Owns every engine service and the thread pools they share.

    Build one per process and hand it to whoever needs a service; nothing
    in the engine keeps module-level state.
    """

    def __init__(self, config: EngineConfig):
        self.config = config
        self.executor = ThreadPoolExecutor(max_workers=config.worker_threads,
                                           thread_name_prefix='tile-engine')
        self.download_executor = ThreadPoolExecutor(max_workers=config.concurrent_downloads,
                                                    thread_name_prefix='tile-download')
        self.memory_cache = TileMemoryCache(config.max_ram_tiles)

        self.tile_cache = TileCacheService(config.provider_cache_dir, config.user_agent,
                                           config.request_timeout, config.max_redirects)
        self.bulk_download = BulkDownloadService(self.tile_cache, config.concurrent_downloads,
                                                 config.chunk_delay_ms, config.retry_delay_ms,
                                                 executor=self.download_executor)
        self.mbtiles_import = MBTilesImportService(self.tile_cache)
        self.merge = MergeReprojectService(self.tile_cache, config.merged_dir)
        self.regions = RegionDownloadService(config.regions_dir, self.tile_cache.session,
                                             config.request_timeout, config.region_delay_ms)

        self.registry = MapRegistryService(config.maps_dir, config.map_tile_cache_dir,
                                           config.reprojected_dir, self.memory_cache)
        self.map_tiles = MapTileService(self.registry, config.map_tile_cache_dir,
                                        config.reprojected_dir, self.memory_cache)
        self.server = MapTileHTTPServer(self.map_tiles, config.server_host, config.server_port,
                                        executor=self.executor)

    @classmethod
    def from_config_file(cls, config_path: Optional[str] = None) -> 'TileEngine':
        config_service = ConfigService()
        return cls(config_service.build_engine_config(config_service.load_or_default(config_path)))

    def start(self) -> None:
        self.server.start()

    def close(self) -> None:
        self.server.stop()
        self.download_executor.shutdown(wait=True)
        self.executor.shutdown(wait=True)

    def __enter__(self) -> 'TileEngine':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def run_in_background(self, operation_factory: Callable[[CancellationToken], Operation]) -> BackgroundOperation:
        return BackgroundOperation(operation_factory, self.executor)

    def get_map_tile_info(self, map_id: str):
        return self.map_tiles.get_map_tile_info(map_id, self.server.base_url)


def _bbox_points(bbox: List[float]) -> List[GeoPoint]:
    west, south, east, north = bbox
    return [GeoPoint(lat=north, lon=west), GeoPoint(lat=north, lon=east),
            GeoPoint(lat=south, lon=east), GeoPoint(lat=south, lon=west)]


def _print_progress(event: Any) -> None:
    if isinstance(event, ProgressEvent):
        print(f"  {event.percent:5.1f}%  {event.message}")
    elif isinstance(event, DownloadProgress):
        print(f"  {event.done}/{event.total}  downloaded={event.downloaded} cached={event.cached} "
              f"failed={event.failed}  {event.current_tile}")
    elif isinstance(event, MBTilesImportProgress):
        print(f"  [{event.phase}] {event.done}/{event.total}  imported={event.imported} "
              f"skipped={event.skipped} failed={event.failed}")


def _format_size(size: int) -> str:
    return f"{size / (1024 * 1024):.1f} MB"


class TileEngineManager:
    """Command-line front end over a TileEngine"""

    def __init__(self, config_path: Optional[str] = 'config.json'):
        config_service = ConfigService()
        raw_config = config_service.load_or_default(config_path)
        LoggingManager.setup_logging(raw_config)
        self.engine = TileEngine(config_service.build_engine_config(raw_config))

    def _provider(self, name: Optional[str]) -> TileProvider:
        if not name:
            return self.engine.config.providers[0]
        try:
            return self.engine.config.get_provider(name)
        except KeyError:
            known = ", ".join(p.name for p in self.engine.config.providers)
            raise ConfigurationError(f"Unknown provider '{name}' (configured: {known})")

    def _run_cancellable(self, operation_factory: Callable[[CancellationToken], Operation]) -> Any:
        """Run on the worker pool, printing progress; Ctrl+C cancels the operation"""
        operation = self.engine.run_in_background(operation_factory)
        try:
            for event in operation.events():
                _print_progress(event)
        except KeyboardInterrupt:
            print("\nCancelling...")
            operation.cancel()
        return operation.result()

    # Maps

    def import_map(self, path: str, image: Optional[str]) -> int:
        if image:
            info = run_operation(self.engine.registry.import_map_with_image(path, image), _print_progress)
            if info is None:
                print(f"Could not import {path} with image {image}")
                return 1
        else:
            info = self.engine.registry.add_ozf_map(path)
        print(f"Imported {info.name} as {info.id} ({info.image_width}x{info.image_height} px)")
        return 0

    def list_maps(self) -> int:
        maps = self.engine.registry.get_map_list()
        if not maps:
            print("No maps imported.")
            return 0
        for info in maps:
            b = info.bounds
            zone = f"UTM {info.utm_zone}" if info.utm_zone else "geographic"
            print(f"{info.id}  {info.name}  {info.image_width}x{info.image_height}  {zone}  "
                  f"N{b.north:.5f} S{b.south:.5f} E{b.east:.5f} W{b.west:.5f}"
                  f"{'  [tiles]' if info.has_tiles else ''}")
        return 0

    def remove_map(self, map_id: str) -> int:
        if not self.engine.registry.remove_map(map_id):
            print(f"Unknown map: {map_id}")
            return 1
        print(f"Removed {map_id}")
        return 0

    def generate_tiles(self, map_id: str) -> int:
        index = run_operation(self.engine.map_tiles.generate_map_tiles(map_id), _print_progress)
        if index is None:
            print("Tile generation failed (see log).")
            return 1
        print(f"{index.total_tiles} tiles ({index.tiles_x}x{index.tiles_y}), UTM zone {index.utm_zone}")
        return 0

    def prepare_tiles(self, map_id: str, min_zoom: int, max_zoom: int) -> int:
        ok = run_operation(self.engine.map_tiles.prepare_tiles(map_id, min_zoom, max_zoom), _print_progress)
        return 0 if ok else 1

    def reproject(self, map_id: str) -> int:
        result = run_operation(self.engine.map_tiles.reproject_image(map_id), _print_progress)
        if result is None:
            print("Reprojection failed (see log).")
            return 1
        print(f"Reprojected image: {result.image_path}")
        return 0

    def update_calibration(self, map_id: str, point_args: List[List[float]]) -> int:
        points = [CalibrationPoint(pixel_x=p[0], pixel_y=p[1], latitude=p[2], longitude=p[3])
                  for p in point_args]
        if not self.engine.registry.update_calibration(map_id, points):
            print("Calibration not updated: need at least 3 non-collinear points for a known map.")
            return 1
        print(f"Calibration of {map_id} updated")
        return 0

    # Provider tiles

    def count(self, bbox: List[float], min_zoom: int, max_zoom: int) -> int:
        total = BulkDownloadService.count_for_bounds(_bbox_points(bbox), min_zoom, max_zoom)
        print(f"{total} tiles, about {_format_size(TileCacheService.estimate_download_size(total))}")
        return 0

    def download(self, provider_name: str, bbox: List[float], min_zoom: int, max_zoom: int) -> int:
        provider = self._provider(provider_name)
        result = self._run_cancellable(lambda token: self.engine.bulk_download.download_tiles_for_bounds(
            provider.url, provider.name, _bbox_points(bbox), min_zoom, max_zoom, token))
        print(f"Downloaded {result.tiles_downloaded}, cached {result.tiles_cached}, "
              f"failed {result.tiles_failed}, ~{_format_size(result.total_size)}")
        return 0 if result.success else 1

    def import_mbtiles(self, path: str, provider: str) -> int:
        result = self._run_cancellable(
            lambda token: self.engine.mbtiles_import.import_mbtiles(path, provider, token))
        print(f"Imported {result.tiles_imported}, skipped {result.tiles_skipped}, "
              f"failed {result.tiles_failed} ({_format_size(result.total_size)})")
        return 0 if result.success else 1

    def merge(self, provider: str, bbox: List[float], zoom: int, utm_zone: Optional[int]) -> int:
        zone = utm_zone or utm_zone_for_lon((bbox[0] + bbox[2]) / 2)
        result = run_operation(
            self.engine.merge.merge_and_reproject_tiles(provider, _bbox_points(bbox), zoom, zone),
            _print_progress)
        if result is None:
            print("No cached tiles for that area.")
            return 1
        print(f"Merged image: {result.image_path}")
        return 0

    def export_region(self, name: str, bbox: List[float], min_zoom: int, max_zoom: int,
                      provider_name: Optional[str]) -> int:
        provider = self._provider(provider_name)
        west, south, east, north = bbox
        bounds = Bounds(north=north, south=south, east=east, west=west)
        result = self._run_cancellable(lambda token: self.engine.regions.download_region(
            name, bounds, min_zoom, max_zoom, provider, token))
        if not result.success:
            print(f"Region export failed: {result.error}")
            return 1
        print(f"Region written to {result.output_path}")
        return 0

    def list_regions(self) -> int:
        regions = self.engine.regions.list_downloaded_regions()
        if not regions:
            print("No regions exported.")
        for region in regions:
            print(f"{region['name']}  {_format_size(region['size'])}  {region['created']}  {region['path']}")
        return 0

    def cache_stats(self) -> int:
        stats = self.engine.tile_cache.get_stats()
        print(f"Cache directory: {self.engine.tile_cache.get_cache_directory()}")
        print(f"{stats.total_tiles} tiles, {_format_size(stats.total_size)}")
        for provider, count in stats.providers.items():
            print(f"  {provider}: {count}")
        return 0

    def clear_cache(self, provider: Optional[str]) -> int:
        ok = self.engine.tile_cache.clear_cache(provider)
        print("Cache cleared." if ok else "Clearing the cache failed (see log).")
        return 0 if ok else 1

    def serve(self, host: Optional[str], port: Optional[int]) -> int:
        server = self.engine.server
        if host:
            server.host = host
        if port is not None:
            server.requested_port = port
        print(f"Serving {len(self.engine.registry.get_map_list())} maps")
        print("Press Ctrl+C to stop\n")
        server.serve_forever()
        return 0

    def close(self) -> None:
        self.engine.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Offline map tile engine: calibrated map import, tile serving, provider tile cache.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            'Examples:\n\n'
            '  python src/tile_engine.py import-map maps/area.ozf2\n'
            '  python src/tile_engine.py import-map maps/area.map --image maps/area.tif\n'
            '  python src/tile_engine.py download --provider openstreetmap --bbox 11.4 48.0 11.7 48.2 '
            '--min-zoom 10 --max-zoom 14\n'
            '  python src/tile_engine.py merge --provider openstreetmap --bbox 11.4 48.0 11.7 48.2 --zoom 14\n'
            '  python src/tile_engine.py serve --port 8080\n'
        )
    )
    parser.add_argument('--config', default='config.json', help='Path to config.json (default: config.json)')
    sub = parser.add_subparsers(dest='command', required=True)

    bbox_kwargs = dict(nargs=4, type=float, required=True,
                       metavar=('min_lon', 'min_lat', 'max_lon', 'max_lat'), help='Bounding box (lon/lat)')

    p = sub.add_parser('serve', help='Run the loopback tile server')
    p.add_argument('--host', help='Bind address (default from config)')
    p.add_argument('--port', type=int, help='Port, 0 picks a free one')

    p = sub.add_parser('import-map', help='Import an OZF map, or a .map file with --image')
    p.add_argument('path', help='.ozf2/.ozf3 file, or .map file when --image is given')
    p.add_argument('--image', help='Raster image belonging to the .map file')

    sub.add_parser('list-maps', help='List imported maps')

    p = sub.add_parser('remove-map', help='Delete a map and its caches')
    p.add_argument('map_id')

    p = sub.add_parser('generate-tiles', help='Cut a UTM-calibrated map into indexed JPEG tiles')
    p.add_argument('map_id')

    p = sub.add_parser('prepare-tiles', help='Pre-render web tiles of a map into the disk cache')
    p.add_argument('map_id')
    p.add_argument('--min-zoom', type=int, default=10)
    p.add_argument('--max-zoom', type=int, default=14)

    p = sub.add_parser('reproject', help='Warp a map image onto a lat/lon grid')
    p.add_argument('map_id')

    p = sub.add_parser('calibrate', help='Replace the calibration points of a map')
    p.add_argument('map_id')
    p.add_argument('--point', nargs=4, type=float, action='append', required=True,
                   metavar=('pixel_x', 'pixel_y', 'lat', 'lon'), help='Calibration point (repeat, 3 or more)')

    p = sub.add_parser('count', help='Count tiles covering a bounding box')
    p.add_argument('--bbox', **bbox_kwargs)
    p.add_argument('--min-zoom', type=int, default=10)
    p.add_argument('--max-zoom', type=int, default=15)

    p = sub.add_parser('download', help='Download provider tiles for a bounding box into the cache')
    p.add_argument('--provider', required=True, help='Provider name from config')
    p.add_argument('--bbox', **bbox_kwargs)
    p.add_argument('--min-zoom', type=int, default=10)
    p.add_argument('--max-zoom', type=int, default=15)

    p = sub.add_parser('import-mbtiles', help='Copy an MBTiles archive into the provider cache')
    p.add_argument('path')
    p.add_argument('--provider', required=True, help='Cache folder to import into')

    p = sub.add_parser('merge', help='Merge cached tiles into one UTM-aligned image')
    p.add_argument('--provider', required=True)
    p.add_argument('--bbox', **bbox_kwargs)
    p.add_argument('--zoom', type=int, required=True)
    p.add_argument('--utm-zone', type=int, help='UTM zone (default: from the box centre)')

    p = sub.add_parser('export-region', help='Download a standalone z/x/y tile folder')
    p.add_argument('name')
    p.add_argument('--bbox', **bbox_kwargs)
    p.add_argument('--min-zoom', type=int, default=10)
    p.add_argument('--max-zoom', type=int, default=14)
    p.add_argument('--provider', help='Provider name (default: first configured)')

    sub.add_parser('list-regions', help='List exported regions')
    sub.add_parser('cache-stats', help='Show provider tile cache statistics')

    p = sub.add_parser('clear-cache', help='Delete cached provider tiles')
    p.add_argument('--provider', help='Only this provider')

    return parser


def run_from_command_line(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    manager = TileEngineManager(args.config)
    try:
        command = args.command
        if command == 'serve':
            return manager.serve(args.host, args.port)
        if command == 'import-map':
            return manager.import_map(args.path, args.image)
        if command == 'list-maps':
            return manager.list_maps()
        if command == 'remove-map':
            return manager.remove_map(args.map_id)
        if command == 'generate-tiles':
            return manager.generate_tiles(args.map_id)
        if command == 'prepare-tiles':
            return manager.prepare_tiles(args.map_id, args.min_zoom, args.max_zoom)
        if command == 'reproject':
            return manager.reproject(args.map_id)
        if command == 'calibrate':
            return manager.update_calibration(args.map_id, args.point)
        if command == 'count':
            return manager.count(args.bbox, args.min_zoom, args.max_zoom)
        if command == 'download':
            return manager.download(args.provider, args.bbox, args.min_zoom, args.max_zoom)
        if command == 'import-mbtiles':
            return manager.import_mbtiles(args.path, args.provider)
        if command == 'merge':
            return manager.merge(args.provider, args.bbox, args.zoom, args.utm_zone)
        if command == 'export-region':
            return manager.export_region(args.name, args.bbox, args.min_zoom, args.max_zoom, args.provider)
        if command == 'list-regions':
            return manager.list_regions()
        if command == 'cache-stats':
            return manager.cache_stats()
        if command == 'clear-cache':
            return manager.clear_cache(args.provider)
        return 2
    finally:
        manager.close()
