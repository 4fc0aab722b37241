#!/usr/bin/env python3
"""
Tests for the map registry, tile synthesis and tile generation
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import io
import json

import pytest
from PIL import Image

from adapters.ozf_reader import map_id_for_path
from adapters.ozi_map_file import OziMapFileReader
from core.lru_cache import TileMemoryCache
from core.operation import run_operation
from exceptions.tile_engine_exceptions import MapFormatError
from models.calibration import CalibrationPoint
from services.map_registry_service import MapRegistryService
from services.map_tile_service import MapTileService
from utils.tile_calculator import TileCalculator
from map_fixtures import (OZF_EAST, OZF_NORTH, OZF_SOUTH, OZF_WEST, UTM_IMAGE_SIZE, geo_map_text,
                          utm_point, write_ozf_map, write_png, write_utm_map)


class Workspace:
    def __init__(self, root):
        self.root = str(root)
        self.maps_dir = os.path.join(self.root, 'maps')
        self.tile_cache_dir = os.path.join(self.root, 'map-tile-cache')
        self.reprojected_dir = os.path.join(self.root, 'reprojected')
        self.source_dir = os.path.join(self.root, 'source')
        os.makedirs(self.source_dir, exist_ok=True)
        self.memory_cache = TileMemoryCache(50)

    def registry(self) -> MapRegistryService:
        return MapRegistryService(self.maps_dir, self.tile_cache_dir, self.reprojected_dir, self.memory_cache)

    def tile_service(self, registry: MapRegistryService, memory_cache: TileMemoryCache = None) -> MapTileService:
        return MapTileService(registry, self.tile_cache_dir, self.reprojected_dir,
                              memory_cache or self.memory_cache)


@pytest.fixture
def ws(tmp_path):
    return Workspace(tmp_path)


@pytest.fixture
def utm_map(ws):
    """(registry, map id) of an imported UTM map"""
    registry = ws.registry()
    map_path, image_path = write_utm_map(ws.source_dir)
    info = run_operation(registry.import_map_with_image(map_path, image_path))
    return registry, info.id


def center_tile(zoom: int):
    lat, lon = utm_point(UTM_IMAGE_SIZE / 2, UTM_IMAGE_SIZE / 2)
    x, y = TileCalculator.lon_lat_to_tile(lon, lat, zoom)
    return zoom, x, y


def decode(data: bytes) -> Image.Image:
    return Image.open(io.BytesIO(data))


class TestTileMemoryCache:
    """LRU behaviour"""

    def test_least_recently_used_is_evicted(self):
        cache = TileMemoryCache(2)
        cache.put('a', b'1')
        cache.put('b', b'2')
        assert cache.get('a') == b'1'

        cache.put('c', b'3')

        assert 'b' not in cache
        assert 'a' in cache and 'c' in cache
        assert len(cache) == 2

    def test_evict_prefix(self):
        cache = TileMemoryCache(10)
        for key in ('m1-1-0-0', 'm1-2-0-0', 'm10-1-0-0', 'm2-1-0-0'):
            cache.put(key, b'x')

        assert cache.evict_prefix('m1-') == 2
        assert 'm10-1-0-0' in cache

    def test_hit_miss_counters(self):
        cache = TileMemoryCache(1)
        cache.get('missing')
        cache.put('k', b'v')
        cache.get('k')
        assert (cache.hits, cache.misses) == (1, 1)

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            TileMemoryCache(0)


class TestMapRegistryService:
    """Import, queries and calibration updates"""

    def test_import_with_image(self, ws, utm_map):
        registry, map_id = utm_map
        info = registry.get_map_by_id(map_id)

        assert info.name == 'UTM Test Map'
        assert (info.image_width, info.image_height) == (UTM_IMAGE_SIZE, UTM_IMAGE_SIZE)
        assert info.utm_zone == 33
        assert info.image_path.endswith(os.path.join(map_id, 'map.png'))
        assert info.to_dict()['utmZone'] == 33
        assert [m.id for m in registry.get_map_list()] == [map_id]

    def test_import_progress(self, ws):
        registry = ws.registry()
        map_path, image_path = write_utm_map(ws.source_dir)

        events = []
        run_operation(registry.import_map_with_image(map_path, image_path), events.append)

        assert [e.percent for e in events] == [5, 10, 50, 90, 95, 100]

    def test_import_with_missing_image(self, ws):
        registry = ws.registry()
        map_path, _image_path = write_utm_map(ws.source_dir)

        events = []
        info = run_operation(registry.import_map_with_image(map_path, os.path.join(ws.source_dir, 'nope.jpg')),
                             events.append)

        assert info is None
        assert events[-1].percent == 0
        assert registry.get_map_list() == []
        assert not os.path.exists(registry.map_dir(map_id_for_path(map_path)))

    def test_import_with_missing_map_file(self, ws):
        registry = ws.registry()
        _map_path, image_path = write_utm_map(ws.source_dir)

        info = run_operation(registry.import_map_with_image(os.path.join(ws.source_dir, 'nope.map'), image_path))

        assert info is None
        assert registry.get_map_list() == []

    def test_tiff_is_converted_to_jpeg(self, ws):
        registry = ws.registry()
        map_path, png_path = write_utm_map(ws.source_dir)
        tiff_path = os.path.join(ws.source_dir, 'utm.tif')
        with Image.open(png_path) as img:
            img.save(tiff_path, format='TIFF')

        info = run_operation(registry.import_map_with_image(map_path, tiff_path))

        assert info.image_path.endswith('map.jpg')
        with Image.open(info.image_path) as img:
            assert img.format == 'JPEG'

    def test_index_survives_restart(self, ws, utm_map):
        _registry, map_id = utm_map

        reloaded = ws.registry()

        assert reloaded.get(map_id) is not None
        assert reloaded.get(map_id).calibration.utm_calibration.zone == 33
        with open(os.path.join(ws.maps_dir, 'index.json'), encoding='utf-8') as f:
            assert json.load(f)[0]['id'] == map_id

    def test_pixel_geo_round_trip(self, utm_map):
        registry, map_id = utm_map
        point = registry.pixel_to_geo(map_id, 100, 200)
        expected_lat, expected_lon = utm_point(100, 200)

        assert point.lat == pytest.approx(expected_lat, abs=1e-7)
        assert point.lon == pytest.approx(expected_lon, abs=1e-7)
        pixel = registry.geo_to_pixel(map_id, point.lat, point.lon)
        assert pixel['x'] == pytest.approx(100, abs=0.05)
        assert pixel['y'] == pytest.approx(200, abs=0.05)

    def test_location_queries(self, utm_map):
        registry, map_id = utm_map
        lat, lon = utm_point(256, 256)

        assert registry.covers_area(map_id, lat, lon)
        assert [m.id for m in registry.find_maps_for_location(lat, lon)] == [map_id]
        assert registry.find_maps_for_location(0.0, 0.0) == []
        assert registry.pixel_to_geo('nope', 0, 0) is None

    def test_display_coord_of_corner(self, utm_map):
        registry, map_id = utm_map
        bounds = registry.get(map_id).calibration.bounds
        lat, lon = utm_point(0, 0)
        point = registry.geo_to_display_coord(map_id, lat, lon)

        assert point.lat == pytest.approx(bounds.north, abs=1e-5)
        assert point.lon == pytest.approx(bounds.west, abs=1e-5)
        assert registry.geo_to_display_coord('nope', lat, lon) is None

    def test_utm_calibration_dict(self, utm_map):
        registry, map_id = utm_map
        data = registry.get_utm_calibration(map_id)
        assert data['utmZone'] == 33
        assert set(data['utmToPixel']) == {'a', 'b', 'c', 'd', 'e', 'f'}

    def test_add_ozf_map(self, ws):
        registry = ws.registry()
        ozf_path, _map_path = write_ozf_map(ws.source_dir)

        info = registry.add_ozf_map(ozf_path)

        assert (info.image_width, info.image_height) == (128, 128)
        assert info.bounds.north == pytest.approx(OZF_NORTH)
        assert info.bounds.west == pytest.approx(OZF_WEST)
        assert os.path.exists(registry.get(info.id).ozf_path)

    def test_add_ozf_without_map_file(self, ws):
        registry = ws.registry()
        ozf_path, map_path = write_ozf_map(ws.source_dir)
        os.remove(map_path)

        with pytest.raises(MapFormatError):
            registry.add_ozf_map(ozf_path)

    def test_update_calibration_needs_three_points(self, utm_map):
        registry, map_id = utm_map
        points = [CalibrationPoint(0, 0, 47.9, 13.6), CalibrationPoint(512, 512, 47.8, 13.7)]

        assert not registry.update_calibration(map_id, points)
        assert registry.get(map_id).calibration.utm_calibration is not None

    def test_update_calibration_rejects_collinear_points(self, utm_map):
        registry, map_id = utm_map
        points = [CalibrationPoint(0, 0, 47.9, 13.6), CalibrationPoint(10, 10, 47.89, 13.61),
                  CalibrationPoint(20, 20, 47.88, 13.62)]

        assert not registry.update_calibration(map_id, points)

    def test_update_calibration(self, ws, utm_map):
        registry, map_id = utm_map
        ws.memory_cache.put(f"{map_id}-1-0-0", b'stale')
        stale_tile = os.path.join(ws.tile_cache_dir, map_id, '1', '0', '0.png')
        os.makedirs(os.path.dirname(stale_tile))
        with open(stale_tile, 'wb') as f:
            f.write(b'stale')
        points = [CalibrationPoint(0, 0, 48.0, 13.0), CalibrationPoint(512, 0, 48.0, 13.1),
                  CalibrationPoint(0, 512, 47.9, 13.0)]

        assert registry.update_calibration(map_id, points)

        cal = registry.get(map_id).calibration
        assert cal.utm_calibration is None
        assert cal.bounds.north == pytest.approx(48.0)
        assert cal.bounds.east == pytest.approx(13.1)
        assert f"{map_id}-1-0-0" not in ws.memory_cache
        assert not os.path.exists(stale_tile)
        written = OziMapFileReader.parse(registry.get(map_id).map_path)
        assert len(written.calibration_points) == 3

    def test_remove_map(self, ws, utm_map):
        registry, map_id = utm_map

        assert registry.remove_map(map_id)
        assert registry.get(map_id) is None
        assert not os.path.exists(registry.map_dir(map_id))
        assert ws.registry().get(map_id) is None
        assert not registry.remove_map(map_id)


class TestMapTileService:
    """Tile synthesis and the RAM/disk caches"""

    def test_tile_from_image(self, ws, utm_map):
        registry, map_id = utm_map
        service = ws.tile_service(registry)

        data = service.get_tile(map_id, *center_tile(13))

        assert data.startswith(b'\x89PNG')
        assert decode(data).size == (256, 256)

    def test_second_request_is_served_from_memory(self, ws, utm_map, monkeypatch):
        registry, map_id = utm_map
        service = ws.tile_service(registry)
        tile = center_tile(13)
        first = service.get_tile(map_id, *tile)

        def fail(*args):
            raise AssertionError("source read on cached tile")
        monkeypatch.setattr(service, '_synthesize', fail)

        assert service.get_tile(map_id, *tile) == first

    def test_disk_cache_survives_restart(self, ws, utm_map, monkeypatch):
        registry, map_id = utm_map
        tile = center_tile(13)
        first = ws.tile_service(registry).get_tile(map_id, *tile)

        fresh = ws.tile_service(registry, TileMemoryCache(10))
        monkeypatch.setattr(fresh, '_synthesize', lambda *args: None)

        assert fresh.get_tile(map_id, *tile) == first

    def test_tile_outside_map(self, ws, utm_map):
        registry, map_id = utm_map
        service = ws.tile_service(registry)
        x, y = TileCalculator.lon_lat_to_tile(-70.0, -30.0, 13)

        assert service.get_tile(map_id, 13, x, y) is None
        assert service.get_tile('unknown', 13, x, y) is None

    def test_tile_from_ozf(self, ws):
        registry = ws.registry()
        ozf_path, _ = write_ozf_map(ws.source_dir)
        map_id = registry.add_ozf_map(ozf_path).id
        service = ws.tile_service(registry)
        x, y = TileCalculator.lon_lat_to_tile((OZF_WEST + OZF_EAST) / 2, (OZF_NORTH + OZF_SOUTH) / 2, 10)

        data = service.get_tile(map_id, 10, x, y)

        image = decode(data)
        assert image.size == (256, 256)
        assert image.mode == 'RGBA'

    def test_reproject_image(self, ws, utm_map):
        registry, map_id = utm_map
        service = ws.tile_service(registry)

        events = []
        result = run_operation(service.reproject_image(map_id), events.append)

        assert result.image_path == service.get_reprojected_path(map_id)
        assert service.has_reprojected_image(map_id)
        with Image.open(result.image_path) as img:
            assert img.format == 'JPEG'
            assert img.size[0] == UTM_IMAGE_SIZE
        assert events[0].percent == 5
        assert events[-1].percent == 100

        again = []
        assert run_operation(service.reproject_image(map_id), again.append).image_path == result.image_path
        assert again == []

    def test_reproject_empty_bounds(self, ws, utm_map):
        registry, map_id = utm_map
        service = ws.tile_service(registry)
        bounds = registry.get(map_id).calibration.bounds
        bounds.south = bounds.north

        assert run_operation(service.reproject_image(map_id)) is None
        assert not service.has_reprojected_image(map_id)

    def test_reproject_unreadable_image(self, ws, utm_map):
        registry, map_id = utm_map
        service = ws.tile_service(registry)
        with open(registry.get_image_path(map_id), 'wb') as f:
            f.write(b'not an image')

        assert run_operation(service.reproject_image(map_id)) is None
        assert not service.has_reprojected_image(map_id)

    def test_generate_map_tiles(self, ws, utm_map):
        registry, map_id = utm_map
        service = ws.tile_service(registry)

        events = []
        index = run_operation(service.generate_map_tiles(map_id), events.append)

        assert (index.tiles_x, index.tiles_y, index.total_tiles) == (2, 2, 4)
        assert index.utm_zone == 33
        assert service.has_map_tiles(map_id)
        assert registry.get_map_by_id(map_id).has_tiles
        assert service.get_map_tile_index(map_id).total_tiles == 4
        assert service.get_generated_tile_data_url(map_id, 1, 1).startswith('data:image/jpeg;base64,')
        assert [e.percent for e in events][-2:] == [98, 100]

        tile = index.tiles[0]
        lat, lon = utm_point(0, 0)
        assert tile.top_left.lat == pytest.approx(lat, abs=1e-7)
        assert tile.top_left.lon == pytest.approx(lon, abs=1e-7)

    def test_generate_map_tiles_needs_utm(self, ws):
        registry = ws.registry()
        map_path = os.path.join(ws.source_dir, 'geo.map')
        with open(map_path, 'w', encoding='utf-8', newline='') as f:
            f.write(geo_map_text(image_name='geo.png'))
        image_path = write_png(os.path.join(ws.source_dir, 'geo.png'), 128, 128)
        map_id = run_operation(registry.import_map_with_image(map_path, image_path)).id

        assert run_operation(ws.tile_service(registry).generate_map_tiles(map_id)) is None

    def test_prepare_tiles(self, ws, utm_map):
        registry, map_id = utm_map
        service = ws.tile_service(registry)
        bounds = registry.get(map_id).calibration.bounds
        expected = list(TileCalculator.iter_tiles_for_bounds(bounds, 12, 13))

        assert run_operation(service.prepare_tiles(map_id, 12, 13))

        written = [(z, x, y) for z, x, y in expected
                   if os.path.exists(os.path.join(ws.tile_cache_dir, map_id, str(z), str(x), f"{y}.png"))]
        assert center_tile(12) in written
        assert center_tile(13) in written

    def test_are_tiles_cached(self, ws, utm_map):
        registry, map_id = utm_map
        service = ws.tile_service(registry)
        assert not service.are_tiles_cached(map_id)

        run_operation(service.prepare_tiles(map_id, 14, 14))

        assert service.are_tiles_cached(map_id)

    def test_map_tile_info(self, ws, utm_map):
        registry, map_id = utm_map
        info = ws.tile_service(registry).get_map_tile_info(map_id, 'http://127.0.0.1:9999')

        assert info['tileUrl'] == f"http://127.0.0.1:9999/tile/{map_id}/{{z}}/{{x}}/{{y}}.png"
        assert info['imageUrl'] == f"http://127.0.0.1:9999/image/{map_id}.png"
        assert info['maxZoom'] == 1
        assert info['tileSize'] == 256

    def test_image_data_url(self, ws, utm_map):
        registry, map_id = utm_map
        assert ws.tile_service(registry).get_image_data_url(map_id).startswith('data:image/png;base64,')


if __name__ == "__main__":
    pytest.main([__file__])
