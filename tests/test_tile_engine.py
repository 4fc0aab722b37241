#!/usr/bin/env python3
"""
Tests for the engine container and the command line
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import json

import pytest
import requests

from core.operation import run_operation
from core.tile_engine_manager import TileEngine, run_from_command_line
from exceptions.tile_engine_exceptions import ConfigurationError
from services.config_service import ConfigService
from map_fixtures import PNG_TILE, write_mbtiles, write_utm_map


def engine_config(tmp_path, **overrides):
    config = {'data_dir': str(tmp_path / 'data'), 'max_ram_tiles': 8, 'worker_threads': 2}
    config.update(overrides)
    return ConfigService().build_engine_config(config)


def write_config_file(tmp_path) -> str:
    path = tmp_path / 'config.json'
    path.write_text(json.dumps({'data_dir': str(tmp_path / 'data'), 'logging': {'level': 'WARNING'}}),
                    encoding='utf-8')
    return str(path)


class TestTileEngine:

    def test_services_share_caches_and_directories(self, tmp_path):
        with TileEngine(engine_config(tmp_path)) as engine:
            assert engine.registry.memory_cache is engine.map_tiles.memory_cache
            assert engine.memory_cache.capacity == 8
            assert engine.bulk_download.cache is engine.tile_cache
            assert engine.merge.output_dir == engine.config.merged_dir
            assert os.path.isdir(engine.config.provider_cache_dir)

    def test_serves_imported_map(self, tmp_path):
        source = tmp_path / 'source'
        source.mkdir()
        map_path, image_path = write_utm_map(str(source))

        with TileEngine(engine_config(tmp_path)) as engine:
            map_id = run_operation(engine.registry.import_map_with_image(map_path, image_path)).id
            engine.start()
            base_url = engine.server.base_url
            info = engine.get_map_tile_info(map_id)

            response = requests.get(info['imageUrl'], timeout=10)

        assert engine.server.port == 0
        assert info['tileUrl'] == f"{base_url}/tile/{map_id}/{{z}}/{{x}}/{{y}}.png"
        assert response.status_code == 200

    def test_background_mbtiles_import(self, tmp_path):
        path = write_mbtiles(str(tmp_path / 'a.mbtiles'), [(4, 1, 2, PNG_TILE)])

        with TileEngine(engine_config(tmp_path)) as engine:
            operation = engine.run_in_background(
                lambda token: engine.mbtiles_import.import_mbtiles(path, 'imported', token))
            events = list(operation.events(timeout=10))
            result = operation.result(timeout=10)

            assert result.success
            assert events[-1].phase == 'done'
            assert engine.tile_cache.has_tile('imported', 4, 1, 13)

    def test_from_config_file(self, tmp_path):
        with TileEngine.from_config_file(write_config_file(tmp_path)) as engine:
            assert engine.config.data_dir == str(tmp_path / 'data')


class TestCommandLine:

    def test_count(self, tmp_path, capsys):
        code = run_from_command_line(['--config', write_config_file(tmp_path), 'count',
                                      '--bbox', '11.4', '48.0', '11.7', '48.2',
                                      '--min-zoom', '10', '--max-zoom', '10'])

        assert code == 0
        assert 'tiles, about' in capsys.readouterr().out

    def test_import_and_list_maps(self, tmp_path, capsys):
        config_path = write_config_file(tmp_path)
        source = tmp_path / 'source'
        source.mkdir()
        map_path, image_path = write_utm_map(str(source))

        assert run_from_command_line(['--config', config_path, 'import-map', map_path, '--image', image_path]) == 0
        assert run_from_command_line(['--config', config_path, 'list-maps']) == 0

        out = capsys.readouterr().out
        assert 'Imported UTM Test Map' in out
        assert 'UTM 33' in out

    def test_import_map_with_missing_image(self, tmp_path, capsys):
        config_path = write_config_file(tmp_path)
        source = tmp_path / 'source'
        source.mkdir()
        map_path, _image_path = write_utm_map(str(source))

        code = run_from_command_line(['--config', config_path, 'import-map', map_path,
                                      '--image', str(source / 'nope.jpg')])

        assert code == 1
        assert 'Could not import' in capsys.readouterr().out

    def test_import_mbtiles_and_cache_stats(self, tmp_path, capsys):
        config_path = write_config_file(tmp_path)
        path = write_mbtiles(str(tmp_path / 'a.mbtiles'), [(4, 1, 2, PNG_TILE), (4, 2, 2, PNG_TILE)])

        assert run_from_command_line(['--config', config_path, 'import-mbtiles', path, '--provider', 'mb']) == 0
        assert run_from_command_line(['--config', config_path, 'cache-stats']) == 0
        assert run_from_command_line(['--config', config_path, 'clear-cache', '--provider', 'mb']) == 0

        out = capsys.readouterr().out
        assert 'Imported 2' in out
        assert 'mb: 2' in out

    def test_unknown_provider(self, tmp_path):
        with pytest.raises(ConfigurationError):
            run_from_command_line(['--config', write_config_file(tmp_path), 'download', '--provider', 'nope',
                                   '--bbox', '11.4', '48.0', '11.7', '48.2'])

    def test_remove_unknown_map(self, tmp_path):
        assert run_from_command_line(['--config', write_config_file(tmp_path), 'remove-map', 'missing']) == 1


if __name__ == "__main__":
    pytest.main([__file__])
