#!/usr/bin/env python3
"""
Tests for configuration loading and validation
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import json

import pytest

from exceptions.tile_engine_exceptions import ConfigurationError, ValidationError
from services.config_service import DEFAULT_PROVIDERS, ConfigService


def write_config(tmp_path, data) -> str:
    path = tmp_path / 'config.json'
    path.write_text(json.dumps(data), encoding='utf-8')
    return str(path)


class TestConfigService:

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            ConfigService().load_config(str(tmp_path / 'nope.json'))

    def test_invalid_json(self, tmp_path):
        path = tmp_path / 'config.json'
        path.write_text('{"data_dir": ', encoding='utf-8')
        with pytest.raises(ConfigurationError):
            ConfigService().load_config(str(path))

    def test_load_or_default_without_file(self, tmp_path):
        assert ConfigService().load_or_default(str(tmp_path / 'nope.json')) == {}
        assert ConfigService().load_or_default(None) == {}

    @pytest.mark.parametrize("config", [
        {'max_ram_tiles': 0},
        {'worker_threads': 'four'},
        {'server_port': -1},
        {'server_port': 70000},
        {'request_timeout': 0},
        {'providers': {'name': 'x'}},
        {'providers': [{'name': 'no url'}]},
        {'data_dir': 5},
        {'logging': 'DEBUG'},
    ])
    def test_validation_errors(self, config):
        with pytest.raises(ValidationError):
            ConfigService().validate_config(config)

    def test_defaults(self):
        config = ConfigService().build_engine_config({'data_dir': '/srv/tiles'})

        assert config.maps_dir == os.path.join('/srv/tiles', 'maps')
        assert config.provider_cache_dir == os.path.join('/srv/tiles', 'tile-cache')
        assert config.merged_dir == os.path.join('/srv/tiles', 'reprojected-competition')
        assert config.max_ram_tiles == 500
        assert config.concurrent_downloads == 6
        assert [p.name for p in config.providers] == [p['name'] for p in DEFAULT_PROVIDERS]

    def test_overrides(self, tmp_path):
        path = write_config(tmp_path, {
            'data_dir': str(tmp_path),
            'regions_dir': str(tmp_path / 'exports'),
            'max_ram_tiles': 64,
            'request_timeout': 3,
            'user_agent': 'Tester/1.0',
            'providers': [{'name': 'topo', 'url': 'https://t.example.com/{z}/{x}/{y}.png', 'subdomains': []}],
        })
        service = ConfigService()

        config = service.build_engine_config(service.load_config(path))

        assert config.regions_dir == str(tmp_path / 'exports')
        assert config.max_ram_tiles == 64
        assert config.request_timeout == 3.0
        provider = config.get_provider('topo')
        assert provider.get_headers() == {'User-Agent': 'Tester/1.0'}
        assert provider.get_tile_url(1, 2, 3) == 'https://t.example.com/1/2/3.png'
        with pytest.raises(KeyError):
            config.get_provider('osm')


if __name__ == "__main__":
    pytest.main([__file__])
