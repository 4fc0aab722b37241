import json
import os
from typing import Dict, Any, List

from interfaces.services import IConfigLoader
from models.engine_config import EngineConfig, DEFAULT_USER_AGENT
from models.tile_provider import TileProvider
from exceptions.tile_engine_exceptions import ConfigurationError, ValidationError


DEFAULT_PROVIDERS: List[Dict[str, Any]] = [
    {
        'name': 'openstreetmap',
        'url': 'https://{s}.tile.openstreetmap.org/{z}/{x}/{y}.png',
        'subdomains': ['a', 'b', 'c'],
    },
    {
        'name': 'opentopomap',
        'url': 'https://{s}.tile.opentopomap.org/{z}/{x}/{y}.png',
        'subdomains': ['a', 'b', 'c'],
    },
]

_DIRECTORY_KEYS = ('data_dir', 'maps_dir', 'map_tile_cache_dir', 'reprojected_dir',
                   'provider_cache_dir', 'regions_dir', 'merged_dir')
_POSITIVE_INT_KEYS = ('max_ram_tiles', 'worker_threads', 'concurrent_downloads')
_NON_NEGATIVE_INT_KEYS = ('server_port', 'chunk_delay_ms', 'retry_delay_ms', 'region_delay_ms',
                          'max_redirects')


class ConfigService(IConfigLoader):
    """Service for loading and validating engine configuration"""

    def load_config(self, config_path: str) -> Dict[str, Any]:
        """Load configuration from JSON file"""
        if not os.path.exists(config_path):
            raise ConfigurationError(f"Config file {config_path} not found!")

        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                config = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {config_path}: {e}")
        except OSError as e:
            raise ConfigurationError(f"Error loading config: {e}")

        if not isinstance(config, dict):
            raise ConfigurationError(f"Config root in {config_path} must be an object")

        self.validate_config(config)
        return config

    def load_or_default(self, config_path: str = None) -> Dict[str, Any]:
        """Load the config file when given and present, else an empty config"""
        if config_path and os.path.exists(config_path):
            return self.load_config(config_path)
        return {}

    def validate_config(self, config: Dict[str, Any]) -> bool:
        """Validate configuration structure"""
        for key in _DIRECTORY_KEYS:
            if key in config and not isinstance(config[key], str):
                raise ValidationError(f"{key} must be a string path")

        for key in _POSITIVE_INT_KEYS:
            if key in config and (not isinstance(config[key], int) or config[key] <= 0):
                raise ValidationError(f"{key} must be a positive integer")

        for key in _NON_NEGATIVE_INT_KEYS:
            if key in config and (not isinstance(config[key], int) or config[key] < 0):
                raise ValidationError(f"{key} must be a non-negative integer")

        if 'server_port' in config and config['server_port'] > 65535:
            raise ValidationError("server_port must be at most 65535")

        if 'request_timeout' in config:
            timeout = config['request_timeout']
            if not isinstance(timeout, (int, float)) or timeout <= 0:
                raise ValidationError("request_timeout must be a positive number")

        if 'providers' in config:
            if not isinstance(config['providers'], list):
                raise ValidationError("providers must be a list")
            for provider in config['providers']:
                if not isinstance(provider, dict) or 'name' not in provider or 'url' not in provider:
                    raise ValidationError("each provider needs a name and a url")

        if 'logging' in config and not isinstance(config['logging'], dict):
            raise ValidationError("logging must be a dictionary")

        return True

    def build_engine_config(self, config: Dict[str, Any]) -> EngineConfig:
        """Turn a validated config dict into EngineConfig"""
        self.validate_config(config)

        user_agent = config.get('user_agent', DEFAULT_USER_AGENT)
        provider_defs = config.get('providers') or DEFAULT_PROVIDERS
        providers = [
            TileProvider(
                name=p['name'],
                url=p['url'],
                headers=p.get('headers') or {'User-Agent': user_agent},
                subdomains=p.get('subdomains', ['a', 'b', 'c']),
            )
            for p in provider_defs
        ]

        kwargs = {key: config[key] for key in _DIRECTORY_KEYS if key in config}
        for key in _POSITIVE_INT_KEYS + _NON_NEGATIVE_INT_KEYS:
            if key in config:
                kwargs[key] = config[key]
        if 'server_host' in config:
            kwargs['server_host'] = config['server_host']
        if 'request_timeout' in config:
            kwargs['request_timeout'] = float(config['request_timeout'])

        return EngineConfig(user_agent=user_agent, providers=providers,
                            logging=config.get('logging', {}), **kwargs)
