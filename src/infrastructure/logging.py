"""Logging configuration"""
import logging
import sys
from typing import Dict, Any


class LoggingManager:
    """Manages application logging configuration"""

    DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    @staticmethod
    def setup_logging(config: Dict[str, Any]) -> None:
        """Setup logging from the 'logging' section of the engine config"""
        logging_config = config.get('logging', {}) or {}

        level = getattr(logging, str(logging_config.get('level', 'INFO')).upper(), logging.INFO)
        format_str = logging_config.get('format', LoggingManager.DEFAULT_FORMAT)

        handlers = [logging.StreamHandler(sys.stdout)]
        log_file = logging_config.get('file')
        if log_file:
            handlers.append(logging.FileHandler(log_file, encoding='utf-8'))

        logging.basicConfig(
            level=level,
            format=format_str,
            handlers=handlers
        )

        # Third-party chatter
        logging.getLogger('urllib3').setLevel(logging.WARNING)
        logging.getLogger('requests').setLevel(logging.WARNING)
        logging.getLogger('PIL').setLevel(logging.WARNING)
