"""
Logging Configuration for the Meshtastic IRC bridge

Provides centralized logging setup with structured logging,
optional file rotation, and component-specific log levels.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Dict, Optional
import structlog


LOGGER_PREFIX = 'meshbridge'


class BridgeLogger:
    """
    Centralized logging configuration for the bridge
    """

    def __init__(self, config: Dict):
        self.config = config
        self.loggers: Dict[str, logging.Logger] = {}
        self._setup_logging()

    def _setup_logging(self):
        """Set up logging configuration"""
        log_config = self.config.get('logging', {}) or {}
        log_level = str(log_config.get('level', 'INFO')).upper()
        log_file = log_config.get('file')
        max_size = log_config.get('max_size', '10MB')
        backup_count = log_config.get('backup_count', 5)
        console_enabled = log_config.get('console', True)
        console_level = str(log_config.get('console_level', log_level)).upper()

        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.TimeStamper(fmt="ISO"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                structlog.processors.JSONRenderer()
            ],
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level))
        root_logger.handlers.clear()

        # File handler with rotation
        if log_file:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                log_path,
                maxBytes=self._parse_size(max_size),
                backupCount=backup_count,
                encoding='utf-8'
            )
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            ))
            file_handler.setLevel(getattr(logging, log_level))
            root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setFormatter(logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                datefmt='%H:%M:%S'
            ))
            console_handler.setLevel(getattr(logging, console_level))
            root_logger.addHandler(console_handler)

        # Component-specific log levels, e.g. {"chat": "DEBUG"}
        component_levels = log_config.get('components', {}) or {}
        for component, level in component_levels.items():
            component_logger = logging.getLogger(f'{LOGGER_PREFIX}.{component}')
            component_logger.setLevel(getattr(logging, str(level).upper()))

        self._configure_third_party_loggers()

    def _parse_size(self, size_str) -> int:
        """Parse size string like '10MB' to bytes"""
        size_str = str(size_str).upper()
        if size_str.endswith('KB'):
            return int(size_str[:-2]) * 1024
        elif size_str.endswith('MB'):
            return int(size_str[:-2]) * 1024 * 1024
        elif size_str.endswith('GB'):
            return int(size_str[:-2]) * 1024 * 1024 * 1024
        else:
            return int(size_str)

    def _configure_third_party_loggers(self):
        """Configure third-party library loggers to reduce noise"""
        noisy_loggers = [
            'asyncio',
            'irc.client',
            'irc.client_aio',
            'paho',
            'meshtastic',
            'meshtastic.serial_interface',
            'meshtastic.stream_interface',
            'meshtastic.mesh_interface',
        ]

        for logger_name in noisy_loggers:
            logging.getLogger(logger_name).setLevel(logging.WARNING)

    def get_logger(self, name: str) -> logging.Logger:
        """Get a logger for a specific component"""
        if name not in self.loggers:
            full_name = name if name.startswith(LOGGER_PREFIX) else f'{LOGGER_PREFIX}.{name}'
            self.loggers[name] = logging.getLogger(full_name)

        return self.loggers[name]

    def get_structured_logger(self, name: str) -> structlog.stdlib.BoundLogger:
        """Get a structured logger for a specific component"""
        return structlog.get_logger(f'{LOGGER_PREFIX}.{name}')


# Global logger instance
_logger_instance: Optional[BridgeLogger] = None


def initialize_logging(config: Dict) -> BridgeLogger:
    """Initialize the global logging system"""
    global _logger_instance
    _logger_instance = BridgeLogger(config)
    return _logger_instance


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance"""
    if _logger_instance is None:
        # Fallback to basic logging if not initialized
        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        return logging.getLogger(f'{LOGGER_PREFIX}.{name}')

    return _logger_instance.get_logger(name)


def get_structured_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance"""
    if _logger_instance is None:
        # Initialize with minimal config
        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="ISO"),
                structlog.processors.JSONRenderer()
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )
        return structlog.get_logger(f'{LOGGER_PREFIX}.{name}')

    return _logger_instance.get_structured_logger(name)
