"""
Configuration Management for the authpipe client.

This module handles client configuration including server URL, request
timeout, credential storage and logging settings, with support for
configuration files and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict, Any
from configparser import ConfigParser, Error as ConfigParserError

from authpipe.shared.exceptions import ConfigurationError, ErrorCode
from authpipe.shared.logging_config import LogLevel, LogFormat

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Dict[str, Any]] = {
    'server': {
        'url': 'http://localhost:8080',
        'timeout': 10.0,
        'refresh_path': '/auth/refresh',
        'verify_ssl': True
    },
    'storage': {
        'service_name': 'authpipe',
        'storage_dir': None,
        'use_keyring': True
    },
    'logging': {
        'level': 'INFO',
        'format': 'standard',
        'file': None,
        'max_size': 10485760,  # 10MB
        'backup_count': 3
    }
}

ENV_MAPPINGS = {
    'AUTHPIPE_SERVER_URL': ('server', 'url'),
    'AUTHPIPE_TIMEOUT': ('server', 'timeout'),
    'AUTHPIPE_REFRESH_PATH': ('server', 'refresh_path'),
    'AUTHPIPE_VERIFY_SSL': ('server', 'verify_ssl'),
    'AUTHPIPE_STORAGE_DIR': ('storage', 'storage_dir'),
    'AUTHPIPE_USE_KEYRING': ('storage', 'use_keyring'),
    'AUTHPIPE_LOG_LEVEL': ('logging', 'level'),
    'AUTHPIPE_LOG_FORMAT': ('logging', 'format'),
    'AUTHPIPE_LOG_FILE': ('logging', 'file'),
}


def parse_config_value(value: str) -> Any:
    """Parse a raw INI or command line value, keeping JSON types where present."""
    try:
        return json.loads(value)
    except (json.JSONDecodeError, ValueError):
        return value


def _to_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ('true', 'yes', 'on', '1', 'false', 'no', 'off', '0'):
        return value.lower() in ('true', 'yes', 'on', '1')
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    raise ConfigurationError(f"Invalid boolean for {key}: {value!r}", config_key=key)


class ClientConfiguration:
    """
    Configuration manager for the authpipe client.

    Supports configuration from:
    1. Command line arguments (highest priority)
    2. Environment variables
    3. Configuration file
    4. Default values (lowest priority)
    """

    def __init__(self, config_file: Optional[str] = None):
        self._config_file = config_file or self._get_default_config_path()
        self._config_data: Dict[str, Any] = {}
        self._overrides: Dict[str, Any] = {}

        # Load configuration
        self._load_configuration()

    def _get_default_config_path(self) -> str:
        """Get default configuration file path."""
        xdg_config = os.environ.get('XDG_CONFIG_HOME')
        config_dir = Path(xdg_config) / 'authpipe' if xdg_config else Path.home() / '.config' / 'authpipe'
        return str(config_dir / 'client.conf')

    def _load_configuration(self) -> None:
        """Load configuration from file and environment variables."""
        if os.path.exists(self._config_file):
            self._load_from_file()
            logger.info(f"Configuration loaded from: {self._config_file}")
        else:
            logger.debug(f"Configuration file not found: {self._config_file}")

        self._load_from_environment()
        self._set_defaults()
        self._validate()

    def _load_from_file(self) -> None:
        """Load configuration from INI file."""
        config = ConfigParser()
        try:
            config.read(self._config_file)
        except ConfigParserError as e:
            raise ConfigurationError(
                f"Invalid configuration file {self._config_file}: {e}",
                error_code=ErrorCode.CONFIG_INVALID_FORMAT,
                cause=e
            )

        for section_name in config.sections():
            section_data = {}
            for key, value in config[section_name].items():
                section_data[key] = parse_config_value(value)

            self._config_data[section_name] = section_data

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables."""
        for env_var, (section, key) in ENV_MAPPINGS.items():
            value = os.environ.get(env_var)
            if value is not None:
                self._config_data.setdefault(section, {})[key] = value

    def _set_defaults(self) -> None:
        """Merge default values into missing keys."""
        for section, section_defaults in DEFAULTS.items():
            section_data = self._config_data.setdefault(section, {})
            for key, default_value in section_defaults.items():
                if key not in section_data:
                    section_data[key] = default_value

    def _validate(self) -> None:
        """
        Normalize typed values and reject invalid ones.

        Raises:
            ConfigurationError: If any value cannot be used
        """
        server = self._config_data['server']
        url = str(server['url'])
        if not url.startswith(('http://', 'https://')):
            raise ConfigurationError(f"Invalid server URL: {url!r}", config_key='server.url')
        server['url'] = url.rstrip('/')

        try:
            timeout = float(server['timeout'])
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid timeout: {server['timeout']!r}", config_key='server.timeout')
        if timeout <= 0:
            raise ConfigurationError(f"Timeout must be positive, got {timeout}", config_key='server.timeout')
        server['timeout'] = timeout

        refresh_path = str(server['refresh_path'])
        server['refresh_path'] = refresh_path if refresh_path.startswith('/') else f'/{refresh_path}'
        server['verify_ssl'] = _to_bool('server.verify_ssl', server['verify_ssl'])

        storage = self._config_data['storage']
        storage['use_keyring'] = _to_bool('storage.use_keyring', storage['use_keyring'])

        log_config = self._config_data['logging']
        level = str(log_config['level']).upper()
        if level not in LogLevel.__members__:
            raise ConfigurationError(f"Invalid log level: {log_config['level']!r}", config_key='logging.level')
        log_config['level'] = level

        log_format = str(log_config['format']).lower()
        if log_format not in [f.value for f in LogFormat]:
            raise ConfigurationError(f"Invalid log format: {log_config['format']!r}", config_key='logging.format')
        log_config['format'] = log_format

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if key in self._overrides:
            return self._overrides[key]

        if '.' not in key:
            return self._config_data.get(key, default)

        section, config_key = key.split('.', 1)
        return self._config_data.get(section, {}).get(config_key, default)

    def set_config(self, key: str, value: Any) -> None:
        """
        Set configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            value: Value to set
        """
        if '.' not in key:
            raise ConfigurationError(f"Configuration key must be 'section.key', got {key!r}", config_key=key)

        section, config_key = key.split('.', 1)
        if config_key not in DEFAULTS.get(section, {}):
            raise ConfigurationError(f"Unknown configuration key: {key!r}", config_key=key)

        self._config_data.setdefault(section, {})[config_key] = value

    def set_override(self, key: str, value: Any) -> None:
        """
        Set configuration override (highest priority).

        Args:
            key: Configuration key in format 'section.key'
            value: Override value
        """
        self._overrides[key] = value

    def save_configuration(self) -> None:
        """
        Validate the current configuration and save it to file.

        Raises:
            ConfigurationError: If a value is invalid; nothing is written
        """
        self._validate()
        config = ConfigParser()

        for section_name, section_data in self._config_data.items():
            config.add_section(section_name)
            for key, value in section_data.items():
                if value is None:
                    continue
                if isinstance(value, (bool, dict, list)):
                    config.set(section_name, key, json.dumps(value))
                else:
                    config.set(section_name, key, str(value))

        config_path = Path(self._config_file)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, 'w') as f:
            config.write(f)

        logger.info(f"Configuration saved to: {self._config_file}")

    def get_all_config(self) -> Dict[str, Any]:
        """Get all configuration data."""
        return {section: dict(values) for section, values in self._config_data.items()}

    def get_config_file_path(self) -> str:
        """Get configuration file path."""
        return self._config_file

    # Convenience methods for common configuration values

    def get_server_url(self) -> str:
        """Get server URL."""
        return str(self.get_config('server.url')).rstrip('/')

    def get_server_timeout(self) -> float:
        """Get server request timeout in seconds."""
        return float(self.get_config('server.timeout', 10.0))

    def get_refresh_path(self) -> str:
        """Get the token refresh endpoint path."""
        return self.get_config('server.refresh_path', '/auth/refresh')

    def get_verify_ssl(self) -> bool:
        return _to_bool('server.verify_ssl', self.get_config('server.verify_ssl', True))

    def get_service_name(self) -> str:
        """Get keyring service name."""
        return self.get_config('storage.service_name', 'authpipe')

    def get_storage_dir(self) -> Optional[str]:
        """Get directory for the encrypted credentials file."""
        return self.get_config('storage.storage_dir')

    def use_keyring(self) -> bool:
        """Check if the system keyring should be used."""
        return _to_bool('storage.use_keyring', self.get_config('storage.use_keyring', True))

    def get_log_level(self) -> LogLevel:
        """Get logging level."""
        return LogLevel[str(self.get_config('logging.level', 'INFO')).upper()]

    def get_log_format(self) -> LogFormat:
        """Get logging format."""
        return LogFormat(str(self.get_config('logging.format', 'standard')).lower())

    def get_log_file(self) -> Optional[str]:
        """Get log file path."""
        return self.get_config('logging.file')

    def get_log_max_size(self) -> int:
        return int(self.get_config('logging.max_size', 10485760))

    def get_log_backup_count(self) -> int:
        return int(self.get_config('logging.backup_count', 3))
