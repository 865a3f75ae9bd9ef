"""
Configuration loading and management for LDAP SCIM Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults, and resolves the LDAP bind credentials either
inline or from a file depending on the execution environment.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional
from urllib.parse import urlparse

from ldap_scim_sync.sync import LOOKUP_ERROR_POLICIES, LOOKUP_ERRORS_TREAT_AS_MISSING

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = 'config.yaml'

TRUE_VALUES = ('1', 'true', 'yes', 'on')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


def parse_bool(value: Any) -> bool:
    """Interpret a YAML or environment value as a boolean."""
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in TRUE_VALUES


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for connection and sensitive fields
    ENV_OVERRIDES = {
        'ldap.server_url': 'LDAP_SERVER_URL',
        'ldap.bind_dn': 'LDAP_BIND_DN',
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'scim.endpoint': 'SCIM_ENDPOINT',
        'scim.access_token': 'SCIM_ACCESS_TOKEN',
        'runtime.inline_credentials': 'SYNC_INLINE_CREDENTIALS',
        'sync.lookup_errors': 'SYNC_LOOKUP_ERRORS',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.explicit_path = config_path or os.getenv('CONFIG_PATH')
        self.config_path = self.explicit_path or DEFAULT_CONFIG_PATH
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        A missing file is only tolerated when no path was given explicitly,
        in which case configuration comes from the environment alone.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            if self.explicit_path:
                raise ConfigurationError(f"Configuration file not found: {self.config_path}")
            logger.info(f"No {self.config_path} found, using environment configuration only")
            self.config = {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        ldap_config = self.config.get('ldap') or {}
        for field in ['server_url', 'bind_dn', 'bind_password']:
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")

        scim_config = self.config.get('scim') or {}
        for field in ['endpoint', 'access_token']:
            if not scim_config.get(field):
                errors.append(f"Missing required SCIM field: {field}")

        endpoint = scim_config.get('endpoint')
        if endpoint:
            parsed = urlparse(str(endpoint))
            if parsed.scheme not in ('http', 'https') or not parsed.netloc:
                errors.append(f"SCIM endpoint must be an http(s) URL: {endpoint}")

        max_retries = scim_config.get('max_retries', 0)
        if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0:
            errors.append(f"scim.max_retries must be a non-negative integer: {max_retries}")

        sync_config = self.config.get('sync') or {}
        lookup_errors = sync_config.get('lookup_errors', LOOKUP_ERRORS_TREAT_AS_MISSING)
        if lookup_errors not in LOOKUP_ERROR_POLICIES:
            errors.append(f"sync.lookup_errors must be one of {', '.join(LOOKUP_ERROR_POLICIES)}: {lookup_errors}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        ldap_defaults = {
            'user_base_dn': '',
            'user_filter': '(&(objectClass=person)(mail=*))',
            'group_base_dn': '',
            'group_filter': '(objectClass=group)',
            'group_name_attribute': 'cn',
            'use_memberof': True,
            'page_size': 1000,
        }
        self._merge_defaults('ldap', ldap_defaults)

        scim_defaults = {
            'verify_ssl': True,
            'timeout': 30,
            'page_size': 100,
            'max_retries': 0,
            'retry_wait_seconds': 5,
        }
        self._merge_defaults('scim', scim_defaults)

        runtime_config = self._merge_defaults('runtime', {'inline_credentials': False})
        runtime_config['inline_credentials'] = parse_bool(runtime_config['inline_credentials'])

        self._merge_defaults('sync', {'lookup_errors': LOOKUP_ERRORS_TREAT_AS_MISSING})

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'WARNING',
        }
        self._merge_defaults('logging', logging_defaults)

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
        }
        self._merge_defaults('error_handling', error_defaults)

    def _merge_defaults(self, section: str, defaults: Dict[str, Any]) -> Dict[str, Any]:
        section_config = self.config.get(section)
        if not isinstance(section_config, dict):
            section_config = {}
            self.config[section] = section_config
        for key, value in defaults.items():
            section_config.setdefault(key, value)
        return section_config


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()


def load_source_credentials(config: Dict[str, Any]) -> str:
    """
    Resolve the LDAP bind password.

    When runtime.inline_credentials is set (containers, serverless functions)
    ldap.bind_password holds the password itself. Otherwise it holds the path
    of a file containing the password; only a trailing line break is removed
    from its contents.

    Raises:
        ConfigurationError: If the credentials file cannot be read
    """
    credentials = config['ldap']['bind_password']

    if config.get('runtime', {}).get('inline_credentials', False):
        return credentials

    try:
        with open(credentials, 'r', encoding='utf-8') as f:
            password = f.read().rstrip('\r\n')
    except OSError as e:
        # The path is not echoed in case a password was configured inline by mistake
        raise ConfigurationError(f"Cannot read LDAP credentials file: {e.strerror}")

    if not password:
        raise ConfigurationError("LDAP credentials file is empty")

    logger.debug("Loaded LDAP credentials from file")
    return password
