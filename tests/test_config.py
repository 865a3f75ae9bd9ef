#!/usr/bin/env python3
"""
Unit tests for configuration module.

This module provides unit tests for configuration loading, validation,
environment variable overrides and LDAP credential resolution.
"""

import os
import sys
import tempfile
import yaml
import unittest
from unittest.mock import patch
from typing import Dict, Any

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_scim_sync.config import (
    ConfigLoader,
    ConfigurationError,
    load_config,
    load_source_credentials,
    parse_bool,
)


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader class."""

    def setUp(self):
        """Set up test fixtures."""
        self.valid_config = {
            'ldap': {
                'server_url': 'ldaps://ldap.example.com:636',
                'bind_dn': 'CN=Service,DC=example,DC=com',
                'bind_password': '/run/secrets/ldap_password',
                'user_base_dn': 'OU=Users,DC=example,DC=com',
            },
            'scim': {
                'endpoint': 'https://scim.example.com/scim/v2',
                'access_token': 'scim-token',
            },
            'logging': {
                'level': 'DEBUG',
            },
        }
        self.temp_files = []

        env_patcher = patch.dict(os.environ, {}, clear=True)
        env_patcher.start()
        self.addCleanup(env_patcher.stop)

    def tearDown(self):
        for path in self.temp_files:
            if os.path.exists(path):
                os.unlink(path)

    def create_test_config(self, config_data: Dict[str, Any]) -> str:
        """Create a temporary config file with the given data."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            yaml.safe_dump(config_data, f)
        self.temp_files.append(f.name)
        return f.name

    def test_valid_config(self):
        """Test loading a valid configuration applies defaults."""
        config = ConfigLoader(self.create_test_config(self.valid_config)).load()

        self.assertEqual(config['ldap']['server_url'], 'ldaps://ldap.example.com:636')
        self.assertEqual(config['ldap']['group_name_attribute'], 'cn')
        self.assertTrue(config['ldap']['use_memberof'])
        self.assertEqual(config['scim']['max_retries'], 0)
        self.assertEqual(config['scim']['page_size'], 100)
        self.assertFalse(config['runtime']['inline_credentials'])
        self.assertEqual(config['sync']['lookup_errors'], 'treat_as_missing')
        self.assertEqual(config['logging']['level'], 'DEBUG')
        self.assertEqual(config['logging']['retention_days'], 7)
        self.assertEqual(config['error_handling']['max_retries'], 3)

    def test_missing_required_fields(self):
        """All missing fields are reported together."""
        config_file = self.create_test_config({'ldap': {'server_url': 'ldap://x'}})

        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(config_file).load()

        message = str(ctx.exception)
        self.assertIn('bind_dn', message)
        self.assertIn('bind_password', message)
        self.assertIn('endpoint', message)
        self.assertIn('access_token', message)

    def test_invalid_endpoint(self):
        self.valid_config['scim']['endpoint'] = 'scim.example.com/v2'
        config_file = self.create_test_config(self.valid_config)

        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(config_file).load()
        self.assertIn('http(s) URL', str(ctx.exception))

    def test_invalid_lookup_policy(self):
        self.valid_config['sync'] = {'lookup_errors': 'ignore'}
        config_file = self.create_test_config(self.valid_config)

        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(config_file).load()
        self.assertIn('lookup_errors', str(ctx.exception))

    def test_invalid_scim_max_retries(self):
        for value in (-1, 'three', 1.5, True):
            self.valid_config['scim']['max_retries'] = value
            config_file = self.create_test_config(self.valid_config)

            with self.assertRaises(ConfigurationError, msg=repr(value)) as ctx:
                ConfigLoader(config_file).load()
            self.assertIn('scim.max_retries', str(ctx.exception))

    def test_scim_max_retries_accepted(self):
        self.valid_config['scim']['max_retries'] = 2
        config = ConfigLoader(self.create_test_config(self.valid_config)).load()
        self.assertEqual(config['scim']['max_retries'], 2)

    def test_env_var_overrides(self):
        """Test environment variable overrides for connection and sensitive data."""
        config_file = self.create_test_config(self.valid_config)

        with patch.dict(os.environ, {
            'LDAP_BIND_PASSWORD': 'env-password',
            'SCIM_ACCESS_TOKEN': 'env-token',
            'SYNC_INLINE_CREDENTIALS': 'true',
            'SYNC_LOOKUP_ERRORS': 'raise',
        }):
            config = ConfigLoader(config_file).load()

        self.assertEqual(config['ldap']['bind_password'], 'env-password')
        self.assertEqual(config['scim']['access_token'], 'env-token')
        self.assertIs(config['runtime']['inline_credentials'], True)
        self.assertEqual(config['sync']['lookup_errors'], 'raise')

    def test_environment_only_configuration(self):
        """Without a config file the environment supplies everything."""
        with tempfile.TemporaryDirectory() as temp_dir:
            cwd = os.getcwd()
            os.chdir(temp_dir)
            try:
                with patch.dict(os.environ, {
                    'LDAP_SERVER_URL': 'ldap://ldap.example.com',
                    'LDAP_BIND_DN': 'CN=svc,DC=example,DC=com',
                    'LDAP_BIND_PASSWORD': 'secret',
                    'SCIM_ENDPOINT': 'https://scim.example.com/v2',
                    'SCIM_ACCESS_TOKEN': 'token',
                }):
                    config = load_config()
            finally:
                os.chdir(cwd)

        self.assertEqual(config['ldap']['server_url'], 'ldap://ldap.example.com')
        self.assertEqual(config['scim']['endpoint'], 'https://scim.example.com/v2')

    def test_explicit_missing_file(self):
        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader('/nonexistent/config.yaml').load()
        self.assertIn('not found', str(ctx.exception))

    def test_config_path_env_var(self):
        config_file = self.create_test_config(self.valid_config)
        with patch.dict(os.environ, {'CONFIG_PATH': config_file}):
            loader = ConfigLoader()
        self.assertEqual(loader.config_path, config_file)

    def test_invalid_yaml(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write("ldap: [unclosed\n")
        self.temp_files.append(f.name)

        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(f.name).load()
        self.assertIn('Invalid YAML', str(ctx.exception))

    def test_non_mapping_root(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write("- just\n- a list\n")
        self.temp_files.append(f.name)

        with self.assertRaises(ConfigurationError):
            ConfigLoader(f.name).load()


class TestParseBool(unittest.TestCase):

    def test_values(self):
        for value in (True, 'true', 'TRUE', '1', 'yes', 'on'):
            self.assertTrue(parse_bool(value), value)
        for value in (False, 'false', '0', 'no', '', 'off'):
            self.assertFalse(parse_bool(value), value)


class TestSourceCredentials(unittest.TestCase):
    """Test cases for load_source_credentials()."""

    def make_config(self, bind_password, inline):
        return {
            'ldap': {'bind_password': bind_password},
            'runtime': {'inline_credentials': inline},
        }

    def test_inline_credentials(self):
        config = self.make_config('p@ssw0rd', inline=True)
        self.assertEqual(load_source_credentials(config), 'p@ssw0rd')

    def test_credentials_file(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.txt', delete=False) as f:
            f.write("from-file\n")
        try:
            config = self.make_config(f.name, inline=False)
            self.assertEqual(load_source_credentials(config), 'from-file')
        finally:
            os.unlink(f.name)

    def test_credentials_file_keeps_surrounding_spaces(self):
        """Only the trailing line break is removed from the file contents."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.txt', delete=False, newline='') as f:
            f.write(" pass word \r\n")
        try:
            config = self.make_config(f.name, inline=False)
            self.assertEqual(load_source_credentials(config), ' pass word ')
        finally:
            os.unlink(f.name)

    def test_unreadable_credentials_file(self):
        config = self.make_config('not-a-real-path-s3cret', inline=False)

        with self.assertRaises(ConfigurationError) as ctx:
            load_source_credentials(config)
        self.assertNotIn('s3cret', str(ctx.exception))

    def test_empty_credentials_file(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.txt', delete=False) as f:
            f.write("\n")
        try:
            with self.assertRaises(ConfigurationError) as ctx:
                load_source_credentials(self.make_config(f.name, inline=False))
            self.assertIn('empty', str(ctx.exception))
        finally:
            os.unlink(f.name)


if __name__ == '__main__':
    unittest.main()
