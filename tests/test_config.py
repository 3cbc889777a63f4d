#!/usr/bin/env python3
"""Tests for config.py - topology configuration and discovery.

Tests verify:
1. Config file discovery (explicit path, env var, working directory)
2. YAML loading and override precedence
3. TopologyConfig validation of address ranges and names
4. User data loading per role
"""

import os
import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from config import (
    ConfigurationError,
    TopologyConfig,
    get_config_path,
    load_config,
    _parse_yaml,
)


class TestGetConfigPath:
    """Test config file discovery logic."""

    def test_explicit_path(self, config_file):
        """Explicit --config path should be used as-is."""
        path = config_file('region: us-east-1\n')
        assert get_config_path(str(path)) == path

    def test_explicit_path_missing(self, tmp_path):
        """Missing explicit path should raise."""
        with pytest.raises(ConfigurationError, match='not found'):
            get_config_path(str(tmp_path / 'nope.yaml'))

    def test_env_var(self, config_file, tmp_path, monkeypatch):
        """VPC_DRIVER_CONFIG should be used when no explicit path is given."""
        path = config_file('region: us-east-1\n')
        monkeypatch.setenv('VPC_DRIVER_CONFIG', str(path))
        monkeypatch.chdir(tmp_path)
        assert get_config_path() == path

    def test_env_var_missing_file(self, tmp_path, monkeypatch):
        """VPC_DRIVER_CONFIG pointing nowhere should raise."""
        monkeypatch.setenv('VPC_DRIVER_CONFIG', str(tmp_path / 'gone.yaml'))
        with pytest.raises(ConfigurationError):
            get_config_path()

    def test_working_directory(self, config_file, tmp_path, monkeypatch):
        """./vpc-driver.yaml should be found last."""
        path = config_file('region: us-east-1\n')
        monkeypatch.delenv('VPC_DRIVER_CONFIG', raising=False)
        monkeypatch.chdir(tmp_path)
        assert get_config_path() == path

    def test_none_found(self, tmp_path, monkeypatch):
        """No file anywhere means built-in defaults."""
        monkeypatch.delenv('VPC_DRIVER_CONFIG', raising=False)
        monkeypatch.chdir(tmp_path)
        assert get_config_path() is None


class TestParseYaml:
    """Test YAML parsing."""

    def test_mapping(self, config_file):
        path = config_file('region: eu-west-1\ninstance_type: t3.small\n')
        assert _parse_yaml(path) == {'region': 'eu-west-1', 'instance_type': 't3.small'}

    def test_empty_file(self, config_file):
        assert _parse_yaml(config_file('')) == {}

    def test_not_a_mapping(self, config_file):
        with pytest.raises(ConfigurationError, match='mapping'):
            _parse_yaml(config_file('- a\n- b\n'))

    def test_invalid_yaml(self, config_file):
        with pytest.raises(ConfigurationError, match='invalid YAML'):
            _parse_yaml(config_file('region: [unclosed\n'))


class TestLoadConfig:
    """Test load_config precedence."""

    @pytest.fixture(autouse=True)
    def _isolated(self, tmp_path, monkeypatch):
        monkeypatch.delenv('VPC_DRIVER_CONFIG', raising=False)
        monkeypatch.chdir(tmp_path)

    def test_defaults(self):
        """Bare load should give the reference deployment."""
        config = load_config()
        assert config.region == 'us-east-1'
        assert config.network_cidr == '10.0.0.0/16'
        assert config.public_subnet_cidr == '10.0.1.0/24'
        assert config.private_subnet_cidr == '10.0.2.0/24'
        assert config.project_tag == 'three-tier-vpc'
        assert config.key_name == 'three-tier-key'

    def test_file_values(self, config_file):
        path = config_file(
            'region: eu-west-1\n'
            'availability_zone: eu-west-1b\n'
            'key_path: ~/keys/demo.pem\n'
        )
        config = load_config(str(path))
        assert config.region == 'eu-west-1'
        assert config.availability_zone == 'eu-west-1b'
        assert config.key_path == Path('~/keys/demo.pem').expanduser()

    def test_overrides_win(self, config_file):
        path = config_file('project_tag: from-file\n')
        config = load_config(str(path), project_tag='from-cli', region=None)
        assert config.project_tag == 'from-cli'
        assert config.region == 'us-east-1'

    def test_region_without_zone_derives_zone(self, config_file):
        path = config_file('region: eu-west-1\n')
        assert load_config(str(path)).availability_zone == 'eu-west-1a'

    def test_region_override_keeps_file_zone(self, config_file):
        path = config_file('availability_zone: eu-west-1b\n')
        config = load_config(str(path), region='eu-west-1')
        assert config.availability_zone == 'eu-west-1b'

    def test_unknown_key(self, config_file):
        path = config_file('regoin: us-east-1\n')
        with pytest.raises(ConfigurationError, match='regoin'):
            load_config(str(path))

    def test_invalid_values_rejected(self, config_file):
        path = config_file('public_subnet_cidr: 10.9.1.0/24\n')
        with pytest.raises(ConfigurationError, match='outside'):
            load_config(str(path))


class TestTopologyConfig:
    """Test TopologyConfig dataclass behavior."""

    def test_resource_name(self):
        assert TopologyConfig().resource_name('public-subnet') == 'three-tier-public-subnet'

    def test_key_path_string_expanded(self):
        with patch.dict(os.environ, {'HOME': '/home/tester'}):
            config = TopologyConfig(key_path='~/.ssh/k.pem')
        assert config.key_path == Path('/home/tester/.ssh/k.pem')

    def test_valid_defaults(self):
        TopologyConfig().validate()

    @pytest.mark.parametrize('overrides, message', [
        ({'network_cidr': '10.0.0.0/33'}, 'invalid CIDR'),
        ({'network_cidr': '10.0.0.1/16'}, 'invalid CIDR'),
        ({'private_subnet_cidr': '192.168.0.0/24'}, 'outside'),
        ({'private_subnet_cidr': '10.0.1.0/25'}, 'overlaps'),
        ({'operator_cidr': 'not-an-address'}, 'operator_cidr'),
        ({'project_tag': ''}, 'project_tag'),
        ({'availability_zone': 'eu-west-1a'}, 'not in region'),
        ({'user_data': {'db': 'boot.sh'}}, 'unknown roles'),
    ])
    def test_invalid(self, overrides, message):
        with pytest.raises(ConfigurationError, match=message):
            TopologyConfig(**overrides).validate()


class TestReadUserData:
    """Test per-role boot scripts."""

    def test_none_configured(self):
        assert TopologyConfig().read_user_data('web') == ''

    def test_reads_script(self, tmp_path):
        script = tmp_path / 'web.sh'
        script.write_text('#!/bin/bash\nyum install -y httpd\n')
        config = TopologyConfig(user_data={'web': str(script)})
        assert 'httpd' in config.read_user_data('web')
        assert config.read_user_data('app') == ''

    def test_missing_script(self, tmp_path):
        config = TopologyConfig(user_data={'web': str(tmp_path / 'missing.sh')})
        with pytest.raises(ConfigurationError, match='web'):
            config.read_user_data('web')
