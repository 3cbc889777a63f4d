"""Shared pytest fixtures for vpc-driver tests."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import TopologyConfig
from fake_gateway import FakeGateway
from topology.provisioner import Provisioner

OPERATOR_CIDR = '203.0.113.7/32'


@pytest.fixture
def config(tmp_path):
    """Default topology config with a fixed operator address and a temp key path."""
    return TopologyConfig(
        operator_cidr=OPERATOR_CIDR,
        key_path=tmp_path / 'ssh' / 'three-tier-key.pem',
        poll_interval=0,
    )


@pytest.fixture
def gateway():
    """Empty in-memory Cloud Gateway."""
    return FakeGateway()


@pytest.fixture
def provisioned(gateway, config):
    """Topology fully provisioned against the fake gateway."""
    return Provisioner(gateway=gateway).provision(config)


@pytest.fixture
def config_file(tmp_path):
    """Write a YAML config file and return its path."""
    def _write(content: str) -> Path:
        path = tmp_path / 'vpc-driver.yaml'
        path.write_text(content)
        return path
    return _write
