"""Topology configuration management.

Configuration is built-in with an optional YAML override file:
- explicit --config path
- $VPC_DRIVER_CONFIG environment variable
- ./vpc-driver.yaml in the working directory

Every value has a default matching the reference three-tier deployment,
so a bare `vpc-driver provision` works without any file.
"""

import ipaddress
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml


class ConfigurationError(Exception):
    """A required fixed input cannot be resolved."""


ROLES = ('bastion', 'web', 'app')


@dataclass
class TopologyConfig:
    """Fixed inputs for one provision/deprovision pass.

    The operator CIDR is normally left empty and resolved once at the
    start of a provision run (see readiness.resolve_operator_cidr).
    """
    region: str = 'us-east-1'
    availability_zone: str = 'us-east-1a'
    project_tag: str = 'three-tier-vpc'
    name_prefix: str = 'three-tier'

    network_cidr: str = '10.0.0.0/16'
    public_subnet_cidr: str = '10.0.1.0/24'
    private_subnet_cidr: str = '10.0.2.0/24'
    operator_cidr: str = ''
    address_lookup_url: str = 'https://checkip.amazonaws.com'

    instance_type: str = 't2.micro'
    image_owner: str = 'amazon'
    image_name_filter: str = 'amzn2-ami-hvm-*-x86_64-gp2'
    image_id: str = ''
    key_name: str = 'three-tier-key'
    key_path: Path = field(default_factory=lambda: Path.home() / '.ssh' / 'three-tier-key.pem')
    login_user: str = 'ec2-user'

    # Role name -> path of a boot script passed as instance user data
    user_data: dict = field(default_factory=dict)

    nat_timeout: int = 600
    instance_timeout: int = 600
    delete_timeout: int = 600
    poll_interval: int = 15

    def __post_init__(self):
        if isinstance(self.key_path, str):
            self.key_path = Path(self.key_path).expanduser()

    def resource_name(self, suffix: str) -> str:
        """Name tag for a resource, e.g. 'three-tier-public-subnet'."""
        return f'{self.name_prefix}-{suffix}'

    def read_user_data(self, role: str) -> str:
        """Load the boot script for a role, or '' if none is configured."""
        path = self.user_data.get(role)
        if not path:
            return ''
        script = Path(path).expanduser()
        if not script.exists():
            raise ConfigurationError(f"User data for role '{role}' not found: {script}")
        return script.read_text(encoding='utf-8')

    def validate(self) -> None:
        """Check address ranges and names.

        Raises:
            ConfigurationError: On any invalid value
        """
        network = _parse_network('network_cidr', self.network_cidr)
        for key in ('public_subnet_cidr', 'private_subnet_cidr'):
            subnet = _parse_network(key, getattr(self, key))
            if not subnet.subnet_of(network):
                raise ConfigurationError(
                    f"{key}={subnet} is outside network_cidr={network}"
                )
        public = ipaddress.ip_network(self.public_subnet_cidr)
        private = ipaddress.ip_network(self.private_subnet_cidr)
        if public.overlaps(private):
            raise ConfigurationError(
                f"public_subnet_cidr={public} overlaps private_subnet_cidr={private}"
            )
        if self.operator_cidr:
            _parse_network('operator_cidr', self.operator_cidr)
        if not self.project_tag:
            raise ConfigurationError("project_tag must not be empty")
        if not self.availability_zone.startswith(self.region):
            raise ConfigurationError(
                f"availability_zone={self.availability_zone} is not in region={self.region}"
            )
        unknown_roles = set(self.user_data) - set(ROLES)
        if unknown_roles:
            raise ConfigurationError(
                f"user_data has unknown roles: {', '.join(sorted(unknown_roles))}"
            )


def _parse_network(key: str, value: str) -> ipaddress.IPv4Network:
    try:
        return ipaddress.IPv4Network(value, strict=True)
    except ValueError as e:
        raise ConfigurationError(f"{key}: invalid CIDR '{value}': {e}") from e


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"{path}: invalid YAML: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: expected a mapping at top level")
    return data


def get_config_path(path: Optional[str] = None) -> Optional[Path]:
    """Discover the configuration file.

    Resolution order:
    1. Explicit path (--config)
    2. $VPC_DRIVER_CONFIG environment variable
    3. ./vpc-driver.yaml
    """
    if path:
        explicit = Path(path)
        if not explicit.exists():
            raise ConfigurationError(f"Config file not found: {explicit}")
        return explicit

    if env_path := os.environ.get('VPC_DRIVER_CONFIG'):
        candidate = Path(env_path)
        if candidate.exists():
            return candidate
        raise ConfigurationError(f"VPC_DRIVER_CONFIG={env_path} does not exist")

    local = Path.cwd() / 'vpc-driver.yaml'
    if local.exists():
        return local

    return None


def load_config(path: Optional[str] = None, **overrides) -> TopologyConfig:
    """Build a TopologyConfig from defaults, an optional file and overrides.

    Args:
        path: Optional explicit config file
        **overrides: Values that win over the file (e.g. from CLI flags);
            None values are ignored

    Raises:
        ConfigurationError: On unknown keys or invalid values
    """
    values: dict = {}
    config_file = get_config_path(path)
    if config_file is not None:
        values.update(_parse_yaml(config_file))

    values.update({k: v for k, v in overrides.items() if v is not None})
    if 'region' in values and 'availability_zone' not in values:
        values['availability_zone'] = f"{values['region']}a"

    known = {f.name for f in fields(TopologyConfig)}
    unknown = set(values) - known
    if unknown:
        raise ConfigurationError(f"Unknown config keys: {', '.join(sorted(unknown))}")

    config = TopologyConfig(**values)
    config.validate()
    return config
