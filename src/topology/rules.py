"""Firewall rule tables and role policies for the three tiers."""

from config import TopologyConfig

ANYWHERE = '0.0.0.0/0'
EPHEMERAL_PORTS = (1024, 65535)

POLICY_ARN_PREFIX = 'arn:aws:iam::aws:policy/'

ROLE_POLICIES: dict[str, tuple[str, ...]] = {
    'bastion': (
        'AmazonSSMManagedInstanceCore',
    ),
    'web': (
        'AmazonS3ReadOnlyAccess',
        'CloudWatchLogsFullAccess',
        'AmazonSSMManagedInstanceCore',
    ),
    'app': (
        'AmazonDynamoDBFullAccess',
        'CloudWatchLogsFullAccess',
        'AmazonSSMManagedInstanceCore',
    ),
}

ROLE_DESCRIPTIONS = {
    'bastion': 'Bastion host role for SSH access',
    'web': 'Web server role with S3 and CloudWatch access',
    'app': 'Application server role with DynamoDB and CloudWatch access',
}

SECURITY_GROUP_DESCRIPTIONS = {
    'bastion': 'Security group for bastion host',
    'web': 'Security group for web servers',
    'app': 'Security group for application servers',
}


def policy_arns(role: str) -> list[str]:
    """Managed policy ARNs attached to a role."""
    return [POLICY_ARN_PREFIX + name for name in ROLE_POLICIES[role]]


def security_group_ingress(role: str, config: TopologyConfig, operator_cidr: str,
                           group_ids: dict[str, str]) -> list[dict]:
    """Ingress rules for one tier's security group.

    Args:
        role: bastion, web or app
        config: Topology configuration
        operator_cidr: Resolved operator address (/32)
        group_ids: Role -> security group id for already created groups

    Returns:
        List of {'port', 'protocol', 'cidr' | 'source_group_id'}
    """
    if role == 'bastion':
        return [{'port': 22, 'protocol': 'tcp', 'cidr': operator_cidr}]
    if role == 'web':
        return [
            {'port': 80, 'protocol': 'tcp', 'cidr': ANYWHERE},
            {'port': 443, 'protocol': 'tcp', 'cidr': ANYWHERE},
            {'port': 22, 'protocol': 'tcp', 'source_group_id': group_ids['bastion']},
        ]
    if role == 'app':
        return [
            {'port': 8080, 'protocol': 'tcp', 'source_group_id': group_ids['web']},
            {'port': 22, 'protocol': 'tcp', 'source_group_id': group_ids['bastion']},
        ]
    raise ValueError(f"Unknown role: {role}")


def _entry(rule_number: int, egress: bool, cidr: str, ports) -> dict:
    if isinstance(ports, int):
        ports = (ports, ports)
    return {
        'rule_number': rule_number,
        'egress': egress,
        'cidr': cidr,
        'from_port': ports[0],
        'to_port': ports[1],
    }


def network_acl_entries(tier: str, config: TopologyConfig, operator_cidr: str) -> list[dict]:
    """Allow entries for one tier's network ACL.

    Both tiers admit return traffic on the ephemeral port range in each
    direction; anything not listed falls through to the implicit deny.
    """
    if tier == 'public':
        return [
            _entry(100, False, ANYWHERE, 80),
            _entry(110, False, ANYWHERE, 443),
            _entry(120, False, operator_cidr, 22),
            _entry(130, False, ANYWHERE, EPHEMERAL_PORTS),
            _entry(100, True, ANYWHERE, 80),
            _entry(110, True, ANYWHERE, 443),
            _entry(120, True, config.network_cidr, 22),
            _entry(130, True, ANYWHERE, EPHEMERAL_PORTS),
        ]
    if tier == 'private':
        return [
            _entry(100, False, config.public_subnet_cidr, 8080),
            _entry(110, False, config.public_subnet_cidr, 22),
            _entry(120, False, ANYWHERE, EPHEMERAL_PORTS),
            _entry(100, True, ANYWHERE, 80),
            _entry(110, True, ANYWHERE, 443),
            _entry(120, True, config.network_cidr, EPHEMERAL_PORTS),
        ]
    raise ValueError(f"Unknown tier: {tier}")
