"""Cloud Gateway: the control-plane API the orchestrator drives.

The orchestrator only talks to the CloudGateway protocol; AwsGateway is the
boto3-backed implementation used by the CLI.
"""

from gateway.base import (
    CloudGateway,
    GatewayError,
    NotFoundError,
    ResourceKind,
)

__all__ = [
    'CloudGateway',
    'GatewayError',
    'NotFoundError',
    'ResourceKind',
]
