"""Cloud Gateway protocol, resource kinds and error taxonomy."""

from typing import Protocol, runtime_checkable


class GatewayError(Exception):
    """A control-plane call failed."""

    def __init__(self, message: str, code: str = ''):
        super().__init__(message)
        self.code = code


class NotFoundError(GatewayError):
    """The addressed object does not exist (or no longer exists)."""


class ResourceKind:
    """Resource kinds understood by a CloudGateway."""
    NETWORK = 'network'
    SUBNETWORK = 'subnetwork'
    INTERNET_GATEWAY = 'internet_gateway'
    INTERNET_GATEWAY_ATTACHMENT = 'internet_gateway_attachment'
    ELASTIC_ADDRESS = 'elastic_address'
    NAT_GATEWAY = 'nat_gateway'
    ROUTE_TABLE = 'route_table'
    ROUTE = 'route'
    ROUTE_TABLE_ASSOCIATION = 'route_table_association'
    SECURITY_GROUP = 'security_group'
    NETWORK_ACL = 'network_acl'
    NETWORK_ACL_ASSOCIATION = 'network_acl_association'
    IDENTITY_ROLE = 'identity_role'
    INSTANCE_PROFILE = 'instance_profile'
    KEY_PAIR = 'key_pair'
    INSTANCE = 'instance'
    # Lookup only, never created or deleted
    IMAGE = 'image'

    # Kinds that carry tags on the cloud side
    TAGGABLE = frozenset({
        NETWORK, SUBNETWORK, INTERNET_GATEWAY, ELASTIC_ADDRESS, NAT_GATEWAY,
        ROUTE_TABLE, SECURITY_GROUP, NETWORK_ACL, IDENTITY_ROLE,
        INSTANCE_PROFILE, KEY_PAIR, INSTANCE,
    })

    # Kinds whose create/delete completes only after a polled delay
    ASYNCHRONOUS = frozenset({NAT_GATEWAY, INSTANCE})


@runtime_checkable
class CloudGateway(Protocol):
    """Per-kind create/describe/delete/wait operations, scoped to one region.

    Records returned by describe() are plain dicts with at least 'id' and
    'tags'; the remaining keys are kind specific (see AwsGateway).
    """
    region: str

    def create(self, kind: str, spec: dict) -> dict:
        """Create one object; returns {'id': ..., **attributes}.

        spec['tags'] (if present) is applied at creation time.
        """

    def describe(self, kind: str, filters: dict) -> list[dict]:
        """Return normalized records matching all filters."""

    def delete(self, kind: str, resource_id: str, attributes: dict) -> None:
        """Delete one object.

        Raises:
            NotFoundError: The object does not exist
            GatewayError: Any other failure
        """

    def wait(self, kind: str, resource_id: str, target_state: str, timeout: int) -> bool:
        """Block until the object reaches target_state; False on timeout."""
