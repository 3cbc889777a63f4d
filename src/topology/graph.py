"""Dependency graph for the three-tier topology.

The node set is fixed configuration, not discovered. Edges point from a
node to the nodes that must exist (and be ready) before it is created:

- forward_order(): dependencies before dependents (creation)
- reverse_order(): exact reverse (teardown)
"""

import heapq
import logging
from dataclasses import dataclass
from typing import Optional

from gateway.base import ResourceKind as K

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceNode:
    """One resource in the topology graph.

    Attributes:
        name: Unique node name (e.g. 'public_subnet')
        kind: Cloud Gateway resource kind
        depends_on: Names of nodes that must be created first
        name_suffix: Suffix of the Name tag, None for untagged kinds
        role: Role tag (bastion/web/app) where applicable
        tier: 'public' or 'private' for tier-scoped network objects
    """
    name: str
    kind: str
    depends_on: tuple[str, ...] = ()
    name_suffix: Optional[str] = None
    role: Optional[str] = None
    tier: Optional[str] = None

    @property
    def is_asynchronous(self) -> bool:
        return self.kind in K.ASYNCHRONOUS

    @property
    def ready_state(self) -> Optional[str]:
        """State an asynchronous node must reach before dependents run."""
        return READY_STATES.get(self.kind)

    @property
    def gone_state(self) -> Optional[str]:
        """State an asynchronous node reaches once deleted."""
        return GONE_STATES.get(self.kind)

    def __repr__(self) -> str:
        return f"ResourceNode({self.name}, kind={self.kind})"


READY_STATES = {K.NAT_GATEWAY: 'available', K.INSTANCE: 'running'}
GONE_STATES = {K.NAT_GATEWAY: 'deleted', K.INSTANCE: 'terminated'}


def _tiered(tier: str) -> list[ResourceNode]:
    """Route table, default route and association for one tier."""
    subnet = f'{tier}_subnet'
    target = 'internet_gateway' if tier == 'public' else 'nat_gateway'
    route_deps = (f'{tier}_route_table', target)
    if tier == 'public':
        # A route to an unattached gateway is rejected
        route_deps += ('internet_gateway_attachment',)
    return [
        ResourceNode(f'{tier}_route_table', K.ROUTE_TABLE, ('network',),
                     name_suffix=f'{tier}-rt', tier=tier),
        ResourceNode(f'{tier}_route', K.ROUTE, route_deps, tier=tier),
        ResourceNode(f'{tier}_route_association', K.ROUTE_TABLE_ASSOCIATION,
                     (f'{tier}_route_table', subnet, f'{tier}_route'), tier=tier),
    ]


def _acl(tier: str) -> list[ResourceNode]:
    """Network ACL and its subnet association for one tier."""
    deps: tuple[str, ...] = ('network',)
    if tier == 'private':
        # Private rules admit traffic from the public subnet range
        deps += ('public_subnet',)
    return [
        ResourceNode(f'{tier}_acl', K.NETWORK_ACL, deps,
                     name_suffix=f'{tier}-nacl', tier=tier),
        ResourceNode(f'{tier}_acl_association', K.NETWORK_ACL_ASSOCIATION,
                     (f'{tier}_acl', f'{tier}_subnet', 'network'), tier=tier),
    ]


# Declaration order is the tie-break for forward_order()
NODES: tuple[ResourceNode, ...] = (
    ResourceNode('network', K.NETWORK, name_suffix='vpc'),
    ResourceNode('public_subnet', K.SUBNETWORK, ('network',),
                 name_suffix='public-subnet', tier='public'),
    ResourceNode('private_subnet', K.SUBNETWORK, ('network',),
                 name_suffix='private-subnet', tier='private'),
    ResourceNode('internet_gateway', K.INTERNET_GATEWAY, ('network',), name_suffix='igw'),
    ResourceNode('internet_gateway_attachment', K.INTERNET_GATEWAY_ATTACHMENT,
                 ('internet_gateway', 'network')),
    ResourceNode('nat_address', K.ELASTIC_ADDRESS, ('public_subnet',), name_suffix='nat-eip'),
    ResourceNode('nat_gateway', K.NAT_GATEWAY, ('public_subnet', 'nat_address'),
                 name_suffix='nat-gw'),
    *_tiered('public'),
    *_tiered('private'),
    ResourceNode('bastion_sg', K.SECURITY_GROUP, ('network',),
                 name_suffix='bastion-sg', role='bastion'),
    ResourceNode('web_sg', K.SECURITY_GROUP, ('network', 'bastion_sg'),
                 name_suffix='web-sg', role='web'),
    ResourceNode('app_sg', K.SECURITY_GROUP, ('network', 'web_sg', 'bastion_sg'),
                 name_suffix='app-sg', role='app'),
    *_acl('public'),
    *_acl('private'),
    ResourceNode('bastion_role', K.IDENTITY_ROLE, name_suffix='bastion-role', role='bastion'),
    ResourceNode('web_role', K.IDENTITY_ROLE, name_suffix='web-role', role='web'),
    ResourceNode('app_role', K.IDENTITY_ROLE, name_suffix='app-role', role='app'),
    ResourceNode('bastion_profile', K.INSTANCE_PROFILE, ('bastion_role',),
                 name_suffix='bastion-profile', role='bastion'),
    ResourceNode('web_profile', K.INSTANCE_PROFILE, ('web_role',),
                 name_suffix='web-profile', role='web'),
    ResourceNode('app_profile', K.INSTANCE_PROFILE, ('app_role',),
                 name_suffix='app-profile', role='app'),
    ResourceNode('key_pair', K.KEY_PAIR, name_suffix='key'),
    ResourceNode('bastion_instance', K.INSTANCE,
                 ('public_subnet', 'bastion_sg', 'bastion_profile', 'key_pair'),
                 name_suffix='bastion', role='bastion', tier='public'),
    ResourceNode('web_instance', K.INSTANCE,
                 ('public_subnet', 'web_sg', 'web_profile', 'key_pair'),
                 name_suffix='web-server', role='web', tier='public'),
    ResourceNode('app_instance', K.INSTANCE,
                 ('private_subnet', 'app_sg', 'app_profile', 'key_pair'),
                 name_suffix='app-server', role='app', tier='private'),
)


class TopologyGraph:
    """Static, acyclic dependency graph over ResourceNodes.

    Provides ordered traversal for lifecycle operations:
    - forward_order(): topological order, ties broken by declaration order
    - reverse_order(): exact reverse of forward_order()
    """

    def __init__(self, nodes: tuple[ResourceNode, ...] = NODES):
        """Build graph from node declarations.

        Raises:
            ValueError: On duplicate names, unknown dependencies or cycles
        """
        self._nodes: dict[str, ResourceNode] = {}
        self._index: dict[str, int] = {}
        for i, node in enumerate(nodes):
            if node.name in self._nodes:
                raise ValueError(f"Duplicate node name: {node.name}")
            self._nodes[node.name] = node
            self._index[node.name] = i

        for node in nodes:
            for dep in node.depends_on:
                if dep not in self._nodes:
                    raise ValueError(f"Node '{node.name}' depends on unknown node '{dep}'")

        self._order = self._topological_sort()

    def _topological_sort(self) -> list[ResourceNode]:
        """Kahn's algorithm with a declaration-index priority queue."""
        remaining = {name: len(node.depends_on) for name, node in self._nodes.items()}
        dependents: dict[str, list[str]] = {name: [] for name in self._nodes}
        for node in self._nodes.values():
            for dep in node.depends_on:
                dependents[dep].append(node.name)

        ready = [self._index[name] for name, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        names = list(self._nodes)
        ordered: list[ResourceNode] = []

        while ready:
            name = names[heapq.heappop(ready)]
            ordered.append(self._nodes[name])
            for child in dependents[name]:
                remaining[child] -= 1
                if remaining[child] == 0:
                    heapq.heappush(ready, self._index[child])

        if len(ordered) != len(self._nodes):
            stuck = sorted(set(self._nodes) - {n.name for n in ordered})
            raise ValueError(f"Dependency cycle among nodes: {', '.join(stuck)}")
        return ordered

    @property
    def nodes(self) -> list[ResourceNode]:
        """Nodes in declaration order."""
        return list(self._nodes.values())

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    def get_node(self, name: str) -> ResourceNode:
        """Get a ResourceNode by name.

        Raises:
            KeyError: If node name not found
        """
        return self._nodes[name]

    def forward_order(self) -> list[ResourceNode]:
        """Return nodes in creation order (dependencies first)."""
        return list(self._order)

    def reverse_order(self) -> list[ResourceNode]:
        """Return nodes in teardown order (dependents first)."""
        return list(reversed(self._order))

    def nodes_of_kind(self, kind: str) -> list[ResourceNode]:
        return [n for n in self._order if n.kind == kind]
