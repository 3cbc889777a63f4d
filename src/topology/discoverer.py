"""Tag-based discovery of an existing topology.

Rebuilds a Topology from cloud-side tags and structure alone; there is no
local state file. The root network is found by its project tag, and every
network-scoped object is then found by network id. Identity-plane objects
and detached leftovers (roles, profiles, the key pair, the NAT address, the
internet gateway) are found by tag whether or not the network still exists,
so teardown left half done elsewhere can be finished.

Objects the cloud creates implicitly (the main route table, the default
network ACL, the default security group) are never returned.

At most one topology per project tag is assumed. When several networks
carry the tag, the first is used and a warning is logged.
"""

import logging
from typing import Optional

from config import TopologyConfig
from gateway.base import CloudGateway, ResourceKind as K
from topology.graph import ResourceNode, TopologyGraph
from topology.rules import ANYWHERE
from topology.state import READY, ResourceHandle, Topology

logger = logging.getLogger(__name__)

LIVE_NAT_STATES = ['pending', 'available', 'deleting']
LIVE_INSTANCE_STATES = ['pending', 'running', 'stopping', 'stopped']


class Discoverer:
    """Re-derives Resource Handles for a project tag.

    Attributes:
        gateway: Cloud Gateway to query
        config: Topology configuration (name prefix, subnet ranges)
        graph: Dependency graph used to name handles and their edges
    """

    def __init__(self, gateway: CloudGateway, config: TopologyConfig,
                 graph: Optional[TopologyGraph] = None):
        self.gateway = gateway
        self.config = config
        self.graph = graph or TopologyGraph()
        self._by_name_tag = {
            config.resource_name(n.name_suffix): n
            for n in self.graph.nodes if n.name_suffix
        }

    def discover(self, project_tag: Optional[str] = None) -> Topology:
        """Find every live resource carrying the project tag.

        Returns:
            Topology in graph order; empty when nothing is found
        """
        project_tag = project_tag or self.config.project_tag
        found: dict[str, ResourceHandle] = {}
        tag_filter = {'tag:Project': project_tag}

        network = self._find_network(tag_filter)
        if network is None:
            logger.info(f"[discover] No network tagged Project={project_tag}")
        else:
            self._add(found, 'network', network, project_tag)
            self._discover_network_scoped(found, network['id'], project_tag)

        network_id = network['id'] if network is not None else None
        self._discover_global(found, network_id, tag_filter, project_tag)

        topology = Topology(project_tag)
        for node in self.graph.forward_order():
            if node.name in found:
                topology.add(found[node.name])

        logger.info(f"[discover] Found {len(topology)} resources tagged Project={project_tag}")
        return topology

    # ------------------------------------------------------------------
    # Per-kind queries
    # ------------------------------------------------------------------

    def _find_network(self, tag_filter: dict) -> Optional[dict]:
        networks = [n for n in self.gateway.describe(K.NETWORK, tag_filter)
                    if not n.get('is_default')]
        if not networks:
            return None
        if len(networks) > 1:
            logger.warning(
                f"[discover] {len(networks)} networks share the project tag, "
                f"using {networks[0]['id']}: {', '.join(n['id'] for n in networks[1:])} ignored"
            )
        return networks[0]

    def _discover_network_scoped(self, found: dict, network_id: str, project_tag: str) -> None:
        in_network = {'vpc-id': network_id}

        subnets: dict[str, str] = {}
        for record in self.gateway.describe(K.SUBNETWORK, in_network):
            node = self._node_for(record) or self._subnet_by_cidr(record)
            if node and self._add(found, node.name, record, project_tag):
                subnets[node.tier] = record['id']

        nat_filter = dict(in_network, state=LIVE_NAT_STATES)
        for record in self.gateway.describe(K.NAT_GATEWAY, nat_filter):
            if self._add(found, 'nat_gateway', record, project_tag):
                break

        for record in self.gateway.describe(K.ROUTE_TABLE, in_network):
            if record.get('is_main'):
                continue
            node = self._node_for(record)
            if node is None or node.kind != K.ROUTE_TABLE:
                logger.warning(f"[discover] Unrecognized route table {record['id']} in {network_id}")
                continue
            if not self._add(found, node.name, record, project_tag):
                continue
            self._add_routes(found, node.tier, record, project_tag)

        sg_filter = dict(in_network, **{'group-name': f'{self.config.name_prefix}-*'})
        for record in self.gateway.describe(K.SECURITY_GROUP, sg_filter):
            if record.get('group_name') == 'default':
                continue
            node = self._by_name_tag.get(record.get('group_name', '')) or self._node_for(record)
            if node and node.kind == K.SECURITY_GROUP:
                self._add(found, node.name, record, project_tag)

        acl_filter = dict(in_network, default='false')
        for record in self.gateway.describe(K.NETWORK_ACL, acl_filter):
            if record.get('is_default'):
                continue
            node = self._node_for(record)
            if node is None or node.kind != K.NETWORK_ACL:
                continue
            if not self._add(found, node.name, record, project_tag):
                continue
            for assoc in record.get('associations', []):
                if assoc.get('subnetwork_id') == subnets.get(node.tier):
                    self._add(found, f'{node.tier}_acl_association', {
                        'id': assoc['id'],
                        'network_acl_id': record['id'],
                        'network_id': network_id,
                        'subnetwork_id': assoc['subnetwork_id'],
                    }, project_tag)

    def _add_routes(self, found: dict, tier: str, record: dict, project_tag: str) -> None:
        """Derive the default route and subnet association of a route table."""
        for route in record.get('routes', []):
            if route.get('destination') == ANYWHERE and route.get('origin', 'CreateRoute') == 'CreateRoute':
                self._add(found, f'{tier}_route', {
                    'id': f"{record['id']}/{ANYWHERE}",
                    'route_table_id': record['id'],
                    'destination': ANYWHERE,
                }, project_tag)
                break
        for assoc in record.get('associations', []):
            if assoc.get('main') or not assoc.get('subnetwork_id'):
                continue
            self._add(found, f'{tier}_route_association', {
                'id': assoc['id'],
                'route_table_id': record['id'],
                'subnetwork_id': assoc['subnetwork_id'],
            }, project_tag)

    def _discover_global(self, found: dict, network_id: Optional[str],
                         tag_filter: dict, project_tag: str) -> None:
        # Detached gateways outlive the network and must stay discoverable
        for record in self.gateway.describe(K.INTERNET_GATEWAY, tag_filter):
            if not self._add(found, 'internet_gateway', record, project_tag):
                continue
            if network_id is not None and network_id in record.get('attachments', []):
                self._add(found, 'internet_gateway_attachment', {
                    'id': f"{record['id']}/{network_id}",
                    'internet_gateway_id': record['id'],
                    'network_id': network_id,
                }, project_tag)

        for record in self.gateway.describe(K.ELASTIC_ADDRESS, tag_filter):
            node = self._node_for(record)
            if node and node.kind == K.ELASTIC_ADDRESS:
                self._add(found, node.name, record, project_tag)

        # The address may have lost its tag record; fall back to the NAT's own
        nat = found.get('nat_gateway')
        if nat is not None and 'nat_address' not in found:
            allocation_ids = nat.attributes.get('allocation_ids') or []
            if allocation_ids:
                self._add(found, 'nat_address', {'id': allocation_ids[0]}, project_tag)

        name_filter = dict(tag_filter, **{'name-prefix': f'{self.config.name_prefix}-'})
        for kind in (K.IDENTITY_ROLE, K.INSTANCE_PROFILE):
            for record in self.gateway.describe(kind, name_filter):
                node = self._by_name_tag.get(record['id']) or self._node_for(record)
                if node and node.kind == kind:
                    self._add(found, node.name, record, project_tag)

        for record in self.gateway.describe(K.KEY_PAIR, tag_filter):
            if self._add(found, 'key_pair', record, project_tag):
                break

        instance_filter = dict(tag_filter, **{'instance-state-name': LIVE_INSTANCE_STATES})
        for record in self.gateway.describe(K.INSTANCE, instance_filter):
            role = record.get('tags', {}).get('Role')
            name = f'{role}_instance'
            if role and name in self.graph:
                self._add(found, name, record, project_tag)
            else:
                logger.warning(f"[discover] Instance {record['id']} has no known Role tag")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _node_for(self, record: dict) -> Optional[ResourceNode]:
        """Match a record to a graph node by its Name tag."""
        return self._by_name_tag.get(record.get('tags', {}).get('Name', ''))

    def _subnet_by_cidr(self, record: dict) -> Optional[ResourceNode]:
        cidr = record.get('cidr')
        if cidr == self.config.public_subnet_cidr:
            return self.graph.get_node('public_subnet')
        if cidr == self.config.private_subnet_cidr:
            return self.graph.get_node('private_subnet')
        return None

    def _add(self, found: dict, name: str, record: dict, project_tag: str) -> bool:
        """Record a handle for a node unless one was already found.

        Returns:
            True if the record was added
        """
        if name in found:
            logger.warning(
                f"[discover] Ignoring {record['id']}: {name} already matched {found[name].id}"
            )
            return False
        node = self.graph.get_node(name)
        tags = record.get('tags', {})
        handle = ResourceHandle(
            name=name,
            kind=node.kind,
            project_tag=project_tag,
            id=record['id'],
            name_tag=tags.get('Name'),
            role_tag=tags.get('Role', node.role),
            depends_on=list(node.depends_on),
            state=READY,
            attributes={k: v for k, v in record.items() if k not in ('id', 'tags')},
        )
        found[name] = handle
        logger.debug(f"[discover] {name}: {handle.id}")
        return True
