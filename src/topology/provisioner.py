"""Provisioner: walks the graph forward and creates each resource.

Generated ids flow from each node into the inputs of its dependents.
Every taggable resource is tagged with the project tag (and Name/Role)
in the create call itself, so a run that stops part way leaves a
topology the discoverer can still find.

Failure policy is fail-fast with no rollback: the first failed create
raises ProvisionError carrying the partial Topology.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from common import format_duration
from config import ROLES, ConfigurationError, TopologyConfig
from gateway.base import CloudGateway, GatewayError, ResourceKind as K
from readiness import resolve_operator_cidr
from topology import rules
from topology.graph import ResourceNode, TopologyGraph
from topology.state import READY, ResourceHandle, Topology

logger = logging.getLogger(__name__)


class ProvisionError(Exception):
    """A create call failed; the run was aborted.

    Attributes:
        node_name: Graph node that failed
        topology: Handles created before the failure
    """

    def __init__(self, node_name: str, message: str, topology: Optional[Topology] = None):
        super().__init__(f"{node_name}: {message}")
        self.node_name = node_name
        self.topology = topology


class ProvisionTimeout(ProvisionError):
    """An asynchronous resource never reached its ready state."""


class MissingDependency(ProvisionError):
    """A node was reached before one of its dependencies was ready."""


@dataclass
class RunContext:
    """Fixed inputs resolved once at the start of a run."""
    config: TopologyConfig
    operator_cidr: str
    image_id: str
    user_data: dict[str, str] = field(default_factory=dict)


@dataclass
class Provisioner:
    """Creates the topology in dependency order.

    Attributes:
        gateway: Cloud Gateway to issue calls against
        graph: Dependency graph (the fixed three-tier graph by default)
        resolve_address: Callable returning the operator CIDR for a lookup URL
        dry_run: Print the plan instead of creating anything
    """
    gateway: CloudGateway
    graph: TopologyGraph = field(default_factory=TopologyGraph)
    resolve_address: Callable[[str], str] = resolve_operator_cidr
    dry_run: bool = False

    def provision(self, config: TopologyConfig) -> Topology:
        """Create every node in forward order.

        Returns:
            The live Topology (empty for dry runs)

        Raises:
            ConfigurationError: A fixed input could not be resolved
            ProvisionError: A create call failed
            ProvisionTimeout: An asynchronous resource did not become ready
            MissingDependency: Internal ordering violation
        """
        if self.dry_run:
            self._preview(config)
            return Topology(config.project_tag)

        ctx = self._resolve_inputs_once(config)
        topology = Topology(config.project_tag)

        logger.info(
            f"[provision] Building '{config.project_tag}' in {config.availability_zone} "
            f"({len(self.graph)} resources)"
        )
        for node in self.graph.forward_order():
            self._provision_node(node, ctx, topology)

        logger.info(f"[provision] Topology '{config.project_tag}' ready ({len(topology)} resources)")
        return topology

    def _resolve_inputs_once(self, config: TopologyConfig) -> RunContext:
        """Resolve operator address, image and user data before any create."""
        self._check_identity_names(config)
        operator_cidr = config.operator_cidr or self.resolve_address(config.address_lookup_url)
        logger.info(f"[provision] Operator address: {operator_cidr}")

        image_id = config.image_id or self._lookup_image(config)
        logger.info(f"[provision] Image: {image_id}")

        user_data = {role: config.read_user_data(role) for role in ROLES}
        return RunContext(config, operator_cidr, image_id, user_data)

    def _check_identity_names(self, config: TopologyConfig) -> None:
        """Refuse to start if a role, profile or key pair name is already taken.

        These are unique per account rather than per network, and they are
        created late in forward order.
        """
        taken = []
        try:
            for kind in (K.IDENTITY_ROLE, K.INSTANCE_PROFILE):
                wanted = [config.resource_name(n.name_suffix) for n in self.graph.nodes_of_kind(kind)]
                if not wanted:
                    continue
                existing = {r['id'] for r in self.gateway.describe(
                    kind, {'name-prefix': f'{config.name_prefix}-'})}
                taken.extend(name for name in wanted if name in existing)
            if self.graph.nodes_of_kind(K.KEY_PAIR):
                if self.gateway.describe(K.KEY_PAIR, {'key-name': config.key_name}):
                    taken.append(f"key pair {config.key_name}")
        except GatewayError as e:
            raise ConfigurationError(f"Name check failed: {e}") from e
        if taken:
            raise ConfigurationError(
                f"Already exists: {', '.join(taken)}. Run 'vpc-driver deprovision' "
                "or choose another name_prefix or key_name"
            )

    def _lookup_image(self, config: TopologyConfig) -> str:
        """Find the newest available image matching the name filter."""
        try:
            images = self.gateway.describe(K.IMAGE, {
                'owner': config.image_owner,
                'name': config.image_name_filter,
                'state': 'available',
            })
        except GatewayError as e:
            raise ConfigurationError(f"Image lookup failed: {e}") from e
        if not images:
            raise ConfigurationError(
                f"No image matching '{config.image_name_filter}' owned by {config.image_owner}"
            )
        newest = max(images, key=lambda img: img.get('creation_date') or '')
        image_id: str = newest['id']
        return image_id

    def _provision_node(self, node: ResourceNode, ctx: RunContext, topology: Topology) -> None:
        inputs = self._resolve_dependencies(node, topology)
        config = ctx.config
        handle = ResourceHandle(
            name=node.name,
            kind=node.kind,
            project_tag=config.project_tag,
            name_tag=config.resource_name(node.name_suffix) if node.name_suffix else None,
            role_tag=node.role,
            depends_on=list(node.depends_on),
        )

        spec = getattr(self, f'_spec_{node.kind}')(node, inputs, ctx)
        if node.kind in K.TAGGABLE:
            spec['tags'] = handle.tags

        handle.start()
        logger.info(f"[provision] Creating {node.name} ({node.kind})...")
        try:
            result = self.gateway.create(node.kind, spec)
        except GatewayError as e:
            handle.fail(str(e))
            logger.error(f"[provision] Failed to create {node.name}: {e}")
            raise ProvisionError(node.name, str(e), topology) from e

        attributes = {k: v for k, v in result.items() if k != 'id'}
        key_material = attributes.pop('key_material', None)
        handle.created(result['id'], attributes)
        topology.add(handle)

        if node.kind == K.KEY_PAIR and key_material:
            self._write_key_file(config.key_path, key_material, node, topology)

        if node.is_asynchronous:
            self._await_ready(node, handle, ctx, topology)

        handle.ready()
        logger.info(f"[provision] {node.name}: {handle.id} ({format_duration(handle.duration)})")

    def _resolve_dependencies(self, node: ResourceNode, topology: Topology) -> dict[str, ResourceHandle]:
        """Map each declared dependency to its ready handle.

        Raises:
            MissingDependency: If a dependency has no ready handle
        """
        inputs = {}
        for dep in node.depends_on:
            handle = topology.get(dep)
            if handle is None or handle.id is None or handle.state != READY:
                raise MissingDependency(
                    node.name, f"dependency '{dep}' has not been provisioned", topology
                )
            inputs[dep] = handle
        return inputs

    def _await_ready(self, node: ResourceNode, handle: ResourceHandle,
                     ctx: RunContext, topology: Topology) -> None:
        """Block until an asynchronous resource is ready."""
        timeout = ctx.config.nat_timeout if node.kind == K.NAT_GATEWAY else ctx.config.instance_timeout
        logger.info(f"[provision] Waiting for {node.name} to be {node.ready_state}...")
        try:
            reached = self.gateway.wait(node.kind, handle.id, node.ready_state, timeout)
        except GatewayError as e:
            handle.fail(str(e))
            raise ProvisionError(node.name, str(e), topology) from e

        if not reached:
            message = f"{node.kind} {handle.id} not {node.ready_state} after {timeout}s"
            handle.fail(message)
            logger.error(f"[provision] {message}")
            raise ProvisionTimeout(node.name, message, topology)

        if node.kind == K.INSTANCE:
            handle.attributes.update(self._instance_addresses(handle.id))

    def _instance_addresses(self, instance_id: str) -> dict:
        try:
            records = self.gateway.describe(K.INSTANCE, {'instance-id': instance_id})
        except GatewayError as e:
            logger.warning(f"[provision] Could not read addresses of {instance_id}: {e}")
            return {}
        if not records:
            return {}
        return {
            'public_ip': records[0].get('public_ip'),
            'private_ip': records[0].get('private_ip'),
        }

    def _write_key_file(self, path: Path, material: str, node: ResourceNode,
                        topology: Topology) -> None:
        """Save the private key readable by the owner only."""
        try:
            path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
            if path.exists():
                path.unlink()
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(material)
        except OSError as e:
            raise ProvisionError(node.name, f"cannot write key file {path}: {e}", topology) from e
        logger.info(f"[provision] Private key saved to {path}")

    # ------------------------------------------------------------------
    # Per-kind create specs
    # ------------------------------------------------------------------

    def _spec_network(self, _node, _inputs, ctx: RunContext) -> dict:
        return {'cidr': ctx.config.network_cidr}

    def _spec_subnetwork(self, node, inputs, ctx: RunContext) -> dict:
        config = ctx.config
        return {
            'network_id': inputs['network'].id,
            'cidr': config.public_subnet_cidr if node.tier == 'public' else config.private_subnet_cidr,
            'availability_zone': config.availability_zone,
            'map_public_ip': node.tier == 'public',
        }

    def _spec_internet_gateway(self, _node, _inputs, _ctx) -> dict:
        return {}

    def _spec_internet_gateway_attachment(self, _node, inputs, _ctx) -> dict:
        return {
            'internet_gateway_id': inputs['internet_gateway'].id,
            'network_id': inputs['network'].id,
        }

    def _spec_elastic_address(self, _node, _inputs, _ctx) -> dict:
        return {}

    def _spec_nat_gateway(self, _node, inputs, _ctx) -> dict:
        return {
            'subnetwork_id': inputs['public_subnet'].id,
            'allocation_id': inputs['nat_address'].id,
        }

    def _spec_route_table(self, _node, inputs, _ctx) -> dict:
        return {'network_id': inputs['network'].id}

    def _spec_route(self, node, inputs, _ctx) -> dict:
        spec = {
            'route_table_id': inputs[f'{node.tier}_route_table'].id,
            'destination': rules.ANYWHERE,
        }
        if node.tier == 'public':
            spec['gateway_id'] = inputs['internet_gateway'].id
        else:
            spec['nat_gateway_id'] = inputs['nat_gateway'].id
        return spec

    def _spec_route_table_association(self, node, inputs, _ctx) -> dict:
        return {
            'route_table_id': inputs[f'{node.tier}_route_table'].id,
            'subnetwork_id': inputs[f'{node.tier}_subnet'].id,
        }

    def _spec_security_group(self, node, inputs, ctx: RunContext) -> dict:
        group_ids = {
            dep[:-len('_sg')]: handle.id
            for dep, handle in inputs.items() if dep.endswith('_sg')
        }
        return {
            'group_name': ctx.config.resource_name(node.name_suffix),
            'description': rules.SECURITY_GROUP_DESCRIPTIONS[node.role],
            'network_id': inputs['network'].id,
            'ingress': rules.security_group_ingress(node.role, ctx.config, ctx.operator_cidr, group_ids),
        }

    def _spec_network_acl(self, node, inputs, ctx: RunContext) -> dict:
        return {
            'network_id': inputs['network'].id,
            'entries': rules.network_acl_entries(node.tier, ctx.config, ctx.operator_cidr),
        }

    def _spec_network_acl_association(self, node, inputs, _ctx) -> dict:
        return {
            'network_acl_id': inputs[f'{node.tier}_acl'].id,
            'subnetwork_id': inputs[f'{node.tier}_subnet'].id,
            'network_id': inputs['network'].id,
        }

    def _spec_identity_role(self, node, _inputs, ctx: RunContext) -> dict:
        return {
            'role_name': ctx.config.resource_name(node.name_suffix),
            'description': rules.ROLE_DESCRIPTIONS[node.role],
            'policy_arns': rules.policy_arns(node.role),
        }

    def _spec_instance_profile(self, node, inputs, ctx: RunContext) -> dict:
        return {
            'profile_name': ctx.config.resource_name(node.name_suffix),
            'role_name': inputs[f'{node.role}_role'].id,
        }

    def _spec_key_pair(self, _node, _inputs, ctx: RunContext) -> dict:
        return {'key_name': ctx.config.key_name}

    def _spec_instance(self, node, inputs, ctx: RunContext) -> dict:
        config = ctx.config
        return {
            'image_id': ctx.image_id,
            'instance_type': config.instance_type,
            'key_name': inputs['key_pair'].attributes.get('key_name', config.key_name),
            'instance_profile_name': inputs[f'{node.role}_profile'].id,
            'subnetwork_id': inputs[f'{node.tier}_subnet'].id,
            'security_group_ids': [inputs[f'{node.role}_sg'].id],
            'associate_public_ip': node.tier == 'public',
            'user_data': ctx.user_data.get(node.role, ''),
        }

    # ------------------------------------------------------------------
    # Dry run
    # ------------------------------------------------------------------

    def _preview(self, config: TopologyConfig) -> None:
        """Preview create operations."""
        print("")
        print("=" * 65)
        print(f"  DRY-RUN PROVISION: {config.project_tag}")
        print(f"  Region: {config.region} ({config.availability_zone})")
        print(f"  Network: {config.network_cidr} "
              f"(public {config.public_subnet_cidr}, private {config.private_subnet_cidr})")
        print("=" * 65)
        print("")
        for i, node in enumerate(self.graph.forward_order(), 1):
            deps = f" (after: {', '.join(node.depends_on)})" if node.depends_on else " (root)"
            wait = f" [waits for {node.ready_state}]" if node.is_asynchronous else ""
            print(f"  [{i:2d}] {node.name}: {node.kind}{deps}{wait}")
            if node.name_suffix:
                print(f"       Name={config.resource_name(node.name_suffix)}")
        print("")
