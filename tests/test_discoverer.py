"""Tests for topology.discoverer module."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from gateway.base import ResourceKind as K
from topology.discoverer import Discoverer
from topology.graph import TopologyGraph
from topology.provisioner import ProvisionError, Provisioner


class TestDiscoverProvisioned:
    """Discovery after a successful provision."""

    def test_kind_set_matches_graph(self, gateway, config, provisioned):
        topology = Discoverer(gateway, config).discover('three-tier-vpc')
        graph = TopologyGraph()
        assert set(topology.names) == {n.name for n in graph.nodes}
        assert sorted(h.kind for h in topology) == sorted(n.kind for n in graph.nodes)

    def test_ids_match_provisioned(self, gateway, config, provisioned):
        topology = Discoverer(gateway, config).discover()
        for handle in provisioned:
            if handle.kind == K.NETWORK_ACL_ASSOCIATION:
                # Association ids are reissued on replacement; the subnet is stable
                assert (topology[handle.name].attributes['subnetwork_id']
                        == handle.attributes['subnetwork_id'])
                continue
            assert topology[handle.name].id == handle.id, handle.name

    def test_handles_in_graph_order(self, gateway, config, provisioned):
        topology = Discoverer(gateway, config).discover()
        assert topology.names == [n.name for n in TopologyGraph().forward_order()]

    def test_handles_are_ready_with_edges(self, gateway, config, provisioned):
        topology = Discoverer(gateway, config).discover()
        assert all(h.state == 'ready' for h in topology)
        assert topology['app_sg'].depends_on == ['network', 'web_sg', 'bastion_sg']
        assert topology['web_instance'].role_tag == 'web'

    def test_defaults_never_returned(self, gateway, config, provisioned):
        topology = Discoverer(gateway, config).discover()
        implicit = {o['id'] for o in gateway.live()
                    if o.get('is_main') or o.get('is_default') or o.get('group_name') == 'default'}
        assert implicit
        assert implicit.isdisjoint({h.id for h in topology})

    def test_delete_attributes_reconstructed(self, gateway, config, provisioned):
        topology = Discoverer(gateway, config).discover()
        attachment = topology['internet_gateway_attachment']
        assert attachment.attributes == {
            'internet_gateway_id': provisioned['internet_gateway'].id,
            'network_id': provisioned['network'].id,
        }
        route = topology['private_route']
        assert route.attributes['route_table_id'] == provisioned['private_route_table'].id
        assert route.attributes['destination'] == '0.0.0.0/0'
        acl_assoc = topology['private_acl_association']
        assert acl_assoc.attributes['network_acl_id'] == provisioned['private_acl'].id
        assert acl_assoc.attributes['network_id'] == provisioned['network'].id

    def test_queries_scoped_by_network_id(self, gateway, config, provisioned):
        gateway.calls.clear()
        Discoverer(gateway, config).discover()
        vpc_id = provisioned['network'].id
        describes = {kind: filters for op, kind, filters in gateway.calls if op == 'describe'}
        assert describes[K.NETWORK] == {'tag:Project': 'three-tier-vpc'}
        for kind in (K.SUBNETWORK, K.ROUTE_TABLE, K.SECURITY_GROUP, K.NETWORK_ACL, K.NAT_GATEWAY):
            assert describes[kind]['vpc-id'] == vpc_id
        assert describes[K.NETWORK_ACL]['default'] == 'false'
        assert describes[K.SECURITY_GROUP]['group-name'] == 'three-tier-*'


class TestDiscoverNothing:
    """No-op safety."""

    def test_never_provisioned_is_empty(self, gateway, config):
        topology = Discoverer(gateway, config).discover('never-provisioned')
        assert topology.is_empty
        assert topology.project_tag == 'never-provisioned'

    def test_other_project_not_matched(self, gateway, config, provisioned):
        topology = Discoverer(gateway, config).discover('another-project')
        assert topology.is_empty


class TestDiscoverPartial:
    """Partially built or partially removed topologies."""

    def test_after_failed_provision(self, gateway, config):
        gateway.fail_create['three-tier-web-sg'] = 'boom'
        with pytest.raises(ProvisionError):
            Provisioner(gateway=gateway).provision(config)

        topology = Discoverer(gateway, config).discover()
        assert 'bastion_sg' in topology
        assert 'web_sg' not in topology
        assert 'app_instance' not in topology
        assert 'nat_gateway' in topology

    def test_nat_without_address_record(self, gateway, config, provisioned):
        # Address lost its tags; the NAT still knows its allocation
        gateway.objects[provisioned['nat_address'].id]['tags'] = {}
        topology = Discoverer(gateway, config).discover()
        assert topology['nat_address'].id == provisioned['nat_address'].id

    def test_nat_and_address_both_missing(self, gateway, config, provisioned):
        del gateway.objects[provisioned['nat_gateway'].id]
        del gateway.objects[provisioned['nat_address'].id]
        topology = Discoverer(gateway, config).discover()
        assert 'nat_gateway' not in topology
        assert 'nat_address' not in topology
        assert 'private_route' in topology

    def test_detached_gateway_has_no_attachment(self, gateway, config, provisioned):
        gateway.objects[provisioned['internet_gateway'].id]['attachments'] = []
        topology = Discoverer(gateway, config).discover()
        assert 'internet_gateway' in topology
        assert 'internet_gateway_attachment' not in topology

    def test_detached_gateway_found_without_network(self, gateway, config, provisioned):
        igw_id = provisioned.id_of('internet_gateway')
        gateway.objects[igw_id]['attachments'] = []
        gateway.objects = {k: v for k, v in gateway.objects.items()
                           if v['kind'] != K.NETWORK}
        topology = Discoverer(gateway, config).discover()
        assert topology['internet_gateway'].id == igw_id
        assert 'internet_gateway_attachment' not in topology
        assert 'network' not in topology

    def test_identity_objects_found_without_network(self, gateway, config, provisioned):
        gateway.objects = {k: v for k, v in gateway.objects.items()
                           if v['kind'] in (K.IDENTITY_ROLE, K.INSTANCE_PROFILE, K.KEY_PAIR)}
        topology = Discoverer(gateway, config).discover()
        assert set(topology.names) == {
            'bastion_role', 'web_role', 'app_role',
            'bastion_profile', 'web_profile', 'app_profile',
            'key_pair',
        }

    def test_terminated_instances_ignored(self, gateway, config, provisioned):
        gateway.objects[provisioned['web_instance'].id]['state'] = 'terminated'
        topology = Discoverer(gateway, config).discover()
        assert 'web_instance' not in topology
        assert 'app_instance' in topology


class TestDiscoverAmbiguity:
    """At most one topology per tag is assumed."""

    def test_first_network_wins(self, gateway, config, provisioned, caplog):
        gateway.create(K.NETWORK, {'cidr': '10.9.0.0/16',
                                   'tags': {'Project': 'three-tier-vpc', 'Name': 'three-tier-vpc'}})
        with caplog.at_level('WARNING'):
            topology = Discoverer(gateway, config).discover()
        assert topology['network'].id == provisioned['network'].id
        assert 'share the project tag' in caplog.text

    def test_duplicate_name_tag_warns(self, gateway, config, provisioned, caplog):
        gateway.create(K.SECURITY_GROUP, {
            'group_name': 'three-tier-web-sg-copy',
            'description': 'copy',
            'network_id': provisioned['network'].id,
            'tags': {'Project': 'three-tier-vpc', 'Name': 'three-tier-web-sg'},
        })
        with caplog.at_level('WARNING'):
            topology = Discoverer(gateway, config).discover()
        assert topology['web_sg'].id == provisioned['web_sg'].id
        assert 'already matched' in caplog.text
