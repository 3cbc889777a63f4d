"""Tests for topology.deprovisioner module."""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import EndpointConnectionError

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from gateway.aws import AwsGateway
from gateway.base import ResourceKind as K
from reporting.report import ALREADY_ABSENT, DELETED, FAILED, SKIPPED
from topology.deprovisioner import Deprovisioner
from topology.discoverer import Discoverer
from topology.provisioner import ProvisionError, Provisioner
from topology.state import ResourceHandle, Topology

PROJECT = 'three-tier-vpc'


def _teardown(gateway, config, dry_run=False):
    """Discover then deprovision, as the deprovision verb does."""
    topology = Discoverer(gateway, config).discover()
    report = Deprovisioner(gateway=gateway, config=config, dry_run=dry_run).deprovision(topology)
    return topology, report


class TestPlan:
    """Tests for teardown batching."""

    def test_instances_first_then_billing(self, gateway, config, provisioned):
        batches = Deprovisioner(gateway=gateway, config=config).plan(provisioned)
        assert {h.name for h in batches[0]} == {'bastion_instance', 'web_instance', 'app_instance'}
        assert [h.name for h in batches[1]] == ['nat_gateway']
        assert [h.name for h in batches[2]] == ['nat_address']
        assert [h.name for h in batches[-1]] == ['network']

    def test_every_handle_planned_once(self, gateway, config, provisioned):
        batches = Deprovisioner(gateway=gateway, config=config).plan(provisioned)
        names = [h.name for batch in batches for h in batch]
        assert sorted(names) == sorted(provisioned.names)

    def test_rest_is_reverse_dependency_order(self, gateway, config, provisioned):
        batches = Deprovisioner(gateway=gateway, config=config).plan(provisioned)
        names = [h.name for batch in batches for h in batch]
        for handle in provisioned:
            for dep in handle.depends_on:
                if handle.kind in (K.INSTANCE, K.NAT_GATEWAY, K.ELASTIC_ADDRESS):
                    continue
                assert names.index(handle.name) < names.index(dep), (handle.name, dep)

    def test_partial_topology(self, gateway, config):
        topology = Topology(PROJECT)
        for name, kind in (('network', K.NETWORK), ('bastion_sg', K.SECURITY_GROUP)):
            topology.add(ResourceHandle(name=name, kind=kind, project_tag=PROJECT, id=f'{name}-1'))
        batches = Deprovisioner(gateway=gateway, config=config).plan(topology)
        assert [[h.name for h in b] for b in batches] == [['bastion_sg'], ['network']]


class TestFullLifecycle:
    """Provision, tear down, and verify nothing is left."""

    def test_nothing_left_after_teardown(self, gateway, config, provisioned):
        topology, report = _teardown(gateway, config)

        assert report.success
        assert len(report.deleted) == len(provisioned)
        assert topology.is_empty
        assert gateway.live(project_tag=PROJECT) == []
        assert gateway.live(kind=K.NETWORK) == []

    def test_key_file_removed(self, gateway, config, provisioned):
        assert config.key_path.exists()
        _teardown(gateway, config)
        assert not config.key_path.exists()

    def test_deleted_handles_marked(self, gateway, config, provisioned):
        stale = Topology.from_dict(provisioned.to_dict())
        handles = list(stale)
        Deprovisioner(gateway=gateway, config=config).deprovision(stale)
        assert all(h.state == 'deleted' for h in handles)
        assert stale.is_empty


class TestBillingOrder:
    """Cost-bearing resources go first."""

    def test_delete_call_order(self, gateway, config, provisioned):
        gateway.calls.clear()
        _teardown(gateway, config)
        kinds = [kind for kind, _ in gateway.deletes()]

        assert kinds[:3] == [K.INSTANCE] * 3
        assert kinds[3] == K.NAT_GATEWAY
        assert kinds[4] == K.ELASTIC_ADDRESS
        assert kinds[-1] == K.NETWORK
        assert kinds.index(K.NAT_GATEWAY) < kinds.index(K.ROUTE_TABLE)
        assert kinds.index(K.NAT_GATEWAY) < kinds.index(K.SUBNETWORK)

    def test_terminations_issued_before_waiting(self, gateway, config, provisioned):
        gateway.calls.clear()
        _teardown(gateway, config)
        ops = [(op, kind) for op, kind, _ in gateway.calls if op in ('delete', 'wait')]
        assert ops[:6] == [('delete', K.INSTANCE)] * 3 + [('wait', K.INSTANCE)] * 3

    def test_nat_awaited_before_address_release(self, gateway, config, provisioned):
        gateway.calls.clear()
        _teardown(gateway, config)
        nat_id = provisioned.id_of('nat_gateway')
        eip_id = provisioned.id_of('nat_address')
        assert gateway.calls.index(('wait', K.NAT_GATEWAY, nat_id)) < \
            gateway.calls.index(('delete', K.ELASTIC_ADDRESS, eip_id))


class TestIdempotence:
    """Re-running teardown is safe."""

    def test_second_run_finds_nothing(self, gateway, config, provisioned):
        _teardown(gateway, config)
        gateway.calls.clear()

        topology, report = _teardown(gateway, config)
        assert topology.is_empty
        assert report.outcomes == []
        assert gateway.deletes() == []

    def test_stale_handles_already_absent(self, gateway, config, provisioned):
        stale = Topology.from_dict(provisioned.to_dict())
        _teardown(gateway, config)

        report = Deprovisioner(gateway=gateway, config=config).deprovision(stale)
        assert report.success
        assert {o.outcome for o in report.outcomes} == {ALREADY_ABSENT}
        assert len(report.outcomes) == len(provisioned)

    def test_never_provisioned_is_noop(self, gateway, config):
        topology, report = _teardown(gateway, config)
        assert topology.is_empty
        assert report.success
        assert report.outcomes == []
        assert gateway.deletes() == []


class TestDryRun:
    """Dry run reports without deleting."""

    def test_all_skipped(self, gateway, config, provisioned):
        topology, report = _teardown(gateway, config, dry_run=True)
        assert len(report.skipped) == len(provisioned)
        assert {o.outcome for o in report.outcomes} == {SKIPPED}
        assert report.dry_run is True
        assert gateway.deletes() == []
        assert len(topology) == len(provisioned)
        assert config.key_path.exists()


class TestFailures:
    """Individual failures never stop teardown."""

    def test_failure_recorded_and_teardown_continues(self, gateway, config, provisioned):
        gateway.fail_delete[provisioned.id_of('web_sg')] = 'boom'
        topology, report = _teardown(gateway, config)

        assert not report.success
        failed = {o.name: o for o in report.failures}
        assert failed['web_sg'].message == 'boom'
        # bastion_sg is still referenced by web_sg, so the network stays too
        assert set(failed) == {'web_sg', 'bastion_sg', 'network'}
        assert report.outcome_of('public_subnet') == DELETED
        assert report.outcome_of('key_pair') == DELETED
        assert set(topology.names) == {'web_sg', 'bastion_sg', 'network'}
        assert topology['web_sg'].state == 'failed'

    def test_rerun_after_fix_finishes(self, gateway, config, provisioned):
        gateway.fail_delete[provisioned.id_of('web_sg')] = 'boom'
        _teardown(gateway, config)

        gateway.fail_delete.clear()
        topology, report = _teardown(gateway, config)
        assert report.success
        assert [o.name for o in report.deleted] == ['web_sg', 'bastion_sg', 'network']
        assert gateway.live(project_tag=PROJECT) == []

    def test_gateway_left_after_network_is_removed_on_rerun(self, gateway, config, provisioned):
        igw_id = provisioned.id_of('internet_gateway')
        gateway.fail_delete[igw_id] = 'transient'
        _, report = _teardown(gateway, config)
        assert report.outcome_of('internet_gateway') == FAILED
        assert report.outcome_of('network') == DELETED

        gateway.fail_delete.clear()
        topology, report = _teardown(gateway, config)
        assert topology.names == ['internet_gateway']
        assert report.outcome_of('internet_gateway') == DELETED
        assert gateway.live(project_tag=PROJECT) == []

    def test_nat_delete_timeout(self, gateway, config, provisioned):
        gateway.stuck.add(provisioned.id_of('nat_gateway'))
        _, report = _teardown(gateway, config)

        nat = next(o for o in report.outcomes if o.name == 'nat_gateway')
        assert nat.outcome == FAILED
        assert 'not deleted after' in nat.message
        # The address is still in use by the NAT
        assert report.outcome_of('nat_address') == FAILED
        assert report.outcome_of('key_pair') == DELETED


class TestTransportFailures:
    """Connection errors from the SDK count as per-resource failures."""

    def test_endpoint_unreachable_mid_teardown(self, config):
        ec2 = MagicMock(name='ec2')
        ec2.delete_subnet.side_effect = EndpointConnectionError(
            endpoint_url='https://ec2.us-east-1.amazonaws.com')
        session = MagicMock()
        iam = MagicMock(name='iam')
        session.client.side_effect = lambda service, **_kwargs: {'ec2': ec2, 'iam': iam}[service]
        aws = AwsGateway('us-east-1', poll_interval=0, session=session, sleep=MagicMock())

        topology = Topology(PROJECT)
        for name, kind, resource_id in (
            ('network', K.NETWORK, 'vpc-1'),
            ('private_subnet', K.SUBNETWORK, 'subnet-2'),
            ('key_pair', K.KEY_PAIR, 'key-3'),
        ):
            topology.add(ResourceHandle(name=name, kind=kind, project_tag=PROJECT, id=resource_id))

        report = Deprovisioner(gateway=aws, config=config).deprovision(topology)

        assert report.outcome_of('private_subnet') == FAILED
        assert 'Could not connect' in report.failures[0].message
        assert report.outcome_of('key_pair') == DELETED
        assert report.outcome_of('network') == DELETED
        ec2.delete_vpc.assert_called_once_with(VpcId='vpc-1')


class TestPartialProvisionCleanup:
    """A failed provision leaves a topology that teardown can remove."""

    def test_cleanup_after_failed_provision(self, gateway, config):
        gateway.fail_create['three-tier-web-sg'] = 'boom'
        with pytest.raises(ProvisionError):
            Provisioner(gateway=gateway).provision(config)
        assert gateway.find('three-tier-bastion-sg') is not None

        topology, report = _teardown(gateway, config)

        assert report.success
        assert report.outcome_of('bastion_sg') == DELETED
        assert report.outcome_of('nat_gateway') == DELETED
        assert topology.is_empty
        assert gateway.live(project_tag=PROJECT) == []
