"""Deprovisioner: tears a discovered topology down in reverse order.

Order is the exact reverse of the graph's forward order, with two groups
promoted to the front:

1. Instances: every other kind refuses deletion while an instance uses it.
   All terminations are issued first, then awaited.
2. The NAT gateway (awaited until deleted) and then its elastic address,
   which carry ongoing cost.

Every delete is best effort. "Not found" counts as already absent; any
other error is recorded and teardown moves on to the next handle.
"""

import logging
import time
from dataclasses import dataclass, field

from config import TopologyConfig
from gateway.base import CloudGateway, GatewayError, NotFoundError, ResourceKind as K
from reporting.report import ALREADY_ABSENT, DELETED, FAILED, SKIPPED, TeardownReport
from topology.graph import GONE_STATES, TopologyGraph
from topology.state import ResourceHandle, Topology

logger = logging.getLogger(__name__)


@dataclass
class Deprovisioner:
    """Deletes every handle of a Topology, continuing past failures.

    Attributes:
        gateway: Cloud Gateway to issue calls against
        config: Topology configuration (timeouts, local key file)
        graph: Dependency graph defining teardown order
        dry_run: Record every handle as skipped without deleting
    """
    gateway: CloudGateway
    config: TopologyConfig
    graph: TopologyGraph = field(default_factory=TopologyGraph)
    dry_run: bool = False

    def plan(self, topology: Topology) -> list[list[ResourceHandle]]:
        """Group handles into teardown batches, in execution order.

        Handles within a batch are deleted together and then awaited;
        batches run strictly one after another.
        """
        ordered = [topology[n.name] for n in self.graph.reverse_order() if n.name in topology]
        # Handles the graph does not know about go just before the network
        unknown = [h for h in topology if h.name not in self.graph]
        if unknown:
            tail = ordered[-1:] if ordered and ordered[-1].kind == K.NETWORK else []
            ordered = ordered[:len(ordered) - len(tail)] + unknown + tail

        instances = [h for h in ordered if h.kind == K.INSTANCE]
        billing = [h for kind in (K.NAT_GATEWAY, K.ELASTIC_ADDRESS)
                   for h in ordered if h.kind == kind]
        promoted = {h.name for h in instances + billing}

        batches: list[list[ResourceHandle]] = []
        if instances:
            batches.append(instances)
        batches.extend([h] for h in billing)
        batches.extend([h] for h in ordered if h.name not in promoted)
        return batches

    def deprovision(self, topology: Topology) -> TeardownReport:
        """Delete every handle in teardown order.

        Never raises for an individual resource; see report.failures.
        Successfully deleted handles are removed from the topology.
        """
        report = TeardownReport(project_tag=topology.project_tag, dry_run=self.dry_run)
        report.start()

        if topology.is_empty:
            logger.info(f"[deprovision] Nothing to clean up for '{topology.project_tag}'")
            report.finish()
            return report

        batches = self.plan(topology)
        logger.info(
            f"[deprovision] Tearing down '{topology.project_tag}' ({len(topology)} resources)"
        )

        for batch in batches:
            if self.dry_run:
                for handle in batch:
                    logger.info(f"[deprovision] Would delete {handle.name} ({handle.id})")
                    report.record(handle.name, handle.kind, handle.id, SKIPPED, 'dry run')
                continue
            self._teardown_batch(batch, topology, report)

        report.finish()
        counts = report.counts()
        logger.info(
            f"[deprovision] Done: {counts[DELETED]} deleted, {counts[ALREADY_ABSENT]} already absent, "
            f"{counts[FAILED]} failed"
        )
        return report

    def _teardown_batch(self, batch: list[ResourceHandle], topology: Topology,
                        report: TeardownReport) -> None:
        """Issue deletes for a batch, then await the asynchronous ones."""
        awaiting = []
        for handle in batch:
            started = time.time()
            outcome, message = self._issue_delete(handle)
            if outcome == DELETED and handle.kind in K.ASYNCHRONOUS:
                awaiting.append((handle, started))
            else:
                self._finish(handle, outcome, message, started, topology, report)

        for handle, started in awaiting:
            outcome, message = self._await_gone(handle)
            self._finish(handle, outcome, message, started, topology, report)

    def _issue_delete(self, handle: ResourceHandle) -> tuple[str, str]:
        logger.info(f"[deprovision] Deleting {handle.name} ({handle.id})...")
        try:
            self.gateway.delete(handle.kind, handle.id, handle.attributes)
        except NotFoundError:
            return ALREADY_ABSENT, ''
        except GatewayError as e:
            return FAILED, str(e)
        return DELETED, ''

    def _await_gone(self, handle: ResourceHandle) -> tuple[str, str]:
        target = GONE_STATES[handle.kind]
        timeout = self.config.delete_timeout
        logger.info(f"[deprovision] Waiting for {handle.name} to be {target}...")
        try:
            reached = self.gateway.wait(handle.kind, handle.id, target, timeout)
        except GatewayError as e:
            return FAILED, str(e)
        if not reached:
            return FAILED, f"not {target} after {timeout}s"
        return DELETED, ''

    def _finish(self, handle: ResourceHandle, outcome: str, message: str, started: float,
                topology: Topology, report: TeardownReport) -> None:
        report.record(handle.name, handle.kind, handle.id, outcome, message,
                      duration=time.time() - started)
        if outcome == FAILED:
            handle.fail(message)
            logger.error(f"[deprovision] Failed to delete {handle.name} ({handle.id}): {message}")
            return

        handle.mark_deleted()
        topology.remove(handle.name)
        if outcome == ALREADY_ABSENT:
            logger.info(f"[deprovision] {handle.name} ({handle.id}) already absent")
        else:
            logger.info(f"[deprovision] Deleted {handle.name} ({handle.id})")

        if handle.kind == K.KEY_PAIR:
            self._remove_key_file()

    def _remove_key_file(self) -> None:
        path = self.config.key_path
        if not path.exists():
            return
        try:
            path.unlink()
        except OSError as e:
            logger.warning(f"[deprovision] Could not remove key file {path}: {e}")
            return
        logger.info(f"[deprovision] Removed key file {path}")
