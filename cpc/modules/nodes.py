"""Node lifecycle: naming, roster mutation, provisioning, joining and removal."""
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from cpc.errors import CpcError, FatalError, TransientError, ValidationError
from cpc.modules.adapters.ansible import ConfigRunnerAdapter, PlaybookRun
from cpc.modules.adapters.kube import ControlPlaneAdapter, node_ready
from cpc.modules.adapters.tofu import InfraAdapter, InfraDelta
from cpc.modules.context import ContextStore
from cpc.modules.models import (
    ClusterSummary,
    MembershipState,
    NodeRole,
    NodeSpec,
    NodeSummary,
    WorkspaceContext,
    generate_hostname,
    is_base_slot,
    parse_node_name,
)
from cpc.modules.recovery import RecoveryLog
from cpc.modules.retry import RetryPolicy
from cpc.modules.roster import Roster, roster_variables, slot_of

logger = logging.getLogger("cpc.nodes")

INSTALL_PLAYBOOK = "install_kubernetes_cluster.yml"
JOIN_PLAYBOOK = "pb_add_nodes.yml"
UPGRADE_PLAYBOOK = "pb_upgrade_node.yml"
RESET_PLAYBOOK = "pb_reset_node.yml"

_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)$")
_STATE_ORDER = [
    MembershipState.PLANNED,
    MembershipState.PROVISIONED,
    MembershipState.JOINED,
    MembershipState.READY,
]


class _NothingPending(TransientError):
    pass


def approve_serving_csrs(control_plane: ControlPlaneAdapter, pattern: str, policy: RetryPolicy) -> int:
    """Approve pending CSRs matching ``pattern``, retrying while none exist yet.

    Finding none after every attempt is not an error; returns the number approved.
    """
    def attempt() -> int:
        pending = control_plane.pending_csrs(pattern)
        if not pending:
            raise _NothingPending(f"no pending {pattern} CSRs yet")
        for name in pending:
            control_plane.approve_csr(name)
        return len(pending)

    try:
        approved = policy.call(attempt, description=f"approve {pattern} CSRs")
    except FatalError as e:
        if isinstance(e.__cause__, _NothingPending):
            logger.info(f"No pending {pattern} CSRs to approve")
            return 0
        raise
    logger.info(f"✅ Approved {approved} {pattern} CSR(s)")
    return approved


def find_kube_node(node: NodeSummary, kube_nodes: List[Dict]) -> Optional[Dict]:
    for kn in kube_nodes:
        name = (kn.get("metadata") or {}).get("name")
        if name in (node.hostname, node.short_hostname):
            return kn
    return None


def split_version(version: str):
    """``v1.33.2`` -> (``1.33``, ``2``)."""
    match = _VERSION_RE.match(version.strip())
    if not match:
        raise ValidationError(f"Invalid Kubernetes version '{version}'", hint="Use X.Y.Z, e.g. 1.31.4")
    major, minor, patch = match.groups()
    return f"{major}.{minor}", patch


@dataclass
class RemovalReport:
    name: str
    count_before: Optional[int] = None
    count_after: Optional[int] = None
    expected_after: Optional[int] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def count_matches(self) -> bool:
        if self.count_after is None or self.expected_after is None:
            return True
        return self.count_after == self.expected_after


class NodeLifecycleManager:
    """Mutates the roster of one workspace and drives the adapters for it."""

    def __init__(
        self,
        context: WorkspaceContext,
        store: ContextStore,
        infra: InfraAdapter,
        config_runner: ConfigRunnerAdapter,
        control_plane: ControlPlaneAdapter,
        recovery: RecoveryLog,
        csr_pattern: str = "kubelet-serving",
        csr_policy: Optional[RetryPolicy] = None,
        domain: str = "",
    ):
        self.context = context
        self.store = store
        self.infra = infra
        self.config_runner = config_runner
        self.control_plane = control_plane
        self.recovery = recovery
        self.csr_pattern = csr_pattern
        self.csr_policy = csr_policy or RetryPolicy(max_attempts=5, delay=5, backoff="linear")
        self.domain = domain

    @property
    def roster(self) -> Roster:
        return self.context.roster

    def next_name(self, role: NodeRole) -> str:
        return self.roster.next_name(role)

    def _infra_delta(self) -> InfraDelta:
        return InfraDelta(variables=roster_variables(self.context))

    def _vm_count(self, warnings: List[str]) -> Optional[int]:
        try:
            return self.infra.vm_count()
        except CpcError as e:
            warnings.append(f"Could not count VMs: {e}")
            return None

    def expected_hostname(self, name: str) -> str:
        role, index = slot_of(name)
        return generate_hostname(role, index, self.context.release_letter, self.domain)

    def _locate(self, summary: ClusterSummary, name: str) -> Optional[NodeSummary]:
        """Find by node key, falling back to the generated hostname."""
        return summary.find(name) or summary.find(self.expected_hostname(name))

    def _provisioned(self, name: str) -> NodeSummary:
        node = self._locate(self.infra.cluster_summary(), name)
        if node is None:
            raise ValidationError(
                f"Node '{name}' is not provisioned",
                hint="Run 'cpc add-node' or 'cpc deploy apply' first",
            )
        return node

    def add(self, role: NodeRole, explicit_name: Optional[str] = None) -> NodeSpec:
        """Add a node to the roster and create its VM. Does not join it."""
        name = explicit_name or self.next_name(role)
        parsed = parse_node_name(name)
        if parsed is None or parsed[0] != role:
            raise ValidationError(f"'{name}' is not a valid {role.value} node name", hint=f"Try {self.next_name(role)}")
        if is_base_slot(*parsed):
            raise ValidationError(f"'{name}' is reserved for a base node", hint=f"Try {self.next_name(role)}")

        spec = self.roster.add(NodeSpec(name=name, role=role))
        self.store.save(self.context)
        self.recovery.checkpoint("roster_updated", f"added {name}")
        logger.info(f"🔧 Adding {role.value} {name} ({self.expected_hostname(name)}) to workspace {self.context.name}")

        ok = self.recovery.execute_with_recovery(
            lambda: self.infra.apply(self._infra_delta()),
            f"provision_{name}",
            f"Provisioning {name} failed; check the provisioner output above",
        )
        if not ok:
            self.roster.forget(name)
            self.store.save(self.context)
            raise FatalError(
                f"Provisioning {name} failed; roster entry reverted",
                hint=f"Fix the provisioner error, then re-run 'cpc add-node --role {role.value} --name {name}'",
            )

        if self._locate(self.infra.cluster_summary(), name) is not None:
            spec.transition(MembershipState.PROVISIONED)
        else:
            logger.warning(f"⚠️ {name} is not in cluster_summary yet")
        logger.info(f"✅ {name} provisioned. Next: cpc prepare-node {name} && cpc join-node {name}")
        return spec

    def removable(self, name: str) -> NodeSpec:
        """Return the roster entry for ``name`` or raise if it may not be removed."""
        role, index = slot_of(name)
        if is_base_slot(role, index):
            raise ValidationError(f"Node '{name}' is a base node and cannot be removed")
        spec = self.roster.get(name)
        if spec is None:
            raise ValidationError(f"Node '{name}' is not in the roster of {self.context.name}")
        return spec

    def remove(self, name: str, drain: bool = True) -> RemovalReport:
        """Drain, drop from the roster and destroy the VM of a non-base node."""
        spec = self.removable(name)

        report = RemovalReport(name=spec.name)
        summary = None
        try:
            summary = self.infra.cluster_summary()
            report.count_before = len(summary)
        except CpcError as e:
            report.warnings.append(f"Could not count VMs: {e}")
        node = self._locate(summary, spec.name) if summary is not None else None
        if report.count_before is not None:
            report.expected_after = report.count_before - (1 if node else 0)

        if drain and node is not None:
            self._drain_and_delete(node, report.warnings)

        self.roster.remove(spec.name)
        self.store.save(self.context)
        self.recovery.checkpoint("roster_updated", f"removed {spec.name}")

        ok = self.recovery.execute_with_recovery(
            lambda: self.infra.apply(self._infra_delta()),
            f"destroy_{spec.name}",
            f"{spec.name} is gone from the roster but its VM may still exist",
        )
        if not ok:
            raise FatalError(
                f"{spec.name} was removed from the roster but the provisioner apply failed",
                hint="The VM may still exist; fix the provisioner error and run 'cpc deploy apply'",
            )

        report.count_after = self._vm_count(report.warnings)
        if not report.count_matches:
            report.warnings.append(
                f"VM count is {report.count_after}, expected {report.expected_after}; "
                "run './cpc deploy apply' to reconcile"
            )
        for warning in report.warnings:
            logger.warning(f"⚠️ {warning}")
        logger.info(f"✅ {spec.name} removed")
        return report

    def _drain_and_delete(self, node: NodeSummary, warnings: List[str]) -> None:
        try:
            kube_node = find_kube_node(node, self.control_plane.nodes())
            if kube_node is None:
                logger.info(f"{node.hostname} is not a cluster member; nothing to drain")
                return
            kube_name = kube_node["metadata"]["name"]
            self.control_plane.drain_node(kube_name)
            self.control_plane.delete_node(kube_name)
        except CpcError as e:
            warnings.append(f"Could not drain/delete {node.hostname} from the cluster: {e}")

    def drain(self, name: str) -> None:
        node = self._provisioned(name)
        kube_node = find_kube_node(node, self.control_plane.nodes())
        if kube_node is None:
            raise ValidationError(f"{node.hostname} is not a cluster member")
        self.control_plane.drain_node(kube_node["metadata"]["name"])
        logger.info(f"✅ {name} drained")

    def prepare(self, name: str) -> None:
        """Install Kubernetes components on one provisioned VM."""
        node = self._provisioned(name)
        ok = self.recovery.execute_with_recovery(
            lambda: self.config_runner.apply(PlaybookRun(INSTALL_PLAYBOOK, limit=node.address)),
            f"prepare_{name}",
            f"Component installation on {name} failed",
        )
        if not ok:
            raise FatalError(f"Preparing {name} failed", hint=f"Re-run 'cpc prepare-node {name}'")

    def join(self, name: str) -> bool:
        """Join one provisioned VM. Returns False when it had already joined."""
        node = self._provisioned(name)
        if self.control_plane.has_join_marker(node.address):
            logger.info(f"{name} already joined; skipping")
            return False
        ok = self.recovery.execute_with_recovery(
            lambda: self.config_runner.apply(
                PlaybookRun(JOIN_PLAYBOOK, limit=node.address, extravars={"target_hosts": node.address})
            ),
            f"join_{name}",
            f"Joining {name} failed; check that the VM is reachable and prepared",
        )
        if not ok:
            raise FatalError(f"Joining {name} failed", hint=f"Run 'cpc prepare-node {name}' then 'cpc join-node {name}'")
        approve_serving_csrs(self.control_plane, self.csr_pattern, self.csr_policy)
        return True

    def upgrade(self, name: str, version: str, drain: bool = True) -> None:
        minor, patch = split_version(version)
        node = self._provisioned(name)
        kube_name = None
        if drain:
            kube_node = find_kube_node(node, self.control_plane.nodes())
            if kube_node is not None:
                kube_name = kube_node["metadata"]["name"]
                self.control_plane.drain_node(kube_name)
        ok = self.recovery.execute_with_recovery(
            lambda: self.config_runner.apply(
                PlaybookRun(
                    UPGRADE_PLAYBOOK,
                    limit=node.address,
                    extravars={"target_k8s_version": minor, "kubernetes_patch_version": patch},
                )
            ),
            f"upgrade_{name}",
            f"Upgrade of {name} failed; the node may still be cordoned",
        )
        if kube_name:
            self.control_plane.uncordon_node(kube_name)
        if not ok:
            raise FatalError(f"Upgrading {name} to {version} failed", hint=f"Re-run 'cpc upgrade-node {name} --version {version}'")

    def reset(self, name: str) -> None:
        node = self._provisioned(name)
        ok = self.recovery.execute_with_recovery(
            lambda: self.config_runner.apply(PlaybookRun(RESET_PLAYBOOK, limit=node.address)),
            f"reset_{name}",
            f"Reset of {name} failed",
        )
        if not ok:
            raise FatalError(f"Resetting {name} failed", hint=f"Re-run 'cpc reset-node {name}'")

    def reconcile(self, summary: ClusterSummary, kube_nodes: List[Dict]) -> Dict[str, MembershipState]:
        """Derive membership state from the provisioner and the cluster API."""
        states = {}
        for spec in self.roster:
            node = self._locate(summary, spec.name)
            target = MembershipState.PLANNED
            if node is not None:
                target = MembershipState.PROVISIONED
                kube_node = find_kube_node(node, kube_nodes)
                if kube_node is not None:
                    target = MembershipState.READY if node_ready(kube_node) else MembershipState.JOINED
            self._advance(spec, target)
            states[spec.name] = spec.state
        return states

    @staticmethod
    def _advance(spec: NodeSpec, target: MembershipState) -> None:
        if _STATE_ORDER.index(target) < _STATE_ORDER.index(spec.state):
            spec.state = target
            return
        for state in _STATE_ORDER[_STATE_ORDER.index(spec.state) + 1:_STATE_ORDER.index(target) + 1]:
            spec.transition(state)
