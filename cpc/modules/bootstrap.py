"""Bootstrap workflow.

NotStarted -> ComponentsInstalled -> ControlPlaneInitialized
-> NetworkingInstalled -> WorkersJoined -> Validated

Every step is guarded by an idempotency probe so re-running the whole
workflow after a partial failure converges. When a control plane already
exists and ``force`` is not set, nothing is initialized: the run only
verifies and validates.
"""
import logging
from typing import Callable, List, Optional

from cpc.errors import CpcError, FatalError, WaitTimeoutError
from cpc.modules.adapters.ansible import ConfigRunnerAdapter, GROUP_NAMES, PlaybookRun
from cpc.modules.adapters.kube import ControlPlaneAdapter, ResourceSelector, is_control_plane_node
from cpc.modules.adapters.tofu import InfraAdapter
from cpc.modules.addons import AddonUpgradeOrchestrator
from cpc.modules.models import BootstrapPhase, BootstrapResult, ClusterSummary, NodeRole, WorkspaceContext
from cpc.modules.nodes import INSTALL_PLAYBOOK, JOIN_PLAYBOOK, approve_serving_csrs
from cpc.modules.recovery import RecoveryLog
from cpc.modules.retry import RetryPolicy
from cpc.modules.taskgroup import heartbeat_monitor, run_task_group

logger = logging.getLogger("cpc.bootstrap")

INIT_PLAYBOOK = "initialize_kubernetes_cluster_with_dns.yml"
VALIDATE_PLAYBOOK = "validate_cluster.yml"
SMOKE_NAME = "cpc-smoke-test"
SMOKE_NAMESPACE = "default"
SMOKE_IMAGE = "registry.k8s.io/pause:3.9"
NEXT_STEPS = [
    "cpc get-credentials",
    "cpc upgrade-addons",
]


class BootstrapOrchestrator:
    def __init__(
        self,
        context: WorkspaceContext,
        infra: InfraAdapter,
        config_runner: ConfigRunnerAdapter,
        control_plane: ControlPlaneAdapter,
        addons: AddonUpgradeOrchestrator,
        recovery: RecoveryLog,
        refresh_credentials: Callable[[ClusterSummary], None],
        timeouts=None,
        csr_pattern: str = "kubelet-serving",
        csr_policy: Optional[RetryPolicy] = None,
        heartbeat_interval: float = 30.0,
    ):
        self.context = context
        self.infra = infra
        self.config_runner = config_runner
        self.control_plane = control_plane
        self.addons = addons
        self.recovery = recovery
        self.refresh_credentials = refresh_credentials
        self.control_plane_timeout = getattr(timeouts, "control_plane", 600)
        self.networking_timeout = getattr(timeouts, "networking", 300)
        self.smoke_timeout = getattr(timeouts, "smoke_test", 180)
        self.csr_pattern = csr_pattern
        self.csr_policy = csr_policy or RetryPolicy(max_attempts=5, delay=5, backoff="linear")
        self.heartbeat_interval = heartbeat_interval

    def run(self, force: bool = False, skip_check: bool = False) -> BootstrapResult:
        result = BootstrapResult()
        summary = self.infra.cluster_summary()
        if not summary.control_planes():
            raise FatalError(
                f"No VMs found for workspace '{self.context.name}'",
                hint="Run 'cpc deploy apply' first",
            )
        cp = summary.control_planes()[0]
        if not skip_check:
            self._check_reachable(summary)

        if not force and self.control_plane.has_control_plane_marker(cp.address):
            logger.warning(
                f"⚠️ Control plane on {cp.hostname} is already initialized; "
                "verifying only (use --force to re-run initialization)"
            )
            result.verify_only = True
            result.warn("cluster already initialized; initialization skipped")

        self.recovery.checkpoint("bootstrap_start", f"workspace={self.context.name} verify_only={result.verify_only}")

        if result.verify_only:
            result.skipped += [BootstrapPhase.COMPONENTS_INSTALLED.value, BootstrapPhase.CONTROL_PLANE_INITIALIZED.value]
            result.update_phase(BootstrapPhase.CONTROL_PLANE_INITIALIZED)
            self.refresh_credentials(summary)
        else:
            self._install_components()
            result.update_phase(BootstrapPhase.COMPONENTS_INSTALLED)
            self._initialize_control_plane(summary)
            result.update_phase(BootstrapPhase.CONTROL_PLANE_INITIALIZED)

        self._install_networking(result)
        result.update_phase(BootstrapPhase.NETWORKING_INSTALLED)

        self._join_workers(summary, result)
        result.update_phase(BootstrapPhase.WORKERS_JOINED)

        self._validate(result)
        result.update_phase(BootstrapPhase.VALIDATED)
        self.recovery.checkpoint("bootstrap_done", result.phase.value)
        return result

    def _check_reachable(self, summary: ClusterSummary) -> None:
        reachable = self.config_runner.query("all")
        down = [addr for addr, ok in reachable.items() if not ok]
        if down:
            raise FatalError(
                f"Hosts not reachable over SSH: {', '.join(down)}",
                hint="Wait for the VMs to boot, or re-run with --skip-check",
            )
        logger.info(f"✅ All {len(summary)} VMs reachable")

    def _install_components(self) -> None:
        tasks = {
            group: (lambda g=group: self.config_runner.apply(PlaybookRun(INSTALL_PLAYBOOK, limit=g)))
            for group in (GROUP_NAMES[NodeRole.CONTROL_PLANE], GROUP_NAMES[NodeRole.WORKER])
        }
        ok = self.recovery.execute_with_recovery(
            lambda: run_task_group(tasks, heartbeat_monitor("component installation", self.heartbeat_interval)),
            "install_components",
            "Component installation failed; fix the failing hosts and re-run 'cpc bootstrap'",
        )
        if not ok:
            raise FatalError("Installing Kubernetes components failed", hint="Re-run 'cpc bootstrap'")

    def _api_has_control_plane(self) -> bool:
        return any(is_control_plane_node(n) for n in self.control_plane.nodes())

    def _initialize_control_plane(self, summary: ClusterSummary) -> None:
        cp = summary.control_planes()[0]
        ok = self.recovery.execute_with_recovery(
            lambda: self.config_runner.apply(PlaybookRun(INIT_PLAYBOOK, limit=GROUP_NAMES[NodeRole.CONTROL_PLANE])),
            "initialize_control_plane",
            "Control-plane initialization failed; inspect kubeadm output on the control-plane node",
        )
        initialized = self.control_plane.has_control_plane_marker(cp.address)
        if not ok and not initialized:
            raise FatalError(
                "Control plane was not initialized",
                hint="Check the playbook output above, then re-run 'cpc bootstrap'",
            )
        if not ok:
            raise FatalError(
                f"Control plane on {cp.hostname} is initialized but the init playbook failed",
                hint=f"The cluster may be broken; inspect 'journalctl -u kubelet' on {cp.address} before re-running with --force",
            )

        self.refresh_credentials(summary)
        try:
            self.control_plane.wait_until(
                self._api_has_control_plane, timeout=self.control_plane_timeout, description="API server"
            )
        except WaitTimeoutError as e:
            raise FatalError(f"Control plane did not become reachable: {e}", hint="Run 'cpc status --full'") from e
        approve_serving_csrs(self.control_plane, self.csr_pattern, self.csr_policy)

    def _install_networking(self, result: BootstrapResult) -> None:
        ok = self.recovery.execute_with_recovery(
            self.addons.install_networking,
            "install_networking",
            "Network plugin installation failed; try 'cpc upgrade-addons --addon calico'",
        )
        if not ok:
            raise FatalError("Installing the network plugin failed", hint="Run 'cpc upgrade-addons --addon calico'")
        try:
            self.control_plane.wait_for_condition(
                "nodes", "Ready", timeout=self.networking_timeout, label_selector="node-role.kubernetes.io/control-plane"
            )
        except WaitTimeoutError as e:
            logger.warning(f"⚠️ {e}")
            result.warn(str(e))

    def _join_workers(self, summary: ClusterSummary, result: BootstrapResult) -> None:
        failed: List[str] = []
        for worker in summary.workers():
            try:
                if self.control_plane.has_join_marker(worker.address):
                    logger.info(f"{worker.hostname} already joined; skipping")
                    continue
            except CpcError as e:
                failed.append(worker.key)
                logger.error(f"❌ Could not probe {worker.hostname}: {e}")
                continue
            ok = self.recovery.execute_with_recovery(
                lambda w=worker: self.config_runner.apply(
                    PlaybookRun(JOIN_PLAYBOOK, limit=w.address, extravars={"target_hosts": w.address})
                ),
                f"join_{worker.key}",
                f"Joining {worker.hostname} failed; try 'cpc join-node {worker.key}'",
            )
            if not ok:
                failed.append(worker.key)
        if failed:
            raise FatalError(
                f"Workers failed to join: {', '.join(failed)}",
                hint=" && ".join(f"cpc join-node {name}" for name in failed),
            )
        approve_serving_csrs(self.control_plane, self.csr_pattern, self.csr_policy)

    def _validate(self, result: BootstrapResult) -> None:
        """Best-effort checks. Failures become warnings."""
        ok = self.recovery.execute_with_recovery(
            lambda: self.config_runner.apply(PlaybookRun(VALIDATE_PLAYBOOK, limit=GROUP_NAMES[NodeRole.CONTROL_PLANE])),
            "validate_cluster",
            "Cluster validation playbook reported problems; the cluster may still be usable",
        )
        if not ok:
            result.warn("validation playbook failed")

        try:
            self._smoke_test()
        except CpcError as e:
            logger.warning(f"⚠️ Smoke test failed: {e}")
            result.warn(f"smoke test failed: {e}")

    def _smoke_test(self) -> None:
        selector = ResourceSelector(kind="pods", namespace=SMOKE_NAMESPACE, label_selector=f"app={SMOKE_NAME}")

        def spread() -> bool:
            pods = self.control_plane.query(selector)
            hosts = {(p.get("status") or {}).get("hostIP") for p in pods if (p.get("status") or {}).get("phase") == "Running"}
            hosts.discard(None)
            return len(hosts) >= 2

        self.control_plane.create_smoke_workload(SMOKE_NAME, SMOKE_NAMESPACE, replicas=2, image=SMOKE_IMAGE)
        try:
            self.control_plane.wait_until(spread, timeout=self.smoke_timeout, description="smoke pods on 2 nodes")
            logger.info("✅ Smoke workload scheduled across at least 2 nodes")
        finally:
            self.control_plane.delete_deployment(SMOKE_NAME, SMOKE_NAMESPACE)
