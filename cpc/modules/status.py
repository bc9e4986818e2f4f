"""Merge provisioner, SSH and cluster state into one health view."""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from cpc.errors import CpcError
from cpc.modules.adapters.kube import (
    ControlPlaneAdapter,
    ResourceSelector,
    is_control_plane_node,
    node_ready,
    pod_ready,
)
from cpc.modules.adapters.tofu import InfraAdapter
from cpc.modules.cache import StatusCache
from cpc.modules.models import ClusterSummary

logger = logging.getLogger("cpc.status")

FAST = "fast"
FULL = "full"

COREDNS = ResourceSelector(kind="pods", namespace="kube-system", label_selector="k8s-app=kube-dns")
NETWORK_PLUGIN = ResourceSelector(kind="pods", namespace="calico-system", label_selector="k8s-app=calico-node")


@dataclass
class CheckResult:
    name: str
    value: Any = None
    ok: Optional[bool] = None
    error: Optional[str] = None


@dataclass
class StatusReport:
    workspace: str
    mode: str
    checks: List[CheckResult] = field(default_factory=list)

    def get(self, name: str) -> Optional[CheckResult]:
        for check in self.checks:
            if check.name == name:
                return check
        return None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "workspace": self.workspace,
            "mode": self.mode,
            "checks": {c.name: {"value": c.value, "ok": c.ok, "error": c.error} for c in self.checks},
        }


class StatusAggregator:
    def __init__(
        self,
        workspace: str,
        infra: InfraAdapter,
        control_plane: ControlPlaneAdapter,
        probe: Callable[[str], bool],
        cache: StatusCache,
        ssh_ttl: float = 10.0,
        infra_ttl: float = 300.0,
    ):
        self.workspace = workspace
        self.infra = infra
        self.control_plane = control_plane
        self.probe = probe
        self.cache = cache
        self.ssh_ttl = ssh_ttl
        self.infra_ttl = infra_ttl

    def collect(self, mode: str = FAST) -> StatusReport:
        if mode not in (FAST, FULL):
            raise ValueError(f"Unknown status mode: {mode}")
        report = StatusReport(workspace=self.workspace, mode=mode)
        summary = self._check(report, "vms", lambda: self._summary(cached=mode == FAST))
        if summary is not None:
            report.get("vms").value = len(summary)
            report.get("vms").ok = len(summary) > 0

        if mode == FAST:
            self._check(report, "reachable", lambda: self._reachable_count(summary, cached=True))
            self._check(report, "k8s_nodes", lambda: len(self.control_plane.nodes()))
            return report

        self._check(report, "ssh", lambda: self._reachability(summary, cached=False))
        nodes = self._check(report, "k8s_nodes", self.control_plane.nodes)
        if nodes is not None:
            report.get("k8s_nodes").value = len(nodes)
            report.get("k8s_nodes").ok = bool(nodes) and all(node_ready(n) for n in nodes)
            report.checks.append(CheckResult("control_planes", value=sum(1 for n in nodes if is_control_plane_node(n))))
            report.checks.append(CheckResult("workers", value=sum(1 for n in nodes if not is_control_plane_node(n))))
        self._readiness(report, "coredns", COREDNS)
        self._readiness(report, "network_plugin", NETWORK_PLUGIN)
        return report

    def _check(self, report: StatusReport, name: str, func: Callable[[], Any]) -> Any:
        """Run one check; a failure is recorded inline and does not stop the others."""
        try:
            value = func()
        except CpcError as e:
            logger.debug(f"status check {name} failed: {e}")
            report.checks.append(CheckResult(name, ok=False, error=str(e)))
            return None
        report.checks.append(CheckResult(name, value=value))
        return value

    def _readiness(self, report: StatusReport, name: str, selector: ResourceSelector) -> None:
        pods = self._check(report, name, lambda: self.control_plane.query(selector))
        if pods is None:
            return
        check = report.get(name)
        ready = sum(1 for p in pods if pod_ready(p))
        check.value = f"{ready}/{len(pods)}"
        check.ok = bool(pods) and ready == len(pods)

    def _summary(self, cached: bool) -> ClusterSummary:
        if cached:
            hit = self.cache.get("tofu_output", self.infra_ttl)
            if hit is not None:
                return ClusterSummary.from_output(hit)
        summary = self.infra.cluster_summary()
        self.cache.set("tofu_output", {k: {"IP": n.address, "hostname": n.hostname, "VM_ID": n.infra_id} for k, n in summary.nodes.items()})
        return summary

    def _reachability(self, summary: Optional[ClusterSummary], cached: bool) -> Dict[str, bool]:
        if summary is None:
            return {}
        if cached:
            hit = self.cache.get("ssh", self.ssh_ttl)
            if hit is not None:
                return hit
        results = {}
        for address in summary.addresses():
            results[address] = self.probe(address)
        self.cache.set("ssh", results)
        return results

    def _reachable_count(self, summary: Optional[ClusterSummary], cached: bool) -> int:
        return sum(1 for ok in self._reachability(summary, cached).values() if ok)
