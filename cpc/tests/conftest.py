"""Recording test doubles for the three adapters."""
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from cpc.errors import FatalError, WaitTimeoutError
from cpc.modules.adapters.ansible import PlaybookRun
from cpc.modules.adapters.kube import CONTROL_PLANE_LABEL, ManifestApply, ResourceSelector
from cpc.modules.adapters.tofu import InfraDelta
from cpc.modules.context import ContextStore
from cpc.modules.models import ClusterSummary
from cpc.modules.recovery import RecoveryLog
from cpc.modules.retry import RetryPolicy


def make_summary(*keys: str) -> ClusterSummary:
    data = {}
    for i, key in enumerate(keys, start=1):
        data[key] = {"IP": f"10.0.0.{i}", "hostname": f"{key}.lab.local", "VM_ID": 100 + i}
    return ClusterSummary.from_output({"value": data})


def fast_policy(attempts: int = 2) -> RetryPolicy:
    return RetryPolicy(max_attempts=attempts, delay=0, sleep=lambda s: None)


class FakeWorld:
    """Shared state the fakes mutate, so workflows see their own effects."""

    def __init__(self, summary: ClusterSummary):
        self.summary = summary
        self.cp_initialized = False
        self.joined = set()
        self.calico_pods = 0
        self.smoke_ok = True
        self.pending_csrs: List[str] = []
        self.events: List[tuple] = []


class FakeInfra:
    binary = "tofu"

    def __init__(self, world: FakeWorld):
        self.world = world
        self.applies: List[InfraDelta] = []
        self.selected: List[str] = []
        self.destroyed = 0
        self.deleted: List[str] = []
        self.fail_apply = False
        self.on_apply = None

    def select_workspace(self, name, create=True):
        self.selected.append(name)

    def delete_workspace(self, name):
        self.deleted.append(name)

    def destroy_all(self, variables=None):
        self.destroyed += 1
        self.world.events.append(("destroy",))

    def query(self, selector="cluster_summary"):
        return self.world.summary.to_dict()

    def cluster_summary(self) -> ClusterSummary:
        return self.world.summary

    def vm_count(self) -> int:
        return len(self.world.summary)

    def apply(self, delta: InfraDelta):
        self.applies.append(delta)
        self.world.events.append(("infra_apply", dict(delta.variables)))
        if self.fail_apply:
            raise FatalError("tofu failed: Error creating VM", command="tofu apply")
        if self.on_apply:
            self.on_apply(delta)


class FakeConfigRunner:
    def __init__(self, world: FakeWorld, fail: Optional[set] = None, unreachable: Optional[set] = None):
        self.world = world
        self.fail = fail or set()
        self.unreachable = unreachable or set()
        self.runs: List[PlaybookRun] = []

    def query(self, selector="all") -> Dict[str, bool]:
        return {addr: addr not in self.unreachable for addr in self.world.summary.addresses()}

    def apply(self, run: PlaybookRun):
        self.runs.append(run)
        self.world.events.append(("playbook", run.playbook, run.limit))
        if run.playbook in self.fail:
            raise FatalError(f"{run.playbook} failed on {run.limit}", command=run.playbook)
        if run.playbook == "initialize_kubernetes_cluster_with_dns.yml":
            self.world.cp_initialized = True
        if run.playbook == "pb_add_nodes.yml":
            self.world.joined.add(run.limit)


def _node(name: str, control_plane: bool = False, ready: bool = True) -> dict:
    labels = {CONTROL_PLANE_LABEL: ""} if control_plane else {}
    return {
        "metadata": {"name": name, "labels": labels},
        "status": {"conditions": [{"type": "Ready", "status": "True" if ready else "False"}]},
    }


def _pod(host_ip: str, ready: bool = True) -> dict:
    return {
        "status": {
            "phase": "Running",
            "hostIP": host_ip,
            "conditions": [{"type": "Ready", "status": "True" if ready else "False"}],
        }
    }


class FakeControlPlane:
    def __init__(self, world: FakeWorld):
        self.world = world
        self.context_name = "kubernetes-admin@test"
        self.image_tags: Dict[str, Optional[str]] = {}
        self.ready: Dict[str, bool] = {}
        self.crd_sizes: Dict[str, int] = {}
        self.stripped: List[str] = []
        self.applied: List[Path] = []
        self.patched: List[tuple] = []
        self.approved: List[str] = []
        self.drained: List[str] = []
        self.deleted_nodes: List[str] = []
        self.fail_apply: set = set()
        self.fail_nodes = False
        self.wait_results: Dict[str, bool] = {}

    @staticmethod
    def key(selector: ResourceSelector) -> str:
        return f"{selector.namespace}/{selector.label_selector or selector.field_selector}"

    def reset_client(self):
        pass

    def nodes(self):
        if self.fail_nodes:
            raise FatalError("API returned 500")
        nodes = []
        for n in self.world.summary.control_planes():
            if self.world.cp_initialized:
                nodes.append(_node(n.hostname, control_plane=True))
        for n in self.world.summary.workers():
            if n.address in self.world.joined:
                nodes.append(_node(n.hostname))
        return nodes

    def query(self, selector: ResourceSelector):
        if selector.kind == "nodes":
            return self.nodes()
        if "calico-node" in (selector.label_selector or ""):
            return [_pod(f"10.0.0.{i}") for i in range(self.world.calico_pods)]
        if "cpc-smoke-test" in (selector.label_selector or ""):
            return [_pod("10.0.0.2"), _pod("10.0.0.3")] if self.world.smoke_ok else [_pod("10.0.0.2")]
        if self.ready.get(self.key(selector)):
            return [_pod("10.0.0.2")]
        return []

    def image_tag(self, selector: ResourceSelector):
        return self.image_tags.get(self.key(selector))

    def all_ready(self, selector: ResourceSelector) -> bool:
        return self.ready.get(self.key(selector), False)

    def supports_server_side_apply(self) -> bool:
        return True

    def crd_annotation_size(self, crd, annotation) -> int:
        return self.crd_sizes.get(crd, 0)

    def strip_annotation(self, crd, annotation):
        self.stripped.append(crd)
        self.world.events.append(("strip", crd))

    def apply(self, delta: ManifestApply):
        self.applied.append(Path(delta.path))
        self.world.events.append(("manifest", Path(delta.path).name))
        if Path(delta.path).name in self.fail_apply:
            raise FatalError(f"kubectl failed: {Path(delta.path).name}", command="kubectl apply")
        if Path(delta.path).name == "custom-resources.yaml":
            self.world.calico_pods = 3

    def patch_deployment_image(self, name, namespace, container, image):
        self.patched.append((name, image))
        self.world.events.append(("patch", name, image))

    def wait_until(self, condition, timeout, poll_interval=None, description="condition"):
        for _ in range(3):
            if condition():
                return True
        raise WaitTimeoutError(f"Timed out waiting for {description}", timeout=timeout)

    def wait_for_condition(self, resource, condition, timeout=300, namespace=None, label_selector=None):
        if not self.wait_results.get(resource, True):
            raise WaitTimeoutError(f"{resource} not {condition}", timeout=timeout)
        return True

    def pending_csrs(self, pattern):
        return [n for n in self.world.pending_csrs if pattern in n and n not in self.approved]

    def approve_csr(self, name):
        self.approved.append(name)

    def drain_node(self, name, timeout=300):
        self.drained.append(name)

    def uncordon_node(self, name):
        pass

    def delete_node(self, name):
        self.deleted_nodes.append(name)

    def create_smoke_workload(self, name, namespace, replicas, image):
        self.world.events.append(("smoke_create", name))

    def delete_deployment(self, name, namespace):
        self.world.events.append(("smoke_delete", name))

    def has_control_plane_marker(self, address):
        return self.world.cp_initialized

    def has_join_marker(self, address):
        return address in self.world.joined


@pytest.fixture
def world():
    return FakeWorld(make_summary("controlplane-1", "worker-1", "worker-2"))


@pytest.fixture
def infra(world):
    return FakeInfra(world)


@pytest.fixture
def runner(world):
    return FakeConfigRunner(world)


@pytest.fixture
def control_plane(world):
    return FakeControlPlane(world)


@pytest.fixture
def recovery(tmp_path):
    return RecoveryLog("test", log_dir=tmp_path)


@pytest.fixture
def store(tmp_path, infra):
    return ContextStore(envs_dir=tmp_path / "envs", context_file=tmp_path / "ctx" / "current", infra=infra)
