import pytest

from cpc.errors import FatalError
from cpc.modules.cache import StatusCache, clear_caches
from cpc.modules.status import FAST, FULL, StatusAggregator


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class Probe:
    def __init__(self, down=()):
        self.calls = []
        self.down = set(down)

    def __call__(self, address):
        self.calls.append(address)
        return address not in self.down


@pytest.fixture
def clock():
    return Clock()


def aggregator(tmp_path, infra, control_plane, probe, clock):
    cache = StatusCache(tmp_path / "cache", "lab", clock=clock)
    return StatusAggregator("lab", infra, control_plane, probe, cache, ssh_ttl=10, infra_ttl=300)


def test_fast_mode_reuses_fresh_reachability(tmp_path, infra, control_plane, clock):
    probe = Probe(down={"10.0.0.3"})
    status = aggregator(tmp_path, infra, control_plane, probe, clock)

    report = status.collect(FAST)
    assert report.get("vms").value == 3
    assert report.get("reachable").value == 2
    assert len(probe.calls) == 3

    clock.now += 9.9
    status.collect(FAST)
    assert len(probe.calls) == 3

    clock.now += 0.1
    status.collect(FAST)
    assert len(probe.calls) == 6


def test_fast_mode_reads_cached_summary(tmp_path, infra, world, control_plane, clock):
    status = aggregator(tmp_path, infra, control_plane, Probe(), clock)
    status.collect(FAST)

    infra.cluster_summary = lambda: pytest.fail("provisioner queried despite fresh cache")
    assert status.collect(FAST).get("vms").value == 3


def test_full_mode_never_uses_cache(tmp_path, infra, control_plane, clock):
    probe = Probe()
    status = aggregator(tmp_path, infra, control_plane, probe, clock)
    status.collect(FULL)
    status.collect(FULL)
    assert len(probe.calls) == 6


def test_full_mode_reports_cluster_health(tmp_path, infra, world, control_plane, clock):
    world.cp_initialized = True
    world.joined.update({"10.0.0.2", "10.0.0.3"})
    world.calico_pods = 3
    report = aggregator(tmp_path, infra, control_plane, Probe(), clock).collect(FULL)

    assert report.get("k8s_nodes").value == 3
    assert report.get("k8s_nodes").ok
    assert report.get("control_planes").value == 1
    assert report.get("workers").value == 2
    assert report.get("network_plugin").value == "3/3"
    assert report.get("coredns").ok is False


def test_one_failing_check_does_not_hide_the_others(tmp_path, infra, control_plane, clock):
    control_plane.fail_nodes = True
    report = aggregator(tmp_path, infra, control_plane, Probe(), clock).collect(FULL)

    nodes = report.get("k8s_nodes")
    assert nodes.ok is False
    assert "500" in nodes.error
    assert report.get("vms").value == 3
    assert report.get("ssh").value == {"10.0.0.1": True, "10.0.0.2": True, "10.0.0.3": True}
    assert report.get("control_planes") is None


def test_infra_failure_is_isolated(tmp_path, infra, control_plane, clock):
    def broken():
        raise FatalError("state locked")

    infra.cluster_summary = broken
    report = aggregator(tmp_path, infra, control_plane, Probe(), clock).collect(FULL)
    assert report.get("vms").error == "state locked"
    assert report.get("ssh").value == {}
    assert report.as_dict()["checks"]["k8s_nodes"]["value"] == 0


def test_unknown_mode_rejected(tmp_path, infra, control_plane, clock):
    with pytest.raises(ValueError):
        aggregator(tmp_path, infra, control_plane, Probe(), clock).collect("medium")


def test_clear_caches_scoped_to_workspace(tmp_path, clock):
    StatusCache(tmp_path, "lab", clock).set("ssh", {})
    StatusCache(tmp_path, "prod", clock).set("ssh", {})
    removed = clear_caches(tmp_path, "lab")
    assert [p.name for p in removed] == ["cpc_ssh_cache_lab"]
    assert (tmp_path / "cpc_ssh_cache_prod").exists()
    clear_caches(tmp_path)
    assert not (tmp_path / "cpc_ssh_cache_prod").exists()


def test_full_clear_removes_recovery_logs(tmp_path, clock):
    StatusCache(tmp_path, "lab", clock).set("ssh", {})
    (tmp_path / "cpc_recovery_4242.log").write_text("checkpoint: deploy\n")
    clear_caches(tmp_path, "lab")
    assert (tmp_path / "cpc_recovery_4242.log").exists()
    removed = clear_caches(tmp_path)
    assert [p.name for p in removed] == ["cpc_recovery_4242.log"]
    assert not (tmp_path / "cpc_recovery_4242.log").exists()
