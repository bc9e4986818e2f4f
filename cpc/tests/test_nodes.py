import pytest

from cpc.errors import FatalError, ValidationError
from cpc.modules.models import ClusterSummary, MembershipState, NodeRole
from cpc.modules.nodes import NodeLifecycleManager, approve_serving_csrs, split_version
from cpc.tests.conftest import fast_policy, make_summary


@pytest.fixture
def manager(store, infra, runner, control_plane, recovery):
    store.envs_dir.mkdir(parents=True)
    store.env_path("lab").write_text("RELEASE_LETTER=b\nADDITIONAL_WORKERS=worker-3\n")
    context = store.load("lab")
    return NodeLifecycleManager(
        context, store, infra, runner, control_plane, recovery, csr_policy=fast_policy()
    )


def provision_from_roster(world):
    def on_apply(delta):
        names = ["controlplane-1", "worker-1", "worker-2"]
        names += [n for n in delta.variables["additional_workers"].split(",") if n]
        world.summary = make_summary(*names)
    return on_apply


def test_add_uses_next_free_name(manager, infra, world, store):
    infra.on_apply = provision_from_roster(world)
    spec = manager.add(NodeRole.WORKER)
    assert spec.name == "worker-4"
    assert spec.state == MembershipState.PROVISIONED
    assert infra.applies[0].variables["additional_workers"] == "worker-3,worker-4"
    assert "worker-3,worker-4" in store.env_path("lab").read_text()


def test_add_rejects_legacy_duplicate_before_side_effects(manager, infra):
    with pytest.raises(ValidationError):
        manager.add(NodeRole.WORKER, "worker3")
    assert infra.applies == []


def test_add_rejects_base_slot(manager, infra):
    with pytest.raises(ValidationError, match="reserved"):
        manager.add(NodeRole.CONTROL_PLANE, "controlplane-1")
    assert infra.applies == []


def test_failed_add_reverts_roster(manager, infra, store):
    infra.fail_apply = True
    with pytest.raises(FatalError, match="reverted"):
        manager.add(NodeRole.WORKER)
    assert "worker-4" not in store.env_path("lab").read_text()
    assert manager.next_name(NodeRole.WORKER) == "worker-4"


@pytest.mark.parametrize("name", ["worker-1", "worker-2", "controlplane-1", "controlplane"])
def test_protected_nodes_rejected_before_infra_mutation(manager, infra, control_plane, name):
    with pytest.raises(ValidationError, match="base node"):
        manager.remove(name)
    assert infra.applies == []
    assert control_plane.drained == []


def test_remove_drains_retires_and_verifies_count(manager, infra, world, control_plane, store):
    world.summary = make_summary("controlplane-1", "worker-1", "worker-2", "worker-3")
    world.cp_initialized = True
    world.joined.add("10.0.0.4")
    infra.on_apply = provision_from_roster(world)

    report = manager.remove("worker-3")

    assert control_plane.drained == ["worker-3.lab.local"]
    assert control_plane.deleted_nodes == ["worker-3.lab.local"]
    assert report.count_before == 4
    assert report.count_after == 3
    assert report.warnings == []
    text = store.env_path("lab").read_text()
    assert 'ADDITIONAL_WORKERS=""' in text
    assert 'RETIRED_NODES="worker-3"' in text
    assert manager.next_name(NodeRole.WORKER) == "worker-4"


def test_remove_reports_count_mismatch_without_failing(manager, infra, world):
    world.summary = make_summary("controlplane-1", "worker-1", "worker-2", "worker-3")
    report = manager.remove("worker-3", drain=False)
    assert not report.count_matches
    assert any("expected 3" in w for w in report.warnings)


def test_remove_failure_explains_partial_state(manager, infra, world):
    infra.fail_apply = True
    with pytest.raises(FatalError) as excinfo:
        manager.remove("worker-3", drain=False)
    assert "removed from the roster" in excinfo.value.message
    assert "deploy apply" in excinfo.value.hint


def test_join_skips_node_with_marker(manager, world, runner):
    world.summary = make_summary("controlplane-1", "worker-1", "worker-2", "worker-3")
    world.joined.add("10.0.0.4")
    assert manager.join("worker-3") is False
    assert runner.runs == []


def test_join_runs_playbook_and_approves_csrs(manager, world, runner, control_plane):
    world.summary = make_summary("controlplane-1", "worker-1", "worker-2", "worker-3")
    world.pending_csrs = ["csr-kubelet-serving-abc"]
    assert manager.join("worker-3") is True
    assert runner.runs[0].playbook == "pb_add_nodes.yml"
    assert runner.runs[0].limit == "10.0.0.4"
    assert control_plane.approved == ["csr-kubelet-serving-abc"]


def test_join_requires_provisioned_vm(manager):
    with pytest.raises(ValidationError, match="not provisioned"):
        manager.join("worker-3")


def test_zero_pending_csrs_is_not_an_error(control_plane):
    assert approve_serving_csrs(control_plane, "kubelet-serving", fast_policy(3)) == 0


def test_reconcile_membership(manager, world):
    world.summary = make_summary("controlplane-1", "worker-1", "worker-2", "worker-3")
    world.cp_initialized = True
    world.joined.add("10.0.0.2")
    states = manager.reconcile(world.summary, manager.control_plane.nodes())
    assert states["controlplane-1"] == MembershipState.READY
    assert states["worker-1"] == MembershipState.READY
    assert states["worker-2"] == MembershipState.PROVISIONED
    assert states["worker-3"] == MembershipState.PROVISIONED


def test_upgrade_passes_split_version(manager, world, runner):
    world.summary = make_summary("controlplane-1", "worker-1", "worker-2", "worker-3")
    manager.upgrade("worker-3", "v1.33.2", drain=False)
    assert runner.runs[0].extravars == {"target_k8s_version": "1.33", "kubernetes_patch_version": "2"}


def test_split_version_rejects_garbage():
    with pytest.raises(ValidationError):
        split_version("1.33")


def test_node_located_by_generated_hostname(manager, world):
    world.summary = ClusterSummary.from_output(
        {"vm-104": {"IP": "10.0.0.4", "hostname": "wb3", "VM_ID": 104}}
    )
    assert manager.expected_hostname("worker-3") == "wb3"
    manager.prepare("worker-3")
    assert manager.config_runner.runs[0].limit == "10.0.0.4"
