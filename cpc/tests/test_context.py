import pytest

from cpc.errors import FatalError, ValidationError
from cpc.modules.context import FALLBACK_CONTEXT, validate_workspace_name


@pytest.mark.parametrize("name", ["", "default", "NULL", "none", "a" * 51, "bad name", "dots.not.ok"])
def test_invalid_workspace_names(name):
    with pytest.raises(ValidationError):
        validate_workspace_name(name)


def test_valid_workspace_names():
    assert validate_workspace_name("k8s-133_b") == "k8s-133_b"
    assert validate_workspace_name("a" * 50) == "a" * 50


def test_fallback_when_no_context_file(store):
    assert store.get_active_name() == FALLBACK_CONTEXT
    ctx = store.get_active_context()
    assert ctx.name == FALLBACK_CONTEXT
    assert ctx.roster.names() == ["controlplane-1", "worker-1", "worker-2"]


def test_set_active_context_persists_and_selects_partition(store, infra):
    store.set_active_context("k8s133")
    assert store.get_active_name() == "k8s133"
    assert infra.selected == ["k8s133"]


def test_set_active_context_rejects_bad_name_without_side_effects(store, infra):
    with pytest.raises(ValidationError):
        store.set_active_context("none")
    assert not store.context_file.exists()
    assert infra.selected == []


def test_clone_copies_configuration_but_not_history(store):
    store.envs_dir.mkdir(parents=True)
    store.env_path("src").write_text(
        "RELEASE_LETTER=a\nKUBERNETES_VERSION=v1.31.4\nADDITIONAL_WORKERS=worker-4\nRETIRED_NODES=worker-3\n"
    )
    clone = store.clone_context("src", "dst", "c")
    assert clone.name == "dst"
    assert clone.release_letter == "c"
    assert clone.settings["KUBERNETES_VERSION"] == "v1.31.4"
    assert clone.roster.retired == []
    assert store.get_active_name() == "dst"
    assert "RETIRED_NODES" not in store.env_path("dst").read_text()


def test_clone_derives_release_letter(store):
    store.envs_dir.mkdir(parents=True)
    store.env_path("src").write_text("RELEASE_LETTER=a\n")
    assert store.clone_context("src", "Blue").release_letter == "b"


@pytest.mark.parametrize("source,dest", [("src", "src"), ("missing", "new"), ("src", "taken"), ("src", "default")])
def test_clone_rejections(store, source, dest):
    store.envs_dir.mkdir(parents=True)
    store.env_path("src").write_text("RELEASE_LETTER=a\n")
    store.env_path("taken").write_text("RELEASE_LETTER=t\n")
    with pytest.raises(ValidationError):
        store.clone_context(source, dest)


def test_delete_context_order(store, infra, world):
    store.envs_dir.mkdir(parents=True)
    store.env_path("old").write_text("RELEASE_LETTER=o\n")
    store.set_active_context("old")
    infra.selected.clear()

    completed = store.delete_context("old")

    assert completed[1] == "destroy all resources"
    assert infra.destroyed == 1
    assert not store.env_path("old").exists()
    assert store.get_active_name() == FALLBACK_CONTEXT
    assert infra.selected == ["old", FALLBACK_CONTEXT]
    assert infra.deleted == ["old"]


def test_delete_context_failure_reports_remaining_steps(store, infra):
    store.envs_dir.mkdir(parents=True)
    store.env_path("old").write_text("RELEASE_LETTER=o\n")

    def broken_destroy(variables=None):
        raise FatalError("tofu destroy failed")

    infra.destroy_all = broken_destroy
    with pytest.raises(FatalError) as excinfo:
        store.delete_context("old")
    assert "destroy all resources" in excinfo.value.message
    assert "remove workspace configuration" in excinfo.value.hint
    assert store.env_path("old").exists()
    assert infra.deleted == []
