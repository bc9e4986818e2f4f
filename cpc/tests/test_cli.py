import subprocess
import sys
from types import SimpleNamespace

import pytest
from typer.testing import CliRunner

from cpc.cli import ALIASES, COMMANDS, app
from cpc.commands import common
from cpc.config import CpcSettings

cli = CliRunner()


@pytest.fixture
def runtime(store, infra, runner, control_plane, recovery, monkeypatch):
    store.envs_dir.mkdir(parents=True)
    store.env_path("lab").write_text("ADDITIONAL_WORKERS=worker-3\n")
    rt = SimpleNamespace(
        settings=CpcSettings(),
        store=store,
        context=store.load("lab"),
        infra=infra,
        config_runner=runner,
        control_plane=control_plane,
        recovery=recovery,
    )
    monkeypatch.setattr(common, "build_runtime", lambda workflow: rt)
    return rt


@pytest.fixture
def workspace_env(tmp_path, infra, monkeypatch):
    monkeypatch.setenv("CPC_ENVS_DIR", str(tmp_path / "envs"))
    monkeypatch.setenv("CPC_CONTEXT_FILE", str(tmp_path / "current"))
    monkeypatch.setenv("CPC_CACHE_DIR", str(tmp_path / "cache"))
    monkeypatch.setattr(common, "build_infra", lambda config, settings: infra)
    (tmp_path / "envs").mkdir()
    (tmp_path / "envs" / "lab.env").write_text("RELEASE_LETTER=b\n")
    return tmp_path


def registered_names():
    return {c.name for c in app.registered_commands}


def test_every_command_is_registered():
    names = registered_names()
    assert set(COMMANDS) <= names
    assert set(ALIASES) <= names


def test_help():
    result = cli.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "bootstrap" in result.output
    assert "upgrade-addon " not in result.output


def test_help_as_module():
    result = subprocess.run([sys.executable, "-m", "cpc.cli", "--help"], capture_output=True, text=True)
    assert "Usage" in result.stdout


@pytest.mark.parametrize("name", sorted(COMMANDS))
def test_command_help(name):
    result = cli.invoke(app, [name, "--help"])
    assert result.exit_code == 0, result.output


def test_remove_base_node_rejected(runtime, infra):
    result = cli.invoke(app, ["remove-node", "worker-1", "--yes"])
    assert result.exit_code == 1
    assert "base node" in result.output
    assert infra.applies == []


def test_remove_base_node_rejected_before_prompt(runtime, infra):
    result = cli.invoke(app, ["remove-node", "controlplane"], input="y\n")
    assert result.exit_code == 1
    assert "Destroy" not in result.output
    assert "Remove node" not in result.output


def test_remove_node_cancelled(runtime, infra):
    result = cli.invoke(app, ["remove-node", "worker-3"], input="n\n")
    assert result.exit_code == 0
    assert "cancelled" in result.output
    assert infra.applies == []


def test_add_node_prints_next_steps(runtime, infra, world):
    result = cli.invoke(app, ["add-node", "--role", "worker"])
    assert result.exit_code == 0, result.output
    assert "worker-4" in result.output
    assert "cpc join-node worker-4" in result.output


def test_upgrade_addons_unknown_addon(runtime):
    result = cli.invoke(app, ["upgrade-addons", "--addon", "nope"])
    assert result.exit_code == 1
    assert "Unknown addon" in result.output


def test_ctx_shows_and_switches(workspace_env, infra):
    result = cli.invoke(app, ["ctx"])
    assert result.output.strip() == "default"

    result = cli.invoke(app, ["ctx", "lab"])
    assert result.exit_code == 0
    assert (workspace_env / "current").read_text().strip() == "lab"
    assert infra.selected == ["lab"]


def test_ctx_rejects_bad_name(workspace_env):
    result = cli.invoke(app, ["ctx", "bad name!"])
    assert result.exit_code == 1
    assert "Invalid workspace name" in result.output


def test_list_and_clone_workspaces(workspace_env):
    result = cli.invoke(app, ["clone-workspace", "lab", "staging"])
    assert result.exit_code == 0, result.output
    assert "release letter s" in result.output

    result = cli.invoke(app, ["list-workspaces"])
    assert result.output.splitlines() == ["  lab", "* staging"]


def test_delete_workspace(workspace_env, infra):
    result = cli.invoke(app, ["delete-workspace", "lab", "--yes"])
    assert result.exit_code == 0, result.output
    assert not (workspace_env / "envs" / "lab.env").exists()
    assert infra.destroyed == 1
    assert infra.deleted == ["lab"]
