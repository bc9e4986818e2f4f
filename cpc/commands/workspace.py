import typer

from cpc.commands import common
from cpc.config import Config, get_settings
from cpc.errors import CpcError
from cpc.modules.cache import clear_caches


def _store():
    config = Config()
    return common.build_store(config, common.build_infra(config, get_settings()))


def ctx_cmd(name: str = typer.Argument(None, help="Workspace to switch to")):
    """Show or switch the active workspace."""
    try:
        store = _store()
        if name is None:
            typer.echo(store.get_active_name())
            return
        store.set_active_context(name)
    except CpcError as e:
        common.fail(e)
    typer.echo(f"✅ Switched to workspace '{name}'")


def list_workspaces_cmd():
    """List workspaces; the active one is marked."""
    store = _store()
    active = store.get_active_name()
    names = store.list_workspaces()
    if not names:
        typer.echo("No workspaces found.")
        return
    for ws in names:
        typer.echo(f"{'*' if ws == active else ' '} {ws}")


def clone_workspace_cmd(
    source: str = typer.Argument(..., help="Workspace to copy"),
    dest: str = typer.Argument(..., help="New workspace name"),
    release_letter: str = typer.Argument(None, help="Release letter for hostnames"),
):
    """Copy a workspace's configuration into a new workspace and switch to it."""
    try:
        clone = _store().clone_context(source, dest, release_letter)
    except CpcError as e:
        common.fail(e)
    typer.echo(f"✅ Workspace '{clone.name}' created from '{source}' (release letter {clone.release_letter})")


def delete_workspace_cmd(
    name: str = typer.Argument(..., help="Workspace to delete"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Destroy a workspace's VMs and delete its configuration and state."""
    if not yes and not typer.confirm(
        f"Destroy ALL resources of workspace '{name}' and delete it?", default=False
    ):
        typer.echo("❌ Deletion cancelled.")
        raise typer.Exit()
    try:
        _store().delete_context(name)
    except CpcError as e:
        common.fail(e)
    typer.echo(f"✅ Workspace '{name}' deleted")


def clear_cache_cmd():
    """Delete all cpc cache files."""
    removed = clear_caches(Config().CACHE_DIR)
    typer.echo(f"🧹 Removed {len(removed)} cache file(s)")
