import logging
from typing import Callable, Dict

import typer

from cpc.commands import addons, bootstrap, credentials, deploy, nodes, status, workspace
from cpc.logging import setup_logging

app = typer.Typer(help="cpc - cluster lifecycle orchestration", no_args_is_help=True)

# Subcommand name -> handler. Built once; every name must resolve.
COMMANDS: Dict[str, Callable] = {
    "bootstrap": bootstrap.bootstrap_cmd,
    "add-node": nodes.add_node_cmd,
    "remove-node": nodes.remove_node_cmd,
    "prepare-node": nodes.prepare_node_cmd,
    "join-node": nodes.join_node_cmd,
    "drain-node": nodes.drain_node_cmd,
    "upgrade-node": nodes.upgrade_node_cmd,
    "reset-node": nodes.reset_node_cmd,
    "upgrade-addons": addons.upgrade_addons_cmd,
    "status": status.status_cmd,
    "get-credentials": credentials.get_credentials_cmd,
    "ctx": workspace.ctx_cmd,
    "list-workspaces": workspace.list_workspaces_cmd,
    "clone-workspace": workspace.clone_workspace_cmd,
    "delete-workspace": workspace.delete_workspace_cmd,
    "clear-cache": workspace.clear_cache_cmd,
    "deploy": deploy.deploy_cmd,
    "cluster-info": deploy.cluster_info_cmd,
}

# Alternative spellings operators use for the same handler
ALIASES: Dict[str, str] = {
    "upgrade-addon": "upgrade-addons",
    "get-kubeconfig": "get-credentials",
}


def register_commands(target: typer.Typer) -> None:
    for name, handler in COMMANDS.items():
        if not callable(handler):
            raise TypeError(f"Handler for '{name}' is not callable")
        target.command(name)(handler)
    for alias, name in ALIASES.items():
        if name not in COMMANDS:
            raise KeyError(f"Alias '{alias}' points at unknown command '{name}'")
        target.command(alias, hidden=True)(COMMANDS[name])


register_commands(app)


@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
):
    """cpc - provision and maintain a self-hosted Kubernetes cluster."""
    setup_logging(debug)
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.debug("Debug mode enabled")


if __name__ == "__main__":
    app()
