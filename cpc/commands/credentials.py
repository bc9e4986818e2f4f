import typer

from cpc.commands import common
from cpc.errors import CpcError


def get_credentials_cmd():
    """Fetch admin credentials and merge them into the local kubeconfig."""
    try:
        runtime = common.build_runtime("get-credentials")
        runtime.refresh_credentials(runtime.infra.cluster_summary())
    except CpcError as e:
        common.fail(e)
    typer.echo(f"✅ kubeconfig context '{runtime.control_plane.context_name}' is now active")
