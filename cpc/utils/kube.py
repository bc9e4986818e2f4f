import os
from pathlib import Path
from typing import Optional

from kubernetes import client, config


def load_kubeconfig(path: Optional[str] = None, context: Optional[str] = None) -> client.ApiClient:
    """
    Build an ApiClient from a kubeconfig file.

    KUBECONFIG_CONTENT (CI secrets) takes precedence over ``path``.
    """
    if "KUBECONFIG_CONTENT" in os.environ:
        temp_path = Path(os.environ.get("TMPDIR", "/tmp")) / "cpc-ci-kubeconfig.yaml"
        temp_path.write_text(os.environ["KUBECONFIG_CONTENT"])
        os.chmod(temp_path, 0o600)
        path = str(temp_path)

    if not path:
        raise ValueError("No kubeconfig path provided and KUBECONFIG_CONTENT is not set.")

    resolved = Path(os.path.expanduser(path)).resolve()
    if not resolved.exists():
        raise FileNotFoundError(f"Kubeconfig not found: {resolved}")
    return config.new_client_from_config(config_file=str(resolved), context=context)
