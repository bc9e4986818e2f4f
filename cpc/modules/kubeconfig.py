"""Fetch the cluster admin kubeconfig and merge it into the local one."""
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from cpc.errors import FatalError
from cpc.modules.ssh import RemoteShell

logger = logging.getLogger("cpc.kubeconfig")

ADMIN_CONF = "/etc/kubernetes/admin.conf"
API_PORT = 6443


def context_name(workspace: str) -> str:
    return f"kubernetes-admin@{workspace}"


def rewrite_admin_config(raw: str, workspace: str, address: str) -> Dict[str, Any]:
    """Point admin.conf at ``address`` and rename its entries after ``workspace``."""
    try:
        data = yaml.safe_load(raw) or {}
    except yaml.YAMLError as e:
        raise FatalError(f"admin.conf is not valid YAML: {e}")
    clusters = data.get("clusters") or []
    users = data.get("users") or []
    if not clusters or not users:
        raise FatalError("admin.conf has no cluster or user entry")

    cluster = dict(clusters[0])
    cluster["name"] = workspace
    cluster["cluster"] = dict(cluster.get("cluster") or {})
    cluster["cluster"]["server"] = f"https://{address}:{API_PORT}"

    user = dict(users[0])
    user["name"] = f"{workspace}-admin"

    ctx_name = context_name(workspace)
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [cluster],
        "users": [user],
        "contexts": [{"name": ctx_name, "context": {"cluster": workspace, "user": user["name"]}}],
        "current-context": ctx_name,
        "preferences": {},
    }


def _replace_named(entries, new_entry):
    kept = [e for e in entries or [] if e.get("name") != new_entry["name"]]
    kept.append(new_entry)
    return kept


def merge_kubeconfig(existing: Optional[Dict[str, Any]], incoming: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(existing or {"apiVersion": "v1", "kind": "Config", "preferences": {}})
    for section in ("clusters", "users", "contexts"):
        entries = merged.get(section) or []
        for entry in incoming[section]:
            entries = _replace_named(entries, entry)
        merged[section] = entries
    merged["current-context"] = incoming["current-context"]
    return merged


def install_credentials(shell: RemoteShell, address: str, workspace: str, kubeconfig: Path) -> str:
    """Merge the workspace's admin credentials into ``kubeconfig``; return the context name."""
    logger.info(f"🔑 Fetching {ADMIN_CONF} from {address}")
    incoming = rewrite_admin_config(shell.read_file(address, ADMIN_CONF), workspace, address)

    kubeconfig = Path(kubeconfig).expanduser()
    existing = None
    if kubeconfig.exists():
        backup = kubeconfig.with_name(kubeconfig.name + ".bak")
        shutil.copy2(kubeconfig, backup)
        logger.info(f"Backed up {kubeconfig} to {backup}")
        with open(kubeconfig) as f:
            existing = yaml.safe_load(f)

    merged = merge_kubeconfig(existing, incoming)
    kubeconfig.parent.mkdir(parents=True, exist_ok=True)
    with open(kubeconfig, "w") as f:
        yaml.safe_dump(merged, f, default_flow_style=False)
    os.chmod(kubeconfig, 0o600)
    logger.info(f"✅ Credentials for {workspace} merged into {kubeconfig}")
    return incoming["current-context"]
