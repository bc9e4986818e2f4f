"""Configuration-runner adapter built on ansible-runner."""
import logging
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import ansible_runner

from cpc.errors import FatalError, TransientError, ValidationError
from cpc.modules.adapters.base import Adapter
from cpc.modules.models import ClusterSummary, NodeRole, WorkspaceContext
from cpc.modules.retry import RetryPolicy

logger = logging.getLogger("cpc.adapters.ansible")

GROUP_NAMES = {
    NodeRole.CONTROL_PLANE: "control_plane",
    NodeRole.WORKER: "workers",
}

SSH_ARGS = "-o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null"

# Defaults for pins the playbooks expect when the workspace file omits them.
DEFAULT_EXTRAVARS = {
    "kubernetes_version": "1.31",
    "kubernetes_patch_version": "latest",
}


@dataclass
class RunOutcome:
    status: str
    rc: int
    stats: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PlaybookRun:
    """One playbook invocation."""
    playbook: str
    limit: Optional[str] = None
    extravars: Dict[str, Any] = field(default_factory=dict)
    tags: Optional[str] = None


def build_inventory(summary: ClusterSummary, host_vars: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Inventory with control_plane/workers groups keyed by address."""
    groups: Dict[str, Dict[str, Any]] = {group: {"hosts": {}} for group in GROUP_NAMES.values()}
    for key, node in sorted(summary.nodes.items()):
        groups[GROUP_NAMES[node.role]]["hosts"][node.address] = {
            "ansible_host": node.address,
            "node_name": key,
            "hostname": node.hostname,
            "vm_id": node.infra_id,
            "k8s_role": node.role.value,
        }
    return {"all": {"children": groups, "vars": dict(host_vars or {})}}


def context_extravars(context: WorkspaceContext, remote_user: str) -> Dict[str, Any]:
    """Version pins and identity injected into every playbook run."""
    extravars: Dict[str, Any] = dict(DEFAULT_EXTRAVARS)
    for key, value in context.versions.items():
        extravars[key.lower()] = value
    if "kubernetes_version" in extravars:
        extravars["kubernetes_version"] = str(extravars["kubernetes_version"]).lstrip("v")
    extravars["ansible_user"] = remote_user
    extravars["current_cluster_context"] = context.name
    return extravars


class ConfigRunnerAdapter(Adapter):
    """Runs playbooks from the repository's ansible directory."""

    name = "config-runner"

    def __init__(
        self,
        ansible_dir: Path,
        context: WorkspaceContext,
        summary_source: Callable[[], ClusterSummary],
        remote_user: str = "ubuntu",
        ssh_key_path: Optional[str] = None,
        retry: Optional[RetryPolicy] = None,
        runner: Callable[..., Any] = ansible_runner.run,
    ):
        super().__init__(retry=retry)
        self.ansible_dir = Path(ansible_dir)
        self.context = context
        self.summary_source = summary_source
        self.remote_user = remote_user
        self.ssh_key_path = ssh_key_path
        self.runner = runner

    def inventory(self) -> Dict[str, Any]:
        return build_inventory(
            self.summary_source(),
            {"ansible_ssh_common_args": SSH_ARGS, "ansible_user": self.remote_user},
        )

    def _run(self, inventory: Dict[str, Any], **kwargs) -> RunOutcome:
        """One ansible-runner invocation in its own private data dir, removed afterwards."""
        if self.ssh_key_path:
            kwargs.setdefault("ssh_key", Path(self.ssh_key_path).expanduser().read_text())
        with tempfile.TemporaryDirectory(prefix="cpc_ansible_") as private_dir:
            result = self.runner(private_data_dir=private_dir, inventory=inventory, quiet=True, **kwargs)
            # stats are read from the artifact dir, so collect them before it goes
            return RunOutcome(status=result.status, rc=result.rc, stats=result.stats or {})

    def _playbook_path(self, playbook: str) -> Path:
        path = Path(playbook)
        if not path.is_absolute():
            path = self.ansible_dir / "playbooks" / playbook
        if not path.exists():
            raise ValidationError(f"Playbook not found: {path}")
        return path

    def _execute(self, **kwargs) -> Any:
        inventory = self.inventory()
        if not any(group["hosts"] for group in inventory["all"]["children"].values()):
            raise FatalError(
                "Inventory is empty: no VMs in cluster_summary",
                hint="Run 'cpc deploy apply' first",
            )
        result = self._run(inventory, project_dir=str(self.ansible_dir), **kwargs)
        stats = result.stats
        if result.status == "successful" and result.rc == 0:
            return result
        label = kwargs.get("playbook") or kwargs.get("module", "ansible")
        unreachable = sorted((stats.get("dark") or {}).keys())
        failed = sorted((stats.get("failures") or {}).keys())
        logger.error(f"❌ {label} ended with status={result.status} rc={result.rc} failed={failed} unreachable={unreachable}")
        if unreachable and not failed:
            raise TransientError(f"Hosts unreachable: {', '.join(unreachable)}", command=str(label))
        raise FatalError(
            f"{Path(str(label)).name} failed on {', '.join(failed) or 'one or more hosts'}",
            command=str(label),
        )

    def query(self, selector: Any = "all") -> Dict[str, bool]:
        """Ping hosts matching ``selector``; return address -> reachable."""
        inventory = self.inventory()
        hosts: List[str] = []
        for group_name, group in inventory["all"]["children"].items():
            if selector in ("all", group_name):
                hosts.extend(group["hosts"].keys())
            elif selector in group["hosts"]:
                hosts.append(selector)
        if not hosts:
            return {}
        result = self._run(
            inventory,
            host_pattern=selector,
            module="ping",
            extravars={"ansible_user": self.remote_user},
        )
        dark = set(result.stats.get("dark") or {})
        failures = set(result.stats.get("failures") or {})
        return {host: host not in dark and host not in failures for host in hosts}

    def apply(self, delta: PlaybookRun) -> Any:
        """Run a playbook with the workspace's version pins injected."""
        path = self._playbook_path(delta.playbook)
        extravars = context_extravars(self.context, self.remote_user)
        extravars.update(delta.extravars)
        kwargs: Dict[str, Any] = {"playbook": str(path), "extravars": extravars}
        if delta.limit:
            kwargs["limit"] = delta.limit
        if delta.tags:
            kwargs["tags"] = delta.tags
        logger.info(f"🔧 Running playbook {path.name}" + (f" (limit: {delta.limit})" if delta.limit else ""))
        return self.retry.call(self._execute, description=path.name, **kwargs)
