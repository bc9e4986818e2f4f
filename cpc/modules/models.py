"""
Data models for cluster lifecycle orchestration.
"""
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import jsonschema

from cpc.errors import FatalError, ValidationError


class NodeRole(str, Enum):
    CONTROL_PLANE = "control-plane"
    WORKER = "worker"


# Name prefix used in node names and the first usable index per role.
# Indices below the base offset belong to the base nodes.
ROLE_PREFIX = {
    NodeRole.CONTROL_PLANE: "controlplane",
    NodeRole.WORKER: "worker",
}
ROLE_BASE_OFFSET = {
    NodeRole.CONTROL_PLANE: 2,
    NodeRole.WORKER: 3,
}
ROLE_LETTER = {
    NodeRole.CONTROL_PLANE: "c",
    NodeRole.WORKER: "w",
}

_NODE_NAME_RE = re.compile(r"^(controlplane|worker)(-?)(\d+)?$")


class MembershipState(str, Enum):
    PLANNED = "planned"
    PROVISIONED = "provisioned"
    JOINED = "joined"
    READY = "ready"
    REMOVED = "removed"


_TRANSITIONS = {
    MembershipState.PLANNED: {MembershipState.PROVISIONED, MembershipState.REMOVED},
    MembershipState.PROVISIONED: {MembershipState.JOINED, MembershipState.REMOVED},
    MembershipState.JOINED: {MembershipState.READY, MembershipState.REMOVED},
    MembershipState.READY: {MembershipState.JOINED, MembershipState.REMOVED},
    MembershipState.REMOVED: set(),
}


def parse_node_name(name: str) -> Optional[Tuple[NodeRole, int]]:
    """Return (role, index) for ``worker-3``, legacy ``worker3`` or bare ``controlplane``."""
    match = _NODE_NAME_RE.match(name or "")
    if not match:
        return None
    prefix, _, digits = match.groups()
    role = NodeRole.CONTROL_PLANE if prefix == "controlplane" else NodeRole.WORKER
    if digits is None:
        if role is NodeRole.CONTROL_PLANE and not match.group(2):
            return role, 1
        return None
    index = int(digits)
    if index < 1:
        return None
    return role, index


def canonical_name(role: NodeRole, index: int) -> str:
    return f"{ROLE_PREFIX[role]}-{index}"


def is_base_slot(role: NodeRole, index: int) -> bool:
    return index < ROLE_BASE_OFFSET[role]


def generate_hostname(role: NodeRole, index: int, release_letter: str = "", domain: str = "") -> str:
    """Hostname convention ``{c|w}{release_letter}{index}[.domain]``."""
    host = f"{ROLE_LETTER[role]}{release_letter}{index}"
    return f"{host}.{domain}" if domain else host


@dataclass
class NodeSpec:
    """A node in a workspace roster."""
    name: str
    role: NodeRole
    state: MembershipState = MembershipState.PLANNED
    base: bool = False

    @property
    def index(self) -> int:
        parsed = parse_node_name(self.name)
        return parsed[1] if parsed else 0

    @property
    def slot(self) -> Tuple[NodeRole, int]:
        return self.role, self.index

    def transition(self, new_state: MembershipState) -> None:
        """Move to ``new_state``, rejecting transitions the lifecycle does not allow."""
        if new_state == self.state:
            return
        if new_state not in _TRANSITIONS[self.state]:
            raise ValidationError(
                f"Node {self.name} cannot move from {self.state.value} to {new_state.value}"
            )
        self.state = new_state


CLUSTER_SUMMARY_SCHEMA = {
    "type": "object",
    "additionalProperties": {
        "type": "object",
        "required": ["IP", "hostname"],
        "properties": {
            "IP": {"type": "string"},
            "hostname": {"type": "string"},
            "VM_ID": {"type": ["string", "integer", "null"]},
        },
    },
}


@dataclass
class NodeSummary:
    """One VM as reported by the infrastructure provisioner."""
    key: str
    role: NodeRole
    address: str
    hostname: str
    infra_id: Optional[str] = None

    @property
    def short_hostname(self) -> str:
        return self.hostname.split(".", 1)[0]


@dataclass
class ClusterSummary:
    """What nodes exist, according to the provisioner."""
    nodes: Dict[str, NodeSummary] = field(default_factory=dict)

    @classmethod
    def from_output(cls, data: Any) -> "ClusterSummary":
        """Build from ``tofu output -json cluster_summary`` (bare or wrapped in ``value``)."""
        if not data:
            return cls()
        if isinstance(data, dict) and "value" in data and isinstance(data["value"], dict):
            data = data["value"]
        try:
            jsonschema.validate(instance=data, schema=CLUSTER_SUMMARY_SCHEMA)
        except jsonschema.ValidationError as e:
            raise FatalError(
                f"Unexpected cluster_summary output: {e.message}",
                hint="Check the provisioner's cluster_summary output definition",
            )

        nodes = {}
        for key, entry in data.items():
            parsed = parse_node_name(key)
            if parsed:
                role = parsed[0]
            else:
                role = NodeRole.CONTROL_PLANE if "controlplane" in key else NodeRole.WORKER
            vm_id = entry.get("VM_ID")
            nodes[key] = NodeSummary(
                key=key,
                role=role,
                address=entry["IP"],
                hostname=entry["hostname"],
                infra_id=str(vm_id) if vm_id is not None else None,
            )
        return cls(nodes=nodes)

    def __len__(self) -> int:
        return len(self.nodes)

    def by_role(self, role: NodeRole) -> List[NodeSummary]:
        return [n for k, n in sorted(self.nodes.items()) if n.role == role]

    def control_planes(self) -> List[NodeSummary]:
        return self.by_role(NodeRole.CONTROL_PLANE)

    def workers(self) -> List[NodeSummary]:
        return self.by_role(NodeRole.WORKER)

    def addresses(self) -> List[str]:
        return [n.address for _, n in sorted(self.nodes.items())]

    def find(self, name: str) -> Optional[NodeSummary]:
        """Look a node up by key (either naming variant) or hostname."""
        if name in self.nodes:
            return self.nodes[name]
        parsed = parse_node_name(name)
        for key, node in self.nodes.items():
            if parsed and parse_node_name(key) == parsed:
                return node
            if name in (node.hostname, node.short_hostname):
                return node
        return None

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {
            key: {
                "role": n.role.value,
                "IP": n.address,
                "hostname": n.hostname,
                "VM_ID": n.infra_id,
            }
            for key, n in sorted(self.nodes.items())
        }


@dataclass
class WorkspaceContext:
    """A named workspace: its settings, version pins and node roster."""
    name: str
    roster: Any
    settings: Dict[str, str] = field(default_factory=dict)

    @property
    def versions(self) -> Dict[str, str]:
        return {k: v for k, v in self.settings.items() if k.endswith("_VERSION")}

    def version(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.settings.get(key, default) or default

    @property
    def release_letter(self) -> str:
        return self.settings.get("RELEASE_LETTER", "")


class AddonOutcome(str, Enum):
    CURRENT = "already-current"
    UPGRADED = "upgraded"
    FAILED = "failed"


@dataclass
class AddonSpec:
    """An addon selected for this invocation. Never persisted."""
    name: str
    requested_version: Optional[str] = None
    target_version: Optional[str] = None
    live_version: Optional[str] = None

    @property
    def installed(self) -> bool:
        return self.live_version is not None


@dataclass
class AddonResult:
    name: str
    outcome: AddonOutcome
    before: Optional[str] = None
    after: Optional[str] = None
    target: Optional[str] = None
    message: str = ""
    warnings: List[str] = field(default_factory=list)


class BootstrapPhase(str, Enum):
    NOT_STARTED = "NotStarted"
    COMPONENTS_INSTALLED = "ComponentsInstalled"
    CONTROL_PLANE_INITIALIZED = "ControlPlaneInitialized"
    NETWORKING_INSTALLED = "NetworkingInstalled"
    WORKERS_JOINED = "WorkersJoined"
    VALIDATED = "Validated"


@dataclass
class Checkpoint:
    name: str
    note: str
    timestamp: datetime = field(default_factory=datetime.now)

    def to_line(self) -> str:
        return f"{self.timestamp.isoformat(timespec='seconds')}|{self.name}|{self.note}"


@dataclass
class BootstrapResult:
    """Tracks a bootstrap run."""
    phase: BootstrapPhase = BootstrapPhase.NOT_STARTED
    verify_only: bool = False
    warnings: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    started: float = field(default_factory=time.time)
    phase_times: Dict[str, float] = field(default_factory=dict)

    def update_phase(self, phase: BootstrapPhase) -> None:
        self.phase = phase
        self.phase_times[phase.value] = time.time() - self.started

    def warn(self, message: str) -> None:
        self.warnings.append(message)
