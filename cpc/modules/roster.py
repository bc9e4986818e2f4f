"""Typed node roster and the workspace ``.env`` file codec.

The roster enforces its invariants (unique slots, protected base nodes) in
memory. Text only crosses the boundary through ``decode_workspace`` and
``encode_workspace``.
"""
import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple

from cpc.errors import ValidationError
from cpc.modules.models import (
    MembershipState,
    NodeRole,
    NodeSpec,
    ROLE_BASE_OFFSET,
    ROLE_PREFIX,
    WorkspaceContext,
    canonical_name,
    is_base_slot,
    parse_node_name,
)

logger = logging.getLogger("cpc.roster")

ADDITIONAL_KEYS = {
    NodeRole.WORKER: "ADDITIONAL_WORKERS",
    NodeRole.CONTROL_PLANE: "ADDITIONAL_CONTROLPLANES",
}
RETIRED_KEY = "RETIRED_NODES"
MULTI_VALUE_KEYS = set(ADDITIONAL_KEYS.values()) | {RETIRED_KEY}

BASE_NODES = (
    (NodeRole.CONTROL_PLANE, 1),
    (NodeRole.WORKER, 1),
    (NodeRole.WORKER, 2),
)


class Roster:
    """Ordered list of NodeSpecs plus the names retired from it."""

    def __init__(self, nodes: Optional[Iterable[NodeSpec]] = None, retired: Optional[Iterable[str]] = None):
        self.nodes: List[NodeSpec] = [
            NodeSpec(name=canonical_name(role, index), role=role, base=True)
            for role, index in BASE_NODES
        ]
        self.retired: List[str] = []
        for spec in nodes or []:
            self.add(spec)
        for name in retired or []:
            if name not in self.retired:
                self.retired.append(name)

    def __iter__(self):
        return iter(self.nodes)

    def __len__(self) -> int:
        return len(self.nodes)

    def names(self) -> List[str]:
        return [n.name for n in self.nodes]

    def by_role(self, role: NodeRole) -> List[NodeSpec]:
        return [n for n in self.nodes if n.role == role]

    def additional(self, role: NodeRole) -> List[NodeSpec]:
        return [n for n in self.nodes if n.role == role and not n.base]

    def get(self, name: str) -> Optional[NodeSpec]:
        """Find a node by name; ``worker-3`` and legacy ``worker3`` share a slot."""
        parsed = parse_node_name(name)
        if parsed is None:
            return None
        for spec in self.nodes:
            if spec.slot == parsed:
                return spec
        return None

    def occupied_indices(self, role: NodeRole) -> Set[int]:
        """Indices in use by active or retired nodes of ``role``."""
        used = {n.index for n in self.nodes if n.role == role}
        for name in self.retired:
            parsed = parse_node_name(name)
            if parsed and parsed[0] == role:
                used.add(parsed[1])
        return used

    def next_name(self, role: NodeRole) -> str:
        """Next free name for ``role``. Retired slots are never reused."""
        base = ROLE_BASE_OFFSET[role]
        highest = max(self.occupied_indices(role) | {base - 1})
        return canonical_name(role, highest + 1)

    def add(self, spec: NodeSpec) -> NodeSpec:
        parsed = parse_node_name(spec.name)
        if parsed is None:
            raise ValidationError(
                f"Invalid node name '{spec.name}'",
                hint=f"Use {ROLE_PREFIX[spec.role]}-<number>",
            )
        if parsed[0] != spec.role:
            raise ValidationError(f"Node name '{spec.name}' does not match role {spec.role.value}")
        existing = self.get(spec.name)
        if existing is not None:
            raise ValidationError(f"Node '{spec.name}' conflicts with existing roster entry '{existing.name}'")
        if parsed[1] in self.occupied_indices(spec.role):
            raise ValidationError(
                f"Slot for '{spec.name}' was used by a removed node and is not reused",
                hint=f"Use {self.next_name(spec.role)}",
            )
        self.nodes.append(spec)
        return spec

    def remove(self, name: str) -> NodeSpec:
        parsed = parse_node_name(name)
        if parsed is None:
            raise ValidationError(f"Invalid node name '{name}'")
        if is_base_slot(*parsed):
            raise ValidationError(f"Node '{name}' is a base node and cannot be removed")
        spec = self.get(name)
        if spec is None:
            raise ValidationError(f"Node '{name}' is not in the roster")
        spec.transition(MembershipState.REMOVED)
        self.nodes.remove(spec)
        self.retired.append(spec.name)
        return spec

    def forget(self, name: str) -> None:
        """Drop an entry without retiring its slot (used to undo a failed add)."""
        spec = self.get(name)
        if spec is not None and not spec.base:
            self.nodes.remove(spec)

    def copy(self, keep_history: bool = True) -> "Roster":
        clone = Roster(
            nodes=[NodeSpec(name=n.name, role=n.role) for n in self.nodes if not n.base],
            retired=list(self.retired) if keep_history else [],
        )
        return clone


def _split_multi(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def decode_workspace(name: str, text: str) -> WorkspaceContext:
    """Parse a workspace ``.env`` file into a WorkspaceContext."""
    settings: Dict[str, str] = {}
    multi: Dict[str, List[str]] = {key: [] for key in MULTI_VALUE_KEYS}

    for lineno, raw in enumerate(text.splitlines(), 1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):]
        if "=" not in line:
            logger.warning(f"⚠️ {name}.env:{lineno}: ignoring line without '='")
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = _unquote(value)
        if key in MULTI_VALUE_KEYS:
            multi[key].extend(_split_multi(value))
        else:
            settings[key] = value

    nodes: List[NodeSpec] = []
    for role, key in ADDITIONAL_KEYS.items():
        for node_name in multi[key]:
            nodes.append(NodeSpec(name=node_name, role=role))
    return WorkspaceContext(name=name, roster=Roster(nodes=nodes, retired=multi[RETIRED_KEY]), settings=settings)


def encode_workspace(context: WorkspaceContext) -> str:
    """Render a WorkspaceContext back to ``.env`` text."""
    lines = [f"{key}={value}" for key, value in context.settings.items() if key not in MULTI_VALUE_KEYS]
    roster: Roster = context.roster
    for role, key in ADDITIONAL_KEYS.items():
        names = [n.name for n in roster.additional(role)]
        lines.append(f'{key}="{",".join(names)}"')
    if roster.retired:
        lines.append(f'{RETIRED_KEY}="{",".join(roster.retired)}"')
    return "\n".join(lines) + "\n"


def roster_variables(context: WorkspaceContext) -> Dict[str, str]:
    """Override variables handed to the provisioner."""
    roster: Roster = context.roster
    variables = {
        "additional_workers": ",".join(n.name for n in roster.additional(NodeRole.WORKER)),
        "additional_controlplanes": ",".join(n.name for n in roster.additional(NodeRole.CONTROL_PLANE)),
    }
    if context.release_letter:
        variables["release_letter"] = context.release_letter
    return variables


def slot_of(name: str) -> Tuple[NodeRole, int]:
    parsed = parse_node_name(name)
    if parsed is None:
        raise ValidationError(f"Invalid node name '{name}'")
    return parsed
