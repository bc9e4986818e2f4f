"""Active workspace pointer and per-workspace configuration files."""
import logging
import re
from pathlib import Path
from typing import Callable, List, Optional

from cpc.errors import CpcError, FatalError, ValidationError
from cpc.modules.models import WorkspaceContext
from cpc.modules.roster import Roster, decode_workspace, encode_workspace

logger = logging.getLogger("cpc.context")

FALLBACK_CONTEXT = "default"
RESERVED_NAMES = ("default", "null", "none")
_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]{1,50}$")


def validate_workspace_name(name: str) -> str:
    if not name or not _NAME_RE.match(name):
        raise ValidationError(
            f"Invalid workspace name '{name}'",
            hint="Use 1-50 characters from [a-zA-Z0-9_-]",
        )
    if name.lower() in RESERVED_NAMES:
        raise ValidationError(f"'{name}' is a reserved name")
    return name


class ContextStore:
    """Reads and writes the active-workspace file and ``<envs_dir>/<name>.env``."""

    def __init__(self, envs_dir: Path, context_file: Path, infra=None, clear_caches: Optional[Callable[[str], None]] = None):
        self.envs_dir = Path(envs_dir)
        self.context_file = Path(context_file)
        self.infra = infra
        self.clear_caches = clear_caches

    def env_path(self, name: str) -> Path:
        return self.envs_dir / f"{name}.env"

    def exists(self, name: str) -> bool:
        return self.env_path(name).is_file()

    def list_workspaces(self) -> List[str]:
        if not self.envs_dir.is_dir():
            return []
        return sorted(p.stem for p in self.envs_dir.glob("*.env"))

    def get_active_name(self) -> str:
        try:
            name = self.context_file.read_text().strip()
        except FileNotFoundError:
            return FALLBACK_CONTEXT
        return name or FALLBACK_CONTEXT

    def load(self, name: str) -> WorkspaceContext:
        path = self.env_path(name)
        if not path.is_file():
            logger.debug(f"No workspace file for {name}; using an empty roster")
            return WorkspaceContext(name=name, roster=Roster())
        return decode_workspace(name, path.read_text())

    def get_active_context(self) -> WorkspaceContext:
        return self.load(self.get_active_name())

    def save(self, context: WorkspaceContext) -> None:
        self.envs_dir.mkdir(parents=True, exist_ok=True)
        path = self.env_path(context.name)
        tmp = path.with_suffix(".env.tmp")
        tmp.write_text(encode_workspace(context))
        tmp.replace(path)

    def _write_pointer(self, name: str) -> None:
        self.context_file.parent.mkdir(parents=True, exist_ok=True)
        self.context_file.write_text(name + "\n")

    def set_active_context(self, name: str) -> WorkspaceContext:
        validate_workspace_name(name)
        self._write_pointer(name)
        if self.infra is not None:
            self.infra.select_workspace(name, create=True)
        logger.info(f"✅ Cluster context set to: {name}")
        return self.load(name)

    def clone_context(self, source: str, dest: str, tag: Optional[str] = None) -> WorkspaceContext:
        """Copy ``source``'s configuration to a new workspace and switch to it."""
        validate_workspace_name(dest)
        if source == dest:
            raise ValidationError("Source and destination workspaces must differ")
        if not self.exists(source):
            raise ValidationError(f"Source workspace '{source}' does not exist")
        if self.exists(dest):
            raise ValidationError(f"Workspace '{dest}' already exists")
        if tag is not None and not re.match(r"^[a-z]$", tag):
            raise ValidationError(f"Release letter must be a single lowercase letter, got '{tag}'")

        original = self.load(source)
        settings = dict(original.settings)
        settings["RELEASE_LETTER"] = tag or dest[0].lower()
        clone = WorkspaceContext(name=dest, roster=original.roster.copy(keep_history=False), settings=settings)
        self.save(clone)
        logger.info(f"✅ Cloned workspace {source} -> {dest} (release letter {settings['RELEASE_LETTER']})")
        return self.set_active_context(dest)

    def delete_context(self, name: str) -> List[str]:
        """Destroy a workspace's resources, then its configuration, then its state partition.

        Completed steps are never rolled back. A failure raises FatalError
        naming the steps that remain.
        """
        validate_workspace_name(name)
        if not self.exists(name):
            raise ValidationError(f"Workspace '{name}' does not exist")

        was_active = self.get_active_name() == name
        steps = [
            ("select state partition", lambda: self.infra and self.infra.select_workspace(name, create=False)),
            ("destroy all resources", lambda: self.infra and self.infra.destroy_all()),
            ("remove workspace configuration", lambda: self.env_path(name).unlink()),
            ("clear caches", lambda: self.clear_caches and self.clear_caches(name)),
            ("switch away from workspace", lambda: self._leave(was_active)),
            ("delete state partition", lambda: self.infra and self.infra.delete_workspace(name)),
        ]
        completed: List[str] = []
        for index, (label, step) in enumerate(steps):
            try:
                logger.info(f"🔧 {name}: {label}")
                step()
            except (CpcError, OSError) as e:
                remaining = [s for s, _ in steps[index:]]
                raise FatalError(
                    f"Deleting workspace '{name}' stopped at '{label}': {e}",
                    hint=(
                        f"Completed: {', '.join(completed) or 'nothing'}. "
                        f"Still to clean up: {', '.join(remaining)}"
                    ),
                ) from e
            completed.append(label)
        logger.info(f"✅ Workspace {name} deleted")
        return completed

    def _leave(self, was_active: bool) -> None:
        if was_active:
            self._write_pointer(FALLBACK_CONTEXT)
        if self.infra is not None:
            self.infra.select_workspace(FALLBACK_CONTEXT, create=False)
