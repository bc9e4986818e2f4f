"""Infrastructure provisioner adapter (OpenTofu/Terraform CLI)."""
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from cpc.errors import FatalError
from cpc.modules.adapters.base import Adapter, CommandResult, Runner, run_command
from cpc.modules.models import ClusterSummary
from cpc.modules.retry import RetryPolicy

logger = logging.getLogger("cpc.adapters.tofu")

# tofu and terraform word these differently across versions
MISSING_OUTPUT_PATTERNS = (
    "no outputs found",
    "no outputs defined",
    "could not be found in the state",
    "not found in the state",
)
MISSING_WORKSPACE_PATTERNS = ("doesn't exist", "does not exist")


@dataclass
class InfraDelta:
    """Desired state handed to ``apply``: a var file plus override variables."""
    variables: Dict[str, str] = field(default_factory=dict)
    var_file: Optional[Path] = None
    destroy: bool = False
    plan_only: bool = False


class InfraAdapter(Adapter):
    """Runs the provisioner in the repository's terraform directory."""

    name = "infra"

    def __init__(
        self,
        terraform_dir: Path,
        binary: str = "tofu",
        retry: Optional[RetryPolicy] = None,
        runner: Runner = run_command,
        timeout: float = 1800,
    ):
        super().__init__(retry=retry)
        self.terraform_dir = Path(terraform_dir)
        self.binary = binary
        self.runner = runner
        self.timeout = timeout

    def _run(self, args: List[str], **kwargs) -> CommandResult:
        return self.runner([self.binary] + args, cwd=self.terraform_dir, **kwargs)

    def select_workspace(self, name: str, create: bool = True) -> None:
        """Select the state partition for ``name``, creating it when missing."""
        try:
            self._run(["workspace", "select", name])
            return
        except FatalError as e:
            if not create or not any(p in e.output.lower() for p in MISSING_WORKSPACE_PATTERNS):
                raise
        logger.warning(f"⚠️ Workspace '{name}' does not exist in {self.binary}; creating it")
        self._run(["workspace", "new", name])

    def delete_workspace(self, name: str) -> None:
        self._run(["workspace", "delete", name], already_done=MISSING_WORKSPACE_PATTERNS)

    def query(self, selector: Any = "cluster_summary") -> Any:
        """Return ``tofu output -json <selector>`` as parsed JSON, or None if absent."""
        try:
            result = self._run(["output", "-json", str(selector)], already_done=MISSING_OUTPUT_PATTERNS)
        except FatalError as e:
            if "no state" in e.output.lower():
                return None
            raise
        if result.already_done or not result.stdout.strip():
            return None
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise FatalError(f"{self.binary} output {selector} is not valid JSON: {e}", command=" ".join(result.command))

    def cluster_summary(self) -> ClusterSummary:
        return ClusterSummary.from_output(self.query("cluster_summary"))

    def vm_count(self) -> int:
        return len(self.cluster_summary())

    def _delta_args(self, delta: InfraDelta) -> List[str]:
        args = []
        if delta.var_file:
            args.append(f"-var-file={delta.var_file}")
        for key, value in sorted(delta.variables.items()):
            args.extend(["-var", f"{key}={value}"])
        return args

    def apply(self, delta: InfraDelta) -> CommandResult:
        """Apply (or plan) ``delta``. Lock contention and timeouts are retried."""
        if delta.plan_only:
            args = ["plan", "-input=false"] + self._delta_args(delta)
        else:
            verb = "destroy" if delta.destroy else "apply"
            args = [verb, "-auto-approve", "-input=false"] + self._delta_args(delta)
        logger.info(f"🔧 Running {self.binary} {args[0]} in {self.terraform_dir}")
        return self.retry.call(self._run, args, timeout=self.timeout, description=f"{self.binary} {args[0]}")

    def destroy_all(self, variables: Optional[Dict[str, str]] = None) -> CommandResult:
        return self.apply(InfraDelta(variables=variables or {}, destroy=True))
