"""Checkpoint log and execute-with-recovery for workflow steps.

Nothing here rolls infrastructure back automatically. The log records what
ran, what failed and what the operator should look at, so that re-running the
whole workflow is the recovery path.
"""
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from cpc.errors import CpcError
from cpc.modules.models import Checkpoint

logger = logging.getLogger("cpc.recovery")


class RecoveryState(str, Enum):
    CLEAN = "clean"
    FAILED = "failed"
    RECOVERED = "recovered"


class RecoveryLog:
    """Append-only checkpoints for one workflow run."""

    def __init__(self, workflow: str, log_dir: Optional[Path] = None):
        self.workflow = workflow
        self.checkpoints: List[Checkpoint] = []
        self.failures: List[str] = []
        self.state = RecoveryState.CLEAN
        self.log_path: Optional[Path] = None
        if log_dir is not None:
            self.log_path = Path(log_dir) / f"cpc_recovery_{os.getpid()}.log"

    def checkpoint(self, name: str, note: str = "") -> Checkpoint:
        """Record a checkpoint. Never raises."""
        cp = Checkpoint(name=name, note=note)
        self.checkpoints.append(cp)
        logger.debug(f"Checkpoint {self.workflow}:{name} {note}")
        if self.log_path is not None:
            try:
                with open(self.log_path, "a") as f:
                    f.write(cp.to_line() + "\n")
            except OSError as e:
                logger.debug(f"Could not write checkpoint log {self.log_path}: {e}")
        return cp

    def last_checkpoint(self, prefix: str = "post_") -> Optional[Checkpoint]:
        for cp in reversed(self.checkpoints):
            if cp.name.startswith(prefix):
                return cp
        return None

    def execute_with_recovery(
        self,
        action: Callable[[], object],
        name: str,
        on_failure_hint: str,
        validation: Optional[Callable[[], bool]] = None,
        fallback: Optional[Callable[[], object]] = None,
    ) -> bool:
        """Run ``action`` then ``validation``; on failure log the hint and return False.

        ``action`` fails by raising CpcError or returning False. Other
        exceptions are bugs and propagate.
        """
        self.checkpoint(f"pre_{name}", f"state_before_{name}")
        logger.info(f"🔧 Starting {name}")

        ok = False
        try:
            ok = action() is not False
            if ok and validation is not None:
                ok = bool(validation())
                if not ok:
                    logger.error(f"❌ {name}: validation failed")
        except CpcError as e:
            detail = f" (command: {e.command})" if e.command else ""
            logger.error(f"❌ {name} failed: {e}{detail}")
            if e.output:
                logger.error(e.output.rstrip())

        if ok:
            logger.info(f"✅ {name} completed")
            self.checkpoint(f"post_{name}", f"state_after_{name}")
            return True

        self.state = RecoveryState.FAILED
        self.failures.append(name)
        logger.warning(f"⚠️ {on_failure_hint}")

        if fallback is not None:
            logger.info(f"Running fallback for {name}")
            try:
                if fallback() is not False:
                    self.state = RecoveryState.RECOVERED
                    self.checkpoint(f"rollback_{name}", f"rolled_back_{name}")
            except CpcError as e:
                logger.error(f"❌ Fallback for {name} failed: {e}")
        return False

    def resume_hint(self) -> str:
        last = self.last_checkpoint()
        if last is None:
            return f"No step of {self.workflow} completed; re-run it from the start."
        return f"Last completed step: {last.name[len('post_'):]}. Re-running {self.workflow} is safe."

    def report(self) -> str:
        lines = [f"Recovery report for {self.workflow}", f"State: {self.state.value}"]
        if self.log_path is not None:
            lines.append(f"Log: {self.log_path}")
        lines.append("Checkpoints:")
        lines.extend(f"  {cp.to_line()}" for cp in self.checkpoints)
        if self.failures:
            lines.append(f"Failed steps: {', '.join(self.failures)}")
        lines.append(self.resume_hint())
        return "\n".join(lines)
