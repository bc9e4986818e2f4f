"""Shared adapter contract and the subprocess helper."""
import logging
import os
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from cpc.errors import FatalError, TransientError
from cpc.modules.retry import NO_RETRY, RetryPolicy, wait_until

logger = logging.getLogger("cpc.adapters")

# Non-zero exits whose output says the target is already in the desired state.
ALREADY_DONE_PATTERNS = (
    "already exists",
    "alreadyexists",
    "already in desired state",
    "already initialized",
    "already approved",
    "no changes. your infrastructure matches the configuration",
)

TRANSIENT_PATTERNS = (
    "connection refused",
    "connection reset",
    "timed out",
    "i/o timeout",
    "temporarily unavailable",
    "tls handshake timeout",
    "error acquiring the state lock",
    "the object has been modified",
    "etcdserver: request timed out",
    "unable to connect to the server",
)


@dataclass
class CommandResult:
    command: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    already_done: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 or self.already_done

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


def _matches(text: str, patterns: Sequence[str]) -> bool:
    lowered = text.lower()
    return any(p in lowered for p in patterns)


def summarize_failure(text: str) -> str:
    """First ``Error:`` line of ``text`` (box drawing stripped), else its first non-blank line."""
    first = ""
    for raw in (text or "").splitlines():
        line = raw.strip().lstrip("\u2502\u2577\u2575").strip()
        if not line:
            continue
        if line.startswith("Error:"):
            return line
        first = first or line
    return first


def run_command(
    cmd: List[str],
    *,
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
    already_done: Sequence[str] = ALREADY_DONE_PATTERNS,
    transient: Sequence[str] = TRANSIENT_PATTERNS,
    input_text: Optional[str] = None,
) -> CommandResult:
    """Run an external command and classify its failure.

    Returns a CommandResult on success or "already done"; raises
    TransientError or FatalError otherwise. The command and its output are
    always logged on failure.
    """
    cmd_str = " ".join(cmd)
    logger.debug(f"💻 Running: {cmd_str}")
    full_env = None
    if env:
        full_env = dict(os.environ)
        full_env.update(env)
    try:
        proc = subprocess.run(
            cmd,
            cwd=cwd,
            env=full_env,
            text=True,
            input=input_text,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=timeout,
        )
    except FileNotFoundError as e:
        raise FatalError(
            f"{cmd[0]} is not installed or not on PATH",
            hint=f"Install {cmd[0]} and re-run",
            command=cmd_str,
        ) from e
    except subprocess.TimeoutExpired as e:
        logger.error(f"❌ Command timed out after {timeout}s: {cmd_str}")
        raise TransientError(f"{cmd_str} timed out after {timeout}s", command=cmd_str) from e

    result = CommandResult(command=list(cmd), returncode=proc.returncode, stdout=proc.stdout or "", stderr=proc.stderr or "")
    if result.returncode == 0:
        logger.debug(f"🟢 Output:\n{result.stdout}")
        return result

    if _matches(result.output, already_done):
        logger.info(f"{cmd[0]}: target already in desired state")
        result.already_done = True
        return result

    logger.error(
        f"❌ Command failed: {cmd_str} (exit code: {result.returncode})\n"
        f"Stdout:\n{result.stdout}\nStderr:\n{result.stderr}"
    )
    cause = summarize_failure(result.stderr or result.stdout) or f"exit code {result.returncode}"
    if _matches(result.output, transient):
        raise TransientError(f"{cmd[0]} failed: {cause}", command=cmd_str, output=result.output)
    raise FatalError(f"{cmd[0]} failed: {cause}", command=cmd_str, output=result.output)


Runner = Callable[..., CommandResult]


class Adapter(ABC):
    """Uniform shape of every external-system adapter.

    ``query`` is read-only and returns an empty snapshot when nothing is
    deployed yet. ``apply`` is idempotent for a given delta. ``wait_until``
    is bounded polling.
    """

    name = "adapter"

    def __init__(self, retry: Optional[RetryPolicy] = None, poll_interval: float = 5.0):
        self.retry = retry or NO_RETRY
        self.poll_interval = poll_interval
        self.clock: Callable[[], float] = time.monotonic
        self.sleep: Callable[[float], None] = time.sleep

    @abstractmethod
    def query(self, selector: Any = None) -> Any:
        """Return a structured snapshot for ``selector``."""

    @abstractmethod
    def apply(self, delta: Any) -> Any:
        """Converge the external system towards ``delta``."""

    def wait_until(
        self,
        condition: Callable[[], bool],
        timeout: float,
        poll_interval: Optional[float] = None,
        description: str = "condition",
    ) -> bool:
        return wait_until(
            condition,
            timeout=timeout,
            poll_interval=poll_interval if poll_interval is not None else self.poll_interval,
            description=f"{self.name}: {description}",
            clock=self.clock,
            sleep=self.sleep,
        )
