"""Error taxonomy shared by adapters, orchestrators and commands."""
from typing import Optional


class CpcError(Exception):
    """Base class for every error the orchestration layer classifies.

    ``hint`` is a suggested next command for the operator. ``command`` and
    ``output`` describe the external call that produced the error, when there
    was one.
    """

    def __init__(
        self,
        message: str,
        hint: Optional[str] = None,
        command: Optional[str] = None,
        output: str = "",
    ):
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.command = command
        self.output = output


class ValidationError(CpcError):
    """Bad operator input. Raised before any side effect."""


class TransientError(CpcError):
    """An external call failed in a way that retrying may fix."""


class FatalError(CpcError):
    """An external system reported an unrecoverable condition."""


class WaitTimeoutError(CpcError):
    """A bounded wait ran out of time."""

    def __init__(self, message: str, timeout: float = 0, hint: Optional[str] = None):
        super().__init__(message, hint=hint)
        self.timeout = timeout
