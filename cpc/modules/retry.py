"""Retry policy and bounded polling shared by every adapter."""
import functools
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from cpc.errors import FatalError, TransientError, WaitTimeoutError

logger = logging.getLogger("cpc.retry")

T = TypeVar("T")


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, TransientError)


@dataclass
class RetryPolicy:
    """Bounded retries with fixed or linear backoff.

    Errors accepted by ``retryable`` are retried up to ``max_attempts`` times.
    After the final attempt they are escalated to FatalError. Any other
    exception propagates immediately.
    """
    max_attempts: int = 3
    delay: float = 2.0
    backoff: str = "linear"
    retryable: Callable[[BaseException], bool] = _is_transient
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(max_attempts=settings.max_attempts, delay=settings.delay, backoff=settings.backoff)

    def delay_for(self, attempt: int) -> float:
        if self.backoff == "linear":
            return self.delay * attempt
        return self.delay

    def call(self, func: Callable[..., T], *args, description: str = "", **kwargs) -> T:
        label = description or getattr(func, "__name__", "operation")
        for attempt in range(1, self.max_attempts + 1):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if not self.retryable(e):
                    raise
                if attempt >= self.max_attempts:
                    raise FatalError(
                        f"{label} failed after {attempt} attempts: {e}",
                        hint=getattr(e, "hint", None),
                        command=getattr(e, "command", None),
                        output=getattr(e, "output", ""),
                    ) from e
                wait = self.delay_for(attempt)
                logger.warning(f"⚠️ {label}: attempt {attempt} failed ({e}); retrying in {wait:.1f}s")
                self.sleep(wait)
        raise AssertionError("unreachable")


NO_RETRY = RetryPolicy(max_attempts=1)


def retry(policy: Optional[RetryPolicy] = None):
    """Decorator form of ``RetryPolicy.call``."""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            return (policy or RetryPolicy()).call(func, *args, description=func.__name__, **kwargs)
        return wrapper
    return decorator


def wait_until(
    condition: Callable[[], bool],
    timeout: float,
    poll_interval: float = 5.0,
    description: str = "condition",
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Poll ``condition`` until it returns truthy or ``timeout`` elapses.

    TransientError raised by the condition counts as "not yet". Returns True
    on success and raises WaitTimeoutError otherwise.
    """
    deadline = clock() + timeout
    attempts = 0
    while True:
        attempts += 1
        try:
            if condition():
                logger.debug(f"{description} satisfied after {attempts} checks")
                return True
        except TransientError as e:
            logger.debug(f"{description}: not yet ({e})")
        remaining = deadline - clock()
        if remaining <= 0:
            raise WaitTimeoutError(f"Timed out after {timeout:.0f}s waiting for {description}", timeout=timeout)
        logger.debug(f"⏳ Waiting for {description} ({remaining:.0f}s left)")
        sleep(min(poll_interval, remaining))
