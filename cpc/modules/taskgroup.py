"""Short-lived task group: overlap independent work while a monitor runs."""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("cpc.taskgroup")


def heartbeat_monitor(label: str, interval: float = 30.0) -> Callable[[threading.Event], None]:
    """Monitor that logs a progress line every ``interval`` seconds until cancelled."""
    def monitor(cancelled: threading.Event) -> None:
        elapsed = 0.0
        while not cancelled.wait(interval):
            elapsed += interval
            logger.info(f"⏳ {label}: still running ({elapsed:.0f}s)")
    return monitor


def run_task_group(
    tasks: Dict[str, Callable[[], Any]],
    monitor: Optional[Callable[[threading.Event], None]] = None,
) -> Dict[str, Any]:
    """Run ``tasks`` concurrently, then cancel ``monitor``.

    All tasks run to completion. The first failure (in submission order) is
    re-raised after the monitor has been cancelled and joined.
    """
    cancelled = threading.Event()
    results: Dict[str, Any] = {}
    errors: Dict[str, BaseException] = {}

    with ThreadPoolExecutor(max_workers=len(tasks) + 1) as executor:
        monitor_future = executor.submit(monitor, cancelled) if monitor else None
        futures = {executor.submit(func): name for name, func in tasks.items()}
        try:
            for future in as_completed(futures):
                name = futures[future]
                try:
                    results[name] = future.result()
                except Exception as e:
                    logger.error(f"❌ Task {name} failed: {e}")
                    errors[name] = e
        finally:
            cancelled.set()
            if monitor_future is not None:
                monitor_future.result()

    for name in tasks:
        if name in errors:
            raise errors[name]
    return results
