"""Short-lived JSON cache files in the temp directory. Safe to delete any time."""
import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, List, Optional

logger = logging.getLogger("cpc.cache")

CACHE_GLOB = "cpc_*_cache*"
RECOVERY_LOG_GLOB = "cpc_recovery_*.log"


class StatusCache:
    """``<dir>/cpc_<kind>_cache_<workspace>`` files with a per-read TTL."""

    def __init__(self, cache_dir: Path, workspace: str, clock: Callable[[], float] = time.time):
        self.cache_dir = Path(cache_dir)
        self.workspace = workspace
        self.clock = clock

    def path(self, kind: str) -> Path:
        return self.cache_dir / f"cpc_{kind}_cache_{self.workspace}"

    def get(self, kind: str, ttl: float) -> Optional[Any]:
        path = self.path(kind)
        try:
            with open(path) as f:
                entry = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.debug(f"Ignoring unreadable cache {path}: {e}")
            return None
        age = self.clock() - entry.get("created", 0)
        if age < 0 or age >= ttl:
            return None
        return entry.get("value")

    def set(self, kind: str, value: Any) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        path = self.path(kind)
        try:
            with open(path, "w") as f:
                json.dump({"created": self.clock(), "value": value}, f)
        except OSError as e:
            logger.debug(f"Could not write cache {path}: {e}")


def clear_caches(cache_dir: Path, workspace: Optional[str] = None) -> List[Path]:
    """Delete cache files for one workspace, or all of them plus recovery logs."""
    patterns = [f"cpc_*_cache_{workspace}"] if workspace else [CACHE_GLOB, RECOVERY_LOG_GLOB]
    removed = []
    for path in (p for pattern in patterns for p in sorted(Path(cache_dir).glob(pattern))):
        try:
            path.unlink()
            removed.append(path)
        except FileNotFoundError:
            continue
    logger.debug(f"Removed {len(removed)} cache files from {cache_dir}")
    return removed
