"""Process-scoped availability caches for dependencies and executables."""

import shlex
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from taskpilot.logging import get_logger

if TYPE_CHECKING:
    from taskpilot.recovery.runner import CommandRunner

log = get_logger(__name__)


@dataclass(frozen=True)
class DependencyInfo:
    available: bool
    version: str | None
    checked_at: float
    check_command: str = ""


class DependencyCache:
    """Remembers whether a dependency was found, per workspace.

    Entries live for the process unless ``ttl_seconds`` is given. Writes
    are last-writer-wins.
    """

    def __init__(self, ttl_seconds: float | None = None):
        self.ttl_seconds = ttl_seconds
        self._entries: dict[str, DependencyInfo] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(name: str, workspace: str | None) -> str:
        return f"{name}:{workspace or ''}"

    def _expired(self, info: DependencyInfo, now: float) -> bool:
        return self.ttl_seconds is not None and now - info.checked_at > self.ttl_seconds

    def _lookup(self, name: str, workspace: str | None) -> DependencyInfo | None:
        key = self._key(name, workspace)
        with self._lock:
            info = self._entries.get(key)
            if info is None:
                return None
            if self._expired(info, time.monotonic()):
                del self._entries[key]
                return None
            return info

    def is_available(self, name: str, workspace: str | None = None) -> bool | None:
        """Cached availability, or ``None`` when unknown."""
        info = self._lookup(name, workspace)
        return info.available if info else None

    def get_version(self, name: str, workspace: str | None = None) -> str | None:
        info = self._lookup(name, workspace)
        return info.version if info else None

    def record(
        self,
        name: str,
        available: bool,
        version: str | None = None,
        check_command: str = "",
        workspace: str | None = None,
    ) -> None:
        info = DependencyInfo(
            available=available,
            version=version,
            checked_at=time.monotonic(),
            check_command=check_command,
        )
        with self._lock:
            self._entries[self._key(name, workspace)] = info
        log.debug("Cached dependency availability", dependency=name, available=available)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def clear_expired(self) -> int:
        """Drop expired entries and return how many were removed."""
        if self.ttl_seconds is None:
            return 0
        now = time.monotonic()
        with self._lock:
            expired = [key for key, info in self._entries.items() if self._expired(info, now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def stats(self) -> dict[str, Any]:
        now = time.monotonic()
        with self._lock:
            entries = {
                key: {
                    "available": info.available,
                    "version": info.version,
                    "age_seconds": round(now - info.checked_at, 3),
                }
                for key, info in self._entries.items()
            }
        return {"cached_dependencies": len(entries), "entries": entries}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class CommandAvailabilityCache(DependencyCache):
    """Executable availability, resolved on a miss with ``command -v``."""

    async def check(self, name: str, runner: "CommandRunner", workspace: str | None = None) -> bool:
        cached = self.is_available(name, workspace)
        if cached is not None:
            return cached
        check_command = f"command -v {shlex.quote(name)}"
        outcome = await runner.run(check_command)
        available = outcome.succeeded and bool(outcome.output.strip())
        self.record(name, available, check_command=check_command, workspace=workspace)
        return available
