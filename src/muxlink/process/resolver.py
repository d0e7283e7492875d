"""Executable path resolution with a process-wide cache.

The ssh and scp clients are addressed by absolute path. Resolution
searches a fixed list of well-known directories before ``PATH`` and
caches each answer. The shared instance is explicit process-wide state:
:func:`get_resolver` initializes it, :func:`reset_resolver` and
:meth:`ExecutableResolver.invalidate` are the only ways to drop cached
entries.
"""

from __future__ import annotations

import logging
import os
import threading

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_PATHS = (
    "/opt/homebrew/bin",
    "/usr/local/bin",
    "/usr/bin",
    "/bin",
)


class ExecutableResolver:
    """Resolves tool names to absolute executable paths, caching results."""

    def __init__(
        self,
        search_paths: tuple[str, ...] = DEFAULT_SEARCH_PATHS,
        use_env_path: bool = True,
    ) -> None:
        self._search_paths = search_paths
        self._use_env_path = use_env_path
        self._cache: dict[str, str] = {}
        self._lock = threading.Lock()

    def resolve(self, name: str) -> str | None:
        """Return the absolute path of ``name``, or None if not found.

        Absolute paths are returned as-is when executable. Misses are
        not cached, so a tool installed later is picked up.
        """
        if os.path.isabs(name):
            return name if _is_executable(name) else None

        with self._lock:
            cached = self._cache.get(name)
        if cached is not None:
            return cached

        for directory in self._candidate_dirs():
            candidate = os.path.join(directory, name)
            if _is_executable(candidate):
                with self._lock:
                    self._cache[name] = candidate
                logger.debug("Resolved %s -> %s", name, candidate)
                return candidate

        logger.debug("Executable %s not found", name)
        return None

    def invalidate(self, name: str | None = None) -> None:
        """Drop one cached entry, or all of them when ``name`` is None."""
        with self._lock:
            if name is None:
                self._cache.clear()
            else:
                self._cache.pop(name, None)

    def _candidate_dirs(self) -> list[str]:
        dirs = list(self._search_paths)
        if self._use_env_path:
            for entry in os.environ.get("PATH", "").split(os.pathsep):
                if entry and entry not in dirs:
                    dirs.append(entry)
        return dirs


def _is_executable(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


_resolver: ExecutableResolver | None = None
_resolver_lock = threading.Lock()


def get_resolver() -> ExecutableResolver:
    """Return the process-wide resolver, creating it on first use."""
    global _resolver
    with _resolver_lock:
        if _resolver is None:
            _resolver = ExecutableResolver()
        return _resolver


def reset_resolver() -> None:
    """Discard the process-wide resolver and everything it cached."""
    global _resolver
    with _resolver_lock:
        _resolver = None


def resolve_client(configured: str | None, name: str, fallback: str) -> str:
    """Pick the client path: configured value, resolved name, or fallback."""
    if configured:
        return configured
    return get_resolver().resolve(name) or fallback
