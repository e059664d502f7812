from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from dotenv import dotenv_values

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 60 * 60
_PATH_VARIABLE = "Path" if os.name == "nt" else "PATH"


@dataclass(slots=True)
class _CacheEntry:
    """One cached value with its expiry time.

    Example:
        ```python
        entry = _CacheEntry(value={"A": "1"}, expires_at=time.monotonic() + 60)
        ```
    """

    value: Any
    expires_at: float


class ResourceCache:
    """Cache keyed by (operation, scope) with a fixed time-to-live.

    Example:
        ```python
        cache = ResourceCache(ttl_seconds=3600)
        env = cache.get_or_compute("env", "/work", lambda: {"A": "1"})
        ```
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Create an empty cache.

        Example:
            ```python
            cache = ResourceCache(ttl_seconds=5, clock=time.monotonic)
            ```
        """
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, str], _CacheEntry] = {}

    def get_or_compute(self, operation: str, scope: str, compute: Callable[[], Any]) -> Any:
        """Return the cached value or compute and store it.

        Example:
            ```python
            value = cache.get_or_compute("env", "", load_env)
            ```
        """
        key = (operation, scope)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at > now:
                return entry.value
        value = compute()
        with self._lock:
            self._entries[key] = _CacheEntry(value=value, expires_at=now + self._ttl)
        return value

    def invalidate(self, operation: str | None = None, scope: str | None = None) -> int:
        """Drop entries matching the operation and/or scope; both None clears all.

        Example:
            ```python
            removed = cache.invalidate("env", "/work")
            ```
        """
        with self._lock:
            doomed = [
                key
                for key in self._entries
                if (operation is None or key[0] == operation)
                and (scope is None or key[1] == scope)
            ]
            for key in doomed:
                del self._entries[key]
        return len(doomed)


def merge_variables(source: Mapping[str, str], target: dict[str, str]) -> None:
    """Copy variables from `source` that `target` does not define yet.

    PATH and PYTHONPATH are skipped; they are appended separately.

    Example:
        ```python
        merge_variables(os.environ, merged)
        ```
    """
    for name, value in source.items():
        if name in target or name.upper() in {"PATH", "PYTHONPATH"}:
            continue
        target[name] = value


def append_path(variables: dict[str, str], name: str, value: str) -> None:
    """Append path entries to a path-like variable using the OS separator.

    Example:
        ```python
        append_path(merged, "PYTHONPATH", "/opt/libs")
        ```
    """
    value = value.strip()
    if not value:
        return
    current = variables.get(name, "")
    variables[name] = f"{current}{os.pathsep}{value}" if current else value


class EnvironmentVariablesProvider:
    """Environment for the interpreter process: `.env` file merged over the host env.

    Example:
        ```python
        provider = EnvironmentVariablesProvider("/work/.env")
        env = provider.get_environment_variables()
        ```
    """

    OPERATION = "get_environment_variables"

    def __init__(
        self,
        env_file: str,
        *,
        process_env: Mapping[str, str] | None = None,
        cache: ResourceCache | None = None,
    ) -> None:
        """Track one env file and the environment it is merged with.

        Example:
            ```python
            provider = EnvironmentVariablesProvider("/work/.env", process_env={"PATH": "/bin"})
            ```
        """
        self._env_file = env_file
        self._process_env = os.environ if process_env is None else process_env
        self._cache = cache or ResourceCache()
        self._listeners: list[Callable[[str], None]] = []
        self._last_mtime = self._file_mtime()

    @property
    def env_file(self) -> str:
        """Path of the tracked env file.

        Example:
            ```python
            path = provider.env_file
            ```
        """
        return self._env_file

    def on_change(self, listener: Callable[[str], None]) -> None:
        """Register a callback fired with the scope whenever the environment changes.

        Example:
            ```python
            provider.on_change(lambda scope: session.restart_interpreter())
            ```
        """
        self._listeners.append(listener)

    def get_environment_variables(self, scope: str = "") -> dict[str, str]:
        """Return the merged environment for a workspace scope, cached.

        Example:
            ```python
            env = provider.get_environment_variables("/work")
            ```
        """
        merged = self._cache.get_or_compute(self.OPERATION, scope, self._load)
        return dict(merged)

    def set_env_file(self, env_file: str, scope: str = "") -> None:
        """Point the provider at another env file after a settings change.

        Example:
            ```python
            provider.set_env_file("/work/.env.local")
            ```
        """
        if env_file == self._env_file:
            return
        self._env_file = env_file
        self._last_mtime = self._file_mtime()
        self._environment_changed(scope)

    def check_for_changes(self, scope: str = "") -> bool:
        """Poll the env file and invalidate the cache if it was created, edited or deleted.

        Example:
            ```python
            if provider.check_for_changes():
                print("env file changed")
            ```
        """
        mtime = self._file_mtime()
        if mtime == self._last_mtime:
            return False
        self._last_mtime = mtime
        self._environment_changed(scope)
        return True

    def _environment_changed(self, scope: str) -> None:
        """Invalidate cached data for the scope and notify listeners.

        Example:
            ```python
            provider._environment_changed("")
            ```
        """
        self._cache.invalidate(self.OPERATION, scope)
        logger.info("Environment file changed: %s", self._env_file)
        for listener in list(self._listeners):
            listener(scope)

    def _file_mtime(self) -> float | None:
        """Return the env file modification time, or None when it does not exist.

        Example:
            ```python
            mtime = provider._file_mtime()
            ```
        """
        try:
            return os.path.getmtime(self._env_file) if self._env_file else None
        except OSError:
            return None

    def _load(self) -> dict[str, str]:
        """Parse the env file and merge it with the process environment.

        Example:
            ```python
            merged = provider._load()
            ```
        """
        merged: dict[str, str] = {}
        if self._env_file and os.path.isfile(self._env_file):
            parsed = dotenv_values(self._env_file)
            merged = {name: value for name, value in parsed.items() if value is not None}
            logger.debug("Loaded %d variables from %s", len(merged), self._env_file)
        merge_variables(self._process_env, merged)
        path_value = self._process_env.get(_PATH_VARIABLE)
        if path_value:
            append_path(merged, _PATH_VARIABLE, path_value)
        python_path = self._process_env.get("PYTHONPATH")
        if python_path:
            append_path(merged, "PYTHONPATH", python_path)
        return merged
