"""Write-once, content-addressed store for derived artifacts.

Entries live at ``<cache_dir>/<key>.<ext>`` and are never rewritten once
present. Concurrent misses for the same entry are collapsed onto a single
producer call: the first caller runs it and every caller that arrives while
it is running receives the same bytes or the same exception.
"""

from __future__ import annotations

import contextlib
import logging
import os
import tempfile
import threading
from concurrent.futures import Future
from pathlib import Path
from typing import Callable

from .cache_keys import ResourceKind
from .errors import CachePersistError, CacheReadError

Producer = Callable[[], bytes]
Entry = tuple[str, ResourceKind]


class _InFlight:
    """Registry of derivations currently running, one future per entry."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._running: dict[Entry, Future[bytes]] = {}

    def join_or_lead(self, entry: Entry) -> tuple[Future[bytes], bool]:
        """Return the entry's future and whether the caller must produce it."""
        with self._guard:
            future = self._running.get(entry)
            if future is not None:
                return future, False
            future = Future()
            self._running[entry] = future
            return future, True

    def finish(self, entry: Entry) -> None:
        with self._guard:
            self._running.pop(entry, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._running)


class DerivationCache:
    def __init__(self, cache_dir: os.PathLike[str] | str, *, logger: logging.Logger | None = None) -> None:
        self._cache_dir = Path(cache_dir)
        self._logger = logger or logging.getLogger("wavcache.cache")
        self._in_flight = _InFlight()

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def entry_path(self, key: str, kind: ResourceKind) -> Path:
        return self._cache_dir / f"{key}.{kind.extension}"

    def contains(self, key: str, kind: ResourceKind) -> bool:
        return self.entry_path(key, kind).is_file()

    def _read_entry(self, path: Path) -> bytes | None:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise CacheReadError(f"unable to read cache entry {path}: {exc}") from exc

    def _write_entry(self, path: Path, payload: bytes) -> None:
        tmp_name: str | None = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
            os.replace(tmp_name, path)
        except OSError as exc:
            if tmp_name is not None:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_name)
            raise CachePersistError(f"unable to persist cache entry {path}: {exc}") from exc

    def fetch_or_produce(self, key: str, kind: ResourceKind, producer: Producer) -> bytes:
        """Return the cached bytes for ``(key, kind)``, deriving them on a miss.

        Only a missing entry counts as a miss; any other read failure raises
        :class:`CacheReadError`. Producer exceptions propagate unchanged, to
        every caller waiting on that derivation, and leave the cache untouched.
        """

        path = self.entry_path(key, kind)
        cached = self._read_entry(path)
        if cached is not None:
            self._logger.debug("cache hit %s", path.name)
            return cached

        entry = (key, kind)
        future, leader = self._in_flight.join_or_lead(entry)
        if not leader:
            self._logger.debug("waiting on running derivation of %s", path.name)
            return future.result()

        try:
            # The entry may have landed between the first read and taking the lead.
            payload = self._read_entry(path)
            if payload is None:
                self._logger.info("cache miss %s; deriving", path.name)
                payload = producer()
                self._write_entry(path, payload)
                self._logger.info("cached %s (%d bytes)", path.name, len(payload))
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(payload)
            return payload
        finally:
            self._in_flight.finish(entry)
