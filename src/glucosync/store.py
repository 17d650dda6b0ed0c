"""Shared store implementations.

    InMemoryStore  — process-local dict; writes are durable on return.
    FileStore      — one file per key in a shared directory; writes go to a
                     temp file that is fsynced and renamed over the target in
                     a worker thread.  The flush handle resolves after rename.
    FallbackStore  — reads the primary store first and the fallback second;
                     writes to both.  Covers consumers that cannot reach the
                     shared app-group directory and only see their own.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import tempfile
from pathlib import Path

from glucosync.base import FlushHandle, SharedStore
from glucosync.exceptions import StoreUnavailable

logger = logging.getLogger("glucosync.store")

_SAFE_KEY = re.compile(r"^[A-Za-z0-9_.-]+$")


class InMemoryStore(SharedStore):
    """Dict-backed store.  ``set()`` is durable before it returns."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}
        self.writes = 0

    def get(self, key: str) -> bytes | None:
        return self._data.get(key)

    def set(self, key: str, data: bytes) -> FlushHandle:
        self._data[key] = bytes(data)
        self.writes += 1
        return FlushHandle(key=key)

    async def await_flush(self, handle: FlushHandle) -> None:
        return None

    def __contains__(self, key: str) -> bool:
        return key in self._data


class FileStore(SharedStore):
    """Directory-backed store shared between processes.

    Each key is a file.  Replacement is atomic (``os.replace``) so readers
    never observe a partially written blob.
    """

    def __init__(self, directory: Path) -> None:
        self._dir = Path(directory)

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, key: str) -> Path:
        if not _SAFE_KEY.match(key):
            raise StoreUnavailable(f"Invalid store key: {key!r}")
        return self._dir / f"{key}.json"

    def get(self, key: str) -> bytes | None:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StoreUnavailable(f"Cannot read {path}: {exc}") from exc

    def set(self, key: str, data: bytes) -> FlushHandle:
        path = self._path(key)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop: write synchronously, durable on return.
            self._write(path, data)
            return FlushHandle(key=key)
        pending = loop.run_in_executor(None, self._write, path, bytes(data))
        return FlushHandle(key=key, pending=pending)

    async def await_flush(self, handle: FlushHandle) -> None:
        if handle.pending is None:
            return
        try:
            await handle.pending
        except StoreUnavailable:
            raise
        except OSError as exc:
            raise StoreUnavailable(f"Write of {handle.key!r} failed: {exc}") from exc

    def _write(self, path: Path, data: bytes) -> None:
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self._dir, prefix=f".{path.stem}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(data)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise StoreUnavailable(f"Cannot write {path}: {exc}") from exc
        logger.debug("Wrote %d bytes to %s", len(data), path)


class FallbackStore(SharedStore):
    """Primary store with a private fallback.

    Reads return the primary's value when it has one.  Writes go to both
    stores; the flush completes when both writes are durable.  A failing
    primary is tolerated as long as the fallback works.
    """

    def __init__(self, primary: SharedStore, fallback: SharedStore) -> None:
        self._primary = primary
        self._fallback = fallback
        self._pending: dict[int, list[tuple[SharedStore, FlushHandle]]] = {}

    def get(self, key: str) -> bytes | None:
        try:
            value = self._primary.get(key)
        except StoreUnavailable as exc:
            logger.warning("Primary store unreadable, using fallback: %s", exc)
            value = None
        if value is not None:
            return value
        return self._fallback.get(key)

    def set(self, key: str, data: bytes) -> FlushHandle:
        handles: list[tuple[SharedStore, FlushHandle]] = []
        try:
            handles.append((self._primary, self._primary.set(key, data)))
        except StoreUnavailable as exc:
            logger.warning("Primary store write of %r failed: %s", key, exc)
        handles.append((self._fallback, self._fallback.set(key, data)))
        handle = FlushHandle(key=key)
        self._pending[id(handle)] = handles
        return handle

    async def await_flush(self, handle: FlushHandle) -> None:
        handles = self._pending.pop(id(handle), [])
        for store, inner in handles:
            try:
                await store.await_flush(inner)
            except StoreUnavailable as exc:
                if store is self._fallback:
                    raise
                logger.warning("Primary store flush of %r failed: %s", handle.key, exc)
