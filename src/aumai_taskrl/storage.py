"""Durable key-addressed blob storage and the progress/result store built on it.

``FileStorage`` writes every blob through a temporary file in the target
directory followed by ``os.replace``, so a crash mid-write leaves the
previous version intact.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Optional, Protocol, TypeVar, runtime_checkable

import pydantic
from pydantic import BaseModel

from .errors import PersistenceError
from .models import ProgressSnapshot, TaskResult, TaskStatus

logger = logging.getLogger(__name__)

_TMP_PREFIX = ".tmp-"

M = TypeVar("M", bound=BaseModel)


@runtime_checkable
class BlobStorage(Protocol):
    """Key-addressed read/write of opaque byte blobs."""

    async def read(self, key: str) -> Optional[bytes]: ...

    async def write(self, key: str, data: bytes) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def keys(self, prefix: str = "") -> list[str]: ...


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class MemoryStorage:
    """In-process storage backend.

    Example:
        >>> storage = MemoryStorage()
        >>> await storage.write("models/mining.json", b"{}")
        >>> await storage.read("models/mining.json")
        b'{}'
    """

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}

    async def read(self, key: str) -> Optional[bytes]:
        return self._blobs.get(key)

    async def write(self, key: str, data: bytes) -> None:
        self._blobs[key] = bytes(data)

    async def delete(self, key: str) -> None:
        self._blobs.pop(key, None)

    async def keys(self, prefix: str = "") -> list[str]:
        return sorted(key for key in self._blobs if key.startswith(prefix))


class FileStorage:
    """Filesystem backend rooted at a directory; keys are relative paths.

    Blocking IO runs in a worker thread so the event loop stays free.
    """

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    async def read(self, key: str) -> Optional[bytes]:
        return await asyncio.to_thread(self._read, key)

    async def write(self, key: str, data: bytes) -> None:
        await asyncio.to_thread(self._write, key, data)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete, key)

    async def keys(self, prefix: str = "") -> list[str]:
        return await asyncio.to_thread(self._keys, prefix)

    def _path(self, key: str) -> Path:
        parts = Path(key).parts
        if not parts or Path(key).is_absolute() or ".." in parts:
            raise PersistenceError(f"Invalid storage key: {key!r}")
        return self._root.joinpath(*parts)

    def _read(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise PersistenceError(f"Failed to read {key!r}: {exc}") from exc

    def _write(self, key: str, data: bytes) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=_TMP_PREFIX)
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(data)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise PersistenceError(f"Failed to write {key!r}: {exc}") from exc

    def _delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as exc:
            raise PersistenceError(f"Failed to delete {key!r}: {exc}") from exc

    def _keys(self, prefix: str) -> list[str]:
        if not self._root.exists():
            return []
        found = []
        for path in self._root.rglob("*"):
            if not path.is_file() or path.name.startswith(_TMP_PREFIX):
                continue
            key = path.relative_to(self._root).as_posix()
            if key.startswith(prefix):
                found.append(key)
        return sorted(found)


# ---------------------------------------------------------------------------
# ProgressStore
# ---------------------------------------------------------------------------


class ProgressStore:
    """Progress snapshots and task results for crash recovery and polling.

    Example:
        >>> store = ProgressStore(MemoryStorage())
        >>> await store.save_progress(snapshot)
        >>> latest = await store.get_progress(snapshot.task_id)
    """

    def __init__(self, storage: BlobStorage, max_history: int = 1000) -> None:
        """Initialise the store.

        Args:
            storage: Backend holding the blobs.
            max_history: History entries kept per persisted snapshot.
        """
        self._storage = storage
        self._max_history = max_history

    @staticmethod
    def progress_key(task_id: str) -> str:
        return f"progress/{task_id}.json"

    @staticmethod
    def result_key(task_id: str) -> str:
        return f"results/{task_id}.json"

    async def save_progress(self, snapshot: ProgressSnapshot) -> None:
        """Persist *snapshot*, replacing the previous one for its task."""
        if len(snapshot.history) > self._max_history:
            snapshot = snapshot.model_copy(
                update={"history": snapshot.history[-self._max_history:]}
            )
        await self._storage.write(
            self.progress_key(snapshot.task_id), snapshot.model_dump_json().encode("utf-8")
        )

    async def get_progress(self, task_id: str) -> Optional[ProgressSnapshot]:
        data = await self._storage.read(self.progress_key(task_id))
        if data is None:
            return None
        return self._decode(ProgressSnapshot, data, task_id)

    async def save_result(self, result: TaskResult) -> None:
        await self._storage.write(
            self.result_key(result.task_id), result.model_dump_json().encode("utf-8")
        )

    async def get_result(self, task_id: str) -> Optional[TaskResult]:
        data = await self._storage.read(self.result_key(task_id))
        if data is None:
            return None
        return self._decode(TaskResult, data, task_id)

    async def pop_result(self, task_id: str) -> Optional[TaskResult]:
        """Read a terminal result and release everything stored for the task."""
        result = await self.get_result(task_id)
        if result is not None:
            await self._storage.delete(self.result_key(task_id))
            await self._storage.delete(self.progress_key(task_id))
        return result

    async def cleanup(
        self,
        max_age: float = 7 * 24 * 3600,
        max_completed_age: float = 30 * 24 * 3600,
        now: Optional[float] = None,
    ) -> int:
        """Drop stale snapshots and results.

        A snapshot goes once it is older than *max_age*, once it has been
        COMPLETED for longer than *max_completed_age*, or once it has been
        FAILED for longer than *max_age*. Results go after
        *max_completed_age*.

        Returns:
            Number of blobs removed.
        """
        now = time.time() if now is None else now
        removed = 0

        for key in await self._storage.keys("progress/"):
            data = await self._storage.read(key)
            if data is None:
                continue
            try:
                snapshot = ProgressSnapshot.model_validate_json(data)
            except pydantic.ValidationError:
                logger.warning("Removing unreadable progress snapshot %s", key)
                await self._storage.delete(key)
                removed += 1
                continue
            if self._expired(snapshot, now, max_age, max_completed_age):
                await self._storage.delete(key)
                removed += 1

        for key in await self._storage.keys("results/"):
            data = await self._storage.read(key)
            if data is None:
                continue
            try:
                result = TaskResult.model_validate_json(data)
            except pydantic.ValidationError:
                result = None
            if result is None or now - result.finished_at > max_completed_age:
                await self._storage.delete(key)
                removed += 1

        logger.info("Storage cleanup removed %d entries", removed)
        return removed

    @staticmethod
    def _expired(
        snapshot: ProgressSnapshot, now: float, max_age: float, max_completed_age: float
    ) -> bool:
        if now - snapshot.created_at > max_age:
            return True
        idle = now - snapshot.updated_at
        if snapshot.status is TaskStatus.COMPLETED and idle > max_completed_age:
            return True
        return snapshot.status is TaskStatus.FAILED and idle > max_age

    @staticmethod
    def _decode(model: type[M], data: bytes, task_id: str) -> M:
        try:
            return model.model_validate_json(data)
        except pydantic.ValidationError as exc:
            raise PersistenceError(f"Unreadable record for task {task_id}: {exc}") from exc
