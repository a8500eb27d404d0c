from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field
import fcntl
import os
from pathlib import Path
import tempfile

from fieldsync.domain.errors import StorageError

LOCK_FILE_NAME = ".queue.lock"


@dataclass
class InMemoryKeyValueStorage:
    """Non-durable backend with deterministic behavior for tests and skeleton mode.

    Every store built over the same instance shares its lock, which stands in
    for the cross-process lock of the durable backends.
    """

    values: dict[str, str] = field(default_factory=dict)
    writes: list[str] = field(default_factory=list)
    fail_writes: bool = False
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[InMemoryKeyValueStorage]:
        async with self._lock:
            yield self

    async def get(self, key: str) -> str | None:
        return self.values.get(key)

    async def set(self, key: str, value: str) -> None:
        if self.fail_writes:
            raise StorageError(f"storage backend unavailable for key: {key}")
        self.writes.append(key)
        self.values[key] = value


@dataclass
class FileKeyValueStorage:
    """One JSON document per key under ``directory``; writes replace atomically.

    Sessions hold an ``flock`` on a sidecar lock file, so processes sharing
    the directory take turns. The asyncio lock keeps two tasks of one process
    from contending for the same file lock.
    """

    directory: Path
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        self.directory = Path(self.directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[FileKeyValueStorage]:
        async with self._lock:
            with self._locked_directory():
                yield self

    async def get(self, key: str) -> str | None:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(f"failed to read {path}: {exc}") from exc

    async def set(self, key: str, value: str) -> None:
        path = self._path(key)
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{path.name}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(value)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except OSError as exc:
            raise StorageError(f"failed to write {path}: {exc}") from exc

    @contextmanager
    def _locked_directory(self) -> Iterator[None]:
        lock_path = self.directory / LOCK_FILE_NAME
        try:
            handle = lock_path.open("a+", encoding="utf-8")
        except OSError as exc:
            raise StorageError(f"failed to open lock file {lock_path}: {exc}") from exc
        with handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _path(self, key: str) -> Path:
        safe = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in key)
        if not safe:
            raise StorageError("storage key must not be empty")
        return self.directory / f"{safe}.json"
