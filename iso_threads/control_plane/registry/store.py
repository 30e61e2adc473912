"""Registry store contract and the pipe-delimited flat-file implementation."""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Iterable, Iterator
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path
from typing import Protocol

from iso_threads.control_plane.locking import HolderInfo, MutexGate
from iso_threads.control_plane.registry.records import (
    SchemaVersion,
    ThreadRecord,
    detect_schema_version,
    format_table,
    parse_table,
)
from iso_threads.errors import DuplicateThread, NotFound
from iso_threads.shared.settings import ThreadSettings

logger = logging.getLogger(__name__)


class RegistryStore(Protocol):
    """Durable table of thread records.

    ``replace_all`` is the durability contract: a reader observes either the previous
    table or the new one, never a partial write. Mutations run under ``gate``; ``load``
    and ``get`` do not take it, so they may observe a table from between two writers
    but never a torn record.
    """

    gate: MutexGate
    lock_timeout_s: float

    def load(self) -> list[ThreadRecord]: ...

    def replace_all(self, records: Iterable[ThreadRecord]) -> None: ...

    def schema_version(self) -> SchemaVersion | None: ...

    def get(self, thread_id: int) -> ThreadRecord | None: ...

    def append(self, record: ThreadRecord) -> None: ...

    def update_status(self, thread_id: int, status: str) -> ThreadRecord: ...

    def remove(self, thread_id: int) -> bool: ...

    def locked(self) -> AbstractContextManager[HolderInfo]: ...


class GatedMutationsMixin:
    """load -> transform -> replace_all, always under the registry gate."""

    gate: MutexGate
    lock_timeout_s: float

    def load(self) -> list[ThreadRecord]:
        raise NotImplementedError

    def replace_all(self, records: Iterable[ThreadRecord]) -> None:
        raise NotImplementedError

    @contextmanager
    def locked(self) -> Iterator[HolderInfo]:
        with self.gate.hold(self.lock_timeout_s) as info:
            yield info

    def schema_version(self) -> SchemaVersion | None:
        return detect_schema_version(self.load())

    def get(self, thread_id: int) -> ThreadRecord | None:
        for record in self.load():
            if record.id == thread_id:
                return record
        return None

    def append(self, record: ThreadRecord) -> None:
        with self.locked():
            records = self.load()
            if any(existing.id == record.id for existing in records):
                raise DuplicateThread(record.id)
            records.append(record)
            self.replace_all(records)

    def update_status(self, thread_id: int, status: str) -> ThreadRecord:
        with self.locked():
            records = self.load()
            for index, record in enumerate(records):
                if record.id == thread_id:
                    records[index] = record.with_status(status)
                    self.replace_all(records)
                    return records[index]
        raise NotFound(thread_id)

    def remove(self, thread_id: int) -> bool:
        with self.locked():
            records = self.load()
            kept = [record for record in records if record.id != thread_id]
            if len(kept) == len(records):
                return False
            self.replace_all(kept)
            return True


class FlatFileRegistryStore(GatedMutationsMixin):
    """One pipe-delimited record per line, rewritten by temp file + atomic rename."""

    def __init__(self, path: Path | str, gate: MutexGate, lock_timeout_s: float = 10.0) -> None:
        self.path = Path(path)
        self.gate = gate
        self.lock_timeout_s = lock_timeout_s

    def load(self) -> list[ThreadRecord]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        return parse_table(text)

    def replace_all(self, records: Iterable[ThreadRecord]) -> None:
        payload = format_table(list(records))
        with self.locked():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f"{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, self.path)
            except BaseException:
                try:
                    os.unlink(tmp_name)
                except FileNotFoundError:
                    pass
                raise
            self._fsync_parent()
        logger.debug("rewrote registry %s", self.path)

    def _fsync_parent(self) -> None:
        dir_fd = os.open(str(self.path.parent), os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)


def build_registry_store(settings: ThreadSettings) -> RegistryStore:
    gate = MutexGate(settings.lock_file, stale_after_s=settings.lock_stale_after_s)
    if settings.registry_backend == "sqlite":
        from iso_threads.control_plane.registry.sqlite_store import SqliteRegistryStore

        return SqliteRegistryStore(
            settings.registry_file, gate=gate, lock_timeout_s=settings.lock_timeout_s
        )
    return FlatFileRegistryStore(
        settings.registry_file, gate=gate, lock_timeout_s=settings.lock_timeout_s
    )


__all__ = [
    "FlatFileRegistryStore",
    "GatedMutationsMixin",
    "RegistryStore",
    "build_registry_store",
]
