"""Identity & port allocation over the thread registry."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from iso_threads.control_plane.providers import ExternalResourceProvider
from iso_threads.control_plane.registry.records import (
    STATUS_INITIALIZING,
    THREAD_STATUSES,
    CurrentPortScheme,
    LegacyPortScheme,
    PortAssignment,
    SchemaVersion,
    ThreadRecord,
    detect_schema_version,
    parse_timestamp,
    utc_timestamp,
)
from iso_threads.control_plane.registry.store import RegistryStore
from iso_threads.errors import BranchInUse, InvalidStatus, PoolExhausted, PortUnavailable
from iso_threads.shared.naming import ThreadLayout, slugify, thread_branch_name
from iso_threads.shared.settings import ThreadSettings

logger = logging.getLogger(__name__)

ID_PLACEHOLDER = "{id}"


@dataclass(frozen=True)
class ReapedThread:
    thread_id: int
    branch: str
    age_s: float


def lowest_free_id(live_ids: set[int], max_threads: int) -> int | None:
    for candidate in range(1, max_threads + 1):
        if candidate not in live_ids:
            return candidate
    return None


class IdentityAllocator:
    """Picks the lowest free slot, derives its ports and commits an ``initializing`` record.

    The scan and the commit happen under one hold of the registry gate; port probing
    happens inside it too, before anything is written, so a busy port never consumes
    the slot.
    """

    def __init__(
        self,
        store: RegistryStore,
        settings: ThreadSettings,
        provider: ExternalResourceProvider,
    ) -> None:
        self.store = store
        self.settings = settings
        self.provider = provider

    def port_scheme(
        self, version: SchemaVersion | None
    ) -> CurrentPortScheme | LegacyPortScheme:
        if version is not None and version.is_legacy:
            return LegacyPortScheme(
                base=self.settings.legacy_port_base,
                block=self.settings.legacy_port_block,
                wide=version is SchemaVersion.LEGACY_WIDE,
            )
        return CurrentPortScheme(
            backend_base=self.settings.backend_port_base,
            frontend_base=self.settings.frontend_port_base,
        )

    def derive_ports(self, thread_id: int, version: SchemaVersion | None = None) -> PortAssignment:
        return self.port_scheme(version).derive(thread_id)

    def allocate(self, feature_name: str = "", branch_hint: str | None = None) -> ThreadRecord:
        """Commit a new record for the lowest free id.

        ``branch_hint`` may contain ``{id}``; without a hint the branch is
        ``thread-{id}-{slug(feature_name)}``.

        Raises:
            PoolExhausted: Every id in ``1..max_threads`` is live.
            BranchInUse: Another live record already uses the branch.
            PortUnavailable: A derived port is bound by another process.
            LockTimeout: The registry gate could not be acquired.
        """
        with self.store.locked():
            records = self.store.load()
            live_ids = {record.id for record in records}
            thread_id = lowest_free_id(live_ids, self.settings.max_threads)
            if thread_id is None:
                raise PoolExhausted(self.settings.max_threads)

            branch = self._branch_for(thread_id, feature_name, branch_hint)
            for record in records:
                if record.branch == branch:
                    raise BranchInUse(branch, record.id)

            version = detect_schema_version(records)
            ports = self.derive_ports(thread_id, version)
            for port in ports.all_ports():
                if not self.provider.port_is_free(port):
                    raise PortUnavailable(port)

            layout = ThreadLayout.for_thread(self.settings.worktrees_dir, thread_id)
            record = ThreadRecord(
                id=thread_id,
                branch=branch,
                backend_port=ports.backend_port,
                frontend_port=ports.frontend_port,
                worktree_path=str(layout.thread_dir.resolve()),
                created_at=utc_timestamp(),
                status=STATUS_INITIALIZING,
                legacy_ports=ports.legacy_ports,
            )
            self.store.append(record)
        logger.info(
            "allocated thread %s (branch=%s, ports=%s/%s)",
            record.id,
            record.branch,
            record.backend_port,
            record.frontend_port,
        )
        return record

    def _branch_for(self, thread_id: int, feature_name: str, branch_hint: str | None) -> str:
        if branch_hint:
            return branch_hint.replace(ID_PLACEHOLDER, str(thread_id))
        return thread_branch_name(thread_id, slugify(feature_name) or "thread")

    def release(self, thread_id: int) -> bool:
        """Remove the record for ``thread_id``; returns False when it was already absent."""

        removed = self.store.remove(thread_id)
        if removed:
            logger.info("released thread %s", thread_id)
        return removed

    def update_status(self, thread_id: int, status: str) -> ThreadRecord:
        if status not in THREAD_STATUSES:
            raise InvalidStatus(
                f"Invalid status {status!r} (expected one of {', '.join(sorted(THREAD_STATUSES))})"
            )
        return self.store.update_status(thread_id, status)

    def reap_orphans(self, older_than_s: float, *, now: float | None = None) -> list[ReapedThread]:
        """Release ``initializing`` records whose ``created_at`` is older than the threshold.

        Only called explicitly; allocation never garbage-collects on its own.
        """
        current = time.time() if now is None else now
        reaped: list[ReapedThread] = []
        with self.store.locked():
            records = self.store.load()
            kept: list[ThreadRecord] = []
            for record in records:
                created = parse_timestamp(record.created_at)
                age = current - created.timestamp() if created else None
                if record.status == STATUS_INITIALIZING and age is not None and age > older_than_s:
                    reaped.append(ReapedThread(thread_id=record.id, branch=record.branch, age_s=age))
                    continue
                kept.append(record)
            if reaped:
                self.store.replace_all(kept)
        for orphan in reaped:
            logger.warning(
                "reaped orphaned thread %s (%s, initializing for %.0fs)",
                orphan.thread_id,
                orphan.branch,
                orphan.age_s,
            )
        return reaped
