"""One-time migration of legacy registries to the two-port layout.

The table rewrite happens under the registry gate and preserves ``id``, ``branch``,
``worktree_path``, ``created_at`` and ``status``; ports are recomputed from the id.
Reconfiguring each thread's files and containers happens afterwards, outside the
gate, and only ever warns.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from iso_threads.control_plane.orchestration.config_writer import (
    DATABASE_URL,
    PARENT_ENV_FILENAME,
    REDIS_URL,
    THREAD_ENV_FILENAME,
    render_devcontainer,
    template_values,
    update_env_values,
)
from iso_threads.control_plane.providers import ExternalResourceProvider
from iso_threads.control_plane.registry.records import (
    CurrentPortScheme,
    SchemaVersion,
    ThreadRecord,
    detect_schema_version,
    format_table,
)
from iso_threads.control_plane.registry.store import RegistryStore
from iso_threads.errors import ExternalCommandError
from iso_threads.shared.naming import ThreadLayout, compose_project_name
from iso_threads.shared.settings import ThreadSettings

logger = logging.getLogger(__name__)

BACKUP_STAMP_FORMAT = "%Y%m%d-%H%M%S"
DROPPED_ENV_KEYS = ("WORKER_DEBUG_PORT", "API_PORT")

STATUS_MIGRATED = "migrated"
STATUS_CURRENT = "current"
STATUS_EMPTY = "empty"


@dataclass
class MigratedThread:
    thread_id: int
    old_ports: tuple[int, ...]
    backend_port: int
    frontend_port: int
    warnings: list[str] = field(default_factory=list)


@dataclass
class MigrationReport:
    status: str
    from_version: SchemaVersion | None = None
    backup_path: Path | None = None
    threads: list[MigratedThread] = field(default_factory=list)

    @property
    def warnings(self) -> list[str]:
        return [f"thread {t.thread_id}: {w}" for t in self.threads for w in t.warnings]


def migrate_record(record: ThreadRecord, scheme: CurrentPortScheme) -> ThreadRecord:
    ports = scheme.derive(record.id)
    return ThreadRecord(
        id=record.id,
        branch=record.branch,
        backend_port=ports.backend_port,
        frontend_port=ports.frontend_port,
        worktree_path=record.worktree_path,
        created_at=record.created_at,
        status=record.status,
    )


class RegistryMigrator:
    def __init__(
        self,
        settings: ThreadSettings,
        store: RegistryStore,
        provider: ExternalResourceProvider,
    ) -> None:
        self.settings = settings
        self.store = store
        self.provider = provider
        self.scheme = CurrentPortScheme(
            backend_base=settings.backend_port_base,
            frontend_base=settings.frontend_port_base,
        )

    def migrate(self, *, reconfigure: bool = True, now: datetime | None = None) -> MigrationReport:
        """Rewrite a legacy registry; a no-op when the table is empty or already current.

        Raises:
            CorruptRegistry: The registry holds an unknown or mixed layout.
            LockTimeout: The registry gate could not be acquired.
        """
        with self.store.locked():
            records = self.store.load()
            version = detect_schema_version(records)
            if version is None:
                logger.info("registry is empty; nothing to migrate")
                return MigrationReport(status=STATUS_EMPTY)
            if version is SchemaVersion.CURRENT:
                logger.info("registry already uses the current layout")
                return MigrationReport(status=STATUS_CURRENT, from_version=version)

            backup = self._backup(records, now or datetime.now())
            migrated = [migrate_record(record, self.scheme) for record in records]
            self.store.replace_all(migrated)

        report = MigrationReport(status=STATUS_MIGRATED, from_version=version, backup_path=backup)
        for old, new in zip(records, migrated):
            entry = MigratedThread(
                thread_id=new.id,
                old_ports=old.legacy_ports,
                backend_port=new.backend_port,
                frontend_port=new.frontend_port,
            )
            logger.info(
                "thread %s: ports %s -> %s/%s",
                new.id,
                "/".join(str(p) for p in old.legacy_ports),
                new.backend_port,
                new.frontend_port,
            )
            if reconfigure:
                self._reconfigure(new, entry)
            report.threads.append(entry)
        return report

    def _backup(self, records: list[ThreadRecord], now: datetime) -> Path:
        source = self.settings.registry_file
        target = source.with_name(f"{source.name}.backup-{now.strftime(BACKUP_STAMP_FORMAT)}")
        if self.settings.registry_backend == "file" and source.is_file():
            shutil.copy2(source, target)
        else:
            target.write_text(format_table(records), encoding="utf-8")
        logger.info("registry backup written to %s", target)
        return target

    def _reconfigure(self, record: ThreadRecord, entry: MigratedThread) -> None:
        thread_dir = Path(record.worktree_path)
        if not thread_dir.is_dir():
            entry.warnings.append(f"worktree not found at {thread_dir}; files not updated")
            return

        project = compose_project_name(self.settings.project_name, record.id)
        layout = ThreadLayout(thread_id=record.id, thread_dir=thread_dir)
        was_running = layout.compose_file.is_file()
        if was_running:
            try:
                self.provider.stop_containers(project, layout.compose_file)
            except ExternalCommandError as exc:
                entry.warnings.append(f"stopping containers failed: {exc}")

        if self.settings.template_dir is not None:
            try:
                render_devcontainer(
                    self.settings.template_dir,
                    layout.devcontainer_dir,
                    template_values(record, self.settings.project_name),
                )
            except OSError as exc:
                entry.warnings.append(f"devcontainer not regenerated: {exc}")

        backend_values = {
            "DATABASE_URL": DATABASE_URL,
            "REDIS_URL": REDIS_URL,
            "BACKEND_PORT": str(record.backend_port),
        }
        for env_file in (thread_dir / "backend" / THREAD_ENV_FILENAME, thread_dir / THREAD_ENV_FILENAME):
            if update_env_values(env_file, backend_values, DROPPED_ENV_KEYS, append_missing=True):
                break
        frontend_values = {
            "VITE_DEV_PORT": str(record.frontend_port),
            "VITE_BACKEND_API_URL": f"http://localhost:{record.backend_port}",
        }
        for env_file in (
            thread_dir / "frontend" / PARENT_ENV_FILENAME,
            self.settings.worktrees_dir / "frontend" / f"thread-{record.id}" / PARENT_ENV_FILENAME,
        ):
            if update_env_values(env_file, frontend_values):
                break

        if was_running and layout.compose_file.is_file():
            try:
                self.provider.start_containers(project, layout.compose_file)
            except ExternalCommandError as exc:
                entry.warnings.append(f"restarting containers failed: {exc}")
        for warning in entry.warnings:
            logger.warning("thread %s: %s", record.id, warning)
