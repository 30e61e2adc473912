"""Teardown orchestrator: best-effort reclamation, then release of the id.

Every resource step is independent and only warns on failure. Removing the registry
record is the last step and the only fatal one. Resources are discovered from the
naming convention, so a thread whose record is already gone is still reconciled and
a second teardown finds nothing left to do.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from iso_threads.control_plane.allocator import IdentityAllocator
from iso_threads.control_plane.orchestration.transaction import Step, TransactionRunner
from iso_threads.control_plane.providers import ExternalResourceProvider
from iso_threads.control_plane.registry.records import ThreadRecord
from iso_threads.control_plane.registry.store import RegistryStore
from iso_threads.errors import ExternalCommandError, TeardownWarning
from iso_threads.shared.naming import (
    ThreadLayout,
    compose_project_name,
    container_prefix,
    resource_name,
)
from iso_threads.shared.settings import ThreadSettings

logger = logging.getLogger(__name__)

STEP_CONTAINERS = "containers"
STEP_VOLUMES = "volumes"
STEP_NETWORK = "network"
STEP_WORKTREES = "worktrees"
STEP_BRANCHES = "branches"
STEP_THREAD_DIR = "thread_dir"
STEP_REGISTRY = "registry"

ConfirmCallback = Callable[[ThreadRecord | None], bool]


@dataclass
class TeardownReport:
    thread_id: int
    record_found: bool
    succeeded: list[str] = field(default_factory=list)
    warnings: list[TeardownWarning] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    registry_removed: bool = False
    cancelled: bool = False

    @property
    def clean(self) -> bool:
        return not self.cancelled and not self.warnings

    def to_dict(self) -> dict[str, object]:
        return {
            "thread_id": self.thread_id,
            "record_found": self.record_found,
            "succeeded": list(self.succeeded),
            "warnings": [{"step": w.step, "message": w.message} for w in self.warnings],
            "skipped": list(self.skipped),
            "registry_removed": self.registry_removed,
            "cancelled": self.cancelled,
        }


class TeardownOrchestrator:
    def __init__(
        self,
        settings: ThreadSettings,
        store: RegistryStore,
        allocator: IdentityAllocator,
        provider: ExternalResourceProvider,
    ) -> None:
        self.settings = settings
        self.store = store
        self.allocator = allocator
        self.provider = provider

    def teardown(
        self,
        thread_id: int,
        *,
        force: bool = False,
        confirm: ConfirmCallback | None = None,
    ) -> TeardownReport:
        """Reclaim every resource of ``thread_id`` and free its slot.

        ``confirm`` is consulted unless ``force`` is set; a negative answer cancels
        before anything is touched.

        Raises:
            LockTimeout: The registry record could not be removed.
        """
        record = self.store.get(thread_id)
        report = TeardownReport(thread_id=thread_id, record_found=record is not None)
        if not force and confirm is not None and not confirm(record):
            report.cancelled = True
            logger.info("teardown of thread %s cancelled", thread_id)
            return report

        layout = ThreadLayout.for_thread(self.settings.worktrees_dir, thread_id)
        thread_dir = Path(record.worktree_path) if record else layout.thread_dir
        steps = [
            Step(STEP_CONTAINERS, lambda: self._stop_containers(thread_id, thread_dir), policy="warn"),
            Step(STEP_VOLUMES, lambda: self._remove_volumes(thread_id), policy="warn"),
            Step(STEP_NETWORK, lambda: self._remove_network(thread_id), policy="warn"),
            Step(STEP_WORKTREES, lambda: self._remove_worktrees(thread_dir), policy="warn"),
            Step(
                STEP_BRANCHES,
                lambda: self._delete_branches(record.branch if record else ""),
                policy="warn",
                enabled=record is not None,
            ),
            Step(STEP_THREAD_DIR, lambda: self._remove_thread_dir(thread_dir), policy="warn"),
            Step(STEP_REGISTRY, lambda: self._release(thread_id, report), policy="fatal"),
        ]
        outcome = TransactionRunner(steps, label=f"teardown thread {thread_id}").run()
        report.succeeded = outcome.succeeded
        report.skipped = outcome.skipped
        report.warnings = [TeardownWarning(w.name, w.detail) for w in outcome.warnings]
        if outcome.error is not None:
            logger.error(
                "thread %s: registry record not removed; resources reclaimed so far: %s",
                thread_id,
                ", ".join(report.succeeded) or "none",
            )
            raise outcome.error
        return report

    def _stop_containers(self, thread_id: int, thread_dir: Path) -> None:
        project = compose_project_name(self.settings.project_name, thread_id)
        compose_file = thread_dir / ".devcontainer" / "docker-compose.yml"
        running = self.provider.list_containers(
            container_prefix(self.settings.project_name, thread_id)
        )
        if not running and not compose_file.exists():
            logger.debug("no containers for %s", project)
            return
        self.provider.stop_containers(project, compose_file)

    def _remove_volumes(self, thread_id: int) -> None:
        failures: list[str] = []
        for volume in self.settings.volumes:
            name = resource_name(self.settings.project_name, thread_id, volume)
            try:
                if self.provider.volume_exists(name):
                    self.provider.remove_volume(name)
                    logger.info("removed volume %s", name)
            except ExternalCommandError as exc:
                failures.append(f"{name}: {exc}")
        if failures:
            raise TeardownWarning(STEP_VOLUMES, "; ".join(failures))

    def _remove_network(self, thread_id: int) -> None:
        name = resource_name(self.settings.project_name, thread_id, "network")
        if self.provider.network_exists(name):
            self.provider.remove_network(name)
            logger.info("removed network %s", name)

    def _remove_worktrees(self, thread_dir: Path) -> None:
        failures: list[str] = []
        for spec in self.settings.repos():
            path = thread_dir / spec.name
            try:
                self._remove_worktree(spec.path, path)
            except (ExternalCommandError, OSError) as exc:
                failures.append(f"{spec.name}: {exc}")
        if failures:
            raise TeardownWarning(STEP_WORKTREES, "; ".join(failures))

    def _remove_worktree(self, repo: Path, path: Path) -> None:
        """Graceful removal, then clean + retry, then delete the directory and prune."""

        if not path.exists():
            self.provider.prune_worktrees(repo)
            return
        try:
            self.provider.remove_worktree(repo, path)
            return
        except ExternalCommandError as exc:
            logger.warning("worktree remove failed for %s, cleaning and retrying: %s", path, exc)
        try:
            self.provider.clean_worktree(path)
            self.provider.remove_worktree(repo, path)
            return
        except ExternalCommandError as exc:
            logger.warning("retry failed for %s, deleting directory: %s", path, exc)
        shutil.rmtree(path)
        self.provider.prune_worktrees(repo)

    def _delete_branches(self, branch: str) -> None:
        failures: list[str] = []
        for spec in self.settings.repos():
            try:
                if self.provider.ref_exists(spec.path, branch):
                    self.provider.delete_branch(spec.path, branch)
                    logger.info("deleted branch %s in %s", branch, spec.name)
                if self.provider.remote_branch_exists(spec.path, branch):
                    self.provider.delete_remote_branch(spec.path, branch)
                    logger.info("deleted remote branch %s in %s", branch, spec.name)
            except ExternalCommandError as exc:
                failures.append(f"{spec.name}: {exc}")
        if failures:
            raise TeardownWarning(STEP_BRANCHES, "; ".join(failures))

    def _remove_thread_dir(self, thread_dir: Path) -> None:
        if thread_dir.exists():
            shutil.rmtree(thread_dir)

    def _release(self, thread_id: int, report: TeardownReport) -> None:
        report.registry_removed = self.allocator.release(thread_id)
