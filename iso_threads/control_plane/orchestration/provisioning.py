"""Provisioning orchestrator: allocated id -> worktrees -> config -> containers -> ready.

Every forward step carries a compensating action. A failure after allocation undoes
the completed steps in reverse order and releases the id last, then surfaces a
``ProvisioningError`` naming the failing step.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import asdict, dataclass, field
from pathlib import Path

from iso_threads.control_plane.allocator import IdentityAllocator
from iso_threads.control_plane.orchestration.config_writer import (
    render_devcontainer,
    template_values,
    write_repo_env,
)
from iso_threads.control_plane.orchestration.health import HealthWaiter
from iso_threads.control_plane.orchestration.transaction import (
    Step,
    TransactionReport,
    TransactionRunner,
)
from iso_threads.control_plane.providers import ExternalResourceProvider
from iso_threads.control_plane.registry.records import STATUS_READY, ThreadRecord
from iso_threads.errors import ExternalCommandError, ProvisioningError, TeardownWarning
from iso_threads.shared.naming import (
    ThreadLayout,
    compose_project_name,
    resource_name,
    slugify,
)
from iso_threads.shared.settings import RepoSpec, ThreadSettings

logger = logging.getLogger(__name__)

STEP_PREFLIGHT = "preflight"
STEP_ALLOCATE = "allocate"
STEP_WORKTREES = "worktrees"
STEP_CONFIG = "config"
STEP_CONTAINERS = "containers"
STEP_HEALTH = "health"
STEP_MIGRATIONS = "migrations"
STEP_READY = "ready"


@dataclass
class ProvisionResult:
    record: ThreadRecord
    layout: ThreadLayout
    report: TransactionReport
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "thread": self.record.model_dump(mode="json"),
            "workspace": str(self.layout.thread_dir),
            "steps": [asdict(outcome) for outcome in self.report.outcomes],
            "warnings": list(self.warnings),
        }


@dataclass
class _Run:
    """Mutable state shared by the step closures of one provisioning run."""

    feature_name: str
    base_branch: str
    branch_hint: str | None
    record: ThreadRecord | None = None
    layout: ThreadLayout | None = None
    worktrees: list[tuple[RepoSpec, Path]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def allocated(self) -> tuple[ThreadRecord, ThreadLayout]:
        if self.record is None or self.layout is None:
            raise ProvisioningError(STEP_ALLOCATE, "no thread id has been allocated")
        return self.record, self.layout


class ProvisioningOrchestrator:
    def __init__(
        self,
        settings: ThreadSettings,
        allocator: IdentityAllocator,
        provider: ExternalResourceProvider,
        health: HealthWaiter | None = None,
    ) -> None:
        self.settings = settings
        self.allocator = allocator
        self.provider = provider
        self.health = health or HealthWaiter(
            provider,
            timeout_s=settings.health_timeout_s,
            poll_interval_s=settings.health_poll_interval_s,
        )

    @property
    def containers_enabled(self) -> bool:
        return self.settings.template_dir is not None

    def preflight(self, feature_name: str, base_branch: str, branch_hint: str | None = None) -> None:
        """Checks that run before any id is allocated; nothing to roll back on failure."""

        if not slugify(feature_name) and not branch_hint:
            raise ProvisioningError(
                STEP_PREFLIGHT, f"feature name {feature_name!r} has no usable characters"
            )
        for spec in self.settings.repos():
            if not spec.path.is_dir():
                raise ProvisioningError(
                    STEP_PREFLIGHT, f"{spec.name} repository does not exist: {spec.path}"
                )
            if not self.provider.ref_exists(spec.path, base_branch):
                raise ProvisioningError(
                    STEP_PREFLIGHT,
                    f"base branch {base_branch!r} not found in {spec.name} repository {spec.path}",
                )

    def provision(
        self,
        feature_name: str,
        base_branch: str = "main",
        branch_hint: str | None = None,
    ) -> ProvisionResult:
        """Bring a new thread to ``ready``.

        Raises:
            PoolExhausted, PortUnavailable, BranchInUse, LockTimeout: Allocation failed;
                nothing was created.
            ProvisioningError: A later step failed; all completed steps were rolled back
                and the id released before this is raised.
        """
        self.preflight(feature_name, base_branch, branch_hint)
        run = _Run(feature_name=feature_name, base_branch=base_branch, branch_hint=branch_hint)
        report = TransactionRunner(self._steps(run), label="provision").run()

        if not report.ok:
            if report.failed_step == STEP_ALLOCATE and report.error is not None:
                raise report.error
            thread_id = run.record.id if run.record else None
            raise ProvisioningError(
                report.failed_step or "unknown",
                str(report.error),
                thread_id=thread_id,
                rollback_warnings=report.rollback_warnings,
            ) from report.error

        record, layout = run.allocated()
        for outcome in report.warnings:
            run.warnings.append(f"{outcome.name}: {outcome.detail}")
        logger.info("thread %s ready at %s", record.id, layout.thread_dir)
        return ProvisionResult(record=record, layout=layout, report=report, warnings=run.warnings)

    def _steps(self, run: _Run) -> list[Step]:
        return [
            Step(STEP_ALLOCATE, lambda: self._allocate(run), lambda: self._release(run)),
            Step(
                STEP_WORKTREES,
                lambda: self._create_worktrees(run),
                lambda: self._remove_worktrees(run),
            ),
            Step(STEP_CONFIG, lambda: self._write_config(run)),
            Step(
                STEP_CONTAINERS,
                lambda: self._start_containers(run),
                lambda: self._stop_containers(run),
                enabled=self.containers_enabled,
            ),
            Step(
                STEP_HEALTH,
                lambda: self._wait_healthy(run),
                policy="warn",
                enabled=self.containers_enabled,
            ),
            Step(
                STEP_MIGRATIONS,
                lambda: self._run_migrations(run),
                enabled=self.containers_enabled and bool(self.settings.migration_command),
            ),
            Step(STEP_READY, lambda: self._mark_ready(run)),
        ]

    def _allocate(self, run: _Run) -> None:
        run.record = self.allocator.allocate(run.feature_name, run.branch_hint)
        run.layout = ThreadLayout.for_thread(self.settings.worktrees_dir, run.record.id)

    def _release(self, run: _Run) -> None:
        if run.record is not None:
            self.allocator.release(run.record.id)

    def _create_worktrees(self, run: _Run) -> None:
        record, layout = run.allocated()
        layout.thread_dir.mkdir(parents=True, exist_ok=True)
        for spec in self.settings.repos():
            path = layout.worktree(spec.name)
            self.provider.create_worktree(spec.path, path, record.branch, run.base_branch)
            run.worktrees.append((spec, path))
            logger.info("created %s worktree %s", spec.name, path)

    def _remove_worktrees(self, run: _Run) -> None:
        if run.record is None or run.layout is None:
            return
        failures: list[str] = []
        for spec, path in reversed(run.worktrees):
            try:
                self.provider.remove_worktree(spec.path, path)
            except ExternalCommandError as exc:
                logger.warning("forced removal of %s failed, deleting directory: %s", path, exc)
                shutil.rmtree(path, ignore_errors=True)
                try:
                    self.provider.prune_worktrees(spec.path)
                except ExternalCommandError as prune_exc:
                    failures.append(f"{spec.name} worktree: {prune_exc}")
            try:
                self.provider.delete_branch(spec.path, run.record.branch)
            except ExternalCommandError as exc:
                failures.append(f"{spec.name} branch: {exc}")
        run.worktrees.clear()
        shutil.rmtree(run.layout.thread_dir, ignore_errors=True)
        if failures:
            raise TeardownWarning(STEP_WORKTREES, "; ".join(failures))

    def _write_config(self, run: _Run) -> None:
        record, layout = run.allocated()
        for spec in self.settings.repos():
            write_repo_env(spec, layout.worktree(spec.name), record, self.settings.secret_allowlist)
        if self.settings.template_dir is not None:
            render_devcontainer(
                self.settings.template_dir,
                layout.devcontainer_dir,
                template_values(record, self.settings.project_name),
            )

    def _start_containers(self, run: _Run) -> None:
        record, layout = run.allocated()
        self.provider.start_containers(
            compose_project_name(self.settings.project_name, record.id), layout.compose_file
        )

    def _stop_containers(self, run: _Run) -> None:
        record, layout = run.allocated()
        project = self.settings.project_name
        self.provider.stop_containers(compose_project_name(project, record.id), layout.compose_file)
        for volume in self.settings.volumes:
            name = resource_name(project, record.id, volume)
            if self.provider.volume_exists(name):
                self.provider.remove_volume(name)
        network = resource_name(project, record.id, "network")
        if self.provider.network_exists(network):
            self.provider.remove_network(network)

    def _wait_healthy(self, run: _Run) -> None:
        record, _layout = run.allocated()
        names = [
            resource_name(self.settings.project_name, record.id, service)
            for service in self.settings.health_services
        ]
        report = self.health.wait_for_containers(names)
        if report.timed_out:
            run.warnings.append(f"services may not be ready ({report.summary()})")
        if self.settings.app_health_url:
            url = self.settings.app_health_url.format(
                thread_id=record.id,
                backend_port=record.backend_port,
                frontend_port=record.frontend_port,
            )
            if not self.health.wait_for_http(url):
                run.warnings.append(f"application did not answer at {url}")

    def _run_migrations(self, run: _Run) -> None:
        record, _layout = run.allocated()
        container = resource_name(
            self.settings.project_name, record.id, self.settings.migration_service
        )
        self.provider.exec_in_container(container, self.settings.migration_command)
        logger.info("ran migrations in %s", container)

    def _mark_ready(self, run: _Run) -> None:
        record, _layout = run.allocated()
        run.record = self.allocator.update_status(record.id, STATUS_READY)
