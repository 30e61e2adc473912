"""Entry point wiring settings, registry, provider and orchestrators together."""

from __future__ import annotations

from iso_threads.control_plane.allocator import IdentityAllocator, ReapedThread
from iso_threads.control_plane.orchestration.health import HealthWaiter
from iso_threads.control_plane.orchestration.provisioning import (
    ProvisioningOrchestrator,
    ProvisionResult,
)
from iso_threads.control_plane.orchestration.teardown import (
    ConfirmCallback,
    TeardownOrchestrator,
    TeardownReport,
)
from iso_threads.control_plane.providers import ExternalResourceProvider, build_provider_from_env
from iso_threads.control_plane.registry.migration import MigrationReport, RegistryMigrator
from iso_threads.control_plane.registry.records import ThreadRecord
from iso_threads.control_plane.registry.store import RegistryStore, build_registry_store
from iso_threads.control_plane.status import StatusQueryService, ThreadStatus
from iso_threads.shared.settings import ThreadSettings


class ThreadService:
    """Every thread operation, each taking its inputs explicitly."""

    def __init__(
        self,
        settings: ThreadSettings,
        *,
        store: RegistryStore | None = None,
        provider: ExternalResourceProvider | None = None,
        health: HealthWaiter | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or build_registry_store(settings)
        self.provider = provider or build_provider_from_env(
            {"ISO_RESOURCE_PROVIDER": settings.resource_provider}
        )
        self.allocator = IdentityAllocator(self.store, settings, self.provider)
        self.provisioning = ProvisioningOrchestrator(
            settings, self.allocator, self.provider, health=health
        )
        self.teardown_orchestrator = TeardownOrchestrator(
            settings, self.store, self.allocator, self.provider
        )
        self.status = StatusQueryService(settings, self.store, self.provider)
        self.migrator = RegistryMigrator(settings, self.store, self.provider)

    def allocate(self, feature_name: str = "", branch_hint: str | None = None) -> ThreadRecord:
        return self.allocator.allocate(feature_name, branch_hint)

    def update_status(self, thread_id: int, status: str) -> ThreadRecord:
        return self.allocator.update_status(thread_id, status)

    def remove(self, thread_id: int) -> bool:
        return self.allocator.release(thread_id)

    def get_info(self, thread_id: int) -> ThreadStatus:
        return self.status.get_info(thread_id)

    def list_threads(self) -> list[ThreadStatus]:
        return self.status.list_threads()

    def provision(
        self, feature_name: str, base_branch: str = "main", branch_hint: str | None = None
    ) -> ProvisionResult:
        return self.provisioning.provision(feature_name, base_branch, branch_hint)

    def teardown(
        self,
        thread_id: int,
        *,
        force: bool = False,
        confirm: ConfirmCallback | None = None,
    ) -> TeardownReport:
        return self.teardown_orchestrator.teardown(thread_id, force=force, confirm=confirm)

    def migrate(self, *, reconfigure: bool = True) -> MigrationReport:
        return self.migrator.migrate(reconfigure=reconfigure)

    def reap_orphans(self, older_than_s: float) -> list[ReapedThread]:
        return self.allocator.reap_orphans(older_than_s)
