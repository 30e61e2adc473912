"""Read-only view of threads: registry records enriched with live runtime state."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path

from iso_threads.control_plane.providers import ContainerState, ExternalResourceProvider
from iso_threads.control_plane.registry.records import ThreadRecord
from iso_threads.control_plane.registry.store import RegistryStore
from iso_threads.errors import ExternalCommandError, NotFound
from iso_threads.shared.naming import container_prefix
from iso_threads.shared.settings import ThreadSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContainerSummary:
    """Runtime view of one thread's containers; ``known`` is False when the runtime was unreachable."""

    known: bool
    total: int = 0
    running: int = 0
    containers: tuple[ContainerState, ...] = ()
    error: str = ""


@dataclass(frozen=True)
class ThreadStatus:
    record: ThreadRecord
    containers: ContainerSummary
    worktree_exists: bool
    repos: dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            **self.record.model_dump(mode="json"),
            "worktree_exists": self.worktree_exists,
            "repos": dict(self.repos),
            "containers": {
                "known": self.containers.known,
                "total": self.containers.total,
                "running": self.containers.running,
                "items": [asdict(state) for state in self.containers.containers],
                "error": self.containers.error,
            },
        }


class StatusQueryService:
    """Never takes the registry gate; reads may trail a concurrent writer by one rewrite."""

    def __init__(
        self,
        settings: ThreadSettings,
        store: RegistryStore,
        provider: ExternalResourceProvider,
    ) -> None:
        self.settings = settings
        self.store = store
        self.provider = provider

    def list_threads(self) -> list[ThreadStatus]:
        return [self._enrich(record) for record in self.store.load()]

    def get_info(self, thread_id: int) -> ThreadStatus:
        record = self.store.get(thread_id)
        if record is None:
            raise NotFound(thread_id)
        return self._enrich(record)

    def _enrich(self, record: ThreadRecord) -> ThreadStatus:
        thread_dir = Path(record.worktree_path)
        return ThreadStatus(
            record=record,
            containers=self._containers(record.id),
            worktree_exists=thread_dir.is_dir(),
            repos={spec.name: (thread_dir / spec.name).is_dir() for spec in self.settings.repos()},
        )

    def _containers(self, thread_id: int) -> ContainerSummary:
        prefix = container_prefix(self.settings.project_name, thread_id)
        try:
            states = self.provider.list_containers(prefix)
        except ExternalCommandError as exc:
            logger.warning("container runtime unavailable for thread %s: %s", thread_id, exc)
            return ContainerSummary(known=False, error=str(exc))
        return ContainerSummary(
            known=True,
            total=len(states),
            running=sum(1 for state in states if state.running),
            containers=tuple(states),
        )
