from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from iso_threads.control_plane.orchestration.health import HealthWaiter
from iso_threads.control_plane.providers.inmemory import InMemoryResourceProvider
from iso_threads.control_plane.service import ThreadService
from iso_threads.shared.settings import ThreadSettings

SettingsFactory = Callable[..., ThreadSettings]


@pytest.fixture
def settings_factory(tmp_path: Path) -> SettingsFactory:
    def build(**overrides: Any) -> ThreadSettings:
        backend = tmp_path / "repos" / "backend"
        backend.mkdir(parents=True, exist_ok=True)
        values: dict[str, Any] = {
            "backend_repo": backend,
            "root_dir": tmp_path / "iso",
            "max_threads": 3,
            "lock_timeout_s": 5.0,
            "health_timeout_s": 0.0,
            "health_poll_interval_s": 0.0,
        }
        values.update(overrides)
        settings = ThreadSettings(**values)
        settings.worktrees_dir.mkdir(parents=True, exist_ok=True)
        return settings

    return build


@pytest.fixture
def repo_dir(tmp_path: Path) -> Callable[[str], Path]:
    def make(name: str) -> Path:
        path = tmp_path / "repos" / name
        path.mkdir(parents=True, exist_ok=True)
        return path

    return make


def fake_provider_for(settings: ThreadSettings, **kwargs: Any) -> InMemoryResourceProvider:
    provider = InMemoryResourceProvider(**kwargs)
    for spec in settings.repos():
        provider.add_repo(spec.path, ("main",))
    return provider


def service_for(settings: ThreadSettings, provider: InMemoryResourceProvider) -> ThreadService:
    health = HealthWaiter(provider, timeout_s=0.0, poll_interval_s=0.0, sleep=lambda _s: None)
    return ThreadService(settings, provider=provider, health=health)


@pytest.fixture
def make_service() -> Callable[..., tuple[ThreadService, InMemoryResourceProvider]]:
    def build(
        settings: ThreadSettings, **provider_kwargs: Any
    ) -> tuple[ThreadService, InMemoryResourceProvider]:
        provider = fake_provider_for(settings, **provider_kwargs)
        return service_for(settings, provider), provider

    return build
