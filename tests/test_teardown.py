from __future__ import annotations

from pathlib import Path

import pytest

from iso_threads.errors import LockTimeout


@pytest.fixture
def provisioned(settings_factory, repo_dir, tmp_path: Path, make_service):
    templates = tmp_path / "templates"
    templates.mkdir()
    (templates / "docker-compose.yml").write_text("name: thread-{{THREAD_ID}}\n", encoding="utf-8")
    settings = settings_factory(frontend_repo=repo_dir("frontend"), template_dir=templates)
    service, provider = make_service(settings)
    record = service.provision("login").record
    provider.remote_branches[settings.backend_repo] = {record.branch}
    return settings, service, provider, record


def test_teardown_reclaims_everything_and_frees_the_id(provisioned) -> None:
    settings, service, provider, record = provisioned

    report = service.teardown(record.id, force=True)

    assert report.record_found
    assert report.registry_removed
    assert report.warnings == []
    assert report.succeeded == [
        "containers",
        "volumes",
        "network",
        "worktrees",
        "branches",
        "thread_dir",
        "registry",
    ]
    assert service.store.load() == []
    assert provider.containers == {}
    assert provider.volumes == set()
    assert provider.networks == set()
    assert provider.worktrees == {}
    for spec in settings.repos():
        assert provider.branches[spec.path] == {"main"}
    assert provider.remote_branches[settings.backend_repo] == set()
    assert not Path(record.worktree_path).exists()


def test_teardown_twice_is_a_no_op(provisioned) -> None:
    _settings, service, provider, record = provisioned
    service.teardown(record.id, force=True)
    calls_before = len(provider.calls)

    second = service.teardown(record.id, force=True)

    assert second.warnings == []
    assert not second.record_found
    assert not second.registry_removed
    assert second.skipped == ["branches"]
    destructive = {"stop_containers", "remove_volume", "remove_network", "remove_worktree"}
    assert not any(call[0] in destructive for call in provider.calls[calls_before:])


def test_worktree_removal_falls_back_to_directory_delete(provisioned) -> None:
    settings, service, provider, record = provisioned
    provider.fail_on("remove_worktree", times=None)

    report = service.teardown(record.id, force=True)

    assert report.warnings == []
    operations = [call[0] for call in provider.calls]
    assert "clean_worktree" in operations
    assert "prune_worktrees" in operations
    assert provider.worktrees == {}
    assert not (Path(record.worktree_path) / "backend").exists()


def test_failed_step_warns_and_remaining_steps_still_run(provisioned) -> None:
    _settings, service, provider, record = provisioned
    provider.fail_on("stop_containers", times=None)
    provider.fail_on("remove_volume", times=None)

    report = service.teardown(record.id, force=True)

    assert [warning.step for warning in report.warnings] == ["containers", "volumes"]
    assert "worktrees" in report.succeeded
    assert report.registry_removed
    assert service.store.load() == []


def test_confirmation_can_cancel_and_force_skips_it(provisioned) -> None:
    _settings, service, provider, record = provisioned
    seen = []

    def decline(current):
        seen.append(current)
        return False

    cancelled = service.teardown(record.id, confirm=decline)

    assert cancelled.cancelled
    assert seen == [record]
    assert service.store.get(record.id) == record

    def must_not_ask(current):
        raise AssertionError("confirmation requested despite force")

    assert service.teardown(record.id, force=True, confirm=must_not_ask).registry_removed


def test_registry_failure_is_fatal(provisioned, monkeypatch: pytest.MonkeyPatch) -> None:
    _settings, service, _provider, record = provisioned

    def blocked(thread_id: int) -> bool:
        raise LockTimeout("registry.lock", 0.1)

    monkeypatch.setattr(service.allocator, "release", blocked)

    with pytest.raises(LockTimeout):
        service.teardown(record.id, force=True)


def test_unregistered_thread_resources_are_reconciled(settings_factory, make_service) -> None:
    settings = settings_factory()
    service, provider = make_service(settings)
    compose = settings.worktrees_dir / "thread-3" / ".devcontainer" / "docker-compose.yml"
    provider.start_containers("seer-thread-3", compose)
    (settings.worktrees_dir / "thread-3" / "backend").mkdir(parents=True)

    report = service.teardown(3, force=True)

    assert not report.record_found
    assert report.warnings == []
    assert provider.containers == {}
    assert provider.networks == set()
    assert not (settings.worktrees_dir / "thread-3").exists()
