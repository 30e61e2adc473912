from __future__ import annotations

import pytest

from iso_threads.control_plane.providers import parse_container_status
from iso_threads.errors import NotFound


@pytest.mark.parametrize(
    ("status_text", "state", "health", "running"),
    [
        ("Up 3 minutes (healthy)", "running", "healthy", True),
        ("Up 10 seconds (health: starting)", "running", "starting", True),
        ("Up 2 hours", "running", "unknown", True),
        ("Exited (1) 2 hours ago", "exited", "unknown", False),
        ("Created", "created", "unknown", False),
    ],
)
def test_parse_container_status(status_text: str, state: str, health: str, running: bool) -> None:
    parsed = parse_container_status("seer-thread-1-app", status_text)

    assert (parsed.state, parsed.health, parsed.running) == (state, health, running)


def test_list_enriches_records_with_container_counts(
    settings_factory, repo_dir, tmp_path, make_service
) -> None:
    templates = tmp_path / "templates"
    templates.mkdir()
    (templates / "docker-compose.yml").write_text("services: {}\n", encoding="utf-8")
    settings = settings_factory(frontend_repo=repo_dir("frontend"), template_dir=templates)
    service, provider = make_service(settings)
    service.provision("one")
    service.allocate("two")

    statuses = service.list_threads()

    assert [status.record.id for status in statuses] == [1, 2]
    first, second = statuses
    assert first.containers.known
    assert (first.containers.running, first.containers.total) == (3, 3)
    assert first.worktree_exists
    assert first.repos == {"backend": True, "frontend": True}
    assert (second.containers.running, second.containers.total) == (0, 0)
    assert not second.worktree_exists

    payload = first.to_dict()
    assert payload["id"] == 1
    assert payload["containers"]["running"] == 3
    assert payload["containers"]["items"][0]["name"] == "seer-thread-1-app"


def test_unreachable_runtime_degrades_to_unknown(settings_factory, make_service) -> None:
    service, provider = make_service(settings_factory())
    service.allocate("offline")
    provider.runtime_reachable = False

    info = service.get_info(1)

    assert info.record.id == 1
    assert not info.containers.known
    assert info.containers.total == 0
    assert "cannot connect" in info.containers.error


def test_get_info_for_absent_id(settings_factory, make_service) -> None:
    service, _provider = make_service(settings_factory())

    with pytest.raises(NotFound) as exc_info:
        service.get_info(4)

    assert exc_info.value.thread_id == 4
