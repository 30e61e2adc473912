from __future__ import annotations

import os
from pathlib import Path

from iso_threads.control_plane.orchestration.config_writer import (
    read_env_values,
    render_devcontainer,
    render_template_text,
    template_values,
    update_env_values,
    write_repo_env,
)
from iso_threads.control_plane.registry.records import ThreadRecord
from iso_threads.shared.settings import RepoSpec

RECORD = ThreadRecord(
    id=2,
    branch="thread-2-login",
    backend_port=3002,
    frontend_port=4002,
    worktree_path="/w/thread-2",
    created_at="2024-03-01T10:00:00Z",
    status="initializing",
)


def test_backend_env_copies_only_allowlisted_secrets(tmp_path: Path) -> None:
    parent = tmp_path / "backend"
    worktree = tmp_path / "wt"
    parent.mkdir()
    worktree.mkdir()
    (parent / ".env").write_text(
        "OPENAI_API_KEY=sk-test\nDB_PASSWORD=hunter2\n# GITHUB_TOKEN=commented\nSENTRY_DSN=https://dsn\n",
        encoding="utf-8",
    )

    written = write_repo_env(
        RepoSpec("backend", parent, env_style="thread"),
        worktree,
        RECORD,
        ("OPENAI_API_KEY", "GITHUB_TOKEN", "SENTRY_DSN"),
    )

    assert written.name == ".env.thread"
    values = read_env_values(written)
    assert values["THREAD_ID"] == "2"
    assert values["THREAD_BRANCH"] == "thread-2-login"
    assert values["BACKEND_PORT"] == "3002"
    assert values["OPENAI_API_KEY"] == "sk-test"
    assert values["SENTRY_DSN"] == "https://dsn"
    assert "DB_PASSWORD" not in values
    assert "GITHUB_TOKEN" not in values


def test_frontend_env_inherits_parent_and_appends_ports(tmp_path: Path) -> None:
    parent = tmp_path / "frontend"
    worktree = tmp_path / "wt"
    parent.mkdir()
    worktree.mkdir()
    (parent / ".env").write_text("VITE_SENTRY=on", encoding="utf-8")

    written = write_repo_env(RepoSpec("frontend", parent), worktree, RECORD, ())

    values = read_env_values(written)
    assert values["VITE_SENTRY"] == "on"
    assert values["VITE_DEV_PORT"] == "4002"
    assert values["VITE_BACKEND_API_URL"] == "http://localhost:3002"


def test_aux_env_falls_back_to_example_file(tmp_path: Path) -> None:
    parent = tmp_path / "website"
    worktree = tmp_path / "wt"
    parent.mkdir()
    worktree.mkdir()
    (parent / "env.example").write_text("SITE_URL=http://example\n", encoding="utf-8")

    values = read_env_values(write_repo_env(RepoSpec("website", parent), worktree, RECORD, ()))

    assert values == {"SITE_URL": "http://example", "THREAD_ID": "2"}


def test_render_devcontainer_substitutes_and_marks_scripts_executable(tmp_path: Path) -> None:
    templates = tmp_path / "templates"
    templates.mkdir()
    (templates / "docker-compose.yml").write_text(
        "name: {{PROJECT}}-thread-{{THREAD_ID}}\nports: ['{{BACKEND_PORT}}:8000', '{{FRONTEND_PORT}}:5173']\n",
        encoding="utf-8",
    )
    (templates / "post-create.sh").write_text("echo {{THREAD_ID}} {{UNKNOWN}}\n", encoding="utf-8")
    target = tmp_path / "thread-2" / ".devcontainer"

    written = render_devcontainer(templates, target, template_values(RECORD, "seer"))

    assert sorted(path.name for path in written) == ["docker-compose.yml", "post-create.sh"]
    compose = (target / "docker-compose.yml").read_text(encoding="utf-8")
    assert "name: seer-thread-2" in compose
    assert "'3002:8000', '4002:5173'" in compose
    script = target / "post-create.sh"
    assert script.read_text(encoding="utf-8") == "echo 2 {{UNKNOWN}}\n"
    assert os.access(script, os.X_OK)


def test_render_template_text_leaves_unknown_placeholders() -> None:
    assert render_template_text("{{A}}-{{B}}", {"A": "1"}) == "1-{{B}}"


def test_update_env_values_rewrites_drops_and_appends(tmp_path: Path) -> None:
    env = tmp_path / ".env.thread"
    env.write_text(
        "# header\nTHREAD_ID=1\nAPI_PORT=10102\nWORKER_DEBUG_PORT=10103\nREDIS_URL=redis://localhost:10101\n",
        encoding="utf-8",
    )

    assert update_env_values(
        env,
        {"REDIS_URL": "redis://redis:6379/0", "BACKEND_PORT": "3001"},
        ("API_PORT", "WORKER_DEBUG_PORT"),
        append_missing=True,
    )

    assert env.read_text(encoding="utf-8") == (
        "# header\nTHREAD_ID=1\nREDIS_URL=redis://redis:6379/0\nBACKEND_PORT=3001\n"
    )
    assert update_env_values(tmp_path / "absent", {"A": "1"}) is False
