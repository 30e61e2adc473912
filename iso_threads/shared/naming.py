"""Resource naming and on-disk layout derived from a thread id."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

_NON_SLUG = re.compile(r"[^a-z0-9-]")
_DASH_RUN = re.compile(r"-+")


def slugify(feature_name: str) -> str:
    slug = _NON_SLUG.sub("-", feature_name.lower())
    return _DASH_RUN.sub("-", slug).strip("-")


def thread_branch_name(thread_id: int, slug: str) -> str:
    return f"thread-{thread_id}-{slug}"


def compose_project_name(project: str, thread_id: int) -> str:
    return f"{project}-thread-{thread_id}"


def resource_name(project: str, thread_id: int, resource: str) -> str:
    """``{project}-thread-{id}-{resource}``; status and teardown discover resources by it."""

    return f"{compose_project_name(project, thread_id)}-{resource}"


def container_prefix(project: str, thread_id: int) -> str:
    return f"{compose_project_name(project, thread_id)}-"


@dataclass(frozen=True)
class ThreadLayout:
    thread_id: int
    thread_dir: Path

    @classmethod
    def for_thread(cls, worktrees_dir: Path, thread_id: int) -> "ThreadLayout":
        return cls(thread_id=thread_id, thread_dir=worktrees_dir / f"thread-{thread_id}")

    def worktree(self, repo_name: str) -> Path:
        return self.thread_dir / repo_name

    @property
    def devcontainer_dir(self) -> Path:
        return self.thread_dir / ".devcontainer"

    @property
    def compose_file(self) -> Path:
        return self.devcontainer_dir / "docker-compose.yml"
