"""In-memory resource provider for deterministic orchestrator tests."""

from __future__ import annotations

import shutil
from pathlib import Path

from iso_threads.control_plane.providers import ContainerState
from iso_threads.errors import ExternalCommandError


class InMemoryResourceProvider:
    """Fake git + container runtime.

    Worktree directories are created on disk so config rendering has somewhere to
    write; everything else is bookkeeping. ``fail_on(operation, times)`` makes the
    next ``times`` calls of ``operation`` raise ``ExternalCommandError``
    (``times=None`` fails forever).
    """

    name = "in_memory"

    def __init__(
        self,
        *,
        services: tuple[str, ...] = ("app", "postgres", "redis"),
        volumes: tuple[str, ...] = ("postgres_data", "redis_data"),
        initial_health: str = "healthy",
    ) -> None:
        self.services = services
        self.volume_names = volumes
        self.initial_health = initial_health
        self.calls: list[tuple[str, ...]] = []
        self.branches: dict[Path, set[str]] = {}
        self.remote_branches: dict[Path, set[str]] = {}
        self.worktrees: dict[Path, tuple[Path, str]] = {}
        self.containers: dict[str, ContainerState] = {}
        self.volumes: set[str] = set()
        self.networks: set[str] = set()
        self.busy_ports: set[int] = set()
        self.exec_log: list[tuple[str, str]] = []
        self.runtime_reachable = True
        self._failures: dict[str, int | None] = {}

    def add_repo(self, repo: Path, branches: tuple[str, ...] = ("main",)) -> None:
        self.branches.setdefault(Path(repo), set()).update(branches)

    def fail_on(self, operation: str, times: int | None = 1) -> None:
        self._failures[operation] = times

    def set_health(self, name: str, health: str) -> None:
        state = self.containers[name]
        self.containers[name] = ContainerState(name=name, state=state.state, health=health)

    def _record(self, operation: str, *args: object) -> None:
        self.calls.append((operation, *(str(arg) for arg in args)))
        if operation not in self._failures:
            return
        remaining = self._failures[operation]
        if remaining is not None:
            if remaining <= 1:
                del self._failures[operation]
            else:
                self._failures[operation] = remaining - 1
        raise ExternalCommandError(
            ["fake", operation, *(str(arg) for arg in args)], 1, "injected failure"
        )

    def _require_runtime(self, operation: str) -> None:
        if not self.runtime_reachable:
            raise ExternalCommandError(["fake", operation], 1, "cannot connect to runtime")

    def ref_exists(self, repo: Path, ref: str) -> bool:
        self._record("ref_exists", repo, ref)
        return ref in self.branches.get(Path(repo), set())

    def create_worktree(self, repo: Path, path: Path, branch: str, base: str) -> None:
        self._record("create_worktree", repo, path, branch, base)
        known = self.branches.setdefault(Path(repo), set())
        if base not in known:
            raise ExternalCommandError(["fake", "worktree", "add"], 128, f"invalid reference: {base}")
        if branch in known:
            raise ExternalCommandError(
                ["fake", "worktree", "add"], 128, f"a branch named '{branch}' already exists"
            )
        if path in self.worktrees:
            raise ExternalCommandError(["fake", "worktree", "add"], 128, f"'{path}' already exists")
        known.add(branch)
        path.mkdir(parents=True, exist_ok=True)
        self.worktrees[path] = (Path(repo), branch)

    def remove_worktree(self, repo: Path, path: Path) -> None:
        self._record("remove_worktree", repo, path)
        if path not in self.worktrees:
            raise ExternalCommandError(
                ["fake", "worktree", "remove"], 128, f"'{path}' is not a working tree"
            )
        del self.worktrees[path]
        shutil.rmtree(path, ignore_errors=True)

    def clean_worktree(self, path: Path) -> None:
        self._record("clean_worktree", path)

    def prune_worktrees(self, repo: Path) -> None:
        self._record("prune_worktrees", repo)
        for path, (owner, _branch) in list(self.worktrees.items()):
            if owner == Path(repo) and not path.exists():
                del self.worktrees[path]

    def delete_branch(self, repo: Path, branch: str) -> None:
        self._record("delete_branch", repo, branch)
        known = self.branches.get(Path(repo), set())
        if branch not in known:
            raise ExternalCommandError(["fake", "branch", "-D"], 1, f"branch '{branch}' not found")
        if any(owner == Path(repo) and b == branch for owner, b in self.worktrees.values()):
            raise ExternalCommandError(
                ["fake", "branch", "-D"], 1, f"branch '{branch}' is checked out"
            )
        known.discard(branch)

    def remote_branch_exists(self, repo: Path, branch: str) -> bool:
        self._record("remote_branch_exists", repo, branch)
        return branch in self.remote_branches.get(Path(repo), set())

    def delete_remote_branch(self, repo: Path, branch: str) -> None:
        self._record("delete_remote_branch", repo, branch)
        self.remote_branches.get(Path(repo), set()).discard(branch)

    def start_containers(self, project: str, compose_file: Path) -> None:
        self._record("start_containers", project, compose_file)
        self._require_runtime("start_containers")
        for service in self.services:
            name = f"{project}-{service}"
            self.containers[name] = ContainerState(
                name=name, state="running", health=self.initial_health
            )
        self.volumes.update(f"{project}-{volume}" for volume in self.volume_names)
        self.networks.add(f"{project}-network")

    def stop_containers(self, project: str, compose_file: Path) -> None:
        self._record("stop_containers", project, compose_file)
        self._require_runtime("stop_containers")
        prefix = f"{project}-"
        for name in [name for name in self.containers if name.startswith(prefix)]:
            del self.containers[name]
        self.volumes = {volume for volume in self.volumes if not volume.startswith(prefix)}

    def volume_exists(self, name: str) -> bool:
        self._require_runtime("volume_exists")
        return name in self.volumes

    def remove_volume(self, name: str) -> None:
        self._record("remove_volume", name)
        if name not in self.volumes:
            raise ExternalCommandError(["fake", "volume", "rm"], 1, f"no such volume: {name}")
        self.volumes.discard(name)

    def network_exists(self, name: str) -> bool:
        self._require_runtime("network_exists")
        return name in self.networks

    def remove_network(self, name: str) -> None:
        self._record("remove_network", name)
        if name not in self.networks:
            raise ExternalCommandError(["fake", "network", "rm"], 1, f"no such network: {name}")
        self.networks.discard(name)

    def list_containers(self, prefix: str) -> list[ContainerState]:
        self._record("list_containers", prefix)
        self._require_runtime("list_containers")
        return [state for name, state in sorted(self.containers.items()) if name.startswith(prefix)]

    def container_health(self, name: str) -> str:
        self._require_runtime("container_health")
        state = self.containers.get(name)
        return state.health if state else "missing"

    def exec_in_container(self, name: str, command: str) -> str:
        self._record("exec_in_container", name, command)
        if name not in self.containers:
            raise ExternalCommandError(["fake", "exec", name], 1, f"no such container: {name}")
        self.exec_log.append((name, command))
        return ""

    def port_is_free(self, port: int) -> bool:
        return port not in self.busy_ports
