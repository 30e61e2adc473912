"""Provider that shells out to ``git`` and ``docker``."""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path

from iso_threads.control_plane.providers import (
    ContainerState,
    parse_container_status,
    probe_port,
)
from iso_threads.errors import ExternalCommandError

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT_S = 300.0
_MISSING_CONTAINER = "missing"


class SubprocessResourceProvider:
    """Runs git and the container runtime as blocking child processes."""

    name = "subprocess"

    def __init__(
        self,
        *,
        git_binary: str = "git",
        docker_binary: str = "docker",
        remote: str = "origin",
        timeout_s: float = DEFAULT_COMMAND_TIMEOUT_S,
    ) -> None:
        self.git_binary = git_binary
        self.docker_binary = docker_binary
        self.remote = remote
        self.timeout_s = timeout_s

    def _run(self, command: list[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        logger.debug("running: %s", " ".join(command))
        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout_s,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ExternalCommandError(command, 127, str(exc)) from exc
        except subprocess.TimeoutExpired as exc:
            raise ExternalCommandError(
                command, -1, f"timed out after {self.timeout_s:.0f}s"
            ) from exc
        if check and completed.returncode != 0:
            raise ExternalCommandError(command, completed.returncode, completed.stderr or "")
        return completed

    def _git(self, repo: Path, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        return self._run([self.git_binary, "-C", str(repo), *args], check=check)

    def _docker(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        return self._run([self.docker_binary, *args], check=check)

    # version control

    def ref_exists(self, repo: Path, ref: str) -> bool:
        return self._git(repo, "rev-parse", "--verify", "--quiet", ref, check=False).returncode == 0

    def create_worktree(self, repo: Path, path: Path, branch: str, base: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._git(repo, "worktree", "add", str(path), "-b", branch, base)

    def remove_worktree(self, repo: Path, path: Path) -> None:
        self._git(repo, "worktree", "remove", "--force", str(path))

    def clean_worktree(self, path: Path) -> None:
        self._git(path, "reset", "--hard")
        self._git(path, "clean", "-fdx")

    def prune_worktrees(self, repo: Path) -> None:
        self._git(repo, "worktree", "prune")

    def delete_branch(self, repo: Path, branch: str) -> None:
        self._git(repo, "branch", "-D", branch)

    def remote_branch_exists(self, repo: Path, branch: str) -> bool:
        completed = self._git(repo, "ls-remote", "--heads", self.remote, branch, check=False)
        return completed.returncode == 0 and bool(completed.stdout.strip())

    def delete_remote_branch(self, repo: Path, branch: str) -> None:
        self._git(repo, "push", self.remote, "--delete", branch)

    # container runtime

    def start_containers(self, project: str, compose_file: Path) -> None:
        self._docker("compose", "-p", project, "-f", str(compose_file), "up", "-d")

    def stop_containers(self, project: str, compose_file: Path) -> None:
        command = ["compose", "-p", project]
        if compose_file.exists():
            command += ["-f", str(compose_file)]
        self._docker(*command, "down", "-v", "--remove-orphans")

    def volume_exists(self, name: str) -> bool:
        return self._docker("volume", "inspect", name, check=False).returncode == 0

    def remove_volume(self, name: str) -> None:
        self._docker("volume", "rm", name)

    def network_exists(self, name: str) -> bool:
        return self._docker("network", "inspect", name, check=False).returncode == 0

    def remove_network(self, name: str) -> None:
        self._docker("network", "rm", name)

    def list_containers(self, prefix: str) -> list[ContainerState]:
        completed = self._docker(
            "ps", "-a", "--filter", f"name={prefix}", "--format", "{{.Names}}|{{.Status}}"
        )
        states: list[ContainerState] = []
        for line in completed.stdout.splitlines():
            if "|" not in line:
                continue
            name, status_text = line.split("|", 1)
            # the runtime's name filter is a substring match
            if name.startswith(prefix):
                states.append(parse_container_status(name, status_text))
        return states

    def container_health(self, name: str) -> str:
        completed = self._docker(
            "inspect",
            "--format",
            "{{if .State.Health}}{{.State.Health.Status}}{{else}}{{.State.Status}}{{end}}",
            name,
            check=False,
        )
        if completed.returncode != 0:
            return _MISSING_CONTAINER
        return completed.stdout.strip() or "unknown"

    def exec_in_container(self, name: str, command: str) -> str:
        return self._docker("exec", name, "sh", "-c", command).stdout

    def port_is_free(self, port: int) -> bool:
        return probe_port(port)


def tools_available(*binaries: str) -> dict[str, bool]:
    """Which of ``binaries`` resolve on PATH; used by the CLI ``doctor`` check."""

    return {binary: shutil.which(binary) is not None for binary in binaries}
