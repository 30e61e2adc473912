"""External resource provider contract, shared helpers, and factory."""

from __future__ import annotations

import os
import re
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

_HEALTH_IN_STATUS = re.compile(r"\((?:health: )?(healthy|unhealthy|starting)\)")


@dataclass(frozen=True)
class ContainerState:
    name: str
    state: str
    health: str = "unknown"

    @property
    def running(self) -> bool:
        return self.state in {"running", "up"}


def parse_container_status(name: str, status_text: str) -> ContainerState:
    """Interpret ``docker ps`` status text such as ``Up 3 minutes (healthy)``."""

    text = status_text.strip()
    first_word = text.split(" ", 1)[0].lower() if text else "unknown"
    state = "running" if first_word == "up" else first_word
    match = _HEALTH_IN_STATUS.search(text)
    health = match.group(1) if match else "unknown"
    return ContainerState(name=name, state=state, health=health)


def probe_port(port: int, host: str = "0.0.0.0") -> bool:
    """True when nothing is listening on ``port`` (bind + listen succeeds)."""

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
            sock.listen(1)
        except OSError:
            return False
    return True


class ExternalResourceProvider(Protocol):
    """Version-control and container-runtime operations used by the orchestrators."""

    name: str

    def ref_exists(self, repo: Path, ref: str) -> bool: ...

    def create_worktree(self, repo: Path, path: Path, branch: str, base: str) -> None: ...

    def remove_worktree(self, repo: Path, path: Path) -> None: ...

    def clean_worktree(self, path: Path) -> None: ...

    def prune_worktrees(self, repo: Path) -> None: ...

    def delete_branch(self, repo: Path, branch: str) -> None: ...

    def remote_branch_exists(self, repo: Path, branch: str) -> bool: ...

    def delete_remote_branch(self, repo: Path, branch: str) -> None: ...

    def start_containers(self, project: str, compose_file: Path) -> None: ...

    def stop_containers(self, project: str, compose_file: Path) -> None: ...

    def volume_exists(self, name: str) -> bool: ...

    def remove_volume(self, name: str) -> None: ...

    def network_exists(self, name: str) -> bool: ...

    def remove_network(self, name: str) -> None: ...

    def list_containers(self, prefix: str) -> list[ContainerState]: ...

    def container_health(self, name: str) -> str: ...

    def exec_in_container(self, name: str, command: str) -> str: ...

    def port_is_free(self, port: int) -> bool: ...


def build_provider_from_env(
    env: dict[str, str] | None = None,
    *,
    default: str = "subprocess",
) -> ExternalResourceProvider:
    env_map = os.environ if env is None else env
    provider_name = (env_map.get("ISO_RESOURCE_PROVIDER") or default).strip().lower()
    if provider_name == "in_memory":
        from iso_threads.control_plane.providers.inmemory import InMemoryResourceProvider

        return InMemoryResourceProvider()

    from iso_threads.control_plane.providers.subprocess_provider import (
        SubprocessResourceProvider,
    )

    return SubprocessResourceProvider()


__all__ = [
    "ContainerState",
    "ExternalResourceProvider",
    "build_provider_from_env",
    "parse_container_status",
    "probe_port",
]
