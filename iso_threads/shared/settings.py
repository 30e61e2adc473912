"""Explicit runtime settings for thread provisioning.

Settings are assembled once per invocation (defaults, then an optional YAML file, then
``ISO_*`` environment variables) and passed to every entry point.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from iso_threads.errors import ConfigError

DEFAULT_CONFIG_FILENAME = "iso.yml"
DEFAULT_SECRET_ALLOWLIST = ("OPENAI_API_KEY", "ANTHROPIC_API_KEY", "GITHUB_TOKEN", "SENTRY_DSN")
REGISTRY_BACKENDS = {"file", "sqlite"}
RESOURCE_PROVIDERS = {"subprocess", "in_memory"}

_ENV_KEYS: dict[str, str] = {
    "ISO_PROJECT_NAME": "project_name",
    "ISO_ROOT_DIR": "root_dir",
    "ISO_BACKEND_REPO": "backend_repo",
    "ISO_FRONTEND_REPO": "frontend_repo",
    "ISO_AUX_REPOS": "aux_repos",
    "ISO_MAX_THREADS": "max_threads",
    "ISO_BACKEND_PORT_BASE": "backend_port_base",
    "ISO_FRONTEND_PORT_BASE": "frontend_port_base",
    "ISO_LEGACY_PORT_BASE": "legacy_port_base",
    "ISO_LEGACY_PORT_BLOCK": "legacy_port_block",
    "ISO_HEALTH_TIMEOUT": "health_timeout_s",
    "ISO_LOCK_TIMEOUT": "lock_timeout_s",
    "ISO_LOCK_STALE_AFTER": "lock_stale_after_s",
    "ISO_REGISTRY_BACKEND": "registry_backend",
    "ISO_REGISTRY_PATH": "registry_path",
    "ISO_TEMPLATE_DIR": "template_dir",
    "ISO_SECRET_ALLOWLIST": "secret_allowlist",
    "ISO_MIGRATION_COMMAND": "migration_command",
    "ISO_APP_HEALTH_URL": "app_health_url",
    "ISO_RESOURCE_PROVIDER": "resource_provider",
}


@dataclass(frozen=True)
class RepoSpec:
    """One source repository that gets a worktree per thread.

    ``env_style`` selects how its env file is written: ``thread`` writes a fresh
    ``.env.thread``, ``inherit`` copies the parent ``.env`` and appends overrides.
    """

    name: str
    path: Path
    env_style: str = "inherit"


@dataclass(frozen=True)
class ThreadSettings:
    backend_repo: Path
    root_dir: Path = field(default_factory=Path.cwd)
    project_name: str = "seer"
    frontend_repo: Path | None = None
    aux_repos: tuple[tuple[str, Path], ...] = ()
    max_threads: int = 10
    backend_port_base: int = 3000
    frontend_port_base: int = 4000
    legacy_port_base: int = 10000
    legacy_port_block: int = 100
    health_timeout_s: float = 60.0
    health_poll_interval_s: float = 2.0
    lock_timeout_s: float = 10.0
    lock_stale_after_s: float = 600.0
    registry_backend: str = "file"
    registry_path: Path | None = None
    template_dir: Path | None = None
    secret_allowlist: tuple[str, ...] = DEFAULT_SECRET_ALLOWLIST
    health_services: tuple[str, ...] = ("postgres", "redis")
    volumes: tuple[str, ...] = ("postgres_data", "redis_data")
    migration_command: str = ""
    migration_service: str = "app"
    app_health_url: str = ""
    resource_provider: str = "subprocess"

    @property
    def worktrees_dir(self) -> Path:
        return self.root_dir / "worktrees"

    @property
    def registry_file(self) -> Path:
        if self.registry_path is not None:
            return self.registry_path
        suffix = ".sqlite" if self.registry_backend == "sqlite" else ""
        return self.worktrees_dir / f".thread-registry{suffix}"

    @property
    def lock_file(self) -> Path:
        return self.registry_file.with_name(self.registry_file.name + ".lock")

    def repos(self) -> list[RepoSpec]:
        """Configured repositories in provisioning order (backend first)."""

        specs = [RepoSpec(name="backend", path=self.backend_repo, env_style="thread")]
        if self.frontend_repo is not None:
            specs.append(RepoSpec(name="frontend", path=self.frontend_repo))
        for name, path in self.aux_repos:
            specs.append(RepoSpec(name=name, path=path))
        return specs

    def validate(self) -> None:
        if not self.backend_repo.is_dir():
            raise ConfigError(f"Backend repository does not exist: {self.backend_repo}")
        for spec in self.repos()[1:]:
            if not spec.path.is_dir():
                raise ConfigError(f"{spec.name} repository does not exist: {spec.path}")
        names = [spec.name for spec in self.repos()]
        if len(names) != len(set(names)):
            raise ConfigError(f"Repository names must be unique: {names}")
        if self.max_threads < 1:
            raise ConfigError("max_threads must be at least 1")
        backend_range = range(self.backend_port_base + 1, self.backend_port_base + self.max_threads + 1)
        frontend_range = range(
            self.frontend_port_base + 1, self.frontend_port_base + self.max_threads + 1
        )
        if set(backend_range) & set(frontend_range):
            raise ConfigError("backend and frontend port ranges overlap")
        if backend_range.stop > 65536 or frontend_range.stop > 65536:
            raise ConfigError("derived ports exceed 65535")
        if self.registry_backend not in REGISTRY_BACKENDS:
            raise ConfigError(f"Unknown registry backend: {self.registry_backend}")
        if self.resource_provider not in RESOURCE_PROVIDERS:
            raise ConfigError(f"Unknown resource provider: {self.resource_provider}")
        if self.template_dir is not None and not self.template_dir.is_dir():
            raise ConfigError(f"Template directory not found: {self.template_dir}")

    @classmethod
    def from_mapping(cls, values: dict[str, Any]) -> "ThreadSettings":
        if not values.get("backend_repo"):
            raise ConfigError("backend_repo is not configured (set ISO_BACKEND_REPO)")
        kwargs: dict[str, Any] = {"backend_repo": Path(str(values["backend_repo"])).expanduser()}
        for key in ("root_dir", "registry_path", "template_dir", "frontend_repo"):
            if values.get(key):
                kwargs[key] = Path(str(values[key])).expanduser()
        for key in (
            "project_name",
            "registry_backend",
            "migration_command",
            "migration_service",
            "app_health_url",
            "resource_provider",
        ):
            if values.get(key) is not None:
                kwargs[key] = str(values[key]).strip()
        for key in (
            "max_threads",
            "backend_port_base",
            "frontend_port_base",
            "legacy_port_base",
            "legacy_port_block",
        ):
            if values.get(key) is not None:
                kwargs[key] = _as_int(key, values[key])
        for key in (
            "health_timeout_s",
            "health_poll_interval_s",
            "lock_timeout_s",
            "lock_stale_after_s",
        ):
            if values.get(key) is not None:
                kwargs[key] = _as_float(key, values[key])
        if values.get("aux_repos"):
            kwargs["aux_repos"] = _parse_aux_repos(values["aux_repos"])
        for key in ("secret_allowlist", "health_services", "volumes"):
            if values.get(key) is not None:
                kwargs[key] = _as_names(values[key])
        return cls(**kwargs)

    @classmethod
    def from_env(
        cls,
        env: dict[str, str] | None = None,
        file_values: dict[str, Any] | None = None,
    ) -> "ThreadSettings":
        source = os.environ if env is None else env
        merged: dict[str, Any] = dict(file_values or {})
        for env_key, setting_key in _ENV_KEYS.items():
            value = source.get(env_key)
            if value is not None and value.strip():
                merged[setting_key] = value.strip()
        return cls.from_mapping(merged)


def _as_int(key: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be an integer, got {value!r}") from exc


def _as_float(key: str, value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be a number, got {value!r}") from exc


def _as_names(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = [str(item) for item in value]
    return tuple(item.strip() for item in items if item.strip())


def _parse_aux_repos(value: Any) -> tuple[tuple[str, Path], ...]:
    if isinstance(value, dict):
        pairs = [(str(name), str(path)) for name, path in value.items()]
    else:
        pairs = []
        for entry in _as_names(value):
            if "=" not in entry:
                raise ConfigError(f"aux_repos entries must look like name=path, got {entry!r}")
            name, path = entry.split("=", 1)
            pairs.append((name.strip(), path.strip()))
    return tuple((name, Path(path).expanduser()) for name, path in pairs if name and path)


def load_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config file is not valid YAML: {path}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must contain a mapping: {path}")
    return data


def load_settings(
    config_path: Path | None = None,
    env: dict[str, str] | None = None,
    *,
    validate: bool = True,
) -> ThreadSettings:
    """Build settings from an optional YAML file plus ``ISO_*`` environment overrides."""

    file_values: dict[str, Any] = {}
    if config_path is not None:
        file_values = load_config_file(config_path)
    elif Path(DEFAULT_CONFIG_FILENAME).exists():
        file_values = load_config_file(Path(DEFAULT_CONFIG_FILENAME))
    settings = ThreadSettings.from_env(env, file_values=file_values)
    if validate:
        settings.validate()
    return settings
