from __future__ import annotations

from pathlib import Path

import pytest

from iso_threads.errors import ConfigError
from iso_threads.shared.naming import (
    ThreadLayout,
    container_prefix,
    resource_name,
    slugify,
    thread_branch_name,
)
from iso_threads.shared.settings import ThreadSettings, load_settings


def test_from_env_parses_types_and_aux_repos(tmp_path: Path) -> None:
    env = {
        "ISO_BACKEND_REPO": str(tmp_path / "backend"),
        "ISO_ROOT_DIR": str(tmp_path / "root"),
        "ISO_MAX_THREADS": "5",
        "ISO_BACKEND_PORT_BASE": "7000",
        "ISO_LOCK_TIMEOUT": "2.5",
        "ISO_AUX_REPOS": "sales-cx=/src/sales, website=/src/site",
        "ISO_SECRET_ALLOWLIST": "OPENAI_API_KEY, STRIPE_KEY",
        "ISO_REGISTRY_BACKEND": "sqlite",
    }

    settings = ThreadSettings.from_env(env)

    assert settings.backend_repo == tmp_path / "backend"
    assert settings.max_threads == 5
    assert settings.backend_port_base == 7000
    assert settings.frontend_port_base == 4000
    assert settings.lock_timeout_s == 2.5
    assert settings.aux_repos == (("sales-cx", Path("/src/sales")), ("website", Path("/src/site")))
    assert settings.secret_allowlist == ("OPENAI_API_KEY", "STRIPE_KEY")
    assert settings.registry_file == tmp_path / "root" / "worktrees" / ".thread-registry.sqlite"
    assert [spec.name for spec in settings.repos()] == ["backend", "sales-cx", "website"]


def test_yaml_file_is_overridden_by_env(tmp_path: Path) -> None:
    backend = tmp_path / "backend"
    backend.mkdir()
    config = tmp_path / "iso.yml"
    config.write_text(
        f"backend_repo: {backend}\nmax_threads: 4\nproject_name: acme\n"
        "health_services: [db]\naux_repos:\n  docs: /src/docs\n",
        encoding="utf-8",
    )

    settings = load_settings(config, env={"ISO_MAX_THREADS": "6"}, validate=False)

    assert settings.max_threads == 6
    assert settings.project_name == "acme"
    assert settings.health_services == ("db",)
    assert settings.aux_repos == (("docs", Path("/src/docs")),)


def test_missing_backend_repo_is_a_config_error() -> None:
    with pytest.raises(ConfigError, match="backend_repo is not configured"):
        ThreadSettings.from_env({})


def test_invalid_integer_is_a_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="max_threads must be an integer"):
        ThreadSettings.from_env(
            {"ISO_BACKEND_REPO": str(tmp_path), "ISO_MAX_THREADS": "many"}
        )


def test_invalid_yaml_is_a_config_error(tmp_path: Path) -> None:
    config = tmp_path / "iso.yml"
    config.write_text("backend_repo: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="not valid YAML"):
        load_settings(config, env={})


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"max_threads": 0}, "max_threads must be at least 1"),
        ({"backend_port_base": 3000, "frontend_port_base": 3005}, "overlap"),
        ({"frontend_port_base": 65530}, "exceed 65535"),
        ({"registry_backend": "redis"}, "Unknown registry backend"),
        ({"resource_provider": "k8s"}, "Unknown resource provider"),
        ({"frontend_repo": Path("/definitely/missing")}, "frontend repository does not exist"),
        ({"template_dir": Path("/definitely/missing")}, "Template directory not found"),
    ],
)
def test_validate_rejects_bad_settings(tmp_path: Path, overrides: dict, message: str) -> None:
    settings = ThreadSettings(backend_repo=tmp_path, root_dir=tmp_path, **overrides)

    with pytest.raises(ConfigError, match=message):
        settings.validate()


def test_validate_rejects_missing_backend(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Backend repository does not exist"):
        ThreadSettings(backend_repo=tmp_path / "nope").validate()


@pytest.mark.parametrize(
    ("feature", "slug"),
    [
        ("Login Page", "login-page"),
        ("fix/API__bug!!", "fix-api-bug"),
        ("--already-slugged--", "already-slugged"),
        ("Ünïcode 42", "n-code-42"),
        ("!!!", ""),
    ],
)
def test_slugify(feature: str, slug: str) -> None:
    assert slugify(feature) == slug


def test_resource_naming_convention(tmp_path: Path) -> None:
    assert thread_branch_name(3, "login") == "thread-3-login"
    assert resource_name("seer", 3, "postgres_data") == "seer-thread-3-postgres_data"
    assert container_prefix("seer", 3) == "seer-thread-3-"

    layout = ThreadLayout.for_thread(tmp_path / "worktrees", 3)
    assert layout.worktree("frontend") == tmp_path / "worktrees" / "thread-3" / "frontend"
    assert layout.compose_file == tmp_path / "worktrees" / "thread-3" / ".devcontainer" / "docker-compose.yml"
