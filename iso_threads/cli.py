"""iso CLI: isolated parallel development threads."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import typer

from iso_threads.control_plane.providers.subprocess_provider import tools_available
from iso_threads.control_plane.registry.records import ThreadRecord
from iso_threads.control_plane.service import ThreadService
from iso_threads.control_plane.status import ThreadStatus
from iso_threads.errors import ProvisioningError, ThreadLifecycleError
from iso_threads.shared.logs import configure_logging
from iso_threads.shared.settings import load_settings

app = typer.Typer(add_completion=False, help="iso: isolated parallel development threads")

REQUIRED_TOOLS = ("git", "docker")
DEFAULT_REAP_AGE_S = 3600.0


def build_service(config_path: Path | None) -> ThreadService:
    return ThreadService(load_settings(config_path))


@contextmanager
def _reported_errors() -> Iterator[None]:
    try:
        yield
    except ProvisioningError as exc:
        typer.echo(f"Error: {exc}", err=True)
        for warning in exc.rollback_warnings:
            typer.echo(f"Warning: rollback: {warning}", err=True)
        raise typer.Exit(code=1) from exc
    except (ThreadLifecycleError, ValueError) as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc


def _service(ctx: typer.Context) -> ThreadService:
    with _reported_errors():
        return build_service(ctx.obj.get("config") if ctx.obj else None)


def _echo_json(payload: object) -> None:
    typer.echo(json.dumps(payload, indent=2, sort_keys=True))


def _echo_record(record: ThreadRecord) -> None:
    typer.echo(f"Thread:    {record.id}")
    typer.echo(f"Branch:    {record.branch}")
    typer.echo(f"Status:    {record.status}")
    typer.echo(f"Backend:   http://localhost:{record.backend_port}")
    typer.echo(f"Frontend:  http://localhost:{record.frontend_port}")
    typer.echo(f"Workspace: {record.worktree_path}")
    typer.echo(f"Created:   {record.created_at}")


def _container_column(status: ThreadStatus) -> str:
    if not status.containers.known:
        return "?"
    return f"{status.containers.running}/{status.containers.total}"


@app.callback()
def main(
    ctx: typer.Context,
    config: Path = typer.Option(None, "--config", help="YAML settings file (default ./iso.yml)"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    configure_logging(verbose)
    ctx.obj = {"config": config}


@app.command()
def init(
    ctx: typer.Context,
    feature_name: str = typer.Argument(..., help="Feature name, slugified into the branch"),
    base: str = typer.Option("main", "--base", help="Branch the worktrees start from"),
    branch: str = typer.Option("", "--branch", help="Explicit branch name; '{id}' is substituted"),
    as_json: bool = typer.Option(False, "--json"),
) -> None:
    """Provision a new thread end to end (worktrees, config, containers)."""
    service = _service(ctx)
    with _reported_errors():
        result = service.provision(feature_name, base_branch=base, branch_hint=branch or None)
    if as_json:
        _echo_json(result.to_dict())
        return
    typer.echo(f"Thread {result.record.id} initialized successfully.")
    _echo_record(result.record)
    for warning in result.warnings:
        typer.echo(f"Warning: {warning}", err=True)


@app.command()
def allocate(
    ctx: typer.Context,
    feature_name: str = typer.Argument(""),
    branch: str = typer.Option("", "--branch"),
    as_json: bool = typer.Option(False, "--json"),
) -> None:
    """Reserve the lowest free thread id and its ports without provisioning."""
    service = _service(ctx)
    with _reported_errors():
        record = service.allocate(feature_name, branch_hint=branch or None)
    if as_json:
        _echo_json(record.model_dump(mode="json"))
        return
    _echo_record(record)


@app.command("update-status")
def update_status(
    ctx: typer.Context,
    thread_id: int = typer.Argument(...),
    status: str = typer.Argument(...),
) -> None:
    """Set a thread's status (initializing, ready, active)."""
    service = _service(ctx)
    with _reported_errors():
        record = service.update_status(thread_id, status)
    typer.echo(f"Thread {record.id} is now {record.status}.")


@app.command()
def remove(ctx: typer.Context, thread_id: int = typer.Argument(...)) -> None:
    """Drop a thread's registry record only (no resource cleanup)."""
    service = _service(ctx)
    with _reported_errors():
        removed = service.remove(thread_id)
    if removed:
        typer.echo(f"Thread {thread_id} removed from registry.")
    else:
        typer.echo(f"Thread {thread_id} was not registered.")


@app.command()
def info(
    ctx: typer.Context,
    thread_id: int = typer.Argument(...),
    as_json: bool = typer.Option(False, "--json"),
) -> None:
    """Show one thread with its live container state."""
    service = _service(ctx)
    with _reported_errors():
        status = service.get_info(thread_id)
    if as_json:
        _echo_json(status.to_dict())
        return
    _echo_record(status.record)
    typer.echo(f"Worktree:  {'present' if status.worktree_exists else 'missing'}")
    for repo, present in status.repos.items():
        typer.echo(f"  {repo}: {'present' if present else 'missing'}")
    if not status.containers.known:
        typer.echo(f"Containers: unknown ({status.containers.error})")
        return
    typer.echo(f"Containers: {status.containers.running}/{status.containers.total} running")
    for container in status.containers.containers:
        typer.echo(f"  {container.name}: {container.state} ({container.health})")


@app.command("list")
def list_threads(ctx: typer.Context, as_json: bool = typer.Option(False, "--json")) -> None:
    """List live threads."""
    service = _service(ctx)
    with _reported_errors():
        statuses = service.list_threads()
    if as_json:
        _echo_json([status.to_dict() for status in statuses])
        return
    if not statuses:
        typer.echo("No active threads.")
        return
    header = f"{'THREAD':<7} {'BRANCH':<32} {'STATUS':<13} {'BACKEND':<8} {'FRONTEND':<9} {'CTRS':<6} WORKTREE"
    typer.echo(header)
    for status in statuses:
        record = status.record
        typer.echo(
            f"{record.id:<7} {record.branch:<32} {record.status:<13} {record.backend_port:<8} "
            f"{record.frontend_port:<9} {_container_column(status):<6} {record.worktree_path}"
        )


@app.command()
def cleanup(
    ctx: typer.Context,
    thread_id: int = typer.Argument(...),
    force: bool = typer.Option(False, "--force", "-f", help="Skip the confirmation prompt"),
    as_json: bool = typer.Option(False, "--json"),
) -> None:
    """Tear down a thread: containers, volumes, network, worktrees, branches, record."""
    service = _service(ctx)

    def confirm(record: ThreadRecord | None) -> bool:
        label = f"thread {thread_id} ({record.branch})" if record else f"thread {thread_id}"
        return typer.confirm(f"Are you sure you want to cleanup {label}?", default=False)

    with _reported_errors():
        report = service.teardown(thread_id, force=force, confirm=confirm)
    if as_json:
        _echo_json(report.to_dict())
        return
    if report.cancelled:
        typer.echo("Cleanup cancelled.")
        return
    if not report.record_found:
        typer.echo(f"Thread {thread_id} not in registry; reconciled leftover resources.")
    for step in report.succeeded:
        typer.echo(f"ok: {step}")
    for warning in report.warnings:
        typer.echo(f"Warning: {warning.step}: {warning.message}", err=True)
    typer.echo(f"Thread {thread_id} cleaned up.")


@app.command()
def migrate(
    ctx: typer.Context,
    reconfigure: bool = typer.Option(
        True, "--reconfigure/--no-reconfigure", help="Also rewrite env files and restart containers"
    ),
) -> None:
    """Migrate a legacy registry to the two-port layout."""
    service = _service(ctx)
    with _reported_errors():
        report = service.migrate(reconfigure=reconfigure)
    if report.status != "migrated":
        typer.echo(f"Nothing to migrate (registry is {report.status}).")
        return
    typer.echo(f"Backup: {report.backup_path}")
    for thread in report.threads:
        old = "/".join(str(port) for port in thread.old_ports)
        typer.echo(
            f"Thread {thread.thread_id}: {old} -> {thread.backend_port}/{thread.frontend_port}"
        )
    for warning in report.warnings:
        typer.echo(f"Warning: {warning}", err=True)


@app.command()
def reap(
    ctx: typer.Context,
    older_than: float = typer.Option(
        DEFAULT_REAP_AGE_S, "--older-than", help="Seconds an initializing record may live"
    ),
) -> None:
    """Release records stuck in 'initializing' (crashed provisioning runs)."""
    if older_than < 0:
        raise typer.BadParameter("--older-than must be non-negative")
    service = _service(ctx)
    with _reported_errors():
        reaped = service.reap_orphans(older_than)
    if not reaped:
        typer.echo("No orphaned threads.")
        return
    for orphan in reaped:
        typer.echo(f"Released thread {orphan.thread_id} ({orphan.branch}), age {orphan.age_s:.0f}s")


@app.command()
def doctor() -> None:
    """Check that the external tools are on PATH."""
    missing = [tool for tool, found in tools_available(*REQUIRED_TOOLS).items() if not found]
    for tool in REQUIRED_TOOLS:
        typer.echo(f"{tool}: {'missing' if tool in missing else 'ok'}")
    if missing:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
