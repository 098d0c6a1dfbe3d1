"""
CLI interface for Bandwidth Guard.

Runs the monitor and provides command-line management of quotas, resets,
container start/stop, share links and the audit trail.
"""

import asyncio
import logging
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from bandwidth_guard.config.loader import Settings, load_settings
from bandwidth_guard.core.service import MonitorService
from bandwidth_guard.core.units import format_bytes, parse_bytes
from bandwidth_guard.runtime.base import ContainerStats, RuntimeQueryError, RuntimeUnavailable
from bandwidth_guard.runtime.docker_runtime import DockerRuntime
from bandwidth_guard.storage.models import AuditAction, AuditRecord, Entity, EntityStatus, utcnow
from bandwidth_guard.storage.repository import EntityRepository, StoreError

app = typer.Typer()
console = Console()
logger = logging.getLogger(__name__)

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_UNLIMITED = {"none", "unlimited", "off"}
_NEVER = {"none", "never", "off"}

_STATUS_STYLES = {
    EntityStatus.ACTIVE: "green",
    EntityStatus.STOPPED: "yellow",
    EntityStatus.EXPIRED: "red",
}


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj["settings"]


def _repository(settings: Settings) -> EntityRepository:
    repository = EntityRepository(settings.db_path)
    repository.initialize_schema()
    return repository


def _get_entity(repository: EntityRepository, entity_id: str) -> Entity:
    entity = repository.find_by_id(entity_id)
    if entity is None:
        console.print(f"[red]Error:[/] container {entity_id} not found")
        sys.exit(EXIT_CODE_FAIL)
    return entity


def _parse_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_time(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML settings file (environment variables override it)"
    ),
):
    """Bandwidth Guard CLI."""
    try:
        settings = load_settings(config)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    ctx.obj = {"settings": settings}
    if ctx.invoked_subcommand is None:
        console.print("Bandwidth Guard - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the Bandwidth Guard database."""
    settings = _settings(ctx)
    try:
        EntityRepository(settings.db_path).initialize_schema()
        console.print(f"[green]✓[/] Database initialized at {settings.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except StoreError as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def run(ctx: typer.Context):
    """Start the traffic monitor and run until interrupted."""
    settings = _settings(ctx)
    _configure_logging(settings.log_level)
    try:
        asyncio.run(MonitorService(settings).run_forever())
    except StoreError as e:
        console.print(f"[red]Failed to start monitor:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(ctx: typer.Context):
    """Show usage and quota of every monitored container."""
    try:
        entities = _repository(_settings(ctx)).find_all()
    except StoreError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if not entities:
        console.print("[dim]No containers are being monitored yet.[/]")
        return

    table = Table(title="Monitored containers")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Used", justify="right")
    table.add_column("Allowance", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Reset day", justify="right")
    table.add_column("Expires")

    for entity in entities:
        allowance = entity.allowance
        style = _STATUS_STYLES[entity.status]
        table.add_row(
            entity.id[:12],
            entity.name,
            f"[{style}]{entity.status.value}[/]",
            format_bytes(entity.usage),
            format_bytes(allowance) if allowance is not None else "unlimited",
            format_bytes(entity.remaining) if allowance is not None else "-",
            str(entity.reset_day),
            _format_time(entity.expire_at),
        )
    console.print(table)


@app.command("set-quota")
def set_quota(
    ctx: typer.Context,
    container_id: str = typer.Argument(..., help="Container id"),
    limit: Optional[str] = typer.Option(
        None, "--limit", "-l", help="Monthly quota, e.g. 10GB ('unlimited' to clear)"
    ),
    extra: Optional[str] = typer.Option(
        None, "--extra", "-x", help="Additional quota on top of the limit, e.g. 1GB"
    ),
    reset_day: Optional[int] = typer.Option(
        None, "--reset-day", "-r", help="Day of month the usage resets (1-31)"
    ),
    expire_at: Optional[str] = typer.Option(
        None, "--expire-at", "-e", help="ISO timestamp after which the container is stopped ('never' to clear)"
    ),
):
    """Update quota settings of a container."""
    repository = _repository(_settings(ctx))
    _get_entity(repository, container_id)

    changes = {}
    try:
        if limit is not None:
            changes["quota"] = None if limit.lower() in _UNLIMITED else parse_bytes(limit)
        if extra is not None:
            changes["extra_quota"] = parse_bytes(extra)
        if reset_day is not None:
            changes["reset_day"] = reset_day
        if expire_at is not None:
            changes["expire_at"] = None if expire_at.lower() in _NEVER else _parse_datetime(expire_at)
        if not changes:
            console.print("[yellow]Nothing to update[/]")
            sys.exit(EXIT_CODE_PASS)
        updated = repository.update(container_id, **changes)
        if updated is None:
            console.print(f"[red]Error:[/] container {container_id} not found")
            sys.exit(EXIT_CODE_FAIL)
        repository.append_audit(AuditRecord(
            entity_id=container_id,
            action=AuditAction.CONFIG_UPDATE,
            details=", ".join(f"{key}={_describe(value)}" for key, value in changes.items()),
            timestamp=utcnow(),
        ))
    except (ValueError, StoreError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    allowance = updated.allowance
    console.print(
        f"[green]✓[/] {updated.name}: allowance "
        f"{format_bytes(allowance) if allowance is not None else 'unlimited'}, "
        f"reset day {updated.reset_day}"
    )


def _describe(value) -> str:
    if value is None:
        return "none"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


@app.command()
def reset(
    ctx: typer.Context,
    container_id: str = typer.Argument(..., help="Container id"),
):
    """Reset a container's usage to zero.

    A running monitor notices the new reset time on its next sample.
    """
    repository = _repository(_settings(ctx))
    entity = _get_entity(repository, container_id)
    try:
        now = utcnow()
        repository.reset_usage(container_id, now)
        repository.append_audit(AuditRecord(
            entity_id=container_id,
            action=AuditAction.RESET,
            details="Bandwidth manually reset",
            timestamp=now,
        ))
    except StoreError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Traffic reset for {entity.name}")


@app.command()
def share(
    ctx: typer.Context,
    container_id: str = typer.Argument(..., help="Container id"),
    expire_days: Optional[int] = typer.Option(
        None, "--expire-days", "-d", help="Days until the share link expires"
    ),
    regenerate: bool = typer.Option(
        False, "--regenerate", help="Issue a new token even if one exists"
    ),
):
    """Print the share token of a container, creating one if needed."""
    repository = _repository(_settings(ctx))
    entity = _get_entity(repository, container_id)

    token = entity.share_token
    if token and entity.share_token_expire and entity.share_token_expire < utcnow():
        token = None
    if token is None or regenerate or expire_days is not None:
        expire = utcnow() + timedelta(days=expire_days) if expire_days is not None else None
        token = repository.generate_share_token(container_id, expire)
    console.print(f"{token}")
    console.print(f"[dim]/share/{token}[/]")


@app.command()
def audit(
    ctx: typer.Context,
    container_id: Optional[str] = typer.Option(
        None, "--container", "-c", help="Filter by container id"
    ),
    action: Optional[str] = typer.Option(
        None, "--action", "-a", help="Filter by action tag"
    ),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum records to show"),
):
    """List audit records, newest first."""
    try:
        action_filter = AuditAction(action) if action else None
    except ValueError:
        valid = [a.value for a in AuditAction]
        console.print(f"[red]Error:[/] action must be one of: {valid}")
        sys.exit(EXIT_CODE_FAIL)

    records = _repository(_settings(ctx)).find_audit(
        entity_id=container_id, action=action_filter, limit=limit
    )
    if not records:
        console.print("[dim]No audit records found.[/]")
        return

    table = Table(title="Audit log")
    table.add_column("Time")
    table.add_column("Container")
    table.add_column("Action")
    table.add_column("Details")
    for record in records:
        table.add_row(
            _format_time(record.timestamp),
            record.entity_id[:12] if record.entity_id else "-",
            record.action.value,
            record.details or "",
        )
    console.print(table)


@app.command()
def prune(
    ctx: typer.Context,
    days: Optional[int] = typer.Option(
        None, "--days", "-d", help="Keep this many days (defaults to RETENTION_DAYS)"
    ),
):
    """Delete traffic and audit records older than the retention window."""
    settings = _settings(ctx)
    keep = days if days is not None else settings.retention_days
    if keep <= 0:
        console.print("[red]Error:[/] days must be > 0")
        sys.exit(EXIT_CODE_FAIL)
    deleted = _repository(settings).prune(utcnow() - timedelta(days=keep))
    console.print(
        f"[green]✓[/] Removed {deleted['traffic_logs']} traffic and "
        f"{deleted['audit_logs']} audit records older than {keep} days"
    )


@app.command()
def delete(
    ctx: typer.Context,
    container_id: str = typer.Argument(..., help="Container id"),
):
    """Stop monitoring a container and delete its records."""
    repository = _repository(_settings(ctx))
    entity = _get_entity(repository, container_id)
    try:
        repository.delete(container_id)
        repository.append_audit(AuditRecord(
            entity_id=container_id,
            action=AuditAction.DELETE,
            details=f"Container {entity.name} removed from monitoring",
            timestamp=utcnow(),
        ))
    except StoreError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] {entity.name} removed from monitoring")


def _runtime(settings: Settings) -> DockerRuntime:
    return DockerRuntime(
        base_url=settings.docker_base_url,
        monitor_label=settings.monitor_label,
        self_container_id=settings.self_container_id,
        self_container_name=settings.self_container_name,
    )


async def _run_lifecycle(settings: Settings, container_id: str, start: bool) -> None:
    runtime = _runtime(settings)
    try:
        if start:
            await runtime.start(container_id)
        else:
            await runtime.stop(container_id)
    finally:
        await runtime.close()


def _change_state(ctx: typer.Context, container_id: str, start: bool) -> None:
    settings = _settings(ctx)
    repository = _repository(settings)
    entity = _get_entity(repository, container_id)
    verb = "started" if start else "stopped"

    try:
        asyncio.run(_run_lifecycle(settings, container_id, start))
    except (RuntimeQueryError, RuntimeUnavailable) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        repository.update_status(container_id, EntityStatus.ACTIVE if start else EntityStatus.STOPPED)
        repository.append_audit(AuditRecord(
            entity_id=container_id,
            action=AuditAction.START if start else AuditAction.STOP,
            details=f"Container {verb} manually",
            timestamp=utcnow(),
        ))
    except StoreError as e:
        console.print(f"[red]Error:[/] container {verb} but its record was not updated: {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] {entity.name} {verb}")


@app.command()
def start(
    ctx: typer.Context,
    container_id: str = typer.Argument(..., help="Container id"),
):
    """Start a container and mark it active."""
    _change_state(ctx, container_id, start=True)


@app.command()
def stop(
    ctx: typer.Context,
    container_id: str = typer.Argument(..., help="Container id"),
):
    """Stop a container and mark it stopped."""
    _change_state(ctx, container_id, start=False)


async def _live_stats(settings: Settings, container_id: str) -> Optional[ContainerStats]:
    runtime = _runtime(settings)
    try:
        return await runtime.get_stats(container_id)
    except (RuntimeQueryError, RuntimeUnavailable) as e:
        logger.debug("Live stats unavailable for %s: %s", container_id, e)
        return None
    finally:
        await runtime.close()


@app.command("share-view")
def share_view(
    ctx: typer.Context,
    token: str = typer.Argument(..., help="Share token"),
):
    """Show the usage a share link exposes.

    Live memory and network figures are included when the container is
    running and Docker is reachable.
    """
    settings = _settings(ctx)
    try:
        entity = _repository(settings).find_by_share_token(token)
    except StoreError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if entity is None:
        console.print("[red]Error:[/] Share link not found")
        sys.exit(EXIT_CODE_FAIL)
    if entity.share_token_expire and entity.share_token_expire < utcnow():
        console.print("[red]Error:[/] Share link has expired")
        sys.exit(EXIT_CODE_FAIL)

    stats = asyncio.run(_live_stats(settings, entity.id))
    allowance = entity.allowance
    style = _STATUS_STYLES[entity.status]

    table = Table(title=f"Usage of {entity.name}", show_header=False)
    table.add_column("Field")
    table.add_column("Value", justify="right")
    table.add_row("Status", f"[{style}]{entity.status.value}[/]")
    table.add_row("Used", format_bytes(entity.usage))
    table.add_row("Limit", format_bytes(entity.quota) if entity.quota is not None else "unlimited")
    table.add_row("Extra", format_bytes(entity.extra_quota))
    table.add_row("Allowance", format_bytes(allowance) if allowance is not None else "unlimited")
    table.add_row("Remaining", format_bytes(entity.remaining) if allowance is not None else "-")
    table.add_row("Reset day", str(entity.reset_day))
    table.add_row("Last reset", _format_time(entity.last_reset_at))
    table.add_row("Expires", _format_time(entity.expire_at))
    if stats is not None:
        table.add_row("Memory", f"{format_bytes(stats.memory_usage)} / {format_bytes(stats.memory_limit)}")
        table.add_row("Received (live)", format_bytes(stats.rx_bytes))
        table.add_row("Sent (live)", format_bytes(stats.tx_bytes))
    console.print(table)


if __name__ == "__main__":
    app()
