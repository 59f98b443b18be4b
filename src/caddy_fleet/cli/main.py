"""caddy-fleet CLI — command-line interface for fleet control.

Commands:
    instances list       Show registered instances
    instances show       Show one instance with its latest metrics
    instances add        Register a new instance
    instances update     Change an instance's name, endpoint, credential or tags
    instances remove     Delete an instance
    instances test       Test the connection and record online/offline
    instances refresh    Refresh the status of one or every instance
    instances health     Health check with server identity
    instances stop       Stop a remote instance
    config show          Print an instance's running configuration
    config reload        Push a configuration file to an instance
    sites list           Show HTTP servers configured on an instance
    sites put            Create or replace an HTTP server block
    sites delete         Remove an HTTP server block
    metrics collect      Pull and store a metrics snapshot
    metrics show         Show stored snapshots for an instance
    metrics latest       Show the newest stored snapshot
    metrics prune        Delete snapshots past retention
    metrics summary      Aggregate stored metrics across the fleet
    audit show           Show recent audit log entries
    audit clear          Empty the audit log

Every control command appends an audit entry, whether it succeeded or not.
"""

from __future__ import annotations

import getpass
import json
import logging
import socket
import sys
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, NoReturn, TypeVar

import click

from caddy_fleet import __version__
from caddy_fleet.config import ConfigError, FleetConfig, load_config
from caddy_fleet.errors import (
    CredentialUnavailableError,
    FleetError,
    InstanceNotFoundError,
    InvalidInstanceError,
    RemoteError,
    StorageError,
)
from caddy_fleet.fleet.service import FleetService
from caddy_fleet.models import AuditAction, InstanceDescriptor, InstanceStatus, MetricsSnapshot
from caddy_fleet.registry.store import RegistryError

logger = logging.getLogger(__name__)

T = TypeVar("T")

EXIT_REMOTE_FAILURE = 1
EXIT_LOCAL_FAILURE = 2

LOCAL_ERRORS = (
    InstanceNotFoundError,
    InvalidInstanceError,
    CredentialUnavailableError,
    StorageError,
)


@dataclass
class CliContext:
    """State shared by every command: config, caller identity, service."""

    config: FleetConfig
    actor: str
    source_address: str
    _fleet: FleetService | None = None

    @property
    def fleet(self) -> FleetService:
        if self._fleet is None:
            try:
                self._fleet = FleetService.from_config(self.config)
            except RegistryError as exc:
                click.echo(f"Error: {exc}", err=True)
                sys.exit(EXIT_LOCAL_FAILURE)
        return self._fleet


def _default_actor() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def _fail(exc: Exception) -> NoReturn:
    """Print an error the way operators need to read it and exit."""
    if isinstance(exc, RemoteError):
        click.echo(
            click.style(f"Instance rejected the request (HTTP {exc.status}):", fg="red"),
            err=True,
        )
        click.echo(exc.body, err=True)
        sys.exit(EXIT_REMOTE_FAILURE)
    if isinstance(exc, LOCAL_ERRORS):
        click.echo(f"Error: {exc}", err=True)
        sys.exit(EXIT_LOCAL_FAILURE)
    click.echo(f"Error: {exc}", err=True)
    sys.exit(EXIT_REMOTE_FAILURE)


def _audited(
    ctx: CliContext,
    action: AuditAction,
    operation: Callable[[], T],
    *,
    instance_id: str | None = None,
    details: str = "",
) -> T:
    """Run *operation*, append an audit entry for it, exit on failure."""
    instance_name: str | None = None
    if instance_id is not None and instance_id in ctx.fleet.registry:
        instance_name = ctx.fleet.registry.get(instance_id).name

    try:
        result = operation()
    except FleetError as exc:
        try:
            ctx.fleet.audit.record(
                action, ctx.actor,
                instance_id=instance_id, instance_name=instance_name,
                details=details, source_address=ctx.source_address, error=exc,
            )
        except StorageError as audit_exc:
            logger.error("Could not record failed %s in audit log: %s", action, audit_exc)
        _fail(exc)

    if isinstance(result, InstanceDescriptor):
        instance_id = result.id
        instance_name = result.name
    ctx.fleet.audit.record(
        action, ctx.actor,
        instance_id=instance_id, instance_name=instance_name,
        details=details, source_address=ctx.source_address,
    )
    return result


def _status_badge(status: InstanceStatus) -> str:
    color = {
        InstanceStatus.ONLINE: "green",
        InstanceStatus.OFFLINE: "red",
        InstanceStatus.UPDATING: "yellow",
    }.get(status, "white")
    return click.style(f"{status.value.upper():<9}", fg=color)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2))


def _load_json_file(path: str) -> Any:
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        click.echo(f"Error: cannot read JSON from {path}: {exc}", err=True)
        sys.exit(EXIT_LOCAL_FAILURE)


def _echo_snapshot(snapshot: MetricsSnapshot) -> None:
    click.echo(
        f"  {snapshot.captured_at.isoformat()[:19]}  "
        f"requests={snapshot.request_count:<10} bytes={snapshot.bytes_total:<12} "
        f"uptime={snapshot.uptime_seconds}s",
    )
    if snapshot.status_code_counts:
        codes = ", ".join(f"{c}={n}" for c, n in sorted(snapshot.status_code_counts.items()))
        click.echo(f"    codes: {codes}")
    for site, sm in sorted(snapshot.per_site.items()):
        click.echo(f"    site {site}: requests={sm.requests}")


# --- Root group ---


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "config_path", default=None, help="Path to caddy-fleet.yaml")
@click.option("--data-dir", default=None, help="Override the data directory")
@click.option("--actor", default=None, help="Actor recorded in the audit log")
@click.option("--log-level", default=None, help="Logging level (DEBUG, INFO, ...)")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: str | None,
    data_dir: str | None,
    actor: str | None,
    log_level: str | None,
) -> None:
    """caddy-fleet: manage a fleet of web servers through their admin APIs."""
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ConfigError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(EXIT_LOCAL_FAILURE)

    if data_dir is not None:
        config = replace(config, data_dir=str(Path(data_dir).resolve()))

    logging.basicConfig(
        level=(log_level or config.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    ctx.obj = CliContext(
        config=config,
        actor=actor or _default_actor(),
        source_address=f"cli@{socket.gethostname()}",
    )


pass_cli = click.make_pass_decorator(CliContext)


# --- instances group ---


@cli.group()
def instances() -> None:
    """Instance registry commands."""


@instances.command("list")
@click.option("--tag", default=None, help="Only instances carrying this tag")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@pass_cli
def instances_list(ctx: CliContext, tag: str | None, json_output: bool) -> None:
    """List registered instances."""
    items = ctx.fleet.list_instances(tag=tag)

    if json_output:
        _echo_json([i.model_dump(mode="json") for i in items])
        return

    if not items:
        click.echo("No instances registered.")
        return
    for inst in items:
        tags = f"  tags={','.join(inst.tags)}" if inst.tags else ""
        click.echo(
            f"  {inst.id}  {_status_badge(inst.status)} {inst.name:<20} {inst.endpoint}{tags}",
        )
    click.echo(f"\n{len(items)} instance(s).")


@instances.command("show")
@click.argument("instance_id")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@pass_cli
def instances_show(ctx: CliContext, instance_id: str, json_output: bool) -> None:
    """Show one instance and its latest stored metrics."""
    try:
        inst = ctx.fleet.get_instance(instance_id)
    except InstanceNotFoundError as exc:
        _fail(exc)
    latest = ctx.fleet.latest_metrics(instance_id)

    if json_output:
        _echo_json({
            "instance": inst.model_dump(mode="json"),
            "metrics": latest.model_dump(mode="json") if latest else None,
        })
        return

    click.echo(_status_badge(inst.status) + f" — {inst.id}")
    click.echo(f"  name:         {inst.name}")
    click.echo(f"  endpoint:     {inst.endpoint}")
    click.echo(f"  credential:   {inst.credential_ref or '-'}")
    click.echo(f"  tags:         {', '.join(inst.tags) or '-'}")
    checked = inst.last_checked_at.isoformat()[:19] if inst.last_checked_at else "never"
    click.echo(f"  last checked: {checked}")
    click.echo(f"  created:      {inst.created_at.isoformat()[:19]}")
    if latest is not None:
        click.echo("  latest metrics:")
        _echo_snapshot(latest)


def _spec_from_options(
    name: str, endpoint: str, credential_file: str | None, tags: tuple[str, ...],
) -> dict[str, Any]:
    return {
        "name": name,
        "endpoint": endpoint,
        "credential_ref": credential_file,
        "tags": list(tags),
    }


@instances.command("add")
@click.option("--name", required=True, help="Display name")
@click.option("--endpoint", required=True, help="Admin API base URL, e.g. http://host:2019")
@click.option("--credential-file", default=None, help="File holding the bearer token")
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable)")
@pass_cli
def instances_add(
    ctx: CliContext,
    name: str,
    endpoint: str,
    credential_file: str | None,
    tags: tuple[str, ...],
) -> None:
    """Register a new instance."""
    spec = _spec_from_options(name, endpoint, credential_file, tags)
    inst = _audited(
        ctx, AuditAction.CREATE_INSTANCE,
        lambda: ctx.fleet.create_instance(spec),
        details=f"endpoint={endpoint}",
    )
    click.echo(f"Registered {inst.id} ({inst.name})")


@instances.command("update")
@click.argument("instance_id")
@click.option("--name", default=None, help="New display name")
@click.option("--endpoint", default=None, help="New admin API base URL")
@click.option("--credential-file", default=None, help="New credential file ('' clears it)")
@click.option("--tag", "tags", multiple=True, help="Replace tags (repeatable)")
@pass_cli
def instances_update(
    ctx: CliContext,
    instance_id: str,
    name: str | None,
    endpoint: str | None,
    credential_file: str | None,
    tags: tuple[str, ...],
) -> None:
    """Update an instance. Unspecified fields keep their current values."""
    try:
        current = ctx.fleet.get_instance(instance_id)
    except InstanceNotFoundError as exc:
        _fail(exc)

    spec = _spec_from_options(
        name if name is not None else current.name,
        endpoint if endpoint is not None else current.endpoint,
        credential_file if credential_file is not None else current.credential_ref,
        tags if tags else tuple(current.tags),
    )
    inst = _audited(
        ctx, AuditAction.UPDATE_INSTANCE,
        lambda: ctx.fleet.update_instance(instance_id, spec),
        instance_id=instance_id,
    )
    click.echo(f"Updated {inst.id} ({inst.name})")


@instances.command("remove")
@click.argument("instance_id")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@pass_cli
def instances_remove(ctx: CliContext, instance_id: str, yes: bool) -> None:
    """Delete an instance permanently."""
    if not yes:
        click.confirm(f"Delete instance {instance_id}?", abort=True)
    _audited(
        ctx, AuditAction.DELETE_INSTANCE,
        lambda: ctx.fleet.delete_instance(instance_id),
        instance_id=instance_id,
    )
    click.echo(f"Deleted {instance_id}")


@instances.command("test")
@click.argument("instance_id")
@pass_cli
def instances_test(ctx: CliContext, instance_id: str) -> None:
    """Test the connection and record online/offline."""
    status = _audited(
        ctx, AuditAction.TEST_CONNECTION,
        lambda: ctx.fleet.test_connection(instance_id),
        instance_id=instance_id,
    )
    click.echo(_status_badge(status) + f" {instance_id}")
    if status != InstanceStatus.ONLINE:
        sys.exit(EXIT_REMOTE_FAILURE)


@instances.command("refresh")
@click.argument("instance_id", required=False)
@pass_cli
def instances_refresh(ctx: CliContext, instance_id: str | None) -> None:
    """Refresh status of one instance, or of every instance."""
    if instance_id is not None:
        status = _audited(
            ctx, AuditAction.REFRESH_STATUS,
            lambda: ctx.fleet.refresh_status(instance_id),
            instance_id=instance_id,
        )
        click.echo(_status_badge(status) + f" {instance_id}")
        return

    threads = ctx.fleet.refresh_all()
    # Daemon threads die with the process
    for thread in threads:
        thread.join()
    ctx.fleet.audit.record(
        AuditAction.REFRESH_STATUS, ctx.actor,
        details=f"refresh_all instances={len(threads)}",
        source_address=ctx.source_address,
    )
    for inst in ctx.fleet.list_instances():
        click.echo(f"  {inst.id}  {_status_badge(inst.status)} {inst.name}")


@instances.command("health")
@click.argument("instance_id")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@pass_cli
def instances_health(ctx: CliContext, instance_id: str, json_output: bool) -> None:
    """Health check with best-effort server identity."""
    try:
        report = ctx.fleet.health_check(instance_id)
    except InstanceNotFoundError as exc:
        _fail(exc)

    if json_output:
        _echo_json(report.model_dump(mode="json"))
    elif report.healthy:
        click.echo(click.style("HEALTHY", fg="green", bold=True) + f" — {instance_id}")
        if report.server_info is not None:
            info = report.server_info
            click.echo(f"  id: {info.instance_id}  version: {info.version}")
    else:
        click.echo(click.style("UNHEALTHY", fg="red", bold=True) + f" — {instance_id}")
        click.echo(f"  {report.error}")

    if not report.healthy:
        sys.exit(EXIT_REMOTE_FAILURE)


@instances.command("stop")
@click.argument("instance_id")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@pass_cli
def instances_stop(ctx: CliContext, instance_id: str, yes: bool) -> None:
    """Stop a remote instance."""
    if not yes:
        click.confirm(f"Stop instance {instance_id}?", abort=True)
    _audited(
        ctx, AuditAction.STOP_SERVER,
        lambda: ctx.fleet.stop_instance(instance_id),
        instance_id=instance_id,
    )
    click.echo(f"Stop requested for {instance_id}")


# --- config group ---


@cli.group()
def config() -> None:
    """Remote configuration commands."""


@config.command("show")
@click.argument("instance_id")
@click.option("--raw", is_flag=True, help="Print the bytes exactly as received")
@pass_cli
def config_show(ctx: CliContext, instance_id: str, raw: bool) -> None:
    """Print an instance's running configuration."""
    doc = _audited(
        ctx, AuditAction.VIEW_CONFIG,
        lambda: ctx.fleet.get_config(instance_id),
        instance_id=instance_id,
    )
    if raw:
        click.echo(doc.raw.decode("utf-8", errors="replace"))
    else:
        _echo_json(doc.data)


@config.command("reload")
@click.argument("instance_id")
@click.argument("config_file", type=click.Path(exists=True, dir_okay=False))
@pass_cli
def config_reload(ctx: CliContext, instance_id: str, config_file: str) -> None:
    """Push CONFIG_FILE (JSON) to an instance."""
    body = Path(config_file).read_bytes()
    _audited(
        ctx, AuditAction.RELOAD_CONFIG,
        lambda: ctx.fleet.reload_config(instance_id, body),
        instance_id=instance_id,
        details=f"file={config_file} bytes={len(body)}",
    )
    click.echo(f"Configuration reloaded on {instance_id}")


# --- sites group ---


@cli.group()
def sites() -> None:
    """HTTP server (site) commands."""


@sites.command("list")
@click.argument("instance_id")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@pass_cli
def sites_list(ctx: CliContext, instance_id: str, json_output: bool) -> None:
    """List HTTP servers configured on an instance."""
    items = _audited(
        ctx, AuditAction.VIEW_CONFIG,
        lambda: ctx.fleet.list_sites(instance_id),
        instance_id=instance_id,
        details="list_sites",
    )
    if json_output:
        _echo_json([s.model_dump(mode="json") for s in items])
        return
    if not items:
        click.echo("No sites configured.")
        return
    for site in items:
        click.echo(f"  {site.name:<20} listen={','.join(site.listen) or '-'}")


@sites.command("put")
@click.argument("instance_id")
@click.argument("name")
@click.argument("config_file", type=click.Path(exists=True, dir_okay=False))
@pass_cli
def sites_put(ctx: CliContext, instance_id: str, name: str, config_file: str) -> None:
    """Create or replace site NAME from CONFIG_FILE (JSON)."""
    site_config = _load_json_file(config_file)
    _audited(
        ctx, AuditAction.CREATE_SITE,
        lambda: ctx.fleet.put_site(instance_id, name, site_config),
        instance_id=instance_id,
        details=f"site={name}",
    )
    click.echo(f"Site {name} saved on {instance_id}")


@sites.command("delete")
@click.argument("instance_id")
@click.argument("name")
@pass_cli
def sites_delete(ctx: CliContext, instance_id: str, name: str) -> None:
    """Remove site NAME from an instance."""
    _audited(
        ctx, AuditAction.DELETE_SITE,
        lambda: ctx.fleet.delete_site(instance_id, name),
        instance_id=instance_id,
        details=f"site={name}",
    )
    click.echo(f"Site {name} deleted on {instance_id}")


# --- metrics group ---


@cli.group()
def metrics() -> None:
    """Metrics collection and history commands."""


@metrics.command("collect")
@click.argument("instance_id")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@pass_cli
def metrics_collect(ctx: CliContext, instance_id: str, json_output: bool) -> None:
    """Pull, parse and store a metrics snapshot."""
    try:
        snapshot = ctx.fleet.collect_metrics(instance_id)
    except FleetError as exc:
        _fail(exc)

    if json_output:
        _echo_json(snapshot.model_dump(mode="json"))
    else:
        _echo_snapshot(snapshot)


@metrics.command("show")
@click.argument("instance_id")
@click.option("--since-hours", default=24.0, help="How far back to look")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@pass_cli
def metrics_show(
    ctx: CliContext, instance_id: str, since_hours: float, json_output: bool,
) -> None:
    """Show stored snapshots for an instance."""
    start = datetime.now(tz=UTC) - timedelta(hours=since_hours)
    try:
        history = ctx.fleet.metrics_history(instance_id, start)
    except FleetError as exc:
        _fail(exc)

    if json_output:
        _echo_json([s.model_dump(mode="json") for s in history])
        return
    if not history:
        click.echo("No snapshots in range.")
        return
    for snapshot in history:
        _echo_snapshot(snapshot)
    click.echo(f"\n{len(history)} snapshot(s) shown.")


@metrics.command("latest")
@click.argument("instance_id")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@pass_cli
def metrics_latest(ctx: CliContext, instance_id: str, json_output: bool) -> None:
    """Show the newest stored snapshot."""
    try:
        snapshot = ctx.fleet.latest_metrics(instance_id)
    except FleetError as exc:
        _fail(exc)

    if snapshot is None:
        click.echo("No snapshots stored.")
        return
    if json_output:
        _echo_json(snapshot.model_dump(mode="json"))
    else:
        _echo_snapshot(snapshot)


@metrics.command("prune")
@click.option("--days", type=int, default=None, help="Retention in days (default: config)")
@pass_cli
def metrics_prune(ctx: CliContext, days: int | None) -> None:
    """Delete snapshots older than the retention period."""
    age = timedelta(days=days) if days is not None else None
    try:
        removed = ctx.fleet.prune_metrics(age)
    except FleetError as exc:
        _fail(exc)
    click.echo(f"Removed {removed} snapshot(s).")


@metrics.command("summary")
@click.option("--since-hours", default=24.0, help="How far back to look")
@click.option("--tag", default=None, help="Only instances carrying this tag")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@pass_cli
def metrics_summary(
    ctx: CliContext, since_hours: float, tag: str | None, json_output: bool,
) -> None:
    """Aggregate stored metrics across the fleet."""
    start = datetime.now(tz=UTC) - timedelta(hours=since_hours)
    summary = ctx.fleet.analytics(start, tag=tag)

    if json_output:
        _echo_json(summary.model_dump(mode="json"))
        return
    click.echo(f"  total requests: {summary.total_requests}")
    click.echo(f"  total bytes:    {summary.total_bytes}")
    for snapshot in summary.latest_per_instance:
        click.echo(f"  {snapshot.instance_id}:")
        _echo_snapshot(snapshot)


# --- audit group ---


@cli.group()
def audit() -> None:
    """Audit log commands."""


@audit.command("show")
@click.option("--last", "count", default=20, help="Number of entries to show")
@click.option("--instance", "instance_id", default=None, help="Filter by instance id")
@click.option("--actor", "actor_id", default=None, help="Filter by actor id")
@click.option(
    "--action", default=None,
    type=click.Choice([a.value for a in AuditAction]),
    help="Filter by action",
)
@click.option("--json-output", is_flag=True, help="Output as JSON")
@pass_cli
def audit_show(
    ctx: CliContext,
    count: int,
    instance_id: str | None,
    actor_id: str | None,
    action: str | None,
    json_output: bool,
) -> None:
    """Show recent audit log entries, newest first."""
    log = ctx.fleet.audit
    if instance_id is not None:
        entries = log.for_instance(instance_id, limit=None)
    elif actor_id is not None:
        entries = log.for_actor(actor_id, limit=None)
    else:
        entries = log.recent(limit=None)

    if actor_id is not None:
        entries = [e for e in entries if e.actor_id == actor_id]
    if action is not None:
        entries = [e for e in entries if e.action == action]
    entries = entries[:count]

    if json_output:
        _echo_json([e.model_dump(mode="json") for e in entries])
        return
    if not entries:
        click.echo("No audit entries found.")
        return
    for entry in entries:
        outcome = (
            click.style("OK  ", fg="green") if entry.succeeded
            else click.style("FAIL", fg="red")
        )
        ts = entry.timestamp.isoformat()[:19] if entry.timestamp else "?"
        click.echo(
            f"  {ts}  {outcome} {entry.action.value:<16} "
            f"actor={entry.actor_id}  instance={entry.instance_id or '-'}",
        )
        if entry.error_message:
            click.echo(f"    error: {entry.error_message}")
    click.echo(f"\n{len(entries)} entr(ies) shown.")


@audit.command("clear")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@pass_cli
def audit_clear(ctx: CliContext, yes: bool) -> None:
    """Delete every audit entry."""
    if not yes:
        click.confirm("Clear the entire audit log?", abort=True)
    ctx.fleet.audit.clear()
    click.echo("Audit log cleared.")


if __name__ == "__main__":
    cli()
