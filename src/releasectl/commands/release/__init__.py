"""Release command group."""

import click

from releasectl.core.async_utils import run_interruptible
from releasectl.core.context import pass_context, ReleaseCtlContext
from releasectl.core.exceptions import ReleaseCtlError, StateError
from releasectl.core.output import format_duration
from releasectl.release.models import Release, ReleaseStatus, ReleaseTrigger, SourceRef


def _summary_row(release: Release) -> dict[str, str]:
    duration = release.duration_seconds
    return {
        "id": release.id,
        "host": release.host,
        "environment": release.environment,
        "status": release.status.value,
        "reason": release.reason or "",
        "source": (release.source_ref or "")[:12],
        "duration": format_duration(duration) if duration is not None else "",
        "created": release.created_at.strftime("%Y-%m-%d %H:%M:%S"),
    }


@click.group()
@pass_context
def release(ctx: ReleaseCtlContext) -> None:
    """Release orchestration - deploy, status, rollback.

    \b
    Examples:
        releasectl release deploy --env production
        releasectl release status abc12345
        releasectl release list --host web-1
        releasectl release rollback web-1 --env production
    """
    pass


@release.command("deploy")
@click.option("-e", "--env", "environment", required=True, help="Target environment")
@click.option("--ref", help="Commit the source tree must be at")
@click.option(
    "--source",
    type=click.Path(exists=True, file_okay=False),
    default=".",
    help="Source directory to build",
)
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation")
@pass_context
def deploy(
    ctx: ReleaseCtlContext,
    environment: str,
    ref: str | None,
    source: str,
    yes: bool,
) -> None:
    """Build the source once and release it to every host of an environment.

    \b
    Examples:
        releasectl release deploy --env production
        releasectl release deploy --env staging --ref $GITHUB_SHA -y
    """
    trigger = ReleaseTrigger(source=SourceRef(path=source, commit=ref), environment=environment)

    if ctx.dry_run:
        plan = ctx.coordinator.plan(trigger)
        for step in plan:
            ctx.log_dry_run(
                f"release to {step['host']}",
                {"release_dir": step["release_dir"], "health_url": step["health_url"]},
            )
        ctx.output.print_data(
            [{k: v for k, v in step.items() if k != "build"} for step in plan],
            title="Release plan",
        )
        return

    if not yes and not ctx.confirm(f"Release {source} to '{environment}'?"):
        ctx.output.print_info("Cancelled")
        return

    coordinator = ctx.coordinator

    def interrupted() -> None:
        ctx.output.print_warning("Interrupted, cancelling health checks and rolling back in-flight hosts")
        coordinator.cancel()

    releases = run_interruptible(lambda: coordinator.deploy(trigger), interrupted)
    ctx.output.print_table([_summary_row(r) for r in releases], title=f"Releases to {environment}")

    failed = [r for r in releases if r.status != ReleaseStatus.SUCCEEDED]
    for r in failed:
        ctx.output.print_error(f"{r.host}: {r.status.value} ({r.reason}) {r.message or ''}".rstrip())
    if failed:
        raise click.Abort()

    ctx.output.print_success(f"Released to {len(releases)} host(s)")


@release.command("status")
@click.argument("release_id")
@click.option("--events", is_flag=True, help="Show the event history")
@pass_context
def status(ctx: ReleaseCtlContext, release_id: str, events: bool) -> None:
    """Show release status.

    \b
    Examples:
        releasectl release status abc12345
        releasectl -o json release status abc12345
    """
    try:
        rel = ctx.store.load(release_id)
    except StateError as e:
        ctx.output.print_error(str(e))
        raise click.Abort()

    if ctx.output_format.value != "table":
        ctx.output.print_data(rel.to_dict())
        return

    ctx.output.print_data(_summary_row(rel), title=f"Release {rel.id}")
    if rel.artifact:
        ctx.output.print(f"Artifact: {rel.artifact.filename} (sha256 {rel.artifact.sha256})")
    if rel.previous_release:
        ctx.output.print(f"Previous release: {rel.previous_release}")
    if rel.rollback_of:
        ctx.output.print(f"Rollback of: {rel.rollback_of}")
    if rel.message:
        ctx.output.print(f"Message: {rel.message}")

    if events:
        ctx.output.print_table(
            [
                {
                    "time": e.timestamp.strftime("%H:%M:%S"),
                    "event": e.event_type,
                    "message": e.message,
                }
                for e in rel.events
            ],
            title="Events",
        )


@release.command("list")
@click.option("-e", "--env", "environment", help="Filter by environment")
@click.option("--host", help="Filter by host")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([s.value for s in ReleaseStatus]),
    help="Filter by status",
)
@click.option("--limit", type=int, default=20, help="Maximum releases to show")
@pass_context
def list_releases(
    ctx: ReleaseCtlContext,
    environment: str | None,
    host: str | None,
    status_filter: str | None,
    limit: int,
) -> None:
    """List recorded releases, newest first."""
    releases = ctx.store.list(
        status=ReleaseStatus(status_filter) if status_filter else None,
        environment=environment,
        host=host,
        limit=limit,
    )
    if not releases:
        ctx.output.print_info("No releases found")
        return
    ctx.output.print_table([_summary_row(r) for r in releases], title="Releases")


@release.command("hosts")
@pass_context
def hosts(ctx: ReleaseCtlContext) -> None:
    """Show configured hosts and their last-known-good release."""
    rows = []
    for name, host_config in ctx.profile.hosts.items():
        record = ctx.store.get_host(name)
        environments = [e for e, env in ctx.profile.environments.items() if name in env.hosts]
        rows.append(
            {
                "host": name,
                "address": host_config.address,
                "environments": ", ".join(environments),
                "last_known_good": record.last_known_good or "-",
                "updated": record.updated_at.strftime("%Y-%m-%d %H:%M:%S") if record.updated_at else "-",
            }
        )
    ctx.output.print_table(rows, title="Hosts")


@release.command("rollback")
@click.argument("host")
@click.option("-e", "--env", "environment", required=True, help="Environment the host belongs to")
@click.option("--to", "to_release", help="Release id to restore (default: previous succeeded release)")
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation")
@pass_context
def rollback(
    ctx: ReleaseCtlContext,
    host: str,
    environment: str,
    to_release: str | None,
    yes: bool,
) -> None:
    """Re-activate an earlier release on a host.

    \b
    Examples:
        releasectl release rollback web-1 --env production
        releasectl release rollback web-1 --env production --to abc12345
    """
    if ctx.dry_run:
        ctx.log_dry_run("rollback", {"host": host, "to": to_release or "previous"})
        return

    if not yes and not ctx.confirm(f"Roll back {host}?"):
        ctx.output.print_info("Cancelled")
        return

    try:
        rel = ctx.coordinator.rollback(host, environment, to=to_release)
    except ReleaseCtlError as e:
        ctx.output.print_error(f"Rollback failed: {e}")
        raise click.Abort()

    if rel.status == ReleaseStatus.SUCCEEDED:
        ctx.output.print_success(f"{host} is running {rel.deployed_id} (release {rel.id})")
    else:
        ctx.output.print_error(f"Rollback {rel.id} ended {rel.status.value}: {rel.reason}")
        raise click.Abort()


@release.command("cleanup")
@click.option("--days", type=int, default=30, help="Remove finished releases older than this")
@pass_context
def cleanup(ctx: ReleaseCtlContext, days: int) -> None:
    """Remove old release records from local state."""
    if ctx.dry_run:
        ctx.log_dry_run("cleanup release records", {"days": days})
        return

    removed = ctx.store.cleanup_old(days)
    ctx.output.print_success(f"Removed {removed} release record(s)")
