"""Health check commands."""

import click

from releasectl.core.context import pass_context, ReleaseCtlContext
from releasectl.core.exceptions import HealthCheckTimeout
from releasectl.release.health import HealthVerifier


@click.group()
@pass_context
def health(ctx: ReleaseCtlContext) -> None:
    """Liveness checks.

    \b
    Examples:
        releasectl health check http://10.0.0.5/health
        releasectl health check web-1 --wait --timeout 60
        releasectl health check web-1 --env production
    """
    pass


@health.command("check")
@click.argument("target")
@click.option("-e", "--env", "environment", help="Environment whose health_url applies to a host TARGET")
@click.option("--wait", is_flag=True, help="Poll until healthy instead of a single probe")
@click.option("--timeout", type=float, help="Overall deadline in seconds when waiting")
@click.option("--interval", type=float, help="Seconds between probes when waiting")
@pass_context
def check(
    ctx: ReleaseCtlContext,
    target: str,
    environment: str | None,
    wait: bool,
    timeout: float | None,
    interval: float | None,
) -> None:
    """Probe a liveness endpoint.

    TARGET is a URL or the name of a configured host. Host names resolve
    to the same URL a release would check.
    """
    profile = ctx.profile
    if target.startswith(("http://", "https://")):
        url = target
    else:
        url = profile.health_url(target, environment)

    verifier = HealthVerifier.from_config(profile.health)
    if timeout is not None:
        verifier.timeout = timeout
    if interval is not None:
        verifier.interval = interval

    try:
        if wait:
            try:
                results = verifier.wait_until_healthy(url)
            except HealthCheckTimeout as e:
                ctx.output.print_error(f"{url} not healthy after {e.attempts} attempt(s): {e.last_error}")
                raise click.Abort()
            result = results[-1]
        else:
            result = verifier.probe(url)
    finally:
        verifier.close()

    if ctx.verbose >= 1 or ctx.output_format.value != "table":
        ctx.output.print_data(result.to_dict(), title="Health check")

    if result.healthy:
        ctx.output.print_success(f"{url} healthy (HTTP {result.status_code}, {result.latency * 1000:.0f}ms)")
    else:
        ctx.output.print_error(f"{url} unhealthy: {result.error}")
        raise click.Abort()
