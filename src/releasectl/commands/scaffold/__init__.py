"""Scaffolding for CI workflows and PM2 ecosystem files."""

from pathlib import Path

import click
from jinja2 import BaseLoader, Environment

from releasectl.config import ProfileConfig
from releasectl.core.context import pass_context, ReleaseCtlContext
from releasectl.release.supervisor import render_ecosystem

WORKFLOW_TEMPLATE = """\
# Generated by releasectl
name: Release {{ environment }}

on:
  push:
    branches:
      - {{ branch }}
  workflow_dispatch:

concurrency:
  group: release-{{ environment }}
  cancel-in-progress: false

jobs:
  release:
    runs-on: ubuntu-latest
    steps:
      - uses: actions/checkout@v4

      - uses: actions/setup-node@v4
        with:
          node-version: "{{ node_version }}"

      - uses: actions/setup-python@v5
        with:
          python-version: "{{ python_version }}"

      - name: Install releasectl
        run: pip install releasectl

      - name: Release
        env:
{%- for name, expr in secrets %}
          {{ name }}: {{ expr }}
{%- endfor %}
        run: releasectl -v release deploy --env {{ environment }} --ref "$GITHUB_SHA" --yes
"""

_jinja_env = Environment(loader=BaseLoader(), keep_trailing_newline=True)


def collect_secret_names(profile: ProfileConfig, environment: str) -> list[str]:
    """Environment variable names the release needs from CI secrets."""
    env = profile.get_environment(environment)
    names: set[str] = set()
    for host_name in env.hosts:
        host = profile.get_host(host_name)
        for value in (host.address, host.user, host.credential):
            if value.startswith("env:"):
                names.add(value[4:])
    return sorted(names)


def render_workflow(
    profile: ProfileConfig,
    environment: str,
    branch: str | None = None,
    node_version: str = "20",
    python_version: str = "3.12",
) -> str:
    """Render a GitHub Actions workflow that releases on push."""
    env = profile.get_environment(environment)
    secrets = [(name, "${{ secrets.%s }}" % name) for name in collect_secret_names(profile, environment)]
    template = _jinja_env.from_string(WORKFLOW_TEMPLATE)
    return template.render(
        environment=environment,
        branch=branch or env.branch,
        node_version=node_version,
        python_version=python_version,
        secrets=secrets,
    )


def _emit(ctx: ReleaseCtlContext, content: str, dest: str | None, language: str) -> None:
    if dest is None:
        ctx.output.print_code(content, language=language)
        return

    path = Path(dest)
    if ctx.dry_run:
        ctx.log_dry_run("write file", {"path": path})
        return
    if path.exists() and not ctx.confirm(f"Overwrite {path}?"):
        ctx.output.print_info("Cancelled")
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    ctx.output.print_success(f"Wrote {path}")


@click.group()
@pass_context
def scaffold(ctx: ReleaseCtlContext) -> None:
    """Generate CI workflow and process manager files.

    \b
    Examples:
        releasectl scaffold workflow --env production
        releasectl scaffold workflow --env production --write .github/workflows/release.yml
        releasectl scaffold ecosystem
    """
    pass


@scaffold.command("workflow")
@click.option("-e", "--env", "environment", required=True, help="Environment to release")
@click.option("--branch", help="Branch that triggers the release (default: environment branch)")
@click.option("--node-version", default="20", help="Node.js version for the build")
@click.option("--write", "dest", metavar="PATH", help="Write to a file instead of stdout")
@pass_context
def workflow(
    ctx: ReleaseCtlContext,
    environment: str,
    branch: str | None,
    node_version: str,
    dest: str | None,
) -> None:
    """Render a GitHub Actions workflow that runs a release on push."""
    content = render_workflow(ctx.profile, environment, branch=branch, node_version=node_version)
    _emit(ctx, content, dest, "yaml")

    secrets = collect_secret_names(ctx.profile, environment)
    if secrets and dest is not None:
        ctx.output.print_info(f"Add repository secrets: {', '.join(secrets)}")


@scaffold.command("ecosystem")
@click.option("-e", "--env", "environment", help="Include an environment's variables")
@click.option("--write", "dest", metavar="PATH", help="Write to a file instead of stdout")
@pass_context
def ecosystem(ctx: ReleaseCtlContext, environment: str | None, dest: str | None) -> None:
    """Render the PM2 ecosystem file used on release hosts."""
    profile = ctx.profile
    extra_env = profile.get_environment(environment).env if environment else None
    content = render_ecosystem(profile.app, cwd=f"{profile.app.deploy_path}/current", env=extra_env)
    _emit(ctx, content, dest, "javascript")
