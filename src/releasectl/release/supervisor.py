"""PM2 process supervisor client over a secure transport."""

import json
import shlex
from dataclasses import dataclass, field
from typing import Any

from jinja2 import BaseLoader, Environment

from releasectl.config import AppConfig
from releasectl.core.exceptions import SupervisorError
from releasectl.core.logging import get_logger
from releasectl.release.transport import CommandResult, SecureTransport

logger = get_logger(__name__)

NOT_FOUND_MARKERS = ("not found", "process or namespace")

ECOSYSTEM_TEMPLATE = """\
// Generated by releasectl. Changes are overwritten on the next release.
module.exports = {
  apps: [
    {
      name: {{ app.name | tojson }},
      cwd: {{ cwd | tojson }},
      script: {{ app.script | tojson }},
{%- if app.args %}
      args: {{ app.args | tojson }},
{%- endif %}
      instances: {{ app.instances | tojson }},
      exec_mode: {{ app.exec_mode | tojson }},
      autorestart: true,
      watch: false,
{%- if app.max_memory_restart %}
      max_memory_restart: {{ app.max_memory_restart | tojson }},
{%- endif %}
      env: {{ env | tojson }},
    },
  ],
};
"""

_jinja_env = Environment(loader=BaseLoader(), keep_trailing_newline=True)


def render_ecosystem(app: AppConfig, cwd: str, env: dict[str, str] | None = None) -> str:
    """Render a PM2 ecosystem file for the application."""
    template = _jinja_env.from_string(ECOSYSTEM_TEMPLATE)
    merged_env = {"NODE_ENV": "production", **app.env, **(env or {})}
    return template.render(app=app, cwd=cwd, env=merged_env)


@dataclass
class ProcessStatus:
    """Aggregated PM2 status of an application across its instances."""

    name: str
    status: str
    instances: int = 0
    pids: list[int] = field(default_factory=list)
    restarts: int = 0

    @property
    def is_running(self) -> bool:
        return self.status == "online"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "status": self.status,
            "instances": self.instances,
            "pids": self.pids,
            "restarts": self.restarts,
        }


class Pm2Supervisor:
    """Issue idempotent lifecycle commands to PM2 on a remote host."""

    def __init__(
        self,
        transport: SecureTransport,
        pm2: str = "pm2",
        save: bool = True,
        timeout: float = 120,
    ):
        self._transport = transport
        self._pm2 = pm2
        self._save = save
        self._timeout = timeout

    def _run(self, args: str) -> CommandResult:
        command = f"{self._pm2} {args}"
        result = self._transport.run(command, timeout=self._timeout)
        if not result.ok:
            raise SupervisorError(
                f"'{command}' failed on {self._transport.name} with exit code {result.exit_code}",
                command=command,
                exit_code=result.exit_code,
                stderr=result.stderr.strip(),
            )
        return result

    def list_processes(self) -> list[dict[str, Any]]:
        """Return the raw ``pm2 jlist`` entries."""
        result = self._run("jlist")
        stdout = result.stdout

        # pm2 may print daemon banners such as "[PM2] Spawning..." before the JSON
        offset = 0
        for line in stdout.splitlines(keepends=True):
            if line.lstrip().startswith("["):
                try:
                    processes = json.loads(stdout[offset:])
                except ValueError:
                    pass
                else:
                    return processes if isinstance(processes, list) else []
            offset += len(line)

        raise SupervisorError(
            "Unparseable pm2 jlist output",
            command=f"{self._pm2} jlist",
            exit_code=result.exit_code,
            stderr=stdout[-500:],
        )

    def status(self, app_name: str) -> ProcessStatus | None:
        """Return the aggregated status of an app, or None if PM2 does not know it."""
        entries = [p for p in self.list_processes() if p.get("name") == app_name]
        if not entries:
            return None

        statuses = [p.get("pm2_env", {}).get("status", "unknown") for p in entries]
        not_online = [s for s in statuses if s != "online"]

        return ProcessStatus(
            name=app_name,
            status=not_online[0] if not_online else "online",
            instances=len(entries),
            pids=[p["pid"] for p in entries if p.get("pid")],
            restarts=sum(p.get("pm2_env", {}).get("restart_time", 0) for p in entries),
        )

    def reload_or_start(self, app_name: str, ecosystem: str) -> ProcessStatus:
        """Gracefully reload the app, cold-starting it when it is not running.

        Args:
            app_name: PM2 application name
            ecosystem: Remote path of the ecosystem file

        Returns:
            Resulting process status

        Raises:
            SupervisorError: If a PM2 command fails or the app is not online afterwards
        """
        eco = shlex.quote(ecosystem)
        app = shlex.quote(app_name)
        current = self.status(app_name)

        if current is not None and current.is_running:
            try:
                self._run(f"reload {eco} --only {app} --update-env")
                logger.info(f"Reloaded {app_name} on {self._transport.name}")
            except SupervisorError as e:
                if not any(marker in e.stderr.lower() for marker in NOT_FOUND_MARKERS):
                    raise
                logger.warning(f"{app_name} vanished before reload on {self._transport.name}, starting it")
                self._start(eco, app)
        else:
            self._start(eco, app)

        if self._save:
            self._run("save")

        final = self.status(app_name)
        if final is None or not final.is_running:
            raise SupervisorError(
                f"{app_name} is not online on {self._transport.name} "
                f"(status: {final.status if final else 'missing'})",
                command=f"{self._pm2} jlist",
                exit_code=0,
            )
        return final

    def _start(self, eco: str, app: str) -> None:
        self._run(f"start {eco} --only {app}")
        logger.info(f"Started {app} on {self._transport.name}")

    def stop(self, app_name: str) -> None:
        """Stop the app."""
        self._run(f"stop {shlex.quote(app_name)}")
