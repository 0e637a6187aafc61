"""Release coordination: build once, deploy per host, verify, roll back."""

import shlex
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, ContextManager

from releasectl.config import EnvironmentConfig, HostConfig, ProfileConfig
from releasectl.core.async_utils import map_blocking, run_sync
from releasectl.core.exceptions import (
    AuthError,
    BuildFailure,
    ConfigError,
    HostBusyError,
    HostKeyMismatchError,
    ReleaseCtlError,
    RemoteCommandError,
    ValidationError,
)
from releasectl.core.logging import StructuredLogger
from releasectl.release.builder import ArtifactBuilder
from releasectl.release.health import HealthVerifier
from releasectl.release.locks import HostLockRegistry
from releasectl.release.models import Release, ReleaseStatus, ReleaseTrigger
from releasectl.release.state import ReleaseStore
from releasectl.release.supervisor import Pm2Supervisor, render_ecosystem
from releasectl.release.transport import Credential, SecureTransport, acquire_credential

ECOSYSTEM_FILE = "ecosystem.config.js"

TransportFactory = Callable[[str, HostConfig, Credential], SecureTransport]
SupervisorFactory = Callable[[SecureTransport], Pm2Supervisor]
VerifierFactory = Callable[[], HealthVerifier]
CredentialProvider = Callable[[str], ContextManager[Credential]]


@dataclass(frozen=True)
class RemotePaths:
    """Release directory layout under the app's deploy path."""

    root: str

    @property
    def releases(self) -> str:
        return f"{self.root}/releases"

    @property
    def current(self) -> str:
        return f"{self.root}/current"

    @property
    def ecosystem(self) -> str:
        return f"{self.current}/{ECOSYSTEM_FILE}"

    def release_dir(self, release_id: str) -> str:
        return f"{self.releases}/{release_id}"


class ReleaseCoordinator:
    """Sequence builds, remote swaps and health checks into releases.

    The coordinator is the only component that decides between rolling back
    and failing. Every release it touches ends in exactly one terminal state.
    """

    def __init__(
        self,
        profile: ProfileConfig,
        store: ReleaseStore,
        locks: HostLockRegistry | None = None,
        builder: ArtifactBuilder | None = None,
        transport_factory: TransportFactory | None = None,
        supervisor_factory: SupervisorFactory | None = None,
        verifier_factory: VerifierFactory | None = None,
        credential_provider: CredentialProvider = acquire_credential,
    ):
        self._profile = profile
        self._store = store
        self._locks = locks or HostLockRegistry(store.state_dir / "locks")
        self._builder = builder or ArtifactBuilder(profile.build)
        self._transport_factory = transport_factory or SecureTransport
        self._supervisor_factory = supervisor_factory or self._default_supervisor
        self._verifier_factory = verifier_factory or (lambda: HealthVerifier.from_config(profile.health))
        self._credential_provider = credential_provider
        self._logger = StructuredLogger(__name__)

        self._cancelled = threading.Event()
        self._verifiers: set[HealthVerifier] = set()
        self._verifiers_lock = threading.Lock()

    def _default_supervisor(self, transport: SecureTransport) -> Pm2Supervisor:
        app = self._profile.app
        return Pm2Supervisor(transport, pm2=app.pm2, save=app.save_process_list)

    # -- public operations -------------------------------------------------

    def plan(self, trigger: ReleaseTrigger) -> list[dict[str, Any]]:
        """Describe what ``deploy`` would do without side effects."""
        env = self._resolve_environment(trigger.environment)
        paths = RemotePaths(self._profile.app.deploy_path)
        steps = [f"{stage}: {command}" for stage, command in self._builder.stages()]
        steps.append("package: reproducible tar.gz")

        plan = []
        for host_name in env.hosts:
            record = self._store.get_host(host_name)
            plan.append(
                {
                    "host": host_name,
                    "environment": trigger.environment,
                    "source": trigger.source.path,
                    "commit": trigger.source.commit,
                    "build": steps,
                    "release_dir": paths.release_dir("<release-id>"),
                    "health_url": self._profile.health_url(host_name, trigger.environment, strict=False),
                    "last_known_good": record.last_known_good,
                }
            )
        return plan

    def deploy(self, trigger: ReleaseTrigger) -> list[Release]:
        """Build the source once and release it to every host of the environment.

        Returns:
            One terminal Release per host
        """
        env = self._resolve_environment(trigger.environment)
        self._cancelled.clear()

        releases = []
        for host_name in env.hosts:
            release = Release(
                source_ref=trigger.source.commit,
                environment=trigger.environment,
                host=host_name,
                previous_release=self._store.get_host(host_name).last_known_good,
            )
            release.add_event("created", f"Release created for {host_name}")
            self._store.save(release)
            releases.append(release)

        for release in releases:
            self._transition(release, ReleaseStatus.BUILDING)

        try:
            artifact = self._builder.build(trigger.source)
        except BuildFailure as e:
            self._logger.error("Build failed", stage=e.stage, error=e.message)
            for release in releases:
                release.add_event("build_output", e.output[-1000:] if e.output else e.message)
                self._transition(release, ReleaseStatus.FAILED, reason=e.reason, message=str(e.message))
            return releases
        except Exception as e:
            self._logger.exception("Unexpected build error", error=str(e))
            for release in releases:
                self._transition(release, ReleaseStatus.FAILED, reason="internal_error", message=str(e))
            return releases

        for release in releases:
            release.artifact = artifact
            release.source_ref = artifact.source_ref or release.source_ref
            release.add_event("built", f"Artifact {artifact.filename}", {"sha256": artifact.sha256})
            self._store.save(release)

        run_sync(
            map_blocking(
                lambda r: self._release_to_host(r, env),
                releases,
                concurrency=self._profile.deploy.max_parallel_hosts,
            )
        )
        return releases

    def rollback(self, host_name: str, environment: str, to: str | None = None) -> Release:
        """Re-activate an earlier succeeded release on a host.

        Args:
            host_name: Target host
            environment: Environment the host belongs to
            to: Release id to restore; defaults to the newest succeeded
                release other than the current last-known-good

        Returns:
            The terminal rollback Release
        """
        env = self._resolve_environment(environment)
        self._cancelled.clear()
        if host_name not in env.hosts:
            raise ConfigError(f"Host '{host_name}' is not part of environment '{environment}'")

        current = self._store.get_host(host_name).last_known_good
        target = self._find_rollback_target(host_name, current, to)

        release = Release(
            source_ref=target.source_ref,
            environment=environment,
            host=host_name,
            artifact=target.artifact,
            previous_release=current,
            rollback_of=target.deployed_id,
        )
        release.add_event("created", f"Rollback of {host_name} to {target.deployed_id} requested")
        self._store.save(release)

        self._release_to_host(release, env)
        return release

    def cancel(self) -> None:
        """Cancel health waits of the operation in flight.

        Affected releases take the rollback path. The next ``deploy`` or
        ``rollback`` starts uncancelled.
        """
        self._cancelled.set()
        with self._verifiers_lock:
            for verifier in self._verifiers:
                verifier.cancel()

    # -- per-host flow -----------------------------------------------------

    def _resolve_environment(self, name: str) -> EnvironmentConfig:
        env = self._profile.get_environment(name)
        if env.env_file and not Path(env.env_file).expanduser().is_file():
            raise ConfigError(f"Env file not found: {env.env_file}")
        return env

    def _find_rollback_target(self, host_name: str, current: str | None, to: str | None) -> Release:
        if to:
            target = self._store.load(to)
            if target.host != host_name:
                raise ValidationError(f"Release {to} was not deployed to {host_name}")
            if target.status != ReleaseStatus.SUCCEEDED:
                raise ValidationError(f"Release {to} did not succeed (status: {target.status.value})")
            return target

        for candidate in self._store.list(status=ReleaseStatus.SUCCEEDED, host=host_name, limit=1000):
            if candidate.deployed_id != current:
                return candidate
        raise ValidationError(f"No earlier succeeded release to roll {host_name} back to")

    def _release_to_host(self, release: Release, env: EnvironmentConfig) -> Release:
        """Run one host's release to a terminal state. Never raises."""
        log = self._logger.bind(release=release.id, host=release.host)

        try:
            host_config = self._profile.get_host(release.host)
            with self._locks.hold(release.host, release.id, self._profile.deploy.lock_timeout):
                self._abandon_stale(release)
                release.previous_release = self._store.get_host(release.host).last_known_good
                self._run_locked(release, host_config, env, log)
        except HostBusyError as e:
            log.warning("Host busy", holder=e.holder)
            self._fail(release, e.reason, str(e))
        except ReleaseCtlError as e:
            log.error("Release failed", error=str(e))
            self._fail(release, e.reason, str(e))
        except Exception as e:
            log.exception("Unexpected release error", error=str(e))
            self._fail(release, "internal_error", str(e))

        if not release.is_complete:
            self._fail(release, "internal_error", "Release ended without a terminal state")
        return release

    def _abandon_stale(self, release: Release) -> None:
        # Holding the host lock means no other live release can be active here
        for stale in self._store.list_active(host=release.host):
            if stale.id == release.id:
                continue
            self._logger.warning("Marking abandoned release failed", release=stale.id, host=stale.host)
            self._transition(stale, ReleaseStatus.FAILED, reason="abandoned", message="Release process died while active")

    def _run_locked(
        self,
        release: Release,
        host_config: HostConfig,
        env: EnvironmentConfig,
        log: StructuredLogger,
    ) -> None:
        paths = RemotePaths(self._profile.app.deploy_path)

        with self._credential_provider(host_config.credential) as credential:
            transport = self._transport_factory(release.host, host_config, credential)
            self._transition(release, ReleaseStatus.DEPLOYING)

            try:
                transport.open()
            except ReleaseCtlError as e:
                # Nothing was changed remotely
                log.error("Could not open session", error=str(e))
                self._fail(release, e.reason, str(e))
                return

            try:
                supervisor = self._supervisor_factory(transport)
                try:
                    self._deploy_to_host(release, transport, supervisor, env, paths)
                    self._transition(release, ReleaseStatus.HEALTH_CHECKING)
                    self._verify(release)
                except (HostKeyMismatchError, AuthError) as e:
                    log.error("Session no longer trusted", error=str(e))
                    self._fail(release, e.reason, str(e))
                    return
                except ReleaseCtlError as e:
                    log.warning("Release step failed, rolling back", error=str(e))
                    self._attempt_rollback(release, transport, supervisor, paths, e)
                    return

                self._succeed(release, transport, paths)
            finally:
                transport.close()

    def _remote(self, transport: SecureTransport, command: str) -> str:
        result = transport.run(command)
        if not result.ok:
            raise RemoteCommandError(
                f"Remote command failed on {transport.name} with exit code {result.exit_code}",
                command=command,
                exit_code=result.exit_code,
                stderr=result.stderr.strip(),
            )
        return result.stdout

    def _deploy_to_host(
        self,
        release: Release,
        transport: SecureTransport,
        supervisor: Pm2Supervisor,
        env: EnvironmentConfig,
        paths: RemotePaths,
    ) -> None:
        app = self._profile.app
        release_dir = paths.release_dir(release.deployed_id)
        q_dir = shlex.quote(release_dir)

        if release.rollback_of:
            self._remote(transport, f"test -d {q_dir}")
            release.add_event("reuse", f"Reusing {release_dir}")
        else:
            if release.artifact is None:
                raise ValidationError("Release has no artifact")

            archive = f"{release_dir}.tar.gz"
            self._remote(transport, f"mkdir -p {q_dir}")
            transport.copy(release.artifact.path, archive)

            remote_sum = self._remote(transport, f"sha256sum {shlex.quote(archive)}").split()
            if not remote_sum or remote_sum[0] != release.artifact.sha256:
                raise RemoteCommandError(
                    f"Artifact checksum mismatch on {release.host}",
                    command="sha256sum",
                    exit_code=0,
                )

            self._remote(
                transport,
                f"tar -xzf {shlex.quote(archive)} -C {q_dir} && rm -f {shlex.quote(archive)}",
            )
            release.add_event("uploaded", f"Artifact unpacked into {release_dir}")

            if env.env_file:
                transport.copy(str(Path(env.env_file).expanduser()), f"{release_dir}/.env")
                release.add_event("env_file", "Env file uploaded")

            if app.install_command:
                self._remote(transport, f"cd {q_dir} && {app.install_command}")
                release.add_event("installed", app.install_command)

            self._upload_ecosystem(transport, release_dir, paths, env)

        self._activate(transport, paths, release.deployed_id)
        release.add_event("activated", f"current -> {release_dir}")

        status = supervisor.reload_or_start(app.name, paths.ecosystem)
        release.add_event("process", f"{status.name} is {status.status}", status.to_dict())

    def _upload_ecosystem(
        self,
        transport: SecureTransport,
        release_dir: str,
        paths: RemotePaths,
        env: EnvironmentConfig,
    ) -> None:
        content = render_ecosystem(self._profile.app, cwd=paths.current, env=env.env)
        with tempfile.TemporaryDirectory(prefix="releasectl-eco-") as tmp:
            local = Path(tmp) / ECOSYSTEM_FILE
            local.write_text(content)
            transport.copy(local, f"{release_dir}/{ECOSYSTEM_FILE}")

    def _activate(self, transport: SecureTransport, paths: RemotePaths, release_id: str) -> None:
        """Atomically point ``current`` at a release directory."""
        target = shlex.quote(f"releases/{release_id}")
        tmp_link = shlex.quote(f"{paths.current}.tmp")
        self._remote(
            transport,
            f"cd {shlex.quote(paths.root)} && ln -sfn {target} {tmp_link} "
            f"&& mv -Tf {tmp_link} {shlex.quote(paths.current)}",
        )

    def _verify(self, release: Release) -> None:
        url = self._profile.health_url(release.host, release.environment)
        verifier = self._verifier_factory()

        with self._verifiers_lock:
            self._verifiers.add(verifier)
            if self._cancelled.is_set():
                verifier.cancel()

        try:
            results = verifier.wait_until_healthy(url)
        finally:
            with self._verifiers_lock:
                self._verifiers.discard(verifier)
            verifier.close()

        last = results[-1]
        release.add_event(
            "healthy",
            f"{url} returned {last.status_code} after {len(results)} attempt(s)",
            last.to_dict(),
        )

    def _succeed(self, release: Release, transport: SecureTransport, paths: RemotePaths) -> None:
        self._transition(release, ReleaseStatus.SUCCEEDED)
        self._store.set_last_known_good(release.host, release.deployed_id, address=transport.address)
        self._prune(release, transport, paths)

    def _prune(self, release: Release, transport: SecureTransport, paths: RemotePaths) -> None:
        keep = self._profile.app.keep_releases
        protected = {release.deployed_id, release.previous_release}

        try:
            listing = self._remote(transport, f"ls -1t {shlex.quote(paths.releases)}")
        except ReleaseCtlError as e:
            self._logger.warning("Could not list releases for pruning", host=release.host, error=str(e))
            return

        names = [n for n in listing.split() if n and not n.endswith(".tar.gz")]
        stale = [n for n in names[keep:] if n not in protected]
        if not stale:
            return

        targets = " ".join(shlex.quote(paths.release_dir(n)) for n in stale)
        try:
            self._remote(transport, f"rm -rf {targets}")
            self._logger.info("Pruned old releases", host=release.host, count=len(stale))
        except ReleaseCtlError as e:
            self._logger.warning("Pruning old releases failed", host=release.host, error=str(e))

    def _attempt_rollback(
        self,
        release: Release,
        transport: SecureTransport,
        supervisor: Pm2Supervisor,
        paths: RemotePaths,
        cause: ReleaseCtlError,
    ) -> None:
        target = release.previous_release
        release.rollback_attempts += 1
        release.add_event(
            "rollback_started",
            f"Rolling back to {target}" if target else "No last-known-good release",
            {"cause": cause.reason, "error": str(cause)},
        )

        if not target:
            self._fail(release, f"{cause.reason};rollback_unavailable", str(cause))
            return

        try:
            self._activate(transport, paths, target)
            status = supervisor.reload_or_start(self._profile.app.name, paths.ecosystem)
        except ReleaseCtlError as e:
            self._logger.error("Rollback failed", release=release.id, host=release.host, error=str(e))
            release.add_event("rollback_failed", str(e))
            self._fail(release, f"{cause.reason};rollback_failed", f"{cause}; rollback failed: {e}")
            return

        release.add_event("rollback_complete", f"{status.name} is {status.status}", status.to_dict())
        self._transition(release, ReleaseStatus.ROLLED_BACK, reason=cause.reason, message=str(cause))

    # -- state helpers -----------------------------------------------------

    def _transition(
        self,
        release: Release,
        status: ReleaseStatus,
        reason: str | None = None,
        message: str = "",
    ) -> None:
        release.transition(status, reason=reason, message=message)
        self._store.save(release)
        self._logger.info(f"Release {status.value}", release=release.id, host=release.host)

    def _fail(self, release: Release, reason: str, message: str) -> None:
        if release.is_complete:
            return
        self._transition(release, ReleaseStatus.FAILED, reason=reason, message=message)
