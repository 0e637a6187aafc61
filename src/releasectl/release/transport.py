"""Authenticated, host-key-verified SSH sessions to target hosts.

Sessions shell out to the system ``ssh``, ``scp`` and ``ssh-keyscan``
binaries. Host keys are always checked strictly and private keys only exist
on disk for the lifetime of an open session.
"""

import base64
import binascii
import hashlib
import os
import shutil
import subprocess
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

from releasectl.config import HostConfig, ReleaseCtlSettings
from releasectl.core.exceptions import (
    AuthError,
    ConfigError,
    ConnectionError,
    HostKeyMismatchError,
    RemoteCommandError,
    TransportError,
)
from releasectl.core.logging import StructuredLogger

HOST_KEY_ERRORS = (
    "host key verification failed",
    "remote host identification has changed",
    "host key is known for",
)
AUTH_ERRORS = (
    "permission denied",
    "too many authentication failures",
    "no supported authentication methods",
)


@dataclass
class CommandResult:
    """Captured output of a remote command."""

    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class Credential:
    """Private key held in a mutable buffer so it can be wiped."""

    def __init__(self, data: bytearray, reference: str):
        self._data = data
        self.reference = reference

    @property
    def key(self) -> bytearray:
        if not self._data:
            raise AuthError(f"Credential {self.reference} has been wiped")
        return self._data

    @property
    def wiped(self) -> bool:
        return not self._data

    def wipe(self) -> None:
        """Overwrite and drop the key material."""
        for i in range(len(self._data)):
            self._data[i] = 0
        self._data.clear()


def _load_key(reference: str) -> bytearray:
    if reference.startswith("env:"):
        name = reference[4:]
        value = os.environ.get(name)
        if not value:
            raise ConfigError(f"Credential environment variable '{name}' is not set")
        data = bytearray(value.encode())
    elif reference.startswith("file:"):
        path = Path(reference[5:]).expanduser()
        try:
            size = path.stat().st_size
            data = bytearray(size)
            with open(path, "rb") as f:
                f.readinto(data)
        except OSError as e:
            raise ConfigError(f"Cannot read credential file {path}: {e}")
    else:
        raise ConfigError(f"Unsupported credential reference: {reference}")

    if not data.endswith(b"\n"):
        data.extend(b"\n")
    return data


@contextmanager
def acquire_credential(reference: str) -> Iterator[Credential]:
    """Load a private key for the duration of the block, wiping it afterwards."""
    credential = Credential(_load_key(reference), reference)
    try:
        yield credential
    finally:
        credential.wipe()


def fingerprint(key_b64: str) -> str:
    """Compute the OpenSSH SHA256 fingerprint of a base64 public key blob."""
    try:
        blob = base64.b64decode(key_b64, validate=True)
    except (binascii.Error, ValueError):
        return ""
    digest = hashlib.sha256(blob).digest()
    return "SHA256:" + base64.b64encode(digest).decode().rstrip("=")


def classify_ssh_error(stderr: str, host: str) -> TransportError:
    """Map ssh client error output onto the transport error taxonomy."""
    lowered = stderr.lower()
    message = stderr.strip().splitlines()[-1] if stderr.strip() else "ssh failed"

    if any(pattern in lowered for pattern in HOST_KEY_ERRORS):
        return HostKeyMismatchError(f"Host key verification failed for {host}: {message}", host=host)
    if any(pattern in lowered for pattern in AUTH_ERRORS):
        return AuthError(f"Authentication rejected by {host}: {message}", host=host)
    return ConnectionError(f"Cannot reach {host}: {message}", host=host)


class SecureTransport:
    """SSH session to a single target host."""

    def __init__(
        self,
        name: str,
        config: HostConfig,
        credential: Credential,
        settings: ReleaseCtlSettings | None = None,
    ):
        self.name = name
        self._config = config
        self._credential = credential
        self._settings = settings or ReleaseCtlSettings()
        self._address = config.get_address()
        self._user = config.get_user()
        self._workdir: Path | None = None
        self._key_path: Path | None = None
        self._known_hosts: str | None = None
        self._logger = StructuredLogger(__name__).bind(host=name)

    @property
    def address(self) -> str:
        return self._address

    @property
    def is_open(self) -> bool:
        return self._key_path is not None

    def __enter__(self) -> "SecureTransport":
        self.open()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def open(self) -> None:
        """Verify the host key, materialise the credentials and log in once.

        Raises:
            HostKeyMismatchError: If the host does not present the known key
            AuthError: If the host rejects the credential
            ConnectionError: If the host cannot be reached
        """
        if self.is_open:
            return

        self._workdir = Path(tempfile.mkdtemp(prefix="releasectl-ssh-"))
        try:
            if self._config.host_key_fingerprint:
                known_line = self._verify_host_key(self._config.host_key_fingerprint)
                known_hosts = self._workdir / "known_hosts"
                known_hosts.write_text(known_line + "\n")
                self._known_hosts = str(known_hosts)
            else:
                self._known_hosts = self._config.get_known_hosts()

            key_path = self._workdir / "id"
            fd = os.open(key_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(self._credential.key)
            self._key_path = key_path

            # Nothing is handed out until one command has gone through
            self.run("true", timeout=self._config.connect_timeout + 5)
        except BaseException:
            self.close()
            raise

        self._logger.debug("Session opened", address=self._address)

    def close(self) -> None:
        """Wipe the on-disk key and remove session files."""
        if self._key_path is not None and self._key_path.exists():
            try:
                size = self._key_path.stat().st_size
                with open(self._key_path, "r+b") as f:
                    f.write(b"\0" * size)
                    f.flush()
                    os.fsync(f.fileno())
            finally:
                self._key_path.unlink()
        self._key_path = None

        if self._workdir is not None:
            shutil.rmtree(self._workdir, ignore_errors=True)
            self._workdir = None
        self._known_hosts = None

    def _host_pattern(self) -> str:
        if self._config.port == 22:
            return self._address
        return f"[{self._address}]:{self._config.port}"

    def _verify_host_key(self, expected: str) -> str:
        cmd = [
            self._settings.keyscan_binary,
            "-p",
            str(self._config.port),
            "-T",
            str(self._config.connect_timeout),
            self._address,
        ]
        result = self._exec(cmd, timeout=self._config.connect_timeout + 5)

        offered: list[str] = []
        for line in result.stdout.splitlines():
            if not line.strip() or line.startswith("#"):
                continue
            parts = line.split()
            if len(parts) < 3:
                continue
            key_type, key_b64 = parts[1], parts[2]
            key_fp = fingerprint(key_b64)
            offered.append(key_fp)
            if key_fp == expected:
                return f"{self._host_pattern()} {key_type} {key_b64}"

        if not offered:
            raise ConnectionError(
                f"No host keys received from {self._address}:{self._config.port}",
                host=self.name,
            )

        self._logger.error("Host key mismatch", expected=expected, offered=",".join(offered))
        raise HostKeyMismatchError(
            f"Host key for {self._address} does not match {expected}",
            host=self.name,
            details={"offered": offered},
        )

    def _ssh_options(self) -> list[str]:
        if not self.is_open:
            raise TransportError("Session is not open", host=self.name)
        return [
            "-i",
            str(self._key_path),
            "-o",
            "BatchMode=yes",
            "-o",
            "IdentitiesOnly=yes",
            "-o",
            "StrictHostKeyChecking=yes",
            "-o",
            f"UserKnownHostsFile={self._known_hosts}",
            "-o",
            f"ConnectTimeout={self._config.connect_timeout}",
            "-o",
            "LogLevel=ERROR",
        ]

    def _exec(self, cmd: list[str], timeout: float) -> CommandResult:
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                stdin=subprocess.DEVNULL,
            )
        except subprocess.TimeoutExpired:
            raise ConnectionError(
                f"Command to {self._address} timed out after {timeout}s",
                host=self.name,
            )
        except OSError as e:
            raise TransportError(f"Failed to run {cmd[0]}: {e}", host=self.name)

        return CommandResult(
            stdout=result.stdout or "",
            stderr=result.stderr or "",
            exit_code=result.returncode,
        )

    def run(self, command: str, timeout: float | None = None) -> CommandResult:
        """Run a command on the host.

        Non-zero exit codes of the remote command are returned, not raised.

        Raises:
            ConnectionError, AuthError, HostKeyMismatchError: On ssh failures
        """
        cmd = [
            self._settings.ssh_binary,
            *self._ssh_options(),
            "-p",
            str(self._config.port),
            f"{self._user}@{self._address}",
            command,
        ]
        self._logger.debug("Running remote command", command=command)
        result = self._exec(cmd, timeout or self._config.command_timeout)

        # ssh reserves 255 for its own failures
        if result.exit_code == 255:
            raise classify_ssh_error(result.stderr, self.name)
        return result

    def copy(self, local_path: str | Path, remote_path: str, timeout: float | None = None) -> None:
        """Copy a local file to the host."""
        cmd = [
            self._settings.scp_binary,
            *self._ssh_options(),
            "-P",
            str(self._config.port),
            "-q",
            str(local_path),
            f"{self._user}@{self._address}:{remote_path}",
        ]
        self._logger.debug("Copying file", local=str(local_path), remote=remote_path)
        result = self._exec(cmd, timeout or self._config.command_timeout)

        if result.ok:
            return

        lowered = result.stderr.lower()
        if result.exit_code == 255 or any(p in lowered for p in HOST_KEY_ERRORS + AUTH_ERRORS):
            raise classify_ssh_error(result.stderr, self.name)
        raise RemoteCommandError(
            f"Copy to {self.name}:{remote_path} failed",
            command="scp",
            exit_code=result.exit_code,
            stderr=result.stderr.strip(),
        )
