"""Local artifact builder."""

import fnmatch
import gzip
import hashlib
import os
import shlex
import subprocess
import tarfile
import uuid
from pathlib import Path

from releasectl.config import BuildConfig
from releasectl.core.exceptions import BuildFailure
from releasectl.core.logging import get_logger
from releasectl.release.models import Artifact, SourceRef

logger = get_logger(__name__)

# Keep the tail of stage output for error reports
OUTPUT_TAIL = 4000


class ArtifactBuilder:
    """Run install, test and build stages, then package a reproducible bundle."""

    def __init__(self, config: BuildConfig):
        self._config = config

    def stages(self) -> list[tuple[str, str]]:
        """Return the configured (stage, command) pairs in execution order."""
        ordered = [
            ("install", self._config.install),
            ("test", self._config.test),
            ("build", self._config.build),
        ]
        return [(stage, command) for stage, command in ordered if command]

    def build(self, source: SourceRef) -> Artifact:
        """Build an artifact from a source tree.

        Args:
            source: Source tree and expected commit

        Returns:
            The packaged artifact

        Raises:
            BuildFailure: On the first failing stage
        """
        source_dir = Path(source.path).resolve()
        if not source_dir.is_dir():
            raise BuildFailure(f"Source directory not found: {source_dir}", stage="resolve")

        commit = self.resolve_commit(source_dir, source.commit)

        for stage, command in self.stages():
            self._run_stage(stage, command, source_dir)

        output_dir = Path(self._config.output_dir)
        if not output_dir.is_absolute():
            output_dir = source_dir / output_dir

        artifact = self._package(source_dir, output_dir, commit)
        logger.info(f"Built artifact {artifact.filename} ({artifact.size} bytes) from {commit or 'working tree'}")
        return artifact

    def resolve_commit(self, source_dir: Path, expected: str | None) -> str | None:
        """Resolve HEAD of a git work tree and check it against the expected commit."""
        if not (source_dir / ".git").exists():
            return expected

        try:
            result = subprocess.run(
                ["git", "rev-parse", "HEAD"],
                cwd=source_dir,
                capture_output=True,
                text=True,
                timeout=30,
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise BuildFailure(f"Failed to resolve source commit: {e}", stage="resolve")

        if result.returncode != 0:
            raise BuildFailure(
                "Failed to resolve source commit",
                stage="resolve",
                exit_code=result.returncode,
                output=result.stderr.strip(),
            )

        head = result.stdout.strip()
        if expected and not head.startswith(expected):
            raise BuildFailure(
                f"Source tree is at {head[:12]}, expected {expected[:12]}",
                stage="resolve",
                details={"head": head, "expected": expected},
            )
        return head

    def _run_stage(self, stage: str, command: str, cwd: Path) -> None:
        logger.info(f"Running {stage} stage: {command}")

        try:
            result = subprocess.run(
                shlex.split(command),
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self._config.timeout,
            )
        except subprocess.TimeoutExpired:
            raise BuildFailure(
                f"Stage '{stage}' timed out after {self._config.timeout}s",
                stage=stage,
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise BuildFailure(f"Stage '{stage}' could not run: {e}", stage=stage)

        if result.returncode != 0:
            output = ((result.stdout or "") + (result.stderr or ""))[-OUTPUT_TAIL:]
            raise BuildFailure(
                f"Stage '{stage}' failed with exit code {result.returncode}",
                stage=stage,
                exit_code=result.returncode,
                output=output,
            )

    def _is_excluded(self, rel_path: str) -> bool:
        parts = rel_path.split("/")
        for pattern in self._config.exclude:
            if fnmatch.fnmatch(rel_path, pattern):
                return True
            if any(fnmatch.fnmatch(part, pattern) for part in parts):
                return True
        return False

    def collect_files(self, source_dir: Path, skip: Path | None = None) -> list[str]:
        """List files to package as sorted POSIX paths relative to the source."""
        files: list[str] = []

        for root, dirs, filenames in os.walk(source_dir):
            root_path = Path(root)
            rel_root = root_path.relative_to(source_dir).as_posix()

            kept_dirs = []
            for d in sorted(dirs):
                rel = d if rel_root == "." else f"{rel_root}/{d}"
                full = root_path / d
                if self._is_excluded(rel) or (skip is not None and full == skip):
                    continue
                if full.is_symlink():
                    files.append(rel)
                    continue
                kept_dirs.append(d)
            dirs[:] = kept_dirs

            for name in filenames:
                rel = name if rel_root == "." else f"{rel_root}/{name}"
                if not self._is_excluded(rel):
                    files.append(rel)

        return sorted(files)

    def _package(self, source_dir: Path, output_dir: Path, commit: str | None) -> Artifact:
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BuildFailure(f"Cannot create artifact directory: {e}", stage="package")

        files = self.collect_files(source_dir, skip=output_dir.resolve())
        if not files:
            raise BuildFailure("Nothing to package", stage="package")

        tmp_path = output_dir / f".partial-{uuid.uuid4().hex}.tar.gz"
        try:
            with open(tmp_path, "wb") as raw:
                with gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0) as gz:
                    with tarfile.open(fileobj=gz, mode="w", format=tarfile.GNU_FORMAT) as tar:
                        for rel in files:
                            self._add_file(tar, source_dir / rel, rel)

            digest = hashlib.sha256()
            with open(tmp_path, "rb") as f:
                for chunk in iter(lambda: f.read(1024 * 1024), b""):
                    digest.update(chunk)
            sha256 = digest.hexdigest()

            final_path = output_dir / f"{sha256[:16]}.tar.gz"
            os.replace(tmp_path, final_path)
        except OSError as e:
            raise BuildFailure(f"Packaging failed: {e}", stage="package")
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

        return Artifact(
            path=str(final_path),
            sha256=sha256,
            size=final_path.stat().st_size,
            source_ref=commit,
        )

    def _add_file(self, tar: tarfile.TarFile, path: Path, arcname: str) -> None:
        info = tar.gettarinfo(str(path), arcname=arcname)
        info.mtime = 0
        info.uid = info.gid = 0
        info.uname = info.gname = ""

        if info.isfile():
            with open(path, "rb") as f:
                tar.addfile(info, f)
        else:
            tar.addfile(info)
