"""Build runner for executing the container build tool.

This module handles:
- Composing ``singularity build`` commands from image references
- Executing one build per reference with subprocess
- Capturing stdout/stderr to log files or memory
- Terminating in-flight builds on cancellation

Builds apply no timeout of their own; callers stop them with ``cancel()``.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any

from singularity_sync.builds.artifacts import (
    DEFAULT_EXTENSION,
    artifact_path,
    build_log_path,
    describe_artifact,
)
from singularity_sync.manifest.reference import ImageReference
from singularity_sync.types import ArtifactInfo, BuildStatus, FailureKind

if TYPE_CHECKING:
    from singularity_sync.config import Settings

logger = logging.getLogger(__name__)

# Lines of captured output attached to a failure when no log dir is set
OUTPUT_TAIL_LINES = 20

# Seconds to wait after SIGTERM before killing a cancelled build
TERMINATE_GRACE_SECONDS = 10.0


@dataclass(frozen=True)
class BuildOutcome:
    """Result of building one manifest entry.

    Attributes:
        image: Manifest text of the entry.
        position: Zero-based manifest index, set by the orchestrator.
        status: Succeeded or failed.
        reference: Parsed reference (None for invalid entries).
        artifact_path: Built image path (set iff succeeded).
        error_kind: Failure cause (set iff failed).
        error_detail: Human readable failure description (set iff failed).
        exit_code: Build tool exit code, if it ran.
        command: The command that was executed.
        log_path: Path to the build log file, if one was written.
        reused: True if an existing image was kept instead of rebuilt.
        artifact: Size and checksum of the built image.
        started_at: Build start time.
        finished_at: Build finish time.
    """

    image: str
    status: BuildStatus
    reference: ImageReference | None = None
    artifact_path: Path | None = None
    error_kind: FailureKind | None = None
    error_detail: str | None = None
    exit_code: int | None = None
    command: str | None = None
    log_path: Path | None = None
    reused: bool = False
    artifact: ArtifactInfo | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    position: int | None = None

    def __post_init__(self) -> None:
        if self.status is BuildStatus.SUCCEEDED:
            if self.artifact_path is None or self.error_kind is not None:
                raise ValueError("a succeeded outcome needs an artifact and no error")
        elif self.error_kind is None or self.artifact_path is not None:
            raise ValueError("a failed outcome needs an error and no artifact")

    @classmethod
    def success(
        cls, reference: ImageReference, artifact_path: Path, **kwargs: Any
    ) -> BuildOutcome:
        return cls(
            image=reference.to_string(),
            status=BuildStatus.SUCCEEDED,
            reference=reference,
            artifact_path=artifact_path,
            **kwargs,
        )

    @classmethod
    def failure(
        cls,
        image: str,
        error_kind: FailureKind,
        error_detail: str,
        reference: ImageReference | None = None,
        **kwargs: Any,
    ) -> BuildOutcome:
        return cls(
            image=image,
            status=BuildStatus.FAILED,
            reference=reference,
            error_kind=error_kind,
            error_detail=error_detail,
            **kwargs,
        )

    @property
    def succeeded(self) -> bool:
        return self.status is BuildStatus.SUCCEEDED

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        result: dict[str, Any] = {
            "position": self.position,
            "image": self.image,
            "status": self.status.value,
            "reused": self.reused,
        }
        if self.artifact_path is not None:
            result["artifact_path"] = str(self.artifact_path)
        if self.artifact is not None:
            result["size_bytes"] = self.artifact.size_bytes
            result["sha256"] = self.artifact.sha256
        if self.error_kind is not None:
            result["error_kind"] = self.error_kind.value
            result["error_detail"] = self.error_detail
        if self.exit_code is not None:
            result["exit_code"] = self.exit_code
        if self.log_path is not None:
            result["log_path"] = str(self.log_path)
        if self.duration is not None:
            result["duration_seconds"] = round(self.duration, 3)
        return result


class BuildInvoker(ABC):
    """Builds one image reference into ``working_dir``.

    Implementations never raise for build failures; they return a failed
    ``BuildOutcome`` instead.
    """

    @abstractmethod
    def build(self, reference: ImageReference, working_dir: Path) -> BuildOutcome:
        """Build ``reference`` and return its outcome."""

    def cancel(self) -> None:
        """Stop in-flight and future builds. The default does nothing."""


def _tail(output: str | None, lines: int = OUTPUT_TAIL_LINES) -> str:
    if not output:
        return ""
    return "\n".join(output.rstrip().splitlines()[-lines:])


class SingularityBuilder(BuildInvoker):
    """Runs ``<tool> build [--force] <dest> docker://<org>/<repo>``.

    Args:
        build_tool: Executable name or path.
        extension: Image file extension.
        scheme: Source URI scheme.
        force: Overwrite existing images instead of reusing them.
        log_dir: Directory for per-image logs (output is kept in memory if None).
        env_override: Optional environment variable overrides.
    """

    def __init__(
        self,
        build_tool: str = "singularity",
        extension: str = DEFAULT_EXTENSION,
        scheme: str = "docker",
        force: bool = False,
        log_dir: Path | None = None,
        env_override: dict[str, str] | None = None,
    ) -> None:
        self.build_tool = build_tool
        self.extension = extension
        self.scheme = scheme
        self.force = force
        self.log_dir = log_dir
        self.env_override = env_override
        self._processes: set[subprocess.Popen[str]] = set()
        self._lock = threading.Lock()
        self._cancelled = threading.Event()

    @classmethod
    def from_settings(cls, settings: Settings) -> SingularityBuilder:
        return cls(
            build_tool=settings.build_tool,
            extension=settings.artifact_extension,
            scheme=settings.source_scheme,
            force=settings.force,
            log_dir=settings.log_dir,
        )

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def destination(self, reference: ImageReference, working_dir: Path) -> Path:
        return artifact_path(reference, working_dir, self.extension)

    def compose_command(
        self, reference: ImageReference, destination: Path
    ) -> list[str]:
        """Compose the build command for a reference.

        Args:
            reference: Image to build.
            destination: Output image path.

        Returns:
            Command as list of strings suitable for subprocess.
        """
        cmd = [self.build_tool, "build"]
        if self.force:
            cmd.append("--force")
        cmd.append(str(destination))
        cmd.append(reference.source_uri(self.scheme))
        return cmd

    def _env(self) -> dict[str, str] | None:
        if not self.env_override:
            return None
        env = dict(os.environ)
        env.update(self.env_override)
        return env

    def _track(self, proc: subprocess.Popen[str]) -> None:
        with self._lock:
            self._processes.add(proc)
            if self._cancelled.is_set():
                proc.terminate()

    def _untrack(self, proc: subprocess.Popen[str]) -> None:
        with self._lock:
            self._processes.discard(proc)

    @staticmethod
    def _terminate(proc: subprocess.Popen[str]) -> None:
        if proc.poll() is not None:
            return
        logger.warning("Terminating build process %d", proc.pid)
        proc.terminate()
        try:
            proc.wait(timeout=TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning("Killing build process %d", proc.pid)
            proc.kill()
            proc.wait()

    def cancel(self) -> None:
        """Terminate every in-flight build and refuse new ones."""
        self._cancelled.set()
        with self._lock:
            processes = list(self._processes)
        for proc in processes:
            self._terminate(proc)

    def build(self, reference: ImageReference, working_dir: Path) -> BuildOutcome:
        """Build one image.

        Args:
            reference: Image to build.
            working_dir: Existing directory that receives the image.

        Returns:
            BuildOutcome describing success or the specific failure.
        """
        destination = self.destination(reference, working_dir)
        cmd = self.compose_command(reference, destination)
        cmd_str = shlex.join(cmd)
        image = reference.to_string()

        if self.cancelled:
            return BuildOutcome.failure(
                image,
                FailureKind.CANCELLED,
                "Build cancelled before it started",
                reference=reference,
                command=cmd_str,
            )

        if destination.exists() and not self.force:
            logger.info("Reusing existing image %s", destination)
            return BuildOutcome.success(
                reference,
                destination,
                reused=True,
                artifact=describe_artifact(destination),
            )

        logger.info("Executing build: %s", cmd_str)
        started_at = datetime.now(timezone.utc)
        log_path: Path | None = None
        log_file: IO[str] | None = None

        if self.log_dir is not None:
            log_path = build_log_path(reference, self.log_dir)
            try:
                self.log_dir.mkdir(parents=True, exist_ok=True)
                log_file = log_path.open("w")
            except OSError as e:
                error_message = (
                    f"Build not started: cannot open build log {log_path}: {e}"
                )
                logger.error(error_message)
                return BuildOutcome.failure(
                    image,
                    FailureKind.TOOL_LAUNCH_FAILED,
                    error_message,
                    reference=reference,
                    command=cmd_str,
                    started_at=started_at,
                    finished_at=datetime.now(timezone.utc),
                )

        try:
            if log_file is not None:
                log_file.write(f"# Command: {cmd_str}\n")
                log_file.write(f"# Started: {started_at.isoformat()}\n")
                log_file.write("# " + "=" * 70 + "\n\n")
                log_file.flush()

            try:
                proc = subprocess.Popen(
                    cmd,
                    stdout=log_file if log_file is not None else subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    text=True,
                    errors="replace",
                    env=self._env(),
                )
            except OSError as e:
                error_message = f"Failed to launch {self.build_tool}: {e}"
                logger.error(error_message)
                return BuildOutcome.failure(
                    image,
                    FailureKind.TOOL_LAUNCH_FAILED,
                    error_message,
                    reference=reference,
                    command=cmd_str,
                    log_path=log_path,
                    started_at=started_at,
                    finished_at=datetime.now(timezone.utc),
                )

            self._track(proc)
            try:
                output, _ = proc.communicate()
            except KeyboardInterrupt:
                self._terminate(proc)
                raise
            finally:
                self._untrack(proc)

            exit_code = proc.returncode
            finished_at = datetime.now(timezone.utc)

            if log_file is not None:
                log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
                log_file.write(f"# Exit code: {exit_code}\n")
                duration = (finished_at - started_at).total_seconds()
                log_file.write(f"# Duration: {duration:.1f}s\n")
        finally:
            if log_file is not None:
                log_file.close()

        common: dict[str, Any] = {
            "reference": reference,
            "exit_code": exit_code,
            "command": cmd_str,
            "log_path": log_path,
            "started_at": started_at,
            "finished_at": finished_at,
        }

        if exit_code != 0:
            if self.cancelled:
                error_kind = FailureKind.CANCELLED
                error_message = f"Build cancelled (exit code {exit_code})"
            else:
                error_kind = FailureKind.TOOL_EXIT_FAILED
                error_message = f"{self.build_tool} exited with code {exit_code}"
            if log_path is not None:
                error_message = f"{error_message}. See log: {log_path}"
            elif tail := _tail(output):
                error_message = f"{error_message}:\n{tail}"
            logger.error("Build of %s failed: %s", image, error_message)
            return BuildOutcome.failure(image, error_kind, error_message, **common)

        if not destination.exists():
            error_message = (
                f"{self.build_tool} exited successfully but did not produce "
                f"{destination}"
            )
            logger.error(error_message)
            return BuildOutcome.failure(
                image, FailureKind.ARTIFACT_MISSING, error_message, **common
            )

        logger.info("Built %s -> %s", image, destination)
        common.pop("reference")
        return BuildOutcome.success(
            reference,
            destination,
            artifact=describe_artifact(destination),
            **common,
        )


__all__ = [
    "OUTPUT_TAIL_LINES",
    "BuildInvoker",
    "BuildOutcome",
    "SingularityBuilder",
]
