"""Shared type definitions for singularity_sync.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum


class BuildStatus(str, Enum):
    """Status of a single image build."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RunStatus(str, Enum):
    """Terminal state of an orchestrator run."""

    ALL_SUCCEEDED = "all_succeeded"
    PARTIAL_FAILURE = "partial_failure"
    ABORTED_EARLY = "aborted_early"


class AbortPolicy(str, Enum):
    """What the orchestrator does after a failed entry."""

    CONTINUE_ON_FAILURE = "continue-on-failure"
    ABORT_ON_FIRST_FAILURE = "abort-on-first-failure"


class FailureKind(str, Enum):
    """Cause of a failed build outcome."""

    INVALID_FORMAT = "invalid_format"
    TOOL_LAUNCH_FAILED = "tool_launch_failed"
    TOOL_EXIT_FAILED = "tool_exit_failed"
    ARTIFACT_MISSING = "artifact_missing"
    CANCELLED = "cancelled"


# Process exit codes for each run status. 2 is left to Typer usage errors.
EXIT_CODES: dict[RunStatus, int] = {
    RunStatus.ALL_SUCCEEDED: 0,
    RunStatus.PARTIAL_FAILURE: 1,
    RunStatus.ABORTED_EARLY: 3,
}
EXIT_MANIFEST_ERROR = 4
EXIT_CANCELLED = 130


@dataclass(frozen=True)
class ArtifactInfo:
    """Information about a built image file."""

    filename: str
    size_bytes: int
    sha256: str


__all__ = [
    "EXIT_CANCELLED",
    "EXIT_CODES",
    "EXIT_MANIFEST_ERROR",
    "AbortPolicy",
    "ArtifactInfo",
    "BuildStatus",
    "FailureKind",
    "RunStatus",
]
