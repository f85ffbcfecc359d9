"""Manifest-driven build orchestration.

This module provides the orchestrator API:
- SequentialOrchestrator: builds entries one at a time, in manifest order
- ParallelOrchestrator: builds entries on a bounded thread pool and
  reassembles outcomes in manifest order
- RunResult: the ordered outcome record of one run
- plan_builds(): the commands a run would execute (dry run)

Both orchestrators share the contract ``run(manifest, working_dir, policy)``.
The working directory must already exist; it is never created or cleaned up
here.
"""

from __future__ import annotations

import logging
import queue
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

from singularity_sync.builds.runner import (
    BuildInvoker,
    BuildOutcome,
    SingularityBuilder,
)
from singularity_sync.types import (
    EXIT_CODES,
    AbortPolicy,
    FailureKind,
    RunStatus,
)

if TYPE_CHECKING:
    from singularity_sync.config import Settings
    from singularity_sync.manifest.schema import Manifest, ManifestEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunResult:
    """Ordered outcomes of one orchestrator run.

    Attributes:
        outcomes: One outcome per attempted entry, in manifest order.
        total: Number of entries in the manifest.
        policy: Abort policy the run used.
        aborted: True if the run stopped before attempting every entry
            because of the abort policy or cancellation.
        cancelled: True if the run was cancelled.
        not_attempted: Manifest strings of entries that were never built.
    """

    outcomes: tuple[BuildOutcome, ...]
    total: int
    policy: AbortPolicy = AbortPolicy.CONTINUE_ON_FAILURE
    aborted: bool = False
    cancelled: bool = False
    not_attempted: tuple[str, ...] = ()

    @property
    def overall_status(self) -> RunStatus:
        if self.aborted:
            return RunStatus.ABORTED_EARLY
        if any(not o.succeeded for o in self.outcomes):
            return RunStatus.PARTIAL_FAILURE
        return RunStatus.ALL_SUCCEEDED

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.overall_status]

    @property
    def attempted(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.succeeded)

    @property
    def failed(self) -> int:
        return self.attempted - self.succeeded

    @property
    def reused(self) -> int:
        return sum(1 for o in self.outcomes if o.reused)

    def failed_images(self) -> list[str]:
        """Manifest strings of failed entries, in order."""
        return [o.image for o in self.outcomes if not o.succeeded]

    def retry_images(self) -> list[str]:
        """Failed and never-attempted entries, i.e. what a re-run needs."""
        return self.failed_images() + list(self.not_attempted)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "overall_status": self.overall_status.value,
            "policy": self.policy.value,
            "total": self.total,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "reused": self.reused,
            "aborted": self.aborted,
            "cancelled": self.cancelled,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "not_attempted": list(self.not_attempted),
        }


def invalid_entry_outcome(entry: ManifestEntry) -> BuildOutcome:
    """Failed outcome for a manifest entry whose reference did not parse."""
    return BuildOutcome.failure(
        entry.image,
        FailureKind.INVALID_FORMAT,
        str(entry.error) if entry.error else f"Invalid image reference '{entry.image}'",
        position=entry.position,
    )


class Orchestrator(ABC):
    """Drives a BuildInvoker over every entry of a manifest."""

    def __init__(self, invoker: BuildInvoker) -> None:
        self.invoker = invoker
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Stop starting new builds and terminate in-flight ones."""
        logger.warning("Cancelling run")
        self._cancelled.set()
        self.invoker.cancel()

    def _attempt(self, entry: ManifestEntry, working_dir: Path) -> BuildOutcome:
        if entry.reference is None:
            logger.error("Skipping invalid entry '%s': %s", entry.image, entry.error)
            return invalid_entry_outcome(entry)
        outcome = self.invoker.build(entry.reference, working_dir)
        return replace(outcome, position=entry.position)

    @staticmethod
    def _log_outcome(index: int, total: int, outcome: BuildOutcome) -> None:
        if outcome.succeeded:
            logger.info(
                "[%d/%d] %s %s",
                index + 1,
                total,
                "reused" if outcome.reused else "built",
                outcome.image,
            )
        else:
            logger.error(
                "[%d/%d] failed %s (%s)",
                index + 1,
                total,
                outcome.image,
                outcome.error_kind.value if outcome.error_kind else "unknown",
            )

    @abstractmethod
    def run(
        self,
        manifest: Manifest,
        working_dir: Path,
        policy: AbortPolicy = AbortPolicy.CONTINUE_ON_FAILURE,
    ) -> RunResult:
        """Build every manifest entry and return the ordered outcomes.

        Args:
            manifest: Parsed manifest.
            working_dir: Existing directory that receives the images.
            policy: Whether a failure stops the remaining entries.

        Returns:
            RunResult with one outcome per attempted entry.
        """


class SequentialOrchestrator(Orchestrator):
    """Builds one image to completion before starting the next."""

    def run(
        self,
        manifest: Manifest,
        working_dir: Path,
        policy: AbortPolicy = AbortPolicy.CONTINUE_ON_FAILURE,
    ) -> RunResult:
        total = len(manifest)
        outcomes: list[BuildOutcome] = []
        aborted = False

        logger.info("Building %d image(s) into %s", total, working_dir)

        for index, entry in enumerate(manifest.entries):
            if self.cancelled:
                aborted = True
                break

            try:
                outcome = self._attempt(entry, working_dir)
            except KeyboardInterrupt:
                self.cancel()
                raise

            outcomes.append(outcome)
            self._log_outcome(index, total, outcome)

            if not outcome.succeeded and policy is AbortPolicy.ABORT_ON_FIRST_FAILURE:
                logger.warning(
                    "Stopping after failure of %s; %d entr(ies) not attempted",
                    outcome.image,
                    total - index - 1,
                )
                aborted = True
                break

        return RunResult(
            outcomes=tuple(outcomes),
            total=total,
            policy=policy,
            aborted=aborted,
            cancelled=self.cancelled,
            not_attempted=tuple(e.image for e in manifest.entries[len(outcomes) :]),
        )


class ParallelOrchestrator(Orchestrator):
    """Builds images on a bounded pool of worker threads.

    Workers take entries from a shared queue, so each entry is built by at
    most one worker. Outcomes are keyed by manifest position and returned in
    manifest order regardless of completion order.

    Under ABORT_ON_FIRST_FAILURE no new entries are started once a failure
    is recorded, and builds already running are allowed to finish. The
    result then holds the outcomes up to and including the first failing
    entry in manifest order, as a sequential run would. Entries after it
    are reported as not attempted even when a worker had already started
    them; an image such a build produced is reused by the next run.

    Args:
        invoker: Build invoker shared by all workers; must be thread-safe.
        max_workers: Maximum number of concurrent builds.
    """

    def __init__(self, invoker: BuildInvoker, max_workers: int = 2) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        super().__init__(invoker)
        self.max_workers = max_workers

    def run(
        self,
        manifest: Manifest,
        working_dir: Path,
        policy: AbortPolicy = AbortPolicy.CONTINUE_ON_FAILURE,
    ) -> RunResult:
        total = len(manifest)
        pending: queue.Queue[tuple[int, ManifestEntry]] = queue.Queue()
        for index, entry in enumerate(manifest.entries):
            pending.put((index, entry))

        results: dict[int, BuildOutcome] = {}
        results_lock = threading.Lock()
        stop = threading.Event()

        def worker() -> None:
            while not stop.is_set() and not self.cancelled:
                try:
                    index, entry = pending.get_nowait()
                except queue.Empty:
                    return
                outcome = self._attempt(entry, working_dir)
                with results_lock:
                    results[index] = outcome
                self._log_outcome(index, total, outcome)
                if (
                    not outcome.succeeded
                    and policy is AbortPolicy.ABORT_ON_FIRST_FAILURE
                ):
                    stop.set()

        workers = max(1, min(self.max_workers, total))
        logger.info(
            "Building %d image(s) into %s with %d worker(s)",
            total,
            working_dir,
            workers,
        )

        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="singularity-build"
        ) as executor:
            futures = [executor.submit(worker) for _ in range(workers)]
            try:
                for future in futures:
                    future.result()
            except KeyboardInterrupt:
                self.cancel()
                raise

        reported = sorted(results)
        if stop.is_set():
            first_failure = min(i for i in reported if not results[i].succeeded)
            discarded = [i for i in reported if i > first_failure]
            if discarded:
                logger.warning(
                    "Dropping %d outcome(s) finished after the failure of %s",
                    len(discarded),
                    results[first_failure].image,
                )
            reported = [i for i in reported if i <= first_failure]
            logger.warning(
                "Stopped after a failure; %d entr(ies) not attempted",
                total - len(reported),
            )

        outcomes = tuple(results[i] for i in reported)
        return RunResult(
            outcomes=outcomes,
            total=total,
            policy=policy,
            aborted=stop.is_set() or (self.cancelled and len(outcomes) < total),
            cancelled=self.cancelled,
            not_attempted=tuple(e.image for e in manifest.entries[len(outcomes) :]),
        )


def create_orchestrator(
    settings: Settings,
    invoker: BuildInvoker | None = None,
) -> Orchestrator:
    """Create the orchestrator selected by ``settings.max_concurrent_builds``."""
    if invoker is None:
        invoker = SingularityBuilder.from_settings(settings)
    if settings.max_concurrent_builds > 1:
        return ParallelOrchestrator(invoker, max_workers=settings.max_concurrent_builds)
    return SequentialOrchestrator(invoker)


@dataclass(frozen=True)
class BuildPlan:
    """What a run would do for one manifest entry."""

    image: str
    command: list[str] | None = None
    artifact_path: Path | None = None
    exists: bool = False
    error: str | None = None

    @property
    def will_build(self) -> bool:
        return self.command is not None and self.error is None


def plan_builds(
    manifest: Manifest,
    working_dir: Path,
    builder: SingularityBuilder,
) -> list[BuildPlan]:
    """Describe the builds a run would execute, without running anything.

    Args:
        manifest: Parsed manifest.
        working_dir: Directory that would receive the images.
        builder: Builder whose command layout and force flag are used.

    Returns:
        One BuildPlan per manifest entry, in order.
    """
    plans: list[BuildPlan] = []
    for entry in manifest.entries:
        if entry.reference is None:
            plans.append(BuildPlan(image=entry.image, error=str(entry.error)))
            continue
        destination = builder.destination(entry.reference, working_dir)
        exists = destination.exists()
        command: list[str] | None = None
        if not exists or builder.force:
            command = builder.compose_command(entry.reference, destination)
        plans.append(
            BuildPlan(
                image=entry.image,
                command=command,
                artifact_path=destination,
                exists=exists,
            )
        )
    return plans


__all__ = [
    "BuildPlan",
    "Orchestrator",
    "ParallelOrchestrator",
    "RunResult",
    "SequentialOrchestrator",
    "create_orchestrator",
    "invalid_entry_outcome",
    "plan_builds",
]
