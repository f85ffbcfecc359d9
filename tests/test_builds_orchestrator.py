"""Tests for builds/orchestrator.py module.

Uses fake invokers so no subprocesses are spawned, except for the
end-to-end test that drives a fake build tool script.
"""

import threading
import time
from pathlib import Path

import pytest

from singularity_sync.builds.orchestrator import (
    BuildPlan,
    ParallelOrchestrator,
    RunResult,
    SequentialOrchestrator,
    create_orchestrator,
    invalid_entry_outcome,
    plan_builds,
)
from singularity_sync.builds.runner import BuildOutcome, SingularityBuilder
from singularity_sync.config import Settings
from singularity_sync.manifest.io import parse_manifest
from singularity_sync.manifest.reference import ImageReference
from singularity_sync.manifest.schema import Manifest
from singularity_sync.types import AbortPolicy, FailureKind, RunStatus

ABORT = AbortPolicy.ABORT_ON_FIRST_FAILURE
CONTINUE = AbortPolicy.CONTINUE_ON_FAILURE

IMAGES = ["bids/validator", "poldracklab/fmriprep", "nipreps/mriqc", "afni/afni"]


@pytest.fixture(params=["sequential", "parallel"])
def orchestrator_factory(request):
    """Build either orchestrator variant around an invoker."""

    def factory(invoker):
        if request.param == "sequential":
            return SequentialOrchestrator(invoker)
        return ParallelOrchestrator(invoker, max_workers=3)

    return factory


class TestScenarios:
    """End-to-end scenarios with deterministic invokers."""

    def test_single_success(self, fake_invoker_cls, work_dir, orchestrator_factory):
        """One image, invoker succeeds: AllSucceeded with one outcome."""
        manifest = parse_manifest("docker: [bids/validator]\n")
        result = orchestrator_factory(fake_invoker_cls()).run(manifest, work_dir)

        assert len(result.outcomes) == 1
        assert result.outcomes[0].succeeded
        assert result.overall_status is RunStatus.ALL_SUCCEEDED
        assert result.exit_code == 0

    def test_invalid_entry_continue(self, fake_invoker_cls, work_dir):
        """An invalid reference becomes a failed outcome under continue."""
        invoker = fake_invoker_cls()
        manifest = parse_manifest("docker: [bad-format]\n")
        result = SequentialOrchestrator(invoker).run(manifest, work_dir, CONTINUE)

        assert len(result.outcomes) == 1
        outcome = result.outcomes[0]
        assert outcome.error_kind is FailureKind.INVALID_FORMAT
        assert outcome.image == "bad-format"
        assert outcome.reference is None
        assert outcome.position == 0
        assert invoker.calls == []
        assert result.overall_status is RunStatus.PARTIAL_FAILURE

    def test_invalid_entry_abort(self, fake_invoker_cls, work_dir):
        """An invalid first reference aborts with no prior outcomes."""
        invoker = fake_invoker_cls()
        manifest = parse_manifest("docker: [bad-format, bids/validator]\n")
        result = SequentialOrchestrator(invoker).run(manifest, work_dir, ABORT)

        assert [o.image for o in result.outcomes] == ["bad-format"]
        assert result.overall_status is RunStatus.ABORTED_EARLY
        assert result.not_attempted == ("bids/validator",)
        assert invoker.calls == []

    def test_abort_on_first_failure(self, fake_invoker_cls, work_dir):
        """Fail first of two under abort: exactly one failed outcome."""
        invoker = fake_invoker_cls(fail={"bids/validator"})
        manifest = Manifest.from_images(["bids/validator", "poldracklab/fmriprep"])
        result = SequentialOrchestrator(invoker).run(manifest, work_dir, ABORT)

        assert len(result.outcomes) == 1
        assert not result.outcomes[0].succeeded
        assert result.overall_status is RunStatus.ABORTED_EARLY
        assert result.exit_code == 3
        assert invoker.calls == ["bids/validator"]

    def test_empty_manifest(self, fake_invoker_cls, work_dir, orchestrator_factory):
        """An empty manifest is vacuously AllSucceeded."""
        invoker = fake_invoker_cls()
        result = orchestrator_factory(invoker).run(
            parse_manifest("docker: []\n"), work_dir
        )

        assert result.outcomes == ()
        assert result.total == 0
        assert result.overall_status is RunStatus.ALL_SUCCEEDED
        assert invoker.calls == []


class TestOrderingProperties:
    """Outcome count and order properties."""

    @pytest.mark.parametrize("failing", [set(), {"nipreps/mriqc"}, set(IMAGES)])
    def test_continue_builds_every_entry_in_order(
        self, fake_invoker_cls, work_dir, orchestrator_factory, failing
    ):
        """Continue policy: n entries give n outcomes in manifest order."""
        manifest = Manifest.from_images(IMAGES)
        result = orchestrator_factory(fake_invoker_cls(fail=failing)).run(
            manifest, work_dir, CONTINUE
        )

        assert [o.image for o in result.outcomes] == IMAGES
        assert result.aborted is False
        assert result.not_attempted == ()
        expected = (
            RunStatus.PARTIAL_FAILURE if failing else RunStatus.ALL_SUCCEEDED
        )
        assert result.overall_status is expected

    @pytest.mark.parametrize("k", [1, 2, 3, 4])
    def test_abort_stops_at_first_failure(self, fake_invoker_cls, work_dir, k):
        """Abort policy: first failure at position k gives k outcomes."""
        manifest = Manifest.from_images(IMAGES)
        invoker = fake_invoker_cls(fail={IMAGES[k - 1]})
        result = SequentialOrchestrator(invoker).run(manifest, work_dir, ABORT)

        assert len(result.outcomes) == k
        assert [o.image for o in result.outcomes] == IMAGES[:k]
        assert [o.position for o in result.outcomes] == list(range(k))
        assert list(result.not_attempted) == IMAGES[k:]
        assert invoker.calls == IMAGES[:k]

    def test_rerun_is_idempotent(self, fake_invoker_cls, work_dir):
        """Re-running against an always-succeeding invoker stays green."""
        manifest = Manifest.from_images(IMAGES)
        orchestrator = SequentialOrchestrator(fake_invoker_cls())

        for _ in range(3):
            result = orchestrator.run(manifest, work_dir)
            assert result.overall_status is RunStatus.ALL_SUCCEEDED
            assert len(result.outcomes) == len(IMAGES)

    def test_duplicate_entries_built_each_time(self, fake_invoker_cls, work_dir):
        """Duplicates are separate entries and each gets an outcome."""
        invoker = fake_invoker_cls()
        manifest = Manifest.from_images(["bids/validator", "bids/validator"])
        result = SequentialOrchestrator(invoker).run(manifest, work_dir)

        assert len(result.outcomes) == 2
        assert invoker.calls == ["bids/validator", "bids/validator"]
        assert [o.position for o in result.outcomes] == [0, 1]


class TestParallelOrchestrator:
    """Tests specific to the thread pool variant."""

    def test_reorders_out_of_order_completion(self, work_dir, fake_invoker_cls):
        """Later entries that finish first are still reported in order."""

        class SlowFirstInvoker(fake_invoker_cls):
            delays = {"bids/validator": 0.3, "poldracklab/fmriprep": 0.1}

            def build(self, reference, working_dir):
                time.sleep(self.delays.get(reference.to_string(), 0))
                return super().build(reference, working_dir)

        invoker = SlowFirstInvoker()
        manifest = Manifest.from_images(IMAGES)
        result = ParallelOrchestrator(invoker, max_workers=4).run(manifest, work_dir)

        assert [o.image for o in result.outcomes] == IMAGES
        assert sorted(invoker.calls) == sorted(IMAGES)

    def test_each_entry_built_once(self, work_dir, fake_invoker_cls):
        """Queue consumption is exclusive per entry."""
        images = [f"org{i}/repo{i}" for i in range(20)]
        invoker = fake_invoker_cls()
        result = ParallelOrchestrator(invoker, max_workers=5).run(
            Manifest.from_images(images), work_dir
        )

        assert sorted(invoker.calls) == sorted(images)
        assert [o.image for o in result.outcomes] == images

    def test_builds_run_concurrently(self, work_dir, fake_invoker_cls):
        """Two workers should overlap two blocking builds."""
        both_started = threading.Barrier(2, timeout=5)

        class BarrierInvoker(fake_invoker_cls):
            def build(self, reference, working_dir):
                both_started.wait()
                return super().build(reference, working_dir)

        result = ParallelOrchestrator(BarrierInvoker(), max_workers=2).run(
            Manifest.from_images(IMAGES[:2]), work_dir
        )
        assert result.overall_status is RunStatus.ALL_SUCCEEDED

    def test_abort_stops_dispatch(self, work_dir, fake_invoker_cls):
        """With one worker the abort policy behaves like the sequential one."""
        invoker = fake_invoker_cls(fail={IMAGES[1]})
        result = ParallelOrchestrator(invoker, max_workers=1).run(
            Manifest.from_images(IMAGES), work_dir, ABORT
        )

        assert [o.image for o in result.outcomes] == IMAGES[:2]
        assert result.overall_status is RunStatus.ABORTED_EARLY
        assert list(result.not_attempted) == IMAGES[2:]

    def test_abort_with_build_in_flight(self, work_dir, fake_invoker_cls):
        """A build still running at the first failure is not reported."""
        both_started = threading.Barrier(2, timeout=5)

        class OverlappingInvoker(fake_invoker_cls):
            def build(self, reference, working_dir):
                both_started.wait()
                if reference.to_string() == "b/b":
                    time.sleep(0.2)
                return super().build(reference, working_dir)

        invoker = OverlappingInvoker(fail={"a/a"})
        result = ParallelOrchestrator(invoker, max_workers=2).run(
            Manifest.from_images(["a/a", "b/b"]), work_dir, ABORT
        )

        assert sorted(invoker.calls) == ["a/a", "b/b"]
        assert [o.image for o in result.outcomes] == ["a/a"]
        assert result.overall_status is RunStatus.ABORTED_EARLY
        assert list(result.not_attempted) == ["b/b"]
        assert result.retry_images() == ["a/a", "b/b"]

    def test_abort_reports_manifest_prefix(self, work_dir, fake_invoker_cls):
        """A later entry failing first still yields the in-order prefix."""

        class SlowFirstInvoker(fake_invoker_cls):
            def build(self, reference, working_dir):
                if reference.to_string() == IMAGES[0]:
                    time.sleep(0.3)
                return super().build(reference, working_dir)

        invoker = SlowFirstInvoker(fail={IMAGES[1]})
        result = ParallelOrchestrator(invoker, max_workers=2).run(
            Manifest.from_images(IMAGES), work_dir, ABORT
        )

        assert [o.image for o in result.outcomes] == IMAGES[:2]
        assert [o.succeeded for o in result.outcomes] == [True, False]
        assert result.overall_status is RunStatus.ABORTED_EARLY
        assert list(result.not_attempted) == IMAGES[2:]

    def test_continue_reports_positions(self, work_dir, fake_invoker_cls):
        """Duplicate lines stay distinguishable by position."""
        images = ["a/a", "b/b", "a/a"]
        result = ParallelOrchestrator(fake_invoker_cls(), max_workers=3).run(
            Manifest.from_images(images), work_dir
        )

        assert [o.position for o in result.outcomes] == [0, 1, 2]
        assert [o["position"] for o in result.to_dict()["outcomes"]] == [0, 1, 2]

    def test_rejects_zero_workers(self, fake_invoker_cls):
        with pytest.raises(ValueError):
            ParallelOrchestrator(fake_invoker_cls(), max_workers=0)


class TestCancel:
    """Tests for run cancellation."""

    def test_cancel_stops_remaining_entries(self, work_dir, fake_invoker_cls):
        """Cancelling mid-run ends the run and cancels the invoker."""
        holder: dict[str, SequentialOrchestrator] = {}

        class CancellingInvoker(fake_invoker_cls):
            def build(self, reference, working_dir):
                outcome = super().build(reference, working_dir)
                holder["orchestrator"].cancel()
                return outcome

        invoker = CancellingInvoker()
        orchestrator = SequentialOrchestrator(invoker)
        holder["orchestrator"] = orchestrator

        result = orchestrator.run(Manifest.from_images(IMAGES), work_dir)

        assert len(result.outcomes) == 1
        assert result.cancelled is True
        assert result.overall_status is RunStatus.ABORTED_EARLY
        assert list(result.not_attempted) == IMAGES[1:]
        assert invoker.cancel_calls == 1

    def test_parallel_cancel(self, work_dir, fake_invoker_cls):
        invoker = fake_invoker_cls()
        orchestrator = ParallelOrchestrator(invoker, max_workers=2)
        orchestrator.cancel()

        result = orchestrator.run(Manifest.from_images(IMAGES), work_dir)
        assert result.outcomes == ()
        assert result.cancelled is True
        assert result.overall_status is RunStatus.ABORTED_EARLY
        assert invoker.calls == []

    def test_interrupt_cancels_invoker(
        self, work_dir, fake_invoker_cls, orchestrator_factory
    ):
        """Ctrl-C during a build cancels the invoker and propagates."""

        class InterruptedInvoker(fake_invoker_cls):
            def build(self, reference, working_dir):
                self.calls.append(reference.to_string())
                raise KeyboardInterrupt

        invoker = InterruptedInvoker()
        orchestrator = orchestrator_factory(invoker)

        with pytest.raises(KeyboardInterrupt):
            orchestrator.run(Manifest.from_images(IMAGES), work_dir)

        assert invoker.cancel_calls == 1
        assert orchestrator.cancelled
        assert len(invoker.calls) < len(IMAGES)


class TestRunResult:
    """Tests for RunResult aggregation."""

    def _outcomes(self, tmp_path: Path) -> tuple[BuildOutcome, ...]:
        ok = ImageReference.from_string("bids/validator")
        return (
            BuildOutcome.success(ok, tmp_path / "bids-validator.sif", reused=True),
            BuildOutcome.failure(
                "poldracklab/fmriprep", FailureKind.TOOL_EXIT_FAILED, "exit 1"
            ),
        )

    def test_counts(self, tmp_path):
        result = RunResult(outcomes=self._outcomes(tmp_path), total=3)
        assert result.attempted == 2
        assert result.succeeded == 1
        assert result.failed == 1
        assert result.reused == 1
        assert result.exit_code == 1

    def test_retry_images(self, tmp_path):
        """Failed and unattempted images together form the retry list."""
        result = RunResult(
            outcomes=self._outcomes(tmp_path),
            total=3,
            aborted=True,
            not_attempted=("afni/afni",),
        )
        assert result.failed_images() == ["poldracklab/fmriprep"]
        assert result.retry_images() == ["poldracklab/fmriprep", "afni/afni"]

    def test_to_dict(self, tmp_path):
        data = RunResult(outcomes=self._outcomes(tmp_path), total=2).to_dict()
        assert data["overall_status"] == "partial_failure"
        assert data["policy"] == "continue-on-failure"
        assert [o["status"] for o in data["outcomes"]] == ["succeeded", "failed"]

    def test_invalid_entry_outcome(self):
        entry = Manifest.from_images(["a/b/c"]).entries[0]
        outcome = invalid_entry_outcome(entry)
        assert outcome.error_kind is FailureKind.INVALID_FORMAT
        assert "a/b/c" in outcome.error_detail
        assert outcome.position == 0


class TestCreateOrchestrator:
    """Tests for create_orchestrator factory."""

    def test_sequential_by_default(self, fake_invoker_cls):
        orchestrator = create_orchestrator(Settings(), fake_invoker_cls())
        assert isinstance(orchestrator, SequentialOrchestrator)

    def test_parallel_when_jobs(self, fake_invoker_cls):
        orchestrator = create_orchestrator(
            Settings(max_concurrent_builds=4), fake_invoker_cls()
        )
        assert isinstance(orchestrator, ParallelOrchestrator)
        assert orchestrator.max_workers == 4

    def test_default_invoker(self):
        orchestrator = create_orchestrator(Settings(build_tool="apptainer"))
        assert isinstance(orchestrator.invoker, SingularityBuilder)
        assert orchestrator.invoker.build_tool == "apptainer"


class TestPlanBuilds:
    """Tests for dry-run planning."""

    def test_plans(self, work_dir):
        (work_dir / "bids-validator.sif").write_bytes(b"OLD")
        manifest = Manifest.from_images(
            ["bids/validator", "poldracklab/fmriprep", "bad-format"]
        )

        plans = plan_builds(manifest, work_dir, SingularityBuilder())

        assert all(isinstance(p, BuildPlan) for p in plans)
        existing, new, invalid = plans
        assert existing.exists and existing.command is None
        assert not existing.will_build
        assert new.will_build
        assert new.command[-1] == "docker://poldracklab/fmriprep"
        assert invalid.error is not None
        assert not invalid.will_build

    def test_force_plans_rebuild(self, work_dir):
        (work_dir / "bids-validator.sif").write_bytes(b"OLD")
        plans = plan_builds(
            Manifest.from_images(["bids/validator"]),
            work_dir,
            SingularityBuilder(force=True),
        )
        assert plans[0].will_build
        assert "--force" in plans[0].command


class TestWithFakeTool:
    """Sequential run against a real subprocess."""

    def test_partial_failure(self, make_tool, work_dir):
        manifest = Manifest.from_images(["bids/validator", "bad-format"])
        builder = SingularityBuilder(build_tool=str(make_tool("success")))
        result = SequentialOrchestrator(builder).run(manifest, work_dir)

        assert result.overall_status is RunStatus.PARTIAL_FAILURE
        assert result.outcomes[0].artifact_path == work_dir / "bids-validator.sif"
        assert result.outcomes[1].error_kind is FailureKind.INVALID_FORMAT
