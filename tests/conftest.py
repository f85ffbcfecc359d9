"""Shared fixtures: fake build tools and fake build invokers.

The fake tools are small shell scripts that accept the same
``build [--force] DEST SOURCE`` arguments as singularity, so runner tests
exercise real subprocesses without a container runtime.
"""

import stat
from pathlib import Path

import pytest

from singularity_sync.builds.artifacts import artifact_path
from singularity_sync.builds.runner import BuildInvoker, BuildOutcome
from singularity_sync.manifest.reference import ImageReference
from singularity_sync.types import FailureKind

TOOL_PREAMBLE = """#!/bin/sh
echo "$*" >> "$(dirname "$0")/calls.log"
[ "$1" = "build" ] && shift
[ "$1" = "--force" ] && shift
dest="$1"
src="$2"
echo "INFO: pulling $src"
"""

TOOL_BODIES = {
    "success": 'printf "SIF" > "$dest"\n',
    "fail": 'echo "FATAL: unable to fetch $src" >&2\nexit 3\n',
    "no-artifact": "exit 0\n",
    "slow": "exec sleep 30\n",
}


@pytest.fixture
def make_tool(tmp_path: Path):
    """Return a factory creating an executable fake build tool."""

    def factory(kind: str = "success") -> Path:
        tool_dir = tmp_path / f"tool-{kind}"
        tool_dir.mkdir(exist_ok=True)
        tool = tool_dir / "singularity"
        tool.write_text(TOOL_PREAMBLE + TOOL_BODIES[kind])
        tool.chmod(tool.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return tool

    return factory


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    """Existing directory that receives built images."""
    path = tmp_path / "images"
    path.mkdir()
    return path


class FakeInvoker(BuildInvoker):
    """Deterministic invoker that fails for a chosen set of images.

    Successful builds write a small file so outcomes point at real paths.
    """

    def __init__(self, fail: set[str] | None = None) -> None:
        self.fail = fail or set()
        self.calls: list[str] = []
        self.cancel_calls = 0

    def build(self, reference: ImageReference, working_dir: Path) -> BuildOutcome:
        image = reference.to_string()
        self.calls.append(image)
        if image in self.fail:
            return BuildOutcome.failure(
                image,
                FailureKind.TOOL_EXIT_FAILED,
                "singularity exited with code 1",
                reference=reference,
                exit_code=1,
            )
        destination = artifact_path(reference, working_dir)
        destination.write_bytes(b"SIF")
        return BuildOutcome.success(reference, destination, exit_code=0)

    def cancel(self) -> None:
        self.cancel_calls += 1


@pytest.fixture
def fake_invoker_cls():
    return FakeInvoker
