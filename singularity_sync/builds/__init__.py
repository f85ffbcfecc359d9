"""Build orchestration module.

This module handles:
- Artifact naming and checksums
- Running the container build tool
- Sequencing builds across a manifest and aggregating results
"""

from singularity_sync.builds.orchestrator import RunResult
from singularity_sync.builds.runner import BuildInvoker, BuildOutcome

__all__ = ["BuildInvoker", "BuildOutcome", "RunResult"]
