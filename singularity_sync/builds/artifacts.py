"""Artifact naming and inspection.

This module handles:
- Deriving the image file name for a reference
- Deriving per-image log file paths
- Computing checksums of built images
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

from singularity_sync.manifest.reference import ImageReference
from singularity_sync.types import ArtifactInfo

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = "sif"

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB


def artifact_stem(reference: ImageReference) -> str:
    """Return ``organization-repository`` as a single path segment."""
    return f"{reference.organization}-{reference.repository}".replace("/", "-")


def artifact_filename(
    reference: ImageReference, extension: str = DEFAULT_EXTENSION
) -> str:
    """Return the image file name for a reference, e.g. ``bids-validator.sif``."""
    return f"{artifact_stem(reference)}.{extension}"


def artifact_path(
    reference: ImageReference,
    working_dir: Path,
    extension: str = DEFAULT_EXTENSION,
) -> Path:
    """Return the destination path of a reference's image in ``working_dir``."""
    return working_dir / artifact_filename(reference, extension)


def build_log_path(reference: ImageReference, log_dir: Path) -> Path:
    """Return the build log path of a reference in ``log_dir``."""
    return log_dir / f"{artifact_stem(reference)}.log"


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def describe_artifact(path: Path) -> ArtifactInfo | None:
    """Return size and checksum of a built image, or None if it is unreadable."""
    try:
        return ArtifactInfo(
            filename=path.name,
            size_bytes=path.stat().st_size,
            sha256=compute_file_hash(path),
        )
    except OSError as e:
        logger.warning("Could not inspect artifact %s: %s", path, e)
        return None


__all__ = [
    "DEFAULT_EXTENSION",
    "artifact_filename",
    "artifact_path",
    "artifact_stem",
    "build_log_path",
    "compute_file_hash",
    "describe_artifact",
]
