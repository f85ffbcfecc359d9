"""Manifest document schema and value types.

The on-disk manifest is a YAML mapping with a ``docker`` key holding an
ordered list of ``organization/repository`` strings::

    docker:
      - bids/validator
      - poldracklab/fmriprep

``ManifestDocument`` validates the raw structure with Pydantic. ``Manifest``
is the immutable value the orchestrator consumes: every list item becomes a
``ManifestEntry`` that holds either a parsed reference or the validation
error for that single item.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, Field, StrictStr

from singularity_sync.manifest.reference import ImageReference, ImageReferenceError

IMAGES_KEY = "docker"


class ManifestDocument(BaseModel):
    """Schema for the raw manifest document.

    Attributes:
        docker: Ordered list of image reference strings.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    docker: list[StrictStr] = Field(description="Docker images to build, in order")


@dataclass(frozen=True)
class ManifestEntry:
    """One manifest list item.

    Exactly one of ``reference`` and ``error`` is set.
    """

    position: int
    image: str
    reference: ImageReference | None = None
    error: ImageReferenceError | None = field(default=None, compare=False)

    @classmethod
    def from_string(cls, position: int, image: str) -> ManifestEntry:
        """Parse a list item, capturing an invalid reference as an error."""
        try:
            return cls(
                position=position,
                image=image,
                reference=ImageReference.from_string(image),
            )
        except ImageReferenceError as e:
            return cls(position=position, image=image, error=e)

    @property
    def is_valid(self) -> bool:
        return self.reference is not None


@dataclass(frozen=True)
class Manifest:
    """An ordered, immutable list of images to build."""

    entries: tuple[ManifestEntry, ...] = ()

    @classmethod
    def from_images(cls, images: list[str]) -> Manifest:
        return cls(
            entries=tuple(
                ManifestEntry.from_string(i, image) for i, image in enumerate(images)
            )
        )

    @property
    def images(self) -> list[ImageReference]:
        """Valid references in build order."""
        return [e.reference for e in self.entries if e.reference is not None]

    @property
    def invalid_entries(self) -> list[ManifestEntry]:
        return [e for e in self.entries if e.error is not None]

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)


__all__ = ["IMAGES_KEY", "Manifest", "ManifestDocument", "ManifestEntry"]
