"""Docker image references of the form ``organization/repository``.

Validation here is purely syntactic: no registry host, tag or digest is
accepted and nothing touches the network or filesystem.
"""

from __future__ import annotations

from dataclasses import dataclass

SEPARATOR = "/"


class ImageReferenceError(ValueError):
    """Raised when a string is not a valid ``organization/repository``."""

    def __init__(self, text: str, reason: str, code: str = "invalid_format") -> None:
        super().__init__(f"Invalid image reference '{text}': {reason}")
        self.text = text
        self.reason = reason
        self.code = code


def _has_whitespace(segment: str) -> bool:
    return any(ch.isspace() for ch in segment)


@dataclass(frozen=True, order=True)
class ImageReference:
    """An immutable ``organization/repository`` image identifier.

    Attributes:
        organization: Docker Hub organization (or user) name.
        repository: Repository name within the organization.
    """

    organization: str
    repository: str

    def __post_init__(self) -> None:
        for name in ("organization", "repository"):
            segment = getattr(self, name)
            if not segment:
                raise ImageReferenceError(
                    f"{self.organization}{SEPARATOR}{self.repository}",
                    f"{name} must not be empty",
                )
            if SEPARATOR in segment:
                raise ImageReferenceError(
                    f"{self.organization}{SEPARATOR}{self.repository}",
                    f"{name} must not contain '{SEPARATOR}'",
                )
            if _has_whitespace(segment):
                raise ImageReferenceError(
                    f"{self.organization}{SEPARATOR}{self.repository}",
                    f"{name} must not contain whitespace",
                )

    @classmethod
    def from_string(cls, text: str) -> ImageReference:
        """Parse ``organization/repository``.

        Args:
            text: Reference string from a manifest.

        Returns:
            ImageReference instance.

        Raises:
            ImageReferenceError: If the separator count is not exactly one,
                or either segment is empty or contains whitespace.
        """
        count = text.count(SEPARATOR)
        if count != 1:
            raise ImageReferenceError(
                text, f"expected exactly one '{SEPARATOR}', found {count}"
            )
        organization, repository = text.split(SEPARATOR)
        if not organization or not repository:
            raise ImageReferenceError(text, "both segments must be non-empty")
        if _has_whitespace(organization) or _has_whitespace(repository):
            raise ImageReferenceError(text, "segments must not contain whitespace")
        return cls(organization=organization, repository=repository)

    def to_string(self) -> str:
        """Return the canonical ``organization/repository`` form."""
        return f"{self.organization}{SEPARATOR}{self.repository}"

    def source_uri(self, scheme: str = "docker") -> str:
        """Return the build source specification, e.g. ``docker://org/repo``."""
        return f"{scheme}://{self.to_string()}"

    def __str__(self) -> str:
        return self.to_string()


__all__ = ["SEPARATOR", "ImageReference", "ImageReferenceError"]
