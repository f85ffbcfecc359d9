"""Manifest loading and parsing.

This module provides helpers for reading manifest text from stdin, a local
file or an HTTP(S) URL, and for parsing that text into a ``Manifest``.

Parse errors are fatal to the whole run. Invalid individual references are
not: they are kept on their ``ManifestEntry`` so the orchestrator can
report them as failed builds.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, TextIO

import httpx
import yaml
from pydantic import ValidationError

from singularity_sync.manifest.schema import IMAGES_KEY, Manifest, ManifestDocument

logger = logging.getLogger(__name__)

STDIN_SOURCE = "-"
URL_SCHEMES = ("http://", "https://")


class ManifestError(Exception):
    """Base error for manifests that cannot be parsed."""

    def __init__(self, message: str, code: str = "manifest_error") -> None:
        super().__init__(message)
        self.code = code


class MalformedDocumentError(ManifestError):
    """Raised when the manifest is not a mapping with a list of strings."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="malformed_document")


class MissingImagesKeyError(ManifestError):
    """Raised when the manifest has no images key."""

    def __init__(self, key: str = IMAGES_KEY) -> None:
        super().__init__(
            f"Manifest is missing the '{key}' key", code="missing_images_key"
        )
        self.key = key


class EmptyReferenceError(ManifestError):
    """Raised when a manifest list item is an empty string."""

    def __init__(self, position: int) -> None:
        super().__init__(
            f"Manifest entry {position + 1} is an empty image reference",
            code="empty_reference",
        )
        self.position = position


class ManifestSourceError(ManifestError):
    """Raised when manifest text cannot be read from its source."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="manifest_source_error")


def _describe_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item["loc"])
        parts.append(f"{loc}: {item['msg']}")
    return "; ".join(parts)


def parse_manifest_data(data: Any) -> Manifest:
    """Validate already-decoded manifest data.

    Args:
        data: Decoded YAML/JSON document.

    Returns:
        Manifest with one entry per list item, in order.

    Raises:
        MalformedDocumentError: If the document has the wrong structure.
        MissingImagesKeyError: If the images key is absent.
        EmptyReferenceError: If a list item is empty or whitespace.
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise MalformedDocumentError(
            f"Expected a mapping at the top level, got {type(data).__name__}"
        )
    if IMAGES_KEY not in data:
        raise MissingImagesKeyError()

    try:
        document = ManifestDocument.model_validate(data)
    except ValidationError as e:
        raise MalformedDocumentError(
            f"Invalid manifest: {_describe_validation_error(e)}"
        ) from e

    for position, image in enumerate(document.docker):
        if not image.strip():
            raise EmptyReferenceError(position)

    manifest = Manifest.from_images(document.docker)
    logger.debug(
        "Parsed manifest with %d entries (%d invalid)",
        len(manifest),
        len(manifest.invalid_entries),
    )
    return manifest


def parse_manifest(text: str) -> Manifest:
    """Parse manifest source text.

    Args:
        text: YAML manifest text.

    Returns:
        Manifest instance.

    Raises:
        MalformedDocumentError: If the text is not valid YAML or has the
            wrong structure.
        MissingImagesKeyError: If the images key is absent.
        EmptyReferenceError: If a list item is empty.
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise MalformedDocumentError(f"Manifest is not valid YAML: {e}") from e
    return parse_manifest_data(data)


def is_url(source: str) -> bool:
    return source.lower().startswith(URL_SCHEMES)


def fetch_manifest_text(
    url: str,
    timeout: float = 30,
    client: httpx.Client | None = None,
) -> str:
    """Fetch manifest text over HTTP(S).

    Args:
        url: Manifest URL.
        timeout: Request timeout in seconds.
        client: Optional HTTPX client (a short-lived one is created if None).

    Returns:
        Response body as text.

    Raises:
        ManifestSourceError: If the request fails or returns an error status.
    """
    logger.info("Fetching manifest from %s", url)
    try:
        if client is None:
            with httpx.Client(follow_redirects=True) as own_client:
                response = own_client.get(url, timeout=timeout)
                response.raise_for_status()
                return response.text
        response = client.get(url, timeout=timeout)
        response.raise_for_status()
        return response.text
    except httpx.HTTPStatusError as e:
        raise ManifestSourceError(
            f"Failed to fetch manifest {url}: HTTP {e.response.status_code}"
        ) from e
    except httpx.HTTPError as e:
        raise ManifestSourceError(f"Failed to fetch manifest {url}: {e}") from e


def load_manifest_text(
    source: str | Path | None,
    timeout: float = 30,
    stdin: TextIO | None = None,
    client: httpx.Client | None = None,
) -> str:
    """Read manifest text from stdin, a file or a URL.

    Args:
        source: ``None`` or ``-`` for stdin, a path, or an http(s) URL.
        timeout: HTTP timeout in seconds.
        stdin: Stream to read instead of ``sys.stdin``.
        client: Optional HTTPX client for URL sources.

    Returns:
        Manifest text.

    Raises:
        ManifestSourceError: If the source cannot be read.
    """
    if source is None or str(source) == STDIN_SOURCE:
        stream = stdin if stdin is not None else sys.stdin
        logger.debug("Reading manifest from stdin")
        return stream.read()

    if isinstance(source, str) and is_url(source):
        return fetch_manifest_text(source, timeout=timeout, client=client)

    path = Path(source)
    if not path.is_file():
        raise ManifestSourceError(f"Manifest file not found: {path}")
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ManifestSourceError(f"Failed to read manifest {path}: {e}") from e


def load_manifest(
    source: str | Path | None,
    timeout: float = 30,
    stdin: TextIO | None = None,
    client: httpx.Client | None = None,
) -> Manifest:
    """Read and parse a manifest from any supported source."""
    text = load_manifest_text(source, timeout=timeout, stdin=stdin, client=client)
    return parse_manifest(text)


def manifest_to_yaml_string(images: list[str]) -> str:
    """Render a list of image strings as manifest YAML."""
    result: str = yaml.safe_dump(
        {IMAGES_KEY: list(images)}, default_flow_style=False, sort_keys=False
    )
    return result


def write_manifest(images: list[str], path: Path) -> None:
    """Write a manifest listing ``images`` to ``path``."""
    with open(path, "w", encoding="utf-8") as f:
        f.write(manifest_to_yaml_string(images))


__all__ = [
    "STDIN_SOURCE",
    "EmptyReferenceError",
    "MalformedDocumentError",
    "ManifestError",
    "ManifestSourceError",
    "MissingImagesKeyError",
    "fetch_manifest_text",
    "is_url",
    "load_manifest",
    "load_manifest_text",
    "manifest_to_yaml_string",
    "parse_manifest",
    "parse_manifest_data",
    "write_manifest",
]
