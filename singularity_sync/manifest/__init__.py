"""Manifest module.

This module handles:
- Image reference validation
- Manifest schema and value types
- Loading manifests from stdin, files and URLs
"""

from singularity_sync.manifest.reference import ImageReference, ImageReferenceError
from singularity_sync.manifest.schema import Manifest, ManifestEntry

__all__ = ["ImageReference", "ImageReferenceError", "Manifest", "ManifestEntry"]
