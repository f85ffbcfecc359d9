"""Singularity Sync - build Singularity images from a manifest of Docker images.

This package drives an external container build tool (singularity or
apptainer) once per manifest entry and reports per-image outcomes.
"""

__version__ = "0.2.0"
__all__ = ["__version__"]
