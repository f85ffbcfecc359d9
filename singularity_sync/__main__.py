"""Allow ``python -m singularity_sync``."""

from singularity_sync.cli import app

if __name__ == "__main__":
    app()
