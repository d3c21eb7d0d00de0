"""Queue-driven worker for taxonomy pull-request jobs."""

__version__ = "0.1.0"
