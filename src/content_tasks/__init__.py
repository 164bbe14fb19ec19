"""In-process background task queue for the content backend."""

__version__ = "0.1.0"
