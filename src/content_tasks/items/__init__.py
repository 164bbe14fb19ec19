"""Content item use-cases built on the task queue."""
