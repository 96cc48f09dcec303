"""A Redis-backed job queue engine with delays, retries, dead letters and metrics."""

__version__ = "0.1.0"