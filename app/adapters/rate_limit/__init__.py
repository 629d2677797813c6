"""Counter store adapters for rate limiting.

This package provides a small abstraction layer so a single process can start
with in-memory counters and move to Redis when counters must be shared,
without changing the engine or the API layer.
"""
