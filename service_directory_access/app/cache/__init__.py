"""
Cache package for the Directory Access service.

Provides a Redis-backed cache for member-facing access decisions, with
per-subject invalidation on every record change and TTLs bounded by paid
access expiry.
"""
