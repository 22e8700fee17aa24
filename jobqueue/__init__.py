"""
Durable Background Job System

Leases work from a single authoritative store to bounded worker pools with
at-least-once execution, exponential backoff, deduplication and dead-lettering.
"""

__version__ = "1.0.0"
