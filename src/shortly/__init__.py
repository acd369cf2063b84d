"""
Shortly replication core.

Transactional outbox, idempotent version-ordered change consumers, lookup
fact aggregation and dead-letter bookkeeping shared by the shortly
services.
"""

__version__ = "1.0.0"
