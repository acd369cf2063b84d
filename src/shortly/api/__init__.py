"""
Ops API: health probes and outbox visibility.
"""

from .app import create_app, create_default_app

__all__ = ["create_app", "create_default_app"]
