"""API routes"""

from supportcache.api import cache, sync

__all__ = ["cache", "sync"]
