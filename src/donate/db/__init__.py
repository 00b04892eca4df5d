"""Database pool and schema helpers."""

from donate.db.pool import close_pool, get_pool

__all__ = ["get_pool", "close_pool"]
