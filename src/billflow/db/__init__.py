"""asyncpg pool and schema management."""

from billflow.db.pool import close_pool, get_pool

__all__ = ["close_pool", "get_pool"]
