"""
PostgreSQL connection pool manager using psycopg_pool.

Every connection runs in autocommit with UTC timestamps and a statement
timeout. Repositories reach the pool through get_db_connection and
get_db_transaction. With DB_APPLY_SCHEMA on, the publishing tables are
created on startup from schema.sql.
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

POOL_CLOSE_TIMEOUT_SECONDS = 30.0
WARN_POOL_UTILIZATION_PERCENT = 80
MAX_POOL_UTILIZATION_PERCENT = 90
SLOW_CHECK_MS = 100


class DatabasePoolManager:
    """
    Database connection pool manager.

    Owns the AsyncConnectionPool lifecycle (initialize on startup, close on
    shutdown) and hands out pooled connections and transactions.
    """

    def __init__(self):
        self.pool: AsyncConnectionPool | None = None
        self._initialized = False
        self._closed = False

    @property
    def initialized(self) -> bool:
        return self._initialized and not self._closed

    async def initialize(self) -> None:
        """Initialize the connection pool on application startup."""
        if self._initialized:
            logger.warning("Database pool already initialized")
            return

        if self._closed:
            raise RuntimeError("Cannot reinitialize closed pool")

        try:
            logger.info("Initializing database connection pool")

            pool_config = self._get_pool_config()

            self.pool = AsyncConnectionPool(
                conninfo=settings.DATABASE_URL,
                open=False,
                **pool_config,
            )

            await self.pool.open()
            await self.pool.wait()

            # Mark as initialized BEFORE testing connections
            self._initialized = True

            await self._test_pool_connections()

            if settings.DB_APPLY_SCHEMA:
                await self.apply_schema()

            logger.info(
                "Database pool initialized successfully",
                min_size=pool_config["min_size"],
                max_size=pool_config["max_size"],
                timeout=pool_config["timeout"],
            )

        except Exception as e:
            logger.error("Failed to initialize database pool", error=str(e))
            self._initialized = False
            if self.pool:
                try:
                    await self.pool.close()
                except Exception as close_error:
                    logger.warning("Error closing pool after failed init", error=str(close_error))
                self.pool = None
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

    def _get_pool_config(self) -> dict[str, Any]:
        """Pool configuration from settings plus psycopg-specific hooks."""
        config = settings.get_db_pool_config()
        config.update(
            {
                "check": AsyncConnectionPool.check_connection,
                "configure": self._configure_connection,
            }
        )
        return config

    async def _configure_connection(self, conn: psycopg.AsyncConnection) -> None:
        """Configure each new connection from the pool. A failure discards the connection."""
        conn.row_factory = dict_row

        # Autocommit so connections never sit in INTRANS; transaction() opts in explicitly
        await conn.set_autocommit(True)

        app_name = f"newsroom-publishing-{settings.environment}"
        timeout_ms = int(settings.DB_STATEMENT_TIMEOUT_SECONDS * 1000)
        await conn.execute(sql.SQL("SET application_name = {}").format(sql.Literal(app_name)))
        await conn.execute("SET timezone = 'UTC'")
        await conn.execute(sql.SQL("SET statement_timeout = {}").format(sql.Literal(timeout_ms)))

    async def apply_schema(self, path: Path = SCHEMA_PATH) -> None:
        """Create the publishing tables if they do not exist yet."""
        ddl = path.read_text(encoding="utf-8")
        async with self.transaction() as conn:
            await conn.execute(ddl)
        logger.info("Database schema applied", path=path.name)

    async def _test_pool_connections(self) -> None:
        async with self.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT 1 AS ok")
                row = await cur.fetchone()
        if not row or row["ok"] != 1:
            raise RuntimeError(f"Unexpected result from connection test: {row!r}")

    async def close(self) -> None:
        """Close the pool, waiting up to POOL_CLOSE_TIMEOUT_SECONDS for checked-out connections."""
        if not self._initialized or self._closed:
            return

        logger.info("Closing database connection pool")
        self._initialized = False
        self._closed = True
        try:
            await asyncio.wait_for(self.pool.close(), timeout=POOL_CLOSE_TIMEOUT_SECONDS)
        except TimeoutError:
            logger.warning("Database pool close timed out", timeout_seconds=POOL_CLOSE_TIMEOUT_SECONDS)
        except psycopg.Error as e:
            logger.error("Error closing database pool", error=str(e))
        else:
            logger.info("Database pool closed")

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """
        Borrow a pooled connection.

        Connections are in autocommit mode; use transaction() when several
        statements must commit together.
        """
        if self._closed:
            raise RuntimeError("Database pool is closed")
        if not self._initialized:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")

        async with self.pool.connection() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Pooled connection inside a transaction; commits on exit, rolls back on error."""
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn

    def _pool_stats(self) -> dict[str, Any]:
        stats = self.pool.get_stats()
        size = stats.get("pool_size", 0)
        available = stats.get("pool_available", 0)
        return {
            "pool_size": size,
            "pool_available": available,
            "pool_utilization_percent": round((size - available) / size * 100, 2) if size else 0.0,
            "requests_waiting": stats.get("requests_waiting", 0),
        }

    async def health_check(self) -> dict[str, Any]:
        """
        Pool health for /readyz and /health/database.

        Unhealthy when the pool is down, the check query fails, utilization
        exceeds MAX_POOL_UTILIZATION_PERCENT, or the check is slower than
        SLOW_CHECK_MS. Softer limits are reported as warnings.
        """
        if not self.initialized:
            error = "Pool is closed" if self._closed else "Pool not initialized"
            return {"healthy": False, "service": "database_pool", "error": error}

        started = time.monotonic()
        try:
            async with self.connection() as conn:
                await conn.execute("SELECT 1")
        except (psycopg.Error, PoolTimeout) as e:
            logger.error("Database pool health check failed", error=str(e))
            return {
                "healthy": False,
                "service": "database_pool",
                "error": str(e),
                "error_type": type(e).__name__,
            }
        check_ms = round((time.monotonic() - started) * 1000, 2)

        pool_stats = self._pool_stats()
        utilization = pool_stats["pool_utilization_percent"]
        warnings = []
        if utilization > WARN_POOL_UTILIZATION_PERCENT:
            warnings.append(f"High pool utilization: {utilization:.1f}%")
        if pool_stats["requests_waiting"]:
            warnings.append(f"Requests waiting for connections: {pool_stats['requests_waiting']}")

        health = {
            "healthy": utilization < MAX_POOL_UTILIZATION_PERCENT and check_ms < SLOW_CHECK_MS,
            "service": "database_pool",
            "connection_time_ms": check_ms,
            "pool_stats": pool_stats,
        }
        if warnings:
            health["warnings"] = warnings
        return health


db_pool = DatabasePoolManager()


async def get_db_connection():
    return db_pool.connection()


async def get_db_transaction():
    return db_pool.transaction()


async def db_health_check() -> dict[str, Any]:
    return await db_pool.health_check()
