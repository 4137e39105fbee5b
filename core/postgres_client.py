"""
PostgreSQL Client Wrapper

Centralized PostgreSQL client wrapper over an asyncpg connection pool.
Provides a consistent database access pattern for repositories.

Usage:
    from core.postgres_client import PostgresClientWrapper

    # One pool per service
    db = PostgresClientWrapper("outreach_service")

    # Execute queries
    async with db:
        result = await db.query("SELECT * FROM outreach.segments WHERE segment_id = $1", [segment_id])

    # Run statements in one transaction
    async with db.transaction() as tx:
        await tx.query_row("SELECT * FROM outreach.campaigns WHERE campaign_id = $1 FOR UPDATE", [campaign_id])
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from core.config import InfraConfig, get_settings

logger = logging.getLogger(__name__)


class _ConnectionExecutor:
    """Query helpers bound to a single connection"""

    def __init__(self, connection: asyncpg.Connection):
        self.connection = connection

    async def query(self, sql: str, params: Optional[List[Any]] = None) -> List[Dict[str, Any]]:
        rows = await self.connection.fetch(sql, *(params or []))
        return [dict(row) for row in rows]

    async def query_row(self, sql: str, params: Optional[List[Any]] = None) -> Optional[Dict[str, Any]]:
        row = await self.connection.fetchrow(sql, *(params or []))
        return dict(row) if row is not None else None

    async def execute(self, sql: str, params: Optional[List[Any]] = None) -> str:
        return await self.connection.execute(sql, *(params or []))


class PostgresClientWrapper:
    """
    PostgreSQL client wrapper around an asyncpg pool.

    Provides:
    - Lazy pool creation on first use
    - Dict rows for every query
    - Transaction scopes for read-modify-write sequences
    """

    def __init__(
        self,
        service_name: str,
        config: Optional[InfraConfig] = None,
        dsn: Optional[str] = None,
    ):
        """
        Initialize PostgreSQL client wrapper.

        Args:
            service_name: Name of the service using this client
            config: Infrastructure config (defaults to global settings)
            dsn: Explicit connection string, overrides config
        """
        self.service_name = service_name
        self.config = config or get_settings().infrastructure
        self.dsn = dsn or self.config.postgres_dsn
        self._pool: Optional[asyncpg.Pool] = None

        logger.info(
            f"PostgreSQL client initialized for {service_name}: "
            f"{self.config.postgres_host}:{self.config.postgres_port}/{self.config.postgres_db}"
        )

    async def connect(self) -> asyncpg.Pool:
        """Create the connection pool if needed"""
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=self.config.postgres_min_pool,
                max_size=self.config.postgres_max_pool,
                server_settings={"application_name": self.service_name},
            )
            logger.info(f"PostgreSQL pool created for {self.service_name}")
        return self._pool

    async def __aenter__(self):
        """Async context manager entry"""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit - the pool stays open for reuse"""
        return None

    async def health_check(self) -> Optional[Dict]:
        """Check database health"""
        try:
            row = await self.query_row("SELECT version() AS version")
            return {"healthy": True, "version": row["version"] if row else None}
        except Exception as e:
            logger.error(f"PostgreSQL health check failed: {e}")
            return {"healthy": False, "error": str(e)}

    async def query(self, sql: str, params: Optional[List[Any]] = None) -> List[Dict[str, Any]]:
        """Execute query and return results"""
        pool = await self.connect()
        async with pool.acquire() as conn:
            return await _ConnectionExecutor(conn).query(sql, params)

    async def query_row(self, sql: str, params: Optional[List[Any]] = None) -> Optional[Dict[str, Any]]:
        """Execute query and return single row"""
        pool = await self.connect()
        async with pool.acquire() as conn:
            return await _ConnectionExecutor(conn).query_row(sql, params)

    async def execute(self, sql: str, params: Optional[List[Any]] = None) -> str:
        """Execute SQL statement and return the command status"""
        pool = await self.connect()
        async with pool.acquire() as conn:
            return await _ConnectionExecutor(conn).execute(sql, params)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_ConnectionExecutor]:
        """Run the enclosed statements in a single transaction"""
        pool = await self.connect()
        async with pool.acquire() as conn:
            async with conn.transaction():
                yield _ConnectionExecutor(conn)

    async def close(self):
        """Close connection pool"""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info(f"PostgreSQL pool closed for {self.service_name}")
