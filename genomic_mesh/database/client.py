"""
Neo4j Async Client

Async wrapper for the Neo4j Python driver: connection pooling, managed
sessions and transactions, and retries on transient cluster errors. Used
as the transport for the Neo4j-backed document store.
"""

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from neo4j import AsyncDriver, AsyncGraphDatabase, AsyncSession, AsyncTransaction
from neo4j.exceptions import (
    ServiceUnavailable,
    SessionExpired,
    TransientError,
)
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from genomic_mesh.config import Settings, get_settings

logger = structlog.get_logger(__name__)

# Leader switches, expired sessions and deadlocks; safe to replay a read or
# an idempotent write
RETRYABLE_EXCEPTIONS = (ServiceUnavailable, SessionExpired, TransientError)

retry_transient = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
    reraise=True,
)


class Neo4jClient:
    """
    Async Neo4j client.

    One instance is created by the engine and handed to the document
    store; there is no module-level client.
    """

    def __init__(self, settings: Settings | None = None):
        self._settings = settings or get_settings()
        self._database = self._settings.neo4j_database
        self._driver: AsyncDriver | None = None

    @property
    def is_connected(self) -> bool:
        return self._driver is not None

    async def connect(self) -> None:
        """Create the driver and verify the server answers."""
        if self._driver is not None:
            return

        settings = self._settings
        logger.info("neo4j_connecting", uri=settings.neo4j_uri, database=self._database)
        driver = AsyncGraphDatabase.driver(
            settings.neo4j_uri,
            auth=(settings.neo4j_user, settings.neo4j_password),
            max_connection_lifetime=settings.neo4j_max_connection_lifetime,
            max_connection_pool_size=settings.neo4j_max_connection_pool_size,
            connection_timeout=settings.neo4j_connection_timeout,
        )

        try:
            await driver.verify_connectivity()
        except Exception as e:
            logger.error("neo4j_connect_failed", error=str(e))
            await driver.close()
            raise

        self._driver = driver
        logger.info("neo4j_connected")

    async def close(self) -> None:
        if self._driver is not None:
            await self._driver.close()
            self._driver = None
            logger.info("neo4j_closed")

    def _get_driver(self) -> AsyncDriver:
        if self._driver is None:
            raise RuntimeError("Neo4j client not connected. Call connect() first.")
        return self._driver

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        async with self._get_driver().session(database=self._database) as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncTransaction, None]:
        """
        Explicit transaction; commits on clean exit, rolls back on error.

        Compare-and-swap runs inside one of these so the version check and
        the write see the same snapshot.
        """
        async with self.session() as session:
            tx = await session.begin_transaction()
            try:
                yield tx
                await tx.commit()
            except Exception:
                if not tx.closed():
                    await tx.rollback()
                raise

    @retry_transient
    async def execute(
        self,
        query: str,
        parameters: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Run a query and return every record as a dict."""
        async with self.session() as session:
            result = await session.run(query, parameters or {})
            return [dict(record) async for record in result]

    @retry_transient
    async def execute_single(
        self,
        query: str,
        parameters: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        async with self.session() as session:
            result = await session.run(query, parameters or {})
            record = await result.single()
            return dict(record) if record else None

    async def health_check(self) -> dict[str, Any]:
        """Round-trip a trivial query and report its latency."""
        started = time.monotonic()
        try:
            await self.execute_single("RETURN 1 AS ok")
        except Exception as e:  # Reported, not raised: callers poll this for status
            logger.warning("neo4j_health_check_failed", error=str(e))
            return {"status": "unhealthy", "database": self._database, "error": str(e)}
        return {
            "status": "healthy",
            "database": self._database,
            "latency_ms": round((time.monotonic() - started) * 1000, 2),
        }
