"""SQLAlchemy-backed implementation of the IQueryEngine boundary.

The dashboards only rely on the engine eventually resolving or rejecting
with a list of plain records; this adapter runs the SQL text on an async
SQLAlchemy engine (any dialect with an async driver) and converts failures
and timeouts into QueryExecutionError.
"""

import asyncio
from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from focal_finops.core.errors import QueryExecutionError

logger = structlog.get_logger(__name__)


class SqlAlchemyQueryEngine:
    """Async query engine that executes raw SQL on an AsyncEngine.

    Args:
        engine: Async SQLAlchemy engine holding the FOCUS billing view.
        timeout_seconds: Hard limit for a single query.
    """

    def __init__(self, engine: AsyncEngine, timeout_seconds: float = 60.0) -> None:
        self._engine = engine
        self._timeout = timeout_seconds

    async def _execute(self, sql: str) -> list[dict[str, Any]]:
        async with self._engine.connect() as connection:
            result = await connection.execute(text(sql))
            return [dict(row._mapping) for row in result]

    async def query(self, sql: str) -> list[dict[str, Any]]:
        """Execute a SQL statement and return its rows as dicts.

        Raises:
            QueryExecutionError: On database errors or when the query exceeds
                the configured timeout.
        """
        try:
            rows = await asyncio.wait_for(self._execute(sql), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.error("query_timeout", timeout_seconds=self._timeout)
            raise QueryExecutionError(f"Query timed out after {self._timeout}s") from exc
        except SQLAlchemyError as exc:
            logger.error("query_failed", error=str(exc))
            raise QueryExecutionError(f"Query failed: {exc}") from exc

        logger.debug("query_completed", row_count=len(rows))
        return rows


__all__ = ["SqlAlchemyQueryEngine"]
