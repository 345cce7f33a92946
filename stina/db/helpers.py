# stina/db/helpers.py
"""
Database helper functions for common patterns.
Every helper takes the pool (or an open connection) explicitly.
"""

import asyncio
import functools
from typing import Any

import psycopg

from stina.db.pool import DatabasePoolManager
from stina.errors import PersistenceError
from stina.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


async def fetch_one(
    pool: DatabasePoolManager,
    query: str,
    params: tuple = (),
    *,
    connection: psycopg.AsyncConnection | None = None,
) -> dict[str, Any] | None:
    """
    Execute query and return single row as dict.

    Args:
        pool: Pool to borrow a connection from when `connection` is None
        query: SQL query with %s placeholders
        params: Query parameters
        connection: Optional existing connection (e.g. inside a transaction)

    Returns:
        Dict with row data or None if no results
    """
    try:
        if connection:
            async with connection.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchone()

        async with pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchone()

    except psycopg.Error as e:
        logger.error("Database fetch_one error", query=query[:100], error=str(e))
        raise PersistenceError(f"Query failed: {e}", operation="fetch_one") from e


async def fetch_all(
    pool: DatabasePoolManager,
    query: str,
    params: tuple = (),
    *,
    connection: psycopg.AsyncConnection | None = None,
) -> list[dict[str, Any]]:
    """Execute query and return all rows as list of dicts."""
    try:
        if connection:
            async with connection.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchall()

        async with pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchall()

    except psycopg.Error as e:
        logger.error("Database fetch_all error", query=query[:100], error=str(e))
        raise PersistenceError(f"Query failed: {e}", operation="fetch_all") from e


async def execute_query(
    pool: DatabasePoolManager,
    query: str,
    params: tuple = (),
    *,
    connection: psycopg.AsyncConnection | None = None,
) -> int:
    """Execute query and return number of affected rows."""
    try:
        if connection:
            cursor = await connection.execute(query, params)
            return cursor.rowcount

        async with pool.connection() as conn:
            cursor = await conn.execute(query, params)
            return cursor.rowcount

    except psycopg.Error as e:
        logger.error("Database execute error", query=query[:100], error=str(e))
        raise PersistenceError(f"Query failed: {e}", operation="execute") from e


def with_db_retry(max_retries: int = 3, base_delay: float = 0.1):
    """
    Retry a coroutine on transient psycopg failures with exponential backoff.

    Integrity and data errors are permanent and surface immediately as a
    non-recoverable PersistenceError. Scheduling errors raised by the wrapped
    function pass through untouched.
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)

                except psycopg.OperationalError as e:
                    if attempt >= max_retries:
                        logger.error(
                            "Database operation failed after all retries",
                            operation=func.__name__,
                            attempts=max_retries + 1,
                            error=str(e),
                        )
                        raise PersistenceError(
                            f"Operation failed after {max_retries} retries: {e}",
                            operation=func.__name__,
                        ) from e

                    delay = base_delay * (2**attempt)
                    logger.warning(
                        "Database operation failed, retrying",
                        operation=func.__name__,
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

                except (psycopg.IntegrityError, psycopg.DataError) as e:
                    logger.error(
                        "Database operation failed with permanent error",
                        operation=func.__name__,
                        error=str(e),
                    )
                    raise PersistenceError(
                        f"Permanent database error: {e}",
                        operation=func.__name__,
                        recoverable=False,
                    ) from e

        return wrapper

    return decorator
