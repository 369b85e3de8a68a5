import contextlib
import time
from typing import AsyncIterator, Iterator, Optional, Dict, List, Tuple
from psycopg_pool import AsyncConnectionPool, ConnectionPool
from psycopg.rows import dict_row
import psycopg
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .config import settings
from .logging_setup import get_logger

logger = get_logger(__name__)

# Sync pool for maintenance commands, async pool for revalidation jobs and balance reads
_pool: Optional[ConnectionPool] = None
_async_pool: Optional[AsyncConnectionPool] = None


def init_pool() -> None:
    """Initialize the connection pool with retry logic"""
    global _pool
    if _pool is None:
        _pool = ConnectionPool(
            settings.database_url,
            min_size=1,
            max_size=5,
            timeout=30,
            max_idle=300,  # 5 minutes
            max_lifetime=3600,  # 1 hour
            check=ConnectionPool.check_connection,
        )
        logger.info("Database connection pool initialized")


def get_pool() -> ConnectionPool:
    """Get the connection pool, initializing if needed"""
    if _pool is None:
        init_pool()
    return _pool


async def init_async_pool(database_url: Optional[str] = None, max_size: int = 20) -> AsyncConnectionPool:
    """Open the async pool shared by revalidation jobs and balance queries"""
    global _async_pool
    if _async_pool is None:
        pool = AsyncConnectionPool(
            database_url or settings.database_url,
            min_size=2,
            max_size=max_size,
            timeout=30,
            max_idle=300,
            max_lifetime=3600,
            kwargs={"row_factory": dict_row},
            check=AsyncConnectionPool.check_connection,
            open=False,
        )
        await pool.open()
        _async_pool = pool
        logger.info("Async database connection pool initialized")
    return _async_pool


async def get_async_pool() -> AsyncConnectionPool:
    """Get the async pool, initializing if needed"""
    if _async_pool is None:
        return await init_async_pool()
    return _async_pool


@contextlib.asynccontextmanager
async def async_connection(pool: AsyncConnectionPool) -> AsyncIterator[psycopg.AsyncConnection]:
    """Acquire one connection for a logical job; always returned to the pool"""
    start_time = time.time()
    async with pool.connection() as conn:
        try:
            yield conn
        except Exception as e:
            logger.log_operation(
                operation="db_connection",
                status="failed",
                error=str(e),
                duration_ms=int((time.time() - start_time) * 1000),
            )
            raise


@retry(
    stop=stop_after_attempt(settings.max_retries),
    wait=wait_exponential(multiplier=1, min=2, max=60),
    retry=retry_if_exception_type((psycopg.OperationalError, psycopg.InterfaceError))
)
def execute_with_retry(query: str, params: Optional[Tuple] = None, fetch: bool = True) -> Optional[List[Dict]]:
    """Execute a query with exponential backoff retry logic"""
    pool = get_pool()
    start_time = time.time()

    with pool.connection() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(query, params)
            result = cur.fetchall() if fetch else None
            conn.commit()

    duration_ms = int((time.time() - start_time) * 1000)
    logger.log_operation(
        operation="db_query",
        params={"query_type": query.split()[0].upper()},
        status="completed",
        duration_ms=duration_ms
    )

    return result


@contextlib.contextmanager
def get_cursor(readonly: bool = False) -> Iterator[psycopg.Cursor]:
    """Context manager for database cursor with connection pooling"""
    pool = get_pool()
    conn = None

    try:
        with pool.connection() as conn:
            if readonly:
                conn.read_only = True
                conn.autocommit = True

            with conn.cursor(row_factory=dict_row) as cur:
                yield cur

            if not readonly:
                conn.commit()

    except Exception as e:
        if conn and not readonly:
            conn.rollback()
        logger.log_operation(
            operation="db_cursor",
            status="failed",
            error=str(e)
        )
        raise


def test_connection() -> bool:
    """Test database connection and return True if successful"""
    try:
        result = execute_with_retry("SELECT 1 as test", fetch=True)
        return result is not None and len(result) > 0
    except Exception as e:
        logger.error(f"Database connection test failed: {e}")
        return False


def close_pool() -> None:
    """Close the connection pool gracefully"""
    global _pool
    if _pool:
        _pool.close()
        _pool = None
        logger.info("Database connection pool closed")


async def close_async_pool() -> None:
    """Close the async pool gracefully"""
    global _async_pool
    if _async_pool:
        await _async_pool.close()
        _async_pool = None
        logger.info("Async database connection pool closed")
