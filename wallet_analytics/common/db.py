import contextlib
import os
import time
from typing import Iterator, Optional, Dict, List, Tuple
from psycopg_pool import ConnectionPool
from psycopg.rows import dict_row
import psycopg
from tenacity import RetryError, retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .config import settings
from .logging_setup import get_logger

logger = get_logger(__name__)

SCHEMA_PATH = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..", "sql", "schema.sql"))

# Global connection pool for synchronous maintenance work (schema, health)
_pool: Optional[ConnectionPool] = None


def init_pool() -> None:
    """Initialize the connection pool"""
    global _pool
    if _pool is None:
        _pool = ConnectionPool(
            settings.database_url,
            min_size=1,
            max_size=4,
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


def apply_schema(schema_path: str = SCHEMA_PATH) -> None:
    """Apply the analytics schema; every statement is idempotent"""
    with open(schema_path, "r", encoding="utf-8") as f:
        sql = f.read()

    with get_cursor() as cur:
        cur.execute(sql)

    logger.log_operation(operation="apply_schema", params={"path": schema_path}, status="completed")


def test_connection() -> bool:
    """Test database connection and return True if successful"""
    try:
        result = execute_with_retry("SELECT 1 as test", fetch=True)
        return result is not None and len(result) > 0
    except (psycopg.Error, RetryError) as e:
        logger.error(f"Database connection test failed: {e}")
        return False
