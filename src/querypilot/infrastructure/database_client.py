"""
Database client for PostgreSQL using asyncpg.

One DatabaseClient wraps one connection pool. The FastAPI lifespan creates a
client for the inspected database (and one for the control database when
configured), connects it at startup, injects it into repositories, and closes
it on shutdown.
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Tuple, Union

import asyncpg

from ..config import ControlDatabaseConfig, DatabaseConfig
from ..domain.errors import DatabaseConnectionError, DatabaseQueryError
from ..utils.logging import get_module_logger
from ..utils.tracing import current_trace_id


logger = get_module_logger()

PoolConfig = Union[DatabaseConfig, ControlDatabaseConfig]


class DatabaseClient:
    """
    Low-level async PostgreSQL client using asyncpg.

    Thin infrastructure layer. Schema introspection, SQL execution semantics
    and control-table access live in the repositories.

    Features:
    - Connection pooling
    - READ ONLY transactions for inspected-database queries
    - Per-statement timeout via SET LOCAL statement_timeout
    - Structured logging with trace IDs

    Usage:
        client = DatabaseClient(settings.database, name="inspected")
        await client.connect()

        rows = await client.execute_query(
            "SELECT id FROM orders WHERE status = $1",
            params=["shipped"],
            read_only=True,
        )

        columns, values = await client.fetch_table("SELECT id, total FROM orders LIMIT 5;")

        await client.close()
    """

    def __init__(self, config: PoolConfig, name: str = "inspected"):
        """
        Initialize database client with configuration.

        Args:
            config: Database configuration (inspected or control)
            name: Label used in logs to tell pools apart
        """
        self.config = config
        self.name = name
        self._pool: Optional[asyncpg.Pool] = None
        self._is_connected = False

        logger.info(
            "DatabaseClient initialized",
            pool_name=name,
            default_schema=config.default_schema,
            connection_pool_size=config.connection_pool_max_size,
            query_timeout_seconds=config.query_timeout_seconds,
            application_name=config.application_name,
        )

    async def connect(self) -> None:
        """
        Establish the connection pool.

        Raises:
            DatabaseConnectionError: If connection fails
        """
        if self._is_connected:
            logger.warning("Database client already connected", pool_name=self.name)
            return

        trace_id = current_trace_id()
        logger.info("Establishing database connection", pool_name=self.name, trace_id=trace_id)

        pool_kwargs: Dict[str, Any] = {}
        max_queries = getattr(self.config, "connection_pool_max_queries", None)
        if max_queries:
            pool_kwargs["max_queries"] = max_queries

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.config.database_url,
                min_size=self.config.connection_pool_min_size,
                max_size=self.config.connection_pool_max_size,
                command_timeout=self.config.query_timeout_seconds,
                timeout=self.config.connection_timeout_seconds,
                server_settings={
                    "application_name": self.config.application_name,
                    "search_path": self.config.default_schema,
                },
                **pool_kwargs,
            )

            await self._test_connection(self._pool)

            self._is_connected = True
            logger.info(
                "Database connection established successfully",
                pool_name=self.name,
                pool_size=self.config.connection_pool_max_size,
                default_schema=self.config.default_schema,
                trace_id=trace_id,
            )

        except DatabaseConnectionError:
            raise

        except asyncpg.InvalidCatalogNameError as e:
            error_msg = f"Database does not exist: {e}"
            logger.error(error_msg, pool_name=self.name, trace_id=trace_id)
            raise DatabaseConnectionError(error_msg) from e

        except asyncpg.InvalidPasswordError as e:
            error_msg = f"Authentication failed: {e}"
            logger.error(error_msg, pool_name=self.name, trace_id=trace_id)
            raise DatabaseConnectionError(error_msg) from e

        except Exception as e:
            error_msg = f"Failed to connect to database: {e}"
            logger.error(error_msg, pool_name=self.name, error_type=type(e).__name__, trace_id=trace_id)
            raise DatabaseConnectionError(error_msg) from e

    async def _test_connection(self, pool: asyncpg.Pool) -> None:
        trace_id = current_trace_id()
        try:
            async with pool.acquire() as conn:
                result = await conn.fetchval("SELECT 1")
                if result != 1:
                    raise DatabaseConnectionError(f"Connection test failed for {self.name} pool")
                current_schema = await conn.fetchval("SELECT current_schema()")
                logger.info(
                    "Connection test successful",
                    pool_name=self.name,
                    current_schema=current_schema,
                    trace_id=trace_id,
                )
        except DatabaseConnectionError:
            raise
        except Exception as e:
            error_msg = f"Connection test failed for {self.name} pool: {e}"
            logger.error(error_msg, trace_id=trace_id)
            raise DatabaseConnectionError(error_msg) from e

    async def close(self) -> None:
        """Close the connection pool."""
        trace_id = current_trace_id()
        logger.info("Closing database connection", pool_name=self.name, trace_id=trace_id)

        if self._pool:
            await self._pool.close()

        self._is_connected = False
        self._pool = None

        logger.info("Database connection closed", pool_name=self.name, trace_id=trace_id)

    def is_connected(self) -> bool:
        return self._is_connected and self._pool is not None

    async def health_check(self) -> Dict[str, Any]:
        """
        Perform health check on the pool.

        Returns:
            {"status": "healthy", "connected": True, "pool_size": 5, "current_schema": "public"}
            or {"status": "unhealthy", "connected": ..., "error": "..."}
        """
        trace_id = current_trace_id()

        if not self.is_connected():
            return {
                "status": "unhealthy",
                "connected": False,
                "error": "Database client not connected",
            }

        try:
            async with self.acquire_connection() as conn:
                result = await conn.fetchval("SELECT 1")
                current_schema = await conn.fetchval("SELECT current_schema()")

            if result != 1:
                return {
                    "status": "unhealthy",
                    "connected": True,
                    "error": "Connection test query failed",
                }

            logger.info("Database health check passed", pool_name=self.name, trace_id=trace_id)
            return {
                "status": "healthy",
                "connected": True,
                "pool_size": self.config.connection_pool_max_size,
                "current_schema": current_schema,
            }

        except Exception as e:
            logger.error(
                "Database health check failed",
                pool_name=self.name,
                error=str(e),
                error_type=type(e).__name__,
                trace_id=trace_id,
            )
            return {
                "status": "unhealthy",
                "connected": True,
                "error": str(e),
            }

    @asynccontextmanager
    async def acquire_connection(self, read_only: bool = False, timeout: Optional[int] = None):
        """
        Acquire a pooled connection for the duration of the block.

        With read_only or timeout the block runs inside a transaction, so the
        READ ONLY mode and the statement timeout end with it.

        Args:
            read_only: Run the block in a READ ONLY transaction
            timeout: Statement timeout in seconds (SET LOCAL statement_timeout)

        Yields:
            asyncpg.Connection
        """
        if not self.is_connected() or self._pool is None:
            raise DatabaseConnectionError(f"Database client ({self.name}) is not connected")

        async with self._pool.acquire() as connection:
            if not read_only and not timeout:
                yield connection
                return

            async with connection.transaction(readonly=read_only):
                if timeout:
                    await connection.execute(f"SET LOCAL statement_timeout = {int(timeout) * 1000}")
                yield connection

    async def execute_query(
        self,
        query: str,
        params: Optional[List[Any]] = None,
        timeout: Optional[int] = None,
        read_only: bool = False,
    ) -> List[Dict[str, Any]]:
        """
        Execute a query and return rows as dictionaries.

        Raises:
            DatabaseConnectionError: If the client is not connected
            DatabaseQueryError: If the query fails
        """
        trace_id = current_trace_id()
        logger.debug("Executing database query", pool_name=self.name, query=query[:200], trace_id=trace_id)

        async def run(conn: asyncpg.Connection) -> List[Dict[str, Any]]:
            rows = await conn.fetch(query, *(params or []))
            return [dict(row) for row in rows]

        results = await self._run(query, run, timeout=timeout, read_only=read_only)
        logger.debug("Query executed successfully", pool_name=self.name, row_count=len(results), trace_id=trace_id)
        return results

    async def fetch_table(
        self,
        query: str,
        params: Optional[List[Any]] = None,
        timeout: Optional[int] = None,
        read_only: bool = True,
    ) -> Tuple[List[str], List[List[Any]]]:
        """
        Execute a query and return (column names, rows as lists).

        Column names come from the prepared statement, so they are known even
        when no row comes back.
        """
        async def run(conn: asyncpg.Connection) -> Tuple[List[str], List[List[Any]]]:
            statement = await conn.prepare(query)
            columns = [attribute.name for attribute in statement.get_attributes()]
            records = await statement.fetch(*(params or []))
            return columns, [list(record.values()) for record in records]

        return await self._run(query, run, timeout=timeout, read_only=read_only)

    async def execute_scalar(self, query: str, params: Optional[List[Any]] = None) -> Any:
        """Execute a query and return a single value."""
        async def run(conn: asyncpg.Connection) -> Any:
            return await conn.fetchval(query, *(params or []))

        return await self._run(query, run)

    async def execute_command(self, query: str, params: Optional[List[Any]] = None) -> str:
        """Execute a write statement (control database only) and return its status tag."""
        async def run(conn: asyncpg.Connection) -> str:
            return await conn.execute(query, *(params or []))

        return await self._run(query, run)

    async def _run(self, query: str, fn, timeout: Optional[int] = None, read_only: bool = False):
        trace_id = current_trace_id()
        try:
            async with self.acquire_connection(read_only=read_only, timeout=timeout) as conn:
                return await fn(conn)

        except DatabaseConnectionError:
            raise

        except asyncpg.QueryCanceledError as e:
            error_msg = f"Query timeout exceeded: {e}"
            logger.error(error_msg, pool_name=self.name, query=query[:200], trace_id=trace_id)
            raise DatabaseQueryError(error_msg) from e

        except asyncpg.ReadOnlySQLTransactionError as e:
            error_msg = f"Write attempted in read-only transaction: {e}"
            logger.error(error_msg, pool_name=self.name, query=query[:200], trace_id=trace_id)
            raise DatabaseQueryError(error_msg) from e

        except asyncpg.PostgresSyntaxError as e:
            error_msg = f"SQL syntax error: {e}"
            logger.error(error_msg, pool_name=self.name, query=query[:200], trace_id=trace_id)
            raise DatabaseQueryError(error_msg) from e

        except asyncpg.UndefinedTableError as e:
            error_msg = f"Table does not exist: {e}"
            logger.error(error_msg, pool_name=self.name, query=query[:200], trace_id=trace_id)
            raise DatabaseQueryError(error_msg) from e

        except asyncpg.UndefinedColumnError as e:
            error_msg = f"Column does not exist: {e}"
            logger.error(error_msg, pool_name=self.name, query=query[:200], trace_id=trace_id)
            raise DatabaseQueryError(error_msg) from e

        except Exception as e:
            error_msg = f"Query execution failed: {e}"
            logger.error(
                error_msg,
                pool_name=self.name,
                error_type=type(e).__name__,
                query=query[:200],
                trace_id=trace_id,
            )
            raise DatabaseQueryError(error_msg) from e
