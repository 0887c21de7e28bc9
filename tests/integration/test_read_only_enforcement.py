"""
Integration tests for read-only enforcement of generated SQL.

SqlExecutionRepository runs every statement in a READ ONLY transaction with a
statement timeout, so even a statement that slipped past SqlGuard cannot write.

Usage:
    # Run all read-only enforcement tests
    pytest tests/integration/test_read_only_enforcement.py -v

    # Run with output (see logs)
    pytest tests/integration/test_read_only_enforcement.py -v -s

Requirements:
    - DATABASE__DATABASE_URL must be set in .env
"""

import asyncpg
import pytest

from querypilot.config import get_settings
from querypilot.domain.errors import DatabaseQueryError, QueryExecutionError
from querypilot.infrastructure.database_client import DatabaseClient
from querypilot.repositories.sql_execution import SqlExecutionRepository
from querypilot.repositories.sql_guard import SqlGuard


@pytest.fixture
def database_config():
    """Get database configuration from settings."""
    settings = get_settings()
    return settings.database


@pytest.fixture
async def db_client(database_config):
    """Create and connect database client."""
    client = DatabaseClient(database_config)
    await client.connect()
    yield client
    if client.is_connected():
        await client.close()


@pytest.fixture
def executor(db_client):
    return SqlExecutionRepository(db_client, timeout_seconds=5)


@pytest.mark.integration
class TestReadOnlyEnforcement:
    """Test read-only enforcement at connection level."""

    @pytest.mark.asyncio
    async def test_read_operations_work_in_read_only_mode(self, db_client):
        """Test that read operations work when read_only=True."""
        async with db_client.acquire_connection(read_only=True) as conn:
            result = await conn.fetchval("SELECT 1")
            assert result == 1

    @pytest.mark.asyncio
    async def test_write_operations_blocked_in_read_only_mode(self, db_client):
        """Test that write operations fail when read_only=True."""
        with pytest.raises(asyncpg.ReadOnlySQLTransactionError):
            async with db_client.acquire_connection(read_only=True) as conn:
                await conn.execute("CREATE TEMP TABLE test_read_only (id INT);")

    @pytest.mark.asyncio
    async def test_client_maps_read_only_violation(self, db_client):
        """Test that fetch_table reports the violation as DatabaseQueryError."""
        with pytest.raises(DatabaseQueryError):
            await db_client.fetch_table("CREATE TEMP TABLE test_mapped (id INT)", read_only=True)


@pytest.mark.integration
class TestSqlExecution:
    """Test SqlExecutionRepository against the real database."""

    @pytest.mark.asyncio
    async def test_guarded_select_runs(self, executor):
        """A sanitized statement executes and reports its rows."""
        sanitized = SqlGuard(max_rows=5).validate("SELECT generate_series(1, 10) AS n").sanitized_sql

        result = await executor.execute(sanitized)

        assert result.columns == ["n"]
        assert result.row_count == 5
        assert result.rows[0] == [1]
        assert result.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_write_is_reported_as_execution_error(self, executor):
        """Writes fail with the statement in the error details."""
        sql = "CREATE TEMP TABLE test_execution_write (id INT)"
        with pytest.raises(QueryExecutionError) as exc_info:
            await executor.execute(sql)
        assert exc_info.value.details["sql"] == sql

    @pytest.mark.asyncio
    async def test_timeout_is_enforced(self, db_client):
        """Statements running past the timeout are cancelled."""
        executor = SqlExecutionRepository(db_client, timeout_seconds=1)
        with pytest.raises(QueryExecutionError):
            await executor.execute("SELECT pg_sleep(3)")
