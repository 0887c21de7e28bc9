"""
Integration tests for DatabaseClient connection.

This module verifies basic connectivity to the inspected PostgreSQL database
and, when one is configured, the control database.

Usage:
    # Run all database connection tests
    pytest tests/integration/test_db_connection.py -v

    # Run specific test
    pytest tests/integration/test_db_connection.py::TestDatabaseConnection::test_basic_connection -v

    # Run with output
    pytest tests/integration/test_db_connection.py -v -s
"""

import pytest

from querypilot.config import get_settings
from querypilot.infrastructure.database_client import DatabaseClient
from querypilot.repositories.schema_repository import SchemaRepository


@pytest.fixture
def db_config():
    """Get database configuration from settings."""
    settings = get_settings()
    return settings.database


@pytest.fixture
async def db_client(db_config):
    """Create and connect database client."""
    client = DatabaseClient(db_config)
    await client.connect()
    yield client
    if client.is_connected():
        await client.close()


@pytest.mark.integration
class TestDatabaseConnection:
    """Integration tests for database connectivity."""

    @pytest.mark.asyncio
    async def test_basic_connection(self, db_config):
        """Test basic database connection and disconnection."""
        client = DatabaseClient(db_config)

        await client.connect()
        assert client.is_connected()

        await client.close()
        assert not client.is_connected()

    @pytest.mark.asyncio
    async def test_simple_query(self, db_client):
        """Test simple query execution."""
        result = await db_client.execute_scalar("SELECT 1")
        assert result == 1

    @pytest.mark.asyncio
    async def test_health_check(self, db_client):
        """Test health check reports a healthy pool."""
        health = await db_client.health_check()
        assert health["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_config_applied(self, db_config, db_client):
        """Test that configuration is properly applied."""
        assert db_client.config == db_config
        assert db_client.config.default_schema == db_config.default_schema
        assert db_client.config.connection_pool_max_size == db_config.connection_pool_max_size

    @pytest.mark.asyncio
    async def test_fetch_table_returns_columns_without_rows(self, db_client):
        """Column names come back even for an empty result."""
        columns, rows = await db_client.fetch_table("SELECT 1 AS one, 'a' AS letter WHERE false")
        assert columns == ["one", "letter"]
        assert rows == []

    @pytest.mark.asyncio
    async def test_schema_loads(self, db_config, db_client):
        """Test the schema repository reads base tables and ordered columns."""
        repo = SchemaRepository(db_client, schema=db_config.default_schema)
        tables = await repo.get_schema()
        assert isinstance(tables, list)
        for table in tables:
            assert table.table_name
            assert all(column.name and column.data_type for column in table.columns)
        assert await repo.get_schema() is tables


@pytest.mark.integration
class TestControlDatabaseConnection:
    """Integration tests for the optional control database."""

    @pytest.mark.asyncio
    async def test_control_connection(self):
        """Test control database connectivity when configured."""
        control_config = get_settings().control_database
        if control_config is None:
            pytest.skip("CONTROL_DATABASE__DATABASE_URL not set")

        client = DatabaseClient(control_config, name="control")
        await client.connect()
        try:
            assert await client.execute_scalar("SELECT 1") == 1
        finally:
            await client.close()
