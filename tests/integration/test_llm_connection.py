"""
Integration tests for LLMClient connection and the model-backed repositories.

This module verifies connectivity to OpenRouter API, basic generation and
that real model replies decode into plans and guarded SQL.

Usage:
    # Run all LLM connection tests
    pytest tests/integration/test_llm_connection.py -v

    # Run specific test
    pytest tests/integration/test_llm_connection.py::TestLLMConnection::test_basic_connection -v

    # Run with output
    pytest tests/integration/test_llm_connection.py -v -s
"""

import pytest

from querypilot.config import get_settings
from querypilot.domain.base_enums import PlanStatus
from querypilot.domain.errors import LLMError
from querypilot.domain.schema import ColumnSchema, TableSchema
from querypilot.infrastructure.llm_client import LLMClient
from querypilot.repositories.planner import PlannerRepository
from querypilot.repositories.sql_guard import SqlGuard
from querypilot.repositories.sql_writer import SqlWriterRepository
from querypilot.utils.retry import RetryPolicy


@pytest.fixture
def llm_config():
    """Get LLM configuration from settings."""
    settings = get_settings()
    return settings.llm


@pytest.fixture
async def llm_client(llm_config):
    """Create and connect LLM client."""
    client = LLMClient(llm_config)
    await client.connect()
    yield client
    if client.is_connected():
        await client.close()


@pytest.fixture
def retry_policy():
    return RetryPolicy(get_settings().retry)


@pytest.fixture
def schema():
    return [
        TableSchema(
            table_name="orders",
            columns=[
                ColumnSchema(name="id", data_type="integer", is_nullable=False),
                ColumnSchema(name="status", data_type="text"),
                ColumnSchema(name="total", data_type="numeric"),
                ColumnSchema(name="created_at", data_type="timestamp with time zone"),
            ],
        ),
    ]


@pytest.mark.integration
class TestLLMConnection:
    """Integration tests for LLM client connectivity."""

    @pytest.mark.asyncio
    async def test_basic_connection(self, llm_config):
        """Test basic LLM client connection and disconnection."""
        client = LLMClient(llm_config)

        await client.connect()
        assert client.is_connected()

        await client.close()
        assert not client.is_connected()

    @pytest.mark.asyncio
    async def test_config_applied(self, llm_config, llm_client):
        """Test that configuration is properly applied."""
        assert llm_client.config == llm_config
        assert llm_client.config.default_model == llm_config.default_model
        assert llm_client.config.temperature == llm_config.temperature

    @pytest.mark.asyncio
    async def test_generate_requires_connection(self, llm_config):
        """Test that generation on a closed client fails fast."""
        with pytest.raises(LLMError):
            await LLMClient(llm_config).generate("Say 'Hello'")


@pytest.mark.integration
class TestSimpleGeneration:
    """Integration tests for simple text generation."""

    @pytest.mark.asyncio
    async def test_generate_short_response(self, llm_client):
        """Test generation with short prompt and response."""
        response = await llm_client.generate("Say 'Hello'")

        assert isinstance(response, str)
        assert "hello" in response.lower()

    @pytest.mark.asyncio
    async def test_generate_with_system_prompt(self, llm_client):
        """Test generation with system prompt and temperature override."""
        system_prompt = "You are a SQL expert. Answer questions about databases concisely."

        response = await llm_client.generate(
            "What does SELECT do in SQL?",
            system_prompt=system_prompt,
            temperature=0.0,
        )

        assert any(word in response.lower() for word in ["select", "retrieve", "query", "data"])

    @pytest.mark.asyncio
    async def test_oversized_prompt_is_rejected(self, llm_client):
        """Prompts above max_input_chars never reach the provider."""
        with pytest.raises(LLMError):
            await llm_client.generate("x" * (llm_client.config.max_input_chars + 1))


@pytest.mark.integration
class TestModelBackedRepositories:
    """Real replies decode into plans and SQL that pass the guard."""

    @pytest.mark.asyncio
    async def test_planner_returns_a_plan(self, llm_client, retry_policy, schema):
        """Test that a plain question is planned into numbered steps."""
        planner = PlannerRepository(llm_client, retry_policy)

        plan = await planner.create_plan("How many orders are there per status?", schema)

        assert plan.status in (PlanStatus.READY, PlanStatus.CLARIFICATION_NEEDED)
        if plan.status == PlanStatus.READY:
            assert [step.step_number for step in plan.steps] == list(range(1, len(plan.steps) + 1))

    @pytest.mark.asyncio
    async def test_generated_sql_passes_guard(self, llm_client, retry_policy, schema):
        """Test that SQL written for a simple step is accepted by SqlGuard."""
        planner = PlannerRepository(llm_client, retry_policy)
        writer = SqlWriterRepository(llm_client, retry_policy)
        plan = await planner.create_plan("Count orders by status", schema)
        if not plan.steps:
            pytest.skip("Model asked for clarification")

        sql = await writer.generate_sql(plan.steps[0], "Count orders by status", schema)

        result = SqlGuard().validate(sql)
        assert result.valid, result.reason
        assert result.sanitized_sql.endswith(";")
