"""
SQL Writer Repository.

Drafts one PostgreSQL SELECT for one plan step. The draft is untrusted: the
orchestrator passes it through SqlGuard and metadata validation before it
can run.
"""

from typing import Optional, Sequence

from querypilot.domain.decoding import decode_sql
from querypilot.domain.errors import ConfigurationError, DecodeError, LLMError, QueryPilotException
from querypilot.domain.plans import PlanStep, StepResult
from querypilot.domain.schema import TableSchema
from querypilot.repositories.llm_repository import LLMRepository
from querypilot.repositories.schema_repository import format_schema_for_llm
from querypilot.utils.logging import get_module_logger
from querypilot.utils.prompt_utils import rows_to_json
from querypilot.utils.tracing import current_trace_id

logger = get_module_logger()

PREVIOUS_RESULT_ROWS = 5


class SqlWriterRepository(LLMRepository):
    """Model-backed SQL generation for a single plan step."""

    async def generate_sql(
        self,
        step: PlanStep,
        question: str,
        schema: Sequence[TableSchema],
        previous_results: Optional[Sequence[StepResult]] = None,
        semantics_text: str = "",
    ) -> str:
        """
        Returns:
            Bare SQL: no markdown fences, no trailing semicolon

        Raises:
            ConfigurationError: If the schema is empty
            TransientProviderError: If the provider stays overloaded
            DecodeError: If the reply contains no SQL
            LLMError: For any other model failure
        """
        if not schema:
            raise ConfigurationError("Schema is empty - cannot generate SQL without table information")

        trace_id = current_trace_id()
        prompt = self._build_prompt(step, question, schema, previous_results, semantics_text)

        try:
            raw = await self._generate(prompt, operation="generate_sql")
        except QueryPilotException:
            raise
        except Exception as e:
            raise LLMError(f"Failed to generate SQL: {e}") from e

        decoded = decode_sql(raw)
        if not decoded.ok or decoded.value is None:
            raise DecodeError(
                f"Failed to generate SQL: {decoded.error}",
                details={"step_number": step.step_number},
            )

        logger.info("SQL generated", step_number=step.step_number, sql=decoded.value[:500], trace_id=trace_id)
        return decoded.value

    def _build_prompt(
        self,
        step: PlanStep,
        question: str,
        schema: Sequence[TableSchema],
        previous_results: Optional[Sequence[StepResult]],
        semantics_text: str,
    ) -> str:
        table_names = ", ".join(t.table_name for t in schema)

        previous_context = ""
        if previous_results:
            blocks = [
                f"Step {pr.step_number}: {rows_to_json(pr.result.rows, PREVIOUS_RESULT_ROWS)} "
                f"(showing first {min(PREVIOUS_RESULT_ROWS, pr.result.row_count)} rows of {pr.result.row_count} total)"
                for pr in previous_results
            ]
            previous_context = "Previous query results:\n" + "\n\n".join(blocks) + "\n"

        return f"""You are a SQL query generation assistant. Generate a PostgreSQL SELECT query for the current step.

Database Schema:
{format_schema_for_llm(schema)}

Available table names: {table_names}

{semantics_text}

{previous_context}
User Question: {question}

Current Step: {step.description}
Reasoning: {step.reasoning}

RULES:
1. Use ONLY table and column names from the Database Schema above
2. If the question uses terms from Business Semantics, apply their SQL patterns
3. Never use "undefined", placeholders, or tables that are not in the schema
4. SELECT or WITH ... SELECT only (no INSERT, UPDATE, DELETE, DDL)
5. List columns explicitly; SELECT * is rejected
6. Do NOT add a LIMIT clause; one is added automatically
7. A single statement, syntactically valid PostgreSQL

Respond with ONLY the SQL query. No explanations, no markdown."""
