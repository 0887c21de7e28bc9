"""
Pattern Analyzer Repository.

Looks at exploration data from one table (or one column's value
distribution) and proposes a reusable business semantic together with a
query that would confirm the pattern.
"""

from typing import Optional, Sequence

from querypilot.domain.decoding import decode_discovery
from querypilot.domain.discovery import Discovery
from querypilot.domain.errors import DecodeError, LLMError, QueryPilotException
from querypilot.domain.plans import SqlResult
from querypilot.domain.schema import TableSchema
from querypilot.repositories.llm_repository import LLMRepository
from querypilot.repositories.schema_repository import format_schema_for_llm
from querypilot.utils.logging import get_module_logger
from querypilot.utils.prompt_utils import rows_to_json
from querypilot.utils.tracing import current_trace_id

logger = get_module_logger()

SAMPLE_ROWS = 50


class PatternAnalyzerRepository(LLMRepository):
    """Model-backed pattern analysis for DISCOVERY mode."""

    async def analyze(
        self,
        result: SqlResult,
        schema: Sequence[TableSchema],
        table_name: str,
        column_name: Optional[str] = None,
    ) -> Discovery:
        trace_id = current_trace_id()
        prompt = self._build_prompt(result, schema, table_name, column_name)

        try:
            raw = await self._generate(prompt, operation="analyze_pattern")
        except QueryPilotException:
            raise
        except Exception as e:
            raise LLMError(f"Pattern analysis failed: {e}") from e

        decoded = decode_discovery(raw, table_name, column_name)
        if not decoded.ok or decoded.value is None:
            raise DecodeError(
                f"Pattern analysis reply could not be decoded: {decoded.error}",
                details={"table_name": table_name, "column_name": column_name},
            )

        logger.info(
            "Pattern detected",
            table_name=table_name,
            column_name=column_name,
            pattern=decoded.value.pattern,
            confidence=decoded.value.confidence,
            trace_id=trace_id,
        )
        return decoded.value

    def _build_prompt(
        self,
        result: SqlResult,
        schema: Sequence[TableSchema],
        table_name: str,
        column_name: Optional[str],
    ) -> str:
        target = f"column {table_name}.{column_name} (value distribution)" if column_name else f"table {table_name} (sample rows)"

        return f"""You are a semantic learning system. Analyze exploration data from a PostgreSQL database and extract one reusable business semantic.

Database Schema:
{format_schema_for_llm(schema, table_name)}

Exploring: {target}
Columns: {', '.join(result.columns)}
Rows returned: {result.row_count}

Data (first {min(SAMPLE_ROWS, len(result.rows))} rows):
{rows_to_json(result.rows, SAMPLE_ROWS)}

TASK:
1. Describe the most useful pattern in the data (status values, categories, time ranges, metrics)
2. Propose a semantic: name, type (TIME_PERIOD, METRIC, DIMENSION, BUSINESS_RULE or FIELD_DEFINITION), category, description, SQL fragment
3. Write a SELECT query that would confirm the pattern (explicit columns, no SELECT *)
4. Rate your confidence from 0.0 to 1.0
   - 0.90-1.00: the data shows the pattern unambiguously
   - 0.70-0.89: clear pattern
   - 0.50-0.69: inferred pattern
   - below 0.50: tentative

OUTPUT (JSON only, no markdown):
{{
  "pattern": "orders.status takes five values; 'delivered' marks completed orders",
  "confidence": 0.8,
  "validationQuery": "SELECT status, COUNT(*) AS count FROM orders GROUP BY status",
  "suggestedSemantic": {{
    "suggested_name": "completed orders",
    "suggested_type": "DIMENSION",
    "category": "Order Status",
    "description": "Orders whose status is delivered",
    "sql_fragment": "status = 'delivered'",
    "primary_table": "{table_name}",
    "primary_column": "{column_name or 'status'}",
    "synonyms": ["delivered orders", "fulfilled orders"],
    "confidence": 0.8
  }},
  "evidence": {{"distinct_values": 5}}
}}"""
