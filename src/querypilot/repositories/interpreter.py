"""
Interpreter Repository.

Reads one step's result and decides whether the question is answered
(FINAL_ANSWER) or more work is needed (NEEDS_REFINEMENT).

Recovery: on a non-transient failure the result is summarized directly when
rows exist and every step has run; otherwise refinement is requested.
"""

from typing import Sequence

from querypilot.domain.base_enums import ConfidenceTier, InterpretationStatus
from querypilot.domain.decoding import decode_interpretation
from querypilot.domain.errors import TransientProviderError
from querypilot.domain.plans import Interpretation, PlanStep, SqlResult
from querypilot.repositories.llm_repository import LLMRepository
from querypilot.utils.logging import get_module_logger
from querypilot.utils.prompt_utils import rows_to_json
from querypilot.utils.tracing import current_trace_id

logger = get_module_logger()


def fallback_interpretation(
    result: SqlResult,
    all_steps: Sequence[PlanStep],
    completed_steps: Sequence[int],
    max_rows: int,
) -> Interpretation:
    if result.row_count > 0 and len(completed_steps) >= len(all_steps):
        return Interpretation(
            status=InterpretationStatus.FINAL_ANSWER,
            answer=f"Query returned {result.row_count} rows. Here are the results:\n{rows_to_json(result.rows, max_rows)}",
            confidence=ConfidenceTier.MEDIUM,
        )
    return Interpretation(
        status=InterpretationStatus.NEEDS_REFINEMENT,
        next_step="Continue with next step in plan",
        confidence=ConfidenceTier.LOW,
    )


class InterpreterRepository(LLMRepository):
    """Model-backed interpretation of step results."""

    def __init__(self, llm_client, retry_policy=None, max_result_rows: int = 50):
        super().__init__(llm_client, retry_policy)
        self.max_result_rows = max_result_rows

    async def interpret(
        self,
        question: str,
        step: PlanStep,
        result: SqlResult,
        all_steps: Sequence[PlanStep],
        completed_steps: Sequence[int],
        semantics_text: str = "",
    ) -> Interpretation:
        trace_id = current_trace_id()
        prompt = self._build_prompt(question, step, result, all_steps, completed_steps, semantics_text)

        try:
            raw = await self._generate(prompt, operation="interpret")
        except TransientProviderError:
            raise
        except Exception as e:
            logger.warning("Interpretation failed, using fallback", error=str(e), trace_id=trace_id)
            return fallback_interpretation(result, all_steps, completed_steps, self.max_result_rows)

        decoded = decode_interpretation(raw)
        if not decoded.ok or decoded.value is None:
            logger.warning("Interpretation reply could not be decoded, using fallback", error=decoded.error, trace_id=trace_id)
            return fallback_interpretation(result, all_steps, completed_steps, self.max_result_rows)

        logger.info(
            "Result interpreted",
            step_number=step.step_number,
            status=decoded.value.status.value,
            confidence=decoded.value.confidence.value,
            trace_id=trace_id,
        )
        return decoded.value

    def _build_prompt(
        self,
        question: str,
        step: PlanStep,
        result: SqlResult,
        all_steps: Sequence[PlanStep],
        completed_steps: Sequence[int],
        semantics_text: str,
    ) -> str:
        shown = min(len(result.rows), self.max_result_rows)
        more_note = f" (showing first {shown} rows)" if len(result.rows) > self.max_result_rows else ""
        remaining = [str(s.step_number) for s in all_steps if s.step_number not in completed_steps]

        return f"""You are a SQL result interpretation assistant. Decide whether the results answer the user's question or more queries are needed.

{semantics_text}

User Question: {question}

Current Step: {step.description} (Step {step.step_number} of {len(all_steps)})
SQL Executed: {step.sql_query or 'N/A'}

Query Results:
- Columns: {', '.join(result.columns)}
- Rows returned: {result.row_count}{more_note}
- Execution time: {round(result.duration_ms)}ms

Sample Data (first {shown} rows):
{rows_to_json(result.rows, self.max_result_rows)}

Completed Steps: {', '.join(str(n) for n in completed_steps)}
Remaining Steps: {', '.join(remaining)}

CRITICAL RULES:
1. If the results directly answer the question, return FINAL_ANSWER
2. A LIMIT clause is a safety feature; a limited result that answers the question is still a FINAL_ANSWER
3. "Show me all X" questions are answered by a representative sample
4. Return NEEDS_REFINEMENT only if the query returned nothing useful, returned clearly wrong data, or data from other tables is needed

Respond with ONLY a JSON object in this exact format:
{{
  "status": "FINAL_ANSWER" or "NEEDS_REFINEMENT",
  "answer": "The answer to the user's question (only if FINAL_ANSWER)",
  "nextStep": "What to do next (only if NEEDS_REFINEMENT)",
  "confidence": "high" or "medium" or "low"
}}"""
