"""
Planner Repository.

Breaks a question into an ordered list of natural-language steps, or asks
for clarification when the question cannot be planned as stated.

Recovery: any non-transient failure (provider error, undecodable reply)
yields a single-step plan so the run can still proceed.
"""

from typing import List, Optional, Sequence

from querypilot.domain.decoding import decode_plan
from querypilot.domain.errors import TransientProviderError
from querypilot.domain.plans import Plan, PlanStep
from querypilot.domain.schema import TableSchema
from querypilot.domain.state import ConversationTurn
from querypilot.repositories.llm_repository import LLMRepository
from querypilot.repositories.schema_repository import format_schema_for_llm
from querypilot.utils.logging import get_module_logger
from querypilot.utils.tracing import current_trace_id

logger = get_module_logger()

FALLBACK_GOAL = "Answer the user question"
FALLBACK_STEP = "Query the database to answer the question"
FALLBACK_REASONING = "Initial query to gather information"


def fallback_plan() -> Plan:
    return Plan.single_step(FALLBACK_GOAL, FALLBACK_STEP, FALLBACK_REASONING)


class PlannerRepository(LLMRepository):
    """Model-backed query planner."""

    async def create_plan(
        self,
        question: str,
        schema: Sequence[TableSchema],
        previous_steps: Optional[Sequence[PlanStep]] = None,
        conversation_history: Optional[Sequence[ConversationTurn]] = None,
        semantics_text: str = "",
    ) -> Plan:
        trace_id = current_trace_id()
        prompt = self._build_prompt(question, schema, previous_steps, conversation_history, semantics_text)

        try:
            raw = await self._generate(prompt, operation="create_plan")
        except TransientProviderError:
            raise
        except Exception as e:
            logger.warning("Planning failed, using single-step plan", error=str(e), trace_id=trace_id)
            return fallback_plan()

        decoded = decode_plan(raw)
        if not decoded.ok or decoded.value is None:
            logger.warning("Plan reply could not be decoded, using single-step plan", error=decoded.error, trace_id=trace_id)
            return fallback_plan()

        plan = decoded.value
        logger.info(
            "Plan created",
            status=plan.status.value,
            step_count=len(plan.steps),
            overall_goal=plan.overall_goal,
            trace_id=trace_id,
        )
        return plan

    def _build_prompt(
        self,
        question: str,
        schema: Sequence[TableSchema],
        previous_steps: Optional[Sequence[PlanStep]],
        conversation_history: Optional[Sequence[ConversationTurn]],
        semantics_text: str,
    ) -> str:
        sections: List[str] = []

        if conversation_history:
            turns = []
            for index, turn in enumerate(conversation_history, start=1):
                answer = turn.answer if len(turn.answer) <= 200 else turn.answer[:200] + "..."
                turns.append(
                    f"Turn {index}:\n  Q: {turn.question}\n  A: {answer}\n"
                    f"  Tables: {turn.result_table or 'unknown'}\n"
                    f"  Columns: {', '.join(turn.result_columns) or 'unknown'}"
                )
            sections.append("Recent Conversation History (for context awareness):\n" + "\n".join(turns))

        if previous_steps:
            steps = []
            for step in previous_steps:
                line = f"Step {step.step_number}: {step.description}"
                if step.sql_query:
                    line += f"\nSQL: {step.sql_query}"
                steps.append(line)
            sections.append("Previous steps taken:\n" + "\n\n".join(steps))

        context = "\n\n".join(sections)
        follow_up_rules = ""
        if conversation_history:
            follow_up_rules = """
CONTEXT AWARENESS RULES:
- Pronouns ("them", "it", "those") and follow-ups ("also", "by country", "group by") usually refer to the previous turn
- For "group by", "filter" or "show by" follow-ups, reuse the previous turn's base query and add the requested operation
"""

        return f"""You are a SQL query planning assistant. Break the user's question into a step-by-step plan for querying a PostgreSQL database.

Database Schema:
{format_schema_for_llm(schema)}

{semantics_text}

{context}

User Question: {question}
{follow_up_rules}
CRITICAL PLANNING RULES:
1. Review the Business Semantics above; they provide pre-built SQL patterns for specific terms
2. If the question can be answered with a SINGLE query, use ONLY ONE step
3. Only create multiple steps when one query's results are needed to build the next
4. Do not split a simple query into conceptual steps (select, filter, count)
5. If the question is too ambiguous to plan (unknown metric, unclear time range, unclear entity), ask for clarification instead

Respond ONLY with a JSON object in one of these formats:
{{
  "status": "READY",
  "overallGoal": "Brief description of what we're trying to achieve",
  "steps": [
    {{"stepNumber": 1, "description": "What data to retrieve", "reasoning": "Why this step is necessary"}}
  ]
}}

{{
  "status": "CLARIFICATION_NEEDED",
  "overallGoal": "What the user seems to want",
  "clarificationQuestions": ["Question for the user"],
  "clarificationContext": "Why the question is ambiguous"
}}

Do not include SQL in the plan; it is generated separately."""
