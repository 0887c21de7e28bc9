"""
Decision makers: choose the orchestrator's next (mode, sub-state).

- LLMDecisionMaker asks the model, given the state, the tool's own request
  and every tool's latest needs. Its reply must decode; there is no fallback.
- FollowToolDecisionMaker takes the tool's requested coordinate as-is and
  terminates the active mode when the tool requested nothing.

Neither validates the coordinate: the orchestrator does that for both.
"""

from typing import List, Optional

from querypilot.config_constants import DecisionStrategy
from querypilot.domain.base_enums import Mode
from querypilot.domain.decoding import decode_decision
from querypilot.domain.errors import ConfigurationError, DecodeError, LLMError, QueryPilotException
from querypilot.domain.state import (
    SUB_STATES,
    AgentNeeds,
    OrchestrationDecision,
    OrchestratorState,
    StateCoordinate,
)
from querypilot.infrastructure.llm_client import LLMClient
from querypilot.repositories.llm_repository import LLMRepository
from querypilot.utils.logging import get_module_logger
from querypilot.utils.retry import RetryPolicy
from querypilot.utils.tracing import current_trace_id

logger = get_module_logger()


def _label(value) -> str:
    return value.value if value is not None else "null"


def format_needs(needs: AgentNeeds) -> str:
    parts: List[str] = []
    if needs.planner:
        p = needs.planner
        parts.append(
            "PLANNER:\n"
            f"- Needs Clarification: {p.needs_clarification}\n"
            f"- Needs Discovery: {p.needs_discovery or 'No'}\n"
            f"- Confidence: {p.confidence}\n"
            f"- Can Proceed: {p.can_proceed}\n"
            f"- Blocking Issues: {', '.join(p.blocking_issues) or 'None'}"
        )
    if needs.sql_writer:
        s = needs.sql_writer
        parts.append(
            "SQL WRITER:\n"
            f"- Needs Optimization: {s.needs_optimization or 'No'}\n"
            f"- Blocked By: {s.blocked_by or 'Nothing'}\n"
            f"- Confidence: {s.confidence}\n"
            f"- Can Generate: {s.can_generate}"
        )
    if needs.interpreter:
        i = needs.interpreter
        parts.append(
            "INTERPRETER:\n"
            f"- Needs Refinement: {i.needs_refinement or 'No'}\n"
            f"- Suggested Next Step: {i.suggested_next_step or 'N/A'}\n"
            f"- Confidence: {i.confidence}\n"
            f"- Is Complete: {i.is_complete}"
        )
    if needs.guard:
        g = needs.guard
        parts.append(
            "GUARD:\n"
            f"- Validation Issues: {', '.join(g.validation_issues) or 'None'}\n"
            f"- Confidence: {g.confidence}\n"
            f"- Is Safe: {g.is_safe}"
        )
    if needs.discovery:
        d = needs.discovery
        parts.append(
            "DISCOVERY:\n"
            f"- Can Help: {d.can_help}\n"
            f"- Suggested Target: {d.suggested_target or 'None'}\n"
            f"- Ready To Explore: {d.ready_to_explore}\n"
            f"- Confidence: {d.confidence}"
        )
    return "\n\n".join(parts) if parts else "No agent needs expressed."


def _valid_combinations() -> str:
    lines = []
    for mode in Mode:
        sub_states = ", ".join(member.value for member in SUB_STATES[mode])
        lines.append(f"- {mode.value}: {sub_states}, null")
    return "\n".join(lines)


class LLMDecisionMaker(LLMRepository):
    """Asks the model for every transition."""

    async def decide(
        self,
        state: OrchestratorState,
        requested_next: Optional[StateCoordinate],
        needs: AgentNeeds,
    ) -> OrchestrationDecision:
        trace_id = current_trace_id()
        prompt = self._build_prompt(state, requested_next, needs)

        try:
            raw = await self._generate(prompt, operation="decide_next_action")
        except QueryPilotException:
            raise
        except Exception as e:
            raise LLMError(f"Orchestration decision failed: {e}") from e

        decoded = decode_decision(raw)
        if not decoded.ok or decoded.value is None:
            raise DecodeError(f"Orchestration decision could not be decoded: {decoded.error}")

        logger.debug(
            "Model decision received",
            next_mode=decoded.value.next_mode,
            next_sub_state=decoded.value.next_sub_state,
            confidence=decoded.value.confidence,
            trace_id=trace_id,
        )
        return decoded.value

    def _build_prompt(
        self,
        state: OrchestratorState,
        requested_next: Optional[StateCoordinate],
        needs: AgentNeeds,
    ) -> str:
        context = state.context
        return f"""You are an intelligent orchestrator for a SQL query assistant system.

CURRENT STATE:
- Active Mode: {_label(state.active_mode)}
- Current Sub-State: {_label(state.active_sub_state())}
- Query State: {_label(state.query_state)}
- Discovery State: {_label(state.discovery_state)}
- Semantic Storing State: {_label(state.semantic_storing_state)}
- Tool Requested Next: {requested_next if requested_next is not None else 'nothing'}

AGENT NEEDS:
{format_needs(needs)}

CONTEXT:
- Question: {context.question or 'N/A'}
- Plan Goal: {context.plan.overall_goal if context.plan else 'N/A'}
- Executed Steps: {len(context.executed_steps)}
- Iteration: {context.iteration_count}
- Queries Executed: {len(context.sql_queries)}

DECISION GUIDELINES:
1. The tool's requested next state is usually right; deviate only when agent needs say otherwise
2. If Planner needs discovery, consider switching to DISCOVERY mode
3. If Interpreter needs refinement, decide whether to re-plan or continue with the next step
4. Prioritize answering the user's question efficiently
5. Respect mode priorities: QUERY > DISCOVERY > SEMANTIC_STORING
6. Only transition to a null sub-state when the mode is truly complete

VALID MODE/SUB-STATE COMBINATIONS:
{_valid_combinations()}

Respond with ONLY a JSON object in this exact format:
{{
  "nextMode": "QUERY" | "DISCOVERY" | "SEMANTIC_STORING",
  "nextSubState": "..." | null,
  "reasoning": "Why this decision",
  "confidence": 0.0-1.0,
  "alternativeOptions": [
    {{"mode": "...", "subState": "..." | null, "reasoning": "...", "confidence": 0.0-1.0}}
  ]
}}"""


class FollowToolDecisionMaker:
    """Deterministic strategy: do what the tool asked for."""

    async def decide(
        self,
        state: OrchestratorState,
        requested_next: Optional[StateCoordinate],
        needs: AgentNeeds,
    ) -> OrchestrationDecision:
        if requested_next is not None:
            return OrchestrationDecision.to(requested_next, "Following the tool's requested next state")

        mode = state.active_mode or Mode.QUERY
        return OrchestrationDecision.to(
            StateCoordinate(mode, None),
            "Tool requested nothing further; terminating the active mode",
        )


def build_decision_maker(
    strategy: DecisionStrategy,
    llm_client: Optional[LLMClient],
    retry_policy: Optional[RetryPolicy] = None,
):
    if strategy is DecisionStrategy.FOLLOW_TOOL:
        return FollowToolDecisionMaker()
    if llm_client is None:
        raise ConfigurationError("decision_strategy 'llm' requires an LLM client")
    return LLMDecisionMaker(llm_client, retry_policy)
