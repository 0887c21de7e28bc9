"""
Collaborator interfaces used by the orchestrator.

The orchestrator depends only on these protocols. Production implementations
live in querypilot.repositories; unit tests pass in fakes.
"""

from typing import Awaitable, Callable, List, Optional, Protocol, Sequence

from .base_enums import ConfidenceTier
from .discovery import Discovery, SemanticSuggestion
from .plans import Interpretation, Plan, PlanStep, SqlResult, StepResult
from .schema import Semantic, TableMetadata, TableSchema
from .state import AgentNeeds, ConversationTurn, OrchestrationDecision, OrchestratorState, StateCoordinate
from .validation import SQLValidationResult


# Host callbacks

PermissionCallback = Callable[
    [str, int, int, bool, ConfidenceTier, Optional[SQLValidationResult]],
    Awaitable[bool],
]
"""request_permission(sql, step_number, total_steps, has_semantics, confidence_tier, validation_result)"""

AskCallback = Callable[[str], Awaitable[str]]
"""ask_question(prompt) -> the user's answer"""


class DecisionMaker(Protocol):
    async def decide(
        self,
        state: OrchestratorState,
        requested_next: Optional[StateCoordinate],
        needs: AgentNeeds,
    ) -> OrchestrationDecision: ...


class Planner(Protocol):
    async def create_plan(
        self,
        question: str,
        schema: Sequence[TableSchema],
        previous_steps: Optional[Sequence[PlanStep]] = None,
        conversation_history: Optional[Sequence[ConversationTurn]] = None,
        semantics_text: str = "",
    ) -> Plan: ...


class SqlWriter(Protocol):
    async def generate_sql(
        self,
        step: PlanStep,
        question: str,
        schema: Sequence[TableSchema],
        previous_results: Optional[Sequence[StepResult]] = None,
        semantics_text: str = "",
    ) -> str: ...


class Interpreter(Protocol):
    async def interpret(
        self,
        question: str,
        step: PlanStep,
        result: SqlResult,
        all_steps: Sequence[PlanStep],
        completed_steps: Sequence[int],
        semantics_text: str = "",
    ) -> Interpretation: ...


class PatternAnalyzer(Protocol):
    async def analyze(
        self,
        result: SqlResult,
        schema: Sequence[TableSchema],
        table_name: str,
        column_name: Optional[str] = None,
    ) -> Discovery: ...


class SqlExecutor(Protocol):
    async def execute(self, sql: str) -> SqlResult: ...


class SchemaProvider(Protocol):
    async def get_schema(self) -> List[TableSchema]: ...


class ControlStore(Protocol):
    async def all_table_metadata(self) -> List[TableMetadata]: ...

    async def get_semantics(self) -> List[Semantic]: ...

    async def detect_semantics(self, question: str) -> List[str]: ...

    def format_semantics_for_llm(self, semantics: Sequence[Semantic]) -> str: ...

    async def insert_suggestion(self, suggestion: SemanticSuggestion) -> Optional[SemanticSuggestion]: ...

    async def approve_suggestion(self, suggestion: SemanticSuggestion, reviewed_by: str = "user") -> None: ...

    async def save_run_log(
        self,
        question: str,
        sql_queries: Sequence[str],
        rows_returned: Sequence[int],
        durations_ms: Sequence[float],
        detected_semantic_ids: Sequence[str],
    ) -> Optional[str]: ...
