"""
State machine models for the orchestrator.

StateCoordinate is the (mode, sub-state) pair used for dispatch; constructing
one outside its mode's valid set raises InvalidTransitionError. RunContext is
an immutable value updated only through `evolve`, and OrchestratorState holds
one sub-state per mode plus the active mode.

A mode whose sub-state is None has terminated and is never re-entered within
the same run.
"""

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field

from .base_enums import DiscoverySubState, Mode, QuerySubState, SemanticStoringSubState
from .discovery import Discovery, SemanticSuggestion
from .errors import InvalidTransitionError
from .plans import Interpretation, Plan, PlanStep, StepResult
from .schema import TableSchema


SubState = Union[QuerySubState, DiscoverySubState, SemanticStoringSubState]

SUB_STATES: Dict[Mode, Type[Enum]] = {
    Mode.QUERY: QuerySubState,
    Mode.DISCOVERY: DiscoverySubState,
    Mode.SEMANTIC_STORING: SemanticStoringSubState,
}

# Activation priority when no mode is active
MODE_PRIORITY = (Mode.QUERY, Mode.DISCOVERY, Mode.SEMANTIC_STORING)


def parse_mode(value: Any) -> Mode:
    if isinstance(value, Mode):
        return value
    try:
        return Mode(str(value).upper())
    except ValueError:
        raise InvalidTransitionError(f"Invalid mode: {value}", details={"mode": str(value)}) from None


def parse_sub_state(mode: Mode, value: Any) -> Optional[SubState]:
    """Coerce `value` into `mode`'s sub-state enum; None and "null" mean terminated."""
    if value is None or (isinstance(value, str) and value.strip().lower() in ("", "null", "none")):
        return None
    enum_cls = SUB_STATES[mode]
    if isinstance(value, enum_cls):
        return value  # type: ignore[return-value]
    raw = value.value if isinstance(value, Enum) else str(value)
    try:
        return enum_cls(raw.upper())  # type: ignore[return-value]
    except ValueError:
        raise InvalidTransitionError(
            f"Invalid sub-state {raw} for mode {mode.value}",
            details={"mode": mode.value, "sub_state": raw},
        ) from None


@dataclass(frozen=True)
class StateCoordinate:
    mode: Mode
    sub_state: Optional[SubState] = None

    def __post_init__(self) -> None:
        mode = parse_mode(self.mode)
        object.__setattr__(self, "mode", mode)
        object.__setattr__(self, "sub_state", parse_sub_state(mode, self.sub_state))

    @property
    def is_terminal(self) -> bool:
        return self.sub_state is None

    def __str__(self) -> str:
        return f"{self.mode.value}:{self.sub_state.value if self.sub_state else 'null'}"


# =============================================================================
# Agent needs (self-reports from each tool)
# =============================================================================

class PlannerNeeds(BaseModel):
    needs_clarification: bool = False
    needs_discovery: Optional[str] = Field(default=None, description="Table the planner wants explored")
    confidence: float = 0.5
    can_proceed: bool = True
    blocking_issues: List[str] = Field(default_factory=list)


class SqlWriterNeeds(BaseModel):
    blocked_by: Optional[str] = None
    needs_optimization: Optional[str] = None
    confidence: float = 0.5
    can_generate: bool = True


class InterpreterNeeds(BaseModel):
    needs_refinement: Optional[str] = None
    suggested_next_step: Optional[str] = None
    confidence: float = 0.5
    is_complete: bool = False


class GuardNeeds(BaseModel):
    is_safe: bool = True
    validation_issues: List[str] = Field(default_factory=list)
    confidence: float = 1.0


class DiscoveryNeeds(BaseModel):
    can_help: bool = False
    suggested_target: Optional[str] = None
    ready_to_explore: bool = False
    confidence: float = 0.5


class AgentNeeds(BaseModel):
    """Latest self-report of every tool that has run."""

    model_config = ConfigDict(frozen=True)

    planner: Optional[PlannerNeeds] = None
    sql_writer: Optional[SqlWriterNeeds] = None
    interpreter: Optional[InterpreterNeeds] = None
    guard: Optional[GuardNeeds] = None
    discovery: Optional[DiscoveryNeeds] = None

    def merged(self, other: Optional["AgentNeeds"]) -> "AgentNeeds":
        if other is None:
            return self
        updates = {name: value for name, value in other if value is not None}
        return self.model_copy(update=updates)

    def summary(self) -> str:
        parts: List[str] = []
        if self.planner:
            if self.planner.needs_clarification:
                parts.append("Planner:clarification")
            if self.planner.needs_discovery:
                parts.append(f"Planner:discovery({self.planner.needs_discovery})")
            if self.planner.blocking_issues:
                parts.append("Planner:blocked")
        if self.sql_writer:
            if self.sql_writer.blocked_by:
                parts.append("SQLWriter:blocked")
            if self.sql_writer.needs_optimization:
                parts.append("SQLWriter:optimize")
        if self.interpreter and self.interpreter.needs_refinement:
            parts.append("Interpreter:refine")
        if self.guard:
            if self.guard.validation_issues:
                parts.append("Guard:issues")
            if not self.guard.is_safe:
                parts.append("Guard:unsafe")
        if self.discovery and self.discovery.can_help:
            parts.append("Discovery:ready")
        return ", ".join(parts)


class OrchestrationDecision(BaseModel):
    """Next (mode, sub-state) proposed by the decision maker."""

    next_mode: str
    next_sub_state: Optional[str] = None
    reasoning: str = ""
    confidence: float = 0.5
    alternatives: List[Dict[str, Any]] = Field(default_factory=list)

    def coordinate(self) -> StateCoordinate:
        return StateCoordinate(self.next_mode, self.next_sub_state)  # type: ignore[arg-type]

    @classmethod
    def to(cls, coordinate: StateCoordinate, reasoning: str, confidence: float = 1.0) -> "OrchestrationDecision":
        return cls(
            next_mode=coordinate.mode.value,
            next_sub_state=coordinate.sub_state.value if coordinate.sub_state else None,
            reasoning=reasoning,
            confidence=confidence,
        )


class ConversationTurn(BaseModel):
    question: str
    answer: str
    result_table: Optional[str] = None
    result_columns: List[str] = Field(default_factory=list)


# =============================================================================
# Run context
# =============================================================================

class RunContext(BaseModel):
    """Everything one run has learned so far. Never mutated; see `evolve`."""

    model_config = ConfigDict(frozen=True)

    question: str
    conversation_history: List[ConversationTurn] = Field(default_factory=list)
    executed_steps: List[PlanStep] = Field(default_factory=list)
    previous_results: List[StepResult] = Field(default_factory=list)
    discoveries: List[Discovery] = Field(default_factory=list)
    plan: Optional[Plan] = None

    # Parallel sequences, one entry per executed statement
    sql_queries: List[str] = Field(default_factory=list)
    rows_returned: List[int] = Field(default_factory=list)
    durations_ms: List[float] = Field(default_factory=list)

    # Steps of the current plan already executed; reset whenever a plan is adopted
    current_step_index: int = 0

    iteration_count: int = 0
    refinement_count: int = 0
    clarification_count: int = 0
    previous_plans: List[str] = Field(default_factory=list)
    start_time: float = Field(default_factory=time.monotonic)

    agent_needs: AgentNeeds = Field(default_factory=AgentNeeds)
    decision_history: List[OrchestrationDecision] = Field(default_factory=list)

    detected_semantic_ids: List[str] = Field(default_factory=list)
    semantics_text: str = ""
    schema_tables: List[TableSchema] = Field(default_factory=list)

    last_interpretation: Optional[Interpretation] = None
    saved_suggestion: Optional[SemanticSuggestion] = None
    exploration_table: Optional[str] = None
    exploration_column: Optional[str] = None

    def evolve(self, **changes: Any) -> "RunContext":
        unknown = set(changes) - set(type(self).model_fields)
        if unknown:
            raise KeyError(f"Unknown RunContext fields: {sorted(unknown)}")
        return self.model_copy(update=changes)

    def elapsed_ms(self, now: Optional[float] = None) -> float:
        return ((now if now is not None else time.monotonic()) - self.start_time) * 1000

    @property
    def has_semantics(self) -> bool:
        return len(self.detected_semantic_ids) > 0

    @property
    def last_result(self) -> Optional[StepResult]:
        return self.previous_results[-1] if self.previous_results else None

    @property
    def total_rows(self) -> int:
        return sum(self.rows_returned)

    @property
    def total_duration_ms(self) -> float:
        return sum(self.durations_ms)


@dataclass(frozen=True)
class OrchestratorState:
    active_mode: Optional[Mode]
    query_state: Optional[QuerySubState]
    discovery_state: Optional[DiscoverySubState]
    semantic_storing_state: Optional[SemanticStoringSubState]
    context: RunContext

    @classmethod
    def initial(cls, start: StateCoordinate, context: RunContext) -> "OrchestratorState":
        state = cls(
            active_mode=None,
            query_state=None,
            discovery_state=None,
            semantic_storing_state=None,
            context=context,
        )
        return state.with_sub_state(start.mode, start.sub_state).with_active(start.mode)

    def sub_state_of(self, mode: Mode) -> Optional[SubState]:
        if mode is Mode.QUERY:
            return self.query_state
        if mode is Mode.DISCOVERY:
            return self.discovery_state
        return self.semantic_storing_state

    def active_sub_state(self) -> Optional[SubState]:
        if self.active_mode is None:
            return None
        return self.sub_state_of(self.active_mode)

    def next_active_mode(self) -> Optional[Mode]:
        for mode in MODE_PRIORITY:
            if self.sub_state_of(mode) is not None:
                return mode
        return None

    def all_terminated(self) -> bool:
        return self.next_active_mode() is None

    def with_sub_state(self, mode: Mode, sub_state: Optional[SubState]) -> "OrchestratorState":
        checked = parse_sub_state(mode, sub_state)
        if mode is Mode.QUERY:
            return replace(self, query_state=checked)
        if mode is Mode.DISCOVERY:
            return replace(self, discovery_state=checked)
        return replace(self, semantic_storing_state=checked)

    def with_active(self, mode: Optional[Mode]) -> "OrchestratorState":
        return replace(self, active_mode=mode)

    def with_context(self, context: RunContext) -> "OrchestratorState":
        return replace(self, context=context)

    def apply(self, coordinate: StateCoordinate) -> "OrchestratorState":
        """Set the mode's sub-state; a terminal sub-state deactivates the mode if it was active."""
        updated = self.with_sub_state(coordinate.mode, coordinate.sub_state)
        if coordinate.sub_state is None:
            if updated.active_mode is coordinate.mode:
                return updated.with_active(None)
            return updated
        return updated.with_active(coordinate.mode)

    def describe(self) -> str:
        def label(value: Optional[Enum]) -> str:
            return value.value if value is not None else "null"

        return (
            f"active={label(self.active_mode)} query={label(self.query_state)} "
            f"discovery={label(self.discovery_state)} "
            f"semantic_storing={label(self.semantic_storing_state)}"
        )


@dataclass
class ToolResult:
    """What a tool hands back to the orchestrator loop."""

    success: bool = True
    data: Dict[str, Any] = field(default_factory=dict)
    context_updates: Dict[str, Any] = field(default_factory=dict)
    requested_next: Optional[StateCoordinate] = None
    needs: Optional[AgentNeeds] = None
    # Bypass the decision maker and apply requested_next directly
    forced: bool = False
    # The user declined to run a statement
    cancelled: bool = False


# =============================================================================
# Run outcomes
# =============================================================================

class RunLogs(BaseModel):
    steps: int = 0
    queries: int = 0
    total_rows: int = 0
    total_duration_ms: float = 0.0
    run_log_id: Optional[str] = None


class RunOutcome(BaseModel):
    answer: str
    logs: RunLogs
    cancelled: bool = False
    sql_queries: List[str] = Field(default_factory=list)


class DiscoveryOutcome(BaseModel):
    discoveries: List[Discovery] = Field(default_factory=list)
    suggestions: List[SemanticSuggestion] = Field(default_factory=list)
    completed: bool = False
    logs: RunLogs = Field(default_factory=RunLogs)
