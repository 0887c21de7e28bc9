"""
Domain package for QueryPilot.

Models, enums, errors and collaborator protocols shared by the orchestrator,
the repositories and the API layer.
"""

from .base_enums import (
    ConfidenceTier,
    DiscoverySubState,
    InterpretationStatus,
    Mode,
    PlanStatus,
    QuerySubState,
    SemanticStoringSubState,
)
from .discovery import Discovery, SemanticSuggestion
from .plans import Interpretation, Plan, PlanStep, SqlResult, StepResult
from .requests import ExploreRequest, QueryRequest
from .responses import ErrorResponse, ExploreResponse, HealthResponse, QueryResponse
from .schema import ColumnSchema, Semantic, TableMetadata, TableSchema
from .state import (
    AgentNeeds,
    ConversationTurn,
    DiscoveryOutcome,
    OrchestrationDecision,
    OrchestratorState,
    RunContext,
    RunLogs,
    RunOutcome,
    StateCoordinate,
    ToolResult,
)
from .validation import GuardResult, ParsedSQL, SQLValidationResult

__all__ = [
    # Enums
    "ConfidenceTier",
    "DiscoverySubState",
    "InterpretationStatus",
    "Mode",
    "PlanStatus",
    "QuerySubState",
    "SemanticStoringSubState",
    # Plans and results
    "Interpretation",
    "Plan",
    "PlanStep",
    "SqlResult",
    "StepResult",
    # Discovery
    "Discovery",
    "SemanticSuggestion",
    # Schema and metadata
    "ColumnSchema",
    "Semantic",
    "TableMetadata",
    "TableSchema",
    # State machine
    "AgentNeeds",
    "ConversationTurn",
    "DiscoveryOutcome",
    "OrchestrationDecision",
    "OrchestratorState",
    "RunContext",
    "RunLogs",
    "RunOutcome",
    "StateCoordinate",
    "ToolResult",
    # Validation
    "GuardResult",
    "ParsedSQL",
    "SQLValidationResult",
    # API
    "ErrorResponse",
    "ExploreRequest",
    "ExploreResponse",
    "HealthResponse",
    "QueryRequest",
    "QueryResponse",
]
