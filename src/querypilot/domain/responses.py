"""
API response models for QueryPilot.

These models define the structure for all outgoing API responses,
ensuring consistent response formats and type safety.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .discovery import Discovery, SemanticSuggestion
from .state import RunLogs


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str = Field(..., description="Health status", examples=["healthy", "degraded", "unhealthy"])
    timestamp: datetime = Field(..., description="Health check timestamp")
    version: str = Field(..., description="Application version")
    database_status: str = Field(..., description="Inspected database connection status")
    control_database_status: str = Field(..., description="Control database status ('not_configured' when absent)")
    llm_service_status: str = Field(..., description="LLM service status")


class ErrorResponse(BaseModel):
    """Response model for error responses."""

    error: str = Field(..., description="Error type or category")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Additional error details"
    )
    trace_id: Optional[str] = Field(
        default=None,
        description="Trace ID for debugging"
    )
    timestamp: datetime = Field(..., description="Error timestamp")


class QueryResponse(BaseModel):
    """Response model for the question-answering endpoint."""

    trace_id: str = Field(..., description="Unique trace ID for this run")
    answer: str = Field(..., description="Final answer, or a summary of the last result")
    cancelled: bool = Field(default=False, description="Whether the user declined a statement")
    sql_queries: List[str] = Field(default_factory=list, description="Executed statements, in order")
    logs: RunLogs = Field(..., description="Step, query, row and duration totals for the run")
    total_time_ms: float = Field(..., description="Total request processing time in milliseconds")


class ExploreResponse(BaseModel):
    """Response model for the exploration endpoint."""

    trace_id: str = Field(..., description="Unique trace ID for this run")
    discoveries: List[Discovery] = Field(default_factory=list, description="Patterns found in the data")
    suggestions: List[SemanticSuggestion] = Field(
        default_factory=list,
        description="Suggested semantics; pending until approved interactively"
    )
    completed: bool = Field(..., description="Whether a semantic was approved and stored")
    logs: RunLogs = Field(..., description="Query, row and duration totals for the run")
    total_time_ms: float = Field(..., description="Total request processing time in milliseconds")
