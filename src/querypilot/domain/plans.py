"""
Plan, step, result and interpretation models for QUERY mode.

A Plan is an ordered list of natural-language sub-goals. A step gains its
SQL only once generated; executed steps are stored as new copies rather
than mutated in place.
"""

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .base_enums import ConfidenceTier, InterpretationStatus, PlanStatus
from .validation import SQLValidationResult


class PlanStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_number: int = Field(..., ge=1, description="1-based position in the plan")
    description: str = Field(..., description="What data this step retrieves")
    reasoning: str = Field(default="", description="Why the step is needed")
    sql_query: Optional[str] = Field(default=None, description="Sanitized SQL, set once generated")
    validation_result: Optional[SQLValidationResult] = Field(default=None)


class Plan(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: PlanStatus = Field(default=PlanStatus.READY)
    overall_goal: str = Field(default="Answer the user question")
    steps: List[PlanStep] = Field(default_factory=list, description="Empty when clarification is needed")
    clarification_questions: List[str] = Field(default_factory=list)
    clarification_context: Optional[str] = Field(default=None)

    def signature(self) -> str:
        """Step descriptions joined by '|'; two plans with equal signatures are the same plan."""
        return "|".join(step.description for step in self.steps)

    @classmethod
    def single_step(cls, goal: str, description: str, reasoning: str) -> "Plan":
        return cls(
            overall_goal=goal,
            steps=[PlanStep(step_number=1, description=description, reasoning=reasoning)],
        )


class SqlResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    columns: List[str] = Field(default_factory=list)
    rows: List[List[Any]] = Field(default_factory=list)
    row_count: int = Field(default=0, ge=0)
    duration_ms: float = Field(default=0.0, ge=0)

    def sample(self, limit: int) -> List[List[Any]]:
        return self.rows[:limit]


class StepResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_number: int
    result: SqlResult


class Interpretation(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: InterpretationStatus
    answer: Optional[str] = None
    next_step: Optional[str] = None
    confidence: ConfidenceTier = ConfidenceTier.MEDIUM
