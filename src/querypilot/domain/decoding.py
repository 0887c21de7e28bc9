"""
Strict decoding of model replies.

Every raw reply is turned into a DecodeResult: either a validated domain
value or an error message. Nothing untyped leaves this module.

Handles:
- Markdown fences (```json ... ``` / ```sql ... ```)
- JSON surrounded by prose (first '{' to last '}')
- camelCase or snake_case keys
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .base_enums import ConfidenceTier, InterpretationStatus, PlanStatus
from .discovery import Discovery, SemanticSuggestion
from .plans import Interpretation, Plan, PlanStep
from .state import OrchestrationDecision

T = TypeVar("T")

_FENCE_PATTERN = re.compile(r"^```[a-zA-Z]*\s*\n?(.*?)\n?```$", re.DOTALL)


@dataclass(frozen=True)
class DecodeResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "DecodeResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: str) -> "DecodeResult[T]":
        return cls(error=error)


def strip_markdown(text: str) -> str:
    cleaned = text.strip()
    match = _FENCE_PATTERN.match(cleaned)
    if match:
        return match.group(1).strip()
    if cleaned.startswith("```"):
        cleaned = cleaned[3:]
        newline = cleaned.find("\n")
        if newline != -1 and cleaned[:newline].strip().isalpha():
            cleaned = cleaned[newline + 1:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Parse `text` as a JSON object, falling back to its outermost {...} span."""
    try:
        data = json.loads(text)
        return data if isinstance(data, dict) else None
    except json.JSONDecodeError:
        pass

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def _load_object(raw: Optional[str]) -> DecodeResult[Dict[str, Any]]:
    if not raw or not raw.strip():
        return DecodeResult.failure("Model returned an empty reply")
    cleaned = strip_markdown(raw)
    data = extract_json_object(cleaned)
    if data is None:
        preview = cleaned[:150] if cleaned else "(empty)"
        return DecodeResult.failure(f"Model reply was not a JSON object. Preview: {preview}")
    return DecodeResult.success(data)


def _validation_message(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    )


# =============================================================================
# Wire payloads
# =============================================================================

class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class _StepPayload(_Payload):
    step_number: Optional[int] = Field(default=None, alias="stepNumber")
    description: str = Field(..., min_length=1)
    reasoning: str = ""


class _PlanPayload(_Payload):
    status: Optional[str] = None
    overall_goal: Optional[str] = Field(default=None, alias="overallGoal")
    steps: List[_StepPayload] = Field(default_factory=list)
    clarification_questions: List[str] = Field(default_factory=list, alias="clarificationQuestions")
    clarification_context: Optional[str] = Field(default=None, alias="clarificationContext")


class _InterpretationPayload(_Payload):
    status: str
    answer: Optional[str] = None
    next_step: Optional[str] = Field(default=None, alias="nextStep")
    confidence: Optional[str] = None


class _DecisionPayload(_Payload):
    next_mode: str = Field(..., alias="nextMode")
    next_sub_state: Optional[str] = Field(default=None, alias="nextSubState")
    reasoning: str = ""
    confidence: float = 0.5
    alternatives: List[Dict[str, Any]] = Field(default_factory=list, alias="alternativeOptions")


class _SuggestionPayload(_Payload):
    suggested_name: str = Field(..., min_length=1)
    suggested_type: str = Field(..., min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    sql_fragment: Optional[str] = None
    primary_table: Optional[str] = None
    primary_column: Optional[str] = None
    synonyms: List[str] = Field(default_factory=list)
    confidence: Optional[float] = None


class _DiscoveryPayload(_Payload):
    pattern: str = Field(..., min_length=1)
    confidence: float = 0.5
    validation_query: Optional[str] = Field(default=None, alias="validationQuery")
    suggested_semantic: Optional[_SuggestionPayload] = Field(default=None, alias="suggestedSemantic")
    evidence: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Decoders
# =============================================================================

def decode_plan(raw: Optional[str]) -> DecodeResult[Plan]:
    loaded = _load_object(raw)
    if not loaded.ok:
        return DecodeResult.failure(loaded.error or "")
    try:
        payload = _PlanPayload.model_validate(loaded.value)
    except ValidationError as exc:
        return DecodeResult.failure(f"Invalid plan: {_validation_message(exc)}")

    if payload.status and payload.status.upper() == PlanStatus.CLARIFICATION_NEEDED.value:
        if not payload.clarification_questions:
            return DecodeResult.failure("Clarification requested without any questions")
        return DecodeResult.success(Plan(
            status=PlanStatus.CLARIFICATION_NEEDED,
            overall_goal=payload.overall_goal or "Answer the user question",
            clarification_questions=payload.clarification_questions,
            clarification_context=payload.clarification_context,
        ))

    if not payload.steps:
        return DecodeResult.failure("Plan contains no steps")

    # Steps are renumbered by position so numbering is always 1..n
    steps = [
        PlanStep(step_number=index, description=step.description, reasoning=step.reasoning)
        for index, step in enumerate(payload.steps, start=1)
    ]
    return DecodeResult.success(Plan(
        status=PlanStatus.READY,
        overall_goal=payload.overall_goal or "Answer the user question",
        steps=steps,
    ))


def _tier(value: Optional[str]) -> ConfidenceTier:
    try:
        return ConfidenceTier((value or "").lower())
    except ValueError:
        return ConfidenceTier.MEDIUM


def decode_interpretation(raw: Optional[str]) -> DecodeResult[Interpretation]:
    loaded = _load_object(raw)
    if not loaded.ok:
        return DecodeResult.failure(loaded.error or "")
    try:
        payload = _InterpretationPayload.model_validate(loaded.value)
    except ValidationError as exc:
        return DecodeResult.failure(f"Invalid interpretation: {_validation_message(exc)}")

    status = (
        InterpretationStatus.FINAL_ANSWER
        if payload.status.upper() == InterpretationStatus.FINAL_ANSWER.value
        else InterpretationStatus.NEEDS_REFINEMENT
    )
    return DecodeResult.success(Interpretation(
        status=status,
        answer=payload.answer,
        next_step=payload.next_step,
        confidence=_tier(payload.confidence),
    ))


def decode_decision(raw: Optional[str]) -> DecodeResult[OrchestrationDecision]:
    loaded = _load_object(raw)
    if not loaded.ok:
        return DecodeResult.failure(loaded.error or "")
    try:
        payload = _DecisionPayload.model_validate(loaded.value)
    except ValidationError as exc:
        return DecodeResult.failure(f"Invalid decision: {_validation_message(exc)}")
    return DecodeResult.success(OrchestrationDecision(
        next_mode=payload.next_mode,
        next_sub_state=payload.next_sub_state,
        reasoning=payload.reasoning,
        confidence=payload.confidence,
        alternatives=payload.alternatives,
    ))


def decode_discovery(raw: Optional[str], table_name: str, column_name: Optional[str]) -> DecodeResult[Discovery]:
    loaded = _load_object(raw)
    if not loaded.ok:
        return DecodeResult.failure(loaded.error or "")
    try:
        payload = _DiscoveryPayload.model_validate(loaded.value)
    except ValidationError as exc:
        return DecodeResult.failure(f"Invalid discovery: {_validation_message(exc)}")

    suggestion = None
    if payload.suggested_semantic is not None:
        s = payload.suggested_semantic
        suggestion = SemanticSuggestion(
            suggested_name=s.suggested_name,
            suggested_type=s.suggested_type,
            suggested_definition={
                "description": s.description or "",
                "tableName": s.primary_table or table_name,
                "columnName": s.primary_column or column_name,
                "sqlPattern": s.sql_fragment,
                "metadata": {"category": s.category, "synonyms": s.synonyms},
            },
            confidence=s.confidence if s.confidence is not None else payload.confidence,
        )

    return DecodeResult.success(Discovery(
        pattern=payload.pattern,
        confidence=max(0.0, min(1.0, payload.confidence)),
        suggested_semantic=suggestion,
        validation_query=payload.validation_query,
        table_name=table_name,
        column_name=column_name,
        evidence=payload.evidence,
    ))


def decode_sql(raw: Optional[str]) -> DecodeResult[str]:
    """Extract a bare SQL statement: fences and trailing semicolons removed."""
    if not raw or not raw.strip():
        return DecodeResult.failure("Model returned an empty reply")
    cleaned = strip_markdown(raw)

    if cleaned.startswith("{"):
        data = extract_json_object(cleaned)
        if data is not None and isinstance(data.get("sql"), str):
            cleaned = data["sql"].strip()

    sql = re.sub(r";+\s*$", "", cleaned).strip()
    if not sql:
        return DecodeResult.failure("Model reply contained no SQL")
    return DecodeResult.success(sql)
