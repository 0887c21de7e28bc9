from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, model_validator

from .base_enums import SuggestionStatus

# Suggestions below this confidence are flagged for expert review
EXPERT_REVIEW_THRESHOLD = 0.70


class SemanticSuggestion(BaseModel):
    """A candidate business semantic learned from data, pending approval."""

    id: Optional[str] = Field(default=None, description="Assigned by the control database on insert")
    suggested_name: str = Field(..., min_length=1)
    suggested_type: str = Field(..., min_length=1, description="TIME_PERIOD, METRIC, DIMENSION, ...")
    suggested_definition: Dict[str, Any] = Field(
        default_factory=dict,
        description="{description, tableName, columnName, sqlPattern, metadata}",
    )
    learned_from: str = Field(default="pattern_analysis")
    confidence: float = Field(default=0.70, ge=0.0, le=1.0)
    status: SuggestionStatus = Field(default=SuggestionStatus.PENDING)
    requires_expert_review: Optional[bool] = Field(default=None)
    evidence: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def default_review_flag(self) -> "SemanticSuggestion":
        if self.requires_expert_review is None:
            self.requires_expert_review = self.confidence < EXPERT_REVIEW_THRESHOLD
        return self


class Discovery(BaseModel):
    """A pattern observed while exploring a table or column."""

    pattern: str = Field(..., description="Plain-language description of the pattern")
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    suggested_semantic: Optional[SemanticSuggestion] = Field(default=None)
    validation_query: Optional[str] = Field(default=None, description="SELECT confirming the pattern")
    table_name: str
    column_name: Optional[str] = None
    evidence: Dict[str, Any] = Field(default_factory=dict)

    def validated(self, row_count: int, sample_rows: list) -> "Discovery":
        """Copy with boosted confidence and the validation evidence attached."""
        evidence = dict(self.evidence)
        evidence["validation_results"] = {"row_count": row_count, "sample_rows": sample_rows}
        return self.model_copy(update={
            "confidence": min(self.confidence + 0.1, 1.0),
            "evidence": evidence,
        })
