from typing import List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .base_enums import GrainLevel, PerformanceRisk


class GuardResult(BaseModel):
    """Outcome of SqlGuard: a reason when rejected, sanitized SQL when accepted."""

    model_config = ConfigDict(frozen=True)

    valid: bool
    reason: Optional[str] = None
    sanitized_sql: Optional[str] = None

    @model_validator(mode="after")
    def check_shape(self) -> "GuardResult":
        if self.valid and self.sanitized_sql is None:
            raise ValueError("valid guard results carry sanitized_sql")
        if not self.valid and not self.reason:
            raise ValueError("invalid guard results carry a reason")
        return self

    @classmethod
    def reject(cls, reason: str) -> "GuardResult":
        return cls(valid=False, reason=reason)

    @classmethod
    def accept(cls, sanitized_sql: str) -> "GuardResult":
        return cls(valid=True, sanitized_sql=sanitized_sql)


class ColumnRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    table: Optional[str] = Field(default=None, description="Resolved table or CTE name; None if unqualified")
    column: str


class JoinRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    from_table: str
    to_table: str
    condition: str = ""


class ParsedSQL(BaseModel):
    """Structural elements recovered heuristically from a SQL statement."""

    tables: List[str] = Field(default_factory=list)
    columns: List[ColumnRef] = Field(default_factory=list)
    joins: List[JoinRef] = Field(default_factory=list)
    cte_names: Set[str] = Field(default_factory=set, description="Lower-cased CTE names")
    grain: GrainLevel = GrainLevel.ROW_LEVEL
    has_aggregations: bool = False
    has_group_by: bool = False
    normalized_sql: str = Field(default="", description="Comment-free, whitespace-collapsed text")

    def is_cte(self, name: str) -> bool:
        return name.lower() in self.cte_names

    def real_tables(self) -> List[str]:
        return [table for table in self.tables if not self.is_cte(table)]


class SQLValidationResult(BaseModel):
    """
    Metadata validation verdict for one statement.

    Issues block execution; facts, assumptions and unknowns only inform the
    confidence score shown to the user.
    """

    valid: bool
    issues: List[str] = Field(default_factory=list)
    confidence: float = Field(default=1.0, ge=0.1, le=1.0)
    facts: List[str] = Field(default_factory=list)
    assumptions: List[str] = Field(default_factory=list)
    unknowns: List[str] = Field(default_factory=list)
    grain: GrainLevel = GrainLevel.ROW_LEVEL
    performance_risk: PerformanceRisk = PerformanceRisk.LOW
    tables_validated: bool = True
    columns_validated: bool = True
    joins_validated: bool = True
