"""
Metadata validation of generated SQL.

Checks a ParsedSQL against the inspected schema and the physical table
metadata held in the control database, producing a SQLValidationResult:

- Tables: every real (non-CTE) table must exist in metadata        (-0.2 each, issue)
- Columns: every column must exist on a known table                 (-0.1 each, issue)
  CTE-qualified columns are exempt and recorded as assumptions
- Joins: a join without a foreign key in either direction           (-0.15, assumption)
- Large tables (>100k rows or >1 GB): no index column in the query  (-0.2, high risk)
                                      an index column in the query  (-0.1, medium risk)

Confidence is clamped to [0.1, 1.0]; the result is valid iff there are no
issues. Issues always block execution.
"""

import re
from typing import Dict, List, Optional, Sequence

from querypilot.domain.base_enums import ConfidenceTier, PerformanceRisk
from querypilot.domain.schema import TableMetadata, TableSchema
from querypilot.domain.validation import ParsedSQL, SQLValidationResult
from querypilot.repositories.sql_parser import SqlStructuralParser

MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 1.0

MISSING_TABLE_PENALTY = 0.2
MISSING_COLUMN_PENALTY = 0.1
UNVERIFIED_JOIN_PENALTY = 0.15
UNINDEXED_LARGE_TABLE_PENALTY = 0.2
INDEXED_LARGE_TABLE_PENALTY = 0.1

LARGE_TABLE_ROWS = 100_000
LARGE_TABLE_BYTES = 1_000_000_000

MAX_COUNTED_UNKNOWNS = 3


def clamp_confidence(value: float) -> float:
    return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, value))


def is_large_table(meta: TableMetadata) -> bool:
    return meta.estimated_row_count > LARGE_TABLE_ROWS or meta.total_size_bytes > LARGE_TABLE_BYTES


class MetadataValidator:
    """Validates parsed SQL against schema and table metadata."""

    def __init__(self, parser: Optional[SqlStructuralParser] = None):
        self.parser = parser or SqlStructuralParser()

    def validate_sql(
        self,
        sql: str,
        schema: Sequence[TableSchema],
        metadata: Sequence[TableMetadata],
    ) -> SQLValidationResult:
        return self.validate(self.parser.parse(sql), schema, metadata)

    def validate(
        self,
        parsed: ParsedSQL,
        schema: Sequence[TableSchema],
        metadata: Sequence[TableMetadata],
    ) -> SQLValidationResult:
        issues: List[str] = []
        facts: List[str] = []
        assumptions: List[str] = []
        unknowns: List[str] = []
        confidence = 1.0

        metadata_by_table: Dict[str, TableMetadata] = {m.table_name: m for m in metadata}
        schema_by_table: Dict[str, TableSchema] = {t.table_name: t for t in schema}

        # ---- tables ----
        missing_tables: List[str] = []
        for table in parsed.real_tables():
            if table in metadata_by_table:
                facts.append(f'Table "{table}" exists in metadata')
            else:
                missing_tables.append(table)
                confidence -= MISSING_TABLE_PENALTY
        if missing_tables:
            issues.append(f"Tables not found in metadata: {', '.join(missing_tables)}")

        # ---- columns ----
        missing_columns: List[str] = []
        for ref in parsed.columns:
            if ref.table is not None:
                if parsed.is_cte(ref.table):
                    assumptions.append(f'Column "{ref.table}.{ref.column}" from CTE (assumed valid)')
                    continue
                table_schema = schema_by_table.get(ref.table)
                if table_schema is not None and table_schema.has_column(ref.column):
                    facts.append(f'Column "{ref.table}.{ref.column}" exists in schema')
                else:
                    missing_columns.append(f"{ref.table}.{ref.column}")
                    confidence -= MISSING_COLUMN_PENALTY
                continue

            owner = next(
                (
                    table for table in parsed.real_tables()
                    if table in schema_by_table and schema_by_table[table].has_column(ref.column)
                ),
                None,
            )
            if owner is not None:
                facts.append(f'Column "{ref.column}" found in table "{owner}"')
            elif parsed.cte_names and not parsed.real_tables():
                assumptions.append(f'Column "{ref.column}" assumed to come from a CTE')
            else:
                missing_columns.append(f"unknown.{ref.column}")
                confidence -= MISSING_COLUMN_PENALTY
                assumptions.append(f'Column "{ref.column}" assumed to exist (table not specified)')
        if missing_columns:
            issues.append(f"Columns not found: {', '.join(missing_columns)}")

        # ---- joins ----
        joins_validated = True
        for join in parsed.joins:
            if parsed.is_cte(join.from_table) or parsed.is_cte(join.to_table):
                assumptions.append(f'Join "{join.from_table}" -> "{join.to_table}" involves a CTE (assumed valid)')
                continue
            from_meta = metadata_by_table.get(join.from_table)
            to_meta = metadata_by_table.get(join.to_table)
            if from_meta is None or to_meta is None:
                joins_validated = False
                confidence -= UNVERIFIED_JOIN_PENALTY
                unknowns.append(f'Join "{join.from_table}" -> "{join.to_table}" could not be checked (metadata missing)')
                continue
            if from_meta.references(join.to_table) or to_meta.references(join.from_table):
                facts.append(f'Join "{join.from_table}" -> "{join.to_table}" validated against foreign key metadata')
            else:
                joins_validated = False
                confidence -= UNVERIFIED_JOIN_PENALTY
                assumptions.append(f'Join "{join.from_table}" -> "{join.to_table}" assumed valid (no FK metadata found)')

        tables_validated = not missing_tables
        if not parsed.real_tables():
            tables_validated = False
            assumptions.append("No table references could be identified, so no table was checked")

        # ---- performance ----
        performance_risk = PerformanceRisk.LOW
        query_text = self._query_text(parsed)
        for table in parsed.real_tables():
            meta = metadata_by_table.get(table)
            if meta is None or not is_large_table(meta):
                continue
            if self._uses_index(query_text, meta):
                if performance_risk is not PerformanceRisk.HIGH:
                    performance_risk = PerformanceRisk.MEDIUM
                confidence -= INDEXED_LARGE_TABLE_PENALTY
                facts.append(f'Index usage verified for large table "{table}"')
            else:
                performance_risk = PerformanceRisk.HIGH
                confidence -= UNINDEXED_LARGE_TABLE_PENALTY
                unknowns.append(f'Could not verify index usage for large table "{table}"')

        return SQLValidationResult(
            valid=not issues,
            issues=issues,
            confidence=clamp_confidence(confidence),
            facts=facts,
            assumptions=assumptions,
            unknowns=unknowns,
            grain=parsed.grain,
            performance_risk=performance_risk,
            tables_validated=tables_validated,
            columns_validated=not missing_columns,
            joins_validated=joins_validated,
        )

    @staticmethod
    def _query_text(parsed: ParsedSQL) -> str:
        if parsed.normalized_sql:
            return parsed.normalized_sql.lower()
        return " ".join(ref.column for ref in parsed.columns).lower()

    @staticmethod
    def _uses_index(query_text: str, meta: TableMetadata) -> bool:
        return any(
            re.search(rf"\b{re.escape(column)}\b", query_text)
            for column in meta.indexed_columns()
        )


def calculate_confidence(validation: SQLValidationResult, has_semantics: bool) -> ConfidenceTier:
    """Map a validation result to the tier shown next to the permission prompt."""
    score = validation.confidence
    if has_semantics:
        score += 0.1
    if validation.performance_risk is PerformanceRisk.HIGH:
        score -= 0.15
    elif validation.performance_risk is PerformanceRisk.MEDIUM:
        score -= 0.1
    score -= 0.1 * min(len(validation.unknowns), MAX_COUNTED_UNKNOWNS)

    score = clamp_confidence(score)
    if score >= 0.8:
        return ConfidenceTier.HIGH
    if score >= 0.5:
        return ConfidenceTier.MEDIUM
    return ConfidenceTier.LOW
