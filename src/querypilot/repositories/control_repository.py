"""
Control database repository.

The control database holds what QueryPilot knows about the inspected
database, kept apart from the inspected database itself:

- inspected_db_metadata: row estimates, sizes, indexes and foreign keys per table
- semantic_entities: approved business semantics
- semantic_suggestions: semantics learned during discovery, pending approval
- run_logs: one row per completed run

Architecture Notes:
- This is a REPOSITORY (data access layer)
- Uses the injected control-database DatabaseClient
- JSONB columns arrive as text from asyncpg and are decoded here

NullControlStore stands in when no control database is configured.
"""

import json
from typing import Any, Dict, List, Optional, Sequence

from querypilot.config_constants import (
    METADATA_TABLE,
    RUN_LOGS_TABLE,
    SEMANTICS_TABLE,
    SUGGESTIONS_TABLE,
)
from querypilot.domain.base_enums import SuggestionStatus
from querypilot.domain.discovery import SemanticSuggestion
from querypilot.domain.schema import ForeignKeyMetadata, IndexMetadata, Semantic, TableMetadata
from querypilot.infrastructure.database_client import DatabaseClient
from querypilot.utils.logging import get_module_logger
from querypilot.utils.tracing import current_trace_id

logger = get_module_logger()

NO_SEMANTICS_TEXT = "Business Semantics: No business semantics defined yet."

# Suggestion types map onto the entity_type values of semantic_entities
ENTITY_TYPES = {
    "TIME_PERIOD": "time_period",
    "METRIC": "metric",
    "DIMENSION": "dimension",
    "BUSINESS_RULE": "business_rule",
    "FIELD_DEFINITION": "field_definition",
}


def _json_value(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return default
    return value


def _entity_type(value: Optional[str]) -> str:
    if not value:
        return "entity"
    return ENTITY_TYPES.get(value.upper(), value.lower())


def row_to_metadata(row: Dict[str, Any]) -> TableMetadata:
    indexes = [
        IndexMetadata(
            index_name=item.get("indexName") or item.get("index_name"),
            columns=list(item.get("columns") or []),
            is_unique=bool(item.get("isUnique", item.get("is_unique", False))),
            is_primary=bool(item.get("isPrimary", item.get("is_primary", False))),
        )
        for item in _json_value(row.get("indexes"), [])
    ]
    foreign_keys = [
        ForeignKeyMetadata(
            from_column=item.get("fromColumn") or item.get("from_column") or "",
            to_table=item.get("toTable") or item.get("to_table") or "",
            to_column=item.get("toColumn") or item.get("to_column") or "",
        )
        for item in _json_value(row.get("foreign_keys"), [])
    ]
    return TableMetadata(
        table_name=row["table_name"],
        schema_name=row.get("schema_name") or "public",
        estimated_row_count=int(row.get("estimated_row_count") or 0),
        total_size_bytes=int(row.get("total_size_bytes") or 0),
        primary_key_columns=list(row.get("primary_key_columns") or []),
        indexes=indexes,
        foreign_keys=foreign_keys,
    )


def row_to_semantic(row: Dict[str, Any]) -> Semantic:
    return Semantic(
        id=str(row["id"]),
        category=row.get("category") or row.get("entity_type") or "General",
        term=row["name"],
        description=row.get("description") or "",
        table_name=row.get("primary_table"),
        column_name=row.get("primary_column"),
        sql_fragment=row.get("sql_fragment"),
        synonyms=list(row.get("synonyms") or []),
        aggregation=row.get("aggregation"),
        anti_patterns=_json_value(row.get("anti_patterns"), None),
        example_questions=list(row.get("example_questions") or []),
        notes=list(row.get("notes") or []),
    )


def detect_semantic_ids(question: str, semantics: Sequence[Semantic]) -> List[str]:
    """Ids of semantics whose term appears in the question, case-insensitively."""
    question_lower = question.lower()
    return [s.id for s in semantics if s.term and s.term.lower() in question_lower]


def format_semantics_for_llm(semantics: Sequence[Semantic]) -> str:
    """Render semantics grouped by category for inclusion in prompts."""
    if not semantics:
        return NO_SEMANTICS_TEXT

    grouped: Dict[str, List[Semantic]] = {}
    for semantic in semantics:
        grouped.setdefault(semantic.category or "General", []).append(semantic)

    lines = ["Business Semantics:", ""]
    for category, items in grouped.items():
        lines.append(f"{category}:")
        for s in items:
            lines.append(f"  - {s.term}: {s.description}")
            if s.sql_fragment:
                lines.append(f"    SQL Pattern: {s.sql_fragment}")
            if s.table_name:
                table_line = f"    Table: {s.table_name}"
                if s.column_name:
                    table_line += f", Column: {s.column_name}"
                lines.append(table_line)
            if s.aggregation:
                lines.append(f"    Aggregation: {s.aggregation}")
            if s.synonyms:
                lines.append(f"    Synonyms: {', '.join(s.synonyms)}")
            if s.anti_patterns:
                lines.append(f"    AVOID: {s.anti_patterns.get('wrong', '')}")
                lines.append(f"    Reason: {s.anti_patterns.get('why', '')}")
                if s.anti_patterns.get("correct"):
                    lines.append(f"    Use instead: {s.anti_patterns['correct']}")
            if s.example_questions:
                lines.append(f"    Examples: {'; '.join(s.example_questions)}")
            if s.notes:
                lines.append(f"    Notes: {'; '.join(s.notes)}")
            lines.append("")

    return "\n".join(lines).strip()


class ControlRepository:
    """
    Repository for control-database tables.

    Usage:
        control_repo = ControlRepository(control_db_client)
        metadata = await control_repo.all_table_metadata()
        semantics = await control_repo.get_semantics()
        run_log_id = await control_repo.save_run_log(question, queries, rows, durations, ids)
    """

    def __init__(self, db_client: DatabaseClient):
        self.db_client = db_client
        logger.info("ControlRepository initialized")

    # =========================================================================
    # Metadata
    # =========================================================================

    async def all_table_metadata(self) -> List[TableMetadata]:
        rows = await self.db_client.execute_query(
            f"SELECT * FROM {METADATA_TABLE} ORDER BY table_name"
        )
        metadata = [row_to_metadata(row) for row in rows]
        logger.debug("Loaded table metadata", table_count=len(metadata), trace_id=current_trace_id())
        return metadata

    # =========================================================================
    # Semantics
    # =========================================================================

    async def get_semantics(self) -> List[Semantic]:
        rows = await self.db_client.execute_query(
            f"""
            SELECT
                id, entity_type, name, category, description,
                primary_table, primary_column, sql_fragment,
                synonyms, anti_patterns, example_questions, notes, aggregation
            FROM {SEMANTICS_TABLE}
            ORDER BY usage_count DESC, name ASC
            """
        )
        return [row_to_semantic(row) for row in rows]

    async def detect_semantics(self, question: str) -> List[str]:
        return detect_semantic_ids(question, await self.get_semantics())

    def format_semantics_for_llm(self, semantics: Sequence[Semantic]) -> str:
        return format_semantics_for_llm(semantics)

    # =========================================================================
    # Suggestions
    # =========================================================================

    async def insert_suggestion(self, suggestion: SemanticSuggestion) -> Optional[SemanticSuggestion]:
        trace_id = current_trace_id()
        rows = await self.db_client.execute_query(
            f"""
            INSERT INTO {SUGGESTIONS_TABLE} (
                suggested_name, suggested_type, suggested_definition, learned_from,
                confidence, evidence, status, requires_expert_review
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            RETURNING id
            """,
            params=[
                suggestion.suggested_name,
                suggestion.suggested_type,
                json.dumps(suggestion.suggested_definition, default=str),
                suggestion.learned_from,
                suggestion.confidence,
                json.dumps(suggestion.evidence, default=str),
                suggestion.status.value,
                suggestion.requires_expert_review,
            ],
        )
        if not rows:
            return None
        saved = suggestion.model_copy(update={"id": str(rows[0]["id"])})
        logger.info(
            "Semantic suggestion saved",
            suggestion_id=saved.id,
            suggested_name=saved.suggested_name,
            trace_id=trace_id,
        )
        return saved

    async def approve_suggestion(self, suggestion: SemanticSuggestion, reviewed_by: str = "user") -> None:
        """
        Create (or merge into) the semantic entity for a suggestion and mark it approved.

        An existing entity with the same name and type is updated in place and
        its version and usage count are bumped.
        """
        trace_id = current_trace_id()
        definition = suggestion.suggested_definition or {}
        metadata = definition.get("metadata") or {}
        entity_type = _entity_type(suggestion.suggested_type)
        category = metadata.get("category") or suggestion.suggested_type

        existing_id = await self.db_client.execute_scalar(
            f"SELECT id FROM {SEMANTICS_TABLE} WHERE name = $1 AND entity_type = $2 LIMIT 1",
            params=[suggestion.suggested_name, entity_type],
        )

        if existing_id is not None:
            await self.db_client.execute_command(
                f"""
                UPDATE {SEMANTICS_TABLE}
                SET description = COALESCE(NULLIF($2, ''), description),
                    sql_fragment = COALESCE($3, sql_fragment),
                    synonyms = $4,
                    confidence = $5,
                    version = version + 1,
                    usage_count = usage_count + 1,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = $1
                """,
                params=[
                    existing_id,
                    definition.get("description") or "",
                    definition.get("sqlPattern"),
                    list(metadata.get("synonyms") or []),
                    suggestion.confidence,
                ],
            )
            logger.info(
                "Merged suggestion into existing semantic",
                semantic_id=str(existing_id),
                name=suggestion.suggested_name,
                trace_id=trace_id,
            )
        else:
            anti_patterns = metadata.get("anti_patterns")
            await self.db_client.execute_command(
                f"""
                INSERT INTO {SEMANTICS_TABLE} (
                    entity_type, category, name, description,
                    primary_table, primary_column, sql_fragment,
                    synonyms, anti_patterns, example_questions, notes,
                    aggregation, source, confidence, approved, approved_by
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, 'learned', $13, TRUE, $14)
                """,
                params=[
                    entity_type,
                    category,
                    suggestion.suggested_name,
                    definition.get("description") or "",
                    definition.get("tableName"),
                    definition.get("columnName"),
                    definition.get("sqlPattern"),
                    list(metadata.get("synonyms") or []),
                    json.dumps(anti_patterns) if anti_patterns else None,
                    list(metadata.get("example_questions") or []),
                    list(metadata.get("notes") or []),
                    metadata.get("aggregation"),
                    suggestion.confidence,
                    reviewed_by,
                ],
            )
            logger.info("Semantic created from suggestion", name=suggestion.suggested_name, trace_id=trace_id)

        if suggestion.id is not None:
            await self.db_client.execute_command(
                f"""
                UPDATE {SUGGESTIONS_TABLE}
                SET status = $1, reviewed_by = $2, review_notes = $3, reviewed_at = CURRENT_TIMESTAMP
                WHERE id = $4
                """,
                params=[
                    SuggestionStatus.APPROVED.value,
                    reviewed_by,
                    "Approved and semantic entity created or updated",
                    suggestion.id,
                ],
            )

    # =========================================================================
    # Run logs
    # =========================================================================

    async def save_run_log(
        self,
        question: str,
        sql_queries: Sequence[str],
        rows_returned: Sequence[int],
        durations_ms: Sequence[float],
        detected_semantic_ids: Sequence[str],
    ) -> Optional[str]:
        run_log_id = await self.db_client.execute_scalar(
            f"""
            INSERT INTO {RUN_LOGS_TABLE} (
                question, sql_generated, sql_executed, rows_returned,
                durations_ms, detected_semantics, semantics_applied
            ) VALUES ($1, $2, $2, $3, $4, $5, $5)
            RETURNING id
            """,
            params=[
                question,
                list(sql_queries),
                list(rows_returned),
                [int(round(d)) for d in durations_ms],
                list(detected_semantic_ids),
            ],
        )
        logger.info("Run log saved", run_log_id=str(run_log_id), trace_id=current_trace_id())
        return str(run_log_id) if run_log_id is not None else None


class NullControlStore:
    """Control store used without a control database: no metadata, no semantics, nothing persisted."""

    async def all_table_metadata(self) -> List[TableMetadata]:
        return []

    async def get_semantics(self) -> List[Semantic]:
        return []

    async def detect_semantics(self, question: str) -> List[str]:
        return []

    def format_semantics_for_llm(self, semantics: Sequence[Semantic]) -> str:
        return format_semantics_for_llm(semantics)

    async def insert_suggestion(self, suggestion: SemanticSuggestion) -> Optional[SemanticSuggestion]:
        logger.warning(
            "Control database not configured, suggestion not saved",
            suggested_name=suggestion.suggested_name,
            trace_id=current_trace_id(),
        )
        return None

    async def approve_suggestion(self, suggestion: SemanticSuggestion, reviewed_by: str = "user") -> None:
        logger.warning(
            "Control database not configured, approval not stored",
            suggested_name=suggestion.suggested_name,
            trace_id=current_trace_id(),
        )

    async def save_run_log(
        self,
        question: str,
        sql_queries: Sequence[str],
        rows_returned: Sequence[int],
        durations_ms: Sequence[float],
        detected_semantic_ids: Sequence[str],
    ) -> Optional[str]:
        return None
