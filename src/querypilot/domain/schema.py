from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ColumnSchema(BaseModel):
    """A column of an inspected table."""

    name: str = Field(..., description="Column name")
    data_type: str = Field(..., description="PostgreSQL data type")
    is_nullable: bool = Field(default=True, description="Whether the column accepts NULL")
    column_default: Optional[str] = Field(default=None, description="Default expression, if any")


class TableSchema(BaseModel):
    """A table of the inspected database with its ordered columns."""

    table_name: str = Field(..., description="Name of the table")
    columns: List[ColumnSchema] = Field(default_factory=list, description="Columns in ordinal order")

    def column_names(self) -> List[str]:
        return [column.name for column in self.columns]

    def has_column(self, column_name: str) -> bool:
        return any(column.name == column_name for column in self.columns)


class IndexMetadata(BaseModel):
    index_name: Optional[str] = Field(default=None, description="Index name")
    columns: List[str] = Field(default_factory=list, description="Indexed columns in key order")
    is_unique: bool = Field(default=False)
    is_primary: bool = Field(default=False)


class ForeignKeyMetadata(BaseModel):
    from_column: str = Field(..., description="Referencing column on the owning table")
    to_table: str = Field(..., description="Referenced table")
    to_column: str = Field(..., description="Referenced column")


class TableMetadata(BaseModel):
    """
    Physical metadata for one inspected table, read from the control database.

    Drives join validation (foreign keys) and performance-risk scoring
    (row count, size, indexes).
    """

    table_name: str = Field(..., description="Name of the table")
    schema_name: str = Field(default="public", description="Schema the table belongs to")
    estimated_row_count: int = Field(default=0, ge=0, description="Planner row estimate")
    total_size_bytes: int = Field(default=0, ge=0, description="Table plus index size in bytes")
    primary_key_columns: List[str] = Field(default_factory=list)
    indexes: List[IndexMetadata] = Field(default_factory=list)
    foreign_keys: List[ForeignKeyMetadata] = Field(default_factory=list)

    def indexed_columns(self) -> List[str]:
        seen: List[str] = []
        for index in self.indexes:
            for column in index.columns:
                if column.lower() not in seen:
                    seen.append(column.lower())
        return seen

    def references(self, table_name: str) -> bool:
        """True if any foreign key on this table points at `table_name`."""
        return any(fk.to_table == table_name for fk in self.foreign_keys)


class Semantic(BaseModel):
    """A business term with its agreed SQL meaning."""

    id: str = Field(..., description="Semantic identifier")
    category: str = Field(default="General", description="Grouping used when rendering for the model")
    term: str = Field(..., description="Term as it appears in questions")
    description: str = Field(default="", description="Human-readable definition")
    table_name: Optional[str] = Field(default=None)
    column_name: Optional[str] = Field(default=None)
    sql_fragment: Optional[str] = Field(default=None, description="SQL pattern implementing the term")
    synonyms: List[str] = Field(default_factory=list)
    aggregation: Optional[str] = Field(default=None)
    anti_patterns: Optional[Dict[str, Any]] = Field(default=None, description="{wrong, why, correct}")
    example_questions: List[str] = Field(default_factory=list)
    notes: List[str] = Field(default_factory=list)
