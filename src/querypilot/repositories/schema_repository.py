"""
Schema Repository for the inspected database.

Reads tables and columns from PostgreSQL information_schema through the
injected DatabaseClient and returns TableSchema domain models. The schema is
read once and kept in memory for the life of the repository; refresh=True
re-reads it.
"""

from typing import Dict, List, Optional, Sequence

from ..domain.errors import DatabaseQueryError
from ..domain.schema import ColumnSchema, TableSchema
from ..infrastructure.database_client import DatabaseClient
from ..utils.logging import get_module_logger
from ..utils.tracing import current_trace_id


logger = get_module_logger()


SCHEMA_QUERY = """
    SELECT
        t.table_name,
        c.column_name,
        c.data_type,
        c.is_nullable,
        c.column_default
    FROM information_schema.tables t
    JOIN information_schema.columns c
        ON t.table_name = c.table_name
        AND t.table_schema = c.table_schema
    WHERE t.table_schema = $1
        AND t.table_type = 'BASE TABLE'
    ORDER BY t.table_name, c.ordinal_position
"""


def format_schema_for_llm(schema: Sequence[TableSchema], table_name: Optional[str] = None) -> str:
    """
    Render tables and columns for a prompt.

    Example:
        Table: orders
        Columns:
          - id: integer NOT NULL DEFAULT nextval('orders_id_seq'::regclass)
          - status: text NULL
    """
    tables = [t for t in schema if t.table_name == table_name] if table_name else list(schema)
    if not tables:
        return f'Table "{table_name}" not found.' if table_name else "No tables found."

    parts: List[str] = []
    for table in tables:
        parts.append(f"Table: {table.table_name}")
        parts.append("Columns:")
        for column in table.columns:
            nullable = "NULL" if column.is_nullable else "NOT NULL"
            default = f" DEFAULT {column.column_default}" if column.column_default else ""
            parts.append(f"  - {column.name}: {column.data_type} {nullable}{default}")
        parts.append("")
    return "\n".join(parts)


class SchemaRepository:
    """
    Repository for inspected-database schema.

    Usage:
        schema_repo = SchemaRepository(db_client, schema="public")
        tables = await schema_repo.get_schema()
    """

    def __init__(self, db_client: DatabaseClient, schema: str = "public"):
        """
        Args:
            db_client: DatabaseClient for the inspected database
            schema: PostgreSQL schema whose base tables are exposed
        """
        self.db_client = db_client
        self.schema = schema
        self._cache: Optional[List[TableSchema]] = None
        logger.info("SchemaRepository initialized", schema=schema)

    async def get_schema(self, refresh: bool = False) -> List[TableSchema]:
        """
        Fetch all base tables of the schema with their ordered columns.

        Raises:
            DatabaseQueryError: If the catalog query fails
        """
        if self._cache is not None and not refresh:
            return self._cache

        trace_id = current_trace_id()
        logger.info("Loading schema from database", schema=self.schema, trace_id=trace_id)

        try:
            rows = await self.db_client.execute_query(SCHEMA_QUERY, params=[self.schema])
        except DatabaseQueryError as e:
            logger.error("Failed to load schema", schema=self.schema, error=str(e), trace_id=trace_id)
            raise

        tables: Dict[str, TableSchema] = {}
        for row in rows:
            table = tables.setdefault(row["table_name"], TableSchema(table_name=row["table_name"]))
            table.columns.append(ColumnSchema(
                name=row["column_name"],
                data_type=row["data_type"],
                is_nullable=row["is_nullable"] == "YES",
                column_default=row["column_default"],
            ))

        self._cache = list(tables.values())
        logger.info(
            "Schema loaded",
            table_count=len(self._cache),
            column_count=sum(len(t.columns) for t in self._cache),
            trace_id=trace_id,
        )
        return self._cache
