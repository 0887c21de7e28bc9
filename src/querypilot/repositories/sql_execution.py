"""
SQL Execution Repository.

Executes statements that already passed SqlGuard and metadata validation
against the inspected database.

Safety Features:
- Read-only enforcement: every statement runs in a READ ONLY transaction
- Timeout protection: SET LOCAL statement_timeout from DatabaseConfig

Usage:
    repo = SqlExecutionRepository(db_client, timeout_seconds=30)
    result = await repo.execute("SELECT id, total FROM orders LIMIT 200;")
    print(f"Returned {result.row_count} rows in {result.duration_ms}ms")

Error Handling:
- Any database failure is raised as QueryExecutionError with the SQL in details
"""

import time

from querypilot.domain.errors import DatabaseError, QueryExecutionError
from querypilot.domain.plans import SqlResult
from querypilot.infrastructure.database_client import DatabaseClient
from querypilot.utils.logging import get_module_logger
from querypilot.utils.tracing import current_trace_id

logger = get_module_logger()


class SqlExecutionRepository:
    """Executes validated SQL with read-only enforcement."""

    def __init__(self, db_client: DatabaseClient, timeout_seconds: int = 30):
        self.db_client = db_client
        self.timeout_seconds = timeout_seconds

    async def execute(self, sql: str) -> SqlResult:
        trace_id = current_trace_id()
        logger.info("Executing SQL query", sql=sql[:500], timeout=self.timeout_seconds, trace_id=trace_id)

        start = time.monotonic()
        try:
            columns, rows = await self.db_client.fetch_table(
                sql,
                timeout=self.timeout_seconds,
                read_only=True,
            )
        except DatabaseError as e:
            logger.error("SQL execution failed", sql=sql[:500], error=str(e), trace_id=trace_id)
            raise QueryExecutionError(
                f"Query execution failed: {e.message}",
                details={"sql": sql},
            ) from e

        duration_ms = (time.monotonic() - start) * 1000
        result = SqlResult(columns=columns, rows=rows, row_count=len(rows), duration_ms=duration_ms)

        logger.info(
            "SQL execution successful",
            row_count=result.row_count,
            duration_ms=round(duration_ms, 2),
            trace_id=trace_id,
        )
        return result
