"""
SQL safety guard.

Every model-generated statement passes through SqlGuard before it can reach
the database. The guard is pure: no I/O, no state.

Checks (in order, first failure wins):
1. Empty statement
2. Dangerous keywords (whole-word, case-insensitive)
3. Must contain SELECT or WITH
4. No SELECT * (explicit columns keep metadata validation meaningful)
5. No "undefined" table names (a fabricated identifier from the model)
6. Exactly one statement

Accepted statements get a LIMIT when they have none and always end with
exactly one semicolon. Callers apply the guard once per candidate; running
it over already-sanitized SQL is not supported.

Usage:
    guard = SqlGuard(max_rows=settings.guard.max_rows)
    result = guard.validate("SELECT id FROM orders")
    result.sanitized_sql  # "SELECT id FROM orders LIMIT 200;"
"""

import re

from querypilot.domain.validation import GuardResult

# Order matters only for which keyword is reported first
DANGEROUS_KEYWORDS = (
    "INSERT", "UPDATE", "DELETE", "DROP", "CREATE", "ALTER",
    "TRUNCATE", "GRANT", "REVOKE", "EXEC", "EXECUTE", "CALL",
)

_KEYWORD_PATTERNS = tuple(
    (keyword, re.compile(rf"\b{keyword}\b", re.IGNORECASE)) for keyword in DANGEROUS_KEYWORDS
)
_SELECT = re.compile(r"\bSELECT\b", re.IGNORECASE)
_WITH = re.compile(r"\bWITH\b", re.IGNORECASE)
_SELECT_STAR = re.compile(r"\bSELECT\s+\*", re.IGNORECASE)
_UNDEFINED_TABLE = re.compile(r"\b(?:FROM|JOIN)\s+[\"'`]?undefined\b[\"'`]?", re.IGNORECASE)
_HAS_LIMIT = re.compile(r"\bLIMIT\s+\d+", re.IGNORECASE)

EMPTY_REASON = "Empty SQL statement"
SELECT_ONLY_REASON = "Only SELECT or WITH ... SELECT statements are allowed"
SELECT_STAR_REASON = (
    "SELECT * is not allowed. Always list columns explicitly so every column "
    "can be validated against metadata."
)
UNDEFINED_TABLE_REASON = (
    'SQL contains "undefined" as a table name; the table was not identified '
    "from the schema."
)
MULTIPLE_STATEMENTS_REASON = "Multiple statements are not allowed"


class SqlGuard:
    """Static safety checks plus LIMIT/semicolon sanitization."""

    def __init__(self, max_rows: int = 200):
        self.max_rows = max_rows

    def validate(self, sql: str) -> GuardResult:
        trimmed = (sql or "").strip()

        if not trimmed:
            return GuardResult.reject(EMPTY_REASON)

        for keyword, pattern in _KEYWORD_PATTERNS:
            if pattern.search(trimmed):
                return GuardResult.reject(f"Dangerous keyword detected: {keyword}")

        if not _SELECT.search(trimmed) and not _WITH.search(trimmed):
            return GuardResult.reject(SELECT_ONLY_REASON)

        if _SELECT_STAR.search(trimmed):
            return GuardResult.reject(SELECT_STAR_REASON)

        if _UNDEFINED_TABLE.search(trimmed):
            return GuardResult.reject(UNDEFINED_TABLE_REASON)

        statements = [part for part in trimmed.split(";") if part.strip()]
        if len(statements) > 1:
            return GuardResult.reject(MULTIPLE_STATEMENTS_REASON)

        return GuardResult.accept(self._sanitize(trimmed))

    def _sanitize(self, sql: str) -> str:
        body = sql.rstrip().rstrip(";").rstrip()

        if not _HAS_LIMIT.search(body):
            # A trailing ORDER BY runs to the end of the statement, so the
            # end of the body is also the end of that clause.
            last_line = body.rsplit("\n", 1)[-1]
            separator = "\n" if "--" in last_line else " "
            body = f"{body}{separator}LIMIT {self.max_rows}"

        return f"{body};"
