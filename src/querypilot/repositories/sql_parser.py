"""
Heuristic structural parser for generated SQL.

Recovers tables, aliases, CTE names, column references, joins, aggregation
and grain from a single statement using regular expressions over normalized
text. It is not a grammar: nested subqueries, window functions and unusual
expressions can be misread. Its output feeds confidence scoring and the
zero-hallucination table/column check, nothing more.

parse() never raises. Any internal failure yields an empty ParsedSQL.
"""

import re
from typing import Dict, List, Optional, Set

from querypilot.domain.base_enums import GrainLevel
from querypilot.domain.validation import ColumnRef, JoinRef, ParsedSQL
from querypilot.utils.logging import get_module_logger
from querypilot.utils.tracing import current_trace_id

logger = get_module_logger()

IDENT = r"[A-Za-z_][A-Za-z0-9_]*"

# Words that can follow FROM/JOIN in prose or broken SQL but are never tables
TABLE_STOP_WORDS = {
    "the", "a", "an", "this", "that", "these", "those",
    "select", "where", "group", "order", "having", "limit", "offset",
}

# Words that can follow a table name but are never its alias
ALIAS_STOP_WORDS = {
    "where", "join", "inner", "left", "right", "full", "cross", "outer", "natural",
    "on", "using", "group", "order", "having", "limit", "offset", "union",
    "intersect", "except", "window", "fetch", "for", "lateral", "as",
}

AGGREGATE_WORDS = {"COUNT", "SUM", "AVG", "MIN", "MAX", "DISTINCT"}

# Leading words of a SELECT item that are not column names
SELECT_ITEM_STOP_WORDS = AGGREGATE_WORDS | {
    "CASE", "CAST", "NULL", "TRUE", "FALSE", "INTERVAL", "NOT", "EXISTS",
    "CURRENT_DATE", "CURRENT_TIME", "CURRENT_TIMESTAMP", "LOCALTIME", "LOCALTIMESTAMP",
    "DATE", "TIMESTAMP", "ALL",
}

_LINE_COMMENT = re.compile(r"--[^\n]*")
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_STRING_LITERAL = re.compile(r"'(?:[^']|'')*'")
_WHITESPACE = re.compile(r"\s+")

_CTE = re.compile(rf"(?:\bWITH(?:\s+RECURSIVE)?|\)\s*,)\s+({IDENT})\s+AS\s*\(", re.IGNORECASE)
_FUNCTION_FROM = re.compile(
    r"\b(?:EXTRACT|SUBSTRING|TRIM|POSITION|OVERLAY)\s*\([^()]*?\bFROM\b", re.IGNORECASE
)
_FROM = re.compile(rf"\bFROM\s+(?:{IDENT}\.)?({IDENT})(?:\s+(?:AS\s+)?({IDENT}))?", re.IGNORECASE)
_JOIN = re.compile(rf"\bJOIN\s+(?:{IDENT}\.)?({IDENT})(?:\s+(?:AS\s+)?({IDENT}))?", re.IGNORECASE)
_JOIN_ON = re.compile(
    rf"\bJOIN\s+(?:{IDENT}\.)?({IDENT})(?:\s+(?:AS\s+)?{IDENT})?\s+ON\s+(.+?)"
    r"(?=\s+(?:(?:INNER|LEFT|RIGHT|FULL|CROSS)\s+)?(?:OUTER\s+)?JOIN\b"
    r"|\s+WHERE\b|\s+GROUP\s+BY\b|\s+ORDER\s+BY\b|\s+HAVING\b|\s+LIMIT\b|\s*\)|$)",
    re.IGNORECASE,
)
_QUALIFIED_COLUMN = re.compile(rf"\b({IDENT})\.({IDENT})\b")
_SELECT_CLAUSE = re.compile(r"\bSELECT\s+(.+?)\s+FROM\b", re.IGNORECASE)
_WHERE_CLAUSE = re.compile(
    r"\bWHERE\s+(.+?)(?=\s+GROUP\s+BY\b|\s+ORDER\s+BY\b|\s+HAVING\b|\s+LIMIT\b|$)", re.IGNORECASE
)
_GROUP_BY_CLAUSE = re.compile(
    r"\bGROUP\s+BY\s+(.+?)(?=\s+HAVING\b|\s+ORDER\s+BY\b|\s+LIMIT\b|$)", re.IGNORECASE
)
_ORDER_BY_CLAUSE = re.compile(r"\bORDER\s+BY\s+(.+?)(?=\s+LIMIT\b|$)", re.IGNORECASE)
_AGGREGATION = re.compile(r"\b(?:COUNT|SUM|AVG|MIN|MAX|GROUP_CONCAT)\s*\(", re.IGNORECASE)
_GROUP_BY = re.compile(r"\bGROUP\s+BY\b", re.IGNORECASE)
_LEADING_IDENT = re.compile(rf"^\s*({IDENT})\s*(\()?")


def normalize_sql(sql: str) -> str:
    """Strip comments, collapse whitespace, drop trailing semicolons."""
    cleaned = _LINE_COMMENT.sub("", sql)
    cleaned = _BLOCK_COMMENT.sub("", cleaned)
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()
    return cleaned.rstrip(";").strip()


def split_top_level(clause: str) -> List[str]:
    """Split on commas that are not inside parentheses."""
    parts: List[str] = []
    depth = 0
    current: List[str] = []
    for char in clause:
        if char == "(":
            depth += 1
        elif char == ")":
            depth = max(0, depth - 1)
        elif char == "," and depth == 0:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    tail = "".join(current).strip()
    if tail:
        parts.append(tail)
    return parts


def infer_grain(group_by_text: str) -> GrainLevel:
    text = group_by_text.lower()
    if "date" in text or "day" in text or "created_at" in text:
        return GrainLevel.DAILY
    if "month" in text:
        return GrainLevel.MONTHLY
    if "customer" in text or "user" in text:
        return GrainLevel.CUSTOMER_LEVEL
    if "order" in text:
        return GrainLevel.ORDER_LEVEL
    return GrainLevel.CUSTOM


class SqlStructuralParser:
    """Best-effort extraction of the structural elements of one statement."""

    def parse(self, sql: str) -> ParsedSQL:
        try:
            return self._parse(sql or "")
        except Exception as exc:
            logger.warning(
                "SQL structural parse failed, returning empty result",
                error=str(exc),
                trace_id=current_trace_id(),
            )
            return ParsedSQL()

    def _parse(self, sql: str) -> ParsedSQL:
        normalized = normalize_sql(sql)
        # Literals are blanked so quoted text never looks like identifiers,
        # and FROM inside EXTRACT(...) and friends is renamed away
        scan = _STRING_LITERAL.sub("''", normalized)
        scan = _FUNCTION_FROM.sub(lambda m: m.group(0)[:-4] + "_FN_", scan)

        cte_names: Set[str] = {match.group(1).lower() for match in _CTE.finditer(scan)}

        tables, aliases = self._extract_tables(scan)
        columns = self._extract_columns(scan, cte_names, aliases)
        joins = self._extract_joins(scan, tables)

        has_aggregations = bool(_AGGREGATION.search(scan))
        has_group_by = bool(_GROUP_BY.search(scan))

        grain = GrainLevel.ROW_LEVEL
        if has_group_by:
            group_by = _GROUP_BY_CLAUSE.search(scan)
            grain = infer_grain(group_by.group(1)) if group_by else GrainLevel.CUSTOM

        return ParsedSQL(
            tables=tables,
            columns=columns,
            joins=joins,
            cte_names=cte_names,
            grain=grain,
            has_aggregations=has_aggregations,
            has_group_by=has_group_by,
            normalized_sql=normalized,
        )

    # =========================================================================
    # Tables
    # =========================================================================

    def _extract_tables(self, scan: str):
        tables: List[str] = []
        aliases: Dict[str, str] = {}

        for pattern in (_FROM, _JOIN):
            for match in pattern.finditer(scan):
                self._register_table(match.group(1), match.group(2), tables, aliases)

        return tables, aliases

    @staticmethod
    def _register_table(
        table_name: str,
        alias: Optional[str],
        tables: List[str],
        aliases: Dict[str, str],
    ) -> None:
        if table_name.lower() in TABLE_STOP_WORDS:
            return
        if table_name not in tables:
            tables.append(table_name)
        if alias and alias.lower() not in ALIAS_STOP_WORDS and alias.lower() != table_name.lower():
            aliases[alias] = table_name

    # =========================================================================
    # Columns
    # =========================================================================

    def _extract_columns(self, scan: str, cte_names: Set[str], aliases: Dict[str, str]) -> List[ColumnRef]:
        columns: List[ColumnRef] = []

        def add(ref: ColumnRef) -> None:
            if ref not in columns:
                columns.append(ref)

        def qualified(clause: str) -> None:
            for match in _QUALIFIED_COLUMN.finditer(clause):
                table_ref, column_name = match.group(1), match.group(2)
                if table_ref.lower() in cte_names:
                    add(ColumnRef(table=table_ref, column=column_name))
                else:
                    add(ColumnRef(table=aliases.get(table_ref, table_ref), column=column_name))

        select = _SELECT_CLAUSE.search(scan)
        if select:
            for item in split_top_level(select.group(1)):
                if item == "*" or item.endswith(".*"):
                    continue
                if "." in item:
                    qualified(item)
                    continue
                leading = _LEADING_IDENT.match(item)
                if not leading:
                    continue
                word, is_call = leading.group(1), leading.group(2)
                if is_call or word.upper() in SELECT_ITEM_STOP_WORDS:
                    # Qualified references inside function arguments still count
                    qualified(item)
                    continue
                add(ColumnRef(column=word))

        for pattern in (_WHERE_CLAUSE, _GROUP_BY_CLAUSE, _ORDER_BY_CLAUSE):
            for match in pattern.finditer(scan):
                qualified(match.group(1))

        return columns

    # =========================================================================
    # Joins
    # =========================================================================

    @staticmethod
    def _extract_joins(scan: str, tables: List[str]) -> List[JoinRef]:
        if not tables:
            return []
        from_table = tables[0]
        joins: List[JoinRef] = []
        for match in _JOIN_ON.finditer(scan):
            joined = match.group(1)
            if joined.lower() in TABLE_STOP_WORDS or joined == from_table:
                continue
            joins.append(JoinRef(from_table=from_table, to_table=joined, condition=match.group(2).strip()))
        return joins
