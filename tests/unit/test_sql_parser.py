"""
Unit tests for SqlStructuralParser.

The parser is heuristic; these tests pin down the shapes generated SQL
actually takes (aliases, joins, CTEs, function-call FROMs) and the promise
that parse() never raises.
"""

import pytest

from querypilot.domain.base_enums import GrainLevel
from querypilot.domain.validation import ColumnRef, JoinRef, ParsedSQL
from querypilot.repositories.sql_parser import SqlStructuralParser, normalize_sql, split_top_level


@pytest.fixture
def parser() -> SqlStructuralParser:
    return SqlStructuralParser()


class TestHelpers:

    def test_normalize_strips_comments_and_whitespace(self):
        sql = "SELECT id -- the key\nFROM   orders /* all of them */ ;"
        assert normalize_sql(sql) == "SELECT id FROM orders"

    def test_split_top_level_ignores_nested_commas(self):
        assert split_top_level("a, COALESCE(b, 0), c") == ["a", "COALESCE(b, 0)", "c"]


class TestTables:

    def test_aliases_resolve_to_tables(self, parser):
        parsed = parser.parse(
            "SELECT o.id, c.name FROM orders o JOIN customers c ON o.customer_id = c.id "
            "WHERE o.status = 'shipped'"
        )
        assert parsed.tables == ["orders", "customers"]
        assert ColumnRef(table="orders", column="id") in parsed.columns
        assert ColumnRef(table="customers", column="name") in parsed.columns
        assert ColumnRef(table="orders", column="status") in parsed.columns

    def test_schema_prefix_is_dropped(self, parser):
        assert parser.parse("SELECT id FROM public.orders").tables == ["orders"]

    def test_keyword_after_table_is_not_an_alias(self, parser):
        parsed = parser.parse("SELECT orders.id FROM orders WHERE orders.total > 10")
        assert parsed.tables == ["orders"]
        assert ColumnRef(table="orders", column="total") in parsed.columns

    def test_from_inside_extract_is_not_a_table(self, parser):
        parsed = parser.parse("SELECT EXTRACT(MONTH FROM created_at) AS m, COUNT(id) FROM orders GROUP BY 1")
        assert parsed.tables == ["orders"]
        assert parsed.has_aggregations

    def test_commented_and_quoted_text_is_ignored(self, parser):
        parsed = parser.parse(
            "SELECT id -- FROM secrets\nFROM orders /* JOIN hidden */ WHERE note = 'shipped FROM depot'"
        )
        assert parsed.tables == ["orders"]


class TestColumns:

    def test_unqualified_select_items(self, parser):
        parsed = parser.parse("SELECT status, total FROM orders")
        assert parsed.columns == [ColumnRef(column="status"), ColumnRef(column="total")]

    def test_function_calls_are_not_columns(self, parser):
        parsed = parser.parse("SELECT COUNT(id), SUM(o.total) FROM orders o")
        assert parsed.columns == [ColumnRef(table="orders", column="total")]

    def test_select_star_contributes_nothing(self, parser):
        assert parser.parse("SELECT * FROM orders").columns == []


class TestJoins:

    def test_join_condition_is_captured(self, parser):
        parsed = parser.parse(
            "SELECT o.id FROM orders o LEFT JOIN customers c ON o.customer_id = c.id WHERE c.country = 'DE'"
        )
        assert parsed.joins == [
            JoinRef(from_table="orders", to_table="customers", condition="o.customer_id = c.id")
        ]

    def test_no_joins_without_on(self, parser):
        assert parser.parse("SELECT id FROM orders").joins == []


class TestCommonTableExpressions:

    def test_cte_names_are_tracked(self, parser):
        parsed = parser.parse(
            "WITH recent AS (SELECT customer_id, total FROM orders WHERE total > 100) "
            "SELECT r.customer_id, SUM(r.total) FROM recent r GROUP BY r.customer_id"
        )
        assert parsed.cte_names == {"recent"}
        assert parsed.real_tables() == ["orders"]
        assert parsed.is_cte("RECENT")
        assert ColumnRef(table="recent", column="customer_id") in parsed.columns

    def test_multiple_ctes(self, parser):
        parsed = parser.parse(
            "WITH big AS (SELECT id FROM orders), small AS (SELECT id FROM customers) "
            "SELECT big.id FROM big JOIN small ON big.id = small.id"
        )
        assert parsed.cte_names == {"big", "small"}
        assert sorted(parsed.real_tables()) == ["customers", "orders"]


class TestAggregationAndGrain:

    def test_row_level_without_group_by(self, parser):
        parsed = parser.parse("SELECT id FROM orders")
        assert parsed.grain == GrainLevel.ROW_LEVEL
        assert not parsed.has_group_by
        assert not parsed.has_aggregations

    @pytest.mark.parametrize(
        "group_by, grain",
        [
            ("created_at", GrainLevel.DAILY),
            ("order_month", GrainLevel.MONTHLY),
            ("customer_id", GrainLevel.CUSTOMER_LEVEL),
            ("order_id", GrainLevel.ORDER_LEVEL),
            ("status", GrainLevel.CUSTOM),
        ],
    )
    def test_grain_from_group_by(self, parser, group_by, grain):
        parsed = parser.parse(f"SELECT {group_by}, COUNT(id) FROM orders GROUP BY {group_by}")
        assert parsed.has_group_by
        assert parsed.has_aggregations
        assert parsed.grain == grain


class TestNeverRaises:

    @pytest.mark.parametrize(
        "sql",
        [
            None,
            "",
            "(((",
            "SELECT FROM",
            "FROM FROM JOIN ON ON",
            "SELECT a.b.c.d FROM x.y.z",
            "WITH AS ( SELECT",
            "'unterminated",
            "SELECT id FROM orders GROUP BY",
            "\x00\x01 SELECT é FROM ü",
            ";;;;",
        ],
    )
    def test_garbage_input(self, parser, sql):
        assert isinstance(parser.parse(sql), ParsedSQL)

    def test_internal_failure_yields_empty_result(self, parser, monkeypatch):
        def boom(sql):
            raise RuntimeError("regex exploded")

        monkeypatch.setattr(parser, "_parse", boom)
        assert parser.parse("SELECT id FROM orders") == ParsedSQL()
