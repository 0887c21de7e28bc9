"""
Unit tests for decoding model replies into plans, interpretations,
decisions, discoveries and bare SQL.

Replies are written the way models actually answer: fenced, prefixed with
prose, camelCase or snake_case.
"""

import json

import pytest

from querypilot.domain.base_enums import ConfidenceTier, InterpretationStatus, PlanStatus
from querypilot.domain.decoding import (
    decode_decision,
    decode_discovery,
    decode_interpretation,
    decode_plan,
    decode_sql,
    extract_json_object,
    strip_markdown,
)


class TestHelpers:

    @pytest.mark.parametrize(
        "raw",
        [
            '```json\n{"a": 1}\n```',
            '```\n{"a": 1}\n```',
            '  {"a": 1}  ',
        ],
    )
    def test_strip_markdown(self, raw):
        assert strip_markdown(raw) == '{"a": 1}'

    def test_extract_object_from_surrounding_prose(self):
        assert extract_json_object('Here is the plan: {"a": {"b": 2}} hope it helps') == {"a": {"b": 2}}

    def test_extract_rejects_arrays_and_garbage(self):
        assert extract_json_object("[1, 2]") is None
        assert extract_json_object("no json here") is None


class TestDecodePlan:

    def test_ready_plan_is_renumbered(self):
        raw = json.dumps({
            "status": "READY",
            "overallGoal": "Revenue by country",
            "steps": [
                {"stepNumber": 4, "description": "Sum totals per customer"},
                {"stepNumber": 9, "description": "Join countries", "reasoning": "Country lives on customers"},
            ],
        })
        result = decode_plan(raw)

        assert result.ok
        plan = result.value
        assert plan.status == PlanStatus.READY
        assert plan.overall_goal == "Revenue by country"
        assert [step.step_number for step in plan.steps] == [1, 2]
        assert plan.steps[1].reasoning == "Country lives on customers"

    def test_clarification_plan(self):
        raw = '```json\n{"status": "clarification_needed", "clarification_questions": ["Which period?"]}\n```'
        result = decode_plan(raw)

        assert result.ok
        assert result.value.status == PlanStatus.CLARIFICATION_NEEDED
        assert result.value.clarification_questions == ["Which period?"]
        assert result.value.steps == []

    def test_clarification_without_questions_fails(self):
        result = decode_plan('{"status": "CLARIFICATION_NEEDED", "clarificationQuestions": []}')
        assert not result.ok
        assert "without any questions" in result.error

    def test_plan_without_steps_fails(self):
        assert decode_plan('{"status": "READY", "steps": []}').error == "Plan contains no steps"

    def test_step_without_description_fails(self):
        result = decode_plan('{"steps": [{"stepNumber": 1}]}')
        assert not result.ok
        assert result.error.startswith("Invalid plan:")

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_empty_reply(self, raw):
        assert decode_plan(raw).error == "Model returned an empty reply"

    def test_non_json_reply(self):
        result = decode_plan("I cannot help with that.")
        assert result.error.startswith("Model reply was not a JSON object")


class TestDecodeInterpretation:

    def test_final_answer(self):
        result = decode_interpretation('{"status": "FINAL_ANSWER", "answer": "42 orders", "confidence": "HIGH"}')
        assert result.ok
        assert result.value.status == InterpretationStatus.FINAL_ANSWER
        assert result.value.answer == "42 orders"
        assert result.value.confidence == ConfidenceTier.HIGH

    def test_anything_else_needs_refinement(self):
        result = decode_interpretation('{"status": "MORE_WORK", "nextStep": "Break down by month"}')
        assert result.value.status == InterpretationStatus.NEEDS_REFINEMENT
        assert result.value.next_step == "Break down by month"

    def test_unknown_confidence_defaults_to_medium(self):
        result = decode_interpretation('{"status": "FINAL_ANSWER", "answer": "ok", "confidence": "certain"}')
        assert result.value.confidence == ConfidenceTier.MEDIUM

    def test_missing_status_fails(self):
        assert not decode_interpretation('{"answer": "ok"}').ok


class TestDecodeDecision:

    def test_camel_case_decision(self):
        result = decode_decision(
            '{"nextMode": "QUERY", "nextSubState": "EXECUTE", "reasoning": "plan ready", "confidence": 0.9}'
        )
        assert result.ok
        decision = result.value
        assert decision.next_mode == "QUERY"
        assert decision.next_sub_state == "EXECUTE"
        assert decision.confidence == 0.9
        assert str(decision.coordinate()) == "QUERY:EXECUTE"

    def test_missing_mode_fails(self):
        assert not decode_decision('{"nextSubState": "EXECUTE"}').ok


class TestDecodeDiscovery:

    def test_discovery_with_suggestion(self):
        raw = json.dumps({
            "pattern": "status is one of five lifecycle values",
            "confidence": 0.8,
            "validationQuery": "SELECT status, COUNT(*) FROM orders GROUP BY status",
            "suggestedSemantic": {
                "suggested_name": "delivered orders",
                "suggested_type": "DIMENSION",
                "sql_fragment": "status = 'delivered'",
            },
        })
        result = decode_discovery(raw, "orders", "status")

        assert result.ok
        discovery = result.value
        assert discovery.table_name == "orders"
        assert discovery.column_name == "status"
        assert discovery.validation_query.startswith("SELECT status")
        suggestion = discovery.suggested_semantic
        assert suggestion.suggested_name == "delivered orders"
        assert suggestion.suggested_definition["tableName"] == "orders"
        assert suggestion.suggested_definition["columnName"] == "status"
        assert suggestion.suggested_definition["sqlPattern"] == "status = 'delivered'"
        # No confidence of its own: inherits the discovery's
        assert suggestion.confidence == 0.8
        assert suggestion.requires_expert_review is False

    def test_confidence_is_clamped(self):
        result = decode_discovery('{"pattern": "ids are sequential", "confidence": 3}', "orders", None)
        assert result.value.confidence == 1.0
        assert result.value.suggested_semantic is None

    def test_missing_pattern_fails(self):
        assert not decode_discovery('{"confidence": 0.5}', "orders", None).ok


class TestDecodeSql:

    @pytest.mark.parametrize(
        "raw",
        [
            "SELECT id FROM orders;",
            "```sql\nSELECT id FROM orders;\n```",
            '{"sql": "SELECT id FROM orders;"}',
            "  SELECT id FROM orders ;; ",
        ],
    )
    def test_bare_sql(self, raw):
        assert decode_sql(raw).value == "SELECT id FROM orders"

    @pytest.mark.parametrize("raw", [None, "", "```sql\n```", ";"])
    def test_no_sql(self, raw):
        assert not decode_sql(raw).ok
