"""
Unit tests for the Orchestrator state machine.

Every collaborator is an in-memory fake from fakes.py. Unless a test says
otherwise the decision maker follows each tool's requested next state, so
these tests exercise the loop, the guard limits, the refinement policy and
the tools themselves rather than a model's judgement.
"""

import pytest

from querypilot.config import OrchestratorConfig
from querypilot.domain.base_enums import ConfidenceTier, DiscoverySubState, Mode, QuerySubState, SuggestionStatus
from querypilot.domain.discovery import Discovery, SemanticSuggestion
from querypilot.domain.errors import (
    BadRequestError,
    ClarificationUnavailableError,
    GuardRejectionError,
    InvalidTransitionError,
    MetadataValidationError,
    ModeNotImplementedError,
)
from querypilot.domain.plans import Plan, PlanStep
from querypilot.domain.schema import Semantic
from querypilot.domain.state import OrchestrationDecision, OrchestratorState, RunContext, StateCoordinate
from querypilot.repositories.control_repository import NullControlStore
from querypilot.services.orchestrator import (
    ALL_ROWS_PROMPT,
    APPROVE_PROMPT,
    BEST_EFFORT_STEP,
    CANCELLED_ANSWER,
    NO_RESULTS_ANSWER,
)

from fakes import (
    Answers,
    FakeControlStore,
    FakeExecutor,
    FakeInterpreter,
    FakePatternAnalyzer,
    FakePlanner,
    FakeSqlWriter,
    Permission,
    ScriptedDecisionMaker,
    clarification_plan,
    final_answer,
    needs_refinement,
    single_step_plan,
    sql_result,
)

GENERATED_SQL = "SELECT status, COUNT(*) AS n FROM orders GROUP BY status"
SANITIZED_SQL = f"{GENERATED_SQL} LIMIT 200;"


def always(coordinate: StateCoordinate) -> ScriptedDecisionMaker:
    return ScriptedDecisionMaker(lambda state, requested: OrchestrationDecision.to(coordinate, "scripted"))


def plan_of(*descriptions: str) -> Plan:
    return Plan(steps=[PlanStep(step_number=i, description=d) for i, d in enumerate(descriptions, start=1)])


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


# =============================================================================
# QUERY mode
# =============================================================================


class TestRun:
    """Plan -> execute -> interpret -> answer."""

    @pytest.mark.asyncio
    async def test_single_step_answer(self, build_orchestrator):
        control_store = FakeControlStore()
        executor = FakeExecutor()
        orchestrator = build_orchestrator(control_store=control_store, executor=executor)

        outcome = await orchestrator.run("How many orders per status?")

        assert outcome.answer == "There are 3 delivered orders."
        assert not outcome.cancelled
        assert outcome.sql_queries == [SANITIZED_SQL]
        assert executor.calls == [SANITIZED_SQL]
        assert outcome.logs.steps == 1
        assert outcome.logs.queries == 1
        assert outcome.logs.total_rows == 1
        assert outcome.logs.run_log_id == "log-1"
        assert control_store.run_logs[0]["sql_queries"] == [SANITIZED_SQL]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("question", ["", "   "])
    async def test_empty_question(self, build_orchestrator, question):
        with pytest.raises(BadRequestError):
            await build_orchestrator().run(question)

    @pytest.mark.asyncio
    async def test_permission_receives_statement_and_confidence(self, build_orchestrator):
        permission = Permission(granted=True)

        await build_orchestrator().run("How many orders per status?", request_permission=permission)

        sql, step_number, total_steps, has_semantics, tier, validation = permission.calls[0]
        assert sql == SANITIZED_SQL
        assert (step_number, total_steps) == (1, 1)
        assert has_semantics is False
        assert tier == ConfidenceTier.HIGH
        assert validation.valid

    @pytest.mark.asyncio
    async def test_permission_denied_cancels_without_run_log(self, build_orchestrator):
        control_store = FakeControlStore()
        executor = FakeExecutor()
        orchestrator = build_orchestrator(control_store=control_store, executor=executor)

        outcome = await orchestrator.run("How many orders per status?", request_permission=Permission(granted=False))

        assert outcome.cancelled
        assert outcome.answer == CANCELLED_ANSWER
        assert outcome.sql_queries == []
        assert executor.calls == []
        assert control_store.run_logs == []

    @pytest.mark.asyncio
    async def test_detected_semantics_reach_permission_and_run_log(self, build_orchestrator):
        control_store = FakeControlStore(semantics=[
            Semantic(id="sem-1", term="revenue", description="Sum of delivered order totals"),
        ])
        permission = Permission()

        await build_orchestrator(control_store=control_store).run(
            "Total revenue by status", request_permission=permission
        )

        assert permission.calls[0][3] is True
        assert control_store.run_logs[0]["detected_semantic_ids"] == ["sem-1"]

    @pytest.mark.asyncio
    async def test_run_log_failure_does_not_fail_the_run(self, build_orchestrator):
        control_store = FakeControlStore(run_log_error=RuntimeError("control database down"))

        outcome = await build_orchestrator(control_store=control_store).run("How many orders per status?")

        assert outcome.answer == "There are 3 delivered orders."
        assert outcome.logs.run_log_id is None

    @pytest.mark.asyncio
    async def test_multi_step_plan_runs_steps_in_order(self, build_orchestrator):
        interpreter = FakeInterpreter(needs_refinement("Now count customers"), final_answer("Done"))
        permission = Permission()
        orchestrator = build_orchestrator(
            planner=FakePlanner(plan_of("Count orders", "Count customers")),
            interpreter=interpreter,
        )

        outcome = await orchestrator.run("Orders and customers?", request_permission=permission)

        assert outcome.answer == "Done"
        assert [call[1:3] for call in permission.calls] == [(1, 2), (2, 2)]
        assert [call["completed_steps"] for call in interpreter.calls] == [[1], [1, 2]]
        assert outcome.logs.steps == 2


class TestSafetyChecks:

    @pytest.mark.asyncio
    async def test_guard_rejection_stops_the_run(self, build_orchestrator):
        executor = FakeExecutor()
        orchestrator = build_orchestrator(sql_writer=FakeSqlWriter("DELETE FROM orders"), executor=executor)

        with pytest.raises(GuardRejectionError) as exc_info:
            await orchestrator.run("Remove old orders")

        assert exc_info.value.message == "Dangerous keyword detected: DELETE"
        assert exc_info.value.details["sql"] == "DELETE FROM orders"
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_unknown_column_is_rejected_when_metadata_exists(self, build_orchestrator):
        executor = FakeExecutor()
        orchestrator = build_orchestrator(sql_writer=FakeSqlWriter("SELECT o.discount FROM orders o"), executor=executor)

        with pytest.raises(MetadataValidationError) as exc_info:
            await orchestrator.run("Average discount?")

        assert exc_info.value.details["issues"] == ["Columns not found: orders.discount"]
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_validation_skipped_without_metadata(self, build_orchestrator):
        executor = FakeExecutor()
        permission = Permission()
        orchestrator = build_orchestrator(
            sql_writer=FakeSqlWriter("SELECT o.discount FROM orders o"),
            executor=executor,
            control_store=FakeControlStore(metadata=[]),
        )

        await orchestrator.run("Average discount?", request_permission=permission)

        assert executor.calls == ["SELECT o.discount FROM orders o LIMIT 200;"]
        tier, validation = permission.calls[0][4:]
        assert tier == ConfidenceTier.MEDIUM
        assert validation is None


class TestClarification:

    @pytest.mark.asyncio
    async def test_needs_interactive_session(self, build_orchestrator):
        orchestrator = build_orchestrator(planner=FakePlanner(clarification_plan("Which period?")))

        with pytest.raises(ClarificationUnavailableError) as exc_info:
            await orchestrator.run("Show revenue")

        assert exc_info.value.details["clarification_questions"] == ["Which period?"]

    @pytest.mark.asyncio
    async def test_answers_are_folded_into_the_question(self, build_orchestrator):
        planner = FakePlanner(clarification_plan("Which period?"), single_step_plan())
        ask = Answers("last month")

        outcome = await build_orchestrator(planner=planner).run("Show revenue", ask_question=ask)

        assert ask.prompts == ["Which period?"]
        assert planner.questions == ["Show revenue", "Show revenue (Which period? → last month)"]
        assert outcome.answer == "There are 3 delivered orders."

    @pytest.mark.asyncio
    async def test_best_effort_plan_after_round_limit(self, build_orchestrator):
        planner = FakePlanner(clarification_plan("Which period?"))
        sql_writer = FakeSqlWriter()
        ask = Answers("not sure")

        outcome = await build_orchestrator(planner=planner, sql_writer=sql_writer).run("Show revenue", ask_question=ask)

        assert len(ask.prompts) == 3
        assert len(planner.questions) == 4
        assert [step.description for step in sql_writer.steps] == [BEST_EFFORT_STEP]
        assert outcome.logs.queries == 1


class TestRefinementPolicy:

    @pytest.mark.asyncio
    async def test_repeated_plan_forces_answer(self, build_orchestrator):
        executor = FakeExecutor()
        orchestrator = build_orchestrator(interpreter=FakeInterpreter(needs_refinement()), executor=executor)

        outcome = await orchestrator.run("How many orders per status?")

        assert len(executor.calls) == 2
        assert outcome.answer.startswith("Query completed. Returned 1 rows. Sample results:\n")

    @pytest.mark.asyncio
    async def test_refinement_cap(self, build_orchestrator):
        planner = FakePlanner(*(single_step_plan(f"Attempt {i}") for i in range(1, 10)))
        executor = FakeExecutor()
        orchestrator = build_orchestrator(
            planner=planner,
            interpreter=FakeInterpreter(needs_refinement()),
            executor=executor,
        )

        await orchestrator.run("How many orders per status?")

        # First plan plus three refinements
        assert len(planner.questions) == 4
        assert len(executor.calls) == 4


class TestGuardLimits:

    @pytest.mark.asyncio
    async def test_max_iterations(self, build_orchestrator):
        planner = FakePlanner()
        orchestrator = build_orchestrator(planner=planner, decision_maker=always(StateCoordinate(Mode.QUERY, "PLAN")))

        outcome = await orchestrator.run("How many orders per status?")

        assert len(planner.questions) == 49
        assert outcome.answer == NO_RESULTS_ANSWER

    @pytest.mark.asyncio
    async def test_max_duration(self, build_orchestrator):
        clock = FakeClock()
        planner = FakePlanner()

        def decide(state, requested):
            if len(planner.questions) == 3:
                clock.now = 120.0
            return OrchestrationDecision.to(StateCoordinate(Mode.QUERY, QuerySubState.PLAN), "scripted")

        orchestrator = build_orchestrator(planner=planner, decision_maker=ScriptedDecisionMaker(decide), clock=clock)

        outcome = await orchestrator.run("How many orders per status?")

        assert len(planner.questions) == 3
        assert outcome.answer == NO_RESULTS_ANSWER

    @pytest.mark.asyncio
    async def test_max_queries(self, build_orchestrator):
        executor = FakeExecutor()
        orchestrator = build_orchestrator(
            planner=FakePlanner(plan_of("one", "two", "three")),
            executor=executor,
            decision_maker=always(StateCoordinate(Mode.QUERY, QuerySubState.EXECUTE)),
            config=OrchestratorConfig(max_queries=2),
        )

        outcome = await orchestrator.run("How many orders per status?")

        assert len(executor.calls) == 2
        assert outcome.logs.queries == 2
        assert outcome.answer.startswith("Query completed.")


class TestAllRowsOverride:

    @pytest.mark.asyncio
    async def test_fetches_all_rows_when_confirmed(self, build_orchestrator):
        executor = FakeExecutor(sql_result(200), sql_result(350))
        ask = Answers("yes")

        outcome = await build_orchestrator(executor=executor).run("Show all orders", ask_question=ask)

        assert ask.prompts == [ALL_ROWS_PROMPT.format(rows=200)]
        assert executor.calls == [SANITIZED_SQL, f"{GENERATED_SQL};"]
        assert outcome.sql_queries == [f"{GENERATED_SQL};"]
        assert outcome.logs.total_rows == 350
        assert outcome.logs.queries == 1

    @pytest.mark.asyncio
    async def test_keeps_capped_result_when_declined(self, build_orchestrator):
        executor = FakeExecutor(sql_result(200))

        outcome = await build_orchestrator(executor=executor).run("Show all orders", ask_question=Answers("n"))

        assert executor.calls == [SANITIZED_SQL]
        assert outcome.logs.total_rows == 200

    @pytest.mark.asyncio
    async def test_not_offered_below_the_cap(self, build_orchestrator):
        ask = Answers("yes")

        await build_orchestrator(executor=FakeExecutor(sql_result(20))).run("Show all orders", ask_question=ask)

        assert ask.prompts == []


class TestTransitions:

    @pytest.mark.asyncio
    async def test_semantic_storing_is_not_implemented(self, build_orchestrator):
        orchestrator = build_orchestrator()
        coordinate = StateCoordinate(Mode.SEMANTIC_STORING, "VALIDATE")

        with pytest.raises(ModeNotImplementedError):
            await orchestrator._dispatch(coordinate, RunContext(question="How many orders per status?"), None)

    @pytest.mark.asyncio
    async def test_sub_state_outside_mode_is_rejected(self, build_orchestrator):
        decision_maker = ScriptedDecisionMaker(
            lambda state, requested: OrchestrationDecision(next_mode="QUERY", next_sub_state="GET_DATA")
        )

        with pytest.raises(InvalidTransitionError):
            await build_orchestrator(decision_maker=decision_maker).run("How many orders per status?")

    @pytest.mark.asyncio
    async def test_terminated_mode_is_not_reentered(self, build_orchestrator):
        """A decision into a mode that is not running falls back to the tool's request."""
        executor = FakeExecutor()
        decision_maker = always(StateCoordinate(Mode.DISCOVERY, DiscoverySubState.GET_DATA))
        orchestrator = build_orchestrator(executor=executor, decision_maker=decision_maker)

        outcome = await orchestrator.run("How many orders per status?")

        assert outcome.answer == "There are 3 delivered orders."
        assert executor.calls == [SANITIZED_SQL]
        assert decision_maker.calls == 3

    @pytest.mark.asyncio
    async def test_terminated_mode_without_tool_request_is_rejected(self, build_orchestrator):
        orchestrator = build_orchestrator()
        state = OrchestratorState.initial(
            StateCoordinate(Mode.QUERY, QuerySubState.INTERPRET), RunContext(question="How many orders per status?")
        )
        decision = OrchestrationDecision.to(StateCoordinate(Mode.SEMANTIC_STORING, "STORE"), "scripted")

        with pytest.raises(InvalidTransitionError) as exc_info:
            orchestrator._finalize_decision(state, StateCoordinate(Mode.QUERY, QuerySubState.INTERPRET), decision)
        assert exc_info.value.details["to_state"] == "SEMANTIC_STORING:STORE"


# =============================================================================
# DISCOVERY mode
# =============================================================================


def status_discovery(validation_query: str = GENERATED_SQL) -> Discovery:
    return Discovery(
        pattern="status holds five lifecycle values",
        confidence=0.8,
        validation_query=validation_query,
        table_name="orders",
        column_name="status",
        suggested_semantic=SemanticSuggestion(
            suggested_name="delivered orders",
            suggested_type="DIMENSION",
            suggested_definition={"sqlPattern": "status = 'delivered'"},
            confidence=0.6,
        ),
    )


class TestExplore:

    @pytest.mark.asyncio
    async def test_approved_suggestion_is_stored(self, build_orchestrator):
        control_store = FakeControlStore()
        executor = FakeExecutor()
        ask = Answers("y")
        orchestrator = build_orchestrator(
            control_store=control_store,
            executor=executor,
            pattern_analyzer=FakePatternAnalyzer(status_discovery()),
        )

        outcome = await orchestrator.explore("/explore orders status", ask_question=ask)

        assert executor.calls == [
            'SELECT "status", COUNT(*) AS count FROM "orders" GROUP BY "status" ORDER BY count DESC LIMIT 50',
            SANITIZED_SQL,
        ]
        assert ask.prompts == [APPROVE_PROMPT]
        assert outcome.completed
        assert outcome.discoveries[0].confidence == pytest.approx(0.9)
        assert outcome.discoveries[0].evidence["validation_results"]["row_count"] == 1

        suggestion = outcome.suggestions[0]
        assert suggestion.id == "suggestion-1"
        assert suggestion.status == SuggestionStatus.APPROVED
        assert suggestion.confidence == pytest.approx(0.9)
        assert suggestion.requires_expert_review is False
        assert [s.id for s in control_store.approved] == ["suggestion-1"]
        assert outcome.logs.queries == 2

    @pytest.mark.asyncio
    async def test_declined_suggestion_stays_pending(self, build_orchestrator):
        control_store = FakeControlStore()
        orchestrator = build_orchestrator(
            control_store=control_store,
            pattern_analyzer=FakePatternAnalyzer(status_discovery()),
        )

        outcome = await orchestrator.explore("orders status", ask_question=Answers("n"))

        assert not outcome.completed
        assert outcome.suggestions[0].status == SuggestionStatus.PENDING
        assert len(control_store.inserted) == 1
        assert control_store.approved == []

    @pytest.mark.asyncio
    async def test_approval_needs_interactive_session(self, build_orchestrator):
        orchestrator = build_orchestrator(pattern_analyzer=FakePatternAnalyzer(status_discovery()))

        with pytest.raises(ClarificationUnavailableError):
            await orchestrator.explore("orders status")

    @pytest.mark.asyncio
    async def test_table_exploration_samples_listed_columns(self, build_orchestrator):
        executor = FakeExecutor()
        analyzer = FakePatternAnalyzer(status_discovery(validation_query=None))
        orchestrator = build_orchestrator(executor=executor, pattern_analyzer=analyzer)

        await orchestrator.explore("customers", ask_question=Answers("n"))

        assert executor.calls == ['SELECT "id", "name", "country" FROM "customers" LIMIT 100']
        assert analyzer.calls[0]["table_name"] == "customers"
        assert analyzer.calls[0]["column_name"] is None

    @pytest.mark.asyncio
    async def test_unsafe_validation_query_is_skipped(self, build_orchestrator):
        executor = FakeExecutor()
        orchestrator = build_orchestrator(
            executor=executor,
            pattern_analyzer=FakePatternAnalyzer(status_discovery(validation_query="DELETE FROM orders")),
        )

        outcome = await orchestrator.explore("orders status", ask_question=Answers("n"))

        assert len(executor.calls) == 1
        assert outcome.discoveries[0].confidence == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_without_control_database_the_suggestion_is_returned_unsaved(self, build_orchestrator):
        orchestrator = build_orchestrator(
            control_store=NullControlStore(),
            pattern_analyzer=FakePatternAnalyzer(status_discovery()),
        )

        outcome = await orchestrator.explore("orders status", ask_question=Answers("n"))

        assert outcome.suggestions[0].id is None
        assert outcome.suggestions[0].suggested_name == "delivered orders"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "target",
        ["", "/explore", "orders status extra", "orders; drop", "invoices", "orders discount"],
    )
    async def test_bad_targets(self, build_orchestrator, target):
        with pytest.raises(BadRequestError):
            await build_orchestrator().explore(target)
