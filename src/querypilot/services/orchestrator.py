"""
Orchestrator - mode/sub-state state machine driving one question to an answer.

Each iteration dispatches the active (mode, sub-state) to one tool:

QUERY:
1. PLAN          - Planner breaks the question into steps
2. CLARIFICATION - ask the user, rewrite the question (forced transition)
3. EXECUTE       - SqlWriter -> SqlGuard -> MetadataValidator -> permission -> SqlExecutor
4. INTERPRET     - Interpreter decides FINAL_ANSWER or NEEDS_REFINEMENT
5. ANSWER        - ends the run

DISCOVERY: GET_DATA -> ANALYZE -> VALIDATE -> SUGGEST -> APPROVE -> STORE

The tool returns context updates and its needs; the DecisionMaker picks the
next coordinate, which is validated, checked against the guard limits and
the refinement policy, then applied.

Key principles:
- Tools never mutate RunContext; updates are merged through `evolve`
- Guard limits are not errors: they force the best available answer
- Every generated statement passes SqlGuard and (when metadata exists)
  metadata validation before it can run
"""

import re
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from querypilot.config import GuardConfig, OrchestratorConfig
from querypilot.domain.base_enums import (
    ConfidenceTier,
    DiscoverySubState,
    InterpretationStatus,
    Mode,
    PlanStatus,
    QuerySubState,
    SuggestionStatus,
)
from querypilot.domain.discovery import SemanticSuggestion
from querypilot.domain.errors import (
    BadRequestError,
    ClarificationUnavailableError,
    DecodeError,
    GuardRejectionError,
    InvalidTransitionError,
    MetadataValidationError,
    ModeNotImplementedError,
)
from querypilot.domain.plans import Interpretation, Plan, PlanStep, SqlResult, StepResult
from querypilot.domain.ports import (
    AskCallback,
    ControlStore,
    DecisionMaker,
    Interpreter,
    PatternAnalyzer,
    PermissionCallback,
    Planner,
    SchemaProvider,
    SqlExecutor,
    SqlWriter,
)
from querypilot.domain.schema import TableMetadata, TableSchema
from querypilot.domain.state import (
    AgentNeeds,
    ConversationTurn,
    DiscoveryNeeds,
    DiscoveryOutcome,
    GuardNeeds,
    InterpreterNeeds,
    OrchestrationDecision,
    OrchestratorState,
    PlannerNeeds,
    RunContext,
    RunLogs,
    RunOutcome,
    SqlWriterNeeds,
    StateCoordinate,
    ToolResult,
)
from querypilot.domain.validation import SQLValidationResult
from querypilot.repositories.control_repository import NullControlStore
from querypilot.repositories.metadata_validation import MetadataValidator, calculate_confidence
from querypilot.repositories.sql_guard import SqlGuard
from querypilot.utils.logging import get_module_logger
from querypilot.utils.prompt_utils import rows_to_json
from querypilot.utils.tracing import current_trace_id

logger = get_module_logger()

CANCELLED_ANSWER = "Query cancelled by user."
NO_RESULTS_ANSWER = "No results returned from queries."
ANSWER_SAMPLE_ROWS = 10

BEST_EFFORT_STEP = "Query the database to answer the question with available information"
BEST_EFFORT_REASONING = "Proceeding with best-effort plan after clarification limit reached"

ALL_ROWS_PROMPT = "Query returned {rows} rows (the maximum). Fetch all rows without the LIMIT? (y/n): "
APPROVE_PROMPT = "Approve this semantic? (y/n): "

COLUMN_EXPLORATION_LIMIT = 50
TABLE_EXPLORATION_LIMIT = 100
VALIDATION_SAMPLE_ROWS = 10

_ALL_ROWS_QUESTION = re.compile(r"\b(all|every|entire|complete)\b", re.IGNORECASE)
_LIMIT_CLAUSE = re.compile(r"\s*\bLIMIT\s+\d+", re.IGNORECASE)
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

YES_ANSWERS = ("y", "yes")


@dataclass(frozen=True)
class _Callbacks:
    request_permission: Optional[PermissionCallback] = None
    ask_question: Optional[AskCallback] = None


class _RunCancelled(Exception):
    """Internal signal: the user declined a statement."""


class Orchestrator:
    """
    Drives QUERY and DISCOVERY runs through the mode/sub-state machine.

    Collaborators are injected; the orchestrator itself performs no I/O
    beyond awaiting them.
    """

    def __init__(
        self,
        planner: Planner,
        sql_writer: SqlWriter,
        interpreter: Interpreter,
        pattern_analyzer: PatternAnalyzer,
        decision_maker: DecisionMaker,
        executor: SqlExecutor,
        schema_provider: SchemaProvider,
        control_store: Optional[ControlStore] = None,
        guard: Optional[SqlGuard] = None,
        validator: Optional[MetadataValidator] = None,
        config: Optional[OrchestratorConfig] = None,
        guard_config: Optional[GuardConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.planner = planner
        self.sql_writer = sql_writer
        self.interpreter = interpreter
        self.pattern_analyzer = pattern_analyzer
        self.decision_maker = decision_maker
        self.executor = executor
        self.schema_provider = schema_provider
        self.control_store = control_store or NullControlStore()
        self.config = config or OrchestratorConfig()
        guard_config = guard_config or GuardConfig()
        self.guard = guard or SqlGuard(max_rows=guard_config.max_rows)
        self.validator = validator or MetadataValidator()
        self._clock = clock

        logger.info(
            "Orchestrator initialized",
            max_iterations=self.config.max_iterations,
            max_duration_ms=self.config.max_duration_ms,
            max_queries=self.config.max_queries,
            max_rows=self.guard.max_rows,
            decision_maker=type(decision_maker).__name__,
        )

    # =========================================================================
    # Entry points
    # =========================================================================

    async def run(
        self,
        question: str,
        conversation_history: Optional[Sequence[ConversationTurn]] = None,
        request_permission: Optional[PermissionCallback] = None,
        ask_question: Optional[AskCallback] = None,
    ) -> RunOutcome:
        """
        Answer one question.

        Args:
            question: Natural-language question
            conversation_history: Earlier turns, used by the planner for follow-ups
            request_permission: Asked before every statement; False cancels the run
            ask_question: Used for clarification and the all-rows offer

        Returns:
            RunOutcome with the answer, run logs and executed SQL

        Raises:
            BadRequestError: If the question is empty
            GuardRejectionError, MetadataValidationError: If generated SQL is rejected
            ClarificationUnavailableError: If clarification is needed and ask_question is None
        """
        if not question or not question.strip():
            raise BadRequestError("Question must not be empty")

        trace_id = current_trace_id()
        question = question.strip()
        callbacks = _Callbacks(request_permission, ask_question)

        logger.info(
            "Starting run",
            question_length=len(question),
            history_turns=len(conversation_history or []),
            interactive=ask_question is not None,
            trace_id=trace_id,
        )

        context = await self._initial_context(question, conversation_history)
        state = OrchestratorState.initial(StateCoordinate(Mode.QUERY, QuerySubState.PLAN), context)

        try:
            state = await self._loop(state, callbacks)
        except _RunCancelled as cancelled:
            context = cancelled.args[0] if cancelled.args else state.context
            logger.info(
                "Run cancelled by user",
                queries=len(context.sql_queries),
                iterations=context.iteration_count,
                trace_id=trace_id,
            )
            return RunOutcome(
                answer=CANCELLED_ANSWER,
                logs=self._run_logs(context),
                cancelled=True,
                sql_queries=list(context.sql_queries),
            )

        context = state.context
        answer = self._final_answer(context)
        run_log_id = await self._save_run_log(context)

        logger.info(
            "Run completed",
            iterations=context.iteration_count,
            queries=len(context.sql_queries),
            total_rows=context.total_rows,
            refinements=context.refinement_count,
            elapsed_ms=round(context.elapsed_ms(self._clock())),
            trace_id=trace_id,
        )
        return RunOutcome(
            answer=answer,
            logs=self._run_logs(context, run_log_id),
            cancelled=False,
            sql_queries=list(context.sql_queries),
        )

    async def explore(self, target: str, ask_question: Optional[AskCallback] = None) -> DiscoveryOutcome:
        """
        Explore one table ("orders") or column ("orders status") and learn a semantic.

        A leading "/explore" is accepted. APPROVE needs ask_question.
        """
        table_name, column_name = self._parse_target(target)
        trace_id = current_trace_id()

        logger.info("Starting exploration", table_name=table_name, column_name=column_name, trace_id=trace_id)

        schema = await self.schema_provider.get_schema()
        self._check_exploration_target(schema, table_name, column_name)

        question = f"/explore {table_name}" + (f" {column_name}" if column_name else "")
        context = RunContext(
            question=question,
            start_time=self._clock(),
            schema_tables=list(schema),
            exploration_table=table_name,
            exploration_column=column_name,
        )
        state = OrchestratorState.initial(StateCoordinate(Mode.DISCOVERY, DiscoverySubState.GET_DATA), context)
        state = await self._loop(state, _Callbacks(ask_question=ask_question))

        context = state.context
        suggestion = context.saved_suggestion
        completed = suggestion is not None and suggestion.status is SuggestionStatus.APPROVED

        logger.info(
            "Exploration completed",
            table_name=table_name,
            column_name=column_name,
            discoveries=len(context.discoveries),
            suggestion=suggestion.suggested_name if suggestion else None,
            completed=completed,
            trace_id=trace_id,
        )
        return DiscoveryOutcome(
            discoveries=list(context.discoveries),
            suggestions=[suggestion] if suggestion else [],
            completed=completed,
            logs=self._run_logs(context),
        )

    # =========================================================================
    # Main loop
    # =========================================================================

    async def _loop(self, state: OrchestratorState, callbacks: _Callbacks) -> OrchestratorState:
        trace_id = current_trace_id()

        while True:
            context = state.context.evolve(iteration_count=state.context.iteration_count + 1)
            state = state.with_context(context)

            limit = self._guard_limit(context)
            if limit:
                mode = state.active_mode or state.next_active_mode()
                if mode is None:
                    return state
                logger.warning(
                    "Guard limit reached, forcing termination",
                    reason=limit,
                    mode=mode.value,
                    iteration=context.iteration_count,
                    trace_id=trace_id,
                )
                state = state.apply(StateCoordinate(mode, None))
                continue

            if state.active_mode is None:
                mode = state.next_active_mode()
                if mode is None:
                    return state
                state = state.with_active(mode)
                logger.debug("Mode activated", mode=mode.value, trace_id=trace_id)

            sub_state = state.active_sub_state()
            if sub_state is None:
                state = state.with_active(None)
                continue

            coordinate = StateCoordinate(state.active_mode, sub_state)
            logger.info(
                "Iteration",
                iteration=context.iteration_count,
                coordinate=str(coordinate),
                trace_id=trace_id,
            )

            result = await self._dispatch(coordinate, state.context, callbacks)

            context = state.context
            if result.context_updates:
                context = context.evolve(**result.context_updates)
            if result.needs is not None:
                context = context.evolve(agent_needs=context.agent_needs.merged(result.needs))
            state = state.with_context(context)

            if result.cancelled:
                raise _RunCancelled(context)

            if result.forced and result.requested_next is not None:
                decision = OrchestrationDecision.to(result.requested_next, "Forced transition")
                state = state.with_context(context.evolve(decision_history=context.decision_history + [decision]))
                logger.info(
                    "Forced transition",
                    from_state=str(coordinate),
                    to_state=str(result.requested_next),
                    trace_id=trace_id,
                )
                state = state.apply(result.requested_next)
            else:
                decision = await self.decision_maker.decide(state, result.requested_next, state.context.agent_needs)
                state, next_coordinate = self._finalize_decision(state, coordinate, decision, result.requested_next)
                state = state.apply(next_coordinate)

            if state.query_state is QuerySubState.ANSWER:
                return state

    async def _dispatch(self, coordinate: StateCoordinate, context: RunContext, callbacks: _Callbacks) -> ToolResult:
        match coordinate:
            case StateCoordinate(Mode.QUERY, QuerySubState.PLAN):
                return await self._plan(context)
            case StateCoordinate(Mode.QUERY, QuerySubState.CLARIFICATION):
                return await self._clarify(context, callbacks)
            case StateCoordinate(Mode.QUERY, QuerySubState.EXECUTE):
                return await self._execute(context, callbacks)
            case StateCoordinate(Mode.QUERY, QuerySubState.INTERPRET):
                return await self._interpret(context)
            case StateCoordinate(Mode.QUERY, QuerySubState.ANSWER):
                return ToolResult(requested_next=StateCoordinate(Mode.QUERY, None))
            case StateCoordinate(Mode.DISCOVERY, DiscoverySubState.GET_DATA):
                return await self._get_data(context)
            case StateCoordinate(Mode.DISCOVERY, DiscoverySubState.ANALYZE):
                return await self._analyze(context)
            case StateCoordinate(Mode.DISCOVERY, DiscoverySubState.VALIDATE):
                return await self._validate_discovery(context)
            case StateCoordinate(Mode.DISCOVERY, DiscoverySubState.SUGGEST):
                return await self._suggest(context)
            case StateCoordinate(Mode.DISCOVERY, DiscoverySubState.APPROVE):
                return await self._approve(context, callbacks)
            case StateCoordinate(Mode.DISCOVERY, DiscoverySubState.STORE):
                return await self._store(context)
            case StateCoordinate(Mode.SEMANTIC_STORING, _):
                raise ModeNotImplementedError(
                    "SEMANTIC_STORING mode not yet implemented",
                    details={"sub_state": str(coordinate)},
                )
            case _:
                raise InvalidTransitionError(f"No tool for {coordinate}", details={"coordinate": str(coordinate)})

    # =========================================================================
    # Decisions, guards and refinement policy
    # =========================================================================

    def _guard_limit(self, context: RunContext) -> Optional[str]:
        if context.iteration_count >= self.config.max_iterations:
            return f"Max iterations ({self.config.max_iterations}) reached"
        if context.elapsed_ms(self._clock()) >= self.config.max_duration_ms:
            return f"Max duration ({self.config.max_duration_ms}ms) exceeded"
        if len(context.sql_queries) >= self.config.max_queries:
            return f"Max queries ({self.config.max_queries}) reached"
        return None

    def _finalize_decision(
        self,
        state: OrchestratorState,
        previous: StateCoordinate,
        decision: OrchestrationDecision,
        requested_next: Optional[StateCoordinate] = None,
    ) -> Tuple[OrchestratorState, StateCoordinate]:
        trace_id = current_trace_id()
        next_coordinate = decision.coordinate()
        context = state.context

        # A terminated mode is only re-entered when the tool itself asks for it
        if (
            not next_coordinate.is_terminal
            and state.sub_state_of(next_coordinate.mode) is None
            and next_coordinate != requested_next
        ):
            if requested_next is None:
                raise InvalidTransitionError(
                    f"Mode {next_coordinate.mode.value} has terminated and cannot be re-entered",
                    details={"from_state": str(previous), "to_state": str(next_coordinate)},
                )
            logger.warning(
                "Decision re-enters a terminated mode, following the tool instead",
                decided=str(next_coordinate),
                requested=str(requested_next),
                trace_id=trace_id,
            )
            next_coordinate = requested_next
            decision = OrchestrationDecision.to(
                next_coordinate, f"Mode {decision.next_mode} has terminated", decision.confidence
            )

        limit = self._guard_limit(context)
        if limit:
            mode = state.active_mode or next_coordinate.mode
            logger.warning(
                "Guard limit reached, overriding decision",
                reason=limit,
                decided=str(next_coordinate),
                trace_id=trace_id,
            )
            next_coordinate = StateCoordinate(mode, None)
            decision = OrchestrationDecision.to(next_coordinate, f"Guard limit: {limit}", decision.confidence)

        elif (
            previous == StateCoordinate(Mode.QUERY, QuerySubState.INTERPRET)
            and next_coordinate == StateCoordinate(Mode.QUERY, QuerySubState.PLAN)
        ):
            signature = context.plan.signature() if context.plan else ""
            if signature in context.previous_plans or context.refinement_count >= self.config.max_refinements:
                logger.warning(
                    "Refinement loop detected, forcing answer",
                    refinement_count=context.refinement_count,
                    repeated_plan=signature in context.previous_plans,
                    trace_id=trace_id,
                )
                next_coordinate = StateCoordinate(Mode.QUERY, QuerySubState.ANSWER)
                decision = OrchestrationDecision.to(
                    next_coordinate, "Refinement loop detected; answering with current results", decision.confidence
                )
            else:
                context = context.evolve(
                    previous_plans=context.previous_plans + [signature],
                    refinement_count=context.refinement_count + 1,
                )

        confidence = min(max(decision.confidence, 0.0), 1.0)
        if confidence != decision.confidence:
            decision = decision.model_copy(update={"confidence": confidence})

        logger.info(
            "Decision",
            from_state=str(previous),
            to_state=str(next_coordinate),
            confidence=decision.confidence,
            reasoning=decision.reasoning[:200],
            trace_id=trace_id,
        )
        context = context.evolve(decision_history=context.decision_history + [decision])
        return state.with_context(context), next_coordinate

    # =========================================================================
    # QUERY tools
    # =========================================================================

    async def _plan(self, context: RunContext) -> ToolResult:
        plan = await self.planner.create_plan(
            context.question,
            context.schema_tables,
            previous_steps=context.executed_steps or None,
            conversation_history=context.conversation_history or None,
            semantics_text=context.semantics_text,
        )

        needs_clarification = plan.status is PlanStatus.CLARIFICATION_NEEDED
        needs = AgentNeeds(planner=PlannerNeeds(
            needs_clarification=needs_clarification,
            confidence=0.5 if needs_clarification else 0.8,
            can_proceed=not needs_clarification,
            blocking_issues=list(plan.clarification_questions),
        ))
        next_sub_state = QuerySubState.CLARIFICATION if needs_clarification else QuerySubState.EXECUTE

        return ToolResult(
            data={"plan": plan},
            context_updates={"plan": plan, "current_step_index": 0},
            requested_next=StateCoordinate(Mode.QUERY, next_sub_state),
            needs=needs,
        )

    async def _clarify(self, context: RunContext, callbacks: _Callbacks) -> ToolResult:
        trace_id = current_trace_id()
        questions = list(context.plan.clarification_questions) if context.plan else []

        if callbacks.ask_question is None:
            raise ClarificationUnavailableError(
                "The question needs clarification but no interactive session is available",
                details={"clarification_questions": questions},
            )

        round_number = context.clarification_count + 1
        if round_number > self.config.max_clarification_rounds:
            logger.warning(
                "Clarification limit reached, using best-effort plan",
                rounds=context.clarification_count,
                trace_id=trace_id,
            )
            plan = Plan.single_step(
                context.plan.overall_goal if context.plan else "Answer the user question",
                BEST_EFFORT_STEP,
                BEST_EFFORT_REASONING,
            )
            return ToolResult(
                context_updates={"plan": plan, "current_step_index": 0, "clarification_count": round_number},
                requested_next=StateCoordinate(Mode.QUERY, QuerySubState.EXECUTE),
                forced=True,
            )

        clarified = context.question
        for clarification in questions:
            answer = await callbacks.ask_question(clarification)
            clarified += f" ({clarification} → {answer.strip()})"

        logger.info("Question clarified", round=round_number, questions=len(questions), trace_id=trace_id)
        return ToolResult(
            context_updates={"question": clarified, "clarification_count": round_number},
            requested_next=StateCoordinate(Mode.QUERY, QuerySubState.PLAN),
            forced=True,
        )

    async def _execute(self, context: RunContext, callbacks: _Callbacks) -> ToolResult:
        trace_id = current_trace_id()
        plan = context.plan
        if plan is None or context.current_step_index >= len(plan.steps):
            logger.info("No remaining plan steps", trace_id=trace_id)
            return ToolResult(requested_next=StateCoordinate(Mode.QUERY, QuerySubState.ANSWER))

        step = plan.steps[context.current_step_index]
        sql = await self.sql_writer.generate_sql(
            step,
            context.question,
            context.schema_tables,
            previous_results=context.previous_results or None,
            semantics_text=context.semantics_text,
        )

        guard_result = self.guard.validate(sql)
        if not guard_result.valid:
            logger.warning("SQL rejected by guard", reason=guard_result.reason, sql=sql[:500], trace_id=trace_id)
            raise GuardRejectionError(guard_result.reason or "SQL rejected", details={"sql": sql})
        sanitized = guard_result.sanitized_sql or ""

        validation = await self._validate_metadata(sanitized, context)
        tier = calculate_confidence(validation, context.has_semantics) if validation else ConfidenceTier.MEDIUM

        if callbacks.request_permission is not None:
            approved = await callbacks.request_permission(
                sanitized,
                step.step_number,
                len(plan.steps),
                context.has_semantics,
                tier,
                validation,
            )
            if not approved:
                return ToolResult(success=False, cancelled=True)

        result = await self.executor.execute(sanitized)
        logger.info(
            "Step executed",
            step_number=step.step_number,
            row_count=result.row_count,
            duration_ms=round(result.duration_ms, 2),
            confidence=tier.value,
            trace_id=trace_id,
        )

        executed_step = step.model_copy(update={"sql_query": sanitized, "validation_result": validation})
        updates = {
            "sql_queries": context.sql_queries + [sanitized],
            "rows_returned": context.rows_returned + [result.row_count],
            "durations_ms": context.durations_ms + [result.duration_ms],
            "previous_results": context.previous_results + [StepResult(step_number=step.step_number, result=result)],
            "executed_steps": context.executed_steps + [executed_step],
            "current_step_index": context.current_step_index + 1,
        }
        confidence = validation.confidence if validation else 0.5
        needs = AgentNeeds(
            sql_writer=SqlWriterNeeds(confidence=confidence),
            guard=GuardNeeds(
                is_safe=True,
                validation_issues=list(validation.unknowns) if validation else [],
                confidence=confidence,
            ),
        )

        forced = False
        if await self._offer_all_rows(context, sanitized, result, callbacks):
            full_result = await self._execute_without_limit(sanitized)
            full_sql = _LIMIT_CLAUSE.sub("", sanitized, count=1)
            updates["sql_queries"][-1] = full_sql
            updates["rows_returned"][-1] = full_result.row_count
            updates["durations_ms"][-1] = full_result.duration_ms
            updates["previous_results"][-1] = StepResult(step_number=step.step_number, result=full_result)
            updates["executed_steps"][-1] = executed_step.model_copy(update={"sql_query": full_sql})
            forced = True

        return ToolResult(
            data={"sql": sanitized, "row_count": updates["rows_returned"][-1]},
            context_updates=updates,
            requested_next=StateCoordinate(Mode.QUERY, QuerySubState.INTERPRET),
            needs=needs,
            forced=forced,
        )

    async def _validate_metadata(self, sql: str, context: RunContext) -> Optional[SQLValidationResult]:
        trace_id = current_trace_id()
        metadata = await self._table_metadata()
        if not metadata:
            logger.debug("No table metadata, skipping metadata validation", trace_id=trace_id)
            return None

        validation = self.validator.validate_sql(sql, context.schema_tables, metadata)
        if not validation.valid:
            logger.warning("SQL failed metadata validation", issues=validation.issues, trace_id=trace_id)
            raise MetadataValidationError(
                "SQL metadata validation failed: " + "; ".join(validation.issues),
                details={"issues": validation.issues, "sql": sql},
            )
        return validation

    async def _table_metadata(self) -> List[TableMetadata]:
        try:
            return await self.control_store.all_table_metadata()
        except Exception as e:
            logger.warning("Could not load table metadata", error=str(e), trace_id=current_trace_id())
            return []

    async def _offer_all_rows(
        self,
        context: RunContext,
        sql: str,
        result: SqlResult,
        callbacks: _Callbacks,
    ) -> bool:
        if callbacks.ask_question is None:
            return False
        if not _ALL_ROWS_QUESTION.search(context.question):
            return False
        if result.row_count != self.guard.max_rows or not _LIMIT_CLAUSE.search(sql):
            return False

        answer = await callbacks.ask_question(ALL_ROWS_PROMPT.format(rows=result.row_count))
        return answer.strip().lower() in YES_ANSWERS

    async def _execute_without_limit(self, sql: str) -> SqlResult:
        full_sql = _LIMIT_CLAUSE.sub("", sql, count=1)
        result = await self.executor.execute(full_sql)
        if result.row_count > self.config.large_result_warning_rows:
            logger.warning(
                "Large result fetched without LIMIT",
                row_count=result.row_count,
                threshold=self.config.large_result_warning_rows,
                trace_id=current_trace_id(),
            )
        return result

    async def _interpret(self, context: RunContext) -> ToolResult:
        last = context.last_result
        plan = context.plan
        if last is None or plan is None:
            return ToolResult(requested_next=StateCoordinate(Mode.QUERY, QuerySubState.PLAN))

        step = next(
            (s for s in reversed(context.executed_steps) if s.step_number == last.step_number),
            PlanStep(step_number=last.step_number, description=plan.overall_goal),
        )
        completed_steps = [s.step_number for s in plan.steps[:context.current_step_index]]

        interpretation = await self.interpreter.interpret(
            context.question,
            step,
            last.result,
            plan.steps,
            completed_steps,
            semantics_text=context.semantics_text,
        )

        if interpretation.status is InterpretationStatus.FINAL_ANSWER:
            next_sub_state = QuerySubState.ANSWER
        elif context.current_step_index < len(plan.steps):
            next_sub_state = QuerySubState.EXECUTE
        else:
            next_sub_state = QuerySubState.PLAN

        needs = AgentNeeds(interpreter=InterpreterNeeds(
            needs_refinement=interpretation.next_step if interpretation.status is InterpretationStatus.NEEDS_REFINEMENT else None,
            suggested_next_step=interpretation.next_step,
            confidence=_tier_score(interpretation.confidence),
            is_complete=interpretation.status is InterpretationStatus.FINAL_ANSWER,
        ))
        return ToolResult(
            data={"interpretation": interpretation},
            context_updates={"last_interpretation": interpretation},
            requested_next=StateCoordinate(Mode.QUERY, next_sub_state),
            needs=needs,
        )

    # =========================================================================
    # DISCOVERY tools
    # =========================================================================

    async def _get_data(self, context: RunContext) -> ToolResult:
        table_name = context.exploration_table or ""
        column_name = context.exploration_column
        self._check_exploration_target(context.schema_tables, table_name, column_name)

        if column_name:
            sql = (
                f'SELECT "{column_name}", COUNT(*) AS count FROM "{table_name}" '
                f'GROUP BY "{column_name}" ORDER BY count DESC LIMIT {COLUMN_EXPLORATION_LIMIT}'
            )
        else:
            table = next(t for t in context.schema_tables if t.table_name == table_name)
            columns = ", ".join(f'"{c.name}"' for c in table.columns)
            sql = f'SELECT {columns} FROM "{table_name}" LIMIT {TABLE_EXPLORATION_LIMIT}'

        result = await self.executor.execute(sql)
        logger.info(
            "Exploration data fetched",
            table_name=table_name,
            column_name=column_name,
            row_count=result.row_count,
            trace_id=current_trace_id(),
        )

        step_number = len(context.previous_results) + 1
        return ToolResult(
            context_updates={
                "sql_queries": context.sql_queries + [sql],
                "rows_returned": context.rows_returned + [result.row_count],
                "durations_ms": context.durations_ms + [result.duration_ms],
                "previous_results": context.previous_results + [StepResult(step_number=step_number, result=result)],
            },
            requested_next=StateCoordinate(Mode.DISCOVERY, DiscoverySubState.ANALYZE),
            needs=AgentNeeds(discovery=DiscoveryNeeds(
                can_help=result.row_count > 0,
                suggested_target=table_name,
                ready_to_explore=True,
            )),
        )

    async def _analyze(self, context: RunContext) -> ToolResult:
        last = context.last_result
        if last is None:
            raise InvalidTransitionError("No exploration data to analyze")

        discovery = await self.pattern_analyzer.analyze(
            last.result,
            context.schema_tables,
            context.exploration_table or "",
            context.exploration_column,
        )
        return ToolResult(
            context_updates={"discoveries": context.discoveries + [discovery]},
            requested_next=StateCoordinate(Mode.DISCOVERY, DiscoverySubState.VALIDATE),
            needs=AgentNeeds(discovery=DiscoveryNeeds(
                can_help=discovery.suggested_semantic is not None,
                suggested_target=discovery.table_name,
                ready_to_explore=False,
                confidence=discovery.confidence,
            )),
        )

    async def _validate_discovery(self, context: RunContext) -> ToolResult:
        trace_id = current_trace_id()
        next_coordinate = StateCoordinate(Mode.DISCOVERY, DiscoverySubState.SUGGEST)
        discovery = context.discoveries[-1] if context.discoveries else None

        if discovery is None or not discovery.validation_query:
            logger.info("No validation query, skipping pattern validation", trace_id=trace_id)
            return ToolResult(requested_next=next_coordinate)

        guard_result = self.guard.validate(discovery.validation_query)
        if not guard_result.valid:
            logger.warning(
                "Validation query rejected by guard, skipping pattern validation",
                reason=guard_result.reason,
                trace_id=trace_id,
            )
            return ToolResult(
                requested_next=next_coordinate,
                needs=AgentNeeds(guard=GuardNeeds(is_safe=False, validation_issues=[guard_result.reason or ""])),
            )

        sql = guard_result.sanitized_sql or ""
        result = await self.executor.execute(sql)
        validated = discovery.validated(result.row_count, result.sample(VALIDATION_SAMPLE_ROWS))

        logger.info(
            "Pattern validated",
            pattern=discovery.pattern[:200],
            row_count=result.row_count,
            confidence=validated.confidence,
            trace_id=trace_id,
        )
        return ToolResult(
            context_updates={
                "discoveries": context.discoveries[:-1] + [validated],
                "sql_queries": context.sql_queries + [sql],
                "rows_returned": context.rows_returned + [result.row_count],
                "durations_ms": context.durations_ms + [result.duration_ms],
            },
            requested_next=next_coordinate,
        )

    async def _suggest(self, context: RunContext) -> ToolResult:
        trace_id = current_trace_id()
        discovery = context.discoveries[-1] if context.discoveries else None
        candidate = discovery.suggested_semantic if discovery else None
        if candidate is None:
            raise DecodeError("Pattern analysis produced no semantic suggestion")

        # Rebuilt so requires_expert_review follows the validated confidence
        suggestion = SemanticSuggestion(
            suggested_name=candidate.suggested_name,
            suggested_type=candidate.suggested_type,
            suggested_definition=dict(candidate.suggested_definition),
            learned_from=candidate.learned_from,
            confidence=discovery.confidence,
            evidence={**candidate.evidence, **discovery.evidence},
        )

        saved = await self.control_store.insert_suggestion(suggestion)
        if saved is None:
            logger.warning(
                "Suggestion not persisted, continuing with unsaved suggestion",
                suggested_name=suggestion.suggested_name,
                trace_id=trace_id,
            )
            saved = suggestion
        else:
            logger.info("Suggestion saved", suggestion_id=saved.id, suggested_name=saved.suggested_name, trace_id=trace_id)

        return ToolResult(
            data={"suggestion": saved},
            context_updates={"saved_suggestion": saved},
            requested_next=StateCoordinate(Mode.DISCOVERY, DiscoverySubState.APPROVE),
        )

    async def _approve(self, context: RunContext, callbacks: _Callbacks) -> ToolResult:
        suggestion = context.saved_suggestion
        if callbacks.ask_question is None:
            raise ClarificationUnavailableError(
                "Approving a semantic needs an interactive session",
                details={"suggested_name": suggestion.suggested_name if suggestion else None},
            )

        answer = await callbacks.ask_question(APPROVE_PROMPT)
        approved = answer.strip().lower() in YES_ANSWERS
        logger.info("Suggestion reviewed", approved=approved, trace_id=current_trace_id())

        # A declined suggestion stays pending in the control database
        next_sub_state = DiscoverySubState.STORE if approved else None
        return ToolResult(requested_next=StateCoordinate(Mode.DISCOVERY, next_sub_state))

    async def _store(self, context: RunContext) -> ToolResult:
        suggestion = context.saved_suggestion
        if suggestion is None:
            raise InvalidTransitionError("No suggestion to store")

        await self.control_store.approve_suggestion(suggestion, reviewed_by="user")
        logger.info("Semantic stored", suggested_name=suggestion.suggested_name, trace_id=current_trace_id())
        return ToolResult(
            context_updates={"saved_suggestion": suggestion.model_copy(update={"status": SuggestionStatus.APPROVED})},
            requested_next=StateCoordinate(Mode.DISCOVERY, None),
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _initial_context(
        self,
        question: str,
        conversation_history: Optional[Sequence[ConversationTurn]],
    ) -> RunContext:
        schema = await self.schema_provider.get_schema()

        try:
            semantics = await self.control_store.get_semantics()
            detected_ids = await self.control_store.detect_semantics(question)
        except Exception as e:
            logger.warning("Could not load business semantics", error=str(e), trace_id=current_trace_id())
            semantics, detected_ids = [], []

        return RunContext(
            question=question,
            conversation_history=list(conversation_history or []),
            start_time=self._clock(),
            schema_tables=list(schema),
            detected_semantic_ids=detected_ids,
            semantics_text=self.control_store.format_semantics_for_llm(semantics),
        )

    def _final_answer(self, context: RunContext) -> str:
        interpretation: Optional[Interpretation] = context.last_interpretation
        if (
            interpretation is not None
            and interpretation.status is InterpretationStatus.FINAL_ANSWER
            and interpretation.answer
        ):
            return interpretation.answer

        last = context.last_result
        if last is None:
            return NO_RESULTS_ANSWER
        return (
            f"Query completed. Returned {last.result.row_count} rows. Sample results:\n"
            f"{rows_to_json(last.result.rows, ANSWER_SAMPLE_ROWS)}"
        )

    async def _save_run_log(self, context: RunContext) -> Optional[str]:
        try:
            return await self.control_store.save_run_log(
                context.question,
                context.sql_queries,
                context.rows_returned,
                context.durations_ms,
                context.detected_semantic_ids,
            )
        except Exception as e:
            logger.warning("Failed to save run log", error=str(e), trace_id=current_trace_id())
            return None

    @staticmethod
    def _run_logs(context: RunContext, run_log_id: Optional[str] = None) -> RunLogs:
        return RunLogs(
            steps=len(context.executed_steps),
            queries=len(context.sql_queries),
            total_rows=context.total_rows,
            total_duration_ms=context.total_duration_ms,
            run_log_id=run_log_id,
        )

    @staticmethod
    def _parse_target(target: str) -> Tuple[str, Optional[str]]:
        parts = (target or "").split()
        if parts and parts[0].lower() == "/explore":
            parts = parts[1:]
        if len(parts) not in (1, 2):
            raise BadRequestError(
                "Exploration target must be '<table>' or '<table> <column>'",
                details={"target": target},
            )
        for part in parts:
            if not _IDENTIFIER.match(part):
                raise BadRequestError(f"Invalid identifier: {part}", details={"target": target})
        return parts[0], parts[1] if len(parts) == 2 else None

    @staticmethod
    def _check_exploration_target(
        schema: Sequence[TableSchema],
        table_name: str,
        column_name: Optional[str],
    ) -> None:
        table = next((t for t in schema if t.table_name == table_name), None)
        if table is None:
            raise BadRequestError(f"Unknown table: {table_name}", details={"table_name": table_name})
        if column_name and column_name not in {c.name for c in table.columns}:
            raise BadRequestError(
                f"Unknown column: {table_name}.{column_name}",
                details={"table_name": table_name, "column_name": column_name},
            )


def _tier_score(tier: ConfidenceTier) -> float:
    return {ConfidenceTier.HIGH: 0.9, ConfidenceTier.MEDIUM: 0.6, ConfidenceTier.LOW: 0.3}[tier]
