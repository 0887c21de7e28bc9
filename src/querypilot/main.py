"""
Main FastAPI application for QueryPilot.

Sets up logging, tracing and error handling middleware, creates the shared
clients in the lifespan, and exposes the question-answering and exploration
endpoints.
"""

import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Union

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.dependencies import (
    OptionalControlDatabaseClientDep,
    OptionalDatabaseClientDep,
    OptionalLLMClientDep,
    OrchestratorDep,
    SettingsDep,
)
from .api.middleware import logging_middleware, register_exception_handlers, trace_id_middleware
from .config import get_settings
from .domain.requests import ExploreRequest, QueryRequest
from .domain.responses import ExploreResponse, HealthResponse, QueryResponse
from .infrastructure.database_client import DatabaseClient
from .infrastructure.llm_client import LLMClient
from .utils.logging import configure_logging, get_module_logger
from .utils.tracing import get_trace_id

VERSION = "0.1.0"

# Configure logging on module import
configure_logging()
logger = get_module_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting QueryPilot API server", version=VERSION)

    settings = get_settings()
    app.state.settings = settings
    logger.info("Settings loaded successfully")

    db_client = DatabaseClient(settings.database, name="inspected")
    try:
        await db_client.connect()
        logger.info("Database client connected successfully")
    except Exception as e:
        logger.error(f"Failed to connect database client: {e}")
        # Continue without database - health check will report status
    app.state.db_client = db_client

    if settings.control_database is not None:
        control_db_client = DatabaseClient(settings.control_database, name="control")
        try:
            await control_db_client.connect()
            logger.info("Control database client connected successfully")
        except Exception as e:
            logger.error(f"Failed to connect control database client: {e}")
            # Runs continue with no metadata and no semantics
        app.state.control_db_client = control_db_client
    else:
        logger.info("No control database configured; metadata validation and semantics disabled")

    llm_client = LLMClient(settings.llm)
    try:
        await llm_client.connect()
        logger.info("LLM client connected successfully")
    except Exception as e:
        logger.error(f"Failed to connect LLM client: {e}")
    app.state.llm_client = llm_client

    yield

    logger.info("Shutting down QueryPilot API server")

    if hasattr(app.state, "db_client"):
        await app.state.db_client.close()
        logger.info("Database client closed")

    if hasattr(app.state, "control_db_client"):
        await app.state.control_db_client.close()
        logger.info("Control database client closed")

    if hasattr(app.state, "llm_client"):
        await app.state.llm_client.close()
        logger.info("LLM client closed")


app = FastAPI(
    title="QueryPilot API",
    description="Natural-language questions answered against PostgreSQL by a guarded, multi-step orchestrator",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Last registered = first executed
app.middleware("http")(logging_middleware)
app.middleware("http")(trace_id_middleware)

register_exception_handlers(app)


async def _decline(prompt: str) -> str:
    """Non-interactive answer to approval prompts: leave the suggestion pending."""
    return "n"


@app.get("/", tags=["Root"])
async def root(settings: SettingsDep) -> Dict[str, Union[str, None]]:
    trace_id = get_trace_id()
    logger.info("Root endpoint accessed", trace_id=trace_id)

    return {
        "message": "QueryPilot API",
        "version": VERSION,
        "trace_id": trace_id,
        "log_level": settings.app.log_level,
    }


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health(
    db_client: OptionalDatabaseClientDep,
    control_db_client: OptionalControlDatabaseClientDep,
    llm_client: OptionalLLMClientDep,
) -> HealthResponse:
    """
    Health check with the status of each client.

    The control database is optional: "not_configured" does not degrade the
    overall status.
    """
    trace_id = get_trace_id()
    logger.info("Health check endpoint accessed", trace_id=trace_id)

    database_status = "not_configured"
    if db_client:
        db_health = await db_client.health_check()
        database_status = db_health.get("status", "unknown")

    control_status = "not_configured"
    if control_db_client:
        control_health = await control_db_client.health_check()
        control_status = control_health.get("status", "unknown")

    llm_status = "not_configured"
    if llm_client:
        llm_status = "healthy" if llm_client.is_connected() else "unhealthy"

    overall_status = "healthy" if (
        database_status == "healthy"
        and llm_status == "healthy"
        and control_status in ("healthy", "not_configured")
    ) else "degraded"

    return HealthResponse(
        status=overall_status,
        timestamp=datetime.now(timezone.utc),
        version=VERSION,
        database_status=database_status,
        control_database_status=control_status,
        llm_service_status=llm_status,
    )


@app.post("/query", response_model=QueryResponse, tags=["Query"])
async def query(request: QueryRequest, orchestrator: OrchestratorDep) -> QueryResponse:
    """
    Answer a natural-language question.

    Runs non-interactively: there is no permission prompt, and a question
    that needs clarification fails with CLARIFICATION_REQUIRED (400).

    **Possible Errors**:
    - 400: Empty question, or clarification needed
    - 422: Generated SQL rejected by the guard or by metadata validation
    - 500: Query execution failed
    - 503: Database or model provider unavailable
    """
    trace_id = get_trace_id()
    start = time.monotonic()

    logger.info(
        "Query requested",
        question_length=len(request.question),
        history_turns=len(request.conversation_history),
        trace_id=trace_id,
    )

    outcome = await orchestrator.run(request.question, conversation_history=request.conversation_history)

    total_time_ms = (time.monotonic() - start) * 1000
    logger.info(
        "Query completed",
        queries=outcome.logs.queries,
        total_rows=outcome.logs.total_rows,
        total_time_ms=round(total_time_ms, 2),
        trace_id=trace_id,
    )

    return QueryResponse(
        trace_id=trace_id,
        answer=outcome.answer,
        cancelled=outcome.cancelled,
        sql_queries=outcome.sql_queries,
        logs=outcome.logs,
        total_time_ms=round(total_time_ms, 2),
    )


@app.post("/explore", response_model=ExploreResponse, tags=["Discovery"])
async def explore(request: ExploreRequest, orchestrator: OrchestratorDep) -> ExploreResponse:
    """
    Explore a table or column and suggest a business semantic.

    Approval needs an interactive session, so suggestions returned here stay
    pending in the control database.
    """
    trace_id = get_trace_id()
    start = time.monotonic()

    logger.info("Exploration requested", target=request.target, trace_id=trace_id)

    outcome = await orchestrator.explore(request.target, ask_question=_decline)

    total_time_ms = (time.monotonic() - start) * 1000
    return ExploreResponse(
        trace_id=trace_id,
        discoveries=outcome.discoveries,
        suggestions=outcome.suggestions,
        completed=outcome.completed,
        logs=outcome.logs,
        total_time_ms=round(total_time_ms, 2),
    )
