"""
FastAPI dependencies for dependency injection.

Clients are created once by the lifespan and stored on app.state; the
orchestrator and its repositories are assembled per request around them:

Orchestrator
  ├── PlannerRepository, SqlWriterRepository, InterpreterRepository,
  │   PatternAnalyzerRepository, decision maker   (LLMClient)
  ├── SqlExecutionRepository, SchemaRepository    (inspected DatabaseClient)
  └── ControlRepository or NullControlStore       (control DatabaseClient, optional)

Routes should depend on the orchestrator, not infrastructure clients directly.
"""

from typing import Annotated, Optional

from fastapi import Depends, Request

from ..config import Settings
from ..domain.errors import ServiceUnavailableError
from ..domain.ports import ControlStore
from ..infrastructure.database_client import DatabaseClient
from ..infrastructure.llm_client import LLMClient
from ..repositories.control_repository import ControlRepository, NullControlStore
from ..repositories.decision_maker import build_decision_maker
from ..repositories.interpreter import InterpreterRepository
from ..repositories.metadata_validation import MetadataValidator
from ..repositories.pattern_analyzer import PatternAnalyzerRepository
from ..repositories.planner import PlannerRepository
from ..repositories.schema_repository import SchemaRepository
from ..repositories.sql_execution import SqlExecutionRepository
from ..repositories.sql_guard import SqlGuard
from ..repositories.sql_writer import SqlWriterRepository
from ..services.orchestrator import Orchestrator
from ..utils.retry import RetryPolicy


def get_settings(request: Request) -> Settings:
    """
    Dependency to get the settings from app state.

    Raises:
        RuntimeError: If settings are not initialized
    """
    if not hasattr(request.app.state, "settings"):
        raise RuntimeError("Settings not initialized")

    return request.app.state.settings


# Optional dependency getters for health checks
def get_db_client_optional(request: Request) -> Optional[DatabaseClient]:
    """Get the inspected-database client if available, None otherwise."""
    return getattr(request.app.state, "db_client", None)


def get_control_db_client_optional(request: Request) -> Optional[DatabaseClient]:
    """Get the control-database client if configured, None otherwise."""
    return getattr(request.app.state, "control_db_client", None)


def get_llm_client_optional(request: Request) -> Optional[LLMClient]:
    """Get LLM client if available, None otherwise."""
    return getattr(request.app.state, "llm_client", None)


def get_control_store(request: Request) -> ControlStore:
    """
    ControlRepository over the control database, or NullControlStore when
    none is configured or it failed to connect.
    """
    control_db_client = getattr(request.app.state, "control_db_client", None)
    if control_db_client is None or not control_db_client.is_connected():
        return NullControlStore()
    return ControlRepository(control_db_client)


def get_orchestrator(request: Request) -> Orchestrator:
    """
    Dependency to get an Orchestrator wired to the shared clients.

    Usage in routes:
        @app.post("/query")
        async def query(orchestrator: OrchestratorDep):
            outcome = await orchestrator.run(question)

    Raises:
        ServiceUnavailableError: If the database or LLM client is missing or disconnected
        RuntimeError: If settings are not initialized
    """
    settings = get_settings(request)

    db_client: Optional[DatabaseClient] = getattr(request.app.state, "db_client", None)
    if db_client is None or not db_client.is_connected():
        raise ServiceUnavailableError("Database client not initialized")

    llm_client: Optional[LLMClient] = getattr(request.app.state, "llm_client", None)
    if llm_client is None or not llm_client.is_connected():
        raise ServiceUnavailableError("LLM client not initialized")

    retry_policy = RetryPolicy(settings.retry)
    orchestrator_config = settings.orchestrator

    return Orchestrator(
        planner=PlannerRepository(llm_client, retry_policy),
        sql_writer=SqlWriterRepository(llm_client, retry_policy),
        interpreter=InterpreterRepository(
            llm_client,
            retry_policy,
            max_result_rows=orchestrator_config.max_result_rows_for_llm,
        ),
        pattern_analyzer=PatternAnalyzerRepository(llm_client, retry_policy),
        decision_maker=build_decision_maker(orchestrator_config.decision_strategy, llm_client, retry_policy),
        executor=SqlExecutionRepository(db_client, timeout_seconds=settings.database.query_timeout_seconds),
        schema_provider=SchemaRepository(db_client, schema=settings.database.default_schema),
        control_store=get_control_store(request),
        guard=SqlGuard(max_rows=settings.guard.max_rows),
        validator=MetadataValidator(),
        config=orchestrator_config,
        guard_config=settings.guard,
    )


# Type aliases for cleaner dependency injection
OrchestratorDep = Annotated[Orchestrator, Depends(get_orchestrator)]
SettingsDep = Annotated[Settings, Depends(get_settings)]

# Optional client dependencies (used in health checks)
OptionalDatabaseClientDep = Annotated[Optional[DatabaseClient], Depends(get_db_client_optional)]
OptionalControlDatabaseClientDep = Annotated[Optional[DatabaseClient], Depends(get_control_db_client_optional)]
OptionalLLMClientDep = Annotated[Optional[LLMClient], Depends(get_llm_client_optional)]
