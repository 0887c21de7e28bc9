"""
Shared fixtures for unit tests.

The in-memory fakes live in fakes.py so test modules can import them directly.
"""

from typing import Any, List

import pytest

from querypilot.config import GuardConfig, OrchestratorConfig
from querypilot.config_constants import DecisionStrategy
from querypilot.domain.schema import TableMetadata, TableSchema
from querypilot.repositories.decision_maker import FollowToolDecisionMaker
from querypilot.services.orchestrator import Orchestrator

from fakes import (
    FakeControlStore,
    FakeExecutor,
    FakeInterpreter,
    FakePatternAnalyzer,
    FakePlanner,
    FakeSchemaProvider,
    FakeSqlWriter,
    make_metadata,
    make_schema,
)


@pytest.fixture
def schema() -> List[TableSchema]:
    return make_schema()


@pytest.fixture
def metadata() -> List[TableMetadata]:
    return make_metadata()


@pytest.fixture
def build_orchestrator():
    """
    Factory for an Orchestrator over fakes.

    Any collaborator can be overridden by keyword; the decision maker
    defaults to following each tool's request.
    """

    def _build(**overrides: Any) -> Orchestrator:
        parts = {
            "planner": FakePlanner(),
            "sql_writer": FakeSqlWriter(),
            "interpreter": FakeInterpreter(),
            "pattern_analyzer": FakePatternAnalyzer(),
            "decision_maker": FollowToolDecisionMaker(),
            "executor": FakeExecutor(),
            "schema_provider": FakeSchemaProvider(),
            "control_store": FakeControlStore(),
            "config": OrchestratorConfig(decision_strategy=DecisionStrategy.FOLLOW_TOOL),
            "guard_config": GuardConfig(),
        }
        parts.update(overrides)
        return Orchestrator(**parts)

    return _build
