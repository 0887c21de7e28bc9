"""
API request models for QueryPilot.

All fields include descriptions that appear in Swagger/OpenAPI documentation.
"""

from typing import List

from pydantic import BaseModel, Field

from .state import ConversationTurn


class QueryRequest(BaseModel):
    """Request model for the question-answering endpoint."""

    question: str = Field(
        ...,
        description="Natural language question about the inspected database. "
                    "Example: 'How many orders were delivered last month?'",
        min_length=1,
        max_length=2000,
        json_schema_extra={"example": "How many orders were delivered last month?"}
    )
    conversation_history: List[ConversationTurn] = Field(
        default_factory=list,
        description="Earlier question/answer turns, oldest first. "
                    "Lets follow-ups such as 'group them by country' refer to the previous turn."
    )


class ExploreRequest(BaseModel):
    """Request model for table or column exploration."""

    target: str = Field(
        ...,
        description="'<table>' to sample a table, or '<table> <column>' to read a column's "
                    "value distribution. A leading '/explore' is accepted.",
        min_length=1,
        max_length=200,
        json_schema_extra={"example": "orders status"}
    )
