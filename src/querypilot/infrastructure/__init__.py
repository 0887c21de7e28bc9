"""
Infrastructure layer for external integrations.

Clients for the PostgreSQL databases (inspected and control) and the
OpenRouter model provider.
"""

from .database_client import DatabaseClient
from .llm_client import LLMClient

__all__ = ["DatabaseClient", "LLMClient"]
