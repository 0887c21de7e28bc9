"""
Exception hierarchy for QueryPilot.

Every exception carries a machine-readable error code and the HTTP status the
API layer returns for it.

Exception Categories:
- 4xx Client Errors: BadRequestError, GuardRejectionError, MetadataValidationError,
  ClarificationUnavailableError
- 5xx Server Errors: DatabaseError, LLMError, DecodeError, QueryExecutionError,
  InvalidTransitionError, ModeNotImplementedError

Usage:
    raise GuardRejectionError("Dangerous keyword detected: DROP", details={"sql": sql})
"""

from typing import Any, Dict, Optional


class QueryPilotException(Exception):
    """
    Base exception for all QueryPilot errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable error code (e.g., "GUARD_REJECTION")
        http_status: HTTP status code to return (default: 500)
        details: Optional dictionary with additional error context
    """

    error_code: str = "INTERNAL_ERROR"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
        http_status: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code
        if http_status:
            self.http_status = http_status

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        result: Dict[str, Any] = {
            "error_code": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Client Errors (4xx)
# =============================================================================


class BadRequestError(QueryPilotException):
    """
    Raised when the request is malformed.

    Examples:
        - Empty question
        - Exploration target naming an unknown table or column
    """

    error_code = "BAD_REQUEST"
    http_status = 400


class ClarificationUnavailableError(QueryPilotException):
    """
    Raised when the run needs an answer from the user but no ask callback exists.

    The HTTP endpoints run non-interactively, so an ambiguous question ends here.
    """

    error_code = "CLARIFICATION_REQUIRED"
    http_status = 400


class GuardRejectionError(QueryPilotException):
    """
    Raised when SqlGuard rejects a generated statement.

    The guard's reason is the message, verbatim.
    """

    error_code = "GUARD_REJECTION"
    http_status = 422


class MetadataValidationError(QueryPilotException):
    """
    Raised when a statement references tables or columns the schema lacks.

    details["issues"] holds the validator's issue list.
    """

    error_code = "METADATA_VALIDATION_ERROR"
    http_status = 422


# =============================================================================
# Configuration Errors (5xx)
# =============================================================================


class ConfigurationError(QueryPilotException):
    error_code = "CONFIGURATION_ERROR"
    http_status = 500


# =============================================================================
# Database Errors (5xx)
# =============================================================================


class DatabaseError(QueryPilotException):
    """Base class for database-related errors."""

    error_code = "DATABASE_ERROR"
    http_status = 503


class DatabaseConnectionError(DatabaseError):
    """
    Raised when the pool cannot be created or a connection cannot be acquired.
    """

    error_code = "DATABASE_CONNECTION_ERROR"
    http_status = 503


class DatabaseQueryError(DatabaseError):
    """Raised when a statement fails inside the database client."""

    error_code = "DATABASE_QUERY_ERROR"
    http_status = 500


class QueryExecutionError(QueryPilotException):
    """
    Raised when a validated statement fails at execution time.

    details["sql"] carries the failing statement.
    """

    error_code = "QUERY_EXECUTION_ERROR"
    http_status = 500


# =============================================================================
# LLM Errors (5xx)
# =============================================================================


class LLMError(QueryPilotException):
    """
    Raised when a model call fails.

    Examples:
        - Provider unreachable
        - Input exceeds the configured size
    """

    error_code = "LLM_ERROR"
    http_status = 503


class TransientProviderError(LLMError):
    """
    Raised when retries are exhausted on a rate-limited or overloaded provider.
    """

    error_code = "PROVIDER_OVERLOADED"
    http_status = 503


class DecodeError(QueryPilotException):
    """
    Raised when a model reply cannot be decoded into the expected shape
    and the caller has no fallback.
    """

    error_code = "MODEL_DECODE_ERROR"
    http_status = 502


# =============================================================================
# Orchestration Errors (5xx)
# =============================================================================


class InvalidTransitionError(QueryPilotException):
    """
    Raised when a decision names a sub-state outside its mode's set.
    """

    error_code = "INVALID_TRANSITION"
    http_status = 500


class ModeNotImplementedError(QueryPilotException):
    """Raised when a mode without tools is dispatched."""

    error_code = "MODE_NOT_IMPLEMENTED"
    http_status = 501


class ServiceUnavailableError(QueryPilotException):
    """
    Raised when a required client was not initialized at startup.
    """

    error_code = "SERVICE_UNAVAILABLE"
    http_status = 503
