from enum import Enum


class Mode(str, Enum):
    """Top-level modes, listed in activation priority order."""
    QUERY = "QUERY"
    DISCOVERY = "DISCOVERY"
    SEMANTIC_STORING = "SEMANTIC_STORING"


class QuerySubState(str, Enum):
    PLAN = "PLAN"
    CLARIFICATION = "CLARIFICATION"
    EXECUTE = "EXECUTE"
    INTERPRET = "INTERPRET"
    ANSWER = "ANSWER"


class DiscoverySubState(str, Enum):
    GET_DATA = "GET_DATA"
    ANALYZE = "ANALYZE"
    VALIDATE = "VALIDATE"
    SUGGEST = "SUGGEST"
    APPROVE = "APPROVE"
    STORE = "STORE"


class SemanticStoringSubState(str, Enum):
    VALIDATE = "VALIDATE"
    APPROVE = "APPROVE"
    STORE = "STORE"


class PlanStatus(str, Enum):
    READY = "READY"
    CLARIFICATION_NEEDED = "CLARIFICATION_NEEDED"


class InterpretationStatus(str, Enum):
    FINAL_ANSWER = "FINAL_ANSWER"
    NEEDS_REFINEMENT = "NEEDS_REFINEMENT"


class ConfidenceTier(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class PerformanceRisk(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class GrainLevel(str, Enum):
    """Row granularity inferred from a query's GROUP BY."""
    ROW_LEVEL = "row_level"
    DAILY = "daily"
    MONTHLY = "monthly"
    CUSTOMER_LEVEL = "customer_level"
    ORDER_LEVEL = "order_level"
    CUSTOM = "custom"
    UNKNOWN = "unknown"


class SuggestionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
