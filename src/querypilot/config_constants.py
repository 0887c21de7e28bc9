from enum import Enum


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class OPENROUTER_LLM_MODELS(str, Enum):
    # OpenAI models
    GPT_4O = "openai/gpt-4o"
    GPT_4O_MINI = "openai/gpt-4o-mini"

    # Anthropic Claude models
    ANTHROPIC_SONNET_45 = "anthropic/claude-4.5-sonnet"
    ANTHROPIC_HAIKU_45 = "anthropic/claude-haiku-4.5"

    # Google Gemini models
    GEMINI_3_FLASH_PREVIEW = "google/gemini-3-flash-preview"


class DecisionStrategy(str, Enum):
    """How the orchestrator chooses its next (mode, sub-state)."""
    LLM = "llm"
    FOLLOW_TOOL = "follow_tool"


OPEN_ROUTER_API_URL = "https://openrouter.ai/api/v1"

# -------------------------
# Control Database Tables
# -------------------------

METADATA_TABLE = "inspected_db_metadata"
SEMANTICS_TABLE = "semantic_entities"
SUGGESTIONS_TABLE = "semantic_suggestions"
RUN_LOGS_TABLE = "run_logs"
