import json
import logging
import inspect
from typing import Any, Optional

import structlog

from querypilot.config import get_settings

# Module-level flag to prevent multiple configuration
_logging_configured = False


def _add_module_info(logger: Any, method_name: str, event_dict: structlog.types.EventDict) -> structlog.types.EventDict:
    """
    Add a short 'module' field next to the full logger name.

    "querypilot.services.orchestrator" becomes "services.orchestrator".
    """
    logger_name = event_dict.get('logger', 'unknown')

    if logger_name.startswith('querypilot.'):
        module_parts = logger_name.split('.')
        event_dict['module'] = '.'.join(module_parts[-2:])
    else:
        event_dict['module'] = logger_name

    return event_dict


def _pretty_json_renderer(logger: Any, method_name: str, event_dict: structlog.types.EventDict) -> str:
    """Render every record as indented JSON."""
    return json.dumps(event_dict, indent=2, ensure_ascii=False, default=str)


def configure_logging(log_level: Optional[str] = None) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Explicit level name; when omitted it is read from settings
    """

    global _logging_configured

    if _logging_configured:
        return
    _logging_configured = True

    if log_level is None:
        log_level = get_settings().app.log_level.value

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level),
        handlers=[logging.StreamHandler()]
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            _add_module_info,
            _pretty_json_renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a configured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("Plan created", steps=3, trace_id="abc-123")
    """
    return structlog.get_logger(name)


def get_module_logger() -> structlog.stdlib.BoundLogger:
    """
    Get a logger named after the calling module.

    Falls back to 'unknown' if frame inspection fails.
    """
    module_name = 'unknown'
    frame = None

    try:
        frame = inspect.currentframe()
        if frame is not None and frame.f_back is not None:
            module_name = frame.f_back.f_globals.get('__name__', 'unknown')
    except (AttributeError, RuntimeError):
        # Some REPLs do not expose frames
        pass
    finally:
        if frame is not None:
            del frame

    return get_logger(module_name)
