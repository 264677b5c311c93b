import logging

import structlog
from structlog.contextvars import bind_contextvars, merge_contextvars, unbind_contextvars

from studygraph.core.settings import settings


def bind_context(**kwargs) -> None:
    bind_contextvars(**{k: v for k, v in kwargs.items() if v is not None})


def unbind_context(*keys: str) -> None:
    unbind_contextvars(*keys)


def add_generation_context(_, __, event_dict):
    """
    Processor that nests generation identifiers under 'trace' and renames
    'event' to the canonical 'message' field.
    """
    trace = {
        "generation_id": event_dict.pop("generation_id", None),
        "subject_id": event_dict.pop("subject_id", None),
        "correlation_id": event_dict.pop("correlation_id", None),
    }

    existing_trace = event_dict.get("trace", {})
    if isinstance(existing_trace, dict):
        trace.update(existing_trace)

    event_dict["trace"] = {k: v for k, v in trace.items() if v is not None}

    if "event" in event_dict:
        event_dict["message"] = event_dict.pop("event")

    return event_dict


def configure_structlog(log_level: str | None = None, *, json_output: bool = True):
    """
    Configures structlog to replace standard logging with Canonical JSON.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(" [%(asctime)s] [%(levelname)s] %(name)s: %(message)s"))

    resolved_level = str(log_level or settings.LOG_LEVEL or "INFO").upper()
    level = getattr(logging, resolved_level, logging.INFO)

    logging.basicConfig(format="%(message)s", level=level, handlers=[handler], force=True)

    processors = [
        merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_output:
        processors += [add_generation_context, structlog.processors.JSONRenderer()]
    else:
        # ConsoleRenderer needs the 'event' key untouched.
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
