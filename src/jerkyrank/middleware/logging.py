"""Structured logging for the web and worker processes.

Service modules log through plain ``logging`` with %-style messages; the
HTTP, queue and bus layers log structlog events. Both go through one
processor chain, so a webhook's trail reads as a single stream tagged with
the environment and the process role.
"""

import logging
from typing import Any

import structlog

from jerkyrank.config import Settings

# Chatty at INFO without saying anything about webhooks.
_QUIET_LOGGERS = ("uvicorn.access", "arq.worker", "aiosqlite")


def _process_context(environment: str, role: str) -> structlog.types.Processor:
    def add_process_context(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:  # noqa: ANN401
        event_dict.setdefault("env", environment)
        event_dict.setdefault("role", role)
        return event_dict

    return add_process_context


def setup_logging(settings: Settings, role: str = "web") -> None:
    """Configure structlog and route stdlib records through the same renderer.

    ``role`` is ``web`` for the API process and ``worker`` for the queue
    consumer. Calling this again replaces the handler it installed before.
    """
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if settings.log_format == "json" else structlog.dev.ConsoleRenderer()
    )
    shared: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        _process_context(settings.environment, role),
    ]

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.set_name("jerkyrank")
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
    ))

    root = logging.getLogger()
    for existing in [h for h in root.handlers if h.get_name() == "jerkyrank"]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
