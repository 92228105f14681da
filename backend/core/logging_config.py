"""Structured logging for the engine and its HTTP surface.

Every record goes through structlog's stdlib bridge so engine loggers
(``workflow.*``, ``tasks.*``) and third-party loggers share one handler and
one renderer: colored console output in development, JSON otherwise.
"""

import logging
import sys
from typing import Optional

import structlog
from app.config import Settings, get_settings

# Package loggers that get their own level from settings
ENGINE_LOGGERS = ("workflow", "core")
TOOL_LOGGERS = ("tasks",)

QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "asyncio")


def _level(name: Optional[str], fallback: int) -> int:
    if not name:
        return fallback
    return getattr(logging, name.upper(), fallback)


def _service_context(settings: Settings):
    """Stamp each event with the service name and environment."""

    def processor(logger, method_name, event_dict):
        event_dict.setdefault("service", settings.APP_NAME)
        event_dict.setdefault("environment", settings.ENVIRONMENT)
        return event_dict

    return processor


def build_renderer(settings: Settings):
    if settings.is_development or settings.LOG_FORMAT == "text":
        return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    return structlog.processors.JSONRenderer()


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Route structlog and stdlib logging through a single stdout handler.

    ``LOG_LEVEL`` sets the root level. ``ENGINE_LOG_LEVEL`` and
    ``TOOL_LOG_LEVEL`` override it for the engine and tool packages, so step
    traces can be turned up without turning up everything else.
    """
    settings = settings or get_settings()

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        _service_context(settings),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            build_renderer(settings),
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_level = _level(settings.LOG_LEVEL, logging.INFO)
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(root_level)

    for name in ENGINE_LOGGERS:
        logging.getLogger(name).setLevel(_level(settings.ENGINE_LOG_LEVEL, root_level))
    for name in TOOL_LOGGERS:
        logging.getLogger(name).setLevel(_level(settings.TOOL_LOG_LEVEL, root_level))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
