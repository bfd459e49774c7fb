"""Structured logging shared by the spindle packages.

Loggers are structlog wrappers around standard library loggers, so the host
application's handlers and levels decide what gets shown. Nothing global is
configured until the application calls ``configure_logging``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import structlog

from spindle_core.config import get_settings

if TYPE_CHECKING:
    from structlog.typing import EventDict, WrappedLogger

    from spindle_core.config import Settings

PACKAGE_LOGGERS = ("spindle_core", "spindle_loop")

_renderer: Any = structlog.dev.ConsoleRenderer(colors=False)


def _render(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> Any:  # noqa: ANN401
    return _renderer(logger, method_name, event_dict)


_PROCESSORS: list[Any] = [
    structlog.stdlib.filter_by_level,
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.processors.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
    _render,
]


def configure_logging(
    settings: Settings | None = None,
    *,
    loggers: tuple[str, ...] = PACKAGE_LOGGERS,
    install_handler: bool = True,
) -> None:
    """Applies ``log_level`` and ``log_format`` from settings.

    JSON lines when ``log_format`` is ``json``, plain console output
    otherwise. The level is set on the given standard library loggers only,
    and a handler is added to the root logger only when it has none yet.
    """
    global _renderer  # noqa: PLW0603

    settings = settings if settings is not None else get_settings()
    level = logging.getLevelNamesMapping().get(settings.log_level.upper())
    if level is None:
        msg = f"Unknown log level: {settings.log_level}"
        raise ValueError(msg)

    if settings.log_format == "json":
        _renderer = structlog.processors.JSONRenderer()
    else:
        _renderer = structlog.dev.ConsoleRenderer(colors=False)

    for name in loggers:
        logging.getLogger(name).setLevel(level)

    if install_handler:
        # No-op when the application already installed handlers.
        logging.basicConfig(format="%(message)s")


def get_logger(name: str | None = None) -> Any:  # noqa: ANN401
    """Gets a structlog logger backed by the standard library logger ``name``."""
    return structlog.wrap_logger(
        logging.getLogger(name),
        processors=_PROCESSORS,
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
