"""structlog setup for the chart data API.

All modules log snake_case events through ``get_logger(__name__)``. Route
handlers wrap their work in ``request_context`` so every event logged while
serving a request (resolver, cache, CoinGecko client) carries the symbol and
route without passing them down explicitly.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Literal

import structlog

LogFormat = Literal["console", "json"]

# Third-party loggers that are chatty at INFO (httpx logs every request)
_NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite", "uvicorn.access")


def setup_logging(log_level: str = "INFO", log_format: LogFormat = "console") -> None:
    """Route structlog and stdlib logging through one handler.

    ``console`` renders coloured key/value lines for development; ``json``
    emits one object per line for log shipping.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer: structlog.types.Processor
    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    noisy_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(noisy_level)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def request_context(**values: Any) -> Iterator[None]:
    """Bind ``values`` to every event logged inside the block, across awaits."""
    with structlog.contextvars.bound_contextvars(**values):
        yield
