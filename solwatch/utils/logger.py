"""structlog setup for solwatch.

Live runs emit one JSON object per line; ``MODE=dev`` switches to the
colored console renderer. RPC providers put api keys in the endpoint
query string, so every string value that looks like a URL is scrubbed
before rendering.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from typing import Any

import structlog

_SECRET_KEYS = re.compile(
    r"(password|secret|private[-_]?key|api[-_]?key|authorization)",
    re.IGNORECASE,
)
_URL_API_KEY = re.compile(r"(api[-_]?key=)[^&\s]+", re.IGNORECASE)
# Token-like path segments, e.g. https://host/<token>/ or /v2/<token>
_URL_PATH_TOKEN = re.compile(r"(?<=[^/:]/)[A-Za-z0-9_-]{20,}(?=[/?#]|$)")
_MASK = "***REDACTED***"

# Third-party loggers kept at WARNING regardless of the requested level
_QUIET_LOGGERS = ("aiohttp", "asyncio")


def mask_url(url: str) -> str:
    """Hide ``api-key=...`` query values and token-like path segments."""
    return _URL_PATH_TOKEN.sub(_MASK, _URL_API_KEY.sub(r"\1" + _MASK, url))


def _mask_secrets(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    for key, value in list(event_dict.items()):
        if _SECRET_KEYS.search(key):
            event_dict[key] = _MASK
        elif isinstance(value, str) and ("=" in value or "://" in value):
            event_dict[key] = mask_url(value)
    return event_dict


def _renderer(json_output: bool) -> structlog.types.Processor:
    if json_output:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=True)


def setup_logging(log_level: str = "INFO", json_output: bool | None = None) -> None:
    """Route structlog through stdlib logging to stdout.

    Args:
        log_level: Root level name; unknown names fall back to INFO.
        json_output: Force the renderer. None picks JSON unless MODE=dev.
    """
    if json_output is None:
        json_output = os.getenv("MODE", "live") != "dev"

    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        _mask_secrets,
    ]
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(json_output),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(module: str) -> structlog.stdlib.BoundLogger:
    """Logger with ``module=<module>`` bound on every event."""
    return structlog.get_logger(module=module)
