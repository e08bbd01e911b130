"""Logging setup for the CLI and the HTTP server.

Call ``setup_logging`` once from an entry point.  Every module obtains a
child logger via ``logging.getLogger(__name__)`` and lets records propagate to
the ``"scholar"`` logger configured here.  When serving, uvicorn's loggers are
routed through the same handlers so request lines and turn logs share one
format and one file.
"""

import logging
import sys
from pathlib import Path

_FMT = "%(asctime)s  %(levelname)-7s %(name)s: %(message)s"
_DATE = "%H:%M:%S"

# uvicorn.error and uvicorn.access propagate into "uvicorn" when uvicorn is
# started with log_config=None.
_SERVER_LOGGER = "uvicorn"
_SERVER_CHILDREN = ("uvicorn.error", "uvicorn.access")

# One INFO line per HTTP request made by the openai SDK.
_NOISY_LOGGERS = ("httpx", "httpcore")

HEALTH_POLL_PATH = "/api/ollama/health"


class HealthPollFilter(logging.Filter):
    """Drop the UI's periodic backend health polls from the access log."""

    def filter(self, record: logging.LogRecord) -> bool:
        return f"GET {HEALTH_POLL_PATH}" not in record.getMessage()


def _build_handlers(log_file: Path | None) -> list[logging.Handler]:
    fmt = logging.Formatter(_FMT, datefmt=_DATE)
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(fmt)
    handlers: list[logging.Handler] = [console]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setFormatter(fmt)
        handlers.append(fh)
    return handlers


def _install(logger: logging.Logger, handlers: list[logging.Handler], level: int) -> None:
    for h in logger.handlers[:]:
        logger.removeHandler(h)
    for h in handlers:
        logger.addHandler(h)
    logger.setLevel(level)
    logger.propagate = False


def setup_logging(verbose: bool = False, log_file: Path | None = None, server: bool = False) -> None:
    """Configure the ``scholar`` logger and, for ``serve``, uvicorn's loggers.

    Args:
        verbose:  DEBUG instead of INFO (per-message token costs, retry delays,
                  stream framing detail).  Also lets httpx request lines through.
        log_file: Also write to this file.  Parent directories are created.
        server:   Attach the same handlers to uvicorn's loggers.  Pair with
                  ``uvicorn.run(..., log_config=None)`` so uvicorn does not
                  install its own.

    Calling this function again replaces the previous handlers.
    """
    level = logging.DEBUG if verbose else logging.INFO
    handlers = _build_handlers(log_file)
    _install(logging.getLogger("scholar"), handlers, level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if verbose else logging.WARNING)

    if server:
        _install(logging.getLogger(_SERVER_LOGGER), handlers, level)
        for name in _SERVER_CHILDREN:
            child = logging.getLogger(name)
            for h in child.handlers[:]:
                child.removeHandler(h)
            child.setLevel(logging.NOTSET)
            child.propagate = True
        access = logging.getLogger("uvicorn.access")
        if not any(isinstance(f, HealthPollFilter) for f in access.filters):
            access.addFilter(HealthPollFilter())
