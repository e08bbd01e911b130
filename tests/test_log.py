"""Tests for scholar/log.py: logging setup for the CLI and the HTTP server."""

import logging
import re

from scholar.log import HealthPollFilter, setup_logging


def _record(name: str, msg: str) -> logging.LogRecord:
    return logging.LogRecord(name, logging.INFO, __file__, 0, msg, None, None)


# ---------------------------------------------------------------------------
# scholar logger  (logger state reset handled by conftest._reset_scholar_logger)
# ---------------------------------------------------------------------------


def test_setup_logging_levels():
    setup_logging()
    assert logging.getLogger("scholar").level == logging.INFO
    setup_logging(verbose=True)
    assert logging.getLogger("scholar").level == logging.DEBUG


def test_setup_logging_replaces_handlers_on_second_call(tmp_path):
    log_file = tmp_path / "deep" / "nested" / "run.log"
    setup_logging(log_file=log_file)
    setup_logging(log_file=log_file)
    logger = logging.getLogger("scholar")
    assert len(logger.handlers) == 2
    assert len([h for h in logger.handlers if isinstance(h, logging.FileHandler)]) == 1
    assert log_file.exists()
    assert logger.propagate is False


def test_module_logger_output_names_the_module(capsys):
    setup_logging()
    logging.getLogger("scholar.memory").info("sentinel-message")
    err = capsys.readouterr().err
    assert re.search(r"\d{2}:\d{2}:\d{2}", err), f"No timestamp found in: {err!r}"
    assert "scholar.memory: sentinel-message" in err


def test_httpx_request_lines_hidden_unless_verbose():
    setup_logging()
    assert logging.getLogger("httpx").level == logging.WARNING
    setup_logging(verbose=True)
    assert logging.getLogger("httpx").level == logging.DEBUG


# ---------------------------------------------------------------------------
# uvicorn routing
# ---------------------------------------------------------------------------


def test_uvicorn_loggers_untouched_outside_serve():
    setup_logging()
    assert logging.getLogger("uvicorn").handlers == []


def test_serve_routes_uvicorn_through_the_same_handlers(tmp_path, capsys):
    log_file = tmp_path / "serve.log"
    setup_logging(log_file=log_file, server=True)

    assert logging.getLogger("uvicorn").handlers == logging.getLogger("scholar").handlers
    logging.getLogger("uvicorn.error").info("Application startup complete.")
    logging.getLogger("uvicorn.access").info('127.0.0.1 - "POST /api/chat HTTP/1.1" 200')
    for h in logging.getLogger("uvicorn").handlers:
        h.flush()

    err = capsys.readouterr().err
    assert "uvicorn.error: Application startup complete." in err
    assert "POST /api/chat" in err
    assert "POST /api/chat" in log_file.read_text(encoding="utf-8")


def test_serve_drops_health_polls_from_access_log(capsys):
    setup_logging(server=True)
    setup_logging(server=True)
    access = logging.getLogger("uvicorn.access")
    assert len([f for f in access.filters if isinstance(f, HealthPollFilter)]) == 1

    access.info('127.0.0.1 - "GET /api/ollama/health HTTP/1.1" 200')
    access.info('127.0.0.1 - "GET /api/memory/s1 HTTP/1.1" 200')
    err = capsys.readouterr().err
    assert "/api/ollama/health" not in err
    assert "/api/memory/s1" in err


def test_health_poll_filter():
    f = HealthPollFilter()
    assert f.filter(_record("uvicorn.access", '"GET /api/ollama/health HTTP/1.1" 200')) is False
    assert f.filter(_record("uvicorn.access", '"GET /api/chat?q=x HTTP/1.1" 200')) is True
