"""Shared pytest fixtures for the pdf-scholar test suite."""

import asyncio
import logging
from unittest.mock import AsyncMock, patch

import pytest

from scholar.llm import model_matches
from scholar.models import Config, Message
from scholar.orchestrator import AppContext


# ---------------------------------------------------------------------------
# Logger isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_scholar_logger():
    """Clear the loggers ``setup_logging`` touches between tests.

    Tests that call ``main()`` attach handlers and set ``propagate=False``.
    Without this fixture the state leaks into subsequent tests and breaks
    ``caplog`` capture.
    """
    _reset_loggers()
    yield
    _reset_loggers()


def _reset_loggers():
    for name in ("scholar", "uvicorn", "uvicorn.error", "uvicorn.access", "httpx", "httpcore"):
        logger = logging.getLogger(name)
        for h in logger.handlers[:]:
            h.close()
            logger.removeHandler(h)
        for f in logger.filters[:]:
            logger.removeFilter(f)
        logger.setLevel(logging.NOTSET)
        logger.propagate = True


# ---------------------------------------------------------------------------
# Tokenizer isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _offline_tokenizer():
    """Keep tiktoken from downloading rank files; estimates use the heuristic.

    Tests that exercise the tiktoken path patch ``get_encoding`` themselves.
    """
    with patch(
        "scholar.tokens.tiktoken.get_encoding",
        side_effect=RuntimeError("offline test run"),
    ):
        yield


# ---------------------------------------------------------------------------
# Config and fake backend
# ---------------------------------------------------------------------------

MODEL = "qwen2.5vl:3b"

REPLY = "# Photosynthesis\nThe page shows a leaf.\n## Light reactions\nDetails."


@pytest.fixture
def config() -> Config:
    """Config with zero backoff so retry tests do not sleep."""
    return Config(
        model=MODEL,
        retry_max_attempts=3,
        retry_initial_delay_ms=0,
        retry_max_delay_ms=0,
        max_token_memory=1000,
        token_buffer_threshold=900,
    )


class FakeStream:
    """An open streamed response; an exception among the fragments is raised in place."""

    def __init__(self, fragments=()):
        self.fragments = list(fragments)
        self.closed = False

    async def close(self):
        self.closed = True


class FakeClient:
    """Stands in for ``OllamaClient``; every backend call is an ``AsyncMock``."""

    def __init__(self, models=(MODEL,), reply=REPLY, fragments=()):
        self.model = MODEL
        self.base_url = "http://localhost:11434"
        self.list_models = AsyncMock(return_value=list(models))
        self.chat = AsyncMock(return_value=reply)
        self.open_stream = AsyncMock(return_value=FakeStream(fragments))
        self.test_generation = AsyncMock(return_value=True)
        self.embed = AsyncMock(return_value=[0.25] * 4)
        self.closed = False

    async def has_model(self, timeout):
        models = await self.list_models(timeout)
        return any(model_matches(self.model, m) for m in models), models

    async def iter_fragments(self, stream):
        for fragment in stream.fragments:
            if isinstance(fragment, Exception):
                raise fragment
            yield fragment

    async def close_stream(self, stream):
        await stream.close()

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def make_context(config, fake_client):
    """Factory building an ``AppContext`` around the fake backend."""

    def _make(cfg: Config | None = None, client=None, store=None) -> AppContext:
        return AppContext.create(cfg or config, client=client or fake_client, store=store)

    return _make


def run(coro):
    """Drive a coroutine to completion from a synchronous test."""
    return asyncio.run(coro)


async def collect(events):
    return [event async for event in events]


def make_message(role: str, content: str, token_count: int | None = None, **kwargs) -> Message:
    return Message(role=role, content=content, token_count=token_count, **kwargs)
