"""Pydantic models, dataclass Config, and exceptions for the tutoring core.

This module only defines the *shape* of the data that flows between the
conversation memory, the retry wrapper, and the chat orchestrator: messages and
sessions, stream events, runtime configuration, and the error taxonomy used to
categorise backend failures for the UI.
"""

import itertools
import os
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Type alias
# ---------------------------------------------------------------------------

Role = Literal["user", "assistant", "system"]
"""The three conversation roles understood by the backend."""

_ID_COUNTER = itertools.count()


def new_message_id(prefix: str = "msg") -> str:
    """Return a unique id whose lexical order follows generation order."""
    return f"{prefix}-{time.time_ns()}-{next(_ID_COUNTER)}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


class Message(BaseModel):
    """One turn in a conversation.

    Messages are immutable.  ``token_count`` is attached exactly once, by
    ``ConversationMemory.append``, and never recomputed afterwards even if the
    token estimator later upgrades to a more precise method.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_message_id)
    role: Role
    content: str
    images: list[str] = Field(default_factory=list)
    page_references: list[int] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)
    token_count: int | None = None


class Session(BaseModel):
    """A named, ordered conversation owned by ``ConversationMemory``."""

    id: str
    title: str = "New Study Session"
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    current_pdf_url: str | None = None
    messages: list[Message] = Field(default_factory=list)
    was_truncated: bool = False


class TruncationResult(BaseModel):
    """Outcome of one budgeting pass over a message list.

    ``degenerate`` is True when the result still exceeds the target budget:
    either the summary alone is over it, or the summary plus the newest message
    is (the newest message is kept whenever it fits the budget by itself).  The
    list is returned anyway; the budget is a soft target.
    """

    messages: list[Message]
    was_truncated: bool
    degenerate: bool = False


class MemoryState(BaseModel):
    """What the UI shows about a session's memory usage."""

    session_id: str
    total_tokens: int
    message_count: int
    was_truncated: bool
    method: str


class PageText(BaseModel):
    """Extracted text of one PDF page, used only for embeddings."""

    page_number: int
    text: str


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------


class StreamEvent(BaseModel):
    """One event relayed to the caller while a turn is processed.

    Exactly one of ``content`` or ``error`` is normally set.  ``done`` marks
    the final content chunk of a non-incremental reply.  Every stream ends with
    a separate completion marker: an event with ``done=True`` and neither
    ``content`` nor ``error``.
    """

    content: str | None = None
    done: bool = False
    error: str | None = None
    type: str | None = None
    details: dict[str, Any] | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def is_completion(self) -> bool:
        """True for the bare terminal marker that ends every stream."""
        return self.done and self.content is None and self.error is None

    @classmethod
    def completion(cls) -> "StreamEvent":
        return cls(done=True)


# ---------------------------------------------------------------------------
# Retry policy (value object, not persisted)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential-backoff settings for ``retry.with_retry``.

    Attributes:
        max_attempts:  Total attempts, including the first one (>= 1).
        initial_delay: Seconds to wait after the first failure (>= 0).
        max_delay:     Upper bound for any single wait (>= ``initial_delay``).
        on_retry:      Optional hook called as ``on_retry(attempt, exc)`` before
                       each wait.  Raising from the hook aborts the retry loop.
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    on_retry: Callable[[int, BaseException], None] | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")


# ---------------------------------------------------------------------------
# Config (dataclass, not pydantic; holds runtime settings)
# ---------------------------------------------------------------------------

#: Each attached page image is budgeted at this many tokens.  Images are never
#: tokenized for real; vision models typically spend several hundred tokens per
#: page screenshot, so this errs on the side of truncating early.
IMAGE_TOKEN_COST = 1000

#: Role/formatting overhead added to every message.
MESSAGE_OVERHEAD = 4

#: Ten minutes per call; slow local vision models can take minutes to load.
_DEFAULT_TIMEOUT_S = 600.0


@dataclass
class Config:
    """Runtime configuration for the tutoring core.

    All fields can be set from the environment with ``Config.from_env``.

    Attributes:
        base_url:               Ollama base address (without the ``/v1`` suffix).
        model:                  Vision-language model identifier that must be
                                present on the backend.
        api_key:                API key sent to the backend.  ``None`` means the
                                key is read from ``LLM_API_KEY``; Ollama ignores it.
        connection_timeout_s:   Deadline for the liveness/model-listing probe.
        generation_timeout_s:   Deadline for the generation call.
        test_generation_timeout_s: Deadline for the health report's test prompt.
        retry_enabled:          If False, the generation call is attempted once.
        retry_max_attempts:     Attempt budget for the generation call.
        retry_initial_delay_ms: First backoff delay in milliseconds.
        retry_max_delay_ms:     Backoff cap in milliseconds.
        num_context:            Context window size requested from the model.
        num_predict:            Maximum output tokens per reply.
        stream:                 If True, relay incremental fragments; otherwise
                                the reply is fetched whole and sent as one chunk.
        max_token_memory:       Token budget for the retained conversation.
        token_buffer_threshold: Truncation trigger; must be below
                                ``max_token_memory`` to leave headroom.
        embedding_model:        Backend model used for page-text embeddings.
        database_path:          SQLite file for durable sessions.  ``None``
                                keeps sessions in memory only.
        tokenizer_encoding:     tiktoken encoding name.
        tokenizer_bpe_file:     Local BPE rank file used when the encoding
                                cannot be fetched.
    """

    base_url: str = "http://localhost:11434"
    model: str = "qwen2.5vl:3b"
    api_key: str | None = None
    connection_timeout_s: float = _DEFAULT_TIMEOUT_S
    generation_timeout_s: float = _DEFAULT_TIMEOUT_S
    test_generation_timeout_s: float = _DEFAULT_TIMEOUT_S
    retry_enabled: bool = True
    retry_max_attempts: int = 1
    retry_initial_delay_ms: int = 1000
    retry_max_delay_ms: int = 1000
    num_context: int = 32768
    num_predict: int = 2000
    stream: bool = False
    max_token_memory: int = 32768
    token_buffer_threshold: int = 28672
    embedding_model: str = "bge-large"
    database_path: Path | None = None
    tokenizer_encoding: str = "cl100k_base"
    tokenizer_bpe_file: Path | None = None

    def __post_init__(self) -> None:
        if self.token_buffer_threshold >= self.max_token_memory:
            raise ValueError(
                "token_buffer_threshold must be lower than max_token_memory "
                f"({self.token_buffer_threshold} >= {self.max_token_memory})"
            )
        if self.retry_max_attempts < 1:
            raise ValueError("retry_max_attempts must be >= 1")
        self.base_url = self.base_url.rstrip("/")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Config":
        """Build a Config from environment variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        defaults = cls()

        def _int(name: str, default: int) -> int:
            return int(env.get(name, default))

        def _float(name: str, default: float) -> float:
            return float(env.get(name, default))

        def _path(name: str) -> Path | None:
            value = env.get(name)
            return Path(value) if value else None

        return cls(
            base_url=env.get("OLLAMA_BASE_URL", defaults.base_url),
            model=env.get("OLLAMA_MODEL", defaults.model),
            api_key=env.get("LLM_API_KEY") or None,
            connection_timeout_s=_float(
                "OLLAMA_CONNECTION_TIMEOUT", defaults.connection_timeout_s
            ),
            generation_timeout_s=_float(
                "OLLAMA_GENERATION_TIMEOUT", defaults.generation_timeout_s
            ),
            test_generation_timeout_s=_float(
                "OLLAMA_TEST_GENERATION_TIMEOUT", defaults.test_generation_timeout_s
            ),
            retry_enabled=env.get("OLLAMA_RETRY_ENABLED", "true").lower() != "false",
            retry_max_attempts=_int("OLLAMA_RETRY_ATTEMPTS", defaults.retry_max_attempts),
            retry_initial_delay_ms=_int(
                "OLLAMA_RETRY_DELAY", defaults.retry_initial_delay_ms
            ),
            retry_max_delay_ms=_int(
                "OLLAMA_RETRY_MAX_DELAY", defaults.retry_max_delay_ms
            ),
            num_context=_int("OLLAMA_NUM_CONTEXT", defaults.num_context),
            num_predict=_int("OLLAMA_NUM_PREDICT", defaults.num_predict),
            stream=env.get("OLLAMA_STREAM", "false").lower() == "true",
            max_token_memory=_int("MAX_TOKEN_MEMORY", defaults.max_token_memory),
            token_buffer_threshold=_int(
                "TOKEN_BUFFER_THRESHOLD", defaults.token_buffer_threshold
            ),
            embedding_model=env.get("EMBEDDINGS_MODEL", defaults.embedding_model),
            database_path=_path("DATABASE_PATH"),
            tokenizer_encoding=env.get("TOKENIZER_ENCODING", defaults.tokenizer_encoding),
            tokenizer_bpe_file=_path("TOKENIZER_BPE_FILE"),
        )

    def retry_policy(
        self, on_retry: Callable[[int, BaseException], None] | None = None
    ) -> RetryPolicy:
        """Production policy for the generation call."""
        initial = self.retry_initial_delay_ms / 1000
        return RetryPolicy(
            max_attempts=self.retry_max_attempts if self.retry_enabled else 1,
            initial_delay=initial,
            max_delay=max(initial, self.retry_max_delay_ms / 1000),
            on_retry=on_retry,
        )


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ScholarError(Exception):
    """Base class for failures that abort a turn.

    Attributes:
        url:      Backend address that was targeted.
        model:    Model identifier that was requested.
        step:     What was being attempted (``"health_check"``, ``"generate"``...).
        category: Machine-readable error class used as the event ``type``.
    """

    category = "backend_error"

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        model: str | None = None,
        step: str | None = None,
    ) -> None:
        self.url = url
        self.model = model
        self.step = step
        super().__init__(message)

    def details(self) -> dict[str, Any]:
        return {"url": self.url, "model": self.model, "step": self.step}


class ConnectivityError(ScholarError):
    """Backend unreachable or timed out."""

    category = "connectivity_error"


class ModelUnavailableError(ScholarError):
    """Backend reachable but the required model is not installed."""

    category = "model_unavailable"


class BackendProtocolError(ScholarError):
    """Non-success status, or a malformed / error-bearing payload."""

    category = "backend_protocol_error"


class BudgetDegeneracy(Warning):
    """The truncation summary alone exceeds the token budget.  Logged only."""


class PersistenceWarning(Warning):
    """An optional session-store operation failed.  Logged only."""
