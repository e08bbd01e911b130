"""Per-turn orchestration: from a submitted user turn to a committed reply.

A turn moves through::

    IDLE -> AWAITING_BACKEND_HEALTH -> AWAITING_MODEL -> STREAMING -> COMMITTED

with ``FAILED`` reachable from every non-idle state and ``CANCELLED`` when the
caller aborts.  ``submit_turn`` appends the user message synchronously (its
token cost is known before any network call); ``Turn.events`` then probes the
backend, issues the single-turn generation call, relays the reply, and commits
the assistant message.

The events stream never raises: failures become one error event, and every
stream (failed and cancelled ones included) ends with the completion marker.
Only a committed turn adds an assistant message to the session.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TypeVar

from scholar.embeddings import BackendEmbeddingProvider, EmbeddingProvider, index_pages
from scholar.llm import OllamaClient, create_client, to_scholar_error
from scholar.memory import ConversationMemory
from scholar.models import (
    Config,
    ConnectivityError,
    MemoryState,
    Message,
    ModelUnavailableError,
    PageText,
    PersistenceWarning,
    RetryPolicy,
    ScholarError,
    StreamEvent,
)
from scholar.prompts import TUTOR_SYSTEM_PROMPT, describe_backend_error, model_missing_message
from scholar.retry import abort_unless_retryable, log_retry, with_retry
from scholar.store import SessionStore, SqliteSessionStore
from scholar.tokens import TokenEstimator

logger = logging.getLogger(__name__)

T = TypeVar("T")

#: The liveness probe gets a short, fixed budget independent of the
#: generation retry settings.
PROBE_MAX_ATTEMPTS = 2
PROBE_DELAY_S = 0.5


class TurnState(str, Enum):
    IDLE = "idle"
    AWAITING_BACKEND_HEALTH = "awaiting_backend_health"
    AWAITING_MODEL = "awaiting_model"
    STREAMING = "streaming"
    COMMITTED = "committed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TurnCancelled(Exception):
    """Raised inside a turn when its caller aborts it."""


# ---------------------------------------------------------------------------
# Process-scoped context
# ---------------------------------------------------------------------------


@dataclass
class AppContext:
    """Everything a process shares across turns, built once at startup."""

    config: Config
    estimator: TokenEstimator
    memory: ConversationMemory
    client: OllamaClient
    store: SessionStore | None = None
    embedder: EmbeddingProvider | None = None
    _init_task: asyncio.Task | None = field(default=None, repr=False)

    @classmethod
    def create(
        cls,
        config: Config,
        client: OllamaClient | None = None,
        store: SessionStore | None = None,
    ) -> "AppContext":
        """Wire the components; the store is chosen here and nowhere else."""
        estimator = TokenEstimator(config.tokenizer_encoding, config.tokenizer_bpe_file)
        if store is None and config.database_path is not None:
            store = SqliteSessionStore(config.database_path)
        client = client or create_client(config)
        embedder = None
        if store is not None:
            embedder = BackendEmbeddingProvider(
                client, config.embedding_model, timeout=config.generation_timeout_s
            )
        return cls(
            config=config,
            estimator=estimator,
            memory=ConversationMemory(estimator, store),
            client=client,
            store=store,
            embedder=embedder,
        )

    async def startup(self) -> None:
        """Start tokenizer initialization in the background and open the store.

        Until the tokenizer is ready the heuristic estimate is used.  A store
        that cannot be opened is dropped; sessions then live in memory only.
        """
        self._init_task = asyncio.ensure_future(self.estimator.initialize())
        if self.store is None:
            return
        try:
            await self.store.initialize()
        except Exception as exc:
            logger.warning(
                "%s", PersistenceWarning(f"Session store unavailable, using memory only: {exc}")
            )
            self.store = None
            self.memory.store = None
            self.embedder = None

    async def aclose(self) -> None:
        if self._init_task is not None:
            await self._init_task
        await self.memory.drain()
        if self.store is not None:
            await self.store.close()
        await self.client.aclose()


# ---------------------------------------------------------------------------
# Turn
# ---------------------------------------------------------------------------


class Turn:
    """One user submission and its reply.

    Attributes:
        session_id:       Session the turn belongs to.
        user_message:     The user message as appended (with its token count).
        user_token_count: Cost of the user message, known at submission.
        was_truncated:    Whether appending the user turn triggered truncation.
        state:            Current ``TurnState``.
        error:            The ``ScholarError`` that failed the turn, if any.
        assistant_message: The committed reply, once ``state`` is COMMITTED.
    """

    def __init__(
        self,
        context: AppContext,
        session_id: str,
        user_message: Message,
        was_truncated: bool,
        page_texts: Sequence[PageText] = (),
    ) -> None:
        self.context = context
        self.session_id = session_id
        self.user_message = user_message
        self.user_token_count = user_message.token_count or 0
        self.was_truncated = was_truncated
        self.page_texts = list(page_texts)
        self.state = TurnState.AWAITING_BACKEND_HEALTH
        self.error: ScholarError | None = None
        self.assistant_message: Message | None = None
        self._cancel_event = asyncio.Event()
        self._consumed = False

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Abort the turn; nothing more is committed to memory."""
        if self.state not in (TurnState.COMMITTED, TurnState.FAILED):
            self._cancel_event.set()

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Relay the turn as events; always ends with the completion marker."""
        if self._consumed:
            raise RuntimeError("Turn events can only be consumed once")
        self._consumed = True

        run = self._run()
        try:
            try:
                async for event in run:
                    yield event
            except TurnCancelled:
                self.state = TurnState.CANCELLED
                logger.info("Turn cancelled for session %s", self.session_id)
            except Exception as exc:
                self.error = to_scholar_error(exc, self.context.config, step="turn")
                self.state = TurnState.FAILED
                logger.error("Turn failed for session %s: %s", self.session_id, self.error)
                yield StreamEvent(
                    error=str(self.error),
                    type=self.error.category,
                    details=self.error.details(),
                )
            yield StreamEvent.completion()
        finally:
            await run.aclose()
            if self.state not in (TurnState.COMMITTED, TurnState.FAILED):
                self.state = TurnState.CANCELLED

    async def _guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the turn is cancelled first."""
        if self.cancelled:
            raise TurnCancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._cancel_event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if not task.done():
            task.cancel()
            await asyncio.wait({task})
            raise TurnCancelled()
        return task.result()

    async def _run(self) -> AsyncIterator[StreamEvent]:
        ctx = self.context
        config = ctx.config
        client = ctx.client

        if self.page_texts and ctx.embedder is not None and ctx.store is not None:
            await self._guard(index_pages(self.session_id, self.page_texts, ctx.embedder, ctx.store))

        # Backend liveness and model presence
        self.state = TurnState.AWAITING_BACKEND_HEALTH
        probe = RetryPolicy(
            max_attempts=PROBE_MAX_ATTEMPTS,
            initial_delay=PROBE_DELAY_S,
            max_delay=PROBE_DELAY_S,
            on_retry=log_retry("Ollama connection"),
        )
        try:
            available, models = await self._guard(
                with_retry(lambda: client.has_model(config.connection_timeout_s), probe)
            )
        except (TurnCancelled, ScholarError):
            raise
        except Exception as exc:
            logger.error("Ollama connection test failed: %s", exc)
            raise ConnectivityError(
                describe_backend_error(exc, config),
                url=config.base_url,
                model=config.model,
                step="health_check",
            ) from exc
        if not available:
            raise ModelUnavailableError(
                model_missing_message(config, models),
                url=config.base_url,
                model=config.model,
                step="model_check",
            )

        # Single-turn generation: fixed instruction + current user turn only
        self.state = TurnState.AWAITING_MODEL
        policy = config.retry_policy(on_retry=abort_unless_retryable("chat request"))
        text = self.user_message.content
        images = self.user_message.images
        try:
            if config.stream:
                stream = await self._guard(
                    with_retry(
                        lambda: client.open_stream(
                            TUTOR_SYSTEM_PROMPT, text, images, config.generation_timeout_s
                        ),
                        policy,
                    )
                )
                self.state = TurnState.STREAMING
                parts: list[str] = []
                fragments = client.iter_fragments(stream)
                try:
                    while (fragment := await self._guard(_next_or_none(fragments))) is not None:
                        parts.append(fragment)
                        yield StreamEvent(content=fragment)
                finally:
                    # Also runs when the turn fails or is cancelled.
                    await fragments.aclose()
                    await client.close_stream(stream)
                content = "".join(parts)
            else:
                content = await self._guard(
                    with_retry(
                        lambda: client.chat(
                            TUTOR_SYSTEM_PROMPT, text, images, config.generation_timeout_s
                        ),
                        policy,
                    )
                )
                self.state = TurnState.STREAMING
                yield StreamEvent(content=content, done=True)
        except TurnCancelled:
            raise
        except Exception as exc:
            logger.error("Ollama chat request failed: %s", exc)
            raise to_scholar_error(exc, config, step="generate") from exc

        if self.cancelled:
            raise TurnCancelled()
        reply = Message(
            role="assistant",
            content=content,
            page_references=list(self.user_message.page_references),
        )
        await ctx.memory.append(self.session_id, reply)
        self.assistant_message = ctx.memory.messages(self.session_id)[-1]
        self.state = TurnState.COMMITTED
        logger.info(
            "Turn committed for session %s (%d reply tokens)",
            self.session_id,
            self.assistant_message.token_count,
        )


async def _next_or_none(fragments: AsyncIterator[str]) -> str | None:
    try:
        return await fragments.__anext__()
    except StopAsyncIteration:
        return None


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class ChatOrchestrator:
    """Accepts user turns and manages the session memory around them."""

    def __init__(self, context: AppContext) -> None:
        self.context = context

    async def submit_turn(
        self,
        session_id: str,
        user_text: str,
        images: Sequence[str] = (),
        page_numbers: Sequence[int] = (),
        page_texts: Sequence[PageText] = (),
    ) -> Turn:
        """Append the user turn, enforce the budget, and return the pending turn.

        No network call happens here; consume ``Turn.events()`` to run it.
        """
        config = self.context.config
        memory = self.context.memory
        message = Message(
            role="user",
            content=user_text,
            images=list(images),
            page_references=list(page_numbers),
        )
        token_count = await memory.append(session_id, message)
        truncation = memory.apply_truncation(
            session_id, config.max_token_memory, config.token_buffer_threshold
        )
        logger.info(
            "Turn submitted for session %s (%d tokens, truncated=%s)",
            session_id,
            token_count,
            truncation.was_truncated,
        )
        return Turn(
            self.context,
            session_id,
            message.model_copy(update={"token_count": token_count}),
            truncation.was_truncated,
            page_texts,
        )

    async def stream_turn(
        self,
        session_id: str,
        user_text: str,
        images: Sequence[str] = (),
        page_numbers: Sequence[int] = (),
        page_texts: Sequence[PageText] = (),
    ) -> AsyncIterator[StreamEvent]:
        """``submit_turn`` followed by its events, as one stream."""
        turn = await self.submit_turn(session_id, user_text, images, page_numbers, page_texts)
        async for event in turn.events():
            yield event

    def memory_state(self, session_id: str) -> MemoryState:
        return self.context.memory.memory_state(session_id)
