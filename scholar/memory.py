"""Conversation memory: token-budgeted history with summarization-based truncation.

``ConversationMemory`` owns every session's message list.  Lists are
append-only except for one transform, ``truncate``, which replaces the oldest
part of the history with a single synthetic ``system`` summary message:

1. Summarize the first ``min(3, N)`` messages into bullet lines.
2. Start the new list with the summary; its cost counts against the budget.
3. Walk the full list newest-first, keeping messages while they fit.
4. Return ``[summary, *kept]`` in chronological order.

The summary is lossy: older detail is traded for budget.  If the summary alone
exceeds the budget the list still contains it (``degenerate=True``); callers
must treat ``max_tokens`` as a soft target.
"""

import asyncio
import logging
import re
from collections.abc import Sequence

from scholar.models import (
    BudgetDegeneracy,
    MemoryState,
    Message,
    PersistenceWarning,
    Session,
    TruncationResult,
    new_message_id,
    utc_now,
)
from scholar.store import SessionStore
from scholar.tokens import TokenEstimator

logger = logging.getLogger(__name__)

_SUMMARY_SOURCE_MESSAGES = 3
_USER_EXCERPT_CHARS = 100
_ASSISTANT_EXCERPT_CHARS = 150
_MAX_KEY_POINTS = 3
_HEADING_RE = re.compile(r"^#+\s")


# ---------------------------------------------------------------------------
# Summary helpers
# ---------------------------------------------------------------------------


def _excerpt(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def extract_key_points(content: str) -> str:
    """Up to three markdown headings of a reply, or its first 150 characters."""
    lines = [line.strip() for line in content.splitlines() if line.strip()]
    headings = [_HEADING_RE.sub("", line) for line in lines if _HEADING_RE.match(line)]
    if headings:
        return ", ".join(headings[:_MAX_KEY_POINTS])
    return _excerpt(content, _ASSISTANT_EXCERPT_CHARS)


def summarize_messages(messages: Sequence[Message]) -> str:
    """Build the digest text for the oldest messages of a conversation."""
    lines = ["Previous conversation summary:"]
    for message in messages[:_SUMMARY_SOURCE_MESSAGES]:
        if message.role == "user":
            lines.append(f"- User asked about: {_excerpt(message.content, _USER_EXCERPT_CHARS)}")
            if message.page_references:
                pages = ", ".join(str(p) for p in message.page_references)
                lines.append(f"  (Pages: {pages})")
        elif message.role == "assistant":
            lines.append(f"- Assistant explained: {extract_key_points(message.content)}")
    return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------


class ConversationMemory:
    """In-process session table with optional best-effort durable storage.

    Attributes:
        estimator: Token estimator used to price messages at append time.
        store:     Optional ``SessionStore``.  Writes are fire-and-forget;
                   failures are logged as ``PersistenceWarning`` only.
    """

    def __init__(self, estimator: TokenEstimator, store: SessionStore | None = None) -> None:
        self.estimator = estimator
        self.store = store
        self._sessions: dict[str, Session] = {}
        self._pending: set[asyncio.Task] = set()

    # -- sessions -----------------------------------------------------------

    async def get_session(self, session_id: str, pdf_url: str | None = None) -> Session:
        """Return the session, creating it (or loading it from the store) on first use."""
        session = self._sessions.get(session_id)
        if session is not None:
            return session

        session = None
        if self.store is not None:
            try:
                session = await self.store.get_or_create(session_id, pdf_url)
            except Exception as exc:
                logger.warning(
                    "%s",
                    PersistenceWarning(f"Could not load session {session_id}: {exc}"),
                )
        if session is None:
            session = Session(id=session_id, current_pdf_url=pdf_url)
        # Another coroutine may have created it while the store was queried.
        return self._sessions.setdefault(session_id, session)

    def messages(self, session_id: str) -> list[Message]:
        """A copy of the session's current message list (empty if unknown)."""
        session = self._sessions.get(session_id)
        return list(session.messages) if session else []

    # -- mutation -----------------------------------------------------------

    async def append(self, session_id: str, message: Message) -> int:
        """Price ``message``, append it to the session, and return its token cost."""
        session = await self.get_session(session_id)
        token_count = self.estimator.estimate_message(message)
        update: dict = {"token_count": token_count}
        if session.messages and message.timestamp < session.messages[-1].timestamp:
            update["timestamp"] = session.messages[-1].timestamp
        stored = message.model_copy(update=update)

        session.messages.append(stored)
        session.updated_at = utc_now()
        logger.debug(
            "Appended %s message %s to %s (%d tokens)",
            stored.role,
            stored.id,
            session_id,
            token_count,
        )

        if self.store is not None:
            self._schedule(self._persist(session_id, stored))
        return token_count

    def _schedule(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _persist(self, session_id: str, message: Message) -> None:
        try:
            await self.store.append_message(session_id, message)
        except Exception as exc:
            logger.warning(
                "%s",
                PersistenceWarning(f"Could not persist message {message.id} of {session_id}: {exc}"),
            )

    async def drain(self) -> None:
        """Wait for outstanding best-effort store writes."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    # -- budgeting ----------------------------------------------------------

    def _cost(self, message: Message) -> int:
        if message.token_count is not None:
            return message.token_count
        return self.estimator.estimate_message(message)

    def total_tokens(self, messages: Session | Sequence[Message]) -> int:
        """Sum of cached per-message token counts (summary messages included)."""
        if isinstance(messages, Session):
            messages = messages.messages
        return sum(self._cost(m) for m in messages)

    def truncate(
        self, messages: Sequence[Message], max_tokens: int, buffer_threshold: int
    ) -> TruncationResult:
        """Fit ``messages`` into ``max_tokens`` once they exceed ``buffer_threshold``.

        The newest message is always kept when it fits the budget on its own;
        every older message is kept only while summary + kept messages fit.
        """
        messages = list(messages)
        if self.total_tokens(messages) <= buffer_threshold:
            return TruncationResult(messages=messages, was_truncated=False)

        summary = Message(
            id=new_message_id("summary"),
            role="system",
            content=summarize_messages(messages),
        )
        summary = summary.model_copy(
            update={"token_count": self.estimator.estimate_message(summary)}
        )

        current = summary.token_count
        kept: list[Message] = []
        for message in reversed(messages):
            cost = self._cost(message)
            newest_alone = not kept and cost <= max_tokens
            if current + cost > max_tokens and not newest_alone:
                break
            kept.append(message)
            current += cost
        kept.reverse()

        degenerate = current > max_tokens
        if degenerate:
            logger.warning(
                "%s",
                BudgetDegeneracy(
                    f"Truncated history uses {current} tokens, over the {max_tokens} budget "
                    f"(summary alone: {summary.token_count})"
                ),
            )
        logger.info(
            "Conversation truncated: %d -> %d messages (%d tokens)",
            len(messages),
            len(kept) + 1,
            current,
        )
        return TruncationResult(
            messages=[summary, *kept], was_truncated=True, degenerate=degenerate
        )

    def apply_truncation(
        self, session_id: str, max_tokens: int, buffer_threshold: int
    ) -> TruncationResult:
        """Run ``truncate`` on a session and keep the result when it changed."""
        session = self._sessions.setdefault(session_id, Session(id=session_id))
        result = self.truncate(session.messages, max_tokens, buffer_threshold)
        if result.was_truncated:
            session.messages = list(result.messages)
            session.was_truncated = True
        return result

    def memory_state(self, session_id: str) -> MemoryState:
        session = self._sessions.get(session_id)
        return MemoryState(
            session_id=session_id,
            total_tokens=self.total_tokens(session) if session else 0,
            message_count=len(session.messages) if session else 0,
            was_truncated=session.was_truncated if session else False,
            method=self.estimator.method,
        )
