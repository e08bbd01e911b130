"""Page-text embeddings.

Embeddings are written to the session store opportunistically and are not
read back when a request is assembled; the generation call only ever sees the
current turn.
"""

import logging
from collections.abc import Sequence
from typing import Protocol

from scholar.llm import OllamaClient
from scholar.models import PageText, PersistenceWarning
from scholar.store import SessionStore

logger = logging.getLogger(__name__)

#: bge-large produces 1024-dimensional vectors.
EMBEDDING_DIMENSIONS = 1024


class EmbeddingProvider(Protocol):
    async def embed(self, text: str) -> list[float]: ...


class BackendEmbeddingProvider:
    """Embeds text with an embedding model served by the same backend.

    A failed call is logged and yields a zero vector, so indexing never
    interrupts a turn.
    """

    def __init__(
        self,
        client: OllamaClient,
        model: str,
        timeout: float = 600.0,
        dimensions: int = EMBEDDING_DIMENSIONS,
    ) -> None:
        self.client = client
        self.model = model
        self.timeout = timeout
        self.dimensions = dimensions

    async def embed(self, text: str) -> list[float]:
        try:
            return await self.client.embed(text, self.model, timeout=self.timeout)
        except Exception as exc:
            logger.warning("Embedding with %s failed, storing zero vector: %s", self.model, exc)
            return [0.0] * self.dimensions


async def index_pages(
    session_id: str,
    pages: Sequence[PageText],
    embedder: EmbeddingProvider,
    store: SessionStore,
) -> int:
    """Embed and store each non-empty page; return how many pages were written."""
    written = 0
    for page in pages:
        if not page.text.strip():
            continue
        vector = await embedder.embed(page.text)
        try:
            await store.save_page_embedding(session_id, page.page_number, page.text, vector)
        except Exception as exc:
            logger.warning(
                "%s",
                PersistenceWarning(
                    f"Could not store embedding for page {page.page_number} of {session_id}: {exc}"
                ),
            )
            continue
        written += 1
    logger.debug("Indexed %d/%d pages for %s", written, len(pages), session_id)
    return written
