"""Model backend client: wraps the openai SDK against Ollama's OpenAI-compatible API.

The public interface is ``OllamaClient``: ``list_models`` for the liveness
probe, ``chat`` / ``open_stream`` for the single-turn generation call, and
``embed`` for page-text embeddings.  The SDK's own retries are disabled
(``max_retries=0``) so that ``retry.with_retry`` governs every attempt.

Raw SDK failures are mapped onto the error taxonomy with
``to_scholar_error`` once retries are exhausted.
"""

import logging
import os
import time
from collections.abc import AsyncIterator, Sequence

import openai as _openai

from scholar.models import (
    BackendProtocolError,
    Config,
    ConnectivityError,
    ScholarError,
)
from scholar.prompts import describe_backend_error
from scholar.retry import extract_status_code, is_timeout, is_transport_error

logger = logging.getLogger(__name__)

_TEST_PROMPT = 'Say "test successful" and nothing else.'


def to_data_url(image: str) -> str:
    """Wrap a bare base64 payload as a PNG data URL; pass data URLs through."""
    if image.startswith("data:"):
        return image
    return f"data:image/png;base64,{image}"


def model_matches(wanted: str, available: str) -> bool:
    """Ollama reports untagged models as ``name:latest``."""
    if wanted == available:
        return True
    return ":" not in wanted and available == f"{wanted}:latest"


class OllamaClient:
    """Async OpenAI-compatible client bound to one model.

    Attributes:
        model:       Model identifier passed to every generation request.
        base_url:    Backend root address (used in logs and error details).
        num_context: Context window size requested via model options.
        num_predict: Maximum output tokens per reply.
    """

    def __init__(
        self,
        model: str,
        base_url: str,
        api_key: str = "ollama",
        num_context: int = 32768,
        num_predict: int | None = 2000,
        extra_headers: dict | None = None,
    ) -> None:
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.num_context = num_context
        self.num_predict = num_predict
        self._client = _openai.AsyncOpenAI(
            base_url=f"{self.base_url}/v1",
            api_key=api_key,
            default_headers=extra_headers or {},
            max_retries=0,
        )

    async def list_models(self, timeout: float) -> list[str]:
        """Return the identifiers of every model installed on the backend."""
        page = await self._client.models.list(timeout=timeout)
        return [m.id for m in page.data]

    async def has_model(self, timeout: float) -> tuple[bool, list[str]]:
        models = await self.list_models(timeout)
        return any(model_matches(self.model, m) for m in models), models

    def _chat_kwargs(
        self, system: str, user_text: str, images: Sequence[str], timeout: float
    ) -> dict:
        if images:
            content: str | list = [{"type": "text", "text": user_text}] + [
                {"type": "image_url", "image_url": {"url": to_data_url(img)}}
                for img in images
            ]
        else:
            content = user_text
        kwargs: dict = dict(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": content},
            ],
            timeout=timeout,
            extra_body={"options": {"num_ctx": self.num_context}},
        )
        if self.num_predict is not None:
            kwargs["max_tokens"] = self.num_predict
        return kwargs

    def _check_payload(self, payload) -> None:
        error = getattr(payload, "error", None)
        if error:
            raise BackendProtocolError(
                f"Ollama error: {error}", url=self.base_url, model=self.model, step="generate"
            )

    async def chat(
        self, system: str, user_text: str, images: Sequence[str] = (), timeout: float = 600.0
    ) -> str:
        """Send one system instruction plus one user turn; return the whole reply."""
        logger.info("Calling model  model=%s  backend=%s", self.model, self.base_url)
        t0 = time.monotonic()
        completion = await self._client.chat.completions.create(
            **self._chat_kwargs(system, user_text, images, timeout)
        )
        self._check_payload(completion)
        if not completion.choices:
            raise BackendProtocolError(
                "Ollama returned a response without choices",
                url=self.base_url,
                model=self.model,
                step="generate",
            )
        text = completion.choices[0].message.content or ""
        logger.info(
            "Response received (%.1fs, %s chars)", time.monotonic() - t0, f"{len(text):,}"
        )
        return text

    async def open_stream(
        self, system: str, user_text: str, images: Sequence[str] = (), timeout: float = 600.0
    ):
        """Start a streamed generation; iterate it with ``iter_fragments``."""
        logger.info("Opening stream  model=%s  backend=%s", self.model, self.base_url)
        return await self._client.chat.completions.create(
            **self._chat_kwargs(system, user_text, images, timeout), stream=True
        )

    async def iter_fragments(self, stream) -> AsyncIterator[str]:
        """Yield text fragments of an open stream in arrival order."""
        async for chunk in stream:
            self._check_payload(chunk)
            if not chunk.choices:
                continue
            fragment = chunk.choices[0].delta.content
            if fragment:
                yield fragment

    async def close_stream(self, stream) -> None:
        """Release the HTTP response behind a stream from ``open_stream``."""
        await stream.close()

    async def test_generation(self, timeout: float) -> bool:
        """Ask for a tiny deterministic reply; True if any text came back."""
        completion = await self._client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": _TEST_PROMPT}],
            temperature=0,
            max_tokens=50,
            timeout=timeout,
            extra_body={"options": {"num_ctx": self.num_context}},
        )
        self._check_payload(completion)
        return bool(completion.choices and completion.choices[0].message.content)

    async def embed(self, text: str, model: str, timeout: float = 600.0) -> list[float]:
        response = await self._client.embeddings.create(model=model, input=text, timeout=timeout)
        return list(response.data[0].embedding)

    async def aclose(self) -> None:
        await self._client.close()


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def create_client(config: Config) -> OllamaClient:
    """Create a client from configuration, resolving the API key.

    API key resolution order:
        1. ``config.api_key`` (explicit)
        2. ``LLM_API_KEY`` environment variable
        3. ``"ollama"`` fallback (Ollama ignores the value)
    """
    api_key = config.api_key or os.environ.get("LLM_API_KEY") or "ollama"
    return OllamaClient(
        model=config.model,
        base_url=config.base_url,
        api_key=api_key,
        num_context=config.num_context,
        num_predict=config.num_predict,
    )


def to_scholar_error(exc: BaseException, config: Config, step: str) -> ScholarError:
    """Categorise a failure that survived all retry attempts."""
    if isinstance(exc, ScholarError):
        return exc
    message = describe_backend_error(exc, config)
    if is_timeout(exc) or is_transport_error(exc):
        return ConnectivityError(message, url=config.base_url, model=config.model, step=step)
    status_code = extract_status_code(exc)
    if status_code is not None:
        message = f"Ollama error ({status_code}): {message}"
    return BackendProtocolError(message, url=config.base_url, model=config.model, step=step)
