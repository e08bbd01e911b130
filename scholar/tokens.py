"""Token estimation with a layered fallback strategy.

The estimator prefers a precise sub-word tokenizer (tiktoken's ``cl100k_base``)
and falls back to the same encoding built from a local rank file, then to a
word/character heuristic.  The method is chosen once per process by
``TokenEstimator.initialize``; until that completes the heuristic is used.
Counts already cached on messages are never recomputed when the method changes.
"""

import asyncio
import logging
import math
from pathlib import Path

import tiktoken
from tiktoken.load import load_tiktoken_bpe

from scholar.models import IMAGE_TOKEN_COST, MESSAGE_OVERHEAD, Message

logger = logging.getLogger(__name__)

METHOD_TIKTOKEN = "tiktoken"
METHOD_OFFLINE = "tiktoken-offline"
METHOD_HEURISTIC = "heuristic"

_CL100K_PATTERN = (
    r"""'(?i:[sdmt]|ll|ve|re)|[^\r\n\p{L}\p{N}]?+\p{L}++|\p{N}{1,3}+"""
    r"""| ?[^\s\p{L}\p{N}]++[\r\n]*+|\s++$|\s*[\r\n]|\s+(?!\S)|\s"""
)
_CL100K_SPECIAL_TOKENS = {
    "<|endoftext|>": 100257,
    "<|fim_prefix|>": 100258,
    "<|fim_middle|>": 100259,
    "<|fim_suffix|>": 100260,
    "<|endofprompt|>": 100276,
}


def heuristic_estimate(text: str) -> int:
    """Conservative estimate: the larger of 1.3 tokens/word and 1 token/4 chars."""
    words = len(text.split())
    return math.ceil(max(words * 1.3, len(text) / 4))


class TokenEstimator:
    """Turns text into a token count; never raises.

    Attributes:
        encoding_name: tiktoken encoding to load.
        bpe_file:      Optional local BPE rank file for offline environments.
    """

    def __init__(self, encoding_name: str = "cl100k_base", bpe_file: Path | None = None) -> None:
        self.encoding_name = encoding_name
        self.bpe_file = bpe_file
        self._encoding: tiktoken.Encoding | None = None
        self._method = METHOD_HEURISTIC
        self._initialized = False
        self._lock = asyncio.Lock()

    @property
    def method(self) -> str:
        return self._method

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> str:
        """Pick the estimation method once; later calls return the same method."""
        async with self._lock:
            if self._initialized:
                return self._method
            encoding, method = await asyncio.to_thread(self._load_encoding)
            self._encoding = encoding
            self._method = method
            self._initialized = True
        logger.info("Token counting method: %s", self._method)
        return self._method

    def _load_encoding(self) -> tuple[tiktoken.Encoding | None, str]:
        try:
            return tiktoken.get_encoding(self.encoding_name), METHOD_TIKTOKEN
        except Exception as exc:
            logger.warning(
                "tiktoken %s unavailable, trying offline rank file: %s",
                self.encoding_name,
                exc,
            )

        if self.bpe_file is not None:
            try:
                encoding = tiktoken.Encoding(
                    name=f"{self.encoding_name}-offline",
                    pat_str=_CL100K_PATTERN,
                    mergeable_ranks=load_tiktoken_bpe(str(self.bpe_file)),
                    special_tokens=_CL100K_SPECIAL_TOKENS,
                )
                return encoding, METHOD_OFFLINE
            except Exception as exc:
                logger.warning(
                    "Offline tokenizer from %s failed, using heuristic estimation: %s",
                    self.bpe_file,
                    exc,
                )

        return None, METHOD_HEURISTIC

    def estimate(self, text: str) -> int:
        """Return the token count of ``text`` (>= 0)."""
        if self._encoding is not None:
            try:
                return len(self._encoding.encode(text, disallowed_special=()))
            except Exception as exc:
                logger.error("Tokenizer encoding error, using heuristic: %s", exc)
        return heuristic_estimate(text)

    def estimate_message(self, message: Message) -> int:
        """Content tokens + a fixed cost per image + per-message overhead."""
        return (
            self.estimate(message.content)
            + IMAGE_TOKEN_COST * len(message.images)
            + MESSAGE_OVERHEAD
        )
