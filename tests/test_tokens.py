"""Tests for scholar/tokens.py: layered token estimation."""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from scholar.models import Message
from scholar.tokens import (
    METHOD_HEURISTIC,
    METHOD_OFFLINE,
    METHOD_TIKTOKEN,
    TokenEstimator,
    heuristic_estimate,
)


def _fake_encoding(tokens_per_call=7):
    encoding = MagicMock()
    encoding.encode.return_value = list(range(tokens_per_call))
    return encoding


# ---------------------------------------------------------------------------
# heuristic_estimate
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "text, expected",
    [
        ("", 0),
        ("x" * 200, 50),                      # chars/4 dominates
        ("a b c d e f g h i j", 13),          # 10 words * 1.3
        ("Hello, world!", 4),                 # ceil(13 / 4)
    ],
)
def test_heuristic_estimate(text, expected):
    assert heuristic_estimate(text) == expected


# ---------------------------------------------------------------------------
# TokenEstimator
# ---------------------------------------------------------------------------


def test_estimator_uses_heuristic_before_initialize():
    estimator = TokenEstimator()
    assert estimator.method == METHOD_HEURISTIC
    assert not estimator.initialized
    assert estimator.estimate("x" * 200) == 50


def test_initialize_prefers_tiktoken():
    encoding = _fake_encoding(7)
    with patch("scholar.tokens.tiktoken.get_encoding", return_value=encoding) as get_encoding:
        estimator = TokenEstimator()
        method = asyncio.run(estimator.initialize())

    assert method == METHOD_TIKTOKEN
    assert estimator.initialized
    get_encoding.assert_called_once_with("cl100k_base")
    assert estimator.estimate("anything at all") == 7
    encoding.encode.assert_called_with("anything at all", disallowed_special=())


def test_initialize_falls_back_to_heuristic_without_rank_file():
    """conftest makes get_encoding fail; with no BPE file the heuristic wins."""
    estimator = TokenEstimator()
    assert asyncio.run(estimator.initialize()) == METHOD_HEURISTIC
    assert estimator.initialized


def test_initialize_uses_offline_rank_file(tmp_path):
    bpe_file = tmp_path / "cl100k_base.tiktoken"
    bpe_file.write_text("")
    encoding = _fake_encoding(3)
    with (
        patch("scholar.tokens.load_tiktoken_bpe", return_value={b"a": 0}) as load_bpe,
        patch("scholar.tokens.tiktoken.Encoding", return_value=encoding) as build,
    ):
        estimator = TokenEstimator(bpe_file=bpe_file)
        assert asyncio.run(estimator.initialize()) == METHOD_OFFLINE

    load_bpe.assert_called_once_with(str(bpe_file))
    _, kwargs = build.call_args
    assert kwargs["mergeable_ranks"] == {b"a": 0}
    assert "<|endoftext|>" in kwargs["special_tokens"]
    assert estimator.estimate("hello") == 3


def test_initialize_falls_back_when_rank_file_is_unreadable(tmp_path):
    estimator = TokenEstimator(bpe_file=tmp_path / "missing.tiktoken")
    with patch("scholar.tokens.load_tiktoken_bpe", side_effect=FileNotFoundError("missing")):
        assert asyncio.run(estimator.initialize()) == METHOD_HEURISTIC


def test_initialize_is_one_shot():
    """Concurrent and repeated calls load the encoding exactly once."""
    encoding = _fake_encoding()

    async def scenario(estimator):
        return await asyncio.gather(*(estimator.initialize() for _ in range(5)))

    with patch("scholar.tokens.tiktoken.get_encoding", return_value=encoding) as get_encoding:
        estimator = TokenEstimator()
        methods = asyncio.run(scenario(estimator))
        asyncio.run(estimator.initialize())

    assert methods == [METHOD_TIKTOKEN] * 5
    get_encoding.assert_called_once()


def test_estimate_never_raises_on_encoder_failure(caplog):
    encoding = MagicMock()
    encoding.encode.side_effect = ValueError("bad input")
    with patch("scholar.tokens.tiktoken.get_encoding", return_value=encoding):
        estimator = TokenEstimator()
        asyncio.run(estimator.initialize())

    with caplog.at_level("ERROR", logger="scholar.tokens"):
        assert estimator.estimate("x" * 40) == 10
    assert "Tokenizer encoding error" in caplog.text


# ---------------------------------------------------------------------------
# estimate_message
# ---------------------------------------------------------------------------


def test_estimate_message_adds_overhead():
    estimator = TokenEstimator()
    msg = Message(role="user", content="x" * 200)
    assert estimator.estimate_message(msg) == 54


def test_estimate_message_charges_each_image():
    estimator = TokenEstimator()
    msg = Message(role="user", content="", images=["aaa", "bbb"])
    assert estimator.estimate_message(msg) == 2 * 1000 + 4
