"""Tests for scholar/cli.py: argument parsing and high-level CLI behaviour."""

import json
import logging
import os
from unittest.mock import AsyncMock, patch

import pytest

from scholar.cli import _build_parser, _read_image, main
from scholar.health import BackendStatus, HealthChecks, HealthReport

from conftest import REPLY, FakeClient

_SETTING_PREFIXES = (
    "OLLAMA_", "LLM_API_KEY", "MAX_TOKEN_MEMORY", "TOKEN_BUFFER_THRESHOLD",
    "EMBEDDINGS_MODEL", "DATABASE_PATH", "TOKENIZER_",
)


@pytest.fixture(autouse=True)
def _clean_env():
    """Keep a developer's shell settings (and .env) out of Config.from_env."""
    env = {k: v for k, v in os.environ.items() if not k.startswith(_SETTING_PREFIXES)}
    with (
        patch.dict(os.environ, env, clear=True),
        patch("scholar.cli.load_dotenv"),
    ):
        yield


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------


def test_parser_requires_subcommand():
    with pytest.raises(SystemExit):
        _build_parser().parse_args([])


def test_parser_ask_defaults():
    args = _build_parser().parse_args(["ask", "Explain this"])
    assert args.command == "ask"
    assert args.text == "Explain this"
    assert args.session == "cli"
    assert args.image == []
    assert args.page == []
    assert args.pdf is None
    assert args.verbose is False


def test_parser_ask_repeatable_options():
    args = _build_parser().parse_args(
        ["ask", "q", "--image", "a.png", "--image", "b.png", "--page", "2", "--page", "5"]
    )
    assert args.image == ["a.png", "b.png"]
    assert args.page == [2, 5]


def test_parser_rejects_non_positive_page():
    with pytest.raises(SystemExit):
        _build_parser().parse_args(["ask", "q", "--page", "0"])


def test_parser_serve_defaults():
    args = _build_parser().parse_args(["serve"])
    assert args.host == "127.0.0.1"
    assert args.port == 8000


def test_parser_global_overrides():
    args = _build_parser().parse_args(
        ["--base-url", "http://gpu-box:11434", "--model", "llava:7b", "--verbose", "health"]
    )
    assert args.base_url == "http://gpu-box:11434"
    assert args.model == "llava:7b"
    assert args.verbose is True


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_read_image_builds_data_url(tmp_path):
    image = tmp_path / "page3.jpg"
    image.write_bytes(b"\xff\xd8\xff")
    assert _read_image(image) == "data:image/jpeg;base64,/9j/"


# ---------------------------------------------------------------------------
# main()
# ---------------------------------------------------------------------------


def test_main_tokens(capsys):
    with pytest.raises(SystemExit) as exc_info:
        main(["tokens", "x" * 200])
    assert exc_info.value.code == 0
    assert capsys.readouterr().out.strip() == "50 tokens (heuristic, 200 chars)"


def test_main_invalid_config_exits_2():
    with (
        patch.dict(os.environ, {"MAX_TOKEN_MEMORY": "10", "TOKEN_BUFFER_THRESHOLD": "20"}),
        pytest.raises(SystemExit) as exc_info,
    ):
        main(["tokens", "hi"])
    assert exc_info.value.code == 2


def test_main_ask_streams_reply(capsys):
    client = FakeClient()
    with (
        patch("scholar.orchestrator.create_client", return_value=client),
        pytest.raises(SystemExit) as exc_info,
    ):
        main(["ask", "Explain the figure", "--session", "t1"])
    assert exc_info.value.code == 0
    assert capsys.readouterr().out == REPLY + "\n"
    assert client.closed


def test_main_ask_reports_backend_failure(capsys):
    client = FakeClient()
    client.list_models.side_effect = ConnectionRefusedError()
    with (
        patch("scholar.orchestrator.create_client", return_value=client),
        patch("scholar.orchestrator.PROBE_DELAY_S", 0),
        pytest.raises(SystemExit) as exc_info,
    ):
        main(["ask", "Explain the figure"])
    assert exc_info.value.code == 1
    assert "ollama serve" in capsys.readouterr().err


def test_main_ask_missing_image_exits_1(tmp_path):
    with pytest.raises(SystemExit) as exc_info:
        main(["ask", "q", "--image", str(tmp_path / "nope.png")])
    assert exc_info.value.code == 1


def test_main_model_override_reaches_client():
    client = FakeClient()
    with (
        patch("scholar.orchestrator.create_client", return_value=client) as factory,
        pytest.raises(SystemExit),
    ):
        main(["--model", "llava:7b", "ask", "q"])
    config = factory.call_args.args[0]
    assert config.model == "llava:7b"


def test_main_health_prints_report(capsys):
    report = HealthReport(
        ollama=BackendStatus(
            url="http://localhost:11434", model="qwen2.5vl:3b", status="connected", context_size=32768
        ),
        checks=HealthChecks(connection=True, model_available=True, test_generation=True),
    )
    with (
        patch("scholar.cli.create_client", return_value=FakeClient()),
        patch("scholar.cli.check_health", new=AsyncMock(return_value=report)),
        pytest.raises(SystemExit) as exc_info,
    ):
        main(["health"])
    assert exc_info.value.code == 0
    assert json.loads(capsys.readouterr().out)["checks"]["connection"] is True


def test_main_health_unhealthy_exits_1():
    report = HealthReport(
        ollama=BackendStatus(
            url="http://localhost:11434", model="qwen2.5vl:3b", status="error",
            error="Cannot connect", context_size=32768,
        ),
    )
    with (
        patch("scholar.cli.create_client", return_value=FakeClient()),
        patch("scholar.cli.check_health", new=AsyncMock(return_value=report)),
        pytest.raises(SystemExit) as exc_info,
    ):
        main(["health"])
    assert exc_info.value.code == 1


def test_main_serve_runs_uvicorn():
    with patch("scholar.cli.uvicorn.run") as run:
        main(["serve", "--port", "9001"])
    _, kwargs = run.call_args
    assert kwargs == {"host": "127.0.0.1", "port": 9001, "log_config": None}
    assert logging.getLogger("uvicorn").handlers == logging.getLogger("scholar").handlers
