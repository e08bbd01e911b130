"""Command-line interface for the PDF tutor core.

Entry point: ``pdf-scholar`` (configured in ``pyproject.toml``).

Usage:
    pdf-scholar ask "Explain this page" --image page3.png --page 3 [--pdf paper.pdf]
    pdf-scholar health
    pdf-scholar tokens "some text"
    pdf-scholar serve [--host HOST] [--port PORT]

Settings come from the environment (and a ``.env`` file, if present); see
``Config.from_env``.  ``--base-url`` and ``--model`` override them.
"""

import argparse
import asyncio
import base64
import dataclasses
import json
import logging
import mimetypes
import sys
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from scholar.health import check_health
from scholar.llm import create_client
from scholar.log import setup_logging
from scholar.models import Config
from scholar.orchestrator import AppContext, ChatOrchestrator
from scholar.pages import PageExtractionError, extract_pages
from scholar.server import create_app
from scholar.tokens import TokenEstimator

logger = logging.getLogger(__name__)


def _positive_int(value: str) -> int:
    parsed = int(value)
    if parsed < 1:
        raise argparse.ArgumentTypeError("must be >= 1")
    return parsed


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments, build the configuration, and run a subcommand."""
    load_dotenv()

    parser = _build_parser()
    args = parser.parse_args(argv)

    setup_logging(
        verbose=args.verbose,
        log_file=Path(args.log_file) if args.log_file else None,
        server=args.command == "serve",
    )

    try:
        config = _build_config(args)
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        sys.exit(2)

    if args.command == "ask":
        sys.exit(_run_ask(args, config))
    if args.command == "health":
        sys.exit(_run_health(config))
    if args.command == "tokens":
        sys.exit(_run_tokens(args.text, config))
    _run_serve(args, config)


def _build_config(args: argparse.Namespace) -> Config:
    config = Config.from_env()
    overrides = {}
    if args.base_url:
        overrides["base_url"] = args.base_url
    if args.model:
        overrides["model"] = args.model
    return dataclasses.replace(config, **overrides) if overrides else config


# ---------------------------------------------------------------------------
# ask
# ---------------------------------------------------------------------------


def _read_image(path: Path) -> str:
    """Encode an image file as a data URL."""
    mime = mimetypes.guess_type(path.name)[0] or "image/png"
    encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:{mime};base64,{encoded}"


def _run_ask(args: argparse.Namespace, config: Config) -> int:
    try:
        images = [_read_image(Path(p)) for p in args.image]
    except OSError as exc:
        logger.error("Cannot read image: %s", exc)
        return 1

    page_texts = []
    if args.pdf:
        try:
            page_texts = extract_pages(Path(args.pdf), args.page)
        except PageExtractionError as exc:
            logger.warning("Skipping page text extraction: %s", exc)

    return asyncio.run(
        _ask(config, args.session, args.text, images, args.page, page_texts)
    )


async def _ask(config, session_id, text, images, page_numbers, page_texts) -> int:
    context = AppContext.create(config)
    await context.startup()
    orchestrator = ChatOrchestrator(context)
    failed = False
    try:
        async for event in orchestrator.stream_turn(
            session_id, text, images, page_numbers, page_texts
        ):
            if event.is_error:
                logger.error("%s", event.error)
                failed = True
            elif event.content:
                sys.stdout.write(event.content)
                sys.stdout.flush()
    finally:
        await context.aclose()
    if not failed:
        sys.stdout.write("\n")
    state = orchestrator.memory_state(session_id)
    logger.info(
        "Session %s: %d messages, %d tokens (truncated=%s)",
        session_id,
        state.message_count,
        state.total_tokens,
        state.was_truncated,
    )
    return 1 if failed else 0


# ---------------------------------------------------------------------------
# health / tokens / serve
# ---------------------------------------------------------------------------


def _run_health(config: Config) -> int:
    async def _check():
        client = create_client(config)
        try:
            return await check_health(client, config)
        finally:
            await client.aclose()

    report = asyncio.run(_check())
    print(json.dumps(report.model_dump(), indent=2))
    if not report.healthy:
        logger.error("Backend unhealthy: %s", report.ollama.error)
        return 1
    return 0


def _run_tokens(text: str, config: Config) -> int:
    estimator = TokenEstimator(config.tokenizer_encoding, config.tokenizer_bpe_file)
    asyncio.run(estimator.initialize())
    print(f"{estimator.estimate(text)} tokens ({estimator.method}, {len(text)} chars)")
    return 0


def _run_serve(args: argparse.Namespace, config: Config) -> None:
    # Handlers come from setup_logging(server=True)
    uvicorn.run(create_app(config), host=args.host, port=args.port, log_config=None)


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pdf-scholar",
        description=(
            "Ask a locally hosted vision-language model (Ollama) to explain PDF pages, "
            "with token-budgeted conversation memory."
        ),
    )
    parser.add_argument(
        "--base-url",
        metavar="URL",
        default=None,
        help="Ollama base URL (default: OLLAMA_BASE_URL or http://localhost:11434).",
    )
    parser.add_argument(
        "--model",
        metavar="MODEL",
        default=None,
        help="Model identifier (default: OLLAMA_MODEL or qwen2.5vl:3b).",
    )
    parser.add_argument(
        "--verbose",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Enable DEBUG-level logging (default: off).",
    )
    parser.add_argument(
        "--log-file",
        metavar="FILE",
        default=None,
        help="Also write log output to FILE.",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    ask = sub.add_parser("ask", help="Ask about one or more page images.")
    ask.add_argument("text", help="The question or instruction for the tutor.")
    ask.add_argument(
        "--session",
        metavar="ID",
        default="cli",
        help="Session id; reuse it to continue a stored conversation (default: cli).",
    )
    ask.add_argument(
        "--image",
        metavar="FILE",
        action="append",
        default=[],
        help="Page screenshot to attach (repeatable).",
    )
    ask.add_argument(
        "--page",
        metavar="N",
        type=_positive_int,
        action="append",
        default=[],
        help="Page number the question refers to (repeatable).",
    )
    ask.add_argument(
        "--pdf",
        metavar="PDF",
        default=None,
        help="PDF the pages come from; their text is embedded when a database is configured.",
    )

    sub.add_parser("health", help="Check backend connection and model availability.")

    tokens = sub.add_parser("tokens", help="Estimate the token count of a string.")
    tokens.add_argument("text")

    serve = sub.add_parser("serve", help="Run the HTTP API.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    return parser


if __name__ == "__main__":
    main()
