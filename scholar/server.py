"""HTTP surface for the reader UI.

Endpoints:
    POST /api/chat                 submit a turn; the reply is an event stream
    GET  /api/chat                 quick backend status
    GET  /api/ollama/health        full health report (503 when unhealthy)
    GET  /api/memory/{session_id}  token usage of a session
    GET  /api/test-tokens?text=    token estimate for a string

Run with ``pdf-scholar serve`` or ``uvicorn scholar.server:app``.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from scholar.events import encode_stream
from scholar.health import check_health
from scholar.models import Config, MemoryState, PageText
from scholar.orchestrator import AppContext, ChatOrchestrator
from scholar.prompts import describe_backend_error

logger = logging.getLogger(__name__)


class ChatRequest(BaseModel):
    """Body of ``POST /api/chat`` (camelCase keys, as sent by the browser)."""

    model_config = ConfigDict(populate_by_name=True)

    chat_id: str = Field(alias="chatId")
    user_message: str = Field(alias="userMessage")
    images: list[str] = Field(default_factory=list)
    page_numbers: list[int] = Field(default_factory=list, alias="pageNumbers")
    extracted_text: list[str] = Field(default_factory=list, alias="extractedText")

    def page_texts(self) -> list[PageText]:
        return [
            PageText(page_number=number, text=text)
            for number, text in zip(self.page_numbers, self.extracted_text)
            if text
        ]


def create_app(config: Config | None = None, context: AppContext | None = None) -> FastAPI:
    """Create the FastAPI application.

    ``context`` is built from ``config`` (or the environment) at startup unless
    one is passed in.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = context or AppContext.create(config or Config.from_env())
        await ctx.startup()
        app.state.context = ctx
        app.state.orchestrator = ChatOrchestrator(ctx)
        try:
            yield
        finally:
            await ctx.aclose()

    app = FastAPI(title="pdf-scholar", lifespan=lifespan)

    @app.post("/api/chat")
    async def chat(body: ChatRequest, request: Request):
        orchestrator: ChatOrchestrator = request.app.state.orchestrator
        turn = await orchestrator.submit_turn(
            body.chat_id,
            body.user_message,
            images=body.images,
            page_numbers=body.page_numbers,
            page_texts=body.page_texts(),
        )
        return StreamingResponse(
            encode_stream(turn.events()),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-User-Token-Count": str(turn.user_token_count),
            },
        )

    @app.get("/api/chat")
    async def chat_status(request: Request):
        ctx: AppContext = request.app.state.context
        cfg = ctx.config
        try:
            available, _ = await ctx.client.has_model(cfg.connection_timeout_s)
        except Exception as exc:
            logger.error("Failed to connect to Ollama: %s", exc)
            return JSONResponse(
                {"status": "error", "message": describe_backend_error(exc, cfg)},
                status_code=503,
            )
        return {
            "status": "ok",
            "model": cfg.model,
            "contextLength": cfg.num_context,
            "available": available,
            "retry": {
                "enabled": cfg.retry_enabled,
                "maxAttempts": cfg.retry_max_attempts,
                "initialDelayMs": cfg.retry_initial_delay_ms,
                "maxDelayMs": cfg.retry_max_delay_ms,
            },
        }

    @app.get("/api/ollama/health")
    async def ollama_health(request: Request):
        ctx: AppContext = request.app.state.context
        report = await check_health(ctx.client, ctx.config)
        return JSONResponse(
            report.model_dump(),
            status_code=200 if report.healthy else 503,
            headers={"Cache-Control": "no-store"},
        )

    @app.get("/api/memory/{session_id}", response_model=MemoryState)
    async def memory_state(session_id: str, request: Request) -> MemoryState:
        orchestrator: ChatOrchestrator = request.app.state.orchestrator
        return orchestrator.memory_state(session_id)

    @app.get("/api/test-tokens")
    async def test_tokens(request: Request, text: str = "Hello, world!"):
        estimator = request.app.state.context.estimator
        count = estimator.estimate(text)
        return {
            "success": True,
            "text": text,
            "tokenCount": count,
            "characterCount": len(text),
            "ratio": f"{len(text) / count:.2f}" if count else None,
            "method": estimator.method,
        }

    return app


app = create_app()
