"""Backend health report: connection, model availability, and a test generation.

The test generation is informational only; the backend counts as healthy when
it is reachable and the configured model is installed.
"""

import logging

from pydantic import BaseModel, Field

from scholar.llm import OllamaClient, model_matches
from scholar.models import Config, RetryPolicy, utc_now
from scholar.prompts import describe_backend_error
from scholar.retry import log_retry, with_retry

logger = logging.getLogger(__name__)


class BackendStatus(BaseModel):
    url: str
    model: str
    status: str = "unknown"
    error: str | None = None
    models: list[str] = Field(default_factory=list)
    context_size: int


class HealthChecks(BaseModel):
    connection: bool = False
    model_available: bool = False
    test_generation: bool = False


class HealthReport(BaseModel):
    ollama: BackendStatus
    checks: HealthChecks = Field(default_factory=HealthChecks)
    timestamp: str = Field(default_factory=lambda: utc_now().isoformat())

    @property
    def healthy(self) -> bool:
        return self.checks.connection and self.checks.model_available


async def check_health(
    client: OllamaClient, config: Config, test_generation: bool = True
) -> HealthReport:
    """Probe the backend the same way a turn does and report every step."""
    report = HealthReport(
        ollama=BackendStatus(url=config.base_url, model=config.model, context_size=config.num_context)
    )
    probe = RetryPolicy(
        max_attempts=2, initial_delay=0.5, max_delay=0.5, on_retry=log_retry("Ollama connection")
    )
    try:
        models = await with_retry(lambda: client.list_models(config.connection_timeout_s), probe)
    except Exception as exc:
        report.ollama.status = "error"
        report.ollama.error = describe_backend_error(exc, config)
        return report

    report.checks.connection = True
    report.ollama.status = "connected"
    report.ollama.models = models
    report.checks.model_available = any(model_matches(config.model, m) for m in models)
    if not report.checks.model_available:
        report.ollama.error = (
            f"Model {config.model} not found. Available models: {', '.join(models)}"
        )
        return report

    if test_generation:
        try:
            report.checks.test_generation = await with_retry(
                lambda: client.test_generation(config.test_generation_timeout_s),
                config.retry_policy(on_retry=log_retry("test generation")),
            )
        except Exception as exc:
            logger.error("Test generation failed: %s", exc)
    return report
