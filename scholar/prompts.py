"""Prompt text and user-facing error guidance.

The backend call is single-turn: it always receives ``TUTOR_SYSTEM_PROMPT``
plus the current user turn, never the conversation history.
"""

import re

from scholar.models import Config
from scholar.retry import is_timeout, is_transport_error

TUTOR_SYSTEM_PROMPT = """You are an expert AI tutor helping students understand documents through visual analysis.
Your task is to analyze the provided page image and explain its content clearly.

Your explanations should be:
1. Simple yet comprehensive - break down complex concepts into understandable parts
2. Clear and structured - use headings, bullet points, and examples
3. Focus on the visual content - describe what you see in the image
4. Reference specific elements visible in the page
5. Provide educational value - help the student understand the material

Analyze the page image provided by the student."""

_MODEL_NOT_FOUND_RE = re.compile(r"\bmodel\b.*\bnot found", re.IGNORECASE)


def describe_backend_error(exc: BaseException, config: Config) -> str:
    """Turn a raw backend failure into text that names a concrete remedy."""
    if is_timeout(exc):
        return (
            "Request to Ollama timed out. The model might be loading. "
            "Please try again in a moment."
        )
    if is_transport_error(exc):
        return (
            f"Cannot connect to Ollama at {config.base_url}. "
            "Please ensure Ollama is running with: ollama serve"
        )
    message = str(exc)
    if _MODEL_NOT_FOUND_RE.search(message):
        return f"Model not found. Please pull the model with: ollama pull {config.model}"
    return message or "Unknown error occurred while communicating with Ollama"


def model_missing_message(config: Config, available: list[str]) -> str:
    listed = ", ".join(available) if available else "none"
    return (
        f"Model {config.model} not found. Please pull it with: ollama pull {config.model} "
        f"(available models: {listed})"
    )
