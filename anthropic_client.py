"""Anthropic Messages API annotation capability."""

from __future__ import annotations

import logging
import os

import anthropic

from annotation_schema import AnnotationSchema
from errors import TransportError
from llm_client import build_system_prompt

CLAUDE_MODEL = os.getenv("CLAUDE_MODEL", "claude-opus-4-6")
CLAUDE_MAX_TOKENS = int(os.getenv("CLAUDE_MAX_TOKENS", "2048"))
CLAUDE_TIMEOUT_SECONDS = float(os.getenv("CLAUDE_TIMEOUT_SECONDS", "120"))

LOGGER = logging.getLogger(__name__)


class AnthropicAnnotator:
    """Callable annotator backed by Claude; one request per call, no retries."""

    def __init__(
        self,
        model: str = CLAUDE_MODEL,
        max_tokens: int = CLAUDE_MAX_TOKENS,
        api_key: str | None = None,
        timeout: float = CLAUDE_TIMEOUT_SECONDS,
    ) -> None:
        api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if not api_key:
            raise RuntimeError("ANTHROPIC_API_KEY environment variable is required")
        self.model = model
        self.max_tokens = max_tokens
        self.client = anthropic.Anthropic(api_key=api_key, timeout=timeout, max_retries=0)

    def __call__(self, prompt_context: str, payload: str, schema: AnnotationSchema) -> str:
        LOGGER.debug("Calling Claude model=%s max_tokens=%s", self.model, self.max_tokens)
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=build_system_prompt(schema, prompt_context),
                messages=[{"role": "user", "content": payload}],
            )
        except anthropic.AnthropicError as exc:
            raise TransportError(f"Anthropic request failed: {exc}") from exc

        texts = [block.text for block in response.content if getattr(block, "type", "") == "text"]
        return "".join(texts)
