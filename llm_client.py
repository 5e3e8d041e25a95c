"""OpenAI chat-completions annotation capability."""

from __future__ import annotations

import logging
import os

import openai
from openai import OpenAI

from annotation_schema import AnnotationSchema
from errors import TransportError

OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-5.2")
OPENAI_TEMPERATURE = float(os.getenv("OPENAI_TEMPERATURE", "0.1"))
# Also bounds how long an interrupted process waits on an abandoned call.
REQUEST_TIMEOUT_SECONDS = float(os.getenv("OPENAI_TIMEOUT_SECONDS", "120"))

LOGGER = logging.getLogger(__name__)

_SYSTEM_PROMPT_TEMPLATE = """You annotate acquired documents with structured metadata.
{context}Respond ONLY with valid JSON following the schema below. No prose, no markdown.
Enum fields must use exactly one of the listed options separated by "|".

Required JSON schema ({name}):
{skeleton}"""


def build_system_prompt(schema: AnnotationSchema, prompt_context: str = "") -> str:
    """System prompt embedding the schema skeleton."""
    context = f"{prompt_context.strip()}\n" if prompt_context.strip() else ""
    return _SYSTEM_PROMPT_TEMPLATE.format(
        context=context,
        name=schema.name,
        skeleton=schema.skeleton_json(),
    )


class OpenAIAnnotator:
    """Callable annotator; one request per call, no retries."""

    def __init__(
        self,
        model: str = OPENAI_MODEL,
        temperature: float = OPENAI_TEMPERATURE,
        api_key: str | None = None,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY environment variable is required")
        self.model = model
        self.temperature = temperature
        self.client = OpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    def __call__(self, prompt_context: str, payload: str, schema: AnnotationSchema) -> str:
        LOGGER.debug("Calling OpenAI model=%s payload_chars=%s", self.model, len(payload))
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                temperature=self.temperature,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": build_system_prompt(schema, prompt_context)},
                    {"role": "user", "content": payload},
                ],
            )
        except openai.OpenAIError as exc:
            raise TransportError(f"OpenAI request failed: {exc}") from exc

        if not response.choices:
            raise TransportError("OpenAI returned no choices")
        # Empty content is left for the output parser to reject.
        return response.choices[0].message.content or ""
