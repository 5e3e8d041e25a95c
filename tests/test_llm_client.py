from unittest.mock import MagicMock, patch

import anthropic
import openai
import pytest

from annotation_schema import DEFAULT_SCHEMA
from anthropic_client import AnthropicAnnotator
from errors import TransportError
from llm_client import OpenAIAnnotator, build_system_prompt

_GOOD = '{"title": "T", "category": "news", "content": "C"}'


def _openai_response(content: str | None) -> MagicMock:
    mock_choice = MagicMock()
    mock_choice.message.content = content
    mock_response = MagicMock()
    mock_response.choices = [mock_choice]
    return mock_response


def test_system_prompt_embeds_schema_and_context() -> None:
    prompt = build_system_prompt(DEFAULT_SCHEMA, "Focus on AI research news.")

    assert "Focus on AI research news." in prompt
    assert "(publication)" in prompt
    assert '"category": "research|news|product|policy|other"' in prompt


def test_system_prompt_without_context() -> None:
    prompt = build_system_prompt(DEFAULT_SCHEMA)
    assert prompt.startswith("You annotate acquired documents with structured metadata.\nRespond ONLY")


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------

def test_openai_annotator_returns_raw_content() -> None:
    mock_client = MagicMock()
    mock_client.chat.completions.create.return_value = _openai_response(_GOOD)

    with patch("llm_client.OpenAI", return_value=mock_client) as mock_cls, \
         patch.dict("os.environ", {"OPENAI_API_KEY": "test-key"}):
        annotator = OpenAIAnnotator(model="gpt-test", temperature=0.0)
        result = annotator("ctx", "the document", DEFAULT_SCHEMA)

    assert result == _GOOD
    assert mock_cls.call_args.kwargs["max_retries"] == 0
    kwargs = mock_client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "gpt-test"
    assert kwargs["response_format"] == {"type": "json_object"}
    assert kwargs["messages"][1] == {"role": "user", "content": "the document"}
    assert "ctx" in kwargs["messages"][0]["content"]


def test_openai_annotator_empty_content_is_empty_string() -> None:
    mock_client = MagicMock()
    mock_client.chat.completions.create.return_value = _openai_response(None)

    with patch("llm_client.OpenAI", return_value=mock_client), \
         patch.dict("os.environ", {"OPENAI_API_KEY": "test-key"}):
        assert OpenAIAnnotator()("", "doc", DEFAULT_SCHEMA) == ""


def test_openai_annotator_wraps_sdk_errors() -> None:
    mock_client = MagicMock()
    mock_client.chat.completions.create.side_effect = openai.OpenAIError("rate limited")

    with patch("llm_client.OpenAI", return_value=mock_client), \
         patch.dict("os.environ", {"OPENAI_API_KEY": "test-key"}):
        with pytest.raises(TransportError, match="rate limited"):
            OpenAIAnnotator()("", "doc", DEFAULT_SCHEMA)


def test_openai_annotator_no_choices_is_transport_error() -> None:
    mock_client = MagicMock()
    mock_client.chat.completions.create.return_value = MagicMock(choices=[])

    with patch("llm_client.OpenAI", return_value=mock_client), \
         patch.dict("os.environ", {"OPENAI_API_KEY": "test-key"}):
        with pytest.raises(TransportError):
            OpenAIAnnotator()("", "doc", DEFAULT_SCHEMA)


def test_openai_annotator_raises_without_api_key() -> None:
    with patch.dict("os.environ", {}, clear=True):
        with pytest.raises(RuntimeError, match="OPENAI_API_KEY"):
            OpenAIAnnotator()


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------

def _text_block(text: str) -> MagicMock:
    block = MagicMock()
    block.type = "text"
    block.text = text
    return block


def test_anthropic_annotator_joins_text_blocks() -> None:
    mock_client = MagicMock()
    tool_block = MagicMock()
    tool_block.type = "tool_use"
    mock_client.messages.create.return_value = MagicMock(
        content=[_text_block('{"title": "T", '), tool_block, _text_block('"category": "news", "content": "C"}')]
    )

    with patch("anthropic_client.anthropic.Anthropic", return_value=mock_client), \
         patch.dict("os.environ", {"ANTHROPIC_API_KEY": "test-key"}):
        result = AnthropicAnnotator(model="claude-test", max_tokens=512)("", "doc", DEFAULT_SCHEMA)

    assert result == _GOOD
    kwargs = mock_client.messages.create.call_args.kwargs
    assert kwargs["model"] == "claude-test"
    assert kwargs["max_tokens"] == 512
    assert kwargs["system"] == build_system_prompt(DEFAULT_SCHEMA)
    assert kwargs["messages"] == [{"role": "user", "content": "doc"}]


def test_anthropic_annotator_wraps_sdk_errors() -> None:
    mock_client = MagicMock()
    mock_client.messages.create.side_effect = anthropic.AnthropicError("overloaded")

    with patch("anthropic_client.anthropic.Anthropic", return_value=mock_client), \
         patch.dict("os.environ", {"ANTHROPIC_API_KEY": "test-key"}):
        with pytest.raises(TransportError, match="overloaded"):
            AnthropicAnnotator()("", "doc", DEFAULT_SCHEMA)


def test_anthropic_annotator_raises_without_api_key() -> None:
    with patch.dict("os.environ", {}, clear=True):
        with pytest.raises(RuntimeError, match="ANTHROPIC_API_KEY"):
            AnthropicAnnotator()


# ---------------------------------------------------------------------------
# Timeouts
# ---------------------------------------------------------------------------

def test_openai_timeout_is_passed_to_client() -> None:
    with patch("llm_client.OpenAI") as mock_cls, \
         patch.dict("os.environ", {"OPENAI_API_KEY": "test-key"}):
        OpenAIAnnotator(timeout=15.0)

    assert mock_cls.call_args.kwargs["timeout"] == 15.0


def test_anthropic_timeout_is_passed_to_client() -> None:
    with patch("anthropic_client.anthropic.Anthropic") as mock_cls, \
         patch.dict("os.environ", {"ANTHROPIC_API_KEY": "test-key"}):
        AnthropicAnnotator(timeout=15.0)

    assert mock_cls.call_args.kwargs["timeout"] == 15.0
    assert mock_cls.call_args.kwargs["max_retries"] == 0
