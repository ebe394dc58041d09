"""
test_llm.py -- Wire-format normalization and the Claude / Gemini adapters,
with the SDK clients replaced by mocks.
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest

from facilitator.errors import CompletionServiceError, ImageGenerationError
from facilitator.llm import (
    PURPOSE_PARAMS,
    WIRE_OPENER,
    ClaudeCompletionService,
    GeminiImageGenerator,
    to_wire_messages,
)
from facilitator.models import Message

REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


def text_response(text: str) -> SimpleNamespace:
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=text)])


def mock_claude(*side_effect) -> MagicMock:
    client = MagicMock()
    client.messages.create = AsyncMock(side_effect=list(side_effect))
    return client


def test_wire_messages_split_system_and_prepend_opener():
    system, turns = to_wire_messages([
        Message(role="system", content="base prompt"),
        Message(role="assistant", content="こんにちは"),
        Message(role="system", content="\n【占いモード: タロット占い】\n"),
        Message(role="user", content="占ってください"),
    ])
    assert system == "base prompt\n\n【占いモード: タロット占い】"
    assert turns == [
        {"role": "user", "content": WIRE_OPENER},
        {"role": "assistant", "content": "こんにちは"},
        {"role": "user", "content": "占ってください"},
    ]


def test_wire_messages_merge_consecutive_roles():
    messages = [
        Message(role="system", content="p"),
        Message(role="assistant", content="a"),
        Message(role="user", content="pending"),
        Message(role="user", content="instruction"),
    ]
    _, turns = to_wire_messages(messages)
    assert turns[-1] == {"role": "user", "content": "pending\n\ninstruction"}
    assert messages[2].content == "pending"


@pytest.mark.asyncio
async def test_claude_sends_purpose_params():
    client = mock_claude(text_response("  要約です  "))
    service = ClaudeCompletionService(api_key="", model="claude-test", client=client)

    reply = await service.complete(
        [Message(role="system", content="sys"), Message(role="user", content="hi")], purpose="summary",
    )

    assert reply == "要約です"
    kwargs = client.messages.create.await_args.kwargs
    assert kwargs["model"] == "claude-test"
    assert kwargs["system"] == "sys"
    assert kwargs["max_tokens"] == PURPOSE_PARAMS["summary"].max_tokens
    assert kwargs["temperature"] == PURPOSE_PARAMS["summary"].temperature


@pytest.mark.asyncio
async def test_claude_retries_transient_errors():
    client = mock_claude(anthropic.APIConnectionError(request=REQUEST), text_response("ok"))
    service = ClaudeCompletionService(api_key="", client=client, backoff_seconds=0)
    assert await service.complete([Message(role="user", content="hi")]) == "ok"
    assert client.messages.create.await_count == 2


@pytest.mark.asyncio
async def test_claude_gives_up_after_max_retries():
    errors = [anthropic.APIConnectionError(request=REQUEST) for _ in range(2)]
    service = ClaudeCompletionService(api_key="", client=mock_claude(*errors), max_retries=2, backoff_seconds=0)
    with pytest.raises(CompletionServiceError):
        await service.complete([Message(role="user", content="hi")])


@pytest.mark.asyncio
async def test_claude_empty_reply_is_an_error():
    service = ClaudeCompletionService(api_key="", client=mock_claude(text_response("   ")))
    with pytest.raises(CompletionServiceError):
        await service.complete([Message(role="user", content="hi")])


@pytest.mark.asyncio
async def test_claude_without_key_fails_cleanly():
    service = ClaudeCompletionService(api_key="")
    with pytest.raises(CompletionServiceError):
        await service.complete([Message(role="user", content="hi")])


def mock_gemini(response=None, error: Exception | None = None) -> MagicMock:
    client = MagicMock()
    client.aio.models.generate_content = AsyncMock(return_value=response, side_effect=error)
    return client


@pytest.mark.asyncio
async def test_gemini_saves_first_image(tmp_path):
    response = SimpleNamespace(parts=[
        SimpleNamespace(inline_data=None),
        SimpleNamespace(inline_data=SimpleNamespace(data=b"\x89PNG")),
    ])
    generator = GeminiImageGenerator(api_key="", images_dir=tmp_path, client=mock_gemini(response))

    url = await generator.generate("a calm scene", session_id="user_a_week1_1")

    assert url.startswith("/images/session_user_a_week1_1_") and url.endswith(".png")
    assert (tmp_path / url.rsplit("/", 1)[1]).read_bytes() == b"\x89PNG"


@pytest.mark.asyncio
async def test_gemini_without_image_data(tmp_path):
    response = SimpleNamespace(parts=[SimpleNamespace(inline_data=None)])
    generator = GeminiImageGenerator(api_key="", images_dir=tmp_path, client=mock_gemini(response))
    with pytest.raises(ImageGenerationError):
        await generator.generate("prompt", session_id="s")


@pytest.mark.asyncio
async def test_gemini_request_failure(tmp_path):
    generator = GeminiImageGenerator(
        api_key="", images_dir=tmp_path, client=mock_gemini(error=RuntimeError("quota")),
    )
    with pytest.raises(ImageGenerationError):
        await generator.generate("prompt", session_id="s")


@pytest.mark.asyncio
async def test_gemini_unconfigured(tmp_path):
    generator = GeminiImageGenerator(api_key="", images_dir=tmp_path)
    assert not generator.is_configured()
    with pytest.raises(ImageGenerationError):
        await generator.generate("prompt", session_id="s")
