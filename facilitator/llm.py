"""
llm.py -- Completion and image-generation backends.

The conversation engine only sees two small protocols:
  CompletionService.complete(messages, purpose=...) -> reply text
  ImageGenerator.generate(prompt, session_id=...) -> public image path

Claude (Anthropic Messages API) answers completions. Gemini (google-genai)
draws the session illustration, which is written under IMAGES_DIR and
served from /images.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence

import anthropic
from google import genai
from google.genai import types

from facilitator.errors import CompletionServiceError, ImageGenerationError
from facilitator.models import Message

logger = logging.getLogger(__name__)

INITIAL_BACKOFF_SECONDS: float = 2.0
REQUEST_TIMEOUT_SECONDS: float = 120.0

# Stands in for the dropped greeting instruction when a replayed transcript
# starts with the assistant; the Messages API requires a user turn first.
WIRE_OPENER: str = "（セッション開始）"


@dataclass(frozen=True)
class CompletionParams:
    max_tokens: int
    temperature: float


PURPOSE_PARAMS: dict[str, CompletionParams] = {
    "greeting": CompletionParams(max_tokens=500, temperature=0.7),
    "chat": CompletionParams(max_tokens=500, temperature=0.7),
    "summary": CompletionParams(max_tokens=300, temperature=0.5),
    "article": CompletionParams(max_tokens=1000, temperature=0.7),
}


class CompletionService(Protocol):
    async def complete(self, messages: Sequence[Message], *, purpose: str = "chat") -> str: ...


class ImageGenerator(Protocol):
    async def generate(self, prompt: str, *, session_id: str) -> str: ...


def to_wire_messages(messages: Sequence[Message]) -> tuple[str, list[dict[str, str]]]:
    """
    Split a transcript into the Messages API's (system, messages) pair.

    System messages are joined in order. Consecutive same-role turns are
    merged, and a neutral opener is prepended when the first turn is from
    the assistant. The stored transcript is never modified.
    """
    system_parts: list[str] = []
    turns: list[dict[str, str]] = []
    for msg in messages:
        if msg.role == "system":
            system_parts.append(msg.content)
            continue
        if turns and turns[-1]["role"] == msg.role:
            turns[-1]["content"] += "\n\n" + msg.content
        else:
            turns.append({"role": msg.role, "content": msg.content})
    if turns and turns[0]["role"] == "assistant":
        turns.insert(0, {"role": "user", "content": WIRE_OPENER})
    return "\n\n".join(p.strip("\n") for p in system_parts), turns


class ClaudeCompletionService:
    """Completion backend on anthropic.AsyncAnthropic with retry on transient errors."""

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-6",
        max_retries: int = 3,
        client: anthropic.AsyncAnthropic | None = None,
        backoff_seconds: float = INITIAL_BACKOFF_SECONDS,
    ) -> None:
        self.model = model
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        if client is not None:
            self._client = client
        elif api_key:
            self._client = anthropic.AsyncAnthropic(api_key=api_key, timeout=REQUEST_TIMEOUT_SECONDS)
        else:
            logger.warning("ANTHROPIC_API_KEY not set -- completion calls will fail")
            self._client = None

    async def complete(self, messages: Sequence[Message], *, purpose: str = "chat") -> str:
        if self._client is None:
            raise CompletionServiceError("Completion client not initialized -- check ANTHROPIC_API_KEY")
        params = PURPOSE_PARAMS.get(purpose, PURPOSE_PARAMS["chat"])
        system, turns = to_wire_messages(messages)
        if not turns:
            raise CompletionServiceError("Transcript has no user or assistant turns to send")

        backoff = self.backoff_seconds
        for attempt in range(1, self.max_retries + 1):
            try:
                logger.info(
                    "Calling Claude (model=%s, purpose=%s, turns=%d, attempt %d/%d)",
                    self.model, purpose, len(turns), attempt, self.max_retries,
                )
                kwargs: dict[str, object] = {
                    "model": self.model,
                    "max_tokens": params.max_tokens,
                    "temperature": params.temperature,
                    "messages": turns,
                }
                if system:
                    kwargs["system"] = system
                response = await self._client.messages.create(**kwargs)  # type: ignore[arg-type]
                text = "\n".join(block.text for block in response.content if block.type == "text").strip()
                if not text:
                    raise CompletionServiceError(f"Claude returned an empty reply (purpose={purpose})")
                return text
            except (anthropic.RateLimitError, anthropic.APIConnectionError) as exc:
                logger.warning("Transient Claude error (attempt %d, purpose=%s): %s", attempt, purpose, exc)
                if attempt == self.max_retries:
                    raise CompletionServiceError(f"Claude unavailable after {attempt} attempts: {exc}") from exc
                await asyncio.sleep(backoff)
                backoff *= 2
            except anthropic.APIError as exc:
                raise CompletionServiceError(f"Claude API error (purpose={purpose}): {exc}") from exc
        raise CompletionServiceError("Exhausted retries for Claude API call")


class GeminiImageGenerator:
    """Session illustrations via Google Gemini, saved under images_dir."""

    def __init__(
        self,
        api_key: str,
        images_dir: Path,
        model: str = "gemini-2.5-flash-image",
        url_prefix: str = "/images",
        client: genai.Client | None = None,
    ) -> None:
        self.api_key = api_key
        self.images_dir = Path(images_dir)
        self.model = model
        self.url_prefix = url_prefix.rstrip("/")
        self._client = client

    def is_configured(self) -> bool:
        return self._client is not None or bool(self.api_key)

    def _get_client(self) -> genai.Client:
        if self._client is None:
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    async def generate(self, prompt: str, *, session_id: str) -> str:
        if not self.is_configured():
            raise ImageGenerationError("Image generation not configured (GOOGLE_AI_API_KEY missing)")
        try:
            response = await self._get_client().aio.models.generate_content(
                model=self.model,
                contents=prompt,
                config=types.GenerateContentConfig(
                    response_modalities=["TEXT", "IMAGE"],
                    image_config=types.ImageConfig(aspect_ratio="1:1"),
                ),
            )
        except Exception as exc:
            raise ImageGenerationError(f"Gemini image request failed: {exc}") from exc

        for part in response.parts or []:
            if part.inline_data is not None and part.inline_data.data:
                filename = f"session_{session_id}_{int(time.time() * 1000)}.png"
                output_path = self.images_dir / filename
                try:
                    output_path.parent.mkdir(parents=True, exist_ok=True)
                    output_path.write_bytes(part.inline_data.data)
                except OSError as exc:
                    raise ImageGenerationError(f"Could not save image {filename}: {exc}") from exc
                logger.info("Saved generated image to %s", output_path)
                return f"{self.url_prefix}/{filename}"

        raise ImageGenerationError(f"No image data in response for prompt: {prompt[:80]}")
