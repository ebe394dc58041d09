"""
conversation.py -- Per-session conversation state machine.

    CREATED --greet--> GREETED --turn--> ACTIVE --end--> ENDING --> COMPLETED
       |                  |                ^                 ^
       +------- turn (greeting failed) ----+                 |
                          +-------------- end ---------------+

The engine mutates SessionRecord in place and talks to the completion and
image services. It never persists anything; the orchestrator saves after
each call returns (or fails).

Ephemeral instructions (greeting, summary, article) are appended to a copy
of the transcript for a single call and are never stored.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable

from facilitator.catalog import Catalog
from facilitator.errors import ImageGenerationError, InvalidSessionStateError
from facilitator.llm import CompletionService, ImageGenerator
from facilitator.models import EndResult, Message, SessionRecord, SessionState, utcnow
from facilitator.prompt_builder import (
    article_instruction,
    build_image_prompt,
    embed_image,
    greeting_instruction,
    summary_instruction,
)

logger = logging.getLogger(__name__)

# CREATED means the greeting failed; the participant may still speak first.
CHAT_STATES = (SessionState.CREATED, SessionState.GREETED, SessionState.ACTIVE)


def require_state(record: SessionRecord, allowed: Iterable[SessionState], operation: str) -> None:
    if record.status not in set(allowed):
        raise InvalidSessionStateError(record.session_id, record.status.value, operation)


def _with_instruction(record: SessionRecord, instruction: str) -> list[Message]:
    """Transcript copy plus one ephemeral user instruction."""
    return [*record.messages, Message(role="user", content=instruction)]


class ConversationEngine:
    def __init__(
        self,
        completions: CompletionService,
        images: ImageGenerator,
        catalog: Catalog,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.completions = completions
        self.images = images
        self.catalog = catalog
        self._clock = clock

    async def greet(self, record: SessionRecord) -> str:
        """Generate the opening message. The instruction that asked for it is not kept."""
        require_state(record, [SessionState.CREATED], "greet")
        messages = _with_instruction(record, greeting_instruction(record.user_name, record.theme))
        reply = await self.completions.complete(messages, purpose="greeting")
        record.messages.append(Message(role="assistant", content=reply))
        record.status = SessionState.GREETED
        logger.info("Session %s greeted", record.session_id)
        return reply

    async def turn(self, record: SessionRecord, user_message: str) -> str:
        """
        Append the participant's message and the facilitator's reply.

        On failure the user message stays in the transcript. Calling again
        with the same text answers it without appending it twice.
        """
        require_state(record, CHAT_STATES, "send a message to")
        last = record.messages[-1]
        if last.role == "user" and last.content == user_message:
            logger.info("Session %s: retrying reply to pending user message", record.session_id)
        else:
            record.messages.append(Message(role="user", content=user_message))

        reply = await self.completions.complete(record.messages, purpose="chat")
        record.messages.append(Message(role="assistant", content=reply))
        record.status = SessionState.ACTIVE
        return reply

    async def end(self, record: SessionRecord) -> EndResult:
        """
        Summarize, write the article, illustrate it and mark the session complete.

        A completed session returns its stored result without new calls.
        Summary or article failure (or cancellation) restores the prior state.
        """
        if record.status == SessionState.COMPLETED:
            logger.info("Session %s already completed; returning stored result", record.session_id)
            return self._result(record)
        require_state(record, [SessionState.GREETED, SessionState.ACTIVE], "end")

        previous = record.status
        record.status = SessionState.ENDING
        try:
            summary = await self.completions.complete(
                _with_instruction(record, summary_instruction()), purpose="summary",
            )
            article = await self.completions.complete(
                _with_instruction(
                    record, article_instruction(record.theme, record.perspective, record.user_name),
                ),
                purpose="article",
            )
            image_url = await self._illustrate(record)
        except BaseException:
            record.status = previous
            raise

        if image_url:
            article = embed_image(article, image_url)

        record.summary = summary
        record.article = article
        record.image_url = image_url
        record.completed_at = self._clock()
        record.is_completed = True
        record.status = SessionState.COMPLETED
        logger.info(
            "Session %s completed (summary=%d chars, article=%d chars, image=%s)",
            record.session_id, len(summary), len(article), bool(image_url),
        )
        return self._result(record)

    async def _illustrate(self, record: SessionRecord) -> str | None:
        prompt = build_image_prompt(self.catalog, record.week, record.perspective)
        try:
            return await self.images.generate(prompt, session_id=record.session_id)
        except ImageGenerationError as exc:
            logger.warning("Image generation failed for session %s: %s", record.session_id, exc)
            return None

    @staticmethod
    def _result(record: SessionRecord) -> EndResult:
        return EndResult(
            summary=record.summary or "",
            article=record.article or "",
            week=record.week,
            theme=record.theme,
            image_url=record.image_url,
        )
