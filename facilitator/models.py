"""
models.py -- Pydantic models for the facilitation service.

Defines the static catalog entries (WeekDefinition, ConversationMode,
SessionLength), the mutable SessionRecord, and the read-only views the
orchestrator hands back to callers. Field names are camelCase on the
wire and on disk, snake_case in Python.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Static catalog entries
# ---------------------------------------------------------------------------

class WeekDefinition(CamelModel):
    """One week of the five-week program."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    week: int = Field(ge=1)
    theme: str
    perspective: str
    system_prompt: str


class ConversationMode(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    key: str
    name: str
    description: str
    prompt_modifier: str = ""


class SessionLength(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    key: str
    name: str
    description: str
    target_minutes: int = Field(gt=0)
    prompt_modifier: str = ""


# ---------------------------------------------------------------------------
# Session record
# ---------------------------------------------------------------------------

class Message(CamelModel):
    role: Literal["system", "user", "assistant"]
    content: str


class SessionState(str, Enum):
    CREATED = "created"
    GREETED = "greeted"
    ACTIVE = "active"
    ENDING = "ending"
    COMPLETED = "completed"


def make_session_id(user_id: str, week: int, created_at: datetime) -> str:
    """Build `{userId}_week{week}_{epochMillis}`; millis keep ids time-ordered."""
    millis = int(created_at.timestamp() * 1000)
    return f"{user_id}_week{week}_{millis}"


class SessionRecord(CamelModel):
    """One participant's session for one week. Mutated in place by the engine."""

    session_id: str
    user_id: str
    user_name: str
    week: int
    theme: str
    perspective: str
    conversation_mode: str
    session_length: str
    target_minutes: int
    messages: list[Message]
    fortune_types: Optional[list[str]] = None
    fortune_mode: Optional[str] = None
    summary: Optional[str] = None
    article: Optional[str] = None
    image_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    last_saved_at: Optional[datetime] = None
    is_completed: bool = False
    status: SessionState = SessionState.CREATED

    @field_validator("messages")
    @classmethod
    def _system_prompt_first(cls, value: list[Message]) -> list[Message]:
        if not value or value[0].role != "system":
            raise ValueError("messages[0] must be the system prompt")
        return value

    @property
    def message_count(self) -> int:
        """Messages excluding the leading system prompt."""
        return len(self.messages) - 1

    def conversation(self) -> list[Message]:
        """Transcript without system messages, as shown to the participant."""
        return [m for m in self.messages if m.role != "system"]

    def first_assistant_message(self) -> Optional[str]:
        for m in self.messages:
            if m.role == "assistant":
                return m.content
        return None

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------

class SessionStarted(CamelModel):
    session_id: str
    week: int
    theme: str
    perspective: str
    conversation_mode: str
    session_length: str
    target_minutes: int
    greeting: Optional[str] = None


class ExistingSession(CamelModel):
    """Enough to decide resume-vs-restart without exposing the transcript."""

    session_id: str
    week: int
    theme: str
    conversation_mode: str
    session_length: str
    message_count: int
    is_completed: bool
    created_at: datetime
    last_saved_at: Optional[datetime] = None


class SessionView(CamelModel):
    session_id: str
    user_name: str
    week: int
    theme: str
    perspective: str
    conversation_mode: str
    session_length: str
    target_minutes: int
    status: SessionState
    messages: list[Message]
    article: Optional[str] = None
    summary: Optional[str] = None
    image_url: Optional[str] = None
    completed_at: Optional[datetime] = None
    is_completed: bool = False


class EndResult(CamelModel):
    summary: str
    article: str
    week: int
    theme: str
    image_url: Optional[str] = None


class SessionReport(CamelModel):
    article: str
    summary: Optional[str] = None
    theme: str
    week: int
    image_url: Optional[str] = None
    completed_at: Optional[datetime] = None


class SessionOverview(CamelModel):
    session_id: str
    week: int
    theme: str
    created_at: datetime
    summary: Optional[str] = None
    message_count: int
    is_completed: bool
