"""
conftest.py -- Shared fixtures: scripted completion/image fakes, a temp-dir
store and a fully wired orchestrator. No network access anywhere.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Sequence

import pytest

from facilitator.catalog import Catalog, load_catalog
from facilitator.conversation import ConversationEngine
from facilitator.errors import CompletionServiceError, ImageGenerationError
from facilitator.models import Message
from facilitator.orchestrator import SessionOrchestrator
from facilitator.session_store import CachedSessionStore, JsonFileSessionStore


class FakeCompletionService:
    """Returns canned replies per purpose and records every call."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, list[Message]]] = []
        self.replies: dict[str, list[str]] = {}
        self.failures: dict[str, int] = {}

    def script(self, purpose: str, *replies: str) -> None:
        self.replies.setdefault(purpose, []).extend(replies)

    def fail(self, purpose: str, times: int = 1) -> None:
        self.failures[purpose] = self.failures.get(purpose, 0) + times

    def count(self, purpose: str) -> int:
        return sum(1 for p, _ in self.calls if p == purpose)

    async def complete(self, messages: Sequence[Message], *, purpose: str = "chat") -> str:
        self.calls.append((purpose, list(messages)))
        if self.failures.get(purpose):
            self.failures[purpose] -= 1
            raise CompletionServiceError(f"scripted {purpose} failure")
        queued = self.replies.get(purpose)
        if queued:
            return queued.pop(0)
        return f"{purpose} reply {self.count(purpose)}"


class FakeImageGenerator:
    def __init__(self, url: str | None = "/images/session_test.png") -> None:
        self.url = url
        self.prompts: list[str] = []

    async def generate(self, prompt: str, *, session_id: str) -> str:
        self.prompts.append(prompt)
        if self.url is None:
            raise ImageGenerationError("scripted image failure")
        return self.url


class SteppingClock:
    """Deterministic clock; each call advances by one second."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 4, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + timedelta(seconds=1)
        return current


@pytest.fixture(scope="session")
def catalog() -> Catalog:
    return load_catalog()


@pytest.fixture
def completions() -> FakeCompletionService:
    return FakeCompletionService()


@pytest.fixture
def images() -> FakeImageGenerator:
    return FakeImageGenerator()


@pytest.fixture
def clock() -> SteppingClock:
    return SteppingClock()


@pytest.fixture
def sessions_dir(tmp_path: Path) -> Path:
    return tmp_path / "sessions"


@pytest.fixture
def engine(completions, images, catalog, clock) -> ConversationEngine:
    return ConversationEngine(completions, images, catalog, clock=clock)


def build_orchestrator(sessions_dir: Path, engine, catalog, clock) -> SessionOrchestrator:
    store = CachedSessionStore(JsonFileSessionStore(sessions_dir, clock=clock))
    return SessionOrchestrator(store, engine, catalog, clock=clock)


@pytest.fixture
def orchestrator(sessions_dir, engine, catalog, clock) -> SessionOrchestrator:
    return build_orchestrator(sessions_dir, engine, catalog, clock)
