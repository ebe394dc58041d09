"""
orchestrator.py -- Session lifecycle service.

Composes the catalog, prompt builder, session store and conversation engine
behind HTTP-agnostic operations. Every read-modify-write on a session runs
under that session's asyncio.Lock; different sessions never wait on each other.

Write policy:
- create and the completion write must succeed, failures propagate
- per-turn, greeting and fortune autosaves are best-effort and only logged
- every write runs in a worker thread (asyncio.to_thread)
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from datetime import datetime
from typing import Callable, Optional, Sequence

from facilitator.catalog import DEFAULT_CONVERSATION_MODE, DEFAULT_SESSION_LENGTH, Catalog
from facilitator.conversation import ConversationEngine, require_state
from facilitator.errors import (
    CompletionServiceError,
    InvalidUserIdError,
    PersistenceError,
    ReportNotFoundError,
    SessionNotFoundError,
    ValidationError,
)
from facilitator.models import (
    EndResult,
    ExistingSession,
    Message,
    SessionOverview,
    SessionRecord,
    SessionReport,
    SessionStarted,
    SessionState,
    SessionView,
    make_session_id,
    utcnow,
)
from facilitator.prompt_builder import compose_fortune_block, compose_omakase_block, compose_system_prompt
from facilitator.session_store import SessionStore, is_valid_user_id, validate_session_id

logger = logging.getLogger(__name__)

DEFAULT_USER_NAME: str = "参加者"
OMAKASE_MODE: str = "omakase"
OPEN_STATES = (SessionState.CREATED, SessionState.GREETED, SessionState.ACTIVE)


class SessionOrchestrator:
    def __init__(
        self,
        store: SessionStore,
        engine: ConversationEngine,
        catalog: Catalog,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.engine = engine
        self.catalog = catalog
        self._clock = clock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    # -- helpers ---------------------------------------------------------------

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def _load(self, session_id: str) -> SessionRecord:
        validate_session_id(session_id)
        record = self.store.get(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        return record

    async def _save(self, record: SessionRecord) -> SessionRecord:
        """Blocking write, run in a worker thread."""
        return await asyncio.to_thread(self.store.save, record)

    async def _autosave(self, record: SessionRecord, operation: str) -> None:
        try:
            await self._save(record)
        except PersistenceError as exc:
            logger.error("Autosave failed (session=%s, op=%s): %s", record.session_id, operation, exc)

    def _prior_summaries(self, user_id: str, week: int) -> list[tuple[int, str]]:
        summaries: list[tuple[int, str]] = []
        for earlier in range(1, week):
            record = self.store.find_latest_by_user_week(user_id, earlier)
            if record is not None and record.summary:
                summaries.append((earlier, record.summary))
        return summaries

    # -- lifecycle ---------------------------------------------------------------

    async def start_session(
        self,
        user_id: str,
        week: int,
        user_name: Optional[str] = None,
        prior_info: Optional[str] = None,
        conversation_mode: Optional[str] = None,
        session_length: Optional[str] = None,
    ) -> SessionStarted:
        """Create a session for (user, week) and greet the participant."""
        if not is_valid_user_id(user_id):
            raise InvalidUserIdError(user_id)
        definition = self.catalog.get_week(week)
        mode = conversation_mode or DEFAULT_CONVERSATION_MODE
        length_key = session_length or DEFAULT_SESSION_LENGTH
        self.catalog.get_mode(mode)
        length = self.catalog.get_length(length_key)

        prior_summaries = self._prior_summaries(user_id, week)
        system_prompt = compose_system_prompt(
            self.catalog, week, mode, length_key, prior_info, prior_summaries,
        )

        now = self._clock()
        record = SessionRecord(
            session_id=make_session_id(user_id, week, now),
            user_id=user_id,
            user_name=user_name or DEFAULT_USER_NAME,
            week=week,
            theme=definition.theme,
            perspective=definition.perspective,
            conversation_mode=mode,
            session_length=length_key,
            target_minutes=length.target_minutes,
            messages=[Message(role="system", content=system_prompt)],
            created_at=now,
        )
        await asyncio.to_thread(self.store.create, record)
        logger.info(
            "Session started: %s (week=%d, mode=%s, length=%s, prior_weeks=%d)",
            record.session_id, week, mode, length_key, len(prior_summaries),
        )

        greeting: Optional[str] = None
        async with self._lock(record.session_id):
            try:
                greeting = await self.engine.greet(record)
            except CompletionServiceError as exc:
                logger.error("Greeting failed (session=%s, op=start): %s", record.session_id, exc)
            else:
                await self._autosave(record, "greet")

        return SessionStarted(
            session_id=record.session_id,
            week=week,
            theme=definition.theme,
            perspective=definition.perspective,
            conversation_mode=mode,
            session_length=length_key,
            target_minutes=length.target_minutes,
            greeting=greeting,
        )

    async def greeting(self, session_id: str) -> str:
        """Return the session's greeting, generating it if the session has none yet."""
        async with self._lock(session_id):
            record = self._load(session_id)
            if record.status != SessionState.CREATED:
                existing = record.first_assistant_message()
                if existing is not None:
                    return existing
            reply = await self.engine.greet(record)
            await self._autosave(record, "greet")
            return reply

    async def send_message(self, session_id: str, text: str) -> str:
        async with self._lock(session_id):
            record = self._load(session_id)
            try:
                return await self.engine.turn(record, text)
            finally:
                # Keeps a pending user message durable when the reply failed.
                await self._autosave(record, "chat")

    async def end_session(self, session_id: str) -> EndResult:
        async with self._lock(session_id):
            record = self._load(session_id)
            result = await self.engine.end(record)
            await self._save(record)
            return result

    async def set_fortune_selection(self, session_id: str, fortune_types: Sequence[str]) -> list[str]:
        """Append one fortune instruction per key, in order. All keys are checked first."""
        selected = list(fortune_types)
        async with self._lock(session_id):
            record = self._load(session_id)
            require_state(record, OPEN_STATES, "set fortunes for")
            if not selected:
                raise ValidationError("At least one fortune type is required")
            blocks = [compose_fortune_block(self.catalog, key, record.user_name) for key in selected]
            for block in blocks:
                record.messages.append(Message(role="system", content=block))
            record.fortune_types = selected
            await self._autosave(record, "set-fortune")
            logger.info("Session %s: fortune types set %s", session_id, selected)
            return selected

    async def request_omakase_fortune(self, session_id: str) -> str:
        async with self._lock(session_id):
            record = self._load(session_id)
            require_state(record, OPEN_STATES, "request omakase fortune for")
            record.messages.append(Message(role="system", content=compose_omakase_block(self.catalog)))
            record.fortune_mode = OMAKASE_MODE
            await self._autosave(record, "omakase-fortune")
            return OMAKASE_MODE

    async def manual_save(self, session_id: str) -> datetime:
        async with self._lock(session_id):
            record = self._load(session_id)
            saved = await self._save(record)
            return saved.last_saved_at

    # -- queries -----------------------------------------------------------------

    def check_existing(self, user_id: str, week: int) -> Optional[ExistingSession]:
        record = self.store.find_latest_by_user_week(user_id, week)
        if record is None:
            return None
        return ExistingSession(
            session_id=record.session_id,
            week=record.week,
            theme=record.theme,
            conversation_mode=record.conversation_mode,
            session_length=record.session_length,
            message_count=record.message_count,
            is_completed=record.is_completed,
            created_at=record.created_at,
            last_saved_at=record.last_saved_at,
        )

    def resume(self, session_id: str) -> SessionView:
        record = self._load(session_id)
        return SessionView(
            session_id=record.session_id,
            user_name=record.user_name,
            week=record.week,
            theme=record.theme,
            perspective=record.perspective,
            conversation_mode=record.conversation_mode,
            session_length=record.session_length,
            target_minutes=record.target_minutes,
            status=record.status,
            messages=record.conversation(),
            article=record.article,
            summary=record.summary,
            image_url=record.image_url,
            completed_at=record.completed_at,
            is_completed=record.is_completed,
        )

    def report(self, user_id: str, week: int) -> SessionReport:
        record = self.store.find_latest_by_user_week(user_id, week)
        if record is None:
            raise ReportNotFoundError(user_id, week)
        if not record.is_completed or not record.article:
            raise ReportNotFoundError(user_id, week, "このセッションはまだ完了していません")
        return SessionReport(
            article=record.article,
            summary=record.summary,
            theme=record.theme,
            week=record.week,
            image_url=record.image_url,
            completed_at=record.completed_at,
        )

    def list_sessions(self, user_id: str) -> list[SessionOverview]:
        return [
            SessionOverview(
                session_id=r.session_id,
                week=r.week,
                theme=r.theme,
                created_at=r.created_at,
                summary=r.summary,
                message_count=r.message_count,
                is_completed=r.is_completed,
            )
            for r in self.store.list_by_user(user_id)
        ]
