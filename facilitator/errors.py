"""
errors.py -- Exception hierarchy for the facilitation service.

Four families map onto client-visible outcomes:
- ValidationError: rejected before any state mutation (400)
- NotFoundError: unknown session or missing report (404)
- ExternalServiceError: completion / image backend failures (502, or non-fatal for images)
- PersistenceError: session documents could not be written or read (500)
"""

from __future__ import annotations


class FacilitatorError(Exception):
    """Base error for the facilitation service."""


# -- Validation ---------------------------------------------------------------

class ValidationError(FacilitatorError):
    """Request rejected before any state was touched."""


class UnknownWeekError(ValidationError):
    def __init__(self, week: object, valid_weeks: list[int]) -> None:
        self.week = week
        self.valid_weeks = valid_weeks
        super().__init__(
            f"週 {week} の設定が見つかりません。有効な週: {', '.join(str(w) for w in valid_weeks)}"
        )


class UnknownConversationModeError(ValidationError):
    def __init__(self, mode: str, valid_modes: list[str]) -> None:
        self.mode = mode
        self.valid_modes = valid_modes
        super().__init__(f"Unknown conversation mode: {mode}. Valid modes: {valid_modes}")


class UnknownSessionLengthError(ValidationError):
    def __init__(self, length: str, valid_lengths: list[str]) -> None:
        self.length = length
        self.valid_lengths = valid_lengths
        super().__init__(f"Unknown session length: {length}. Valid lengths: {valid_lengths}")


class UnknownFortuneTypeError(ValidationError):
    def __init__(self, fortune_type: str) -> None:
        self.fortune_type = fortune_type
        super().__init__(f"Unknown fortune type: {fortune_type}")


class InvalidSessionIdError(ValidationError):
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Malformed session id: {session_id!r}")


class InvalidUserIdError(ValidationError):
    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"Malformed user id: {user_id!r}")


# -- Lookup -------------------------------------------------------------------

class NotFoundError(FacilitatorError):
    """Requested entity does not exist."""


class SessionNotFoundError(NotFoundError):
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__("セッションが見つかりません")


class ReportNotFoundError(NotFoundError):
    def __init__(self, user_id: str, week: int, reason: str = "レポートが見つかりません") -> None:
        self.user_id = user_id
        self.week = week
        super().__init__(reason)


# -- Lifecycle ----------------------------------------------------------------

class InvalidSessionStateError(FacilitatorError):
    """Operation is not allowed from the session's current state."""

    def __init__(self, session_id: str, state: str, operation: str) -> None:
        self.session_id = session_id
        self.state = state
        self.operation = operation
        super().__init__(f"Cannot {operation} session {session_id} in state '{state}'")


# -- External services --------------------------------------------------------

class ExternalServiceError(FacilitatorError):
    """An upstream model service failed."""


class CompletionServiceError(ExternalServiceError):
    """Chat completion failed or returned nothing usable."""


class ImageGenerationError(ExternalServiceError):
    """Image generation failed. Never fatal to session completion."""


# -- Persistence --------------------------------------------------------------

class PersistenceError(FacilitatorError):
    """A session document could not be written or read."""


class DuplicateSessionError(PersistenceError):
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session already exists: {session_id}")
