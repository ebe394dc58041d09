"""
app.py -- FastAPI application for the weekly facilitation sessions.

Runs on PORT (default 3000). All routes live under /api; generated session
illustrations are served from /images.

Every failure reaches the client as a JSON body with a readable `error`.
Completion failures on the conversational surface additionally carry a
friendly `message` the UI can show in place of a reply.
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from facilitator.catalog import Catalog, default_catalog
from facilitator.config import Settings, load_settings
from facilitator.conversation import ConversationEngine
from facilitator.errors import (
    CompletionServiceError,
    InvalidSessionStateError,
    NotFoundError,
    PersistenceError,
    UnknownWeekError,
    ValidationError,
)
from facilitator.llm import ClaudeCompletionService, GeminiImageGenerator
from facilitator.models import (
    CamelModel,
    EndResult,
    SessionOverview,
    SessionReport,
    SessionStarted,
    SessionView,
)
from facilitator.orchestrator import SessionOrchestrator
from facilitator.session_store import CachedSessionStore, JsonFileSessionStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("facilitator")

VERSION: str = "0.1.0"

CHAT_FALLBACK_MESSAGE: str = (
    "申し訳ありません、うまくお返事できませんでした。"
    "いただいたメッセージは保存されていますので、少し時間をおいてもう一度送信してください。"
)
GREETING_FALLBACK_MESSAGE: str = (
    "こんにちは！今日のセッションにようこそ。"
    "まずは最近のご様子から、気軽にお話を聞かせてください。"
)


# -- Request / response bodies --------------------------------------------------

class StartSessionRequest(CamelModel):
    user_id: str
    week: Union[int, str]
    user_name: Optional[str] = None
    prior_info: Optional[str] = None
    conversation_mode: Optional[str] = None
    session_length: Optional[str] = None


class SessionIdRequest(CamelModel):
    session_id: str


class ChatRequest(CamelModel):
    session_id: str
    message: str


class SetFortuneRequest(CamelModel):
    session_id: str
    fortune_types: Union[list[str], str]


class MessageResponse(CamelModel):
    message: str
    fallback: bool = False


class SaveResponse(CamelModel):
    success: bool
    last_saved_at: str


class SetFortuneResponse(CamelModel):
    success: bool
    selected_fortunes: list[str]


class OmakaseResponse(BaseModel):
    success: bool
    mode: str


class HealthResponse(BaseModel):
    success: bool
    version: str = VERSION


def parse_week(raw: Any, catalog: Catalog) -> int:
    """Accept 3 or "3"; anything else is an unknown week."""
    if isinstance(raw, bool):
        raise UnknownWeekError(raw, catalog.valid_weeks)
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and raw.strip().isascii() and raw.strip().isdecimal():
        return int(raw.strip())
    raise UnknownWeekError(raw, catalog.valid_weeks)


# -- Wiring ---------------------------------------------------------------------

def build_orchestrator(settings: Settings, catalog: Catalog) -> SessionOrchestrator:
    store = CachedSessionStore(JsonFileSessionStore(settings.sessions_dir))
    completions = ClaudeCompletionService(
        api_key=settings.anthropic_api_key,
        model=settings.claude_model,
        max_retries=settings.completion_max_retries,
    )
    images = GeminiImageGenerator(
        api_key=settings.google_ai_api_key,
        images_dir=settings.images_dir,
        model=settings.image_model,
    )
    if not images.is_configured():
        logger.warning("GOOGLE_AI_API_KEY not set -- sessions will complete without images")
    engine = ConversationEngine(completions, images, catalog)
    return SessionOrchestrator(store, engine, catalog)


def get_orchestrator(request: Request) -> SessionOrchestrator:
    return request.app.state.orchestrator


def get_catalog(request: Request) -> Catalog:
    return request.app.state.catalog


router = APIRouter(prefix="/api")


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(success=True)


@router.post("/session/start", response_model=SessionStarted)
async def start_session(
    body: StartSessionRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
    catalog: Catalog = Depends(get_catalog),
) -> SessionStarted:
    week = parse_week(body.week, catalog)
    logger.info("Session start requested: user=%s, week=%d", body.user_id, week)
    return await orchestrator.start_session(
        user_id=body.user_id,
        week=week,
        user_name=body.user_name,
        prior_info=body.prior_info,
        conversation_mode=body.conversation_mode,
        session_length=body.session_length,
    )


@router.post("/chat/greeting", response_model=MessageResponse)
async def chat_greeting(
    body: SessionIdRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> MessageResponse:
    try:
        greeting = await orchestrator.greeting(body.session_id)
    except CompletionServiceError as exc:
        logger.error("Greeting failed (session=%s, op=greeting): %s", body.session_id, exc)
        return MessageResponse(message=GREETING_FALLBACK_MESSAGE, fallback=True)
    return MessageResponse(message=greeting)


@router.post("/chat", response_model=MessageResponse)
async def chat(
    body: ChatRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> MessageResponse:
    reply = await orchestrator.send_message(body.session_id, body.message)
    return MessageResponse(message=reply)


@router.post("/session/end", response_model=EndResult)
async def end_session(
    body: SessionIdRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> EndResult:
    return await orchestrator.end_session(body.session_id)


@router.get("/session/check/{user_id}/{week}")
async def check_session(
    user_id: str,
    week: str,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
    catalog: Catalog = Depends(get_catalog),
) -> dict[str, Any]:
    existing = orchestrator.check_existing(user_id, parse_week(week, catalog))
    if existing is None:
        return {"exists": False}
    return {"exists": True, **existing.model_dump(mode="json", by_alias=True)}


@router.post("/session/resume", response_model=SessionView)
async def resume_session(
    body: SessionIdRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> SessionView:
    return orchestrator.resume(body.session_id)


@router.post("/session/save", response_model=SaveResponse)
async def save_session(
    body: SessionIdRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> SaveResponse:
    saved_at = await orchestrator.manual_save(body.session_id)
    return SaveResponse(success=True, last_saved_at=saved_at.isoformat())


@router.get("/session/report/{user_id}/{week}", response_model=SessionReport)
async def session_report(
    user_id: str,
    week: str,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
    catalog: Catalog = Depends(get_catalog),
) -> SessionReport:
    return orchestrator.report(user_id, parse_week(week, catalog))


@router.get("/sessions/{user_id}", response_model=list[SessionOverview])
async def list_sessions(
    user_id: str,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> list[SessionOverview]:
    return orchestrator.list_sessions(user_id)


@router.get("/fortune-types")
async def fortune_types(catalog: Catalog = Depends(get_catalog)) -> dict[str, str]:
    return catalog.fortune_types


@router.get("/fortune-categories")
async def fortune_categories(catalog: Catalog = Depends(get_catalog)) -> dict[str, list[str]]:
    return catalog.fortune_categories


@router.post("/session/set-fortune", response_model=SetFortuneResponse)
async def set_fortune(
    body: SetFortuneRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> SetFortuneResponse:
    requested = body.fortune_types if isinstance(body.fortune_types, list) else [body.fortune_types]
    selected = await orchestrator.set_fortune_selection(body.session_id, requested)
    return SetFortuneResponse(success=True, selected_fortunes=selected)


@router.post("/session/omakase-fortune", response_model=OmakaseResponse)
async def omakase_fortune(
    body: SessionIdRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> OmakaseResponse:
    mode = await orchestrator.request_omakase_fortune(body.session_id)
    return OmakaseResponse(success=True, mode=mode)


# -- Error mapping --------------------------------------------------------------

def _error(status_code: int, error: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error, **extra})


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(UnknownWeekError)
    async def _unknown_week(request: Request, exc: UnknownWeekError) -> JSONResponse:
        logger.warning("%s %s rejected: %s", request.method, request.url.path, exc)
        return _error(400, str(exc), validWeeks=exc.valid_weeks)

    @app.exception_handler(ValidationError)
    async def _validation(request: Request, exc: ValidationError) -> JSONResponse:
        logger.warning("%s %s rejected: %s", request.method, request.url.path, exc)
        return _error(400, str(exc))

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        logger.info("%s %s not found: %s", request.method, request.url.path, exc)
        return _error(404, str(exc))

    @app.exception_handler(InvalidSessionStateError)
    async def _conflict(request: Request, exc: InvalidSessionStateError) -> JSONResponse:
        logger.warning("%s %s conflict: %s", request.method, request.url.path, exc)
        return _error(409, str(exc), state=exc.state)

    @app.exception_handler(CompletionServiceError)
    async def _completion(request: Request, exc: CompletionServiceError) -> JSONResponse:
        logger.error("%s %s completion failed: %s", request.method, request.url.path, exc)
        return _error(502, "AI応答の生成に失敗しました", message=CHAT_FALLBACK_MESSAGE)

    @app.exception_handler(PersistenceError)
    async def _persistence(request: Request, exc: PersistenceError) -> JSONResponse:
        logger.error("%s %s persistence failed: %s", request.method, request.url.path, exc)
        return _error(500, "セッションの保存に失敗しました")


def create_app(
    settings: Settings | None = None,
    orchestrator: SessionOrchestrator | None = None,
    catalog: Catalog | None = None,
) -> FastAPI:
    """Build the app. Tests pass their own orchestrator; production builds one from settings."""
    settings = settings or load_settings()
    catalog = catalog or default_catalog()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info(
            "Facilitation service started (sessions=%s, model=%s)",
            settings.sessions_dir, settings.claude_model,
        )
        yield
        logger.info("Facilitation service shut down")

    app = FastAPI(
        title="Weekly Wellbeing Facilitator",
        description="Five-week guided reflection sessions with generated articles and illustrations",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.catalog = catalog
    app.state.orchestrator = orchestrator or build_orchestrator(settings, catalog)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)
    app.include_router(router)

    settings.images_dir.mkdir(parents=True, exist_ok=True)
    app.mount("/images", StaticFiles(directory=str(settings.images_dir)), name="images")
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("facilitator.app:create_app", factory=True, host="0.0.0.0", port=load_settings().port)
