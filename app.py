# app.py - engagement-gated tutoring backend v1.0.0
# - Dual-provider LLM gateway (Gemini / Together) with retry + fallback text
# - Engagement score gating for quizzes and practice problems
# - Provider attribution for assessment attempts

import asyncio
import logging
import sqlite3
import threading
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

import db
from engines.attribution import (
    AttemptNotFoundError,
    AttributionResolver,
    InvalidPreferenceQuery,
)
from engines.engagement import (
    EngagementAccumulator,
    InvalidEngagementEvent,
    SessionClosedError,
    SessionNotFoundError,
)
from env_validation import ConfigurationError
from tutor import InvalidTutorRequest, PermanentProviderError, TutorReply, TutorService

logger = logging.getLogger(__name__)

_DISCONNECT_POLL_SECONDS = 0.5


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        # Validate environment variables first
        from env_validation import validate_environment
        validate_environment()

        db.init()
        service = get_tutor_service()
        logger.info(
            "Tutor providers: %s | default: %s | worst-case call: %.0fs",
            ", ".join(service.providers),
            service.default_provider,
            service.worst_case_seconds(),
        )
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="Engagement Tutor", version="1.0.0", lifespan=_lifespan)

_TUTOR_SERVICE: Optional[TutorService] = None
_TUTOR_LOCK = threading.Lock()
ENGAGEMENT = EngagementAccumulator()
ATTRIBUTION = AttributionResolver()


def get_tutor_service() -> TutorService:
    global _TUTOR_SERVICE
    with _TUTOR_LOCK:
        if _TUTOR_SERVICE is None:
            _TUTOR_SERVICE = TutorService()
        return _TUTOR_SERVICE


# ---------- request models ----------


class ChatRequest(BaseModel):
    user_id: str = Field(default="anonymous", description="Learner identifier")
    question: str
    history: List[Any] = Field(default_factory=list)
    preferences: Optional[Dict[str, Any]] = None
    topic: Optional[str] = None
    session_id: Optional[str] = None
    provider: Optional[str] = None


class ContextChatRequest(ChatRequest):
    lesson_context: Optional[Dict[str, Any]] = None


class EvaluateRequest(BaseModel):
    user_id: str = "anonymous"
    code: str
    stdout: Optional[str] = None
    stderr: Optional[str] = None
    topic: Optional[str] = None
    exercise: Optional[Dict[str, Any]] = None
    provider: Optional[str] = None


class SessionStartRequest(BaseModel):
    user_id: str
    topic_id: Optional[str] = None
    lesson_id: Optional[str] = None


class EngagementEventRequest(BaseModel):
    event_type: str
    points: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: Optional[str] = None


class ChoiceRequest(BaseModel):
    choice: Literal["gemini", "together", "both", "neither"]
    reason: Optional[str] = None


class QuizAttemptRequest(BaseModel):
    user_id: str
    session_id: Optional[str] = None
    quiz_id: Optional[str] = None
    score: Optional[float] = None
    passed: Optional[bool] = None
    time_spent_seconds: Optional[int] = Field(default=None, ge=0)
    attribution_chat_message_id: Optional[int] = None
    resolve_attribution: bool = True


class PracticeAttemptRequest(BaseModel):
    user_id: str
    session_id: Optional[str] = None
    problem_id: Optional[str] = None
    score: Optional[float] = None
    is_correct: Optional[bool] = None
    time_spent_seconds: Optional[int] = Field(default=None, ge=0)
    attribution_chat_message_id: Optional[int] = None
    resolve_attribution: bool = True


class PreferenceLogRequest(BaseModel):
    attempt_kind: Literal["quiz", "practice"]
    attempt_id: int
    chosen_ai: Optional[Literal["gemini", "together", "both", "neither"]] = None
    context: Dict[str, Any] = Field(default_factory=dict)


# ---------- helpers ----------


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (SessionNotFoundError, AttemptNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, SessionClosedError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (InvalidTutorRequest, InvalidEngagementEvent, InvalidPreferenceQuery)):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, PermanentProviderError):
        return HTTPException(
            status_code=502,
            detail={
                "error": exc.reason,
                "provider": exc.provider,
                "status_code": exc.status_code,
            },
        )
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=500, detail="internal error")


async def _run_cancellable(request: Request, func, *args, **kwargs):
    """Run ``func`` in a worker thread, setting ``cancel_event`` if the client goes away."""
    cancel_event = threading.Event()

    async def _watch_disconnect() -> None:
        while not cancel_event.is_set():
            if await request.is_disconnected():
                logger.info("Client disconnected from %s; cancelling provider call", request.url.path)
                cancel_event.set()
                return
            await asyncio.sleep(_DISCONNECT_POLL_SECONDS)

    watcher = asyncio.create_task(_watch_disconnect())
    try:
        return await asyncio.to_thread(func, *args, cancel_event=cancel_event, **kwargs)
    finally:
        watcher.cancel()


def _chat_history(payload: ChatRequest) -> List[Any]:
    if payload.history or not payload.session_id:
        return payload.history
    try:
        return db.recent_history(payload.session_id)
    except sqlite3.Error:
        logger.warning("Could not load stored history for session %s", payload.session_id, exc_info=True)
        return []


def _persist_reply(payload: ChatRequest, reply: TutorReply) -> Optional[int]:
    try:
        return db.record_chat_message(
            payload.user_id,
            payload.question,
            reply.text,
            session_id=payload.session_id,
            topic=payload.topic,
            provider=reply.provider,
            response_time_ms=reply.latency_ms,
            is_fallback=reply.is_fallback,
        )
    except sqlite3.Error:
        logger.error("Failed to persist chat message for user %s", payload.user_id, exc_info=True)
        return None


def _reply_payload(reply: TutorReply, chat_message_id: Optional[int]) -> Dict[str, Any]:
    return {
        "response": reply.text,
        "provider": reply.provider,
        "is_fallback": reply.is_fallback,
        "latency_ms": reply.latency_ms,
        "error": reply.error,
        "chat_message_id": chat_message_id,
    }


def _tutor_or_503() -> TutorService:
    try:
        return get_tutor_service()
    except ConfigurationError as exc:
        logger.error("Tutor service unavailable: %s", exc)
        raise _http_error(exc) from exc


# ---------- tutoring ----------


@app.get("/health")
def health():
    service = _tutor_or_503()
    providers = {
        name: {
            "model": caller.config.model,
            "api_key_present": caller.config.has_api_key,
            "history_turns": caller.config.history_turns,
        }
        for name, caller in service.callers.items()
    }
    return {
        "status": "ok",
        "default_provider": service.default_provider,
        "providers": providers,
        "worst_case_seconds": service.worst_case_seconds(),
    }


async def _chat(request: Request, payload: ChatRequest, lesson_context: Optional[Dict[str, Any]]):
    service = _tutor_or_503()
    try:
        reply = await _run_cancellable(
            request,
            service.respond,
            payload.question,
            _chat_history(payload),
            payload.preferences,
            payload.topic,
            lesson_context,
            provider=payload.provider,
        )
    except InvalidTutorRequest as exc:
        raise _http_error(exc) from exc
    return _reply_payload(reply, _persist_reply(payload, reply))


@app.post("/tutor/chat")
async def tutor_chat(request: Request, payload: ChatRequest):
    return await _chat(request, payload, None)


@app.post("/tutor/chat/context")
async def tutor_chat_with_context(request: Request, payload: ContextChatRequest):
    return await _chat(request, payload, payload.lesson_context)


@app.post("/tutor/compare")
async def tutor_compare(request: Request, payload: ContextChatRequest):
    service = _tutor_or_503()
    try:
        replies = await _run_cancellable(
            request,
            service.compare,
            payload.question,
            _chat_history(payload),
            payload.preferences,
            payload.topic,
            payload.lesson_context,
        )
    except InvalidTutorRequest as exc:
        raise _http_error(exc) from exc
    return {
        "responses": {
            name: _reply_payload(reply, _persist_reply(payload, reply))
            for name, reply in replies.items()
        }
    }


@app.post("/tutor/evaluate")
async def tutor_evaluate(request: Request, payload: EvaluateRequest):
    service = _tutor_or_503()
    try:
        reply = await _run_cancellable(
            request,
            service.review_code,
            payload.code,
            payload.stdout,
            payload.stderr,
            payload.topic,
            payload.exercise,
            provider=payload.provider,
        )
    except (InvalidTutorRequest, PermanentProviderError) as exc:
        raise _http_error(exc) from exc
    return {
        "feedback": reply.text,
        "provider": reply.provider,
        "is_fallback": reply.is_fallback,
        "latency_ms": reply.latency_ms,
        "error": reply.error,
    }


# ---------- sessions & engagement ----------


@app.post("/sessions/start")
def start_session(payload: SessionStartRequest):
    try:
        return ENGAGEMENT.start_session(
            payload.user_id, topic_id=payload.topic_id, lesson_id=payload.lesson_id
        )
    except InvalidEngagementEvent as exc:
        raise _http_error(exc) from exc


@app.post("/sessions/{session_id}/events")
def record_engagement_event(session_id: str, payload: EngagementEventRequest):
    try:
        update = ENGAGEMENT.record_event(
            session_id,
            payload.event_type,
            points=payload.points,
            metadata=payload.metadata,
            occurred_at=payload.occurred_at,
        )
    except (SessionNotFoundError, SessionClosedError, InvalidEngagementEvent) as exc:
        raise _http_error(exc) from exc
    return update.as_dict()


@app.get("/sessions/{session_id}/status")
def session_status(session_id: str):
    try:
        return ENGAGEMENT.status(session_id)
    except SessionNotFoundError as exc:
        raise _http_error(exc) from exc


@app.get("/sessions/{session_id}/events")
def list_engagement_events(session_id: str):
    try:
        events = ENGAGEMENT.events(session_id)
    except SessionNotFoundError as exc:
        raise _http_error(exc) from exc
    return {"session_id": session_id, "events": events}


@app.post("/sessions/{session_id}/end")
def end_session(session_id: str):
    try:
        return ENGAGEMENT.end_session(session_id)
    except SessionNotFoundError as exc:
        raise _http_error(exc) from exc


@app.post("/sessions/{session_id}/choice")
def record_choice(session_id: str, payload: ChoiceRequest):
    try:
        return ENGAGEMENT.record_user_choice(session_id, payload.choice, payload.reason)
    except (SessionNotFoundError, InvalidEngagementEvent) as exc:
        raise _http_error(exc) from exc


# ---------- attempts & attribution ----------


def _attempt_response(kind: str, attempt_id: int, resolve: bool) -> Dict[str, Any]:
    body: Dict[str, Any] = {"attempt_kind": kind, "attempt_id": attempt_id, "attribution": None}
    if resolve:
        body["attribution"] = ATTRIBUTION.resolve(kind, attempt_id).as_dict()
    return body


@app.post("/attempts/quiz")
def create_quiz_attempt(payload: QuizAttemptRequest):
    attempt_id = db.record_quiz_attempt(
        payload.user_id,
        session_id=payload.session_id,
        quiz_id=payload.quiz_id,
        score=payload.score,
        passed=payload.passed,
        time_spent_seconds=payload.time_spent_seconds,
        attribution_chat_message_id=payload.attribution_chat_message_id,
    )
    return _attempt_response("quiz", attempt_id, payload.resolve_attribution)


@app.post("/attempts/practice")
def create_practice_attempt(payload: PracticeAttemptRequest):
    attempt_id = db.record_practice_attempt(
        payload.user_id,
        session_id=payload.session_id,
        problem_id=payload.problem_id,
        score=payload.score,
        is_correct=payload.is_correct,
        time_spent_seconds=payload.time_spent_seconds,
        attribution_chat_message_id=payload.attribution_chat_message_id,
    )
    return _attempt_response("practice", attempt_id, payload.resolve_attribution)


@app.post("/attempts/{kind}/{attempt_id}/attribution")
def resolve_attribution(kind: str, attempt_id: int):
    try:
        return ATTRIBUTION.resolve(kind, attempt_id).as_dict()
    except AttemptNotFoundError as exc:
        raise _http_error(exc) from exc


@app.post("/preferences/log")
def log_preference(payload: PreferenceLogRequest):
    try:
        return ATTRIBUTION.log_preference(
            payload.attempt_kind,
            payload.attempt_id,
            chosen_ai=payload.chosen_ai,
            context=payload.context,
        )
    except AttemptNotFoundError as exc:
        raise _http_error(exc) from exc


@app.get("/preferences/{user_id}/summary")
def preference_summary(user_id: str, window: str = "30d", attempt_kind: Optional[str] = None):
    try:
        return ATTRIBUTION.preference_summary(user_id, window=window, attempt_kind=attempt_kind)
    except InvalidPreferenceQuery as exc:
        raise _http_error(exc) from exc
