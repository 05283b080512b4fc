"""Engagement accumulation and assessment gating.

Every learning session keeps a running engagement score built from typed
activity events. Two independent thresholds gate assessments: reaching the quiz
threshold unlocks the quiz, reaching the practice threshold unlocks practice
problems. Both flags only ever move from false to true, and because the checks
are score based a single large event can unlock practice straight from the
started state. Ending a session is terminal.

The read-add-write-check cycle for an event runs inside one ``BEGIN IMMEDIATE``
transaction, so concurrent events for the same session serialise.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple
from uuid import uuid4

import db
from env_validation import get_env_int

_LOGGER = logging.getLogger(__name__)

DEFAULT_QUIZ_THRESHOLD = 30
DEFAULT_PRACTICE_THRESHOLD = 70

DEFAULT_POINTS: Dict[str, int] = {
    "message": 5,
    "code_execution": 10,
    "scroll": 1,
    "interaction": 2,
    "time": 1,
    "quiz_completion": 15,
    "practice_completion": 20,
    "lesson_start": 0,
    "lesson_complete": 10,
}
PROVIDER_CHOICES = ("gemini", "together", "both", "neither")


class SessionNotFoundError(LookupError):
    pass


class SessionClosedError(RuntimeError):
    """The session has ended and no longer accepts score changes."""
    pass


class InvalidEngagementEvent(ValueError):
    pass


class SessionState(str, Enum):
    STARTED = "started"
    QUIZ_UNLOCKED = "quiz_unlocked"
    PRACTICE_UNLOCKED = "practice_unlocked"
    ENDED = "ended"


@dataclass(frozen=True)
class Thresholds:
    quiz: int = DEFAULT_QUIZ_THRESHOLD
    practice: int = DEFAULT_PRACTICE_THRESHOLD

    @classmethod
    def from_env(cls) -> "Thresholds":
        return cls(
            quiz=get_env_int("ENGAGEMENT_QUIZ_THRESHOLD", DEFAULT_QUIZ_THRESHOLD),
            practice=get_env_int("ENGAGEMENT_PRACTICE_THRESHOLD", DEFAULT_PRACTICE_THRESHOLD),
        )


@dataclass(frozen=True)
class Progress:
    """Score-related part of a session."""

    score: int = 0
    quiz_triggered: bool = False
    practice_triggered: bool = False
    practice_completed: bool = False
    ended: bool = False

    @property
    def state(self) -> SessionState:
        return derive_state(self.quiz_triggered, self.practice_triggered, self.ended)


def derive_state(quiz_triggered: bool, practice_triggered: bool, ended: bool) -> SessionState:
    if ended:
        return SessionState.ENDED
    if practice_triggered:
        return SessionState.PRACTICE_UNLOCKED
    if quiz_triggered:
        return SessionState.QUIZ_UNLOCKED
    return SessionState.STARTED


def apply_points(
    progress: Progress, points: int, thresholds: Thresholds
) -> Tuple[Progress, Tuple[str, ...]]:
    """Add ``points`` and evaluate both thresholds.

    Returns the new progress and the names of gates opened by this call
    (``"quiz"``, ``"practice"``). Flags already set stay set.
    """
    if progress.ended:
        raise SessionClosedError("session has ended")
    if points < 0:
        raise InvalidEngagementEvent("points must not be negative")
    score = progress.score + points
    unlocked = []
    quiz = progress.quiz_triggered
    practice = progress.practice_triggered
    if not quiz and score >= thresholds.quiz:
        quiz = True
        unlocked.append("quiz")
    if not practice and score >= thresholds.practice:
        practice = True
        unlocked.append("practice")
    return replace(progress, score=score, quiz_triggered=quiz, practice_triggered=practice), tuple(unlocked)


def points_remaining(score: int, threshold: int) -> int:
    return max(0, threshold - score)


@dataclass
class EngagementUpdate:
    session_id: str
    event_id: int
    event_type: str
    points_awarded: int
    score: int
    quiz_unlocked: bool
    practice_unlocked: bool
    newly_unlocked: Tuple[str, ...]
    points_to_quiz: int
    points_to_practice: int
    state: str

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["newly_unlocked"] = list(self.newly_unlocked)
        return data


def _json_log(event: str, payload: Dict[str, Any]) -> None:
    record = {"event": event, **payload}
    try:
        message = json.dumps(record, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError):
        message = json.dumps(
            {"event": event, "error": "serialization_failed", "payload_repr": repr(payload)},
            ensure_ascii=False,
            sort_keys=True,
        )
    _LOGGER.info(message)


def resolve_points(
    event_type: str,
    points: Optional[Any] = None,
    points_table: Optional[Mapping[str, int]] = None,
) -> int:
    table = points_table or DEFAULT_POINTS
    if event_type not in table:
        raise InvalidEngagementEvent(f"Unknown event type: {event_type}")
    if points is None:
        return int(table[event_type])
    if isinstance(points, bool):
        raise InvalidEngagementEvent("points must be an integer")
    try:
        value = int(points)
    except (TypeError, ValueError):
        raise InvalidEngagementEvent(f"points must be an integer, got {points!r}") from None
    if value != points and not isinstance(points, str):
        raise InvalidEngagementEvent(f"points must be an integer, got {points!r}")
    if value < 0:
        raise InvalidEngagementEvent("points must not be negative")
    return value


def _progress_from_session(session: Mapping[str, Any]) -> Progress:
    return Progress(
        score=int(session.get("engagement_score") or 0),
        quiz_triggered=bool(session.get("quiz_triggered")),
        practice_triggered=bool(session.get("practice_triggered")),
        practice_completed=bool(session.get("practice_completed")),
        ended=session.get("ended_at") is not None,
    )


class EngagementAccumulator:
    def __init__(
        self,
        db_module=db,
        thresholds: Optional[Thresholds] = None,
        points_table: Optional[Mapping[str, int]] = None,
    ):
        self.db = db_module
        self.thresholds = thresholds or Thresholds.from_env()
        self.points_table = dict(points_table or DEFAULT_POINTS)

    # ---- lifecycle ----

    def start_session(
        self,
        user_id: str,
        *,
        topic_id: Optional[str] = None,
        lesson_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not user_id or not str(user_id).strip():
            raise InvalidEngagementEvent("user_id is required")
        sid = session_id or uuid4().hex
        self.db.create_session(sid, str(user_id).strip(), topic_id=topic_id, lesson_id=lesson_id)
        _LOGGER.info("Started learning session %s for user %s", sid, user_id)
        return self.status(sid)

    def record_event(
        self,
        session_id: str,
        event_type: str,
        points: Optional[Any] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        occurred_at: Optional[Any] = None,
    ) -> EngagementUpdate:
        """Append one engagement event and re-evaluate both thresholds."""
        normalized_type = (event_type or "").strip().lower()
        awarded = resolve_points(normalized_type, points, self.points_table)
        if metadata is not None and not isinstance(metadata, Mapping):
            raise InvalidEngagementEvent("metadata must be an object")
        try:
            stamp = self.db.normalise_timestamp(occurred_at)
        except (TypeError, ValueError):
            raise InvalidEngagementEvent(f"invalid occurred_at: {occurred_at!r}") from None

        with self.db.transaction() as con:
            session = self.db.get_session(session_id, con=con)
            if session is None:
                raise SessionNotFoundError(f"session {session_id} not found")
            before = _progress_from_session(session)
            after, unlocked = apply_points(before, awarded, self.thresholds)
            if normalized_type == "practice_completion":
                after = replace(after, practice_completed=True)

            quiz_at = session.get("quiz_triggered_at")
            practice_at = session.get("practice_required_at")
            if "quiz" in unlocked:
                quiz_at = stamp
            if "practice" in unlocked:
                practice_at = stamp

            event_id = self.db.insert_engagement_event(
                con, session_id, normalized_type, awarded, after.score, metadata, stamp
            )
            self.db.update_session_progress(
                con,
                session_id,
                engagement_score=after.score,
                quiz_triggered=after.quiz_triggered,
                practice_triggered=after.practice_triggered,
                practice_completed=after.practice_completed,
                quiz_triggered_at=quiz_at,
                practice_required_at=practice_at,
                last_activity_at=max(stamp, session.get("last_activity_at") or stamp),
            )

        update = EngagementUpdate(
            session_id=session_id,
            event_id=event_id,
            event_type=normalized_type,
            points_awarded=awarded,
            score=after.score,
            quiz_unlocked=after.quiz_triggered,
            practice_unlocked=after.practice_triggered,
            newly_unlocked=unlocked,
            points_to_quiz=points_remaining(after.score, self.thresholds.quiz),
            points_to_practice=points_remaining(after.score, self.thresholds.practice),
            state=after.state.value,
        )
        _json_log(
            "engagement_event",
            {
                "session_id": session_id,
                "event_type": normalized_type,
                "points": awarded,
                "score": after.score,
                "state": update.state,
            },
        )
        for gate in unlocked:
            _json_log(
                "engagement_unlock",
                {"session_id": session_id, "gate": gate, "score": after.score},
            )
        return update

    def end_session(self, session_id: str) -> Dict[str, Any]:
        """Soft-end a session; ending twice keeps the first end time."""
        with self.db.transaction() as con:
            session = self.db.get_session(session_id, con=con)
            if session is None:
                raise SessionNotFoundError(f"session {session_id} not found")
            if session.get("ended_at") is None:
                self.db.mark_session_ended(con, session_id, self.db.format_timestamp())
        return self.status(session_id)

    def record_user_choice(
        self, session_id: str, choice: str, reason: Optional[str] = None
    ) -> Dict[str, Any]:
        normalized = (choice or "").strip().lower()
        if normalized not in PROVIDER_CHOICES:
            raise InvalidEngagementEvent(
                f"choice must be one of {', '.join(PROVIDER_CHOICES)}"
            )
        with self.db.transaction() as con:
            if self.db.get_session(session_id, con=con) is None:
                raise SessionNotFoundError(f"session {session_id} not found")
            self.db.set_session_choice(con, session_id, normalized, reason)
        return self.status(session_id)

    # ---- read side ----

    def events(self, session_id: str) -> List[Dict[str, Any]]:
        """Stored events of a session, oldest first, with the running score."""
        if self.db.get_session(session_id) is None:
            raise SessionNotFoundError(f"session {session_id} not found")
        return self.db.list_engagement_events(session_id)

    def status(self, session_id: str) -> Dict[str, Any]:
        session = self.db.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"session {session_id} not found")
        progress = _progress_from_session(session)
        return {
            "session_id": session["id"],
            "user_id": session["user_id"],
            "topic_id": session.get("topic_id"),
            "lesson_id": session.get("lesson_id"),
            "quiz_threshold": self.thresholds.quiz,
            "practice_threshold": self.thresholds.practice,
            "current_score": progress.score,
            "quiz_unlocked": progress.quiz_triggered,
            "practice_unlocked": progress.practice_triggered,
            "points_to_quiz": points_remaining(progress.score, self.thresholds.quiz),
            "points_to_practice": points_remaining(progress.score, self.thresholds.practice),
            "state": progress.state.value,
            "practice_completed": progress.practice_completed,
            "practice_required_at": session.get("practice_required_at"),
            "providers_used": session.get("providers_used", []),
            "user_choice": session.get("user_choice"),
            "started_at": session.get("started_at"),
            "ended_at": session.get("ended_at"),
        }
