import threading

import pytest

import db
from engines.engagement import (
    DEFAULT_POINTS,
    EngagementAccumulator,
    InvalidEngagementEvent,
    Progress,
    SessionClosedError,
    SessionNotFoundError,
    SessionState,
    Thresholds,
    apply_points,
    resolve_points,
)


@pytest.fixture
def engine(temp_db):
    return EngagementAccumulator(thresholds=Thresholds(quiz=30, practice=70))


@pytest.fixture
def session_id(engine):
    return engine.start_session("learner-1", topic_id="loops", lesson_id="lesson-3")["session_id"]


def test_new_session_starts_locked(engine, session_id):
    status = engine.status(session_id)

    assert status["current_score"] == 0
    assert status["state"] == SessionState.STARTED.value
    assert status["quiz_unlocked"] is False
    assert status["practice_unlocked"] is False
    assert status["points_to_quiz"] == 30
    assert status["points_to_practice"] == 70
    assert status["topic_id"] == "loops"
    assert status["lesson_id"] == "lesson-3"
    assert status["providers_used"] == []
    assert status["ended_at"] is None


def test_score_just_below_quiz_threshold_keeps_gates_closed(engine, session_id):
    update = engine.record_event(session_id, "interaction", points=29)

    assert update.score == 29
    assert update.quiz_unlocked is False
    assert update.newly_unlocked == ()
    assert update.points_to_quiz == 1
    assert update.state == "started"


def test_reaching_quiz_threshold_unlocks_quiz_only(engine, session_id):
    engine.record_event(session_id, "interaction", points=29)
    update = engine.record_event(session_id, "scroll")

    assert update.score == 30
    assert update.quiz_unlocked is True
    assert update.practice_unlocked is False
    assert update.newly_unlocked == ("quiz",)
    assert update.state == "quiz_unlocked"
    assert db.get_session(session_id)["quiz_triggered_at"] is not None


def test_single_large_event_unlocks_both_gates(engine, session_id):
    update = engine.record_event(session_id, "interaction", points=70)

    assert update.newly_unlocked == ("quiz", "practice")
    assert update.state == "practice_unlocked"
    assert update.points_to_practice == 0
    session = db.get_session(session_id)
    assert session["practice_required_at"] is not None
    assert session["quiz_triggered_at"] == session["practice_required_at"]


def test_flags_are_monotone(engine, session_id):
    engine.record_event(session_id, "interaction", points=35)
    update = engine.record_event(session_id, "lesson_start")

    assert update.points_awarded == 0
    assert update.quiz_unlocked is True
    assert update.newly_unlocked == ()


def test_default_points_table_is_used(engine, session_id):
    for event_type in ("message", "code_execution", "quiz_completion"):
        engine.record_event(session_id, event_type)

    expected = DEFAULT_POINTS["message"] + DEFAULT_POINTS["code_execution"] + DEFAULT_POINTS["quiz_completion"]
    assert engine.status(session_id)["current_score"] == expected


def test_events_are_stored_with_running_score(engine, session_id):
    engine.record_event(session_id, "message", metadata={"chars": 42})
    engine.record_event(session_id, "code_execution")

    events = db.list_engagement_events(session_id)

    assert [e["event_type"] for e in events] == ["message", "code_execution"]
    assert [e["score_after"] for e in events] == [5, 15]
    assert events[0]["metadata"] == {"chars": 42}


def test_practice_completion_sets_completed_flag(engine, session_id):
    engine.record_event(session_id, "practice_completion")

    status = engine.status(session_id)
    assert status["practice_completed"] is True
    assert status["current_score"] == 20


def test_event_type_is_case_insensitive(engine, session_id):
    update = engine.record_event(session_id, "  Message ")

    assert update.event_type == "message"


@pytest.mark.parametrize(
    "event_type, points",
    [
        ("dance", None),
        ("message", -5),
        ("message", True),
        ("message", 2.5),
        ("message", "lots"),
    ],
)
def test_invalid_events_are_rejected_without_side_effects(engine, session_id, event_type, points):
    with pytest.raises(InvalidEngagementEvent):
        engine.record_event(session_id, event_type, points=points)

    assert db.list_engagement_events(session_id) == []
    assert engine.status(session_id)["current_score"] == 0


def test_unknown_session_is_not_found(engine):
    with pytest.raises(SessionNotFoundError):
        engine.record_event("missing", "message")
    with pytest.raises(SessionNotFoundError):
        engine.status("missing")


def test_ended_session_rejects_events(engine, session_id):
    engine.record_event(session_id, "message")
    ended = engine.end_session(session_id)

    assert ended["state"] == "ended"
    with pytest.raises(SessionClosedError):
        engine.record_event(session_id, "message")
    assert engine.status(session_id)["current_score"] == 5


def test_end_session_is_idempotent(engine, session_id):
    first = engine.end_session(session_id)["ended_at"]
    second = engine.end_session(session_id)["ended_at"]

    assert first == second


def test_user_choice_is_recorded(engine, session_id):
    status = engine.record_user_choice(session_id, "Gemini", "clearer examples")

    assert status["user_choice"] == "gemini"
    assert db.get_session(session_id)["choice_reason"] == "clearer examples"


def test_invalid_choice_is_rejected(engine, session_id):
    with pytest.raises(InvalidEngagementEvent):
        engine.record_user_choice(session_id, "openai")


def test_start_session_requires_user(engine):
    with pytest.raises(InvalidEngagementEvent):
        engine.start_session("  ")


def test_thresholds_come_from_environment(monkeypatch):
    monkeypatch.setenv("ENGAGEMENT_QUIZ_THRESHOLD", "10")
    monkeypatch.setenv("ENGAGEMENT_PRACTICE_THRESHOLD", "not-a-number")

    thresholds = Thresholds.from_env()

    assert thresholds.quiz == 10
    assert thresholds.practice == 70


def test_apply_points_is_pure():
    start = Progress(score=25)

    after, unlocked = apply_points(start, 10, Thresholds())

    assert start.score == 25
    assert after.score == 35
    assert unlocked == ("quiz",)


def test_apply_points_rejects_ended_progress():
    with pytest.raises(SessionClosedError):
        apply_points(Progress(ended=True), 1, Thresholds())


def test_resolve_points_accepts_numeric_strings():
    assert resolve_points("message", "7") == 7
    assert resolve_points("time") == DEFAULT_POINTS["time"]


def test_malformed_occurred_at_is_rejected_without_storing(engine, session_id):
    with pytest.raises(InvalidEngagementEvent):
        engine.record_event(session_id, "message", occurred_at="not-a-date")

    assert db.list_engagement_events(session_id) == []
    assert engine.status(session_id)["current_score"] == 0


def test_concurrent_events_are_all_counted(engine, session_id):
    errors = []

    def worker():
        try:
            for _ in range(10):
                engine.record_event(session_id, "interaction", points=1)
        except Exception as exc:  # surfaced through the errors list
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert engine.status(session_id)["current_score"] == 80
    events = engine.events(session_id)
    assert len(events) == 80
    assert sorted(e["score_after"] for e in events) == list(range(1, 81))


def test_events_read_path(engine, session_id):
    engine.record_event(session_id, "message", metadata={"source": "chat"})
    engine.record_event(session_id, "code_execution")

    events = engine.events(session_id)

    assert [e["event_type"] for e in events] == ["message", "code_execution"]
    assert events[0]["metadata"] == {"source": "chat"}
    assert events[-1]["score_after"] == engine.status(session_id)["current_score"]
    with pytest.raises(SessionNotFoundError):
        engine.events("missing")
