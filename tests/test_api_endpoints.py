import asyncio
import json
from typing import Optional
from urllib.parse import urlencode

import pytest

import app
import db
from env_validation import ProviderConfig
from tutor import TutorService
from stubs import StubHttp, StubResponse, gemini_ok, together_ok


async def _call_app(
    method: str, path: str, *, payload: Optional[dict] = None, query: Optional[dict] = None
):
    body = b""
    headers = [(b"host", b"testserver")]
    if payload is not None:
        body = json.dumps(payload).encode("utf-8")
        headers.extend(
            [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
            ]
        )
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method.upper(),
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "scheme": "http",
        "query_string": urlencode(query or {}, doseq=True).encode(),
        "headers": headers,
        "client": ("testclient", 12345),
        "server": ("testserver", 80),
        "state": {},
    }

    messages = []
    body_sent = False

    async def receive():
        nonlocal body_sent
        if not body_sent:
            body_sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        # client stays connected until the response is complete
        await asyncio.Event().wait()

    async def send(message):
        messages.append(message)

    await app.app(scope, receive, send)
    status = 500
    body_bytes = b""
    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")
    data = json.loads(body_bytes.decode("utf-8") or "{}")
    return status, data


def _post(path: str, payload: Optional[dict] = None) -> tuple[int, dict]:
    return asyncio.run(_call_app("POST", path, payload=payload if payload is not None else {}))


def _get(path: str, query: Optional[dict] = None) -> tuple[int, dict]:
    return asyncio.run(_call_app("GET", path, query=query))


@pytest.fixture
def http_stub(monkeypatch):
    http = StubHttp()
    configs = {
        "gemini": ProviderConfig(
            name="gemini", api_key="g", api_url="https://gemini.example/v1beta", model="gm"
        ),
        "together": ProviderConfig(
            name="together",
            api_key="t",
            api_url="https://together.example/v1",
            model="tm",
            history_turns=2,
        ),
    }
    service = TutorService(configs, default_provider="together", http=http, sleep=lambda _: None)
    monkeypatch.setattr(app, "_TUTOR_SERVICE", service)
    return http


def _start_session(user_id="learner-1"):
    status, body = _post("/sessions/start", {"user_id": user_id, "topic_id": "loops"})
    assert status == 200
    return body["session_id"]


def test_health_reports_providers(temp_db, http_stub):
    status, body = _get("/health")

    assert status == 200
    assert body["default_provider"] == "together"
    assert body["providers"]["gemini"]["api_key_present"] is True
    assert body["worst_case_seconds"] == 93.0


def test_chat_returns_provider_reply_and_persists_it(temp_db, http_stub):
    session_id = _start_session()
    http_stub.responses.append(together_ok("A loop repeats code."))

    status, body = _post(
        "/tutor/chat",
        {
            "user_id": "learner-1",
            "question": "What is a loop?",
            "topic": "Loops",
            "session_id": session_id,
            "preferences": {"responseLength": "brief"},
        },
    )

    assert status == 200
    assert body["response"] == "A loop repeats code."
    assert body["provider"] == "together"
    assert body["is_fallback"] is False
    stored = db.get_chat_message(body["chat_message_id"])
    assert stored["provider"] == "together"
    assert stored["session_id"] == session_id
    assert db.get_session(session_id)["providers_used"] == ["together"]


def test_chat_falls_back_when_provider_is_down(temp_db, http_stub):
    session_id = _start_session()
    http_stub.responses.extend([StubResponse(503)] * 3)

    status, body = _post(
        "/tutor/chat",
        {"question": "explain recursion", "topic": "Java Basics", "session_id": session_id},
    )

    assert status == 200
    assert body["is_fallback"] is True
    assert "Java Basics" in body["response"]
    assert db.get_session(session_id)["providers_used"] == []


def test_chat_loads_stored_history_for_session(temp_db, http_stub):
    session_id = _start_session()
    db.record_chat_message(
        "learner-1", "What is a loop?", "Repetition.", session_id=session_id, provider="together"
    )
    http_stub.responses.append(together_ok("Yes."))

    status, _ = _post("/tutor/chat", {"question": "And a while loop?", "session_id": session_id})

    assert status == 200
    messages = http_stub.calls[0]["json"]["messages"]
    assert [m["content"] for m in messages[1:]] == [
        "What is a loop?",
        "Repetition.",
        "And a while loop?",
    ]


def test_chat_with_provider_override_and_context(temp_db, http_stub):
    http_stub.responses.append(gemini_ok("Arrays hold values."))

    status, body = _post(
        "/tutor/chat/context",
        {
            "question": "What is an array?",
            "provider": "gemini",
            "lesson_context": {"moduleTitle": "Arrays"},
        },
    )

    assert status == 200
    assert body["provider"] == "gemini"
    system = http_stub.calls[0]["json"]["systemInstruction"]["parts"][0]["text"]
    assert "Current module: Arrays" in system


def test_chat_rejects_blank_question_and_bad_preferences(temp_db, http_stub):
    assert _post("/tutor/chat", {"question": "  "})[0] == 422
    assert _post("/tutor/chat", {"question": "hi", "preferences": {"expertise_level": "guru"}})[0] == 422
    assert _post("/tutor/chat", {"question": "hi", "provider": "openai"})[0] == 422
    assert http_stub.calls == []


def test_compare_returns_both_providers(temp_db, http_stub):
    http_stub.responses.extend([gemini_ok("G"), together_ok("T")])

    status, body = _post("/tutor/compare", {"question": "What is a class?"})

    assert status == 200
    assert body["responses"]["gemini"]["response"] == "G"
    assert body["responses"]["together"]["response"] == "T"


def test_evaluate_returns_feedback(temp_db, http_stub):
    http_stub.responses.append(together_ok("Correct and tidy."))

    status, body = _post("/tutor/evaluate", {"code": "class A {}", "topic": "Classes"})

    assert status == 200
    assert body["feedback"] == "Correct and tidy."


def test_evaluate_surfaces_permanent_failures(temp_db, http_stub):
    http_stub.responses.append(StubResponse(400, text="bad request"))

    status, body = _post("/tutor/evaluate", {"code": "class A {}"})

    assert status == 502
    assert body["detail"]["provider"] == "together"
    assert body["detail"]["status_code"] == 400


def test_engagement_flow_unlocks_quiz_then_ends(temp_db):
    session_id = _start_session()

    for _ in range(5):
        status, update = _post(f"/sessions/{session_id}/events", {"event_type": "message"})
        assert status == 200
    assert update["score"] == 25
    assert update["quiz_unlocked"] is False

    status, update = _post(f"/sessions/{session_id}/events", {"event_type": "message"})
    assert update["newly_unlocked"] == ["quiz"]

    status, snapshot = _get(f"/sessions/{session_id}/status")
    assert snapshot["state"] == "quiz_unlocked"
    assert snapshot["points_to_practice"] == 40

    assert _post(f"/sessions/{session_id}/end")[0] == 200
    status, body = _post(f"/sessions/{session_id}/events", {"event_type": "message"})
    assert status == 409


def test_engagement_errors_map_to_status_codes(temp_db):
    session_id = _start_session()

    assert _post("/sessions/missing/events", {"event_type": "message"})[0] == 404
    assert _post(f"/sessions/{session_id}/events", {"event_type": "dance"})[0] == 422
    assert _post(f"/sessions/{session_id}/events", {"event_type": "message", "points": -1})[0] == 422
    assert _get("/sessions/missing/status")[0] == 404
    assert _post(f"/sessions/{session_id}/choice", {"choice": "openai"})[0] == 422


def test_quiz_attempt_is_attributed_on_creation(temp_db):
    session_id = _start_session()
    message_id = db.record_chat_message(
        "learner-1", "q", "a", session_id=session_id, provider="gemini",
        created_at="2025-01-01T10:00:00.000000Z",
    )

    status, body = _post(
        "/attempts/quiz",
        {"user_id": "learner-1", "session_id": session_id, "passed": True,
         "attribution_chat_message_id": message_id},
    )

    assert status == 200
    assert body["attempt_kind"] == "quiz"
    assert body["attribution"]["attributed_provider"] == "gemini"
    assert body["attribution"]["confidence_tier"] == "explicit"

    status, again = _post(f"/attempts/quiz/{body['attempt_id']}/attribution")
    assert again["reason"] == "already resolved"


def test_practice_attempt_can_defer_attribution(temp_db):
    status, body = _post(
        "/attempts/practice",
        {"user_id": "learner-1", "is_correct": False, "resolve_attribution": False},
    )

    assert status == 200
    assert body["attribution"] is None
    assert _post(f"/attempts/practice/{body['attempt_id']}/attribution")[1]["attributed"] is False
    assert _post("/attempts/practice/999/attribution")[0] == 404


def test_preference_log_endpoint(temp_db):
    _, attempt = _post("/attempts/quiz", {"user_id": "learner-1", "passed": False})

    status, body = _post(
        "/preferences/log",
        {"attempt_kind": "quiz", "attempt_id": attempt["attempt_id"], "chosen_ai": "together"},
    )

    assert status == 200
    assert body["confidence_weight"] == 0.80
    assert db.list_preference_logs("learner-1")[0]["chosen_ai"] == "together"


def test_event_with_malformed_timestamp_is_rejected(temp_db):
    session_id = _start_session()

    status, body = _post(
        f"/sessions/{session_id}/events", {"event_type": "message", "occurred_at": "garbage"}
    )

    assert status == 422
    assert "occurred_at" in body["detail"]
    assert _get(f"/sessions/{session_id}/events")[1]["events"] == []


def test_session_events_are_listed(temp_db):
    session_id = _start_session()
    _post(f"/sessions/{session_id}/events", {"event_type": "message"})
    _post(f"/sessions/{session_id}/events", {"event_type": "code_execution"})

    status, body = _get(f"/sessions/{session_id}/events")

    assert status == 200
    assert body["session_id"] == session_id
    assert [e["event_type"] for e in body["events"]] == ["message", "code_execution"]
    assert [e["score_after"] for e in body["events"]] == [5, 15]
    assert _get("/sessions/missing/events")[0] == 404


def test_preference_summary_endpoint(temp_db):
    session_id = _start_session()
    db.record_chat_message("learner-1", "q", "a", session_id=session_id, provider="gemini")
    for passed in (True, False):
        _, attempt = _post(
            "/attempts/quiz", {"user_id": "learner-1", "session_id": session_id, "passed": passed}
        )
        _post(
            "/preferences/log",
            {"attempt_kind": "quiz", "attempt_id": attempt["attempt_id"], "chosen_ai": "gemini"},
        )

    status, body = _get("/preferences/learner-1/summary", {"window": "2w"})

    assert status == 200
    assert body["window"] == "2w"
    assert body["total_choices"] == 2
    assert body["ai_choices"] == {"gemini": 2}
    assert body["success_rates"]["gemini"] == 50.0
    assert body["providers"]["gemini"]["attempts"] == 2
    assert len(body["recent_preferences"]) == 2


def test_preference_summary_rejects_bad_query(temp_db):
    assert _get("/preferences/learner-1/summary", {"window": "forever"})[0] == 422
    assert _get("/preferences/learner-1/summary", {"attempt_kind": "exam"})[0] == 422
    assert _get("/preferences/nobody/summary")[1]["total_choices"] == 0
