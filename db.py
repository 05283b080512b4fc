import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Generator, Iterable, List, Mapping, Optional

from db_pool import SQLiteConnectionPool

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
ATTEMPT_TABLES = {"quiz": "quiz_attempts", "practice": "practice_attempts"}


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def transaction():
    """Context manager yielding a connection inside ``BEGIN IMMEDIATE``."""
    return _pool.transaction()


@contextmanager
def _using(con: Optional[sqlite3.Connection]) -> Generator[sqlite3.Connection, None, None]:
    if con is not None:
        yield con
        return
    with _pool.get_connection() as pooled:
        yield pooled
        pooled.commit()


def _exec(sql: str, params: Iterable = (), con: Optional[sqlite3.Connection] = None):
    with _using(con) as active:
        return active.execute(sql, tuple(params))


def _query(sql: str, params: Iterable = (), con: Optional[sqlite3.Connection] = None) -> list[sqlite3.Row]:
    with _using(con) as active:
        return active.execute(sql, tuple(params)).fetchall()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: Optional[datetime] = None) -> str:
    """Fixed-width UTC timestamp; string order matches chronological order."""
    value = moment or utc_now()
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def normalise_timestamp(value: Optional[Any]) -> str:
    if value is None:
        return format_timestamp()
    if isinstance(value, datetime):
        return format_timestamp(value)
    parsed = parse_timestamp(str(value))
    return format_timestamp(parsed)


def init() -> None:
    with _conn() as con:
        con.executescript(
            """
            CREATE TABLE IF NOT EXISTS learning_sessions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                topic_id TEXT,
                lesson_id TEXT,
                engagement_score INTEGER NOT NULL DEFAULT 0 CHECK (engagement_score >= 0),
                quiz_triggered INTEGER NOT NULL DEFAULT 0,
                quiz_triggered_at TEXT,
                practice_triggered INTEGER NOT NULL DEFAULT 0,
                practice_required_at TEXT,
                practice_completed INTEGER NOT NULL DEFAULT 0,
                providers_used TEXT NOT NULL DEFAULT '[]',
                user_choice TEXT CHECK (user_choice IN ('gemini', 'together', 'both', 'neither')),
                choice_reason TEXT,
                started_at TEXT NOT NULL,
                ended_at TEXT,
                last_activity_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_learning_sessions_user
                ON learning_sessions(user_id, started_at);

            CREATE TABLE IF NOT EXISTS engagement_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL REFERENCES learning_sessions(id),
                event_type TEXT NOT NULL,
                points INTEGER NOT NULL CHECK (points >= 0),
                score_after INTEGER NOT NULL,
                metadata TEXT,
                occurred_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_engagement_events_session
                ON engagement_events(session_id, id);

            CREATE TABLE IF NOT EXISTS chat_messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                session_id TEXT,
                topic TEXT,
                message TEXT NOT NULL,
                response TEXT NOT NULL,
                provider TEXT,
                response_time_ms INTEGER,
                is_fallback INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_chat_messages_session
                ON chat_messages(session_id, created_at);

            CREATE TABLE IF NOT EXISTS quiz_attempts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                session_id TEXT,
                quiz_id TEXT,
                score REAL,
                passed INTEGER,
                time_spent_seconds INTEGER,
                attribution_chat_message_id INTEGER,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS practice_attempts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                session_id TEXT,
                problem_id TEXT,
                score REAL,
                is_correct INTEGER,
                time_spent_seconds INTEGER,
                attribution_chat_message_id INTEGER,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS attribution_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                attempt_kind TEXT NOT NULL CHECK (attempt_kind IN ('quiz', 'practice')),
                attempt_id INTEGER NOT NULL,
                source_chat_message_id INTEGER,
                attributed_provider TEXT NOT NULL,
                confidence_tier TEXT NOT NULL CHECK (confidence_tier IN ('explicit', 'session', 'temporal')),
                delay_seconds INTEGER,
                created_at TEXT NOT NULL,
                UNIQUE (attempt_kind, attempt_id)
            );

            CREATE TABLE IF NOT EXISTS ai_preference_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                session_id TEXT,
                attempt_kind TEXT NOT NULL,
                attempt_id INTEGER NOT NULL,
                chosen_ai TEXT,
                attributed_provider TEXT,
                confidence_tier TEXT,
                confidence_weight REAL NOT NULL,
                performance_score REAL,
                success INTEGER,
                time_spent_seconds INTEGER,
                context TEXT,
                created_at TEXT NOT NULL
            );
            """
        )
        con.commit()


# -------------- learning sessions --------------


def _session_from_row(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    data = dict(row)
    try:
        providers = json.loads(data.get("providers_used") or "[]")
    except json.JSONDecodeError:
        providers = []
    data["providers_used"] = sorted({str(p) for p in providers if p})
    for flag in ("quiz_triggered", "practice_triggered", "practice_completed"):
        data[flag] = bool(data.get(flag))
    return data


def create_session(
    session_id: str,
    user_id: str,
    *,
    topic_id: Optional[str] = None,
    lesson_id: Optional[str] = None,
    started_at: Optional[Any] = None,
    con: Optional[sqlite3.Connection] = None,
) -> Dict[str, Any]:
    started = normalise_timestamp(started_at)
    _exec(
        """
        INSERT INTO learning_sessions (id, user_id, topic_id, lesson_id, started_at, last_activity_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (session_id, user_id, topic_id, lesson_id, started, started),
        con=con,
    )
    session = get_session(session_id, con=con)
    if session is None:
        raise sqlite3.IntegrityError(f"session {session_id} was not stored")
    return session


def get_session(session_id: str, con: Optional[sqlite3.Connection] = None) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM learning_sessions WHERE id = ?", (session_id,), con=con)
    return _session_from_row(rows[0] if rows else None)


def update_session_progress(
    con: sqlite3.Connection,
    session_id: str,
    *,
    engagement_score: int,
    quiz_triggered: bool,
    practice_triggered: bool,
    practice_completed: bool,
    quiz_triggered_at: Optional[str],
    practice_required_at: Optional[str],
    last_activity_at: str,
) -> None:
    con.execute(
        """
        UPDATE learning_sessions
        SET engagement_score = ?,
            quiz_triggered = ?,
            quiz_triggered_at = ?,
            practice_triggered = ?,
            practice_required_at = ?,
            practice_completed = ?,
            last_activity_at = ?
        WHERE id = ?
        """,
        (
            int(engagement_score),
            int(bool(quiz_triggered)),
            quiz_triggered_at,
            int(bool(practice_triggered)),
            practice_required_at,
            int(bool(practice_completed)),
            last_activity_at,
            session_id,
        ),
    )


def mark_session_ended(con: sqlite3.Connection, session_id: str, ended_at: str) -> None:
    con.execute(
        "UPDATE learning_sessions SET ended_at = ?, last_activity_at = ? WHERE id = ? AND ended_at IS NULL",
        (ended_at, ended_at, session_id),
    )


def set_session_choice(
    con: sqlite3.Connection, session_id: str, choice: str, reason: Optional[str]
) -> None:
    con.execute(
        "UPDATE learning_sessions SET user_choice = ?, choice_reason = ? WHERE id = ?",
        (choice, reason, session_id),
    )


def add_session_provider(con: sqlite3.Connection, session_id: str, provider: str) -> None:
    row = con.execute(
        "SELECT providers_used FROM learning_sessions WHERE id = ?", (session_id,)
    ).fetchone()
    if row is None:
        return
    try:
        providers = set(json.loads(row["providers_used"] or "[]"))
    except json.JSONDecodeError:
        providers = set()
    if provider in providers:
        return
    providers.add(provider)
    con.execute(
        "UPDATE learning_sessions SET providers_used = ? WHERE id = ?",
        (json.dumps(sorted(providers)), session_id),
    )


def list_stale_sessions(cutoff: str) -> List[Dict[str, Any]]:
    """Open sessions whose last activity is older than ``cutoff``."""
    rows = _query(
        """
        SELECT * FROM learning_sessions
        WHERE ended_at IS NULL AND last_activity_at < ?
        ORDER BY last_activity_at
        """,
        (cutoff,),
    )
    return [s for s in (_session_from_row(r) for r in rows) if s is not None]


# -------------- engagement events --------------


def insert_engagement_event(
    con: sqlite3.Connection,
    session_id: str,
    event_type: str,
    points: int,
    score_after: int,
    metadata: Optional[Mapping[str, Any]],
    occurred_at: str,
) -> int:
    cur = con.execute(
        """
        INSERT INTO engagement_events (session_id, event_type, points, score_after, metadata, occurred_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            session_id,
            event_type,
            int(points),
            int(score_after),
            json.dumps(dict(metadata or {}), ensure_ascii=False, default=str),
            occurred_at,
        ),
    )
    return int(cur.lastrowid)


def list_engagement_events(session_id: str) -> List[Dict[str, Any]]:
    rows = _query(
        "SELECT * FROM engagement_events WHERE session_id = ? ORDER BY id", (session_id,)
    )
    events = []
    for row in rows:
        data = dict(row)
        try:
            data["metadata"] = json.loads(data.get("metadata") or "{}")
        except json.JSONDecodeError:
            data["metadata"] = {}
        events.append(data)
    return events


# -------------- chat messages --------------


def record_chat_message(
    user_id: str,
    message: str,
    response: str,
    *,
    session_id: Optional[str] = None,
    topic: Optional[str] = None,
    provider: Optional[str] = None,
    response_time_ms: Optional[int] = None,
    is_fallback: bool = False,
    created_at: Optional[Any] = None,
) -> int:
    """Persist a tutor exchange; non-fallback replies extend the session's providers_used."""
    stamp = normalise_timestamp(created_at)
    with transaction() as con:
        cur = con.execute(
            """
            INSERT INTO chat_messages
            (user_id, session_id, topic, message, response, provider, response_time_ms, is_fallback, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                session_id,
                topic,
                message,
                response,
                provider,
                response_time_ms,
                int(bool(is_fallback)),
                stamp,
            ),
        )
        message_id = int(cur.lastrowid)
        if session_id and provider and not is_fallback:
            add_session_provider(con, session_id, provider)
            con.execute(
                "UPDATE learning_sessions SET last_activity_at = MAX(last_activity_at, ?) WHERE id = ?",
                (stamp, session_id),
            )
    return message_id


def _chat_from_row(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    data["is_fallback"] = bool(data.get("is_fallback"))
    return data


def get_chat_message(message_id: int, con: Optional[sqlite3.Connection] = None) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM chat_messages WHERE id = ?", (message_id,), con=con)
    return _chat_from_row(rows[0]) if rows else None


def list_chat_messages(
    session_id: str,
    *,
    until: Optional[str] = None,
    con: Optional[sqlite3.Connection] = None,
) -> List[Dict[str, Any]]:
    """Messages of ``session_id`` in chronological order, optionally up to ``until``."""
    sql = "SELECT * FROM chat_messages WHERE session_id = ?"
    params: List[Any] = [session_id]
    if until is not None:
        sql += " AND created_at <= ?"
        params.append(until)
    sql += " ORDER BY created_at, id"
    return [_chat_from_row(row) for row in _query(sql, params, con=con)]


def recent_history(session_id: str, limit: int = 10) -> List[Dict[str, Any]]:
    """Last ``limit`` exchanges of a session flattened into role/content records."""
    rows = _query(
        """
        SELECT message, response FROM chat_messages
        WHERE session_id = ? AND is_fallback = 0
        ORDER BY created_at DESC, id DESC
        LIMIT ?
        """,
        (session_id, int(limit)),
    )
    history: List[Dict[str, Any]] = []
    for row in reversed(rows):
        history.append({"role": "user", "content": row["message"]})
        history.append({"role": "assistant", "content": row["response"]})
    return history


# -------------- assessment attempts --------------


def _attempt_table(kind: str) -> str:
    try:
        return ATTEMPT_TABLES[kind]
    except KeyError:
        raise ValueError(f"Unknown attempt kind: {kind}") from None


def record_quiz_attempt(
    user_id: str,
    *,
    session_id: Optional[str] = None,
    quiz_id: Optional[str] = None,
    score: Optional[float] = None,
    passed: Optional[bool] = None,
    time_spent_seconds: Optional[int] = None,
    attribution_chat_message_id: Optional[int] = None,
    created_at: Optional[Any] = None,
) -> int:
    cur = _exec(
        """
        INSERT INTO quiz_attempts
        (user_id, session_id, quiz_id, score, passed, time_spent_seconds, attribution_chat_message_id, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            user_id,
            session_id,
            quiz_id,
            score,
            None if passed is None else int(bool(passed)),
            time_spent_seconds,
            attribution_chat_message_id,
            normalise_timestamp(created_at),
        ),
    )
    return int(cur.lastrowid)


def record_practice_attempt(
    user_id: str,
    *,
    session_id: Optional[str] = None,
    problem_id: Optional[str] = None,
    score: Optional[float] = None,
    is_correct: Optional[bool] = None,
    time_spent_seconds: Optional[int] = None,
    attribution_chat_message_id: Optional[int] = None,
    created_at: Optional[Any] = None,
) -> int:
    cur = _exec(
        """
        INSERT INTO practice_attempts
        (user_id, session_id, problem_id, score, is_correct, time_spent_seconds, attribution_chat_message_id, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            user_id,
            session_id,
            problem_id,
            score,
            None if is_correct is None else int(bool(is_correct)),
            time_spent_seconds,
            attribution_chat_message_id,
            normalise_timestamp(created_at),
        ),
    )
    return int(cur.lastrowid)


def get_attempt(kind: str, attempt_id: int, con: Optional[sqlite3.Connection] = None) -> Optional[Dict[str, Any]]:
    table = _attempt_table(kind)
    rows = _query(f"SELECT * FROM {table} WHERE id = ?", (attempt_id,), con=con)
    if not rows:
        return None
    data = dict(rows[0])
    data["kind"] = kind
    success = data.get("passed") if kind == "quiz" else data.get("is_correct")
    data["success"] = None if success is None else bool(success)
    return data


# -------------- attribution records --------------


def get_attribution_record(
    kind: str, attempt_id: int, con: Optional[sqlite3.Connection] = None
) -> Optional[Dict[str, Any]]:
    rows = _query(
        "SELECT * FROM attribution_records WHERE attempt_kind = ? AND attempt_id = ?",
        (kind, attempt_id),
        con=con,
    )
    return dict(rows[0]) if rows else None


def insert_attribution_record(con: sqlite3.Connection, record: Mapping[str, Any]) -> bool:
    """Insert unless a record already exists; returns whether this call wrote it."""
    cur = con.execute(
        """
        INSERT OR IGNORE INTO attribution_records
        (attempt_kind, attempt_id, source_chat_message_id, attributed_provider,
         confidence_tier, delay_seconds, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            record["attempt_kind"],
            record["attempt_id"],
            record.get("source_chat_message_id"),
            record["attributed_provider"],
            record["confidence_tier"],
            record.get("delay_seconds"),
            record.get("created_at") or format_timestamp(),
        ),
    )
    return cur.rowcount == 1


# -------------- AI preference logs --------------


def insert_preference_log(
    user_id: str,
    attempt_kind: str,
    attempt_id: int,
    *,
    confidence_weight: float,
    session_id: Optional[str] = None,
    chosen_ai: Optional[str] = None,
    attributed_provider: Optional[str] = None,
    confidence_tier: Optional[str] = None,
    performance_score: Optional[float] = None,
    success: Optional[bool] = None,
    time_spent_seconds: Optional[int] = None,
    context: Optional[Mapping[str, Any]] = None,
) -> int:
    cur = _exec(
        """
        INSERT INTO ai_preference_logs
        (user_id, session_id, attempt_kind, attempt_id, chosen_ai, attributed_provider,
         confidence_tier, confidence_weight, performance_score, success, time_spent_seconds,
         context, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            user_id,
            session_id,
            attempt_kind,
            attempt_id,
            chosen_ai,
            attributed_provider,
            confidence_tier,
            float(confidence_weight),
            performance_score,
            None if success is None else int(bool(success)),
            time_spent_seconds,
            json.dumps(dict(context or {}), ensure_ascii=False, default=str),
            format_timestamp(),
        ),
    )
    return int(cur.lastrowid)


def list_preference_logs(
    user_id: str,
    *,
    since: Optional[str] = None,
    attempt_kind: Optional[str] = None,
) -> List[Dict[str, Any]]:
    sql = "SELECT * FROM ai_preference_logs WHERE user_id = ?"
    params: List[Any] = [user_id]
    if since is not None:
        sql += " AND created_at >= ?"
        params.append(since)
    if attempt_kind is not None:
        sql += " AND attempt_kind = ?"
        params.append(attempt_kind)
    rows = _query(sql + " ORDER BY id", params)
    logs = []
    for row in rows:
        data = dict(row)
        try:
            data["context"] = json.loads(data.get("context") or "{}")
        except json.JSONDecodeError:
            data["context"] = {}
        logs.append(data)
    return logs
