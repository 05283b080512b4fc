"""Attribute assessment attempts to the LLM provider that likely helped.

Tiers, strongest first:

* explicit: the attempt links to a chat message that recorded its provider;
* session: the learner chose a single provider for the session, or the session
  only ever used one provider;
* temporal: the most recent chat message before the attempt.

Only non-fallback messages with a provider count as evidence, and only
messages created at or before the attempt are considered. With no evidence the
attempt stays unattributed and nothing is written. A written record is never
updated.
"""

from __future__ import annotations

import json
import logging
import re
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence

import db
from schemas import (
    CONFIDENCE_WEIGHTS,
    UNKNOWN_CONFIDENCE_WEIGHT,
    AttributionRecord,
    ConfidenceTier,
)

_LOGGER = logging.getLogger(__name__)

SINGLE_PROVIDER_CHOICES = frozenset({"gemini", "together"})
PREFERENCE_CHOICES = ("gemini", "together", "both", "neither")
DEFAULT_SUMMARY_WINDOW = "30d"
RECENT_PREFERENCE_LIMIT = 10

_WINDOW_PATTERN = re.compile(r"^\s*(\d+)\s*([dw])\s*$", re.IGNORECASE)


class AttemptNotFoundError(LookupError):
    pass


class InvalidPreferenceQuery(ValueError):
    pass


@dataclass(frozen=True)
class AttributionDecision:
    provider: Optional[str] = None
    tier: Optional[ConfidenceTier] = None
    source_chat_message_id: Optional[int] = None
    delay_seconds: Optional[int] = None
    reason: str = ""

    @property
    def attributed(self) -> bool:
        return self.provider is not None and self.tier is not None


@dataclass
class AttributionResult:
    attempt_kind: str
    attempt_id: int
    record: Optional[AttributionRecord] = None
    created: bool = False
    reason: str = ""

    @property
    def attributed(self) -> bool:
        return self.record is not None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "attempt_kind": self.attempt_kind,
            "attempt_id": self.attempt_id,
            "attributed": self.attributed,
            "created": self.created,
            "reason": self.reason,
        }
        if self.record is not None:
            payload.update(self.record.model_dump(mode="json"))
            payload["confidence_weight"] = self.record.confidence_weight
        return payload


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


def _is_evidence(message: Optional[Mapping[str, Any]]) -> bool:
    return bool(message) and bool(message.get("provider")) and not message.get("is_fallback")


def _delay_seconds(attempt_at: Optional[datetime], message_at: Optional[datetime]) -> Optional[int]:
    if attempt_at is None or message_at is None:
        return None
    return max(0, int((attempt_at - message_at).total_seconds()))


def decide_attribution(
    attempt: Mapping[str, Any],
    session: Optional[Mapping[str, Any]],
    messages: Sequence[Mapping[str, Any]],
    linked_message: Optional[Mapping[str, Any]] = None,
) -> AttributionDecision:
    """Pick provider and tier for ``attempt``. Pure; performs no I/O.

    ``messages`` are the session's chat messages in chronological order.
    Messages after the attempt are ignored here as well.
    """
    attempt_at = db.parse_timestamp(attempt.get("created_at"))

    def _message_time(message: Mapping[str, Any]) -> Optional[datetime]:
        return db.parse_timestamp(message.get("created_at"))

    if linked_message is not None and _is_evidence(linked_message):
        linked_at = _message_time(linked_message)
        if attempt_at is None or linked_at is None or linked_at <= attempt_at:
            return AttributionDecision(
                provider=str(linked_message["provider"]),
                tier=ConfidenceTier.EXPLICIT,
                source_chat_message_id=linked_message.get("id"),
                delay_seconds=_delay_seconds(attempt_at, linked_at),
                reason="explicit chat message link",
            )
        _LOGGER.debug("Explicit link %s postdates attempt; ignoring", linked_message.get("id"))

    evidence = [
        m
        for m in messages
        if _is_evidence(m)
        and (attempt_at is None or (_message_time(m) or attempt_at) <= attempt_at)
    ]
    if not evidence:
        return AttributionDecision(reason="no chat messages before attempt")

    session_provider: Optional[str] = None
    if session is not None:
        choice = (session.get("user_choice") or "").lower()
        if choice in SINGLE_PROVIDER_CHOICES:
            session_provider = choice
        else:
            used = set(session.get("providers_used") or ())
            if not used:
                used = {str(m["provider"]) for m in evidence}
            if len(used) == 1:
                session_provider = next(iter(used))

    if session_provider is not None:
        matching = [m for m in evidence if m.get("provider") == session_provider]
        source = matching[-1] if matching else None
        return AttributionDecision(
            provider=session_provider,
            tier=ConfidenceTier.SESSION,
            source_chat_message_id=source.get("id") if source else None,
            delay_seconds=_delay_seconds(attempt_at, _message_time(source)) if source else None,
            reason="single provider in session",
        )

    latest = evidence[-1]
    return AttributionDecision(
        provider=str(latest["provider"]),
        tier=ConfidenceTier.TEMPORAL,
        source_chat_message_id=latest.get("id"),
        delay_seconds=_delay_seconds(attempt_at, _message_time(latest)),
        reason="most recent preceding message",
    )


def parse_window(window: Optional[str]) -> timedelta:
    """``"30d"`` / ``"2w"`` style look-back windows."""
    match = _WINDOW_PATTERN.match(window or DEFAULT_SUMMARY_WINDOW)
    if match is None:
        raise InvalidPreferenceQuery(f"window must look like 30d or 2w, got {window!r}")
    amount, unit = int(match.group(1)), match.group(2).lower()
    return timedelta(weeks=amount) if unit == "w" else timedelta(days=amount)


def _percent(part: float, whole: float) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def summarize_preferences(logs: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
    """Aggregate preference log rows for provider comparison. Pure.

    ``success_rates`` are keyed by what the learner chose; ``providers`` by the
    attributed provider, with a confidence-weighted rate next to the plain one.
    """
    choices = Counter(log["chosen_ai"] for log in logs if log.get("chosen_ai"))
    kinds = Counter(log["attempt_kind"] for log in logs)

    success_rates: Dict[str, float] = {}
    for choice in PREFERENCE_CHOICES:
        chosen = [log for log in logs if log.get("chosen_ai") == choice]
        successful = sum(1 for log in chosen if log.get("success"))
        success_rates[choice] = _percent(successful, len(chosen))

    providers: Dict[str, Dict[str, Any]] = {}
    for name in sorted({log["attributed_provider"] for log in logs if log.get("attributed_provider")}):
        attributed = [log for log in logs if log.get("attributed_provider") == name]
        weights = [float(log.get("confidence_weight") or 0.0) for log in attributed]
        successful = sum(1 for log in attributed if log.get("success"))
        weighted = sum(w for w, log in zip(weights, attributed) if log.get("success"))
        providers[name] = {
            "attempts": len(attributed),
            "success_rate": _percent(successful, len(attributed)),
            "weighted_success_rate": _percent(weighted, sum(weights)),
        }

    recent = [
        {
            "id": log["id"],
            "attempt_kind": log["attempt_kind"],
            "attempt_id": log["attempt_id"],
            "chosen_ai": log.get("chosen_ai"),
            "attributed_provider": log.get("attributed_provider"),
            "confidence_tier": log.get("confidence_tier"),
            "performance_score": log.get("performance_score"),
            "success": None if log.get("success") is None else bool(log["success"]),
            "created_at": log.get("created_at"),
        }
        for log in list(logs)[::-1][:RECENT_PREFERENCE_LIMIT]
    ]
    return {
        "total_choices": len(logs),
        "ai_choices": dict(choices),
        "attempt_kinds": dict(kinds),
        "success_rates": success_rates,
        "providers": providers,
        "recent_preferences": recent,
    }


def _record_from_row(row: Mapping[str, Any]) -> AttributionRecord:
    return AttributionRecord(
        attempt_kind=row["attempt_kind"],
        attempt_id=int(row["attempt_id"]),
        attributed_provider=row["attributed_provider"],
        confidence_tier=ConfidenceTier(row["confidence_tier"]),
        source_chat_message_id=row.get("source_chat_message_id"),
        delay_seconds=row.get("delay_seconds"),
        created_at=row.get("created_at"),
    )


class AttributionResolver:
    def __init__(self, db_module=db):
        self.db = db_module

    def _check_kind(self, kind: str) -> str:
        normalized = (kind or "").strip().lower()
        if normalized not in self.db.ATTEMPT_TABLES:
            raise AttemptNotFoundError(f"unknown attempt kind: {kind}")
        return normalized

    def resolve(self, kind: str, attempt_id: int) -> AttributionResult:
        """Resolve (once) the attribution of an attempt.

        A stored record is returned unchanged. Otherwise the decision is made
        from a snapshot of the session's messages up to the attempt and
        written in the same transaction.
        """
        kind = self._check_kind(kind)
        with self.db.transaction() as con:
            stored = self.db.get_attribution_record(kind, attempt_id, con=con)
            if stored is not None:
                return AttributionResult(
                    kind, attempt_id, record=_record_from_row(stored), reason="already resolved"
                )

            attempt = self.db.get_attempt(kind, attempt_id, con=con)
            if attempt is None:
                raise AttemptNotFoundError(f"{kind} attempt {attempt_id} not found")

            session_id = attempt.get("session_id")
            session = self.db.get_session(session_id, con=con) if session_id else None
            link = attempt.get("attribution_chat_message_id")
            linked = self.db.get_chat_message(int(link), con=con) if link else None
            messages = (
                self.db.list_chat_messages(session_id, until=attempt.get("created_at"), con=con)
                if session_id
                else []
            )

            decision = decide_attribution(attempt, session, messages, linked)
            if not decision.attributed:
                _json_log(
                    "attribution_resolved",
                    {
                        "attempt_kind": kind,
                        "attempt_id": attempt_id,
                        "attributed": False,
                        "reason": decision.reason,
                    },
                )
                return AttributionResult(kind, attempt_id, reason=decision.reason)

            record = AttributionRecord(
                attempt_kind=kind,
                attempt_id=attempt_id,
                attributed_provider=decision.provider,
                confidence_tier=decision.tier,
                source_chat_message_id=decision.source_chat_message_id,
                delay_seconds=decision.delay_seconds,
                created_at=self.db.format_timestamp(),
            )
            created = self.db.insert_attribution_record(con, record.model_dump(mode="json"))
            if not created:
                stored = self.db.get_attribution_record(kind, attempt_id, con=con)
                record = _record_from_row(stored)

        _json_log(
            "attribution_resolved",
            {
                "attempt_kind": kind,
                "attempt_id": attempt_id,
                "attributed": True,
                "provider": record.attributed_provider,
                "tier": record.confidence_tier.value,
                "delay_seconds": record.delay_seconds,
                "source_chat_message_id": record.source_chat_message_id,
            },
        )
        return AttributionResult(
            kind, attempt_id, record=record, created=created, reason=decision.reason
        )

    def log_preference(
        self,
        kind: str,
        attempt_id: int,
        *,
        chosen_ai: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Append an AI preference log entry snapshotting the attempt's attribution."""
        result = self.resolve(kind, attempt_id)
        attempt = self.db.get_attempt(result.attempt_kind, attempt_id)
        if attempt is None:
            raise AttemptNotFoundError(f"{result.attempt_kind} attempt {attempt_id} not found")
        session_id = attempt.get("session_id")
        if chosen_ai is None and session_id:
            session = self.db.get_session(session_id)
            chosen_ai = session.get("user_choice") if session else None

        record = result.record
        weight = (
            CONFIDENCE_WEIGHTS.get(record.confidence_tier, UNKNOWN_CONFIDENCE_WEIGHT)
            if record is not None
            else UNKNOWN_CONFIDENCE_WEIGHT
        )
        log_id = self.db.insert_preference_log(
            attempt["user_id"],
            result.attempt_kind,
            attempt_id,
            confidence_weight=weight,
            session_id=session_id,
            chosen_ai=chosen_ai,
            attributed_provider=record.attributed_provider if record else None,
            confidence_tier=record.confidence_tier.value if record else None,
            performance_score=attempt.get("score"),
            success=attempt.get("success"),
            time_spent_seconds=attempt.get("time_spent_seconds"),
            context=context,
        )
        return {"id": log_id, "confidence_weight": weight, **result.as_dict()}

    def preference_summary(
        self,
        user_id: str,
        *,
        window: Optional[str] = DEFAULT_SUMMARY_WINDOW,
        attempt_kind: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Per-user preference statistics over the look-back ``window``."""
        span = parse_window(window)
        kind = (attempt_kind or "").strip().lower() or None
        if kind is not None and kind not in self.db.ATTEMPT_TABLES:
            raise InvalidPreferenceQuery(f"unknown attempt kind: {attempt_kind}")
        since = self.db.format_timestamp(self.db.utc_now() - span)
        logs: List[Dict[str, Any]] = self.db.list_preference_logs(
            user_id, since=since, attempt_kind=kind
        )
        summary = summarize_preferences(logs)
        _json_log(
            "preference_summary",
            {"user_id": user_id, "window": window, "total_choices": summary["total_choices"]},
        )
        return {"user_id": user_id, "window": window, "since": since, **summary}
