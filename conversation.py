"""Conversation history normalisation.

Learner history arrives from several front-ends and from stored chat rows, so
records come in a handful of shapes (``role``/``content``, ``sender``/``message``,
or ad hoc keys such as ``question``/``answer``). Every record is run through an
ordered list of shape matchers; the first matcher that recognises the record
decides its role and raw content. Records nobody recognises, and records whose
content is empty after coercion, are skipped and only counted.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

MAX_TURN_CHARS = 1200

_ASSISTANT_SENDERS = frozenset({"assistant", "ai", "bot", "model", "tutor", "gemini", "together"})
_USER_KEYS: Tuple[str, ...] = ("user", "question", "query", "input", "user_message")
_ASSISTANT_KEYS: Tuple[str, ...] = (
    "assistant",
    "ai",
    "bot",
    "answer",
    "response",
    "reply",
    "assistant_message",
    "completion",
)
_SENDER_CONTENT_KEYS: Tuple[str, ...] = ("message", "content", "text")


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ConversationTurn:
    role: Role
    text: str

    def as_message(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.text}


@dataclass
class NormalizedHistory:
    turns: List[ConversationTurn] = field(default_factory=list)
    skipped: int = 0
    trimmed_leading: int = 0


# (role, raw content) as recognised by a shape matcher
_Candidate = Tuple[Role, Any]
ShapeMatcher = Callable[[Mapping[str, Any]], Optional[_Candidate]]


def _has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, dict, tuple)):
        return bool(value)
    return True


def match_role_field(record: Mapping[str, Any]) -> Optional[_Candidate]:
    role = record.get("role")
    if not isinstance(role, str):
        return None
    resolved = Role.USER if role.strip().lower() == "user" else Role.ASSISTANT
    return resolved, record.get("content")


def match_sender_field(record: Mapping[str, Any]) -> Optional[_Candidate]:
    sender = record.get("sender")
    if not isinstance(sender, str):
        return None
    lowered = sender.strip().lower()
    # unknown senders count as the tutor side
    resolved = Role.USER if lowered == "user" else Role.ASSISTANT
    if lowered != "user" and lowered not in _ASSISTANT_SENDERS:
        logger.debug("Unknown sender %r mapped to assistant", sender)
    for key in _SENDER_CONTENT_KEYS:
        if _has_value(record.get(key)):
            return resolved, record[key]
    return resolved, None


def match_structural_keys(record: Mapping[str, Any]) -> Optional[_Candidate]:
    for key in _USER_KEYS:
        if key in record and _has_value(record[key]):
            return Role.USER, record[key]
    for key in _ASSISTANT_KEYS:
        if key in record and _has_value(record[key]):
            return Role.ASSISTANT, record[key]
    return None


SHAPE_MATCHERS: Tuple[ShapeMatcher, ...] = (
    match_role_field,
    match_sender_field,
    match_structural_keys,
)


def _as_mapping(record: Any) -> Optional[Mapping[str, Any]]:
    if isinstance(record, Mapping):
        return record
    model_dump = getattr(record, "model_dump", None)
    if callable(model_dump):
        dumped = model_dump()
        return dumped if isinstance(dumped, Mapping) else None
    if hasattr(record, "__dict__") and not isinstance(record, type):
        return vars(record)
    return None


def coerce_text(content: Any) -> Optional[str]:
    """Render ``content`` as turn text, or ``None`` when nothing usable remains."""
    if content is None:
        return None
    if isinstance(content, str):
        text = content
    elif isinstance(content, (dict, list, tuple)):
        try:
            text = json.dumps(content, ensure_ascii=False, separators=(",", ":"))
        except (TypeError, ValueError):
            return None
    else:
        text = str(content)
    return text if text.strip() else None


def _match(record: Mapping[str, Any]) -> Optional[_Candidate]:
    for matcher in SHAPE_MATCHERS:
        candidate = matcher(record)
        if candidate is not None:
            return candidate
    return None


def trim_leading_assistant(turns: Sequence[ConversationTurn]) -> Tuple[List[ConversationTurn], int]:
    index = 0
    while index < len(turns) and turns[index].role is Role.ASSISTANT:
        index += 1
    return list(turns[index:]), index


def normalize_history(records: Optional[Iterable[Any]]) -> NormalizedHistory:
    """Turn heterogeneous history records into ordered :class:`ConversationTurn`s.

    Never raises: unreadable records are skipped and counted in ``skipped``.
    """
    result = NormalizedHistory()
    if not records or isinstance(records, (str, bytes)):
        return result

    turns: List[ConversationTurn] = []
    for index, record in enumerate(records):
        try:
            mapping = _as_mapping(record)
            candidate = _match(mapping) if mapping is not None else None
            text = coerce_text(candidate[1]) if candidate is not None else None
        except Exception as exc:
            logger.warning("Error processing history record %s: %s", index, exc)
            candidate, text = None, None
        if candidate is None or text is None:
            result.skipped += 1
            continue
        turns.append(ConversationTurn(role=candidate[0], text=text))

    result.turns, result.trimmed_leading = trim_leading_assistant(turns)
    if result.skipped or result.trimmed_leading:
        logger.debug(
            "History normalised: kept=%d skipped=%d trimmed_leading=%d",
            len(result.turns),
            result.skipped,
            result.trimmed_leading,
        )
    return result


def window_turns(
    turns: Sequence[ConversationTurn],
    max_turns: Optional[int],
    max_chars: int = MAX_TURN_CHARS,
) -> List[ConversationTurn]:
    """Keep the most recent ``max_turns`` turns, each capped at ``max_chars``."""
    kept = list(turns)
    if max_turns is not None:
        kept = kept[-max_turns:] if max_turns > 0 else []
    capped = [
        turn if len(turn.text) <= max_chars else ConversationTurn(turn.role, turn.text[:max_chars])
        for turn in kept
    ]
    trimmed, _ = trim_leading_assistant(capped)
    return trimmed


def append_question(turns: Sequence[ConversationTurn], question: str) -> List[ConversationTurn]:
    """Append the learner's current question unless it repeats the last user turn."""
    text = question.strip()
    combined = list(turns)
    if combined and combined[-1].role is Role.USER and combined[-1].text.strip() == text:
        return combined
    combined.append(ConversationTurn(Role.USER, text))
    return combined
