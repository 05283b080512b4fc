"""Provider-neutral request/outcome types and the adapter base class."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

from conversation import ConversationTurn
from env_validation import ProviderConfig


class ProviderError(Exception):
    """Base class for failures reported by an LLM provider."""

    def __init__(self, message: str, *, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class PermanentProviderError(ProviderError):
    """Non-retryable provider failure that indicates a bug rather than load."""

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        reason: Optional[str] = None,
        diagnostics: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, provider=provider)
        self.status_code = status_code
        self.reason = reason or message
        self.diagnostics = dict(diagnostics or {})


class ResponseParseError(PermanentProviderError):
    """A 2xx body that lacks the expected text path."""


class StatusClass(str, Enum):
    RETRYABLE = "retryable"
    SERVICE_DOWN = "service_down"
    CLIENT_ERROR = "client_error"


@dataclass(frozen=True)
class ProviderRequest:
    url: str
    headers: Dict[str, str]
    body: Dict[str, Any]
    # per-message (role, content length) in wire order, system prompt included
    message_shape: Sequence[tuple] = ()

    def diagnostics(self) -> Dict[str, Any]:
        roles = [role for role, _ in self.message_shape]
        return {
            "message_count": len(self.message_shape),
            "content_lengths": [length for _, length in self.message_shape],
            "roles": roles,
        }


# --------- call outcomes ---------


@dataclass(frozen=True)
class Success:
    text: str
    attempts: int = 1


@dataclass(frozen=True)
class TransientFailure:
    status_code: int


@dataclass(frozen=True)
class ConnectionFailure:
    detail: str = ""


@dataclass(frozen=True)
class PermanentFailure:
    reason: str
    status_code: Optional[int] = None
    diagnostics: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 1

    def to_error(self, provider: Optional[str] = None) -> PermanentProviderError:
        return PermanentProviderError(
            self.reason,
            provider=provider,
            status_code=self.status_code,
            reason=self.reason,
            diagnostics=self.diagnostics,
        )


@dataclass(frozen=True)
class FallbackRequested:
    reason: str
    attempts: int = 0
    last_status: Optional[int] = None


@dataclass(frozen=True)
class Cancelled:
    attempts: int = 0


# What a single HTTP exchange resolves to.
ProviderCallResult = Union[Success, TransientFailure, PermanentFailure, ConnectionFailure]
# What ResilientCaller.call hands back.
CallOutcome = Union[Success, PermanentFailure, FallbackRequested, Cancelled]


def classify_http_status(status_code: int) -> StatusClass:
    if status_code == 429:
        return StatusClass.RETRYABLE
    if status_code == 503:
        return StatusClass.SERVICE_DOWN
    return StatusClass.CLIENT_ERROR


class ProviderAdapter:
    """Translate canonical turns into one provider's wire format and back."""

    name: str = "provider"

    def __init__(self, config: ProviderConfig):
        self.config = config

    @property
    def history_turns(self) -> int:
        return self.config.history_turns

    def build_request(
        self,
        turns: Sequence[ConversationTurn],
        prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> ProviderRequest:
        raise NotImplementedError

    def parse_response(self, raw: Any) -> str:
        """Return the reply text or raise :class:`ResponseParseError`."""
        raise NotImplementedError

    def classify_status(self, status_code: int) -> StatusClass:
        return classify_http_status(status_code)

    def _parse_error(self, message: str, raw: Any) -> ResponseParseError:
        preview = repr(raw)
        return ResponseParseError(
            message,
            provider=self.name,
            reason=message,
            diagnostics={"body_preview": preview[:300]},
        )


def message_shape(messages: List[Dict[str, Any]], content_key: str = "content") -> List[tuple]:
    shape = []
    for message in messages:
        content = message.get(content_key)
        if isinstance(content, list):
            length = sum(len(str(part.get("text", ""))) for part in content if isinstance(part, dict))
        else:
            length = len(str(content or ""))
        shape.append((str(message.get("role", "")), length))
    return shape
