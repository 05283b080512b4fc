"""Bounded retry/backoff execution of provider calls."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import replace
from typing import Any, Callable, Dict, Optional, Sequence

import requests

from conversation import ConversationTurn
from providers.base import (
    CallOutcome,
    Cancelled,
    ConnectionFailure,
    FallbackRequested,
    PermanentFailure,
    ProviderAdapter,
    ProviderCallResult,
    ProviderRequest,
    ResponseParseError,
    StatusClass,
    Success,
    TransientFailure,
)

logger = logging.getLogger(__name__)


def _json_log(event: str, payload: Dict[str, Any]) -> None:
    record = {"event": event, **payload}
    try:
        message = json.dumps(record, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError):
        fallback = {
            "event": event,
            "error": "serialization_failed",
            "payload_repr": repr(payload),
        }
        message = json.dumps(fallback, ensure_ascii=False, sort_keys=True)
    logger.info(message)


class ResilientCaller:
    """Run one adapter call with a per-attempt timeout and exponential backoff.

    ``call`` never raises for provider or network trouble. Every path ends in
    :class:`Success`, :class:`PermanentFailure`, :class:`FallbackRequested` or
    :class:`Cancelled`.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        *,
        http: Optional[Any] = None,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.adapter = adapter
        self.config = adapter.config
        self._http = http if http is not None else requests.Session()
        self._sleep = sleep or time.sleep
        self._clock = clock

    @property
    def max_attempts(self) -> int:
        return 1 + max(0, self.config.max_retries)

    def backoff_delays(self) -> list[float]:
        base = self.config.backoff_ms / 1000.0
        return [base * (2 ** index) for index in range(self.max_attempts - 1)]

    def worst_case_seconds(self) -> float:
        """Upper bound on wall time for one ``call`` without a deadline."""
        return self.config.timeout * self.max_attempts + sum(self.backoff_delays())

    def send(self, request: ProviderRequest, timeout: float) -> ProviderCallResult:
        """Perform a single HTTP exchange and classify the result."""
        try:
            response = self._http.post(
                request.url,
                json=request.body,
                headers=request.headers,
                timeout=timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            return ConnectionFailure(detail=str(exc))
        except requests.RequestException as exc:
            return PermanentFailure(reason=f"Request error: {exc}", diagnostics=request.diagnostics())

        status = int(response.status_code)
        if 200 <= status < 300:
            try:
                payload = response.json()
            except ValueError:
                return PermanentFailure(
                    reason="Provider returned a non-JSON body",
                    status_code=status,
                    diagnostics={"body_preview": (response.text or "")[:300]},
                )
            try:
                return Success(text=self.adapter.parse_response(payload))
            except ResponseParseError as exc:
                return PermanentFailure(
                    reason=exc.reason, status_code=status, diagnostics=exc.diagnostics
                )

        status_class = self.adapter.classify_status(status)
        if status_class in (StatusClass.RETRYABLE, StatusClass.SERVICE_DOWN):
            return TransientFailure(status_code=status)

        diagnostics = request.diagnostics()
        diagnostics["body_preview"] = (response.text or "")[:300]
        if status == 400:
            logger.error(
                "%s rejected request with 400: message_count=%s roles=%s content_lengths=%s",
                self.adapter.name,
                diagnostics["message_count"],
                diagnostics["roles"],
                diagnostics["content_lengths"],
            )
        return PermanentFailure(
            reason=f"HTTP {status} from {self.adapter.name}",
            status_code=status,
            diagnostics=diagnostics,
        )

    def call(
        self,
        turns: Sequence[ConversationTurn],
        prompt: str,
        max_tokens: int,
        temperature: float,
        *,
        cancel_event: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> CallOutcome:
        request = self.adapter.build_request(turns, prompt, max_tokens, temperature)
        started = self._clock()
        delays = self.backoff_delays()
        last_status: Optional[int] = None
        reason = "retries_exhausted"
        attempts_made = 0

        for attempt in range(1, self.max_attempts + 1):
            if cancel_event is not None and cancel_event.is_set():
                return self._cancelled(attempt - 1)

            timeout = self.config.timeout
            if deadline is not None:
                remaining = deadline - (self._clock() - started)
                if remaining <= 0:
                    reason = "deadline_exceeded"
                    break
                timeout = min(timeout, remaining)

            _json_log(
                "llm_attempt",
                {
                    "provider": self.adapter.name,
                    "model": self.config.model,
                    "attempt": attempt,
                    "max_attempts": self.max_attempts,
                    "timeout": timeout,
                    "api_key_present": self.config.has_api_key,
                },
            )
            attempt_start = time.perf_counter()
            result = self.send(request, timeout)
            attempts_made = attempt
            latency_ms = int((time.perf_counter() - attempt_start) * 1000)

            if isinstance(result, Success):
                _json_log(
                    "llm_call",
                    {
                        "provider": self.adapter.name,
                        "model": self.config.model,
                        "attempt": attempt,
                        "latency_ms": latency_ms,
                        "max_tokens": max_tokens,
                        "response_chars": len(result.text),
                    },
                )
                return replace(result, attempts=attempt)

            if isinstance(result, PermanentFailure):
                _json_log(
                    "llm_permanent_failure",
                    {
                        "provider": self.adapter.name,
                        "attempt": attempt,
                        "status_code": result.status_code,
                        "reason": result.reason,
                        "diagnostics": result.diagnostics,
                    },
                )
                return replace(result, attempts=attempt)

            if isinstance(result, TransientFailure):
                last_status = result.status_code
                logger.warning(
                    "%s returned %s on attempt %s/%s",
                    self.adapter.name,
                    result.status_code,
                    attempt,
                    self.max_attempts,
                )
            else:
                last_status = None
                logger.warning(
                    "%s connection failure on attempt %s/%s: %s",
                    self.adapter.name,
                    attempt,
                    self.max_attempts,
                    result.detail,
                )

            if attempt == self.max_attempts:
                break

            delay = delays[attempt - 1]
            if deadline is not None and (self._clock() - started) + delay >= deadline:
                reason = "deadline_exceeded"
                break
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    return self._cancelled(attempt)
            else:
                self._sleep(delay)

        outcome = FallbackRequested(reason=reason, attempts=attempts_made, last_status=last_status)
        _json_log(
            "llm_fallback",
            {
                "provider": self.adapter.name,
                "reason": outcome.reason,
                "attempts": outcome.attempts,
                "last_status": outcome.last_status,
            },
        )
        return outcome

    def _cancelled(self, attempts: int) -> Cancelled:
        logger.info("%s call cancelled after %s attempt(s)", self.adapter.name, attempts)
        return Cancelled(attempts=attempts)
