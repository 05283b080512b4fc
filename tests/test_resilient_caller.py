import threading
import unittest

import requests

from conversation import ConversationTurn, Role
from env_validation import ProviderConfig
from providers.base import Cancelled, FallbackRequested, PermanentFailure, Success
from providers.caller import ResilientCaller
from providers.together import TogetherAdapter
from stubs import StubHttp, StubResponse, together_ok

TURNS = [ConversationTurn(Role.USER, "What is recursion?")]


def _caller(responses, **config_overrides):
    config = ProviderConfig(
        name="together",
        api_key="k",
        api_url="https://llm.example/v1",
        model="m",
        **config_overrides,
    )
    http = StubHttp(responses)
    sleeps = []
    caller = ResilientCaller(TogetherAdapter(config), http=http, sleep=sleeps.append)
    return caller, http, sleeps


class ResilientCallerTests(unittest.TestCase):
    def test_success_on_first_attempt(self):
        caller, http, sleeps = _caller([together_ok("Hi")])

        outcome = caller.call(TURNS, "prompt", 300, 0.7)

        self.assertEqual(outcome, Success(text="Hi", attempts=1))
        self.assertEqual(sleeps, [])
        self.assertEqual(http.calls[0]["timeout"], 30.0)

    def test_two_503s_then_success_sleeps_twice_with_doubling_backoff(self):
        caller, http, sleeps = _caller(
            [StubResponse(503), StubResponse(503), together_ok("Finally")]
        )

        outcome = caller.call(TURNS, "prompt", 300, 0.7)

        self.assertIsInstance(outcome, Success)
        self.assertEqual(outcome.text, "Finally")
        self.assertEqual(outcome.attempts, 3)
        self.assertEqual(sleeps, [1.0, 2.0])
        self.assertEqual(len(http.calls), 3)

    def test_three_503s_request_fallback(self):
        caller, http, sleeps = _caller([StubResponse(503)] * 3)

        outcome = caller.call(TURNS, "prompt", 300, 0.7)

        self.assertIsInstance(outcome, FallbackRequested)
        self.assertEqual(outcome.attempts, 3)
        self.assertEqual(outcome.last_status, 503)
        self.assertEqual(sleeps, [1.0, 2.0])

    def test_rate_limit_exhaustion_also_requests_fallback(self):
        caller, _, _ = _caller([StubResponse(429)] * 3)

        self.assertIsInstance(caller.call(TURNS, "prompt", 300, 0.7), FallbackRequested)

    def test_single_400_is_permanent_without_retry(self):
        caller, http, sleeps = _caller([StubResponse(400, text="bad request")])

        with self.assertLogs("providers.caller", level="ERROR") as logs:
            outcome = caller.call(TURNS, "prompt", 300, 0.7)

        self.assertIsInstance(outcome, PermanentFailure)
        self.assertEqual(outcome.status_code, 400)
        self.assertEqual(outcome.diagnostics["message_count"], 2)
        self.assertEqual(outcome.diagnostics["roles"], ["system", "user"])
        self.assertEqual(len(http.calls), 1)
        self.assertEqual(sleeps, [])
        self.assertIn("message_count=2", logs.output[0])

    def test_other_5xx_is_permanent(self):
        caller, http, _ = _caller([StubResponse(500, text="boom")])

        outcome = caller.call(TURNS, "prompt", 300, 0.7)

        self.assertIsInstance(outcome, PermanentFailure)
        self.assertEqual(len(http.calls), 1)

    def test_malformed_success_body_is_permanent(self):
        caller, http, sleeps = _caller([StubResponse(200, {"unexpected": True})])

        outcome = caller.call(TURNS, "prompt", 300, 0.7)

        self.assertIsInstance(outcome, PermanentFailure)
        self.assertEqual(outcome.status_code, 200)
        self.assertEqual(sleeps, [])

    def test_non_json_success_body_is_permanent(self):
        caller, _, _ = _caller([StubResponse(200, None, text="<html>")])

        outcome = caller.call(TURNS, "prompt", 300, 0.7)

        self.assertIsInstance(outcome, PermanentFailure)
        self.assertIn("<html>", outcome.diagnostics["body_preview"])

    def test_connection_errors_are_retried_then_fall_back(self):
        caller, http, sleeps = _caller(
            [
                requests.ConnectionError("refused"),
                requests.Timeout("slow"),
                requests.ConnectionError("refused"),
            ]
        )

        outcome = caller.call(TURNS, "prompt", 300, 0.7)

        self.assertIsInstance(outcome, FallbackRequested)
        self.assertIsNone(outcome.last_status)
        self.assertEqual(len(http.calls), 3)
        self.assertEqual(sleeps, [1.0, 2.0])

    def test_connection_error_then_success(self):
        caller, _, sleeps = _caller([requests.ConnectionError("reset"), together_ok("ok")])

        outcome = caller.call(TURNS, "prompt", 300, 0.7)

        self.assertEqual(outcome, Success(text="ok", attempts=2))
        self.assertEqual(sleeps, [1.0])

    def test_retry_count_and_backoff_come_from_config(self):
        caller, http, sleeps = _caller([StubResponse(503)] * 2, max_retries=1, backoff_ms=250)

        outcome = caller.call(TURNS, "prompt", 300, 0.7)

        self.assertIsInstance(outcome, FallbackRequested)
        self.assertEqual(len(http.calls), 2)
        self.assertEqual(sleeps, [0.25])

    def test_worst_case_bound_with_defaults(self):
        caller, _, _ = _caller([])

        self.assertEqual(caller.worst_case_seconds(), 93.0)

    def test_cancelled_before_first_attempt_makes_no_call(self):
        caller, http, _ = _caller([])
        cancel = threading.Event()
        cancel.set()

        outcome = caller.call(TURNS, "prompt", 300, 0.7, cancel_event=cancel)

        self.assertEqual(outcome, Cancelled(attempts=0))
        self.assertEqual(http.calls, [])

    def test_cancellation_during_backoff_stops_retries(self):
        caller, http, _ = _caller([StubResponse(503)])

        class _CancelOnWait:
            def __init__(self):
                self.waits = []

            def is_set(self):
                return False

            def wait(self, timeout):
                self.waits.append(timeout)
                return True

        cancel = _CancelOnWait()
        outcome = caller.call(TURNS, "prompt", 300, 0.7, cancel_event=cancel)

        self.assertEqual(outcome, Cancelled(attempts=1))
        self.assertEqual(cancel.waits, [1.0])
        self.assertEqual(len(http.calls), 1)

    def test_deadline_caps_attempt_timeout_and_skips_late_retries(self):
        ticks = iter([0.0, 0.0, 3.5])
        config = ProviderConfig(name="together", api_key="k", api_url="https://x", model="m")
        http = StubHttp([StubResponse(503)])
        sleeps = []
        caller = ResilientCaller(
            TogetherAdapter(config), http=http, sleep=sleeps.append, clock=lambda: next(ticks)
        )

        outcome = caller.call(TURNS, "prompt", 300, 0.7, deadline=4.2)

        self.assertIsInstance(outcome, FallbackRequested)
        self.assertEqual(outcome.reason, "deadline_exceeded")
        self.assertEqual(http.calls[0]["timeout"], 4.2)
        self.assertEqual(sleeps, [])
