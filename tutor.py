import json
import logging
import os
import threading
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Dict, Iterable, Mapping, Optional, Union

from pydantic import ValidationError

from conversation import append_question, normalize_history, window_turns
from env_validation import KNOWN_PROVIDERS, ConfigurationError, ProviderConfig, load_all_provider_configs
from fallback import CODE_REVIEW_FALLBACK, fallback_response
from providers.base import (
    Cancelled,
    FallbackRequested,
    PermanentFailure,
    PermanentProviderError,
    ProviderAdapter,
    Success,
)
from providers.caller import ResilientCaller
from providers.gemini import GeminiAdapter
from providers.together import TogetherAdapter
from schemas import GenerationPreferences, LessonContext, render_context_value

logger = logging.getLogger(__name__)

# --------- Domain / defaults from environment ---------
TUTOR_DOMAIN = os.getenv("TUTOR_DOMAIN", "Java programming")
CODE_LANGUAGE = os.getenv("TUTOR_CODE_LANGUAGE", "java")

CHAT_TEMPERATURE = 0.7
REVIEW_TEMPERATURE = 0.2
REVIEW_MAX_TOKENS = 1000

LESSON_CONTEXT_START = "### LESSON CONTEXT ###"
LESSON_CONTEXT_END = "### END LESSON CONTEXT ###"

LESSON_GUIDELINES = """IMPORTANT GUIDELINES:
1. Focus your response on the content and concepts from the current lesson module
2. If the learner asks about topics outside the current lesson, briefly acknowledge the question and redirect to the lesson material
3. Provide code examples that directly demonstrate concepts from this module
4. Use terminology consistent with the lesson content
5. Do not introduce advanced concepts that are not part of the current lesson
"""

CLOSING_REDIRECT = (
    "Stay within the scope of the current lesson. If the learner strays to unrelated topics, "
    "briefly acknowledge their interest and redirect them to the current material."
)

EXPERTISE_CLAUSES = {
    "beginner": (
        "The learner is a beginner, so explain concepts in simple terms with basic examples. "
        "Avoid complex terminology without explanation."
    ),
    "intermediate": (
        "The learner has intermediate knowledge, so you can use standard terminology and give "
        "more nuanced explanations. Still provide examples for new concepts."
    ),
    "advanced": (
        "The learner has advanced knowledge, so you can use precise terminology and discuss "
        "optimisation, best practices and edge cases."
    ),
}

STYLE_CLAUSES = {
    "analogy": "Use analogies to real-world situations to explain programming concepts.",
    "step_by_step": (
        "Explain concepts step by step, breaking complex ideas down into simpler components."
    ),
    "visual": "Describe concepts using visual language and spatial metaphors when possible.",
}

CODE_EXAMPLES_ON = (
    "Always include relevant code examples to illustrate your explanations. Make sure the "
    "examples are correct, complete and idiomatic."
)
CODE_EXAMPLES_OFF = "Only include code examples when specifically requested."

REVIEW_RUBRIC = """Please provide feedback on:
1. Code correctness
2. Style and best practices
3. Potential improvements
4. Efficiency considerations
5. Any errors or bugs you spot"""


class InvalidTutorRequest(ValueError):
    """Raised for an empty question, empty code or malformed preferences."""
    pass


PreferencesInput = Union[GenerationPreferences, Mapping[str, Any], None]
LessonContextInput = Union[LessonContext, Mapping[str, Any], None]


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


def coerce_preferences(preferences: PreferencesInput) -> GenerationPreferences:
    if preferences is None:
        return GenerationPreferences()
    if isinstance(preferences, GenerationPreferences):
        return preferences
    if not isinstance(preferences, Mapping):
        raise InvalidTutorRequest("preferences must be an object")
    try:
        return GenerationPreferences.model_validate(dict(preferences))
    except ValidationError as exc:
        raise InvalidTutorRequest(f"Invalid preferences: {exc.errors()[0].get('msg')}") from exc


def coerce_lesson_context(context: LessonContextInput) -> Optional[LessonContext]:
    if context is None:
        return None
    if isinstance(context, LessonContext):
        parsed = context
    elif isinstance(context, Mapping):
        try:
            parsed = LessonContext.model_validate(dict(context))
        except ValidationError as exc:
            raise InvalidTutorRequest(f"Invalid lesson context: {exc.errors()[0].get('msg')}") from exc
    else:
        raise InvalidTutorRequest("lesson context must be an object")
    return None if parsed.is_empty() else parsed


def _validate_question(question: Any) -> str:
    if not isinstance(question, str) or not question.strip():
        raise InvalidTutorRequest("question must be a non-empty string")
    return question.strip()


# --------- Prompt building ---------


def render_lesson_context(context: LessonContext) -> str:
    """Render ``context`` between the sentinel markers."""
    lines = [LESSON_CONTEXT_START]
    if context.lesson_context and context.lesson_context.strip():
        lines.append(context.lesson_context.strip())
    else:
        if context.module_title:
            lines.append(f"Current module: {context.module_title}")
        if context.module_content:
            lines.append(f"Module content: {context.module_content}")
        if context.examples:
            lines.append(f"Examples for teaching:\n{render_context_value(context.examples)}")
        if context.key_points:
            lines.append(f"Key points to emphasize:\n{render_context_value(context.key_points)}")
        if context.guidance_notes:
            lines.append(f"Teaching guidance notes:\n{render_context_value(context.guidance_notes)}")
        if context.teaching_strategy:
            lines.append(
                "Teaching strategy for this module: "
                + render_context_value(context.teaching_strategy)
            )
        if context.common_misconceptions:
            lines.append(
                "Watch for these common misconceptions: "
                + render_context_value(context.common_misconceptions)
            )
        if context.struggle_points:
            lines.append("The learner has previously struggled with:")
            for point in context.struggle_points:
                lines.append(
                    f"- {point.concept or 'Unspecified concept'}: {point.details or 'No details'}"
                )
    lines.append(LESSON_CONTEXT_END)
    return "\n".join(lines)


def build_system_prompt(
    preferences: Optional[GenerationPreferences] = None,
    topic: Optional[str] = None,
    lesson_context: Optional[LessonContext] = None,
    domain: str = TUTOR_DOMAIN,
) -> str:
    """Compose the system prompt.

    Sections always appear in the same order: role framing, topic, lesson
    context, expertise, code examples, explanation style, length and detail,
    closing redirect. Pure function.
    """
    prefs = preferences or GenerationPreferences()
    parts = [
        f"You are an AI tutor for {domain} that specializes in teaching programming "
        "concepts clearly and effectively."
    ]
    if topic and topic.strip():
        parts.append(f"The current topic is {topic.strip()}.")

    if lesson_context is not None and not lesson_context.is_empty():
        parts.append("\n" + render_lesson_context(lesson_context) + "\n")
        parts.append(LESSON_GUIDELINES)

    if prefs.expertise_level:
        parts.append(EXPERTISE_CLAUSES[prefs.expertise_level])

    parts.append(CODE_EXAMPLES_ON if prefs.include_code_examples else CODE_EXAMPLES_OFF)

    style_clause = STYLE_CLAUSES.get(prefs.explanation_style or "")
    if style_clause:
        parts.append(style_clause)

    if prefs.length_label:
        parts.append(f"Keep your responses {prefs.length_label}.")
    if prefs.explanation_detail:
        parts.append(f"Provide {prefs.explanation_detail} explanations.")

    parts.append(CLOSING_REDIRECT)
    return " ".join(part for part in parts if part)


def build_code_review_prompt(
    code: str,
    stdout: Optional[str] = None,
    stderr: Optional[str] = None,
    topic: Optional[str] = None,
    exercise: Optional[Mapping[str, Any]] = None,
    language: str = CODE_LANGUAGE,
) -> str:
    prompt = f"You are a {domain_label(language)} expert tasked with evaluating code. Analyze the following code"
    if topic and topic.strip():
        prompt += f" related to the topic of {topic.strip()}"
    prompt += f" and provide constructive feedback:\n\n```{language}\n{code}\n```\n\n"

    if exercise:
        title = exercise.get("title")
        if title:
            prompt += f"The specific exercise is: {title}.\n"
        description = exercise.get("description")
        if description:
            prompt += f"Exercise description: {description}\n"
        expected = exercise.get("expected_output")
        if expected:
            prompt += f"Expected output:\n```\n{expected}\n```\n"
        prompt += "\n"

    if stdout and stdout.strip():
        prompt += f"Code output:\n```\n{stdout}\n```\n\n"
    if stderr and stderr.strip():
        prompt += f"Errors/warnings:\n```\n{stderr}\n```\n\n"

    prompt += REVIEW_RUBRIC
    return prompt


def domain_label(language: str) -> str:
    return f"{language.capitalize()} programming" if language else "programming"


# --------- Tutor service ---------

ADAPTER_TYPES = {
    "gemini": GeminiAdapter,
    "together": TogetherAdapter,
}


@dataclass
class TutorReply:
    text: str
    provider: str
    is_fallback: bool = False
    latency_ms: int = 0
    attempts: int = 0
    error: Optional[str] = None


@dataclass
class _CallPlan:
    provider: str
    prompt: str
    max_tokens: int
    temperature: float
    fallback_text: str
    raise_permanent: bool = False
    history: Iterable[Any] = field(default_factory=list)
    question: str = ""


class TutorService:
    """Gateway between learner questions and the configured LLM providers."""

    def __init__(
        self,
        configs: Optional[Mapping[str, ProviderConfig]] = None,
        *,
        default_provider: Optional[str] = None,
        http: Optional[Any] = None,
        sleep=None,
        domain: str = TUTOR_DOMAIN,
    ):
        resolved = dict(configs) if configs is not None else load_all_provider_configs()
        unknown = [name for name in resolved if name not in ADAPTER_TYPES]
        if unknown:
            raise ConfigurationError(f"No adapter for provider(s): {', '.join(unknown)}")
        self.domain = domain
        self.callers: Dict[str, ResilientCaller] = {
            name: ResilientCaller(ADAPTER_TYPES[name](config), http=http, sleep=sleep)
            for name, config in resolved.items()
        }
        chosen = (default_provider or os.getenv("DEFAULT_PROVIDER") or "together").lower()
        if chosen not in self.callers:
            raise ConfigurationError(f"Default provider {chosen!r} is not configured")
        self.default_provider = chosen

    @property
    def providers(self) -> tuple:
        return tuple(name for name in KNOWN_PROVIDERS if name in self.callers) + tuple(
            name for name in self.callers if name not in KNOWN_PROVIDERS
        )

    def adapter(self, provider: Optional[str] = None) -> ProviderAdapter:
        return self._caller(provider).adapter

    def _caller(self, provider: Optional[str]) -> ResilientCaller:
        name = (provider or self.default_provider).lower()
        caller = self.callers.get(name)
        if caller is None:
            raise InvalidTutorRequest(f"Unknown provider: {provider}")
        return caller

    def worst_case_seconds(self) -> float:
        return max(caller.worst_case_seconds() for caller in self.callers.values())

    # ---- public entry points ----

    def respond(
        self,
        question: Any,
        history: Optional[Iterable[Any]] = None,
        preferences: PreferencesInput = None,
        topic: Optional[str] = None,
        lesson_context: LessonContextInput = None,
        *,
        provider: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> TutorReply:
        """Answer ``question`` and report which provider produced the text.

        Always returns text: transient exhaustion, cancellation, missing keys and
        bug-class provider failures all degrade to fallback replies. Invalid input
        raises :class:`InvalidTutorRequest`.
        """
        text = _validate_question(question)
        prefs = coerce_preferences(preferences)
        context = coerce_lesson_context(lesson_context)
        caller = self._caller(provider)
        plan = _CallPlan(
            provider=caller.adapter.name,
            prompt=build_system_prompt(prefs, topic, context, domain=self.domain),
            max_tokens=prefs.max_tokens,
            temperature=CHAT_TEMPERATURE,
            fallback_text=fallback_response(text, topic),
            history=history or [],
            question=text,
        )
        return self._execute(caller, plan, cancel_event=cancel_event, deadline=deadline)

    def get_response(
        self,
        question: Any,
        history: Optional[Iterable[Any]] = None,
        preferences: PreferencesInput = None,
        topic: Optional[str] = None,
        **kwargs: Any,
    ) -> str:
        return self.respond(question, history, preferences, topic, None, **kwargs).text

    def get_response_with_context(
        self,
        question: Any,
        history: Optional[Iterable[Any]] = None,
        preferences: PreferencesInput = None,
        topic: Optional[str] = None,
        lesson_context: LessonContextInput = None,
        **kwargs: Any,
    ) -> str:
        return self.respond(question, history, preferences, topic, lesson_context, **kwargs).text

    def compare(
        self,
        question: Any,
        history: Optional[Iterable[Any]] = None,
        preferences: PreferencesInput = None,
        topic: Optional[str] = None,
        lesson_context: LessonContextInput = None,
        *,
        cancel_event: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> Dict[str, TutorReply]:
        """Ask every configured provider the same question (split-screen mode)."""
        records = list(history or [])
        return {
            name: self.respond(
                question,
                records,
                preferences,
                topic,
                lesson_context,
                provider=name,
                cancel_event=cancel_event,
                deadline=deadline,
            )
            for name in self.providers
        }

    def review_code(
        self,
        code: Any,
        stdout: Optional[str] = None,
        stderr: Optional[str] = None,
        topic: Optional[str] = None,
        exercise: Optional[Mapping[str, Any]] = None,
        *,
        provider: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> TutorReply:
        if not isinstance(code, str) or not code.strip():
            raise InvalidTutorRequest("code must be a non-empty string")
        caller = self._caller(provider)
        review_prompt = build_code_review_prompt(code, stdout, stderr, topic, exercise)
        plan = _CallPlan(
            provider=caller.adapter.name,
            prompt="",
            max_tokens=REVIEW_MAX_TOKENS,
            temperature=REVIEW_TEMPERATURE,
            fallback_text=CODE_REVIEW_FALLBACK,
            raise_permanent=True,
            question=review_prompt,
        )
        return self._execute(caller, plan, cancel_event=cancel_event, deadline=deadline)

    def evaluate_code(
        self,
        code: Any,
        stdout: Optional[str] = None,
        stderr: Optional[str] = None,
        topic: Optional[str] = None,
        exercise: Optional[Mapping[str, Any]] = None,
        **kwargs: Any,
    ) -> str:
        """Return review feedback; raises :class:`PermanentProviderError` on bug-class failures."""
        return self.review_code(code, stdout, stderr, topic, exercise, **kwargs).text

    # ---- execution ----

    def _execute(
        self,
        caller: ResilientCaller,
        plan: _CallPlan,
        *,
        cancel_event: Optional[threading.Event],
        deadline: Optional[float],
    ) -> TutorReply:
        start = perf_counter()

        def _elapsed() -> int:
            return int((perf_counter() - start) * 1000)

        try:
            caller.config.require_api_key()
        except ConfigurationError as exc:
            logger.error("Configuration error for provider %s: %s", plan.provider, exc)
            return TutorReply(
                text=plan.fallback_text,
                provider=plan.provider,
                is_fallback=True,
                latency_ms=_elapsed(),
                error=f"configuration: {exc}",
            )

        normalized = normalize_history(plan.history)
        turns = window_turns(normalized.turns, caller.adapter.history_turns)
        turns = append_question(turns, plan.question)

        outcome = caller.call(
            turns,
            plan.prompt,
            plan.max_tokens,
            plan.temperature,
            cancel_event=cancel_event,
            deadline=deadline,
        )

        if isinstance(outcome, Success):
            return TutorReply(
                text=outcome.text,
                provider=plan.provider,
                latency_ms=_elapsed(),
                attempts=outcome.attempts,
            )

        if isinstance(outcome, PermanentFailure):
            logger.error(
                "Permanent failure from %s (status=%s): %s | diagnostics=%s",
                plan.provider,
                outcome.status_code,
                outcome.reason,
                outcome.diagnostics,
            )
            if plan.raise_permanent:
                raise outcome.to_error(plan.provider)
            error = f"permanent: {outcome.reason}"
        elif isinstance(outcome, Cancelled):
            error = "cancelled"
        elif isinstance(outcome, FallbackRequested):
            error = f"fallback: {outcome.reason}"
        else:  # pragma: no cover - exhaustive over CallOutcome
            error = f"unexpected outcome: {outcome!r}"

        _json_log(
            "tutor_fallback_reply",
            {
                "provider": plan.provider,
                "error": error,
                "attempts": getattr(outcome, "attempts", 0),
                "history_skipped": normalized.skipped,
            },
        )
        return TutorReply(
            text=plan.fallback_text,
            provider=plan.provider,
            is_fallback=True,
            latency_ms=_elapsed(),
            attempts=getattr(outcome, "attempts", 0),
            error=error,
        )


__all__ = [
    "InvalidTutorRequest",
    "PermanentProviderError",
    "TutorReply",
    "TutorService",
    "build_code_review_prompt",
    "build_system_prompt",
    "coerce_lesson_context",
    "coerce_preferences",
]
