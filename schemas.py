"""Pydantic schemas for learner preferences, lesson context and attribution output."""

from __future__ import annotations

import json
import math
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, field_validator

__all__ = [
    "ResponseLength",
    "GenerationPreferences",
    "StrugglePoint",
    "LessonContext",
    "ConfidenceTier",
    "AttributionRecord",
    "TOKEN_BUDGETS",
    "MIN_TOKENS",
    "MAX_TOKENS",
]

MIN_TOKENS = 100
MAX_TOKENS = 2000
DEFAULT_TOKENS = 800

TOKEN_BUDGETS: Dict[str, int] = {
    "brief": 300,
    "short": 300,
    "medium": 800,
    "moderate": 800,
    "detailed": 1500,
    "long": 1500,
    "comprehensive": 1500,
}

ResponseLength = Union[str, int]

_STYLE_ALIASES = {
    "analogy": "analogy",
    "analogies": "analogy",
    "step_by_step": "step_by_step",
    "step-by-step": "step_by_step",
    "stepbystep": "step_by_step",
    "visual": "visual",
    "none": "none",
}


class GenerationPreferences(BaseModel):
    """Learner-controlled generation settings.

    Both the camelCase keys sent by the chat front-end and the snake_case keys
    used by lesson views are accepted.
    """

    response_length: Optional[ResponseLength] = Field(
        default=None,
        validation_alias=AliasChoices("responseLength", "response_length"),
        description="Named tier (brief/medium/detailed) or explicit token budget.",
    )
    include_code_examples: bool = Field(
        default=False,
        validation_alias=AliasChoices("include_code_examples", "includeCodeExamples", "codeExamples"),
    )
    explanation_detail: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("explanationDetail", "explanation_detail"),
    )
    expertise_level: Optional[Literal["beginner", "intermediate", "advanced"]] = Field(
        default=None,
        validation_alias=AliasChoices("expertise_level", "expertiseLevel"),
    )
    explanation_style: Optional[Literal["analogy", "step_by_step", "visual", "none"]] = Field(
        default=None,
        validation_alias=AliasChoices("explanation_style", "explanationStyle"),
    )

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
    }

    @field_validator("response_length", mode="before")
    @classmethod
    def _coerce_length(cls, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, bool):
            raise ValueError("responseLength must be a tier name or a number")
        if isinstance(value, (int, float)):
            if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
                raise ValueError("responseLength must be finite")
            return int(value)
        if isinstance(value, str):
            cleaned = value.strip().lower()
            if not cleaned:
                return None
            try:
                return int(float(cleaned))
            except ValueError:
                return cleaned
        raise ValueError("responseLength must be a tier name or a number")

    @field_validator("expertise_level", mode="before")
    @classmethod
    def _lower_level(cls, value: Any) -> Any:
        if isinstance(value, str):
            cleaned = value.strip().lower()
            return cleaned or None
        return value

    @field_validator("explanation_style", mode="before")
    @classmethod
    def _normalise_style(cls, value: Any) -> Any:
        if isinstance(value, str):
            cleaned = value.strip().lower().replace(" ", "_")
            if not cleaned:
                return None
            return _STYLE_ALIASES.get(cleaned, cleaned)
        return value

    @property
    def max_tokens(self) -> int:
        """Token budget derived from ``response_length``.

        Named tiers map to 300/800/1500, unknown names to 800 and explicit
        numbers are clamped into [100, 2000].
        """
        length = self.response_length
        if length is None:
            return DEFAULT_TOKENS
        if isinstance(length, int):
            return max(MIN_TOKENS, min(MAX_TOKENS, length))
        return TOKEN_BUDGETS.get(length, DEFAULT_TOKENS)

    @property
    def length_label(self) -> Optional[str]:
        if isinstance(self.response_length, str):
            return self.response_length
        return None


class StrugglePoint(BaseModel):
    concept: Optional[str] = None
    details: Optional[str] = None


class LessonContext(BaseModel):
    """Instructional context injected into the system prompt.

    ``lesson_context`` is a pre-rendered block supplied by the lesson view; when
    present it replaces the individual fields.
    """

    lesson_context: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("lesson_context", "lessonContext")
    )
    module_title: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("module_title", "moduleTitle")
    )
    module_content: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("module_content", "moduleContent")
    )
    examples: Optional[Any] = None
    key_points: Optional[Any] = Field(
        default=None, validation_alias=AliasChoices("key_points", "keyPoints")
    )
    guidance_notes: Optional[Any] = Field(
        default=None, validation_alias=AliasChoices("guidance_notes", "guidanceNotes")
    )
    teaching_strategy: Optional[Any] = Field(
        default=None, validation_alias=AliasChoices("teaching_strategy", "teachingStrategy")
    )
    common_misconceptions: Optional[Any] = Field(
        default=None,
        validation_alias=AliasChoices("common_misconceptions", "commonMisconceptions"),
    )
    struggle_points: List[StrugglePoint] = Field(
        default_factory=list,
        validation_alias=AliasChoices("struggle_points", "strugglePoints"),
    )

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
    }

    def is_empty(self) -> bool:
        return not any(
            (
                self.lesson_context,
                self.module_title,
                self.module_content,
                self.examples,
                self.key_points,
                self.guidance_notes,
                self.teaching_strategy,
                self.common_misconceptions,
                self.struggle_points,
            )
        )


def render_context_value(value: Any) -> str:
    """Render a lesson-context field for the prompt; structured values become compact JSON."""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError):
        return str(value)


class ConfidenceTier(str, Enum):
    EXPLICIT = "explicit"
    SESSION = "session"
    TEMPORAL = "temporal"


# Numeric weights stored on preference logs.
CONFIDENCE_WEIGHTS: Dict[ConfidenceTier, float] = {
    ConfidenceTier.EXPLICIT: 0.95,
    ConfidenceTier.SESSION: 0.85,
    ConfidenceTier.TEMPORAL: 0.75,
}
UNKNOWN_CONFIDENCE_WEIGHT = 0.80


class AttributionRecord(BaseModel):
    attempt_kind: Literal["quiz", "practice"]
    attempt_id: int
    attributed_provider: str
    confidence_tier: ConfidenceTier
    source_chat_message_id: Optional[int] = None
    delay_seconds: Optional[int] = Field(default=None, ge=0)
    created_at: Optional[str] = None

    @property
    def confidence_weight(self) -> float:
        return CONFIDENCE_WEIGHTS.get(self.confidence_tier, UNKNOWN_CONFIDENCE_WEIGHT)
