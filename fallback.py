"""Deterministic placeholder replies used when no provider can answer."""

from __future__ import annotations

import re
from typing import Optional, Pattern, Sequence, Tuple

GENERIC_FALLBACK = (
    "My knowledge services are temporarily unavailable, so I can't provide a complete answer "
    "at this moment. This is typically resolved within a few "
    "minutes. Please try asking your question again shortly. In the meantime, you might review "
    "the lesson material or the code practice sections."
)

CODE_REVIEW_FALLBACK = (
    "Automated code review is temporarily unavailable. Your code and its output were received, "
    "but feedback could not be generated right now. Please run the review again in a few minutes."
)

# First match wins; order matters.
FALLBACK_CATEGORIES: Sequence[Tuple[str, Pattern[str], str]] = (
    (
        "greeting",
        re.compile(r"\b(?:hi|hello|hey|greetings)\b", re.IGNORECASE),
        "Hello! I'm your programming tutor. I'm currently experiencing connectivity issues "
        "with my knowledge services. Please try again in a few minutes.",
    ),
    (
        "explain",
        re.compile(r"\bexplain\b", re.IGNORECASE),
        "I'd be happy to explain that{topic}. However, my knowledge services are temporarily "
        "unavailable. This is a temporary issue. Please try again in a few minutes.",
    ),
    (
        "question",
        re.compile(r"\b(?:how|what|why|when|where)\b", re.IGNORECASE),
        "That's a good question{topic}. I'm having trouble connecting to my knowledge services "
        "at the moment. Please try again in a few minutes.",
    ),
    (
        "code_request",
        re.compile(r"\b(?:code|example)\b", re.IGNORECASE),
        "I'd love to provide a code example{topic}, but I'm currently experiencing technical "
        "difficulties connecting to my knowledge base. Please try again in a few minutes.",
    ),
    (
        "debug",
        re.compile(r"\b(?:error|bug|fix|problem|issue)\b", re.IGNORECASE),
        "I'd like to help troubleshoot that{topic}, but I'm currently experiencing connectivity "
        "issues. Please try again shortly, or try describing the error in different terms when "
        "I'm back online.",
    ),
    (
        "comparison",
        re.compile(r"\b(?:compare|versus|vs|difference)\b", re.IGNORECASE),
        "I'd be happy to compare those concepts{topic} once my knowledge services are back "
        "online. Please try again in a few minutes.",
    ),
    (
        "creation",
        re.compile(r"\b(?:create|make|build|implement)\b", re.IGNORECASE),
        "I'd love to help you build that{topic}, but I'm temporarily disconnected from my "
        "knowledge base. Please try again in a few minutes.",
    ),
    (
        "best_practice",
        re.compile(r"\b(?:best practices?|should i|recommend)\b", re.IGNORECASE),
        "I'd be happy to recommend best practices{topic} once my knowledge services are "
        "restored. Please try again shortly.",
    ),
)

FALLBACK_TEMPLATES = {name: template for name, _, template in FALLBACK_CATEGORIES}


def classify_question(question: Optional[str]) -> Optional[str]:
    """Return the name of the first matching category, if any."""
    text = question or ""
    for name, pattern, _ in FALLBACK_CATEGORIES:
        if pattern.search(text):
            return name
    return None


def fallback_response(question: Optional[str], topic: Optional[str] = None) -> str:
    category = classify_question(question)
    if category is None:
        return GENERIC_FALLBACK
    topic_phrase = f" about {topic.strip()}" if topic and topic.strip() else ""
    return FALLBACK_TEMPLATES[category].format(topic=topic_phrase)
