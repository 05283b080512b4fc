"""Google Gemini ``generateContent`` adapter."""

from __future__ import annotations

from typing import Any, Dict, List, Sequence

from conversation import ConversationTurn, Role
from providers.base import ProviderAdapter, ProviderRequest, message_shape

_ROLE_NAMES = {Role.USER: "user", Role.ASSISTANT: "model"}


class GeminiAdapter(ProviderAdapter):
    name = "gemini"
    top_p = 0.8
    top_k = 40

    @property
    def endpoint(self) -> str:
        return f"{self.config.api_url}/models/{self.config.model}:generateContent"

    def build_request(
        self,
        turns: Sequence[ConversationTurn],
        prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> ProviderRequest:
        contents: List[Dict[str, Any]] = [
            {"role": _ROLE_NAMES[turn.role], "parts": [{"text": turn.text}]} for turn in turns
        ]
        body: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": temperature,
                "topP": self.top_p,
                "topK": self.top_k,
                "maxOutputTokens": int(max_tokens),
            },
        }
        if prompt:
            body["systemInstruction"] = {"parts": [{"text": prompt}]}
        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": self.config.api_key,
        }
        shape = message_shape(
            ([{"role": "system", "content": [{"text": prompt}]}] if prompt else []) + contents,
            content_key="parts",
        )
        return ProviderRequest(url=self.endpoint, headers=headers, body=body, message_shape=shape)

    def parse_response(self, raw: Any) -> str:
        try:
            text = raw["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            raise self._parse_error("Unexpected response format from Gemini", raw) from None
        if not isinstance(text, str) or not text.strip():
            raise self._parse_error("Empty text in Gemini response", raw)
        return text
