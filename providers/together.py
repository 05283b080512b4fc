"""Together AI chat-completions adapter."""

from __future__ import annotations

from typing import Any, Dict, List, Sequence

from conversation import ConversationTurn
from providers.base import ProviderAdapter, ProviderRequest, message_shape


class TogetherAdapter(ProviderAdapter):
    name = "together"
    top_p = 0.8
    top_k = 40

    @property
    def endpoint(self) -> str:
        return f"{self.config.api_url}/chat/completions"

    def build_request(
        self,
        turns: Sequence[ConversationTurn],
        prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> ProviderRequest:
        messages: List[Dict[str, Any]] = []
        if prompt:
            messages.append({"role": "system", "content": prompt})
        messages.extend(turn.as_message() for turn in turns)
        body = {
            "model": self.config.model,
            "messages": messages,
            "temperature": temperature,
            "top_p": self.top_p,
            "top_k": self.top_k,
            "max_tokens": int(max_tokens),
        }
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }
        return ProviderRequest(
            url=self.endpoint, headers=headers, body=body, message_shape=message_shape(messages)
        )

    def parse_response(self, raw: Any) -> str:
        try:
            text = raw["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise self._parse_error("Unexpected response format from Together AI", raw) from None
        if not isinstance(text, str) or not text.strip():
            raise self._parse_error("Empty text in Together AI response", raw)
        return text
