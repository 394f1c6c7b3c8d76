"""
OpenRouter backend — OpenAI-compatible chat completions over SSE.

Request conventions:
  - roles pass through unchanged; system turns stay system messages
  - an image turns the new user message into a content list with a text
    block and an image_url block holding a data URI

History policy: the full conversation is always sent.

Empty deltas: chunks whose delta.content is empty or null are suppressed
(role-only and usage-only chunks look like that); whitespace-only content is
forwarded as-is.
"""

from __future__ import annotations

import logging

from multimind.backends.base import (
    DeltaChunk,
    ProviderAdapter,
    SSEEvent,
    UpstreamRequest,
    normalize_image,
)
from multimind.errors import UpstreamMalformedEvent
from multimind.registry import ProviderTag
from multimind.storage.models import ConversationTurn

logger = logging.getLogger(__name__)


class OpenRouterAdapter(ProviderAdapter):
    """Adapter for the OpenRouter API (any OpenAI-compatible endpoint works)."""

    provider = ProviderTag.OPENROUTER
    env_var = "OPENROUTER_API_KEY"

    def __init__(
        self,
        url: str,
        api_key: str = "",
        referer: str = "",
        title: str = "",
        **kwargs,
    ):
        super().__init__(url=url, api_key=api_key, **kwargs)
        self.referer = referer
        self.title = title

    def translate_request(
        self,
        model: str,
        conversation: list[ConversationTurn],
        new_user_content: str,
        new_user_image: str | None = None,
    ) -> UpstreamRequest:
        messages: list[dict] = [
            {"role": t.role, "content": t.content} for t in conversation
        ]

        image = normalize_image(new_user_image)
        if image:
            content: str | list = [
                {"type": "text", "text": new_user_content},
                {"type": "image_url", "image_url": {"url": image.data_uri}},
            ]
        else:
            content = new_user_content
        messages.append({"role": "user", "content": content})

        body = {
            "model": model,
            "messages": messages,
            "stream": True,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        return UpstreamRequest(model=model, body=body)

    def endpoint(self, request: UpstreamRequest) -> str:
        return f"{self.url}/chat/completions"

    def headers(self) -> dict:
        """Build request headers with auth and app attribution."""
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        if self.referer:
            headers["HTTP-Referer"] = self.referer
        if self.title:
            headers["X-Title"] = self.title
        return headers

    def parse_event(self, event: SSEEvent) -> list[DeltaChunk]:
        if event.data.strip() == "[DONE]":
            return [DeltaChunk(is_final=True)]

        data = event.json()

        if "error" in data:
            err = data["error"]
            message = err.get("message") if isinstance(err, dict) else str(err)
            return [DeltaChunk(error_message=message or "OpenRouter stream error")]

        choices = data.get("choices")
        if choices is None:
            raise UpstreamMalformedEvent("OpenRouter chunk without choices")
        if not choices:
            return []

        choice = choices[0]
        content = (choice.get("delta") or {}).get("content")

        chunks: list[DeltaChunk] = []
        if content:
            chunks.append(DeltaChunk(text=content))
        if choice.get("finish_reason") == "error":
            chunks.append(DeltaChunk(error_message="OpenRouter reported an upstream error"))
        return chunks
