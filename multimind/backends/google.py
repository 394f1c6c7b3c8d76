"""
Google Gemini backend — streamGenerateContent over SSE.

Request conventions:
  - the assistant role is called "model"
  - system turns are joined and sent as systemInstruction
  - images travel as inlineData: raw base64 plus a separate mimeType

History policy: prior user/model turns are sent as structured history when
at least one exists; otherwise contents holds only the new user turn. The
image, if any, always rides on the new user turn, ahead of its text.

Empty deltas: events with no text are suppressed; whitespace-only text is
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

# finishReason values that mean the answer was withheld rather than finished
BLOCKED_FINISH_REASONS = {
    "SAFETY",
    "RECITATION",
    "BLOCKLIST",
    "PROHIBITED_CONTENT",
    "SPII",
    "IMAGE_SAFETY",
}

ROLE_MAP = {"user": "user", "assistant": "model"}


class GoogleAdapter(ProviderAdapter):
    """Adapter for the Gemini REST API (generativelanguage.googleapis.com)."""

    provider = ProviderTag.GOOGLE
    env_var = "GOOGLE_API_KEY"

    def translate_request(
        self,
        model: str,
        conversation: list[ConversationTurn],
        new_user_content: str,
        new_user_image: str | None = None,
    ) -> UpstreamRequest:
        system_text = "\n\n".join(
            t.content for t in conversation if t.role == "system" and t.content
        )

        history = [
            {"role": ROLE_MAP[t.role], "parts": [{"text": t.content}]}
            for t in conversation
            if t.role in ROLE_MAP
        ]

        new_parts: list[dict] = []
        image = normalize_image(new_user_image)
        if image:
            new_parts.append({"inlineData": {"mimeType": image.mime_type, "data": image.data}})
        new_parts.append({"text": new_user_content})
        new_turn = {"role": "user", "parts": new_parts}

        contents = history + [new_turn] if history else [new_turn]

        body: dict = {
            "contents": contents,
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_tokens,
            },
        }
        if system_text:
            body["systemInstruction"] = {"parts": [{"text": system_text}]}

        return UpstreamRequest(model=model, body=body)

    def endpoint(self, request: UpstreamRequest) -> str:
        return f"{self.url}/models/{request.model}:streamGenerateContent?alt=sse"

    def headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "x-goog-api-key": self.api_key,
        }

    def parse_event(self, event: SSEEvent) -> list[DeltaChunk]:
        data = event.json()

        if "error" in data:
            err = data["error"]
            message = err.get("message") if isinstance(err, dict) else str(err)
            return [DeltaChunk(error_message=message or "Gemini stream error")]

        feedback = data.get("promptFeedback") or {}
        if feedback.get("blockReason"):
            return [DeltaChunk(error_message=f"Prompt blocked by Gemini: {feedback['blockReason']}")]

        candidates = data.get("candidates")
        if candidates is None:
            # Usage-only trailer
            if "usageMetadata" in data:
                return []
            raise UpstreamMalformedEvent("Gemini event without candidates")
        if not candidates:
            return []

        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(
            p.get("text", "") for p in parts
            if isinstance(p, dict) and not p.get("thought")
        )

        chunks: list[DeltaChunk] = []
        if text:
            chunks.append(DeltaChunk(text=text))

        finish = candidate.get("finishReason")
        if finish in BLOCKED_FINISH_REASONS:
            chunks.append(DeltaChunk(error_message=f"Response blocked by Gemini: {finish}"))
        elif finish and finish != "FINISH_REASON_UNSPECIFIED":
            chunks.append(DeltaChunk(is_final=True))
        return chunks
