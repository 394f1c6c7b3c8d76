"""
Alibaba DashScope backend — native generation API with SSE enabled.

Request conventions:
  - system turns are folded into one leading system message
  - text-only calls go to text-generation with string content
  - calls carrying an image, or targeting a "-vl" model, go to
    multimodal-generation where content is a list of {"text"} / {"image"}
    items and the image is a data URI
  - incremental_output is on, so every event carries only the new text

History policy: the full conversation is always sent.

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

TEXT_PATH = "/services/aigc/text-generation/generation"
MULTIMODAL_PATH = "/services/aigc/multimodal-generation/generation"

FINISH_REASONS = {"stop", "length"}


def _is_vision_model(model: str) -> bool:
    return "-vl" in model.lower()


class AlibabaAdapter(ProviderAdapter):
    """Adapter for DashScope (Qwen models)."""

    provider = ProviderTag.ALIBABA
    env_var = "DASHSCOPE_API_KEY"

    def translate_request(
        self,
        model: str,
        conversation: list[ConversationTurn],
        new_user_content: str,
        new_user_image: str | None = None,
    ) -> UpstreamRequest:
        image = normalize_image(new_user_image)
        multimodal = image is not None or _is_vision_model(model)

        def content(text: str):
            return [{"text": text}] if multimodal else text

        messages: list[dict] = []
        system_text = "\n\n".join(
            t.content for t in conversation if t.role == "system" and t.content
        )
        if system_text:
            messages.append({"role": "system", "content": content(system_text)})

        for turn in conversation:
            if turn.role == "system":
                continue
            messages.append({"role": turn.role, "content": content(turn.content)})

        if image:
            new_content = [{"image": image.data_uri}, {"text": new_user_content}]
        else:
            new_content = content(new_user_content)
        messages.append({"role": "user", "content": new_content})

        body = {
            "model": model,
            "input": {"messages": messages},
            "parameters": {
                "result_format": "message",
                "incremental_output": True,
                "temperature": self.temperature,
                "max_tokens": self.max_tokens,
            },
        }
        return UpstreamRequest(
            model=model,
            body=body,
            path=MULTIMODAL_PATH if multimodal else TEXT_PATH,
        )

    def endpoint(self, request: UpstreamRequest) -> str:
        return f"{self.url}{request.path or TEXT_PATH}"

    def headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "Authorization": f"Bearer {self.api_key}",
            "X-DashScope-SSE": "enable",
        }

    @staticmethod
    def _extract_text(content) -> str:
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(
                item.get("text", "") for item in content if isinstance(item, dict)
            )
        return ""

    def parse_event(self, event: SSEEvent) -> list[DeltaChunk]:
        data = event.json()
        output = data.get("output")

        if event.event == "error" or (output is None and data.get("code")):
            code = data.get("code", "error")
            message = data.get("message") or "DashScope stream error"
            return [DeltaChunk(error_message=f"{code}: {message}")]

        if not isinstance(output, dict):
            raise UpstreamMalformedEvent("DashScope event without output")

        choices = output.get("choices")
        if choices:
            choice = choices[0]
            text = self._extract_text((choice.get("message") or {}).get("content"))
            finish = choice.get("finish_reason")
        else:
            # Legacy result_format=text shape
            text = output.get("text") or ""
            finish = output.get("finish_reason")

        chunks: list[DeltaChunk] = []
        if text:
            chunks.append(DeltaChunk(text=text))
        if finish in FINISH_REASONS:
            chunks.append(DeltaChunk(is_final=True))
        return chunks
