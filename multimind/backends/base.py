"""
Base provider adapter.
All adapters implement this interface so the router can treat them uniformly:
translate_request() builds the upstream payload, stream_deltas() opens one
upstream stream and yields normalized DeltaChunks.
"""

from __future__ import annotations

import abc
import json
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator

import httpx

from multimind.errors import (
    ProviderAuthError,
    ProviderUnavailable,
    UpstreamMalformedEvent,
)
from multimind.registry import ProviderTag
from multimind.storage.models import ConversationTurn

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_MIME = "image/jpeg"


@dataclass(frozen=True)
class DeltaChunk:
    """Normalized unit every adapter produces."""
    text: str = ""
    is_final: bool = False
    error_message: str | None = None

    @property
    def is_error(self) -> bool:
        return self.error_message is not None


@dataclass
class ChatRequest:
    """One incoming chat call: prior turns plus the new user message."""
    public_model_id: str
    new_user_content: str
    conversation: list[ConversationTurn] = field(default_factory=list)
    new_user_image: str | None = None
    session_id: str | None = None


@dataclass(frozen=True)
class InlineImage:
    mime_type: str
    data: str  # raw base64, no prefix

    @property
    def data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


@dataclass
class UpstreamRequest:
    """Provider-specific payload produced by translate_request()."""
    model: str
    body: dict
    path: str = ""


@dataclass
class SSEEvent:
    data: str
    event: str = "message"
    id: str = ""

    def json(self) -> dict:
        try:
            parsed = json.loads(self.data)
        except json.JSONDecodeError as e:
            raise UpstreamMalformedEvent(f"Invalid JSON in event: {self.data[:120]!r}") from e
        if not isinstance(parsed, dict):
            raise UpstreamMalformedEvent(f"Expected a JSON object, got: {self.data[:120]!r}")
        return parsed


def normalize_image(image: str | None) -> InlineImage | None:
    """
    Accept raw base64 or a data URI and split it into MIME type + raw data.
    Empty input means no image. MIME defaults to image/jpeg.
    """
    if not image:
        return None
    image = image.strip()
    if image.startswith("data:") and "," in image:
        header, data = image.split(",", 1)
        mime = header[len("data:"):].split(";", 1)[0].strip()
        return InlineImage(mime_type=mime or DEFAULT_IMAGE_MIME, data=data)
    if "base64," in image:
        return InlineImage(mime_type=DEFAULT_IMAGE_MIME, data=image.split("base64,", 1)[1])
    return InlineImage(mime_type=DEFAULT_IMAGE_MIME, data=image)


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[SSEEvent]:
    """
    Group raw SSE lines into events.
    Comment lines (":...") are ignored; multiple data lines are joined by "\\n".
    """
    data_lines: list[str] = []
    event_type = "message"
    event_id = ""

    async for line in lines:
        if not line:
            if data_lines:
                yield SSEEvent(data="\n".join(data_lines), event=event_type, id=event_id)
            data_lines, event_type, event_id = [], "message", ""
            continue
        if line.startswith(":"):
            continue

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            data_lines.append(value)
        elif name == "event":
            event_type = value or "message"
        elif name == "id":
            event_id = value

    if data_lines:
        yield SSEEvent(data="\n".join(data_lines), event=event_type, id=event_id)


class ProviderAdapter(abc.ABC):
    """
    Abstract base for upstream providers.
    Subclasses describe the request shape and how to read one streaming event;
    the base owns the HTTP stream and its lifecycle.
    """

    provider: ProviderTag
    env_var: str = ""

    def __init__(
        self,
        url: str,
        api_key: str = "",
        timeout: float = 120,
        temperature: float = 0.7,
        max_tokens: int = 2048,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url.rstrip("/")
        self.api_key = api_key or ""
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._transport = transport
        if not self.api_key:
            logger.error(
                "%s is not set; every %s request will fail until it is configured",
                self.env_var or "API key", self.name,
            )

    @property
    def name(self) -> str:
        return self.provider.value

    def check_credentials(self) -> None:
        """Fail fast, before any network I/O, when no credential is configured."""
        if not self.api_key:
            raise ProviderAuthError(
                f"No API key configured for {self.name} ({self.env_var} is not set)",
                provider=self.name,
            )

    @abc.abstractmethod
    def translate_request(
        self,
        model: str,
        conversation: list[ConversationTurn],
        new_user_content: str,
        new_user_image: str | None = None,
    ) -> UpstreamRequest:
        """Build the upstream payload for one call."""
        ...

    @abc.abstractmethod
    def endpoint(self, request: UpstreamRequest) -> str:
        """Full URL the streaming request is posted to."""
        ...

    @abc.abstractmethod
    def headers(self) -> dict:
        """Request headers including auth."""
        ...

    @abc.abstractmethod
    def parse_event(self, event: SSEEvent) -> list[DeltaChunk]:
        """
        Extract zero or more chunks from one upstream event.
        Raise UpstreamMalformedEvent for events that cannot be read.
        """
        ...

    def _read_event(self, event: SSEEvent) -> list[DeltaChunk]:
        """parse_event(), with wrong-shape JSON reported as a malformed event."""
        try:
            return self.parse_event(event)
        except (AttributeError, TypeError, KeyError, IndexError) as e:
            raise UpstreamMalformedEvent(
                f"Unexpected {self.name} event shape ({e}): {event.data[:120]!r}"
            ) from e

    def _status_error(self, status_code: int, body: str):
        detail = f"{self.name} returned HTTP {status_code}: {body[:200]}"
        if status_code in (401, 403):
            return ProviderAuthError(detail, provider=self.name, status_code=status_code)
        return ProviderUnavailable(detail, provider=self.name, status_code=status_code)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def stream_deltas(self, request: UpstreamRequest) -> AsyncIterator[DeltaChunk]:
        """
        Open exactly one upstream stream and yield normalized chunks.
        Stops after the first final or error chunk. A clean end of stream
        without an explicit completion signal is reported as final.
        Closing or cancelling the generator closes the upstream connection.
        """
        self.check_credentials()
        url = self.endpoint(request)
        logger.debug("Opening %s stream for model '%s'", self.name, request.model)

        try:
            async with self._client() as client:
                async with client.stream(
                    "POST", url, headers=self.headers(), json=request.body,
                ) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        raise self._status_error(resp.status_code, body)

                    async for event in iter_sse_events(resp.aiter_lines()):
                        try:
                            chunks = self._read_event(event)
                        except UpstreamMalformedEvent as e:
                            logger.warning("Skipping malformed %s event: %s", self.name, e)
                            continue
                        for chunk in chunks:
                            yield chunk
                            if chunk.is_final or chunk.is_error:
                                return
        except httpx.TimeoutException as e:
            logger.warning("%s stream timed out for model '%s'", self.name, request.model)
            raise ProviderUnavailable(
                f"{self.name} timed out after {self.timeout}s", provider=self.name,
            ) from e
        except httpx.HTTPError as e:
            logger.warning("%s stream failed for model '%s': %s", self.name, request.model, e)
            raise ProviderUnavailable(
                f"{self.name} connection failed: {e}", provider=self.name,
            ) from e

        yield DeltaChunk(is_final=True)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} url={self.url!r}>"
