"""
Stream relay: the core of MultiMind.
Consumes a DeltaChunk stream from the router, writes it to the client as
server-sent events, and buffers the full response for persistence.

One StreamSession per client stream:

    IDLE ──first chunk──▶ STREAMING ──final──────▶ COMPLETED   (writes [DONE], persists)
                                    ├─error/raise─▶ FAILED      (writes one error frame)
                                    └─disconnect──▶ ABORTED     (writes nothing, closes upstream)

The upstream is read by a producer task feeding a one-slot queue, so at most
one chunk is read ahead of the client. Aborting cancels that task, which
closes the upstream connection.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import json
import logging
from typing import AsyncIterator, Awaitable, Callable
from uuid import uuid4

from multimind.backends.base import DeltaChunk

logger = logging.getLogger(__name__)

DONE_FRAME = "data: [DONE]\n\n"
DISCONNECT_POLL_SECONDS = 0.5

# Producer end-of-stream marker (also used to wake a waiting consumer on abort)
_END = object()


def format_sse(payload: dict) -> str:
    """Frame one JSON payload as a server-sent event."""
    return f"data: {json.dumps(payload, ensure_ascii=False, separators=(',', ':'))}\n\n"


class StreamState(str, enum.Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


TERMINAL_STATES = frozenset({StreamState.COMPLETED, StreamState.ABORTED, StreamState.FAILED})

CompletionCallback = Callable[["StreamSession"], Awaitable[None] | None]


def _describe(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class StreamSession:
    """
    Owns one client stream: the upstream producer task, the response buffer,
    and the relay state. Sessions share nothing with each other.
    """

    def __init__(
        self,
        deltas: AsyncIterator[DeltaChunk],
        *,
        model_id: str = "",
        session_id: str | None = None,
        on_complete: CompletionCallback | None = None,
    ):
        self.id = uuid4().hex
        self.model_id = model_id
        self.session_id = session_id
        self.state = StreamState.IDLE
        self.error: str | None = None
        self.chunks_received = 0
        self._deltas = deltas
        self._on_complete = on_complete
        self._buffer: list[str] = []
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._producer: asyncio.Task | None = None
        self._persist_task: asyncio.Task | None = None
        self._started = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def text(self) -> str:
        """Everything delivered so far, in delivery order."""
        return "".join(self._buffer)

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def _transition(self, new_state: StreamState) -> bool:
        if self.done:
            return False
        logger.debug("Stream %s: %s -> %s", self.id, self.state.value, new_state.value)
        self.state = new_state
        return True

    # ------------------------------------------------------------------
    # Upstream side
    # ------------------------------------------------------------------

    async def _produce(self):
        """Pull chunks from the adapter into the queue until a terminal chunk."""
        try:
            async for chunk in self._deltas:
                await self._queue.put(chunk)
                if chunk.is_final or chunk.is_error:
                    return
            await self._queue.put(_END)
        except Exception as e:
            await self._queue.put(e)
        finally:
            aclose = getattr(self._deltas, "aclose", None)
            if aclose is not None:
                await aclose()

    def abort(self) -> None:
        """
        Client went away. Stop writing and cancel the upstream producer.
        No-op once the session is terminal.
        """
        if not self._transition(StreamState.ABORTED):
            return
        logger.info(
            "Stream %s aborted by client after %d chunks (model=%s)",
            self.id, self.chunks_received, self.model_id,
        )
        if self._producer is not None and not self._producer.done():
            self._producer.cancel()
        if self._queue.empty():
            self._queue.put_nowait(_END)

    async def wait_closed(self) -> None:
        """Wait for the producer and any pending persistence to finish."""
        tasks = [t for t in (self._producer, self._persist_task) if t is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def _complete(self) -> str:
        self._transition(StreamState.COMPLETED)
        logger.info(
            "Stream %s completed: %d chunks, %d chars (model=%s)",
            self.id, self.chunks_received, len(self.text), self.model_id,
        )
        if self._on_complete is not None:
            self._persist_task = asyncio.create_task(self._persist())
        return DONE_FRAME

    def _fail(self, message: str) -> str:
        self.error = message
        self._transition(StreamState.FAILED)
        # Partial text is dropped: a failed turn is never saved as an answer
        logger.warning(
            "Stream %s failed after %d chunks (model=%s): %s",
            self.id, self.chunks_received, self.model_id, message,
        )
        return format_sse({"error": message})

    async def _persist(self):
        try:
            result = self._on_complete(self)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error("Failed to persist stream %s (session=%s): %s", self.id, self.session_id, e)

    # ------------------------------------------------------------------
    # Client side
    # ------------------------------------------------------------------

    async def _watch_disconnect(self, is_disconnected: Callable[[], Awaitable[bool]]):
        while not self.done:
            try:
                disconnected = await is_disconnected()
            except Exception as e:
                logger.debug("Disconnect check failed for stream %s: %s", self.id, e)
                return
            if disconnected:
                self.abort()
                return
            await asyncio.sleep(DISCONNECT_POLL_SECONDS)

    async def frames(
        self,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> AsyncIterator[str]:
        """
        Yield SSE frames for the client. Can be consumed once.
        Closing or cancelling this generator counts as a client disconnect.
        """
        if self._started:
            raise RuntimeError(f"Stream {self.id} has already been consumed")
        self._started = True
        if self.done:
            return

        self._producer = asyncio.create_task(self._produce())
        watcher = None
        if is_disconnected is not None:
            watcher = asyncio.create_task(self._watch_disconnect(is_disconnected))

        try:
            while not self.done:
                item = await self._queue.get()
                if self.done:
                    return
                if self.state is StreamState.IDLE:
                    self._transition(StreamState.STREAMING)

                if isinstance(item, BaseException):
                    yield self._fail(_describe(item))
                    return
                if item is _END:
                    yield self._complete()
                    return

                self.chunks_received += 1
                if item.is_error:
                    yield self._fail(item.error_message)
                    return
                if item.text:
                    self._buffer.append(item.text)
                    yield format_sse({"text": item.text})
                if item.is_final and not self.done:
                    yield self._complete()
                    return
        except (asyncio.CancelledError, GeneratorExit):
            self.abort()
            raise
        finally:
            if watcher is not None:
                watcher.cancel()
