"""
Tests for the stream relay (StreamSession state machine).
Covers framing, accumulation, completion, failure, client disconnect and
isolation between concurrent sessions.
"""

import asyncio
import json

import httpx
import pytest

from multimind import relay
from multimind.backends.base import ChatRequest, DeltaChunk
from multimind.backends.router import CompletionRouter
from multimind.errors import PersistenceFailure, ProviderUnavailable
from multimind.relay import DONE_FRAME, StreamSession, StreamState, format_sse


class FakeUpstream:
    """
    Async generator source that records how many times it was torn down.
    hang=True blocks forever after the last chunk instead of finishing.
    """

    def __init__(self, chunks, hang=False, fail_after=None, final=True, delay=0.0):
        self.chunks = list(chunks)
        self.hang = hang
        self.fail_after = fail_after
        self.final = final
        self.delay = delay
        self.closed = 0

    async def deltas(self):
        try:
            for i, chunk in enumerate(self.chunks):
                if self.fail_after == i:
                    raise ProviderUnavailable("upstream connection reset", provider="fake")
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield chunk if isinstance(chunk, DeltaChunk) else DeltaChunk(text=chunk)
            if self.fail_after == len(self.chunks):
                raise ProviderUnavailable("upstream connection reset", provider="fake")
            if self.hang:
                await asyncio.Event().wait()
            if self.final:
                yield DeltaChunk(is_final=True)
        finally:
            self.closed += 1


async def _collect(agen) -> list:
    return [item async for item in agen]


def _text_frame(text: str) -> str:
    return f"data: {json.dumps({'text': text}, ensure_ascii=False, separators=(',', ':'))}\n\n"


# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------

def test_format_sse_is_compact_json():
    assert format_sse({"text": "Hi"}) == 'data: {"text":"Hi"}\n\n'
    assert format_sse({"error": "boom"}) == 'data: {"error":"boom"}\n\n'
    assert format_sse({"text": "é"}) == 'data: {"text":"é"}\n\n'


@pytest.mark.asyncio
async def test_gemini_scenario_end_to_end():
    """gemini-pro streaming "Hi", " there", "!" through router and relay."""
    events = [{"candidates": [{"content": {"parts": [{"text": t}], "role": "model"}}]}
              for t in ["Hi", " there", "!"]]
    events.append({"candidates": [{"finishReason": "STOP"}]})
    body = "".join(f"data: {json.dumps(e)}\n\n" for e in events)

    transport = httpx.MockTransport(
        lambda request: httpx.Response(200, content=body.encode(), headers={"content-type": "text/event-stream"})
    )
    router = CompletionRouter.from_config(
        {"providers": {"google": {"url": "https://gemini.test/v1beta", "api_key": "k"}}},
        transport=transport,
    )

    persisted = []
    session = StreamSession(
        router.route(ChatRequest(public_model_id="gemini-pro", new_user_content="Hello")),
        model_id="gemini-pro",
        on_complete=lambda s: persisted.append(s.text),
    )
    frames = await _collect(session.frames())
    await session.wait_closed()

    assert frames == [
        'data: {"text":"Hi"}\n\n',
        'data: {"text":" there"}\n\n',
        'data: {"text":"!"}\n\n',
        "data: [DONE]\n\n",
    ]
    assert session.state is StreamState.COMPLETED
    assert persisted == ["Hi there!"]


# ---------------------------------------------------------------------------
# Accumulation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("chunks", [
    ["a"],
    ["Hel", "lo", ", ", "wor", "ld"],
    ["  ", "\n", "tabs\t", " "],
    ["多", "语言", " ✓"],
    list("character by character"),
])
async def test_accumulated_text_is_concatenation_of_deltas(chunks):
    upstream = FakeUpstream(chunks)
    session = StreamSession(upstream.deltas())
    frames = await _collect(session.frames())

    assert session.text == "".join(chunks)
    assert frames[:-1] == [_text_frame(c) for c in chunks]
    assert frames[-1] == DONE_FRAME


@pytest.mark.asyncio
async def test_text_on_final_chunk_is_kept():
    upstream = FakeUpstream(["a", DeltaChunk(text="b", is_final=True)], final=False)
    session = StreamSession(upstream.deltas())
    frames = await _collect(session.frames())
    assert frames == [_text_frame("a"), _text_frame("b"), DONE_FRAME]
    assert session.text == "ab"


@pytest.mark.asyncio
async def test_exhausted_stream_without_final_completes():
    upstream = FakeUpstream(["x", "y"], final=False)
    session = StreamSession(upstream.deltas())
    frames = await _collect(session.frames())
    assert frames[-1] == DONE_FRAME
    assert session.state is StreamState.COMPLETED


# ---------------------------------------------------------------------------
# Completion and persistence
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_async_persistence_runs_after_done():
    saved = []

    async def persist(s):
        await asyncio.sleep(0)
        saved.append((s.session_id, s.model_id, s.text))

    session = StreamSession(
        FakeUpstream(["one ", "two"]).deltas(),
        model_id="qwen-plus", session_id="chat_1", on_complete=persist,
    )
    frames = await _collect(session.frames())
    assert frames[-1] == DONE_FRAME
    await session.wait_closed()
    assert saved == [("chat_1", "qwen-plus", "one two")]


@pytest.mark.asyncio
async def test_persistence_failure_does_not_affect_stream():
    async def persist(s):
        raise PersistenceFailure("disk full")

    session = StreamSession(FakeUpstream(["ok"]).deltas(), on_complete=persist)
    frames = await _collect(session.frames())
    await session.wait_closed()

    assert frames == [_text_frame("ok"), DONE_FRAME]
    assert session.state is StreamState.COMPLETED


# ---------------------------------------------------------------------------
# Failure
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_provider_failure_after_two_chunks():
    saved = []
    upstream = FakeUpstream(["first", "second", "third"], fail_after=2)
    session = StreamSession(upstream.deltas(), on_complete=lambda s: saved.append(s.text))
    frames = await _collect(session.frames())
    await session.wait_closed()

    assert session.state is StreamState.FAILED
    assert frames[:2] == [_text_frame("first"), _text_frame("second")]
    error_frames = [f for f in frames if '"error"' in f]
    assert error_frames == ['data: {"error":"upstream connection reset"}\n\n']
    assert DONE_FRAME not in frames
    assert len(frames) == 3
    # Partial answers are not persisted
    assert saved == []
    assert session.text == "firstsecond"
    assert session.error == "upstream connection reset"


@pytest.mark.asyncio
async def test_error_chunk_fails_stream():
    upstream = FakeUpstream(["partial", DeltaChunk(error_message="quota exceeded"), "never"])
    session = StreamSession(upstream.deltas())
    frames = await _collect(session.frames())
    await session.wait_closed()

    assert frames == [_text_frame("partial"), format_sse({"error": "quota exceeded"})]
    assert session.state is StreamState.FAILED
    assert upstream.closed == 1


@pytest.mark.asyncio
async def test_unexpected_exception_fails_stream():
    async def broken():
        yield DeltaChunk(text="x")
        raise RuntimeError("decoder blew up")

    session = StreamSession(broken())
    frames = await _collect(session.frames())
    assert frames[-1] == format_sse({"error": "decoder blew up"})
    assert session.state is StreamState.FAILED


# ---------------------------------------------------------------------------
# Client disconnect
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_disconnect_after_n_chunks_aborts_and_closes_upstream_once():
    upstream = FakeUpstream(["a", "b", "c"], hang=True)
    saved = []
    session = StreamSession(upstream.deltas(), on_complete=lambda s: saved.append(s.text))
    frames = session.frames()

    received = [await frames.__anext__(), await frames.__anext__()]
    await frames.aclose()
    await session.wait_closed()

    assert received == [_text_frame("a"), _text_frame("b")]
    assert session.state is StreamState.ABORTED
    assert upstream.closed == 1
    assert saved == []


@pytest.mark.asyncio
async def test_disconnect_watcher_aborts_blocked_stream(monkeypatch):
    monkeypatch.setattr(relay, "DISCONNECT_POLL_SECONDS", 0.01)
    upstream = FakeUpstream(["only"], hang=True)
    session = StreamSession(upstream.deltas())

    async def is_disconnected():
        return session.chunks_received >= 1

    frames = await asyncio.wait_for(_collect(session.frames(is_disconnected=is_disconnected)), timeout=5)
    await session.wait_closed()

    assert frames == [_text_frame("only")]
    assert session.state is StreamState.ABORTED
    assert upstream.closed == 1


@pytest.mark.asyncio
async def test_abort_is_idempotent_and_terminal_states_stick():
    session = StreamSession(FakeUpstream(["done"]).deltas())
    await _collect(session.frames())
    assert session.state is StreamState.COMPLETED

    session.abort()
    session.abort()
    assert session.state is StreamState.COMPLETED


@pytest.mark.asyncio
async def test_abort_before_start_writes_nothing():
    upstream = FakeUpstream(["never"])
    session = StreamSession(upstream.deltas())
    session.abort()
    assert await _collect(session.frames()) == []
    assert session.state is StreamState.ABORTED


@pytest.mark.asyncio
async def test_frames_can_only_be_consumed_once():
    session = StreamSession(FakeUpstream(["x"]).deltas())
    await _collect(session.frames())
    with pytest.raises(RuntimeError):
        await _collect(session.frames())


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_concurrent_sessions_are_isolated():
    one = StreamSession(FakeUpstream([f"A{i}" for i in range(20)], delay=0.001).deltas(), model_id="gemini-pro")
    two = StreamSession(FakeUpstream([f"B{i}" for i in range(20)], delay=0.001).deltas(), model_id="qwen-plus")

    frames_one, frames_two = await asyncio.gather(_collect(one.frames()), _collect(two.frames()))

    assert one.text == "".join(f"A{i}" for i in range(20))
    assert two.text == "".join(f"B{i}" for i in range(20))
    assert not any("B" in f for f in frames_one)
    assert not any("A" in f for f in frames_two)
    assert one.state is two.state is StreamState.COMPLETED
