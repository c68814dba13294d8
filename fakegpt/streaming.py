"""
Streaming response simulator.

A reply is emitted one character per tick over an open connection, framed
either as named Server-Sent Events (messages API) or as `data:` JSON chunk
lines ending in a `[DONE]` sentinel (chat completions API).

Lifecycle of one stream:
  Idle -> DelayWait -> Opening -> Emitting -> Closing -> Done
with Cancelled reachable from any non-terminal phase once the peer goes away.
Liveness is checked before every write; nothing is written after Cancelled.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Optional

from .config import CHAR_INTERVAL_MS

logger = logging.getLogger("fakegpt.stream")

DONE_SENTINEL = "data: [DONE]\n\n"

# Longest single sleep while waiting out a response delay; the peer is
# re-checked between slices.
DELAY_POLL_MS = 100


class Protocol(str, Enum):
    SSE = "sse"
    CHUNKED_LINES = "chunked-lines"


class StreamPhase(str, Enum):
    IDLE = "idle"
    DELAY_WAIT = "delay_wait"
    OPENING = "opening"
    EMITTING = "emitting"
    CLOSING = "closing"
    DONE = "done"
    CANCELLED = "cancelled"


TERMINAL_PHASES = (StreamPhase.DONE, StreamPhase.CANCELLED)

_NEXT_PHASES = {
    StreamPhase.IDLE: (StreamPhase.DELAY_WAIT, StreamPhase.OPENING),
    StreamPhase.DELAY_WAIT: (StreamPhase.OPENING,),
    StreamPhase.OPENING: (StreamPhase.EMITTING,),
    StreamPhase.EMITTING: (StreamPhase.CLOSING,),
    StreamPhase.CLOSING: (StreamPhase.DONE,),
}


@dataclass
class StreamState:
    response_id: str
    full_text: str
    protocol: Protocol
    model: str
    input_tokens: int = 0
    created: int = field(default_factory=lambda: int(time.time()))
    cursor: int = 0
    phase: StreamPhase = StreamPhase.IDLE

    @property
    def exhausted(self) -> bool:
        return self.cursor >= len(self.full_text)

    @property
    def finished(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def advance(self) -> str:
        if self.exhausted:
            raise IndexError(f"stream {self.response_id} has no characters left")
        char = self.full_text[self.cursor]
        self.cursor += 1
        return char

    def transition(self, phase: StreamPhase) -> None:
        if phase is StreamPhase.CANCELLED:
            if not self.finished:
                self.phase = phase
            return
        if phase not in _NEXT_PHASES.get(self.phase, ()):
            raise RuntimeError(f"illegal stream transition {self.phase.value} -> {phase.value}")
        self.phase = phase


# --- Wire encodings ---

class ChunkedLinesEncoder:
    """OpenAI `chat.completion.chunk` objects, one per `data:` line."""

    protocol = Protocol.CHUNKED_LINES
    media_type = "text/plain; charset=utf-8"

    def _chunk(self, state: StreamState, delta: dict, finish_reason: Optional[str]) -> str:
        chunk = {
            "id": state.response_id,
            "object": "chat.completion.chunk",
            "created": state.created,
            "model": state.model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }
        return f"data: {json.dumps(chunk, ensure_ascii=False)}\n\n"

    def preamble(self, state: StreamState) -> list[str]:
        return []

    def delta(self, state: StreamState, text: str) -> str:
        return self._chunk(state, {"content": text}, None)

    def epilogue(self, state: StreamState) -> list[str]:
        return [self._chunk(state, {}, "stop"), DONE_SENTINEL]


class SSEEncoder:
    """Anthropic messages events: message_start ... message_stop."""

    protocol = Protocol.SSE
    media_type = "text/event-stream"

    @staticmethod
    def event(name: str, payload: dict) -> str:
        return f"event: {name}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"

    def preamble(self, state: StreamState) -> list[str]:
        message = {
            "id": state.response_id,
            "type": "message",
            "role": "assistant",
            "content": [],
            "model": state.model,
            "stop_reason": None,
            "stop_sequence": None,
            "usage": {"input_tokens": state.input_tokens, "output_tokens": 0},
        }
        return [
            self.event("message_start", {"type": "message_start", "message": message}),
            self.event("content_block_start", {
                "type": "content_block_start",
                "index": 0,
                "content_block": {"type": "text", "text": ""},
            }),
        ]

    def delta(self, state: StreamState, text: str) -> str:
        return self.event("content_block_delta", {
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "text_delta", "text": text},
        })

    def epilogue(self, state: StreamState) -> list[str]:
        return [
            self.event("content_block_stop", {"type": "content_block_stop", "index": 0}),
            self.event("message_stop", {"type": "message_stop"}),
        ]


ENCODERS = {
    Protocol.SSE: SSEEncoder,
    Protocol.CHUNKED_LINES: ChunkedLinesEncoder,
}

STREAM_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}


async def _always_connected() -> bool:
    return True


async def wait_while_connected(
    delay_ms: int,
    is_connected: Callable[[], Awaitable[bool]] = _always_connected,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    poll_ms: int = DELAY_POLL_MS,
) -> bool:
    """Sleep for delay_ms in slices of at most poll_ms. False as soon as the peer is gone."""
    remaining = delay_ms
    while True:
        if not await is_connected():
            return False
        if remaining <= 0:
            return True
        step = min(poll_ms, remaining)
        await sleep(step / 1000)
        remaining -= step


class StreamEmitter:
    """Drives one StreamState from Idle to Done (or Cancelled)."""

    def __init__(
        self,
        state: StreamState,
        *,
        interval: float = CHAR_INTERVAL_MS / 1000,
        is_connected: Callable[[], Awaitable[bool]] = _always_connected,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.state = state
        self.encoder = ENCODERS[state.protocol]()
        self.interval = interval
        self._is_connected = is_connected
        self._sleep = sleep
        self._started = time.time()

    @property
    def media_type(self) -> str:
        return self.encoder.media_type

    @property
    def headers(self) -> dict:
        return dict(STREAM_HEADERS)

    async def hold(self, delay_ms: int) -> bool:
        """Wait out the response delay before any header is sent. False if the peer left."""
        if delay_ms <= 0:
            return True
        self.state.transition(StreamPhase.DELAY_WAIT)
        try:
            alive = await wait_while_connected(delay_ms, self._is_connected, self._sleep)
        except asyncio.CancelledError:
            self._cancel()
            raise
        if not alive:
            self._cancel()
        return alive

    async def frames(self) -> AsyncIterator[str]:
        state = self.state
        try:
            state.transition(StreamPhase.OPENING)
            for frame in self.encoder.preamble(state):
                if not await self._is_connected():
                    self._cancel()
                    return
                yield frame

            state.transition(StreamPhase.EMITTING)
            while not state.exhausted:
                if state.cursor > 0:
                    await self._sleep(self.interval)
                if not await self._is_connected():
                    self._cancel()
                    return
                yield self.encoder.delta(state, state.advance())

            state.transition(StreamPhase.CLOSING)
            for frame in self.encoder.epilogue(state):
                if not await self._is_connected():
                    self._cancel()
                    return
                yield frame
            state.transition(StreamPhase.DONE)
            elapsed = time.time() - self._started
            logger.info(f"[{state.response_id}] <- {len(state.full_text)} chars ({elapsed:.1f}s, streamed)")
        except (asyncio.CancelledError, GeneratorExit):
            self._cancel()
            raise

    def _cancel(self) -> None:
        state = self.state
        if state.finished:
            return
        state.transition(StreamPhase.CANCELLED)
        logger.info(f"[{state.response_id}] client went away at {state.cursor}/{len(state.full_text)} chars")
