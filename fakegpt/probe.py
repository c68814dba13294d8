"""Client that exercises a running server the way an SDK would."""

import json
import logging
import time
from dataclasses import dataclass
from typing import Optional

import aiohttp

from .errors import Surface

logger = logging.getLogger("fakegpt.probe")

PATHS = {
    Surface.OPENAI: "/v1/chat/completions",
    Surface.ANTHROPIC: "/v1/messages",
}


class StreamCollector:
    """Reassembles reply text from either streaming wire format, fed in arbitrary pieces."""

    def __init__(self, surface: Surface):
        self.surface = surface
        self.parts: list[str] = []
        self.events = 0
        self.finished = False
        self._buffer = ""

    @property
    def text(self) -> str:
        return "".join(self.parts)

    def feed(self, data: str) -> None:
        self._buffer += data
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            self._handle_line(line.strip())

    def _handle_line(self, line: str) -> None:
        if not line.startswith("data: "):
            return
        data_str = line[6:].strip()
        if data_str == "[DONE]":
            self.finished = True
            return
        try:
            event = json.loads(data_str)
        except json.JSONDecodeError:
            logger.debug(f"Skipping undecodable stream line: {data_str[:80]}")
            return
        self.events += 1

        if self.surface is Surface.OPENAI:
            for choice in event.get("choices", []):
                content = (choice.get("delta") or {}).get("content")
                if content:
                    self.parts.append(content)
        elif event.get("type") == "content_block_delta":
            delta = event.get("delta", {})
            if delta.get("type") == "text_delta":
                self.parts.append(delta.get("text", ""))
        elif event.get("type") == "message_stop":
            self.finished = True


def envelope_text(surface: Surface, data: dict) -> str:
    if surface is Surface.OPENAI:
        return data["choices"][0]["message"]["content"]
    return "".join(block.get("text", "") for block in data.get("content", []) if block.get("type") == "text")


@dataclass
class ProbeResult:
    status: int
    text: str
    elapsed: float
    events: int = 0
    finished: bool = True
    first_event_after: Optional[float] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == 200 and self.finished and self.error is None


def _headers(surface: Surface, api_key: str) -> dict:
    if surface is Surface.OPENAI:
        return {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
    return {"x-api-key": api_key, "anthropic-version": "2023-06-01", "Content-Type": "application/json"}


async def probe(
    base_url: str,
    api_key: str,
    *,
    surface: Surface = Surface.OPENAI,
    stream: bool = False,
    model: Optional[str] = None,
    prompt: str = "hi",
    timeout: float = 300,
) -> ProbeResult:
    payload = {"messages": [{"role": "user", "content": prompt}], "stream": stream}
    if model:
        payload["model"] = model
    if surface is Surface.ANTHROPIC:
        payload["max_tokens"] = 1024
    url = base_url.rstrip("/") + PATHS[surface]

    logger.info(f"-> {url} ({surface.value}, {'stream' if stream else 'single'})")
    start = time.time()
    async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
        async with session.post(url, json=payload, headers=_headers(surface, api_key)) as resp:
            if resp.status != 200:
                error_text = await resp.text()
                logger.error(f"Probe got {resp.status}: {error_text[:300]}")
                return ProbeResult(resp.status, "", time.time() - start, finished=False, error=error_text)

            if not stream:
                data = await resp.json(content_type=None)
                elapsed = time.time() - start
                return ProbeResult(resp.status, envelope_text(surface, data), elapsed)

            collector = StreamCollector(surface)
            first_event_after = None
            async for raw_chunk in resp.content.iter_any():
                if first_event_after is None:
                    first_event_after = time.time() - start
                collector.feed(raw_chunk.decode("utf-8", errors="replace"))
            collector.feed("\n")

    elapsed = time.time() - start
    logger.info(f"<- {len(collector.text)} chars in {collector.events} events ({elapsed:.1f}s)")
    return ProbeResult(
        resp.status,
        collector.text,
        elapsed,
        events=collector.events,
        finished=collector.finished,
        first_event_after=first_event_after,
    )
