import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from .config import (
    CHAR_INTERVAL_MS,
    DEFAULT_ANTHROPIC_MODEL,
    DEFAULT_OPENAI_MODEL,
    ConfigStore,
    ModelConfig,
    ReplyMode,
)
from .errors import Surface, ValidationError
from .streaming import Protocol, StreamEmitter, StreamState, wait_while_connected

logger = logging.getLogger("fakegpt.synth")

INVALID_MESSAGES = "Invalid request: messages field is required and must be an array"

DEFAULT_MODELS = {
    Surface.OPENAI: DEFAULT_OPENAI_MODEL,
    Surface.ANTHROPIC: DEFAULT_ANTHROPIC_MODEL,
}

PROTOCOLS = {
    Surface.OPENAI: Protocol.CHUNKED_LINES,
    Surface.ANTHROPIC: Protocol.SSE,
}

ID_PREFIXES = {
    Surface.OPENAI: "chatcmpl-",
    Surface.ANTHROPIC: "msg_",
}


# --- Request bodies ---

class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: Optional[str] = None
    messages: list[Any]
    stream: Optional[bool] = False


class MessagesRequest(ChatRequest):
    max_tokens: Optional[float] = None


REQUEST_MODELS = {
    Surface.OPENAI: ChatRequest,
    Surface.ANTHROPIC: MessagesRequest,
}


def parse_request(surface: Surface, body: Any) -> ChatRequest:
    if not isinstance(body, dict) or not isinstance(body.get("messages"), list):
        raise ValidationError(INVALID_MESSAGES, surface)
    try:
        return REQUEST_MODELS[surface].model_validate(body)
    except PydanticValidationError as e:
        problem = e.errors()[0]
        where = ".".join(str(part) for part in problem["loc"])
        raise ValidationError(f"Invalid request: {where}: {problem['msg']}", surface)


def message_text(messages: list) -> str:
    """Concatenated text of the request messages (string or content-block form)."""
    parts = []
    for m in messages:
        if not isinstance(m, dict):
            continue
        content = m.get("content")
        if isinstance(content, str):
            parts.append(content)
        elif isinstance(content, list):
            for block in content:
                if isinstance(block, dict) and isinstance(block.get("text"), str):
                    parts.append(block["text"])
    return "".join(parts)


def effective_text(config: ModelConfig, body: Any) -> str:
    if config.reply_mode is ReplyMode.ECHO:
        return json.dumps(body, indent=2, ensure_ascii=False)
    return config.reply_content


@dataclass
class Reply:
    surface: Surface
    response_id: str
    model: str
    text: str
    input_tokens: int
    delay_ms: int
    config: ModelConfig

    @property
    def output_tokens(self) -> int:
        return len(self.text)


# --- Envelopes ---

def openai_completion(reply: Reply) -> dict:
    return {
        "id": reply.response_id,
        "object": "chat.completion",
        "created": int(time.time()),
        "model": reply.model,
        "choices": [{
            "index": 0,
            "message": {"role": "assistant", "content": reply.text},
            "finish_reason": "stop",
        }],
        "usage": {
            "prompt_tokens": reply.input_tokens,
            "completion_tokens": reply.output_tokens,
            "total_tokens": reply.input_tokens + reply.output_tokens,
        },
    }


def anthropic_message(reply: Reply) -> dict:
    return {
        "id": reply.response_id,
        "type": "message",
        "role": "assistant",
        "content": [{"type": "text", "text": reply.text}],
        "model": reply.model,
        "stop_reason": "end_turn",
        "stop_sequence": None,
        "usage": {
            "input_tokens": reply.input_tokens,
            "output_tokens": reply.output_tokens,
        },
    }


ENVELOPES = {
    Surface.OPENAI: openai_completion,
    Surface.ANTHROPIC: anthropic_message,
}


class ResponseSynthesizer:
    """Turns a validated API request into a canned reply, one-shot or streamed."""

    def __init__(
        self,
        store: ConfigStore,
        *,
        char_interval_ms: int = CHAR_INTERVAL_MS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.char_interval_ms = char_interval_ms
        self._sleep = sleep

    def prepare(self, surface: Surface, request: ChatRequest, body: Any) -> Reply:
        model = request.model or DEFAULT_MODELS[surface]
        config = self.store.resolve_model(model)
        reply = Reply(
            surface=surface,
            response_id=f"{ID_PREFIXES[surface]}{uuid.uuid4().hex[:24]}",
            model=model,
            text=effective_text(config, body),
            input_tokens=len(message_text(request.messages)),
            delay_ms=config.response_delay,
            config=config,
        )
        mode = "stream" if request.stream else "single"
        logger.info(
            f"[{reply.response_id}] -> {model} via {config.name} "
            f"({len(request.messages)} msgs, {config.reply_mode.value}, {mode}, delay {reply.delay_ms}ms)"
        )
        return reply

    async def complete(self, reply: Reply, is_connected=None) -> Optional[dict]:
        """One-shot envelope, after the configured delay. None if the peer left while waiting."""
        start = time.time()
        if reply.delay_ms > 0:
            kwargs = {"sleep": self._sleep}
            if is_connected is not None:
                kwargs["is_connected"] = is_connected
            if not await wait_while_connected(reply.delay_ms, **kwargs):
                logger.info(f"[{reply.response_id}] client went away during {reply.delay_ms}ms delay")
                return None
        envelope = ENVELOPES[reply.surface](reply)
        logger.info(f"[{reply.response_id}] <- {len(reply.text)} chars ({time.time() - start:.1f}s)")
        return envelope

    def emitter(self, reply: Reply, is_connected=None) -> StreamEmitter:
        state = StreamState(
            response_id=reply.response_id,
            full_text=reply.text,
            protocol=PROTOCOLS[reply.surface],
            model=reply.model,
            input_tokens=reply.input_tokens,
        )
        kwargs = {"interval": self.char_interval_ms / 1000, "sleep": self._sleep}
        if is_connected is not None:
            kwargs["is_connected"] = is_connected
        return StreamEmitter(state, **kwargs)
