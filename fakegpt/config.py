"""Process settings and the in-memory reply configuration store."""

import hmac
import json
import logging
import os
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .errors import ValidationError

logger = logging.getLogger("fakegpt.config")

DEFAULT_API_KEY = "sk-fake-gpt-key-123456789"
DEFAULT_REPLY = "Hello! I am a fake GPT model. This is a simulated response."
DEFAULT_OPENAI_MODEL = "gpt-3.5-turbo"
DEFAULT_ANTHROPIC_MODEL = "claude-3-sonnet-20240229"
CHAR_INTERVAL_MS = 50
STATIC_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "public")

REQUIRED_MODEL_FIELDS = ("name", "replyContent", "responseDelay")


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    host: str = "127.0.0.1"
    port: int = 3000
    admin_password: str = "admin"
    api_key: str = DEFAULT_API_KEY
    config_file: Optional[str] = None
    log_file: str = os.path.join("data", "request_logs.json")
    static_dir: str = STATIC_DIR
    char_interval_ms: int = CHAR_INTERVAL_MS
    debug: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            host=os.getenv("FAKEGPT_HOST", cls.host),
            port=int(os.getenv("PORT", str(cls.port))),
            admin_password=os.getenv("FAKEGPT_ADMIN_PASSWORD", cls.admin_password),
            api_key=os.getenv("FAKEGPT_API_KEY", cls.api_key),
            config_file=os.getenv("FAKEGPT_CONFIG") or None,
            log_file=os.getenv("FAKEGPT_LOG_FILE", cls.log_file),
            static_dir=os.getenv("FAKEGPT_STATIC_DIR", cls.static_dir),
            char_interval_ms=max(int(os.getenv("FAKEGPT_CHAR_INTERVAL_MS", str(CHAR_INTERVAL_MS))), 0),
            debug=_env_flag("FAKEGPT_DEBUG"),
            log_level=os.getenv("FAKEGPT_LOG_LEVEL", cls.log_level).upper(),
        )


class ReplyMode(str, Enum):
    PRESET = "preset"
    ECHO = "echo"


class ModelConfig(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str
    reply_content: str
    response_delay: int = Field(0, ge=0)
    reply_mode: ReplyMode = ReplyMode.PRESET


class ServerConfig(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    api_key: str
    models: dict[str, ModelConfig] = Field(default_factory=dict)
    default_model: str = DEFAULT_OPENAI_MODEL


def default_server_config(api_key: str = DEFAULT_API_KEY) -> ServerConfig:
    models = {
        name: ModelConfig(name=name, reply_content=DEFAULT_REPLY)
        for name in (DEFAULT_OPENAI_MODEL, DEFAULT_ANTHROPIC_MODEL)
    }
    return ServerConfig(api_key=api_key, models=models, default_model=DEFAULT_OPENAI_MODEL)


def coerce_delay(value: Any) -> int:
    """Milliseconds as a non-negative int; anything unparseable becomes 0."""
    try:
        delay = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return 0
    return max(delay, 0)


def parse_model_entry(entry: Any) -> Optional[ModelConfig]:
    """Validate one model entry from an update payload, None if it must be dropped."""
    if not isinstance(entry, dict):
        return None
    if any(entry.get(field) is None for field in REQUIRED_MODEL_FIELDS):
        return None
    name, reply = entry["name"], entry["replyContent"]
    if not isinstance(name, str) or not name.strip() or not isinstance(reply, str):
        return None
    try:
        mode = ReplyMode(entry.get("replyMode") or ReplyMode.PRESET.value)
    except ValueError:
        mode = ReplyMode.PRESET
    return ModelConfig(
        name=name.strip(),
        reply_content=reply,
        response_delay=coerce_delay(entry["responseDelay"]),
        reply_mode=mode,
    )


def parse_models(raw: Any) -> dict[str, ModelConfig]:
    if isinstance(raw, dict):
        entries = list(raw.values())
    elif isinstance(raw, list):
        entries = raw
    else:
        raise ValidationError("models must be an object or an array")

    models: dict[str, ModelConfig] = {}
    for entry in entries:
        parsed = parse_model_entry(entry)
        if parsed is None:
            logger.debug(f"Dropping invalid model entry: {entry!r}")
            continue
        models[parsed.name] = parsed
    return models


class ConfigStore:
    """Copy-on-write holder of the process-wide ServerConfig."""

    def __init__(self, initial: Optional[ServerConfig] = None):
        self._lock = threading.Lock()
        self._config = initial or default_server_config()

    def get(self) -> ServerConfig:
        with self._lock:
            return self._config.model_copy(deep=True)

    def update(self, partial: Any) -> ServerConfig:
        """Apply only the fields present in ``partial`` and return the new snapshot."""
        if not isinstance(partial, dict):
            raise ValidationError("config update must be a JSON object")

        changes: dict[str, Any] = {}
        if partial.get("apiKey") is not None:
            api_key = partial["apiKey"]
            if not isinstance(api_key, str) or not api_key.strip():
                raise ValidationError("apiKey must be a non-empty string")
            changes["api_key"] = api_key.strip()
        if partial.get("defaultModel") is not None:
            if not isinstance(partial["defaultModel"], str):
                raise ValidationError("defaultModel must be a string")
            changes["default_model"] = partial["defaultModel"].strip()
        if partial.get("models") is not None:
            changes["models"] = parse_models(partial["models"])
        reply = partial.get("replyContent")
        if reply is not None and not isinstance(reply, str):
            raise ValidationError("replyContent must be a string")

        with self._lock:
            updated = self._config.model_copy(update=changes, deep=True)
            if reply is not None and "models" not in changes:
                target = updated.models.get(updated.default_model)
                if target is not None:
                    updated.models[target.name] = target.model_copy(update={"reply_content": reply})
            self._config = updated
            snapshot = updated.model_copy(deep=True)

        fields = sorted(changes) + (["reply_content"] if reply is not None else [])
        logger.info(f"Config updated: {', '.join(fields) or 'no fields'}")
        return snapshot

    def resolve_model(self, name: Optional[str]) -> ModelConfig:
        """Exact match, else the default model, else the first entry, else an empty reply."""
        with self._lock:
            config = self._config
            found = config.models.get(name) if name else None
            if found is None:
                found = config.models.get(config.default_model)
            if found is None and config.models:
                found = next(iter(config.models.values()))
            if found is not None:
                return found.model_copy()

        logger.warning(f"No models configured, replying empty for {name!r}")
        return ModelConfig(name=name or config.default_model, reply_content="")

    def check_api_key(self, candidate: Optional[str]) -> bool:
        with self._lock:
            expected = self._config.api_key
        return candidate is not None and hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))

    def load_seed(self, path: Optional[str]) -> None:
        """Apply a JSON seed file in the update shape; missing or corrupt files are ignored."""
        if not path:
            return
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            self.update(data)
            logger.info(f"Seeded config from {path}")
        except FileNotFoundError:
            logger.warning(f"Config seed {path} not found, using defaults")
        except (json.JSONDecodeError, ValidationError) as e:
            logger.error(f"Ignoring config seed {path}: {e}")
