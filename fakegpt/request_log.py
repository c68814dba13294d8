"""Newest-first request log with best-effort JSON persistence."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

logger = logging.getLogger("fakegpt.logs")

MAX_LOG_ENTRIES = 100


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class LogEntry(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=_now_iso)
    method: str
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    client_address: Optional[str] = None


class RequestLogSink:
    def __init__(self, path: Optional[str], limit: int = MAX_LOG_ENTRIES):
        self.path = path
        self.limit = limit
        self._entries: list[LogEntry] = []
        self._lock = threading.Lock()
        self._persist_lock: Optional[asyncio.Lock] = None
        self._pending: set[asyncio.Task] = set()

    def load(self) -> int:
        """Read a previously persisted log; any failure leaves the log empty."""
        entries: list[LogEntry] = []
        if self.path:
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    raw = json.load(f)
                if not isinstance(raw, list):
                    raise ValueError("expected a JSON array")
                entries = [LogEntry.model_validate(item) for item in raw[: self.limit]]
            except FileNotFoundError:
                logger.info(f"No request log at {self.path}, starting empty")
            except Exception as e:
                logger.warning(f"Could not load request log {self.path}: {e}")
                entries = []
        with self._lock:
            self._entries = entries
        if entries:
            logger.info(f"Loaded {len(entries)} request log entries from {self.path}")
        return len(entries)

    def record(self, entry: LogEntry) -> None:
        with self._lock:
            self._entries.insert(0, entry)
            del self._entries[self.limit:]
            snapshot = list(self._entries)
        self._schedule_persist(snapshot)

    def clear(self) -> None:
        with self._lock:
            self._entries = []
        self._schedule_persist([])
        logger.info("Request log cleared")

    def list(self) -> list[LogEntry]:
        with self._lock:
            return list(self._entries)

    def dump(self) -> list[dict]:
        return [entry.model_dump(by_alias=True, mode="json") for entry in self.list()]

    async def flush(self) -> None:
        """Wait for persists already scheduled."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule_persist(self, snapshot: list[LogEntry]) -> None:
        if not self.path:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._persist_now(snapshot)
            return
        task = loop.create_task(self._persist(snapshot))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _persist(self, snapshot: list[LogEntry]) -> None:
        if self._persist_lock is None:
            self._persist_lock = asyncio.Lock()
        async with self._persist_lock:
            await asyncio.to_thread(self._persist_now, snapshot)

    def _persist_now(self, snapshot: list[LogEntry]) -> None:
        try:
            self._write(snapshot)
        except Exception as e:
            logger.error(f"Failed to persist request log to {self.path}: {e}")

    def _write(self, snapshot: list[LogEntry]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        data = [entry.model_dump(by_alias=True, mode="json") for entry in snapshot]
        fd, tmp_path = tempfile.mkstemp(prefix=".request_logs.", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
