from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from fakegpt.app import create_app
from fakegpt.config import DEFAULT_API_KEY, DEFAULT_REPLY, Settings

ADMIN_PASSWORD = "letmein"


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class SleepRecorder:
    """Stands in for asyncio.sleep: records the requested durations, never waits."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        admin_password=ADMIN_PASSWORD,
        log_file=str(tmp_path / "logs" / "request_logs.json"),
        static_dir=str(tmp_path / "public"),
        char_interval_ms=0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def app(settings, clock, sleeps):
    return create_app(settings, sleep=sleeps, clock=clock)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin(client):
    resp = client.post("/api/login", json={"password": ADMIN_PASSWORD})
    assert resp.status_code == 200
    return client


def bearer(key: str = DEFAULT_API_KEY) -> dict:
    return {"Authorization": f"Bearer {key}"}


def x_api_key(key: str = DEFAULT_API_KEY) -> dict:
    return {"x-api-key": key}


HI = {"messages": [{"role": "user", "content": "hi"}]}
