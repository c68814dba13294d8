from __future__ import annotations

import asyncio
import json

from fakegpt.config import DEFAULT_API_KEY, DEFAULT_REPLY
from fakegpt.probe import StreamCollector
from fakegpt.errors import Surface
from fakegpt.request_log import MAX_LOG_ENTRIES
from fakegpt.synthesizer import parse_request
from tests.conftest import HI, bearer, x_api_key


def _configure(app, **payload) -> None:
    app.state.config.update(payload)


def test_chat_completion_returns_preset_reply(client) -> None:
    resp = client.post("/v1/chat/completions", json={**HI, "stream": False}, headers=bearer())

    assert resp.status_code == 200
    data = resp.json()
    assert data["object"] == "chat.completion"
    assert data["id"].startswith("chatcmpl-")
    assert data["model"] == "gpt-3.5-turbo"
    assert isinstance(data["created"], int)
    assert data["choices"][0]["message"] == {"role": "assistant", "content": DEFAULT_REPLY}
    assert data["choices"][0]["finish_reason"] == "stop"
    usage = data["usage"]
    assert usage["completion_tokens"] == len(DEFAULT_REPLY)
    assert usage["prompt_tokens"] == len("hi")
    assert usage["total_tokens"] == usage["prompt_tokens"] + usage["completion_tokens"]


def test_chat_completion_rejects_wrong_or_missing_key(client) -> None:
    wrong = client.post("/v1/chat/completions", json=HI, headers=bearer("sk-wrong"))
    missing = client.post("/v1/chat/completions", json=HI)

    assert wrong.status_code == 401
    assert wrong.json() == {"error": "Invalid API key"}
    assert missing.status_code == 401
    assert missing.json() == {"error": "Missing or invalid authorization header"}
    assert DEFAULT_API_KEY not in wrong.text + missing.text


def test_chat_completion_requires_messages_array(client) -> None:
    for body in ({}, {"messages": "hi"}, {"messages": None}):
        resp = client.post("/v1/chat/completions", json=body, headers=bearer())
        assert resp.status_code == 400
        assert resp.json()["error"]["type"] == "invalid_request_error"
        assert "messages" in resp.json()["error"]["message"]


def test_invalid_json_body_is_a_validation_error(client) -> None:
    resp = client.post(
        "/v1/chat/completions",
        content=b"{nope",
        headers={**bearer(), "Content-Type": "application/json"},
    )

    assert resp.status_code == 400
    assert client.app.state.logs.list()[0].body == "{nope"


def test_chat_completion_stream_uses_chunked_lines(client) -> None:
    resp = client.post("/v1/chat/completions", json={**HI, "stream": True}, headers=bearer())

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert resp.headers["cache-control"] == "no-cache"
    assert resp.text.endswith("data: [DONE]\n\n")
    collector = StreamCollector(Surface.OPENAI)
    collector.feed(resp.text)
    assert collector.text == DEFAULT_REPLY
    assert collector.finished
    assert collector.events == len(DEFAULT_REPLY) + 1


def test_messages_returns_anthropic_envelope(client) -> None:
    resp = client.post("/v1/messages", json={**HI, "max_tokens": 100}, headers=x_api_key())

    assert resp.status_code == 200
    data = resp.json()
    assert data["id"].startswith("msg_")
    assert data["type"] == "message"
    assert data["role"] == "assistant"
    assert data["model"] == "claude-3-sonnet-20240229"
    assert data["content"] == [{"type": "text", "text": DEFAULT_REPLY}]
    assert data["stop_reason"] == "end_turn"
    assert data["usage"] == {"input_tokens": 2, "output_tokens": len(DEFAULT_REPLY)}


def test_messages_stream_deltas_concatenate_to_reply(client) -> None:
    resp = client.post("/v1/messages", json={**HI, "stream": True}, headers=x_api_key())

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    names = [line[len("event: "):] for line in resp.text.split("\n") if line.startswith("event: ")]
    assert names[:2] == ["message_start", "content_block_start"]
    assert names[-2:] == ["content_block_stop", "message_stop"]
    deltas = [
        json.loads(line[len("data: "):])["delta"]["text"]
        for line in resp.text.split("\n")
        if line.startswith("data: ") and '"content_block_delta"' in line
    ]
    assert "".join(deltas) == DEFAULT_REPLY


def test_messages_auth_and_validation_bodies(client) -> None:
    missing = client.post("/v1/messages", json=HI)
    wrong = client.post("/v1/messages", json=HI, headers=x_api_key("nope"))
    bearer_only = client.post("/v1/messages", json=HI, headers=bearer())
    invalid = client.post("/v1/messages", json={"model": "x"}, headers=x_api_key())

    assert missing.status_code == wrong.status_code == bearer_only.status_code == 401
    assert missing.json()["error"] == {
        "type": "authentication_error",
        "message": "Missing required header: x-api-key",
    }
    assert wrong.json()["error"]["message"] == "Invalid API key"
    assert invalid.status_code == 400
    assert invalid.json()["error"]["type"] == "invalid_request_error"


def test_bad_field_types_are_rejected(client) -> None:
    resp = client.post("/v1/messages", json={**HI, "max_tokens": "lots"}, headers=x_api_key())

    assert resp.status_code == 400
    assert "max_tokens" in resp.json()["error"]["message"]


def test_per_model_reply_and_fallback(app, client) -> None:
    _configure(
        app,
        models=[
            {"name": "gpt-4", "replyContent": "four", "responseDelay": 0},
            {"name": "base", "replyContent": "base reply", "responseDelay": 0},
        ],
        defaultModel="base",
    )

    chosen = client.post("/v1/chat/completions", json={**HI, "model": "gpt-4"}, headers=bearer())
    unknown = client.post("/v1/chat/completions", json={**HI, "model": "gpt-unknown"}, headers=bearer())

    assert chosen.json()["choices"][0]["message"]["content"] == "four"
    assert unknown.json()["choices"][0]["message"]["content"] == "base reply"
    assert unknown.json()["model"] == "gpt-unknown"


def test_echo_mode_returns_pretty_printed_request(app, client) -> None:
    _configure(app, models=[{"name": "echo", "replyContent": "", "responseDelay": 0, "replyMode": "echo"}])
    body = {"model": "echo", "messages": [{"role": "user", "content": "héllo"}]}

    resp = client.post("/v1/messages", json=body, headers=x_api_key())

    text = resp.json()["content"][0]["text"]
    assert json.loads(text) == body
    assert text == json.dumps(body, indent=2, ensure_ascii=False)


def test_empty_model_map_gives_empty_reply(app, client) -> None:
    _configure(app, models=[])

    single = client.post("/v1/chat/completions", json=HI, headers=bearer())
    streamed = client.post("/v1/messages", json={**HI, "stream": True}, headers=x_api_key())

    assert single.status_code == 200
    assert single.json()["choices"][0]["message"]["content"] == ""
    assert streamed.status_code == 200
    assert "content_block_delta" not in streamed.text
    assert "message_stop" in streamed.text


def test_response_delay_is_applied_before_reply(app, client, sleeps) -> None:
    _configure(app, models=[{"name": "slow", "replyContent": "ok", "responseDelay": 1200}], defaultModel="slow")

    client.post("/v1/chat/completions", json=HI, headers=bearer())
    assert sleeps.calls == [0.1] * 12

    sleeps.calls.clear()
    client.post("/v1/chat/completions", json={**HI, "stream": True}, headers=bearer())
    assert sleeps.calls == [0.1] * 12 + [0.0]


def test_one_shot_reply_is_dropped_when_peer_leaves_during_delay(app, sleeps) -> None:
    _configure(app, models=[{"name": "slow", "replyContent": "ok", "responseDelay": 30_000}], defaultModel="slow")
    synthesizer = app.state.synthesizer
    reply = synthesizer.prepare(Surface.OPENAI, parse_request(Surface.OPENAI, HI), HI)
    checks = []

    async def is_connected() -> bool:
        checks.append(True)
        return len(checks) <= 2

    assert asyncio.run(synthesizer.complete(reply, is_connected=is_connected)) is None
    assert sleeps.calls == [0.1, 0.1]


def test_models_endpoint_lists_configured_models(client) -> None:
    resp = client.get("/v1/models", headers=bearer())

    assert resp.status_code == 200
    assert [m["id"] for m in resp.json()["data"]] == ["gpt-3.5-turbo", "claude-3-sonnet-20240229"]
    assert client.get("/v1/models").status_code == 401


def test_authenticated_requests_are_logged_newest_first(app, client) -> None:
    client.post("/v1/chat/completions", json={**HI, "n": 1}, headers=bearer())
    client.post("/v1/messages", json={**HI, "n": 2}, headers={**x_api_key(), "X-Trace": "t"})
    client.post("/v1/messages", json={**HI, "n": 3}, headers=x_api_key("wrong"))

    entries = app.state.logs.list()
    assert [e.body["n"] for e in entries] == [2, 1]
    assert entries[0].url == "/v1/messages"
    assert entries[0].method == "POST"
    assert entries[0].headers["x-trace"] == "t"
    assert entries[0].client_address


def test_log_stays_capped_when_full(app, client) -> None:
    for n in range(MAX_LOG_ENTRIES):
        client.post("/v1/chat/completions", json={**HI, "n": n}, headers=bearer())

    client.post("/v1/chat/completions", json={**HI, "n": "last"}, headers=bearer())

    entries = app.state.logs.list()
    assert len(entries) == MAX_LOG_ENTRIES
    assert entries[0].body["n"] == "last"
    assert entries[-1].body["n"] == 1


def test_log_file_is_written(app, client, settings) -> None:
    client.post("/v1/chat/completions", json=HI, headers=bearer())

    client.portal.call(app.state.logs.flush)

    with open(settings.log_file, encoding="utf-8") as f:
        stored = json.load(f)
    assert stored[0]["body"] == HI
