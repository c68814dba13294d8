"""
FastAPI front door for the fake LLM server.

Routes:
  POST /v1/chat/completions   OpenAI-compatible, Bearer key, chunked-line streaming
  GET  /v1/models             configured models, Bearer key
  POST /v1/messages           Anthropic-compatible, x-api-key, SSE streaming
  /api/*                      admin login, config and request logs (session cookie)
  GET  /health, /api/health   health checks
  WS   /ws                    keep-alive channel for the admin page
  GET  /*                     static assets with index.html fallback
"""

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from fastapi import Depends, FastAPI, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, Response, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import (
    SESSION_COOKIE,
    SESSION_MAX_AGE,
    AdminSession,
    ApiPrincipal,
    SessionStore,
    require_admin,
    require_bearer,
    require_x_api_key,
)
from .config import ConfigStore, Settings, default_server_config
from .errors import FakeGPTError, InternalError, NotFoundError, SessionExpiredError, Surface, ValidationError
from .heartbeat import ClientRegistry
from .request_log import LogEntry, RequestLogSink
from .synthesizer import ResponseSynthesizer, parse_request

logger = logging.getLogger("fakegpt")

API_PREFIXES = ("api", "v1", "ws")


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


async def _read_json(request: Request, surface: Surface) -> Any:
    """Parse the request body and record it in the request log, valid or not."""
    raw = await request.body()
    body: Any = None
    error: Optional[str] = None
    if raw:
        try:
            body = json.loads(raw)
        except ValueError:
            body = raw.decode("utf-8", errors="replace")
            error = "Invalid request: body must be valid JSON"

    url = request.url.path + (f"?{request.url.query}" if request.url.query else "")
    request.app.state.logs.record(LogEntry(
        method=request.method,
        url=url,
        headers=dict(request.headers),
        body=body,
        client_address=request.client.host if request.client else None,
    ))
    if error:
        raise ValidationError(error, surface)
    return body


async def _serve_completion(surface: Surface, request: Request) -> Response:
    body = await _read_json(request, surface)
    chat = parse_request(surface, body)
    synthesizer: ResponseSynthesizer = request.app.state.synthesizer
    reply = synthesizer.prepare(surface, chat, body)

    async def connected() -> bool:
        return not await request.is_disconnected()

    if not chat.stream:
        envelope = await synthesizer.complete(reply, is_connected=connected)
        if envelope is None:
            return Response(status_code=499)
        return JSONResponse(envelope)

    emitter = synthesizer.emitter(reply, is_connected=connected)
    if not await emitter.hold(reply.delay_ms):
        return Response(status_code=499)
    return StreamingResponse(emitter.frames(), media_type=emitter.media_type, headers=emitter.headers)


def create_app(settings: Optional[Settings] = None, *, sleep=asyncio.sleep, clock=None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app):
        app.state.logs.load()
        app.state.config.load_seed(settings.config_file)
        config = app.state.config.get()
        logger.info(f"Fake LLM server ready: {len(config.models)} models, default {config.default_model}")
        yield
        await app.state.logs.flush()

    app = FastAPI(title="FakeGPT", lifespan=lifespan)
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

    store = ConfigStore(default_server_config(settings.api_key))
    app.state.settings = settings
    app.state.config = store
    app.state.logs = RequestLogSink(settings.log_file)
    app.state.sessions = SessionStore(settings.admin_password, clock)
    app.state.synthesizer = ResponseSynthesizer(store, char_interval_ms=settings.char_interval_ms, sleep=sleep)
    app.state.ws_clients = ClientRegistry()
    app.state.started_at = time.time()

    # --- Error handlers ---

    @app.exception_handler(FakeGPTError)
    async def fakegpt_error(request: Request, exc: FakeGPTError):
        response = JSONResponse(exc.to_body(), status_code=exc.status_code)
        if isinstance(exc, SessionExpiredError):
            response.delete_cookie(SESSION_COOKIE)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        message = "Not found" if exc.status_code == 404 else str(exc.detail)
        return JSONResponse({"error": message}, status_code=exc.status_code, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse({"error": "Invalid request"}, status_code=400)

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        error = InternalError("Internal server error", detail=str(exc) if settings.debug else None)
        return JSONResponse(error.to_body(), status_code=error.status_code)

    # --- Model APIs ---

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request, principal: ApiPrincipal = Depends(require_bearer)):
        return await _serve_completion(principal.surface, request)

    @app.post("/v1/messages")
    async def messages(request: Request, principal: ApiPrincipal = Depends(require_x_api_key)):
        return await _serve_completion(principal.surface, request)

    @app.get("/v1/models")
    async def list_models(principal: ApiPrincipal = Depends(require_bearer)):
        created = int(app.state.started_at)
        data = [
            {"id": name, "object": "model", "created": created, "owned_by": "fakegpt"}
            for name in store.get().models
        ]
        return {"object": "list", "data": data}

    # --- Admin session ---

    @app.post("/api/login")
    async def login(request: Request):
        try:
            payload = await request.json()
        except ValueError:
            payload = {}
        password = payload.get("password") if isinstance(payload, dict) else None
        session = app.state.sessions.login(password)
        response = JSONResponse({"success": True, "expiresAt": _iso(session.expires_at)})
        response.set_cookie(
            SESSION_COOKIE,
            session.session_id,
            max_age=int(SESSION_MAX_AGE.total_seconds()),
            httponly=True,
            samesite="lax",
        )
        return response

    @app.post("/api/logout")
    async def logout(request: Request):
        app.state.sessions.logout(request.cookies.get(SESSION_COOKIE))
        response = JSONResponse({"success": True})
        response.delete_cookie(SESSION_COOKIE)
        return response

    @app.get("/api/auth/status")
    async def auth_status(request: Request):
        session = app.state.sessions.status(request.cookies.get(SESSION_COOKIE))
        return {
            "authenticated": session is not None,
            "expiresAt": _iso(session.expires_at) if session else None,
        }

    # --- Admin config and logs ---

    @app.get("/api/config")
    async def read_config(admin: AdminSession = Depends(require_admin)):
        return store.get().model_dump(by_alias=True, mode="json")

    @app.post("/api/config")
    async def update_config(request: Request, admin: AdminSession = Depends(require_admin)):
        try:
            payload = await request.json()
        except ValueError:
            raise ValidationError("config update must be valid JSON")
        config = store.update(payload)
        return {"success": True, "config": config.model_dump(by_alias=True, mode="json")}

    @app.get("/api/logs")
    async def read_logs(admin: AdminSession = Depends(require_admin)):
        return app.state.logs.dump()

    @app.delete("/api/logs")
    async def clear_logs(admin: AdminSession = Depends(require_admin)):
        app.state.logs.clear()
        return {"success": True}

    @app.get("/api/logs/download")
    async def download_logs(admin: AdminSession = Depends(require_admin)):
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        return JSONResponse(
            app.state.logs.dump(),
            headers={"Content-Disposition": f'attachment; filename="request_logs-{stamp}.json"'},
        )

    # --- Health ---

    @app.get("/health", response_class=PlainTextResponse)
    async def health():
        return "OK"

    @app.get("/api/health")
    async def health_json():
        config = store.get()
        return {
            "status": "ok",
            "uptime": round(time.time() - app.state.started_at, 1),
            "timestamp": _iso(datetime.now(timezone.utc)),
            "models": list(config.models),
            "defaultModel": config.default_model,
            "websocketClients": len(app.state.ws_clients),
        }

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await app.state.ws_clients.serve(websocket)

    # --- Static files and SPA fallback (must stay last) ---

    static_root = Path(settings.static_dir).resolve()

    @app.api_route("/{full_path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"], include_in_schema=False)
    async def static_fallback(request: Request, full_path: str):
        if request.method != "GET" or full_path.split("/", 1)[0] in API_PREFIXES:
            raise NotFoundError("Not found")
        if full_path:
            candidate = (static_root / full_path).resolve()
            if candidate.is_relative_to(static_root) and candidate.is_file():
                return FileResponse(candidate)
        index = static_root / "index.html"
        if index.is_file():
            return FileResponse(index)
        raise NotFoundError("Not found")

    return app
