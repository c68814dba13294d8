import asyncio
import contextlib
import json
import logging

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger("fakegpt.ws")

HEARTBEAT_INTERVAL = 30.0


class ClientRegistry:
    """Open WebSocket channels, each kept alive by its own ping task."""

    def __init__(self, interval: float = HEARTBEAT_INTERVAL):
        self.interval = interval
        self.clients: set[WebSocket] = set()
        self.heartbeats: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self.clients)

    async def _heartbeat(self, websocket: WebSocket) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval)
                await websocket.send_json({"type": "ping"})
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Heartbeat failed, dropping client: {e}")
            self.clients.discard(websocket)

    async def serve(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.clients.add(websocket)
        logger.info(f"WebSocket client connected ({len(self.clients)} active)")
        heartbeat = asyncio.create_task(self._heartbeat(websocket))
        self.heartbeats.add(heartbeat)
        try:
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(frame.get("code", 1000))
                raw = frame.get("text")
                if raw is None:
                    logger.warning(f"Ignoring non-text WebSocket message: {(frame.get('bytes') or b'')[:100]!r}")
                    continue
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning(f"Ignoring malformed WebSocket message: {raw[:100]!r}")
                    continue
                if isinstance(message, dict) and message.get("type") == "ping":
                    await websocket.send_json({"type": "pong"})
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error(f"WebSocket error: {e}")
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
            self.heartbeats.discard(heartbeat)
            self.clients.discard(websocket)
            logger.info(f"WebSocket client disconnected ({len(self.clients)} active)")
