"""Transport handle for one authenticated client."""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from .errors import TransportError

WS_GOING_AWAY = 1001
WS_4401_UNAUTHORIZED = 4401


class Connection:
    """Wraps a WebSocket so the core only sees ``send_event``/``receive_text``.

    Sends are serialized per connection because several routers (the owner
    plus every sender pushing to this user) may write to it concurrently.
    """

    def __init__(self, websocket: WebSocket, user_id: int) -> None:
        self.websocket = websocket
        self.user_id = user_id
        self.conn_id = uuid.uuid4().hex[:12]
        self._send_lock = asyncio.Lock()
        self._closed = False
        self._close_event = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    async def send_event(self, payload: dict[str, Any]) -> None:
        if self._closed:
            raise TransportError(f"Connection {self.conn_id} is closed")
        text = json.dumps(payload, separators=(",", ":"))
        async with self._send_lock:
            try:
                await self.websocket.send_text(text)
            except (WebSocketDisconnect, RuntimeError, OSError) as exc:
                raise TransportError(f"Send to {self.conn_id} failed: {exc}") from exc

    async def receive_text(self) -> str:
        """Block until the next frame; a closed socket raises TransportError.

        A local ``close()`` wakes a pending read.
        """
        if self._closed:
            raise TransportError(f"Connection {self.conn_id} is closed")
        receive = asyncio.ensure_future(self.websocket.receive())
        closing = asyncio.ensure_future(self._close_event.wait())
        try:
            await asyncio.wait(
                {receive, closing}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            closing.cancel()
            if not receive.done():
                receive.cancel()
        if not receive.done() or receive.cancelled():
            raise TransportError(f"Connection {self.conn_id} closed locally")
        try:
            message = receive.result()
        except (RuntimeError, OSError) as exc:
            raise TransportError(f"Receive on {self.conn_id} failed: {exc}") from exc
        if message["type"] == "websocket.disconnect":
            raise TransportError(
                f"Connection {self.conn_id} closed (code {message.get('code')})"
            )
        if message.get("text") is not None:
            return message["text"]
        data = message.get("bytes")
        if data is not None:
            return data.decode("utf-8", errors="replace")
        return ""

    async def close(self, code: int = WS_GOING_AWAY) -> None:
        if self._closed:
            return
        self._closed = True
        self._close_event.set()
        if self.websocket.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self.websocket.close(code=code)
        except (WebSocketDisconnect, RuntimeError, OSError):
            pass

    def __repr__(self) -> str:
        return f"Connection(user={self.user_id}, id={self.conn_id})"
