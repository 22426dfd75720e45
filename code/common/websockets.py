# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.exceptions import (
    ConnectionClosedError,
    ConnectionClosedOK,
    ProtocolError,
)

EventHandler = Callable[[dict], Awaitable[Optional[dict]]]


def _ptype(p: dict | None) -> str:
    if not isinstance(p, dict):
        return "(?)"
    return p.get("type") or "(none)"


def _json(obj: Any) -> str:
    try:
        return json.dumps(obj, separators=(",", ":"), default=str)
    except (TypeError, ValueError) as e:
        return f'{{"ok":false,"error":"json-dumps-failed:{e!r}"}}'


def _bytes_len(s: str | bytes) -> int:
    if isinstance(s, bytes):
        return len(s)
    return len(s.encode("utf-8", errors="replace"))


class EventStreamServer:
    """
    Inbound side of the source connector: the gateway process pushes one JSON
    frame per event (`{"type": ..., "data": ...}`) and gets a small ack back.

    The handler should return quickly; heavy work belongs on a queue.
    """

    def __init__(
        self,
        host: str,
        port: int,
        logger: Optional[logging.Logger] = None,
    ):
        self.host = host
        self.port = port
        self.logger = logger or logging.getLogger("common.websockets")
        self._shutting_down = False

    def begin_shutdown(self) -> None:
        self._shutting_down = True

    async def serve(self, handler: EventHandler) -> None:
        """Run the server until cancelled."""
        server = await websockets.serve(
            lambda ws, *_: self._serve_loop(ws, handler),
            self.host,
            self.port,
            max_size=None,
        )
        self.logger.info("[🔌] Event stream listening on %s:%s", self.host, self.port)
        try:
            await asyncio.Future()
        finally:
            self.logger.debug("Event stream shutting down…")
            server.close()
            await server.wait_closed()

    async def _serve_loop(self, ws, handler: EventHandler):
        peer = getattr(ws, "remote_address", None)
        self.logger.debug("[ws≺] connection open peer=%s", peer)
        try:
            while not self._shutting_down:
                try:
                    raw = await ws.recv()
                except ConnectionClosedOK:
                    break
                except ConnectionClosedError as e:
                    self.logger.info("[ws] peer %s dropped: %s", peer, e)
                    break
                if not await self._safe_send(ws, _json(await self.handle_frame(raw, handler))):
                    break
        finally:
            await self._close_quietly(ws)
            self.logger.debug("[ws≻] connection closed peer=%s", peer)

    async def handle_frame(self, raw: str | bytes, handler: EventHandler) -> dict:
        """
        Decode one frame and run it through `handler`.

        A `{"type": "batch", "data": [...]}` frame carries several events; the
        ack then holds one result per event, in order.
        """
        try:
            req = json.loads(raw)
        except (TypeError, ValueError):
            return {"ok": False, "error": "bad-json"}
        if not isinstance(req, dict):
            return {"ok": False, "error": "bad-frame"}

        rid = req.get("rid") or uuid.uuid4().hex[:12]
        t0 = time.monotonic()
        if _ptype(req) == "batch" and isinstance(req.get("data"), list):
            results = [await self._one(ev, handler, rid) for ev in req["data"]]
            ack = {"ok": all(r.get("ok", False) for r in results), "results": results}
        else:
            ack = await self._one(req, handler, rid)
        ack["rid"] = rid
        self.logger.debug(
            "[ws] type=%s rid=%s bytes=%d ms=%.1f",
            _ptype(req),
            rid,
            _bytes_len(raw),
            (time.monotonic() - t0) * 1000,
        )
        return ack

    async def _one(self, event: Any, handler: EventHandler, rid: str) -> dict:
        if not isinstance(event, dict):
            return {"ok": False, "error": "bad-frame"}
        try:
            response = await handler(event)
        except Exception:
            self.logger.exception("[⚠️] Event handler failed type=%s rid=%s", _ptype(event), rid)
            return {"ok": False, "error": "handler-failed"}
        return dict(response) if isinstance(response, dict) else {"ok": True}

    async def _safe_send(self, ws, payload: str) -> bool:
        try:
            await ws.send(payload)
            return True
        except (ConnectionClosedOK, ConnectionClosedError) as e:
            self.logger.debug("[ws→] peer closed during send: %s", e)
            return False

    async def _close_quietly(self, ws) -> None:
        with contextlib.suppress(
            ConnectionClosedOK, ConnectionClosedError, ProtocolError, RuntimeError, OSError
        ):
            await ws.close()
