from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Dict, List, Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from sealchat.core import proto
from sealchat.core.errors import SealchatError

from .events import EventFeed

log = logging.getLogger("sealchat.client.gateway")


class RequestFailed(SealchatError):
    """An ERROR frame answered one of our requests."""

    def __init__(self, code: str, detail: str, status: int) -> None:
        super().__init__(detail)
        self.code = code
        self.status = status


class GatewayClient:
    """One websocket to the server: request/response by request_id, pushes into a feed."""

    def __init__(self, url: str, token: str, feed: Optional[EventFeed] = None, *, timeout: float = 10.0) -> None:
        self.url = url
        self.token = token
        self.feed = feed or EventFeed()
        self.timeout = timeout
        self.user: Optional[proto.UserSummary] = None
        self.ws: Optional[ClientConnection] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._hello: Optional[asyncio.Future] = None
        self._receiver: Optional[asyncio.Task] = None
        self.closed = asyncio.Event()

    async def connect(self) -> proto.UserSummary:
        self.ws = await connect(self.url)
        self._hello = asyncio.get_running_loop().create_future()
        self._receiver = asyncio.create_task(self._rx_loop(), name="sealchat-rx")
        await self._send(proto.T_HELLO, {"token": self.token})
        try:
            self.user = await asyncio.wait_for(self._hello, timeout=self.timeout)
        except BaseException:
            await self.close()
            raise
        log.info("Connected to %s as %s", self.url, self.user.user_id)
        return self.user

    async def close(self) -> None:
        if self.ws is not None:
            await self.ws.close()
        if self._receiver is not None:
            self._receiver.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._receiver
            self._receiver = None
        self._fail_pending(ConnectionError("connection closed"))

    async def __aenter__(self) -> "GatewayClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # --- requests ---

    async def list_users(self) -> List[proto.UserSummary]:
        payload = await self.request(proto.T_LIST_USERS, {})
        return [proto.UserSummary.model_validate(u) for u in payload.get("users", [])]

    async def fetch_history(self, counterpart_id: str) -> List[proto.Message]:
        payload = await self.request(proto.T_HISTORY_GET, {"with": counterpart_id})
        return [proto.Message.model_validate(m) for m in payload.get("messages", [])]

    async def send_message(
        self,
        to: str,
        text: Optional[str] = None,
        image: Optional[str] = None,
    ) -> proto.Message:
        body: Dict[str, Any] = {"to": to}
        if text:
            body["text"] = text
        if image:
            body["image"] = image
        payload = await self.request(proto.T_MSG_SEND, body)
        return proto.Message.model_validate(payload["message"])

    async def request(self, type_: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        request_id = proto.new_id()
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send(type_, {**payload, "request_id": request_id})
            return await asyncio.wait_for(future, timeout=self.timeout)
        finally:
            self._pending.pop(request_id, None)

    # --- receive side ---

    async def _rx_loop(self) -> None:
        assert self.ws is not None
        try:
            async for raw in self.ws:
                try:
                    env = proto.decode_frame(raw)
                except ValueError:
                    log.warning("Dropped invalid frame: %s", raw)
                    continue
                self._handle_incoming(env)
        except ConnectionClosed:
            pass
        finally:
            self._fail_pending(ConnectionError("connection closed"))
            self.closed.set()

    def _handle_incoming(self, env: proto.Envelope) -> None:
        payload = env.payload
        if env.type == proto.T_NEW_MESSAGE:
            self.feed.emit(proto.T_NEW_MESSAGE, payload)
            return
        if env.type == proto.T_ACK and self._hello is not None and not self._hello.done():
            self._hello.set_result(proto.UserSummary.model_validate(payload.get("user", {})))
            return

        request_id = payload.get("request_id")
        if env.type == proto.T_ERROR:
            exc = RequestFailed(payload.get("code", "INTERNAL"), payload.get("detail", ""), int(payload.get("status", 500)))
            future = self._pending.get(request_id) if request_id else None
            if future is None and self._hello is not None and not self._hello.done():
                future = self._hello
            if future is not None and not future.done():
                future.set_exception(exc)
            else:
                log.warning("Server error %s: %s", exc.code, exc.detail)
            return

        future = self._pending.get(request_id) if request_id else None
        if future is not None and not future.done():
            future.set_result(payload)
        else:
            log.debug("Unhandled frame %s", env.type)

    async def _send(self, type_: str, payload: Dict[str, Any]) -> None:
        if self.ws is None:
            raise ConnectionError("not connected")
        frame = proto.build_frame(type_, self.user.user_id if self.user else "*", proto.SERVER_ID, payload)
        await self.ws.send(proto.encode_frame(frame))

    def _fail_pending(self, exc: Exception) -> None:
        futures = list(self._pending.values())
        if self._hello is not None:
            futures.append(self._hello)
        for future in futures:
            if not future.done():
                future.set_exception(exc)


__all__ = ["GatewayClient", "RequestFailed"]
