from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from sealchat.core import proto
from sealchat.core.assets import LocalAssetStore
from sealchat.core.auth import SessionSigner
from sealchat.core.cipher import Cipher
from sealchat.core.dispatcher import DeliveryDispatcher
from sealchat.core.errors import (
    AuthenticationError,
    EmptyMessageError,
    SealchatError,
    UserNotFoundError,
    ValidationError,
)
from sealchat.core.registry import ConnectionRegistry
from sealchat.core.store import MessageStore

log = logging.getLogger("sealchat.server.runtime")

KEY_ENV = "MESSAGE_ENCRYPTION_KEY"
SECRET_ENV = "SEALCHAT_SESSION_SECRET"
USER_FIELDS = ("first_name", "last_name", "email", "profile_pic", "password_hash")


@dataclass(slots=True)
class Connection:
    websocket: ServerConnection
    endpoint_id: str = field(default_factory=proto.new_id)
    user_id: Optional[str] = None
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def send(self, frame: Dict[str, Any]) -> None:
        text = proto.encode_frame(frame)
        async with self.send_lock:
            await self.websocket.send(text)


class ServerRuntime:
    """Chat server: one websocket per client, requests and pushes share it."""

    def __init__(self, config: Dict[str, Any]) -> None:
        self.cfg = config
        self.listen_host, self.listen_port = self._parse_listen(config.get("listen", "127.0.0.1:7001"))
        self.db_path = config.get("db_path", "data/sealchat.db")
        self.heartbeat_secs = float(config.get("heartbeat_secs", 20))
        self.dead_after_secs = float(config.get("dead_after_secs", 20))

        # Both raise ConfigurationError; nothing is bound or opened before this.
        self.cipher = Cipher.from_hex(os.getenv(KEY_ENV) or config.get("message_key"))
        self.sessions = SessionSigner(
            os.getenv(SECRET_ENV) or config.get("session_secret"),
            ttl_secs=int(config.get("session_ttl_secs", 7 * 24 * 3600)),
        )

        self.assets = LocalAssetStore(
            config.get("assets_dir", "data/assets"),
            config.get("assets_base_url", "/assets"),
            max_bytes=int(config.get("max_image_bytes", 5 * 1024 * 1024)),
        )
        self.store = MessageStore(self.db_path, self.cipher)
        self.registry = ConnectionRegistry()
        self._connections: Dict[str, Connection] = {}
        self.dispatcher = DeliveryDispatcher(
            self.registry,
            self._connections.get,
            send_timeout=float(config.get("send_timeout_secs", 5)),
        )

        self._ws_server: Optional[Server] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.store.open()
        await self._seed_users(self.cfg.get("users") or [])

        self._ws_server = await serve(
            self._handle_connection,
            self.listen_host,
            self.listen_port,
            ping_interval=self.heartbeat_secs,
            ping_timeout=self.dead_after_secs,
        )
        log.info("sealchat server listening on ws://%s:%d", self.listen_host, self.port)

    async def stop(self) -> None:
        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None
        self._connections.clear()
        await self.store.close()

    @property
    def port(self) -> int:
        if self._ws_server is None:
            return self.listen_port
        return self._ws_server.sockets[0].getsockname()[1]

    async def _seed_users(self, entries: list) -> None:
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("user_id"):
                log.warning("Skipping user entry without user_id: %r", entry)
                continue
            fields = {k: str(entry[k]) for k in USER_FIELDS if entry.get(k) is not None}
            await self.store.upsert_user(str(entry["user_id"]), **fields)
        if entries:
            log.info("Seeded %d user(s) from config", len(entries))

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        conn = Connection(websocket=websocket)
        self._connections[conn.endpoint_id] = conn
        log.debug("Accepted endpoint %s from %s", conn.endpoint_id, self._fmt_remote(websocket))
        try:
            async for raw in websocket:
                try:
                    env = proto.decode_frame(raw)
                except ValueError:
                    await self._send_error(conn, ValidationError("invalid frame"))
                    continue
                await self._dispatch(conn, env)
        except ConnectionClosed:
            pass
        finally:
            self._on_disconnect(conn)

    async def _dispatch(self, conn: Connection, env: proto.Envelope) -> None:
        type_ = env.type
        request_id = env.payload.get("request_id")
        try:
            if type_ == proto.T_HELLO:
                await self._handle_hello(conn, env.payload)
            elif type_ == proto.T_HEARTBEAT:
                pass
            elif conn.user_id is None:
                raise AuthenticationError("HELLO required")
            elif type_ == proto.T_LIST_USERS:
                await self._handle_list_users(conn, request_id)
            elif type_ == proto.T_HISTORY_GET:
                await self._handle_history(conn, env.payload, request_id)
            elif type_ == proto.T_MSG_SEND:
                await self._handle_send(conn, env.payload, request_id)
            else:
                raise ValidationError(f"unsupported type {type_}")
        except SealchatError as exc:
            await self._send_error(conn, exc, request_id)
        except ConnectionClosed:
            raise
        except Exception:
            log.exception("Request %s (%s) from %s failed", request_id, type_, conn.user_id)
            await self._send_error(conn, SealchatError("internal server error"), request_id)

    def _on_disconnect(self, conn: Connection) -> None:
        self._connections.pop(conn.endpoint_id, None)
        if conn.user_id:
            if self.registry.unregister(conn.user_id, conn.endpoint_id):
                log.info("User %s disconnected", conn.user_id)
            else:
                log.debug("Superseded endpoint %s of %s closed", conn.endpoint_id, conn.user_id)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def _handle_hello(self, conn: Connection, payload: Dict[str, Any]) -> None:
        if conn.user_id is not None:
            raise ValidationError("connection already authenticated")
        user_id = self.sessions.verify(payload.get("token"))
        user = await self.store.get_user(user_id)
        if user is None:
            raise AuthenticationError("unknown user")

        conn.user_id = user_id
        self.registry.register(user_id, conn.endpoint_id)
        log.info("User %s connected on %s", user_id, conn.endpoint_id)
        await self._reply(conn, proto.T_ACK, {"user": user.model_dump()})

    async def _handle_list_users(self, conn: Connection, request_id: Any) -> None:
        users = await self.store.list_counterparts(conn.user_id)
        await self._reply(
            conn,
            proto.T_LIST_USERS_RESULT,
            {"request_id": request_id, "users": [u.model_dump() for u in users]},
        )

    async def _handle_history(self, conn: Connection, payload: Dict[str, Any], request_id: Any) -> None:
        counterpart = payload.get("with")
        if not isinstance(counterpart, str) or not counterpart:
            raise ValidationError("'with' is required")
        messages = await self.store.fetch_conversation(conn.user_id, counterpart)
        await self._reply(
            conn,
            proto.T_HISTORY,
            {"request_id": request_id, "with": counterpart, "messages": [proto.dump_message(m) for m in messages]},
        )

    async def _handle_send(self, conn: Connection, payload: Dict[str, Any], request_id: Any) -> None:
        receiver_id = payload.get("to")
        text = payload.get("text")
        image = payload.get("image")
        if not isinstance(receiver_id, str) or not receiver_id:
            raise ValidationError("'to' is required")
        if text is not None and not isinstance(text, str):
            raise ValidationError("'text' must be a string")
        if image is not None and not isinstance(image, str):
            raise ValidationError("'image' must be a data URL")
        if not text and not image:
            raise EmptyMessageError("message cannot be empty")
        if await self.store.get_user(receiver_id) is None:
            raise UserNotFoundError(f"unknown recipient {receiver_id}")

        image_url = self.assets.upload(image) if image else None
        try:
            message = await self.store.save(conn.user_id, receiver_id, text or None, image_url)
        except Exception:
            if image_url is not None:
                self.assets.discard(image_url)
            raise
        body = proto.dump_message(message)
        log.info("Message %s stored: %s -> %s", message.id, conn.user_id, receiver_id)

        await self.dispatcher.deliver(receiver_id, body)
        await self._reply(conn, proto.T_MSG_SENT, {"request_id": request_id, "status": 201, "message": body})

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    async def _reply(self, conn: Connection, type_: str, payload: Dict[str, Any]) -> None:
        await conn.send(proto.build_frame(type_, proto.SERVER_ID, conn.user_id or "*", payload))

    async def _send_error(self, conn: Connection, exc: SealchatError, request_id: Any = None) -> None:
        payload = {"code": exc.code, "detail": exc.detail, "status": exc.status}
        if request_id is not None:
            payload["request_id"] = request_id
        await self._reply(conn, proto.T_ERROR, payload)

    @staticmethod
    def _parse_listen(value: str) -> tuple[str, int]:
        host, port = value.rsplit(":", 1)
        return host, int(port)

    @staticmethod
    def _fmt_remote(websocket: ServerConnection) -> str:
        peer = websocket.remote_address
        if isinstance(peer, tuple):
            return f"{peer[0]}:{peer[1]}"
        return str(peer)


__all__ = ["ServerRuntime", "Connection"]
