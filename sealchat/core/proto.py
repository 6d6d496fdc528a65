from __future__ import annotations

import time
import uuid
from typing import Any, Dict, Optional, Union

import orjson
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Frame types
# ---------------------------------------------------------------------------

T_HELLO = "HELLO"
T_ACK = "ACK"
T_HEARTBEAT = "HEARTBEAT"
T_LIST_USERS = "LIST_USERS"
T_LIST_USERS_RESULT = "LIST_USERS_RESULT"
T_HISTORY_GET = "HISTORY_GET"
T_HISTORY = "HISTORY"
T_MSG_SEND = "MSG_SEND"
T_MSG_SENT = "MSG_SENT"
T_NEW_MESSAGE = "newMessage"
T_ERROR = "ERROR"

SERVER_ID = "server"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class Envelope(BaseModel):
    """JSON frame carried over the websocket in both directions."""

    type: str
    from_: str = Field(alias="from")
    to: str
    ts: int
    payload: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("ts")
    @classmethod
    def _ts_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("timestamp must be non-negative")
        return value


class UserSummary(BaseModel):
    """Public projection of a user row. Never carries password material."""

    user_id: str = Field(validation_alias=AliasChoices("user_id", "_id", "id"))
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    profile_pic: str = ""

    model_config = ConfigDict(extra="ignore")

    @property
    def display_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.user_id


class Message(BaseModel):
    """A decrypted message as returned by the store and pushed to clients.

    ``sender_id`` is expanded to a :class:`UserSummary` by the server;
    ``receiver_id`` is usually a raw id. Consumers must not assume either shape.
    """

    id: str = Field(validation_alias=AliasChoices("id", "_id"))
    sender_id: Union[UserSummary, str]
    receiver_id: Union[UserSummary, str]
    text: Optional[str] = None
    image: Optional[str] = None
    created_at: int
    undecryptable: bool = False

    model_config = ConfigDict(extra="ignore")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def now_ms() -> int:
    """Milliseconds since the Unix epoch."""

    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex


def build_frame(
    type: str,
    from_: str,
    to: str,
    payload: Dict[str, Any],
    *,
    ts: int | None = None,
) -> Dict[str, Any]:
    return {
        "type": type,
        "from": from_,
        "to": to,
        "ts": now_ms() if ts is None else ts,
        "payload": payload,
    }


def encode_frame(frame: Dict[str, Any]) -> str:
    return orjson.dumps(frame).decode("utf-8")


def decode_frame(raw: Union[str, bytes]) -> Envelope:
    """Parse a raw websocket message; raises ValueError on anything malformed."""

    try:
        data = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        raise ValueError(f"invalid json: {exc}") from None
    if not isinstance(data, dict):
        raise ValueError("frame must be an object")
    return Envelope.model_validate(data)


def dump_message(message: Message) -> Dict[str, Any]:
    return message.model_dump(mode="json")


__all__ = [
    "T_HELLO",
    "T_ACK",
    "T_HEARTBEAT",
    "T_LIST_USERS",
    "T_LIST_USERS_RESULT",
    "T_HISTORY_GET",
    "T_HISTORY",
    "T_MSG_SEND",
    "T_MSG_SENT",
    "T_NEW_MESSAGE",
    "T_ERROR",
    "SERVER_ID",
    "Envelope",
    "UserSummary",
    "Message",
    "now_ms",
    "new_id",
    "build_frame",
    "encode_frame",
    "decode_frame",
    "dump_message",
]
