from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import aiosqlite

from .cipher import Cipher
from .errors import DecryptionError
from .proto import Message, UserSummary, new_id, now_ms

"""
Message store
-------------
SQLite persistence for users and messages. The ``text`` column only ever holds
Cipher envelopes; every read path decrypts before a Message leaves this module.

Tables:
1. users     -> directory of chat users and their profile fields.
2. messages  -> one row per message, never updated or deleted.
"""

log = logging.getLogger("sealchat.core.store")

SCHEMA = """
CREATE TABLE IF NOT EXISTS users(
    user_id       TEXT PRIMARY KEY,
    first_name    TEXT NOT NULL DEFAULT '',
    last_name     TEXT NOT NULL DEFAULT '',
    email         TEXT NOT NULL DEFAULT '',
    profile_pic   TEXT NOT NULL DEFAULT '',
    password_hash TEXT NOT NULL DEFAULT '',
    created_at    INT  NOT NULL
);
CREATE TABLE IF NOT EXISTS messages(
    message_id  TEXT PRIMARY KEY,
    sender_id   TEXT NOT NULL REFERENCES users(user_id),
    receiver_id TEXT NOT NULL REFERENCES users(user_id),
    text        TEXT,
    image       TEXT,
    created_at  INT  NOT NULL
);
CREATE INDEX IF NOT EXISTS messages_by_pair ON messages(sender_id, receiver_id, created_at);
"""

_MESSAGE_COLUMNS = """
    m.message_id, m.sender_id, m.receiver_id, m.text, m.image, m.created_at,
    u.first_name, u.last_name, u.email, u.profile_pic
"""

_SUMMARY_COLUMNS = "user_id, first_name, last_name, email, profile_pic"


class MessageStore:
    """Async SQLite store; open with ``await store.open()`` or ``async with``."""

    def __init__(self, path: Path | str, cipher: Cipher) -> None:
        self.path = str(path)
        self.cipher = cipher
        self._db: Optional[aiosqlite.Connection] = None

    async def open(self) -> "MessageStore":
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        log.debug("Opened message store at %s", self.path)
        return self

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> "MessageStore":
        return await self.open()

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("message store is not open")
        return self._db

    # --- Users ---

    async def upsert_user(
        self,
        user_id: str,
        *,
        first_name: str = "",
        last_name: str = "",
        email: str = "",
        profile_pic: str = "",
        password_hash: str = "",
    ) -> None:
        await self.db.execute(
            """INSERT INTO users(user_id, first_name, last_name, email, profile_pic, password_hash, created_at)
               VALUES(?,?,?,?,?,?,?)
               ON CONFLICT(user_id) DO UPDATE SET
                   first_name=excluded.first_name,
                   last_name=excluded.last_name,
                   email=excluded.email,
                   profile_pic=excluded.profile_pic,
                   password_hash=excluded.password_hash""",
            (user_id, first_name, last_name, email, profile_pic, password_hash, now_ms()),
        )
        await self.db.commit()

    async def get_user(self, user_id: str) -> Optional[UserSummary]:
        cur = await self.db.execute(f"SELECT {_SUMMARY_COLUMNS} FROM users WHERE user_id=?", (user_id,))
        row = await cur.fetchone()
        await cur.close()
        return UserSummary(**dict(row)) if row else None

    async def list_counterparts(self, exclude_user_id: str) -> List[UserSummary]:
        """Every user other than ``exclude_user_id``, without password material."""
        cur = await self.db.execute(
            f"SELECT {_SUMMARY_COLUMNS} FROM users WHERE user_id != ? ORDER BY first_name, last_name, user_id",
            (exclude_user_id,),
        )
        rows = await cur.fetchall()
        await cur.close()
        return [UserSummary(**dict(row)) for row in rows]

    # --- Messages ---

    async def save(
        self,
        sender_id: str,
        receiver_id: str,
        text: Optional[str],
        image: Optional[str],
    ) -> Message:
        """Encrypt and persist a message, then hand it back decrypted.

        The returned record is re-read from the table, so it is exactly what a
        later fetch will produce. A decryption failure here is raised rather
        than masked: the caller must not push a record it cannot vouch for.
        """
        message_id = new_id()
        await self.db.execute(
            "INSERT INTO messages(message_id, sender_id, receiver_id, text, image, created_at) VALUES(?,?,?,?,?,?)",
            (message_id, sender_id, receiver_id, self.cipher.encrypt(text), image or None, now_ms()),
        )
        await self.db.commit()

        cur = await self.db.execute(
            f"""SELECT {_MESSAGE_COLUMNS} FROM messages m JOIN users u ON u.user_id = m.sender_id
                WHERE m.message_id=?""",
            (message_id,),
        )
        row = await cur.fetchone()
        await cur.close()
        return self._to_message(row, strict=True)

    async def fetch_conversation(self, user_a: str, user_b: str) -> List[Message]:
        """Both directions between two users, oldest first.

        Ties on ``created_at`` fall back to insertion order. A record that fails
        to decrypt comes back with ``undecryptable=True`` and no text; the rest
        of the conversation is still returned.
        """
        cur = await self.db.execute(
            f"""SELECT {_MESSAGE_COLUMNS} FROM messages m JOIN users u ON u.user_id = m.sender_id
                WHERE (m.sender_id=? AND m.receiver_id=?) OR (m.sender_id=? AND m.receiver_id=?)
                ORDER BY m.created_at ASC, m.rowid ASC""",
            (user_a, user_b, user_b, user_a),
        )
        rows = await cur.fetchall()
        await cur.close()
        return [self._to_message(row, strict=False) for row in rows]

    async def fetch_raw_text(self, message_id: str) -> Optional[str]:
        """The stored text column as it sits on disk."""
        cur = await self.db.execute("SELECT text FROM messages WHERE message_id=?", (message_id,))
        row = await cur.fetchone()
        await cur.close()
        if row is None:
            raise KeyError(message_id)
        return row["text"]

    def _to_message(self, row: aiosqlite.Row, *, strict: bool) -> Message:
        undecryptable = False
        try:
            text = self.cipher.decrypt(row["text"])
        except DecryptionError as exc:
            if strict:
                raise
            log.warning("Message %s could not be decrypted: %s", row["message_id"], exc.detail)
            text, undecryptable = None, True

        sender = UserSummary(
            user_id=row["sender_id"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            email=row["email"],
            profile_pic=row["profile_pic"],
        )
        return Message(
            id=row["message_id"],
            sender_id=sender,
            receiver_id=row["receiver_id"],
            text=text,
            image=row["image"],
            created_at=row["created_at"],
            undecryptable=undecryptable,
        )


__all__ = ["MessageStore", "SCHEMA"]
