import pytest
import pytest_asyncio

from sealchat.core.cipher import Cipher
from sealchat.core.store import MessageStore
from sealchat.server.runtime import KEY_ENV, SECRET_ENV, ServerRuntime

TEST_KEY_HEX = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
TEST_SECRET = "test-session-secret-0123456789"

USERS = [
    {"user_id": "alice", "first_name": "Alice", "last_name": "Liddell", "email": "alice@example.org"},
    {"user_id": "bob", "first_name": "Bob", "last_name": "Builder", "email": "bob@example.org",
     "password_hash": "$2b$10$not-a-real-hash"},
    {"user_id": "carol", "first_name": "Carol", "last_name": "Danvers"},
]


@pytest.fixture
def key() -> bytes:
    return bytes.fromhex(TEST_KEY_HEX)


@pytest.fixture
def cipher(key) -> Cipher:
    return Cipher(key)


@pytest_asyncio.fixture
async def store(tmp_path, cipher):
    """Open store with the three test users seeded."""
    s = MessageStore(tmp_path / "messages.db", cipher)
    await s.open()
    for user in USERS:
        fields = {k: v for k, v in user.items() if k != "user_id"}
        await s.upsert_user(user["user_id"], **fields)
    try:
        yield s
    finally:
        await s.close()


@pytest.fixture
def server_config(tmp_path, monkeypatch):
    monkeypatch.delenv(KEY_ENV, raising=False)
    monkeypatch.delenv(SECRET_ENV, raising=False)
    return {
        "listen": "127.0.0.1:0",
        "db_path": str(tmp_path / "server.db"),
        "message_key": TEST_KEY_HEX,
        "session_secret": TEST_SECRET,
        "assets_dir": str(tmp_path / "assets"),
        "assets_base_url": "http://assets.test/media",
        "send_timeout_secs": 1,
        "users": [dict(u) for u in USERS],
    }


@pytest_asyncio.fixture
async def runtime(server_config):
    rt = ServerRuntime(server_config)
    await rt.start()
    try:
        yield rt
    finally:
        await rt.stop()


@pytest.fixture
def server_url(runtime) -> str:
    return f"ws://127.0.0.1:{runtime.port}"
