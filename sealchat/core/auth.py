from __future__ import annotations

import base64
import time
from typing import Callable, Optional

import orjson
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

from .errors import AuthenticationError, ConfigurationError

MIN_SECRET_BYTES = 16
DEFAULT_TTL_SECS = 7 * 24 * 3600


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


class SessionSigner:
    """Issues and verifies the session tokens presented in HELLO.

    Token layout: ``b64url(claims_json).b64url(hmac_sha256(claims_json))`` with
    claims ``{"sub": user_id, "exp": unix_seconds}``.
    """

    def __init__(
        self,
        secret: Optional[str | bytes],
        *,
        ttl_secs: int = DEFAULT_TTL_SECS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if isinstance(secret, str):
            secret = secret.encode("utf-8")
        if not secret or len(secret) < MIN_SECRET_BYTES:
            raise ConfigurationError(f"session secret must be at least {MIN_SECRET_BYTES} bytes")
        self._secret = secret
        self.ttl_secs = ttl_secs
        self._clock = clock

    def issue(self, user_id: str) -> str:
        claims = {"sub": user_id, "exp": int(self._clock()) + self.ttl_secs}
        body = orjson.dumps(claims, option=orjson.OPT_SORT_KEYS)
        return f"{b64url(body)}.{b64url(self._mac(body))}"

    def verify(self, token: object) -> str:
        """Return the user id bound to ``token`` or raise AuthenticationError."""
        if not isinstance(token, str) or token.count(".") != 1:
            raise AuthenticationError("malformed session token")
        body_b64, mac_b64 = token.split(".")
        try:
            body = b64url_decode(body_b64)
            mac = b64url_decode(mac_b64)
        except ValueError:
            raise AuthenticationError("malformed session token") from None

        h = hmac.HMAC(self._secret, hashes.SHA256())
        h.update(body)
        try:
            h.verify(mac)
        except InvalidSignature:
            raise AuthenticationError("bad session signature") from None

        try:
            claims = orjson.loads(body)
        except ValueError:
            raise AuthenticationError("malformed session claims") from None
        user_id = claims.get("sub") if isinstance(claims, dict) else None
        exp = claims.get("exp") if isinstance(claims, dict) else None
        if not isinstance(user_id, str) or not user_id or not isinstance(exp, int):
            raise AuthenticationError("malformed session claims")
        if exp <= int(self._clock()):
            raise AuthenticationError("session expired")
        return user_id

    def _mac(self, body: bytes) -> bytes:
        h = hmac.HMAC(self._secret, hashes.SHA256())
        h.update(body)
        return h.finalize()


__all__ = ["SessionSigner", "b64url", "b64url_decode"]
