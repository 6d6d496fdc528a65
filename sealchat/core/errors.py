from __future__ import annotations


class SealchatError(Exception):
    """Base class for errors that map onto an ERROR frame."""

    code = "INTERNAL"
    status = 500

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.code)
        self.detail = detail or self.code


class ValidationError(SealchatError):
    code = "BAD_REQUEST"
    status = 400


class EmptyMessageError(ValidationError):
    code = "EMPTY_MESSAGE"


class AuthenticationError(SealchatError):
    code = "UNAUTHORIZED"
    status = 401


class UserNotFoundError(SealchatError):
    code = "USER_NOT_FOUND"
    status = 404


class DecryptionError(SealchatError):
    """Envelope is malformed or its authentication tag does not verify."""

    code = "DECRYPTION_FAILED"


class ConfigurationError(SealchatError):
    """Fatal at startup: the process must not run without a usable key."""

    code = "CONFIGURATION"


__all__ = [
    "SealchatError",
    "ValidationError",
    "EmptyMessageError",
    "AuthenticationError",
    "UserNotFoundError",
    "DecryptionError",
    "ConfigurationError",
]
