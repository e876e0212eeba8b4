"""
Remote error taxonomy.

Every failure coming out of the gateway or the auth provider is a
`RemoteError` carrying one of the `ErrorKind` values below, so callers can
pick a policy (retry, roll back, re-authenticate) without inspecting HTTP
details.
"""

from enum import Enum

import httpx


class ErrorKind(str, Enum):
    not_found = "not_found"
    conflict = "conflict"
    auth_expired = "auth_expired"
    network = "network"
    unknown = "unknown"


# PostgREST codes raised when the JWT is missing, malformed or expired
AUTH_ERROR_CODES = {"PGRST301", "PGRST302"}
AUTH_ERROR_MESSAGES = ("JWT expired", "Invalid JWT")

# "Results contain 0 rows" on a single-object request
NOT_FOUND_CODES = {"PGRST116"}

# Postgres unique_violation
CONFLICT_CODES = {"23505"}


class RemoteError(Exception):
    """Raised when a remote read or write fails."""
    def __init__(self, kind: ErrorKind, message: str, code: str | None = None):
        self.kind = kind
        self.message = message
        self.code = code
        super().__init__(f"{kind.value}: {message}")

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.network

    @classmethod
    def not_found(cls, message: str) -> "RemoteError":
        return cls(ErrorKind.not_found, message)

    @classmethod
    def conflict(cls, message: str) -> "RemoteError":
        return cls(ErrorKind.conflict, message)


def is_auth_error(code: str | None, message: str | None) -> bool:
    if code in AUTH_ERROR_CODES:
        return True
    return bool(message) and any(text in message for text in AUTH_ERROR_MESSAGES)


def error_from_response(response: httpx.Response) -> RemoteError:
    """Map a failed backend response onto the error taxonomy."""
    code = None
    message = response.text or response.reason_phrase
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        code = body.get("code")
        message = body.get("message") or body.get("msg") or body.get("error_description") or message

    if response.status_code in (401, 403) or is_auth_error(code, message):
        return RemoteError(ErrorKind.auth_expired, message, code)
    if response.status_code == 404 or code in NOT_FOUND_CODES:
        return RemoteError(ErrorKind.not_found, message, code)
    if response.status_code == 409 or code in CONFLICT_CODES:
        return RemoteError(ErrorKind.conflict, message, code)
    if response.status_code in (502, 503, 504):
        return RemoteError(ErrorKind.network, message, code)
    return RemoteError(ErrorKind.unknown, message, code)


def error_from_transport(exc: httpx.TransportError) -> RemoteError:
    """Connection failures and timeouts never reached the backend."""
    return RemoteError(ErrorKind.network, f"{type(exc).__name__}: {exc}")
