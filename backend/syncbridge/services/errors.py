"""
业务层异常：带机器可读 code 与对应 HTTP 状态码，API 层统一转成 JSON 响应。
"""

from __future__ import annotations
from typing import Optional


class SyncBridgeError(Exception):
    """Base for domain errors surfaced to API callers."""

    code = "error"
    status_code = 400

    def __init__(self, message: str = "", *, code: Optional[str] = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code


# ---------- validation ----------
class ValidationError(SyncBridgeError):
    """Bad input, surfaced verbatim."""
    code = "validation_error"
    status_code = 422


class NotFoundError(SyncBridgeError):
    code = "not_found"
    status_code = 404


class AlreadyExists(SyncBridgeError):
    code = "already_exists"
    status_code = 409


# ---------- job / connection state ----------
class AlreadyRunning(SyncBridgeError):
    """An active (queued/running) job exists for the connection."""
    code = "already_running"
    status_code = 409


class JobRunning(SyncBridgeError):
    """Connection cannot be deleted while its job is running."""
    code = "job_running"
    status_code = 409


class ConnectionPaused(SyncBridgeError):
    code = "connection_paused"
    status_code = 409


class ConnectionDisabled(SyncBridgeError):
    code = "connection_disabled"
    status_code = 409


# ---------- authorization ----------
class NeedsReinstall(SyncBridgeError):
    """Installation has no valid credential; caller should prompt re-installation."""
    code = "needs_reinstall"
    status_code = 401


class SignatureInvalid(SyncBridgeError):
    code = "signature_invalid"
    status_code = 401


# ---------- OAuth handshake ----------
class InvalidShopDomain(SyncBridgeError):
    code = "invalid_shop_domain"
    status_code = 400


class StateMismatch(SyncBridgeError):
    code = "state_mismatch"
    status_code = 400


class StateExpired(SyncBridgeError):
    code = "state_expired"
    status_code = 400


class TokenExchangeFailed(SyncBridgeError):
    """Token endpoint rejected the code; upstream_body is for logs only."""
    code = "token_exchange_failed"
    status_code = 502

    def __init__(self, message: str = "token exchange failed", *, upstream_body: Optional[str] = None) -> None:
        super().__init__(message)
        self.upstream_body = upstream_body


# ---------- upstream ----------
class UpstreamUnavailable(SyncBridgeError):
    """Store API failed during a synchronous (request-scoped) call."""
    code = "upstream_error"
    status_code = 502
