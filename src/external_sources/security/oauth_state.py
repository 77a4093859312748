"""
OAuth State Token
=================
Signed, expiring state binding a connection attempt to a user, a source and
a return path.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Optional

from ..exceptions import ConfigurationError, OAuthStateExpiredError, OAuthStateInvalidError

MIN_SECRET_LENGTH = 32


@dataclass
class OAuthStatePayload:
    """Verified state contents."""
    user_id: str
    source_id: str
    issued_at_ms: int
    return_to: Optional[str] = None


def safe_return_path(value: Optional[str]) -> Optional[str]:
    """Accept only local absolute paths as redirect targets."""
    if not value or not isinstance(value, str):
        return None
    if not value.startswith("/") or value.startswith("//") or value.startswith("/\\"):
        return None
    return value


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _b64url_decode(data: str) -> bytes:
    padding = 4 - len(data) % 4
    if padding != 4:
        data += "=" * padding
    return base64.urlsafe_b64decode(data)


class OAuthStateSigner:
    """HMAC-SHA256 signer for OAuth state tokens."""

    def __init__(self, secret: Optional[str], ttl_seconds: int = 15 * 60):
        self._secret = secret
        self.ttl_seconds = ttl_seconds

    def _key(self) -> bytes:
        if not self._secret:
            raise ConfigurationError(
                "OAuth state signing is not configured. Set EXTERNAL_OAUTH_STATE_SECRET."
            )
        if len(self._secret) < MIN_SECRET_LENGTH:
            raise ConfigurationError(
                f"OAuth state signing secret is too short. Use at least {MIN_SECRET_LENGTH} characters."
            )
        return self._secret.encode()

    def _sign(self, data: str) -> str:
        return _b64url_encode(hmac.new(self._key(), data.encode(), hashlib.sha256).digest())

    def issue(self, user_id: str, source_id: str, return_to: Optional[str] = None) -> str:
        payload = {
            "source_id": source_id,
            "user_id": user_id,
            "ts": int(time.time() * 1000),
        }
        safe = safe_return_path(return_to)
        if safe:
            payload["return_to"] = safe

        data = _b64url_encode(json.dumps(payload, separators=(",", ":")).encode())
        return f"{data}.{self._sign(data)}"

    def verify(self, token: str) -> OAuthStatePayload:
        # Resolve the key first so misconfiguration is not reported as a bad token
        self._key()

        data, _, signature = (token or "").partition(".")
        if not data or not signature:
            raise OAuthStateInvalidError("Invalid state")

        if not hmac.compare_digest(signature.encode(), self._sign(data).encode()):
            raise OAuthStateInvalidError("Invalid state signature")

        try:
            payload = json.loads(_b64url_decode(data))
        except (ValueError, UnicodeDecodeError) as e:
            raise OAuthStateInvalidError("Invalid state payload") from e

        if not isinstance(payload, dict):
            raise OAuthStateInvalidError("Invalid state payload")

        source_id = payload.get("source_id")
        user_id = payload.get("user_id")
        ts = payload.get("ts")
        if not source_id or not user_id or not isinstance(ts, int):
            raise OAuthStateInvalidError("Invalid state payload")

        return_to = payload.get("return_to")
        if return_to is not None and safe_return_path(return_to) is None:
            raise OAuthStateInvalidError("Invalid return_to")

        if time.time() * 1000 - ts > self.ttl_seconds * 1000:
            raise OAuthStateExpiredError("State expired")

        return OAuthStatePayload(
            user_id=str(user_id),
            source_id=str(source_id),
            issued_at_ms=ts,
            return_to=return_to,
        )
