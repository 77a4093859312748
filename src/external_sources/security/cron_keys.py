"""
Cron Key Verifier
=================
Generation, peppered hashing and constant-time comparison of tenant cron keys.
"""

import binascii
import hashlib
import hmac
import secrets
from typing import Optional

from ..exceptions import ConfigurationError

CRON_KEY_PREFIX = "esc_"
DISPLAY_PREFIX_LENGTH = 12


def generate_cron_key() -> tuple[str, str]:
    """Generate a new cron key. Returns (key, display_prefix)."""
    key = f"{CRON_KEY_PREFIX}{secrets.token_hex(32)}"
    return key, key[:DISPLAY_PREFIX_LENGTH]


def hash_cron_key(key: str, pepper: Optional[str]) -> str:
    """Hash a cron key with the server-side pepper (hex SHA-256)."""
    if not pepper:
        raise ConfigurationError("EXTERNAL_SOURCES_CRON_KEY_PEPPER is not set")
    return hashlib.sha256(f"{pepper}:{key}".encode()).hexdigest()


def constant_time_equal(a_hex: str, b_hex: str) -> bool:
    """Compare two hex digests in time independent of where they differ."""
    try:
        a = bytes.fromhex(a_hex)
        b = bytes.fromhex(b_hex)
    except (ValueError, TypeError, binascii.Error):
        return False
    if len(a) != len(b):
        return False
    return hmac.compare_digest(a, b)


class CronKeyVerifier:
    """Hashes and verifies cron keys against stored digests."""

    def __init__(self, pepper: Optional[str]):
        self._pepper = pepper

    def hash(self, key: str) -> str:
        return hash_cron_key(key, self._pepper)

    def verify(self, candidate: str, stored_hash: Optional[str]) -> bool:
        if not candidate or not stored_hash:
            return False
        return constant_time_equal(self.hash(candidate), stored_hash)
