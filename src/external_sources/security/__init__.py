"""
Sync Security Package
=====================
Cron key verification, OAuth state signing and secret envelope encryption.
"""

from .cron_keys import CronKeyVerifier, constant_time_equal, generate_cron_key, hash_cron_key
from .oauth_state import OAuthStatePayload, OAuthStateSigner, safe_return_path
from .secret_box import EncryptedBlob, SecretBox

__all__ = [
    "CronKeyVerifier",
    "constant_time_equal",
    "generate_cron_key",
    "hash_cron_key",
    "OAuthStatePayload",
    "OAuthStateSigner",
    "safe_return_path",
    "EncryptedBlob",
    "SecretBox",
]
