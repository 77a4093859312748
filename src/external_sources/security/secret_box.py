"""
Secret Box
==========
Envelope encryption with AES-256-GCM for source credential blobs.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..config import EncryptionConfig
from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class EncryptedBlob:
    """Ciphertext plus the wrapped data key needed to open it."""
    key_id: str  # "<master_key_id>:<b64 dek iv>:<b64 wrapped dek>"
    iv: str
    ciphertext: str


def _decode_key(encoded: str) -> bytes:
    try:
        key = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ConfigurationError("Master key must be base64 encoded") from e
    if len(key) != 32:
        raise ConfigurationError("Master key must decode to 32 bytes")
    return key


class SecretBox:
    """
    Envelope encryption for secret blobs.

    Envelope encryption:
    1. Generate a fresh Data Encryption Key (DEK) per blob
    2. Encrypt the JSON blob with the DEK, binding the source id as AAD
    3. Wrap the DEK with the master key
    4. Store the wrapped DEK next to the ciphertext

    Retired master keys stay available for decryption so blobs written before
    a key rotation remain readable.
    """

    def __init__(self, config: Optional[EncryptionConfig] = None):
        config = config or EncryptionConfig()
        self._master_keys: dict[str, bytes] = {}

        for entry in config.retired_keys:
            key_id, _, encoded = entry.partition(":")
            if key_id and encoded:
                self._master_keys[key_id] = _decode_key(encoded)

        if config.master_key:
            self._current_key_id = config.master_key_id
            self._master_keys[self._current_key_id] = _decode_key(config.master_key)
        else:
            logger.warning("Using ephemeral master key - stored secrets will not survive a restart!")
            self._current_key_id = "ephemeral-v1"
            self._master_keys[self._current_key_id] = secrets.token_bytes(32)

    @property
    def current_key_id(self) -> str:
        return self._current_key_id

    def encrypt(self, payload: dict[str, Any], associated_data: Optional[str] = None) -> EncryptedBlob:
        """Encrypt a JSON-serializable blob."""
        plaintext = json.dumps(payload, sort_keys=True).encode()
        aad = associated_data.encode() if associated_data else None

        dek = AESGCM.generate_key(bit_length=256)
        iv = secrets.token_bytes(12)
        ciphertext = AESGCM(dek).encrypt(iv, plaintext, aad)

        dek_iv = secrets.token_bytes(12)
        wrapped_dek = AESGCM(self._master_keys[self._current_key_id]).encrypt(dek_iv, dek, None)

        key_info = (
            f"{self._current_key_id}:"
            f"{base64.b64encode(dek_iv).decode()}:"
            f"{base64.b64encode(wrapped_dek).decode()}"
        )

        return EncryptedBlob(
            key_id=key_info,
            iv=base64.b64encode(iv).decode(),
            ciphertext=base64.b64encode(ciphertext).decode(),
        )

    def decrypt(self, blob: EncryptedBlob, associated_data: Optional[str] = None) -> dict[str, Any]:
        """Decrypt a blob written by :meth:`encrypt`."""
        parts = blob.key_id.split(":")
        if len(parts) != 3:
            raise ConfigurationError("Invalid key_id format on stored secret")

        master_key_id, dek_iv_b64, wrapped_dek_b64 = parts
        master_key = self._master_keys.get(master_key_id)
        if master_key is None:
            raise ConfigurationError(f"Master key not found: {master_key_id}")

        aad = associated_data.encode() if associated_data else None
        try:
            dek = AESGCM(master_key).decrypt(
                base64.b64decode(dek_iv_b64), base64.b64decode(wrapped_dek_b64), None
            )
            plaintext = AESGCM(dek).decrypt(
                base64.b64decode(blob.iv), base64.b64decode(blob.ciphertext), aad
            )
        except (InvalidTag, binascii.Error, ValueError) as e:
            raise ConfigurationError("Stored secret could not be decrypted with the configured key") from e

        return json.loads(plaintext)
