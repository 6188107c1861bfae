"""
Token Encryption

Seals handoff payloads (which may carry ticketing access/refresh tokens)
before they are written to Redis, so a Redis dump does not expose live
sessions.

AES-256-GCM, random 96-bit nonce per message, stored as
base64(nonce || ciphertext || tag).
"""

import base64
import json
import logging
import os
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


class HandoffCipher:
    """Authenticated encryption for mailbox payloads."""

    KEY_SIZE = 32  # AES-256
    NONCE_SIZE = 12
    TAG_SIZE = 16

    def __init__(self, key_b64: str):
        """
        Args:
            key_b64: Base64-encoded 32-byte key (HANDOFF_ENCRYPTION_KEY)

        Raises:
            ValueError: If the key is missing or has the wrong size
        """
        if not key_b64:
            raise ValueError(
                "HANDOFF_ENCRYPTION_KEY is empty. Generate one with: "
                "python -c 'import os,base64; print(base64.b64encode(os.urandom(32)).decode())'"
            )

        try:
            key = base64.b64decode(key_b64, validate=True)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid encryption key encoding: {e}")

        if len(key) != self.KEY_SIZE:
            raise ValueError(f"Encryption key must be {self.KEY_SIZE} bytes (got {len(key)})")

        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(self.NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, ciphertext_b64: str) -> str:
        """
        Raises:
            ValueError: On wrong key, truncated or tampered data
        """
        try:
            raw = base64.b64decode(ciphertext_b64, validate=True)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Decryption failed: bad encoding ({e})")

        if len(raw) < self.NONCE_SIZE + self.TAG_SIZE:
            raise ValueError("Decryption failed: payload too short")

        nonce, sealed = raw[:self.NONCE_SIZE], raw[self.NONCE_SIZE:]
        try:
            return self._aead.decrypt(nonce, sealed, None).decode("utf-8")
        except InvalidTag:
            raise ValueError("Decryption failed: authentication tag mismatch")

    def seal(self, payload: Dict[str, Any]) -> str:
        """Serialize a JSON-able dict and encrypt it."""
        return self.encrypt(json.dumps(payload, separators=(",", ":")))

    def open(self, sealed: str) -> Dict[str, Any]:
        """Decrypt and deserialize a payload produced by seal()."""
        return json.loads(self.decrypt(sealed))


def get_handoff_cipher(key_b64: Optional[str]) -> Optional[HandoffCipher]:
    """
    Build a cipher when a key is configured.

    Returns:
        HandoffCipher, or None when encryption is disabled
    """
    if not key_b64:
        logging.warning("HANDOFF_ENCRYPTION_KEY not set - Redis handoff payloads are stored UNENCRYPTED")
        return None

    cipher = HandoffCipher(key_b64)
    logging.info("Handoff payload encryption ENABLED (AES-256-GCM)")
    return cipher
