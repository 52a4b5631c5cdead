"""
Encryption of AI provider secrets at rest.

AES-256-GCM, key = sha256(AI_SETTINGS_ENCRYPTION_KEY).
Payload format: base64(iv):base64(tag):base64(ciphertext), iv is 12 random bytes.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.errors import ConfigurationError, ValidationError
from app.settings import Settings, get_settings

IV_BYTES = 12
TAG_BYTES = 16


class AiSecretCrypto:
    def __init__(self, settings: Settings | None = None):
        self._settings = settings or get_settings()

    def _key(self) -> bytes:
        secret = (self._settings.ai_settings_encryption_key or "").strip()
        if not secret:
            raise ConfigurationError("AI_SETTINGS_ENCRYPTION_KEY is required for AI secret encryption.")
        return hashlib.sha256(secret.encode("utf-8")).digest()

    def encrypt(self, plain: str) -> str:
        iv = os.urandom(IV_BYTES)
        # AESGCM appends the tag to the ciphertext; store it as its own segment
        sealed = AESGCM(self._key()).encrypt(iv, plain.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return ":".join(base64.b64encode(part).decode("ascii") for part in (iv, tag, ciphertext))

    def decrypt(self, payload: str) -> str:
        parts = payload.split(":")
        if len(parts) != 3:
            raise ValidationError("Encrypted AI key payload is malformed")
        key = self._key()
        try:
            iv, tag, ciphertext = (base64.b64decode(part, validate=True) for part in parts)
            plain = AESGCM(key).decrypt(iv, ciphertext + tag, None)
            return plain.decode("utf-8")
        except (InvalidTag, binascii.Error, ValueError, UnicodeDecodeError) as exc:
            raise ValidationError("Unable to decrypt saved AI key") from exc


def mask_secret(value: str | None) -> str | None:
    if not value:
        return None
    return f"***{value[-4:]}"
