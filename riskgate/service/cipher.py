from __future__ import annotations

import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from riskgate.config import Settings
from riskgate.logging import get_logger

logger = get_logger(__name__)


class SecretCipher:
    """Encrypts TOTP secrets at rest; plaintext only exists in-process."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("MFA encryption key material is required")
        self._fernet = Fernet(self._derive_cipher_key(key_material))

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecretCipher":
        return cls(settings.mfa_encryption_key or settings.jwt_secret)

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: str) -> str:
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: str) -> Optional[str]:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except (InvalidToken, ValueError):
            logger.warning("mfa_secret_decrypt_failed")
            return None
