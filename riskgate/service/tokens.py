from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Callable, Optional

from riskgate.config import Settings
from riskgate.logging import get_logger

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


def hash_token(token: str) -> str:
    """Digest stored in place of a raw refresh token."""
    return hashlib.sha256(token.encode()).hexdigest()


class TokenCodec:
    """HS256 signed tokens (header.payload.signature).

    Access tokens carry subject, session id, device id, issue/expiry times,
    issuer and audience; refresh tokens carry subject and session id. Both
    carry ``token_type`` so one can never be accepted in place of the other.
    """

    def __init__(
        self, settings: Settings, *, clock: Callable[[], float] = time.time
    ) -> None:
        self.settings = settings
        self._clock = clock

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(
        self, token: str, *, expected_type: Optional[str] = None
    ) -> Optional[dict[str, Any]]:
        """Verify signature and registered claims; None on any mismatch."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("token_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("token_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("token_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock() - self.settings.clock_skew_seconds:
            return None
        if expected_type and payload.get("token_type") != expected_type:
            return None
        return payload

    def issue_pair(
        self,
        *,
        user_id: str,
        session_id: str,
        device_id: Optional[str],
        issued_at: float,
        access_expires_at: float,
        refresh_expires_at: float,
    ) -> tuple[str, str]:
        base = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "sid": session_id,
            "iat": int(issued_at),
        }
        access_payload = {
            **base,
            "did": device_id,
            "token_type": ACCESS,
            "jti": str(uuid.uuid4()),
            "exp": int(access_expires_at),
        }
        refresh_payload = {
            **base,
            "token_type": REFRESH,
            "jti": str(uuid.uuid4()),
            "exp": int(refresh_expires_at),
        }
        return self.encode(access_payload), self.encode(refresh_payload)
