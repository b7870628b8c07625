"""Second-factor enrollment, challenges and verification.

TOTP follows RFC 6238 (HMAC-SHA1, 30 second steps, 6 digits) so any
authenticator app can enroll from the ``otpauth://`` URI. Backup codes and
SMS/email codes are only ever stored as SHA-256 digests; consuming either is
a single atomic store operation so a code can succeed at most once.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import os
import re
import secrets
import string
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote, urlencode

from riskgate.config import Settings
from riskgate.logging import get_logger
from riskgate.service.cipher import SecretCipher
from riskgate.service.collaborators import CredentialStore, Notifier
from riskgate.service.errors import ChallengeExpiredError, InvalidMFAError, NotFoundError
from riskgate.service.notifier import BackgroundDispatcher
from riskgate.storage.common import Keys, StateStore
from riskgate.storage.models import ChallengeCode, MFAChallenge, MFAMethod, User

logger = get_logger(__name__)

BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits
DELIVERED_METHODS = (MFAMethod.SMS.value, MFAMethod.EMAIL.value)


def generate_totp_secret() -> str:
    return base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")


def generate_totp(secret: str, timestamp: float, *, step: int = 30, digits: int = 6) -> str:
    """HOTP over ``floor(timestamp / step)``; empty string for an undecodable secret."""
    cleaned = secret.replace(" ", "").upper()
    padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // step).to_bytes(8, "big")
    mac = hmac.new(key, counter, hashlib.sha1).digest()
    offset = mac[-1] & 0x0F
    code_int = (int.from_bytes(mac[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    *,
    timestamp: float,
    window: int = 1,
    step: int = 30,
    digits: int = 6,
) -> bool:
    """Accept the code for the current step or up to ``window`` steps either side."""
    code = (code or "").strip().replace(" ", "")
    if len(code) != digits or not code.isdigit():
        return False
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, timestamp + offset * step, step=step, digits=digits)
        # Constant-time comparison
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def normalize_code(code: str) -> str:
    return re.sub(r"[\s-]", "", code or "").upper()


def hash_code(code: str) -> str:
    return hashlib.sha256(normalize_code(code).encode()).hexdigest()


def generate_backup_codes(count: int, length: int) -> List[str]:
    return [
        "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(length))
        for _ in range(count)
    ]


def generate_delivery_code(digits: int = 6) -> str:
    return str(secrets.randbelow(10**digits)).zfill(digits)


def mask_phone(phone: str) -> str:
    """Every digit but the last four becomes ``*``: ``555-123-4567`` -> ``***-***-4567``."""
    keep_from = sum(ch.isdigit() for ch in phone) - 4
    masked = []
    seen = 0
    for ch in phone:
        if ch.isdigit():
            masked.append("*" if seen < keep_from else ch)
            seen += 1
        else:
            masked.append(ch)
    return "".join(masked)


def mask_email(email: str) -> str:
    if "@" not in email:
        return "***"
    local, domain = email.split("@", 1)
    return f"{local[:2]}{'*' * max(len(local) - 2, 0)}@{domain}"


def available_methods(user: User) -> List[str]:
    """Second factors the user could complete right now, in verification order."""
    methods: List[str] = []
    if user.mfa_enabled and user.totp_secret:
        methods.append(MFAMethod.TOTP.value)
    if user.backup_code_hashes:
        methods.append(MFAMethod.BACKUP_CODE.value)
    if user.phone and user.phone_verified:
        methods.append(MFAMethod.SMS.value)
    if user.email and user.email_verified:
        methods.append(MFAMethod.EMAIL.value)
    return methods


@dataclass
class MFASetup:
    secret: str
    otpauth_uri: str
    backup_codes: List[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "secret": self.secret,
            "otpauth_uri": self.otpauth_uri,
            "backup_codes": list(self.backup_codes),
        }


@dataclass
class MFAVerification:
    success: bool
    method: str
    remaining_backup_codes: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success, "method": self.method}
        if self.remaining_backup_codes is not None:
            payload["remaining_backup_codes"] = self.remaining_backup_codes
        return payload


class MFAChallengeManager:
    def __init__(
        self,
        credentials: CredentialStore,
        state: StateStore,
        notifier: Notifier,
        settings: Settings,
        *,
        cipher: Optional[SecretCipher] = None,
        dispatcher: Optional[BackgroundDispatcher] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.credentials = credentials
        self.state = state
        self.notifier = notifier
        self.settings = settings
        self.cipher = cipher or SecretCipher.from_settings(settings)
        self.dispatcher = dispatcher or BackgroundDispatcher()
        self._clock = clock

    async def _require_user(self, user_id: str) -> User:
        user = await self.credentials.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def _otpauth_uri(self, account: str, secret: str) -> str:
        issuer = self.settings.mfa_issuer
        label = quote(f"{issuer}:{account}")
        params = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": self.settings.mfa_digits,
                "period": self.settings.mfa_step_seconds,
            }
        )
        return f"otpauth://totp/{label}?{params}"

    # -- enrollment -------------------------------------------------------

    async def setup_totp(self, user_id: str) -> MFASetup:
        """Enroll TOTP and issue a fresh set of backup codes.

        Codes are returned in plaintext exactly once; only their digests are
        persisted, and the secret is stored encrypted.
        """
        user = await self._require_user(user_id)
        secret = generate_totp_secret()
        codes = generate_backup_codes(
            self.settings.backup_code_count, self.settings.backup_code_length
        )
        await self.credentials.update_user(
            user_id,
            {
                "totp_secret": self.cipher.encrypt(secret),
                "backup_code_hashes": [hash_code(code) for code in codes],
                "mfa_enabled": True,
            },
        )
        logger.info("mfa_totp_enrolled", user_id=user_id, backup_codes=len(codes))
        return MFASetup(
            secret=secret,
            otpauth_uri=self._otpauth_uri(user.email, secret),
            backup_codes=codes,
        )

    async def disable_mfa(self, user_id: str) -> None:
        await self._require_user(user_id)
        await self.credentials.update_user(
            user_id,
            {"mfa_enabled": False, "totp_secret": None, "backup_code_hashes": []},
        )
        logger.info("mfa_disabled", user_id=user_id)

    async def regenerate_backup_codes(self, user_id: str) -> List[str]:
        await self._require_user(user_id)
        codes = generate_backup_codes(
            self.settings.backup_code_count, self.settings.backup_code_length
        )
        await self.credentials.update_user(
            user_id, {"backup_code_hashes": [hash_code(code) for code in codes]}
        )
        logger.info("mfa_backup_codes_regenerated", user_id=user_id, count=len(codes))
        return codes

    async def get_mfa_status(self, user_id: str) -> Dict[str, Any]:
        user = await self._require_user(user_id)
        return {
            "enabled": user.mfa_enabled,
            "totp_configured": bool(user.totp_secret),
            "backup_codes_remaining": len(user.backup_code_hashes),
            "phone_verified": bool(user.phone and user.phone_verified),
            "email_verified": user.email_verified,
            "available_methods": available_methods(user),
        }

    # -- direct verification ---------------------------------------------

    async def verify_totp(self, user_id: str, code: str) -> MFAVerification:
        method = MFAMethod.TOTP.value
        user = await self.credentials.get_user(user_id)
        if user is None or not user.totp_secret:
            return MFAVerification(False, method, reason="not_configured")
        secret = self.cipher.decrypt(user.totp_secret)
        if secret is None:
            return MFAVerification(False, method, reason="secret_unreadable")
        ok = verify_totp(
            secret,
            code,
            timestamp=self._clock(),
            window=self.settings.mfa_window,
            step=self.settings.mfa_step_seconds,
            digits=self.settings.mfa_digits,
        )
        logger.info("mfa_totp_verified", user_id=user_id, success=ok)
        return MFAVerification(ok, method, reason=None if ok else "mismatch")

    async def verify_backup_code(self, user_id: str, code: str) -> MFAVerification:
        method = MFAMethod.BACKUP_CODE.value
        if not normalize_code(code):
            return MFAVerification(False, method, reason="empty")
        remaining = await self.credentials.consume_backup_code(user_id, hash_code(code))
        if remaining is None:
            logger.info("mfa_backup_code_rejected", user_id=user_id)
            return MFAVerification(False, method, reason="mismatch")

        logger.info("mfa_backup_code_used", user_id=user_id, remaining=remaining)
        if remaining <= self.settings.backup_code_low_watermark:
            user = await self.credentials.get_user(user_id)
            if user is not None and user.email:
                self.dispatcher.submit(
                    self.notifier.send_email(
                        user.email, "low_backup_codes", {"remaining": remaining}
                    ),
                    event="low_backup_codes_notice",
                    user_id=user_id,
                )
        return MFAVerification(True, method, remaining_backup_codes=remaining)

    # -- challenges -------------------------------------------------------

    async def create_challenge(self, user_id: str) -> MFAChallenge:
        user = await self._require_user(user_id)
        now = self._clock()
        methods = available_methods(user)
        destinations: Dict[str, str] = {}
        if MFAMethod.SMS.value in methods and user.phone:
            destinations[MFAMethod.SMS.value] = mask_phone(user.phone)
        if MFAMethod.EMAIL.value in methods:
            destinations[MFAMethod.EMAIL.value] = mask_email(user.email)
        challenge = MFAChallenge(
            id=str(uuid.uuid4()),
            user_id=user_id,
            methods=methods,
            created_at=now,
            expires_at=now + self.settings.mfa_challenge_ttl_seconds,
            destinations=destinations,
        )
        await self.state.set_json(
            Keys.challenge(challenge.id),
            challenge.to_record(),
            self.settings.mfa_challenge_ttl_seconds,
        )
        logger.info("mfa_challenge_created", user_id=user_id, methods=methods)
        return challenge

    async def get_challenge(self, challenge_id: str) -> Optional[MFAChallenge]:
        raw = await self.state.get_json(Keys.challenge(challenge_id))
        if not raw:
            return None
        challenge = MFAChallenge.from_record(raw)
        if self._clock() > challenge.expires_at:
            return None
        return challenge

    async def close_challenge(self, challenge_id: str) -> None:
        await self.state.delete(Keys.challenge(challenge_id))
        for method in DELIVERED_METHODS:
            await self.state.delete(Keys.challenge_code(method, challenge_id))
            await self.state.delete(Keys.challenge_attempts(method, challenge_id))

    async def send_challenge_code(self, challenge_id: str, method: str) -> Dict[str, Any]:
        """Generate and deliver a one-time code for an SMS or email challenge.

        Delivery runs in the background; a slow or failing gateway never
        blocks the caller. Re-sending replaces the previous code and resets
        its attempt counter.
        """
        challenge = await self.get_challenge(challenge_id)
        if challenge is None:
            raise ChallengeExpiredError()
        if method not in DELIVERED_METHODS or method not in challenge.methods:
            raise InvalidMFAError("MFA method not available for this challenge")
        user = await self._require_user(challenge.user_id)

        now = self._clock()
        code = generate_delivery_code(self.settings.mfa_digits)
        ttl = max(int(challenge.expires_at - now), 1)
        record = ChallengeCode(
            challenge_id=challenge_id,
            user_id=user.id,
            method=method,
            code_hash=hash_code(code),
            created_at=now,
            expires_at=challenge.expires_at,
        )
        await self.state.set_json(Keys.challenge_code(method, challenge_id), record.to_record(), ttl)
        await self.state.delete(Keys.challenge_attempts(method, challenge_id))

        if method == MFAMethod.SMS.value:
            message = f"Your {self.settings.mfa_issuer} verification code is {code}"
            delivery = self.notifier.send_sms(user.phone or "", message)
        else:
            delivery = self.notifier.send_email(
                user.email,
                "mfa_code",
                {"code": code, "expires_minutes": max(ttl // 60, 1)},
            )
        self.dispatcher.submit(
            delivery, event="mfa_code_delivery", method=method, user_id=user.id
        )
        logger.info("mfa_code_sent", user_id=user.id, method=method)
        return {
            "challenge_id": challenge_id,
            "method": method,
            "destination": challenge.destinations.get(method),
            "expires_at": challenge.expires_at,
        }

    async def verify_challenge_code(
        self,
        challenge_id: str,
        method: str,
        code: str,
        *,
        user_id: Optional[str] = None,
    ) -> MFAVerification:
        """Check an SMS/email code; each code succeeds at most once.

        The attempt counter is bumped before comparing, so concurrent guesses
        cannot exceed the limit. Reaching the limit closes the whole
        challenge, so a fresh code cannot be requested for it either.
        """
        code_key = Keys.challenge_code(method, challenge_id)
        attempts_key = Keys.challenge_attempts(method, challenge_id)
        raw = await self.state.get_json(code_key)
        if not raw:
            return MFAVerification(False, method, reason="expired")
        record = ChallengeCode.from_record(raw)
        now = self._clock()
        if now > record.expires_at:
            await self.state.delete(code_key)
            return MFAVerification(False, method, reason="expired")
        if user_id is not None and record.user_id != user_id:
            logger.warning("mfa_challenge_user_mismatch", challenge_id=challenge_id)
            return MFAVerification(False, method, reason="wrong_user")

        max_attempts = self.settings.mfa_max_attempts
        attempts = await self.state.incr(
            attempts_key, max(int(record.expires_at - now), 1)
        )
        if attempts > max_attempts:
            await self.close_challenge(challenge_id)
            return MFAVerification(False, method, reason="attempts_exhausted")

        if hmac.compare_digest(hash_code(code), record.code_hash):
            # Only the caller whose delete removed the record wins
            if await self.state.delete(code_key):
                await self.state.delete(attempts_key)
                logger.info("mfa_code_verified", user_id=record.user_id, method=method)
                return MFAVerification(True, method)
            return MFAVerification(False, method, reason="consumed")

        if attempts >= max_attempts:
            await self.close_challenge(challenge_id)
            logger.warning(
                "mfa_code_invalidated", user_id=record.user_id, method=method, attempts=attempts
            )
        return MFAVerification(False, method, reason="mismatch")

    async def verify(
        self,
        method: str,
        code: str,
        *,
        user_id: str,
        challenge_id: Optional[str] = None,
    ) -> MFAVerification:
        if method == MFAMethod.TOTP.value:
            return await self.verify_totp(user_id, code)
        if method == MFAMethod.BACKUP_CODE.value:
            return await self.verify_backup_code(user_id, code)
        if method in DELIVERED_METHODS:
            if not challenge_id:
                return MFAVerification(False, method, reason="no_challenge")
            return await self.verify_challenge_code(
                challenge_id, method, code, user_id=user_id
            )
        return MFAVerification(False, method, reason="unsupported_method")
