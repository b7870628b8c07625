"""Authentication orchestration.

One ``authenticate`` call walks the attempt through rate limiting, primary
credential verification, risk assessment, an optional second factor and
session issuance. Every exit, successful or not, leaves exactly one
``LoginAttempt`` behind for the behavior history and the audit sink, and the
caller only ever sees a generic message plus a stable ``error_code``.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from riskgate.config import Settings
from riskgate.logging import bind_request_context, clear_request_context, get_logger, set_correlation_id
from riskgate.service.audit import safe_record
from riskgate.service.behavior import BehaviorAnalyzer
from riskgate.service.collaborators import AuditSink, CredentialStore, IdentityProvider, Notifier
from riskgate.service.devices import DeviceRegistry
from riskgate.service.errors import (
    AccessDeniedError,
    AccountLockedError,
    InternalError,
    InvalidCredentialsError,
    InvalidMFAError,
    InvalidSessionError,
    MFARequired,
    NotFoundError,
    ServiceError,
)
from riskgate.service.fingerprint import DeviceFingerprinter, DeviceInfo
from riskgate.service.location import LocationInfo, LocationResolver
from riskgate.service.mfa import DELIVERED_METHODS, MFAChallengeManager, MFASetup, MFAVerification
from riskgate.service.notifier import BackgroundDispatcher
from riskgate.service.rate_limit import LoginRateLimiter
from riskgate.service.risk import RiskAssessment, RiskEngine, RiskLevel
from riskgate.service.sessions import IssuedTokens, SessionManager, SessionValidation
from riskgate.storage.common import Keys, StateStore, digest
from riskgate.storage.errors import StoreUnavailable
from riskgate.storage.models import AuthMethod, LoginAttempt, MFAMethod, User, UserStatus, public_user

logger = get_logger(__name__)

_password_hasher = PasswordHasher(type=Type.ID)
# Verified against for unknown users so both paths cost one argon2 verify
_DUMMY_HASH = _password_hasher.hash(uuid.uuid4().hex)

REMEMBERABLE_LEVELS = (RiskLevel.LOW, RiskLevel.MEDIUM)
MFA_ORDER = (MFAMethod.TOTP.value, MFAMethod.BACKUP_CODE.value, *DELIVERED_METHODS)


def hash_password(password: str) -> str:
    """argon2id hash for provisioning a credential store."""
    return _password_hasher.hash(password)


def _is_failed_attempt(attempt: Dict[str, Any]) -> bool:
    # An MFA continuation is recorded unsuccessful but is not a failure
    return not attempt.get("success") and attempt.get("failure_reason") != "mfa_required"


def _check_password(stored_hash: str, password: str) -> bool:
    try:
        return _password_hasher.verify(stored_hash, password)
    except (InvalidHash, VerifyMismatchError, VerificationError):
        return False


@dataclass
class AuthenticationRequest:
    email: Optional[str] = None
    password: Optional[str] = None
    method: str = AuthMethod.PASSWORD.value
    # Authorization code / assertion for the enterprise, SAML and OAuth paths
    artifact: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    # screen, timezone, language, platform
    device_signals: Optional[Dict[str, Any]] = None
    mfa_code: Optional[str] = None
    mfa_method: Optional[str] = None
    challenge_id: Optional[str] = None
    remember_device: bool = False

    @property
    def has_signals(self) -> bool:
        return bool(self.user_agent or self.device_signals or self.ip_address)


@dataclass
class AuthenticationResult:
    success: bool
    user: Optional[Dict[str, Any]] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None
    session_id: Optional[str] = None
    requires_mfa: bool = False
    mfa_challenge: Optional[Dict[str, Any]] = None
    risk_assessment: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def issued(
        cls, user: User, tokens: IssuedTokens, risk: Optional[RiskAssessment] = None
    ) -> "AuthenticationResult":
        return cls(
            success=True,
            user=public_user(user),
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=tokens.expires_at,
            session_id=tokens.session_id,
            risk_assessment=risk.public_view() if risk else None,
        )

    @classmethod
    def failed(
        cls, error: ServiceError, risk: Optional[RiskAssessment] = None
    ) -> "AuthenticationResult":
        result = cls(
            success=False,
            error=error.message,
            error_code=error.error_code,
            risk_assessment=risk.public_view() if risk else None,
        )
        if isinstance(error, MFARequired):
            result.requires_mfa = True
            result.mfa_challenge = error.challenge
            result.risk_assessment = error.risk
        return result

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in self.__dict__.items() if value is not None}


# -- credential verifiers --------------------------------------------------


class CredentialVerifier(Protocol):
    method: str

    @property
    def available(self) -> bool: ...

    async def verify(self, request: AuthenticationRequest) -> User: ...


class PasswordVerifier:
    """Email + password against argon2id hashes, with account lockout.

    Failures raise ``InvalidCredentialsError`` whatever the cause; the cause
    travels in ``detail`` for the audit trail only.
    """

    method = AuthMethod.PASSWORD.value
    available = True

    def __init__(
        self,
        credentials: CredentialStore,
        state: StateStore,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.credentials = credentials
        self.state = state
        self.settings = settings
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), timezone.utc)

    @property
    def lockout_seconds(self) -> int:
        return self.settings.lockout_duration_minutes * 60

    async def _lift_expired_lock(self, user: User) -> User:
        if user.status != UserStatus.LOCKED.value:
            return user
        if user.locked_until is None or user.locked_until > self._now():
            raise AccountLockedError(
                detail={
                    "cause": "account_locked",
                    "user_id": user.id,
                    "locked_until": user.locked_until.isoformat() if user.locked_until else None,
                }
            )
        updated = await self.credentials.update_user(
            user.id, {"status": UserStatus.ACTIVE.value, "locked_until": None}
        )
        await self.state.delete(Keys.failed_logins(user.id))
        logger.info("account_lock_expired", user_id=user.id)
        return updated or user

    async def _record_failure(self, user: User) -> bool:
        """Count a failure; lock the account once the threshold is reached."""
        failures = await self.state.incr(Keys.failed_logins(user.id), self.lockout_seconds)
        if failures < self.settings.max_login_attempts:
            logger.info("password_mismatch", user_id=user.id, failures=failures)
            return False
        locked_until = datetime.fromtimestamp(
            self._clock() + self.lockout_seconds, timezone.utc
        )
        await self.credentials.update_user(
            user.id, {"status": UserStatus.LOCKED.value, "locked_until": locked_until}
        )
        await self.state.delete(Keys.failed_logins(user.id))
        logger.warning(
            "account_locked",
            user_id=user.id,
            failures=failures,
            locked_until=locked_until.isoformat(),
        )
        return True

    async def verify(self, request: AuthenticationRequest) -> User:
        if not request.email or not request.password:
            raise InvalidCredentialsError(detail={"cause": "missing_credentials"})
        user = await self.credentials.find_user_by_email(request.email)
        if user is None:
            await asyncio.to_thread(_check_password, _DUMMY_HASH, request.password)
            raise InvalidCredentialsError(detail={"cause": "unknown_user"})

        user = await self._lift_expired_lock(user)
        if not user.is_active:
            await asyncio.to_thread(_check_password, _DUMMY_HASH, request.password)
            raise InvalidCredentialsError(detail={"cause": f"account_{user.status}", "user_id": user.id})

        stored_hash = await self.credentials.get_active_password_hash(user.id)
        ok = bool(stored_hash) and await asyncio.to_thread(
            _check_password, stored_hash, request.password
        )
        if not ok:
            locked = await self._record_failure(user)
            raise InvalidCredentialsError(
                detail={
                    "cause": "bad_password" if stored_hash else "no_password",
                    "user_id": user.id,
                    "locked": locked,
                }
            )
        return user


class EnterpriseSSOVerifier:
    """Treats a verified enterprise identity exactly like a passed password check."""

    method = AuthMethod.ENTERPRISE_SSO.value

    def __init__(
        self,
        provider: IdentityProvider,
        credentials: CredentialStore,
        settings: Settings,
    ) -> None:
        self.provider = provider
        self.credentials = credentials
        self.settings = settings

    @property
    def available(self) -> bool:
        return self.provider.is_configured

    async def verify(self, request: AuthenticationRequest) -> User:
        if not self.available:
            raise InvalidCredentialsError(detail={"cause": "sso_not_configured"})
        if not request.artifact:
            raise InvalidCredentialsError(detail={"cause": "missing_artifact"})
        identity = await self.provider.verify(request.artifact)
        if identity is None:
            raise InvalidCredentialsError(detail={"cause": "sso_verification_failed"})
        if request.email and request.email.strip().lower() != identity.email:
            raise InvalidCredentialsError(detail={"cause": "sso_email_mismatch"})
        request.email = identity.email

        user = await self.credentials.find_user_by_email(identity.email)
        if user is None:
            if not self.settings.sso_auto_provision:
                raise InvalidCredentialsError(detail={"cause": "unknown_user"})
            user = await self.credentials.create_user(
                identity.email,
                display_name=identity.display_name,
                external_id=identity.external_id,
            )
        if user.status == UserStatus.LOCKED.value:
            raise AccountLockedError(detail={"cause": "account_locked", "user_id": user.id})
        if not user.is_active:
            raise InvalidCredentialsError(detail={"cause": f"account_{user.status}", "user_id": user.id})
        return user


class UnsupportedVerifier:
    """Placeholder for credential methods without a verifier (SAML, OAuth)."""

    available = False

    def __init__(self, method: str) -> None:
        self.method = method

    async def verify(self, request: AuthenticationRequest) -> User:
        raise InvalidCredentialsError(detail={"cause": f"{self.method}_unsupported"})


# -- orchestrator ----------------------------------------------------------


@dataclass
class _AttemptContext:
    """What one authenticate call has learned so far."""

    started: float
    user: Optional[User] = None
    device: Optional[DeviceInfo] = None
    location: Optional[LocationInfo] = None
    assessment: Optional[RiskAssessment] = None
    mfa_method: Optional[str] = None


class AuthenticationOrchestrator:
    def __init__(
        self,
        *,
        credentials: CredentialStore,
        state: StateStore,
        settings: Settings,
        rate_limiter: LoginRateLimiter,
        fingerprinter: DeviceFingerprinter,
        location_resolver: LocationResolver,
        devices: DeviceRegistry,
        behavior: BehaviorAnalyzer,
        risk: RiskEngine,
        mfa: MFAChallengeManager,
        sessions: SessionManager,
        audit: AuditSink,
        notifier: Notifier,
        dispatcher: BackgroundDispatcher,
        verifiers: Optional[List[CredentialVerifier]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.credentials = credentials
        self.state = state
        self.settings = settings
        self.rate_limiter = rate_limiter
        self.fingerprinter = fingerprinter
        self.location_resolver = location_resolver
        self.devices = devices
        self.behavior = behavior
        self.risk = risk
        self.mfa = mfa
        self.sessions = sessions
        self.audit = audit
        self.notifier = notifier
        self.dispatcher = dispatcher
        self._clock = clock
        self.verifiers: Dict[str, CredentialVerifier] = {
            AuthMethod.PASSWORD.value: PasswordVerifier(credentials, state, settings, clock=clock),
            AuthMethod.SAML.value: UnsupportedVerifier(AuthMethod.SAML.value),
            AuthMethod.OAUTH.value: UnsupportedVerifier(AuthMethod.OAUTH.value),
        }
        for verifier in verifiers or []:
            self.verifiers[verifier.method] = verifier

    def available_methods(self) -> Dict[str, bool]:
        methods = {method.value: False for method in AuthMethod}
        methods.update({name: verifier.available for name, verifier in self.verifiers.items()})
        return methods

    def _audit(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        actor_id: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.dispatcher.submit(
            safe_record(self.audit, entity_type, entity_id, action, actor_id, metadata),
            event="audit_dispatch",
            action=action,
        )

    # -- authenticate ----------------------------------------------------

    async def authenticate(self, request: AuthenticationRequest) -> AuthenticationResult:
        attempt = _AttemptContext(started=self._clock())
        set_correlation_id()
        bind_request_context(
            auth_method=request.method,
            email_hash=digest(request.email.strip().lower())[:12] if request.email else None,
        )
        try:
            try:
                tokens = await self._run(request, attempt)
            except StoreUnavailable as exc:
                logger.error("authentication_store_unavailable", error=str(exc))
                raise InternalError(detail={"cause": "store_unavailable"}) from exc
        except ServiceError as exc:
            await self._finish(request, attempt, exc)
            clear_request_context()
            return AuthenticationResult.failed(exc, attempt.assessment)

        await self._finish(request, attempt, None)
        clear_request_context()
        return AuthenticationResult.issued(attempt.user, tokens, attempt.assessment)

    async def _run(self, request: AuthenticationRequest, attempt: _AttemptContext) -> IssuedTokens:
        # RateLimitCheck precedes any credential lookup
        await self.rate_limiter.hit(request.email or "", request.ip_address)

        verifier = self.verifiers.get(request.method) or UnsupportedVerifier(request.method)
        user = attempt.user = await verifier.verify(request)
        bind_request_context(user_id=user.id)

        if self.settings.risk_enabled and request.has_signals:
            attempt.device, attempt.location = await self._signals(request)
            assessment = attempt.assessment = await self.risk.assess(
                user.id, attempt.device, attempt.location, attempt.started
            )
            if not assessment.allow_access:
                raise AccessDeniedError(
                    detail={
                        "cause": "risk_veto",
                        "user_id": user.id,
                        "risk_score": round(assessment.score, 4),
                        "factors": assessment.factor_names,
                    }
                )

        assessment = attempt.assessment
        needs_mfa = user.mfa_enabled or bool(assessment and assessment.requires_additional_auth)
        if needs_mfa:
            if not request.mfa_code:
                challenge = await self.mfa.create_challenge(user.id)
                logger.info(
                    "mfa_required",
                    user_id=user.id,
                    mfa_enabled=user.mfa_enabled,
                    risk_level=assessment.level.value if assessment else None,
                )
                raise MFARequired(
                    challenge.descriptor(),
                    risk=assessment.public_view() if assessment else None,
                    detail={"cause": "mfa_required", "challenge_id": challenge.id},
                )
            attempt.mfa_method = await self._verify_second_factor(user, request)

        return await self._issue(request, attempt)

    async def _signals(
        self, request: AuthenticationRequest
    ) -> tuple[Optional[DeviceInfo], Optional[LocationInfo]]:
        device = None
        if request.user_agent or request.device_signals:
            device = self.fingerprinter.identify(request.user_agent, request.device_signals)
        location = None
        if request.ip_address:
            location = await self.location_resolver.resolve(request.ip_address)
        return device, location

    async def _verify_second_factor(self, user: User, request: AuthenticationRequest) -> str:
        """Try TOTP, backup code, then SMS and email for the given challenge."""
        code = request.mfa_code or ""
        if request.mfa_method:
            methods = [request.mfa_method]
        else:
            methods = [
                m for m in MFA_ORDER if m not in DELIVERED_METHODS or request.challenge_id
            ]
        tried: List[str] = []
        for method in methods:
            result: MFAVerification = await self.mfa.verify(
                method, code, user_id=user.id, challenge_id=request.challenge_id
            )
            tried.append(f"{method}:{result.reason or 'ok'}")
            if result.success:
                if request.challenge_id:
                    await self._close_own_challenge(request.challenge_id, user.id)
                return method
        raise InvalidMFAError(detail={"cause": "mfa_rejected", "tried": tried, "user_id": user.id})

    async def _close_own_challenge(self, challenge_id: str, user_id: str) -> None:
        challenge = await self.mfa.get_challenge(challenge_id)
        if challenge is None:
            return
        if challenge.user_id != user_id:
            logger.warning("mfa_challenge_user_mismatch", challenge_id=challenge_id, user_id=user_id)
            return
        await self.mfa.close_challenge(challenge_id)

    async def _issue(self, request: AuthenticationRequest, attempt: _AttemptContext) -> IssuedTokens:
        user, device, assessment = attempt.user, attempt.device, attempt.assessment
        level = assessment.level if assessment else RiskLevel.LOW
        tokens = await self.sessions.issue(
            user,
            device_id=device.device_id if device else None,
            risk_score=assessment.score if assessment else 0.0,
            trust_level=level.value,
            ip_addr=request.ip_address,
            user_agent=request.user_agent,
        )
        try:
            await self._record_login(request, attempt, level)
        except StoreUnavailable:
            # The tokens never reach the caller, so neither may the session
            await self._discard_session(tokens.session_id, user.id)
            raise

        if device is not None and assessment and "unregistered_device" in assessment.factor_names:
            self.dispatcher.submit(
                self.notifier.send_email(
                    user.email, "new_device_login", {"device": device.display_name}
                ),
                event="new_device_notice",
                user_id=user.id,
            )
        return tokens

    async def _record_login(
        self, request: AuthenticationRequest, attempt: _AttemptContext, level: RiskLevel
    ) -> None:
        user, device, location = attempt.user, attempt.device, attempt.location
        if device is not None:
            if request.remember_device and level in REMEMBERABLE_LEVELS:
                await self.devices.register(user.id, device, trusted=level == RiskLevel.LOW)
            else:
                await self.devices.touch(user.id, device.device_id)

        await self.credentials.update_user(
            user.id,
            {
                "last_login_at": datetime.fromtimestamp(attempt.started, timezone.utc),
                "last_login_ip": request.ip_address,
            },
        )
        await self.behavior.record_login(
            user.id,
            attempt.started,
            tz_name=(device.timezone if device else None) or (location.timezone if location else None),
            location=location,
        )

    async def _discard_session(self, session_id: str, user_id: str) -> None:
        try:
            await self.sessions.logout(session_id, user_id)
        except StoreUnavailable as exc:
            logger.error(
                "session_discard_failed", session_id=session_id, user_id=user_id, error=str(exc)
            )

    async def _finish(
        self,
        request: AuthenticationRequest,
        context: _AttemptContext,
        error: Optional[ServiceError],
    ) -> None:
        """Write the single LoginAttempt for this call; never raises."""
        failure_reason = None
        user_id = context.user.id if context.user else None
        if error is not None:
            failure_reason = error.detail.get("cause") or error.error_code
            user_id = user_id or error.detail.get("user_id")
        attempt = LoginAttempt(
            id=str(uuid.uuid4()),
            email=(request.email or (context.user.email if context.user else "")).strip().lower(),
            ip_address=request.ip_address,
            user_agent=request.user_agent,
            device_fingerprint=context.device.fingerprint if context.device else None,
            success=error is None,
            failure_reason=failure_reason,
            timestamp=context.started,
            user_id=user_id,
            auth_method=request.method,
            risk_score=round(context.assessment.score, 4) if context.assessment else None,
        )
        try:
            await self.behavior.record_attempt(attempt)
        except StoreUnavailable as exc:
            logger.error("login_attempt_record_failed", error=str(exc))

        metadata: Dict[str, Any] = {
            "success": attempt.success,
            "failure_reason": failure_reason,
            "error_code": error.error_code if error else None,
            "ip_address": request.ip_address,
            "auth_method": request.method,
            "device_fingerprint": attempt.device_fingerprint,
            "mfa_method": context.mfa_method,
        }
        if error is not None:
            metadata["detail"] = error.detail
        if context.assessment is not None:
            metadata["risk"] = context.assessment.to_dict()
        self._audit("login_attempt", attempt.id, "login", user_id, metadata)

        if error is not None and error.detail.get("locked") and attempt.email:
            self.dispatcher.submit(
                self.notifier.send_email(
                    attempt.email,
                    "account_locked",
                    {"minutes": self.settings.lockout_duration_minutes},
                ),
                event="account_locked_notice",
                user_id=user_id,
            )

        log = logger.info if error is None or isinstance(error, MFARequired) else logger.warning
        log(
            "authentication_completed",
            success=attempt.success,
            failure_reason=failure_reason,
            user_id=user_id,
            duration_ms=round((self._clock() - context.started) * 1000, 2),
        )

    # -- sessions ------------------------------------------------------------

    async def refresh_token(self, refresh_token: str) -> AuthenticationResult:
        try:
            tokens, user = await self.sessions.refresh(refresh_token)
        except StoreUnavailable as exc:
            logger.error("refresh_store_unavailable", error=str(exc))
            return AuthenticationResult.failed(InternalError())
        except InvalidSessionError as exc:
            return AuthenticationResult.failed(exc)
        self._audit("session", tokens.session_id, "refresh", user.id)
        return AuthenticationResult.issued(user, tokens)

    async def logout(self, session_id: str, user_id: Optional[str] = None) -> None:
        removed = await self.sessions.logout(session_id, user_id)
        if removed:
            self._audit("session", session_id, "logout", user_id)

    async def validate_session(self, session_id: str) -> SessionValidation:
        return await self.sessions.validate(session_id)

    async def authenticate_access_token(self, token: str) -> SessionValidation:
        return await self.sessions.authenticate_access_token(token)

    async def list_sessions(self, user_id: str) -> List[Dict[str, Any]]:
        return [session.context() for session in await self.sessions.list_sessions(user_id)]

    async def revoke_all_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        count = await self.sessions.revoke_all(user_id, except_session_id=except_session_id)
        self._audit("user", user_id, "revoke_all_sessions", user_id, {"count": count})
        return count

    # -- MFA -----------------------------------------------------------------

    async def setup_mfa(self, user_id: str) -> MFASetup:
        setup = await self.mfa.setup_totp(user_id)
        self._audit("user", user_id, "mfa_enabled", user_id, {"method": MFAMethod.TOTP.value})
        return setup

    async def verify_mfa(
        self,
        user_id: str,
        code: str,
        method: str,
        *,
        challenge_id: Optional[str] = None,
    ) -> MFAVerification:
        result = await self.mfa.verify(method, code, user_id=user_id, challenge_id=challenge_id)
        self._audit(
            "user",
            user_id,
            "mfa_verify",
            user_id,
            {"method": method, "success": result.success, "reason": result.reason},
        )
        return result

    async def send_challenge_code(self, challenge_id: str, method: str) -> Dict[str, Any]:
        return await self.mfa.send_challenge_code(challenge_id, method)

    async def disable_mfa(self, user_id: str, code: str) -> None:
        """Turn MFA off after proving possession of a TOTP or backup code."""
        for method in (MFAMethod.TOTP.value, MFAMethod.BACKUP_CODE.value):
            if (await self.mfa.verify(method, code, user_id=user_id)).success:
                break
        else:
            raise InvalidMFAError(detail={"cause": "mfa_disable_rejected"})
        await self.mfa.disable_mfa(user_id)
        self._audit("user", user_id, "mfa_disabled", user_id)

    async def regenerate_backup_codes(self, user_id: str) -> List[str]:
        codes = await self.mfa.regenerate_backup_codes(user_id)
        self._audit("user", user_id, "backup_codes_regenerated", user_id, {"count": len(codes)})
        return codes

    async def get_mfa_status(self, user_id: str) -> Dict[str, Any]:
        return await self.mfa.get_mfa_status(user_id)

    # -- devices and account -------------------------------------------------

    async def list_devices(self, user_id: str) -> List[Dict[str, Any]]:
        return [device.to_record() for device in await self.devices.list_devices(user_id)]

    async def remove_device(self, user_id: str, device_id: str) -> bool:
        removed = await self.devices.remove(user_id, device_id)
        if removed:
            self._audit("device", device_id, "device_removed", user_id)
        return removed

    async def set_device_trust(self, user_id: str, device_id: str, trusted: bool) -> Dict[str, Any]:
        registration = await self.devices.set_trust(user_id, device_id, trusted)
        if registration is None:
            raise NotFoundError("Device not found")
        self._audit("device", device_id, "device_trust_changed", user_id, {"trusted": trusted})
        return registration.to_record()

    async def unlock_account(self, user_id: str, *, actor_id: Optional[str] = None) -> Dict[str, Any]:
        user = await self.credentials.update_user(
            user_id, {"status": UserStatus.ACTIVE.value, "locked_until": None}
        )
        if user is None:
            raise NotFoundError("User not found")
        await self.state.delete(Keys.failed_logins(user_id))
        logger.info("account_unlocked", user_id=user_id, actor_id=actor_id)
        self._audit("user", user_id, "account_unlocked", actor_id)
        return public_user(user)

    async def get_security_dashboard(self, user_id: str) -> Dict[str, Any]:
        """MFA state, devices, sessions, recent attempts and a 0-100 score."""
        user = await self.credentials.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        mfa_status = await self.mfa.get_mfa_status(user_id)
        devices = await self.devices.list_devices(user_id)
        sessions = await self.sessions.list_sessions(user_id)
        attempts = await self.behavior.recent_attempts(user.email)

        score = 30
        if user.mfa_enabled:
            score += 30
        if any(device.trusted for device in devices):
            score += 20
        if not any(_is_failed_attempt(attempt) for attempt in attempts):
            score += 20
        return {
            "user": public_user(user),
            "mfa": mfa_status,
            "devices": [device.to_record() for device in devices],
            "active_sessions": len(sessions),
            "recent_attempts": attempts,
            "security_score": min(score, 100),
        }
