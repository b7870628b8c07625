from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserStatus(str, Enum):
    ACTIVE = "active"
    LOCKED = "locked"
    DISABLED = "disabled"


class MFAMethod(str, Enum):
    """Second-factor methods, in the order verification tries them."""

    TOTP = "totp"
    BACKUP_CODE = "backup_code"
    SMS = "sms"
    EMAIL = "email"


class AuthMethod(str, Enum):
    PASSWORD = "password"
    ENTERPRISE_SSO = "enterprise_sso"
    SAML = "saml"
    OAUTH = "oauth"


@dataclass
class User:
    id: str
    email: str
    display_name: Optional[str] = None
    status: str = UserStatus.ACTIVE.value
    created_at: datetime = field(default_factory=_utcnow)
    mfa_enabled: bool = False
    # Fernet token, never the raw base32 secret
    totp_secret: Optional[str] = None
    backup_code_hashes: List[str] = field(default_factory=list)
    phone: Optional[str] = None
    phone_verified: bool = False
    email_verified: bool = False
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    locked_until: Optional[datetime] = None
    external_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE.value


def public_user(user: User) -> dict[str, Any]:
    """User view safe to hand back to callers (no secret, no code hashes)."""
    return {
        "id": user.id,
        "email": user.email,
        "display_name": user.display_name,
        "status": user.status,
        "mfa_enabled": user.mfa_enabled,
        "email_verified": user.email_verified,
        "phone_verified": user.phone_verified,
        "last_login_at": user.last_login_at.isoformat() if user.last_login_at else None,
    }


class _Record:
    """Mixin for records persisted as JSON in the state store."""

    def to_record(self) -> dict[str, Any]:
        return asdict(self)  # type: ignore[call-overload]

    @classmethod
    def from_record(cls, data: dict[str, Any]):
        known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
        return cls(**{key: value for key, value in data.items() if key in known})


@dataclass
class Session(_Record):
    id: str
    user_id: str
    issued_at: float
    expires_at: float
    refresh_expires_at: float
    last_activity: float
    device_id: Optional[str] = None
    risk_score: float = 0.0
    trust_level: str = "low"
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    refresh_token_hash: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        *,
        now: float,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        device_id: Optional[str] = None,
        risk_score: float = 0.0,
        trust_level: str = "low",
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            issued_at=now,
            expires_at=now + access_ttl_seconds,
            refresh_expires_at=now + refresh_ttl_seconds,
            last_activity=now,
            device_id=device_id,
            risk_score=risk_score,
            trust_level=trust_level,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )

    def context(self) -> dict[str, Any]:
        return {
            "session_id": self.id,
            "user_id": self.user_id,
            "device_id": self.device_id,
            "risk_score": self.risk_score,
            "trust_level": self.trust_level,
            "issued_at": self.issued_at,
            "expires_at": self.expires_at,
            "last_activity": self.last_activity,
        }


@dataclass
class DeviceRegistration(_Record):
    device_id: str
    user_id: str
    display_name: str
    trusted: bool
    risk_score: float
    registered_at: float
    last_used: float
    fingerprint_metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MFAChallenge(_Record):
    id: str
    user_id: str
    methods: List[str]
    created_at: float
    expires_at: float
    # method -> masked destination, e.g. {"sms": "***-***-1234"}
    destinations: Dict[str, str] = field(default_factory=dict)

    def descriptor(self) -> dict[str, Any]:
        return {
            "challenge_id": self.id,
            "available_methods": list(self.methods),
            "destinations": dict(self.destinations),
            "expires_at": self.expires_at,
        }


@dataclass
class ChallengeCode(_Record):
    """Hashed one-time code delivered over SMS or email for one challenge."""

    challenge_id: str
    user_id: str
    method: str
    code_hash: str
    created_at: float
    expires_at: float


@dataclass(frozen=True)
class LoginAttempt(_Record):
    id: str
    email: str
    ip_address: Optional[str]
    user_agent: Optional[str]
    device_fingerprint: Optional[str]
    success: bool
    failure_reason: Optional[str]
    timestamp: float
    user_id: Optional[str] = None
    auth_method: str = AuthMethod.PASSWORD.value
    risk_score: Optional[float] = None
