from __future__ import annotations

import os
import secrets
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from riskgate.logging import get_logger

logger = get_logger(__name__)

MAX_ACCESS_TOKEN_TTL_MINUTES = 15
MAX_REFRESH_TOKEN_TTL_DAYS = 7

DEFAULT_RISK_WEIGHTS: dict[str, float] = {
    "device": 0.30,
    "location": 0.25,
    "behavior": 0.25,
    "time": 0.20,
}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


class Settings(BaseModel):
    """Runtime settings for the authentication engine."""

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_key_prefix: str = env_field("riskgate:", "REDIS_KEY_PREFIX")
    state_dir: str = env_field("/srv/riskgate", "STATE_DIR")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset, in-memory fallbacks).",
    )

    # Tokens and sessions
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("riskgate", "JWT_ISSUER")
    jwt_audience: str = env_field("riskgate-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    max_concurrent_sessions: int = env_field(5, "MAX_CONCURRENT_SESSIONS", ge=1)
    clock_skew_seconds: int = env_field(30, "CLOCK_SKEW_SECONDS", ge=0)

    # Login throttling and lockout
    rate_limit_attempts: int = env_field(10, "RATE_LIMIT_ATTEMPTS", ge=1)
    rate_limit_window_seconds: int = env_field(15 * 60, "RATE_LIMIT_WINDOW_SECONDS", ge=1)
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES", ge=1)

    # Second factor
    mfa_issuer: str = env_field("RiskGate", "MFA_ISSUER")
    mfa_window: int = env_field(1, "MFA_WINDOW", ge=0)
    mfa_step_seconds: int = env_field(30, "MFA_STEP_SECONDS", ge=1)
    mfa_digits: int = env_field(6, "MFA_DIGITS", ge=6, le=8)
    mfa_encryption_key: str | None = env_field(None, "MFA_SECRET_KEY")
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT", ge=1)
    backup_code_length: int = env_field(8, "BACKUP_CODE_LENGTH", ge=6)
    backup_code_low_watermark: int = env_field(2, "BACKUP_CODE_LOW_WATERMARK", ge=0)
    mfa_challenge_ttl_seconds: int = env_field(300, "MFA_CHALLENGE_TTL_SECONDS", ge=30)
    mfa_max_attempts: int = env_field(3, "MFA_MAX_ATTEMPTS", ge=1)

    # Risk engine
    risk_enabled: bool = env_field(True, "RISK_ENABLED")
    high_risk_threshold: float = env_field(0.8, "HIGH_RISK_THRESHOLD")
    medium_risk_threshold: float = env_field(0.5, "MEDIUM_RISK_THRESHOLD")
    risk_weights: dict[str, float] = env_field(
        dict(DEFAULT_RISK_WEIGHTS), "RISK_WEIGHTS"
    )
    blocked_countries: list[str] = env_field([], "BLOCKED_COUNTRIES")
    allowed_countries: list[str] = env_field([], "ALLOWED_COUNTRIES")
    deny_factors: list[str] = env_field(
        ["blocked_country"],
        "RISK_DENY_FACTORS",
        description="Factors that veto access outright when they fire",
    )
    rapid_attempt_limit: int = env_field(5, "RAPID_ATTEMPT_LIMIT", ge=1)
    rapid_attempt_window_seconds: int = env_field(300, "RAPID_ATTEMPT_WINDOW_SECONDS", ge=1)
    geoip_url_template: str | None = env_field(
        None,
        "GEOIP_URL_TEMPLATE",
        description="HTTP geolocation endpoint, e.g. https://geo.example/{ip}",
    )
    anonymizer_networks: list[str] = env_field([], "ANONYMIZER_NETWORKS")

    # Enterprise SSO (Office 365 style)
    sso_tenant_id: str = env_field("common", "SSO_TENANT_ID")
    sso_client_id: str | None = env_field(None, "SSO_CLIENT_ID")
    sso_client_secret: str | None = env_field(None, "SSO_CLIENT_SECRET")
    sso_redirect_uri: str | None = env_field(None, "SSO_REDIRECT_URI")
    sso_auto_provision: bool = env_field(True, "SSO_AUTO_PROVISION")

    # Notifier
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("RiskGate", "EMAIL_FROM_NAME")
    sms_gateway_url: str | None = env_field(None, "SMS_GATEWAY_URL")
    sms_gateway_token: str | None = env_field(None, "SMS_GATEWAY_TOKEN")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_days * 24 * 60 * 60

    @field_validator("access_token_ttl_minutes")
    @classmethod
    def _cap_access_ttl(cls, value: int) -> int:
        if not 1 <= value <= MAX_ACCESS_TOKEN_TTL_MINUTES:
            raise ValueError(
                f"access tokens must live between 1 and {MAX_ACCESS_TOKEN_TTL_MINUTES} minutes"
            )
        return value

    @field_validator("refresh_token_ttl_days")
    @classmethod
    def _cap_refresh_ttl(cls, value: int) -> int:
        if not 1 <= value <= MAX_REFRESH_TOKEN_TTL_DAYS:
            raise ValueError(
                f"refresh tokens must live between 1 and {MAX_REFRESH_TOKEN_TTL_DAYS} days"
            )
        return value

    @field_validator(
        "blocked_countries", "allowed_countries", "anonymizer_networks", "deny_factors",
        mode="before",
    )
    @classmethod
    def _parse_list(cls, value: Any) -> Any:
        return _split_csv(value)

    @field_validator("blocked_countries", "allowed_countries")
    @classmethod
    def _normalize_countries(cls, value: list[str]) -> list[str]:
        return [code.upper() for code in value]

    @field_validator("risk_weights", mode="before")
    @classmethod
    def _parse_weights(cls, value: Any) -> Any:
        # RISK_WEIGHTS=device:0.3,location:0.25,...
        if isinstance(value, str):
            parsed: dict[str, float] = {}
            for part in _split_csv(value):
                name, _, raw = part.partition(":")
                parsed[name.strip()] = float(raw)
            value = parsed
        return value

    @field_validator("risk_weights")
    @classmethod
    def _validate_weights(cls, value: dict[str, float]) -> dict[str, float]:
        unknown = set(value) - set(DEFAULT_RISK_WEIGHTS)
        if unknown:
            raise ValueError(f"unknown risk weights: {sorted(unknown)}")
        if any(weight < 0 for weight in value.values()):
            raise ValueError("risk weights must be non-negative")
        return {**DEFAULT_RISK_WEIGHTS, **value}

    @model_validator(mode="after")
    def _validate_thresholds(self) -> "Settings":
        if not 0 < self.medium_risk_threshold < self.high_risk_threshold <= 1:
            raise ValueError(
                "risk thresholds must satisfy 0 < medium < high <= 1"
            )
        return self

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens remain valid across restarts
        state_dir = Path(os.getenv("STATE_DIR", "/srv/riskgate"))
        secret_path = state_dir / ".jwt_secret"
        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(state_dir))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))
            else:
                if len(persisted) >= 32:
                    return persisted

        generated = secrets.token_urlsafe(64)
        try:
            secret_path.write_text(generated)
            os.chmod(secret_path, 0o600)
        except OSError as exc:
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make STATE_DIR writable"
            ) from exc
        logger.warning("jwt_secret_generated", path=str(secret_path))
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
