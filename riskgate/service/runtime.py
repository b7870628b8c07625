from __future__ import annotations

import asyncio
import threading
import time
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse, urlunparse

from riskgate.config import Settings, get_settings, reset_settings_cache
from riskgate.logging import get_logger
from riskgate.service.audit import LogAuditSink
from riskgate.service.auth import AuthenticationOrchestrator, EnterpriseSSOVerifier
from riskgate.service.behavior import BehaviorAnalyzer
from riskgate.service.cipher import SecretCipher
from riskgate.service.collaborators import AuditSink, CredentialStore, IdentityProvider, Notifier
from riskgate.service.devices import DeviceRegistry
from riskgate.service.enterprise import Office365IdentityProvider
from riskgate.service.fingerprint import DeviceFingerprinter
from riskgate.service.location import HttpLocationResolver, LocationResolver, StaticLocationResolver
from riskgate.service.mfa import MFAChallengeManager
from riskgate.service.notifier import BackgroundDispatcher, DeliveryNotifier
from riskgate.service.rate_limit import LoginRateLimiter
from riskgate.service.risk import RiskEngine
from riskgate.service.sessions import SessionManager
from riskgate.service.tokens import TokenCodec
from riskgate.storage.common import StateStore
from riskgate.storage.errors import StoreUnavailable
from riskgate.storage.memory import MemoryCredentialStore, MemoryStateStore
from riskgate.storage.redis_cache import RedisStateStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """redis://:secret@host:6379 -> redis://:***@host:6379 for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Composition root: builds every service once and wires them together.

    Collaborators owned outside this package (credential store, audit sink,
    notifier, identity provider, location resolver) can be injected; the
    defaults are the in-memory / logging / SMTP+HTTP implementations.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        state: Optional[StateStore] = None,
        credentials: Optional[CredentialStore] = None,
        audit: Optional[AuditSink] = None,
        notifier: Optional[Notifier] = None,
        identity_provider: Optional[IdentityProvider] = None,
        location_resolver: Optional[LocationResolver] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.state = state or self._build_state_store(clock)
        self.redis_enabled = isinstance(self.state, RedisStateStore)
        self.credentials = credentials or MemoryCredentialStore()
        self.audit = audit or LogAuditSink()
        self.notifier = notifier or DeliveryNotifier.from_settings(self.settings)
        self.dispatcher = BackgroundDispatcher()
        self.identity_provider = identity_provider or Office365IdentityProvider.from_settings(
            self.settings
        )
        if location_resolver is not None:
            self.location_resolver = location_resolver
        elif self.settings.geoip_url_template:
            self.location_resolver = HttpLocationResolver(
                self.settings.geoip_url_template,
                anonymizer_networks=self.settings.anonymizer_networks,
            )
        else:
            self.location_resolver = StaticLocationResolver(
                anonymizer_networks=self.settings.anonymizer_networks
            )

        self.fingerprinter = DeviceFingerprinter()
        self.devices = DeviceRegistry(self.state, clock=clock)
        self.behavior = BehaviorAnalyzer(self.state, self.settings, clock=clock)
        self.risk = RiskEngine(self.devices, self.behavior, self.settings, clock=clock)
        self.mfa = MFAChallengeManager(
            self.credentials,
            self.state,
            self.notifier,
            self.settings,
            cipher=SecretCipher.from_settings(self.settings),
            dispatcher=self.dispatcher,
            clock=clock,
        )
        self.tokens = TokenCodec(self.settings, clock=clock)
        self.sessions = SessionManager(
            self.state, self.credentials, self.tokens, self.settings, clock=clock
        )
        self.rate_limiter = LoginRateLimiter(self.state, self.settings)
        self.auth = AuthenticationOrchestrator(
            credentials=self.credentials,
            state=self.state,
            settings=self.settings,
            rate_limiter=self.rate_limiter,
            fingerprinter=self.fingerprinter,
            location_resolver=self.location_resolver,
            devices=self.devices,
            behavior=self.behavior,
            risk=self.risk,
            mfa=self.mfa,
            sessions=self.sessions,
            audit=self.audit,
            notifier=self.notifier,
            dispatcher=self.dispatcher,
            verifiers=[
                EnterpriseSSOVerifier(self.identity_provider, self.credentials, self.settings)
            ],
            clock=clock,
        )
        logger.info(
            "runtime_initialized",
            redis_enabled=self.redis_enabled,
            risk_enabled=self.settings.risk_enabled,
            sso_configured=self.identity_provider.is_configured,
            auth_methods=self.auth.available_methods(),
        )

    def _build_state_store(self, clock: Callable[[], float]) -> StateStore:
        if self.settings.use_memory_store:
            return MemoryStateStore(clock=clock)

        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                store = RedisStateStore(
                    self.settings.redis_url, key_prefix=self.settings.redis_key_prefix
                )
                store.verify_connection()
                return store
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for sessions, challenges and rate limits; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; sessions, challenges and "
                "rate limits are process-local only."
            ),
            mode=fallback_mode,
        )
        return MemoryStateStore(clock=clock)

    async def health(self) -> Dict[str, Any]:
        try:
            state_ok = await self.state.ping()
        except StoreUnavailable as exc:
            logger.error("health_state_store_unavailable", error=str(exc))
            state_ok = False
        return {
            "status": "ok" if state_ok else "degraded",
            "state_store": state_ok,
            "redis_enabled": self.redis_enabled,
            "email_configured": getattr(getattr(self.notifier, "email", None), "is_configured", False),
            "sms_configured": getattr(getattr(self.notifier, "sms", None), "is_configured", False),
            "sso_configured": self.identity_provider.is_configured,
            "pending_deliveries": self.dispatcher.pending,
        }

    async def close(self) -> None:
        await self.dispatcher.drain()
        await self.state.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the singleton from a fresh environment; TEST_MODE only."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.redis_enabled:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.state.close())
            else:
                loop.create_task(runtime.state.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
