"""Contracts for the systems the engine talks to but does not own."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from riskgate.storage.models import User


class CredentialStore(Protocol):
    async def find_user_by_email(self, email: str) -> Optional[User]: ...

    async def get_user(self, user_id: str) -> Optional[User]: ...

    async def get_active_password_hash(self, user_id: str) -> Optional[str]: ...

    async def update_user(self, user_id: str, patch: Dict[str, Any]) -> Optional[User]: ...

    async def consume_backup_code(self, user_id: str, code_hash: str) -> Optional[int]:
        """Atomically drop one backup code hash; remaining count, or None if absent."""
        ...

    async def create_user(
        self,
        email: str,
        *,
        display_name: Optional[str] = None,
        external_id: Optional[str] = None,
    ) -> User: ...


class AuditSink(Protocol):
    async def record(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        actor_id: Optional[str],
        metadata: Dict[str, Any],
    ) -> None: ...


class Notifier(Protocol):
    async def send_sms(self, phone: str, message: str) -> bool: ...

    async def send_email(
        self, address: str, template_id: str, data: Dict[str, Any]
    ) -> bool: ...


@dataclass(frozen=True)
class VerifiedIdentity:
    email: str
    display_name: Optional[str]
    external_id: str


class IdentityProvider(Protocol):
    name: str

    @property
    def is_configured(self) -> bool: ...

    async def verify(self, artifact: str) -> Optional[VerifiedIdentity]:
        """Exchange an authorization artifact for a verified identity, or None."""
        ...
