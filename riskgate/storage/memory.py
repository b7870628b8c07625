from __future__ import annotations

import threading
import time
import uuid
from dataclasses import fields, replace
from typing import Any, Callable, Dict, List, Optional

from riskgate.logging import get_logger
from riskgate.storage.common import dumps, loads
from riskgate.storage.errors import ConstraintViolation
from riskgate.storage.models import User

logger = get_logger(__name__)


class MemoryStateStore:
    """Process-local StateStore with lazy TTL expiry.

    Suitable for tests and single-process development. Every operation runs
    under one re-entrant lock, which gives the same per-key atomicity the Redis
    backend gets from Lua scripts.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._values: Dict[str, Any] = {}
        self._expires: Dict[str, float] = {}
        # RLock so helpers can nest inside public operations
        self._data_lock = threading.RLock()

    # -- internals -------------------------------------------------------

    def _live(self, key: str) -> bool:
        expires_at = self._expires.get(key)
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            self._expires.pop(key, None)
            return False
        return key in self._values

    def _get(self, key: str, default: Any = None) -> Any:
        if not self._live(key):
            return default
        return self._values[key]

    def _put(self, key: str, value: Any, ttl_seconds: Optional[int]) -> None:
        self._values[key] = value
        if ttl_seconds:
            self._expires[key] = self._clock() + ttl_seconds
        else:
            self._expires.pop(key, None)

    def _touch(self, key: str, ttl_seconds: Optional[int]) -> None:
        if ttl_seconds:
            self._expires[key] = self._clock() + ttl_seconds

    # -- key/value -------------------------------------------------------

    async def get_json(self, key: str) -> Optional[dict]:
        with self._data_lock:
            return loads(self._get(key))

    async def set_json(
        self, key: str, value: dict, ttl_seconds: Optional[int] = None
    ) -> None:
        with self._data_lock:
            self._put(key, dumps(value), ttl_seconds)

    async def delete(self, key: str) -> bool:
        with self._data_lock:
            existed = self._live(key)
            self._values.pop(key, None)
            self._expires.pop(key, None)
            return existed

    async def compare_and_set_json(
        self,
        key: str,
        field: str,
        expected: Any,
        value: dict,
        ttl_seconds: Optional[int] = None,
    ) -> bool:
        with self._data_lock:
            current = loads(self._get(key))
            if current is None or current.get(field) != expected:
                return False
            self._put(key, dumps(value), ttl_seconds)
            return True

    # -- counters --------------------------------------------------------

    async def incr(self, key: str, ttl_seconds: int) -> int:
        with self._data_lock:
            if not self._live(key):
                self._put(key, 1, ttl_seconds)
                return 1
            self._values[key] += 1
            return self._values[key]

    async def get_int(self, key: str) -> int:
        with self._data_lock:
            return int(self._get(key, 0))

    async def record_event(self, key: str, timestamp: float, window_seconds: int) -> int:
        with self._data_lock:
            events: List[float] = [
                ts for ts in self._get(key, []) if ts > timestamp - window_seconds
            ]
            events.append(timestamp)
            self._put(key, events, window_seconds)
            return len(events)

    # -- lists and indexes -----------------------------------------------

    async def append_capped(
        self, key: str, value: dict, max_len: int, ttl_seconds: Optional[int] = None
    ) -> None:
        with self._data_lock:
            items = list(self._get(key, []))
            items.append(dumps(value))
            self._put(key, items[-max_len:], ttl_seconds)

    async def get_list(self, key: str) -> list[dict]:
        with self._data_lock:
            return [loads(raw) for raw in self._get(key, [])]

    async def push_index(
        self, key: str, member: str, cap: int, ttl_seconds: Optional[int] = None
    ) -> list[str]:
        with self._data_lock:
            index = list(self._get(key, []))
            index.append(member)
            evicted: list[str] = []
            while len(index) > cap:
                evicted.append(index.pop(0))
            self._put(key, index, ttl_seconds)
            return evicted

    async def remove_from_index(self, key: str, member: str) -> None:
        with self._data_lock:
            if not self._live(key):
                return
            self._values[key] = [m for m in self._values[key] if m != member]

    async def get_index(self, key: str) -> list[str]:
        with self._data_lock:
            return list(self._get(key, []))

    async def add_member(self, key: str, member: str) -> None:
        with self._data_lock:
            current = set(self._get(key, set()))
            current.add(member)
            self._values[key] = current

    async def remove_member(self, key: str, member: str) -> bool:
        with self._data_lock:
            current = self._get(key)
            if not current or member not in current:
                return False
            current.discard(member)
            return True

    async def members(self, key: str) -> set[str]:
        with self._data_lock:
            return set(self._get(key, set()))

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._data_lock:
            self._values.clear()
            self._expires.clear()


class MemoryCredentialStore:
    """In-process credential store for development and tests.

    Production deployments plug in their own user database behind the
    CredentialStore protocol; this one keeps users and argon2 hashes in dicts.
    """

    def __init__(self) -> None:
        self.users: Dict[str, User] = {}
        self._email_index: Dict[str, str] = {}
        self._password_hashes: Dict[str, str] = {}
        self._data_lock = threading.RLock()

    def add_user(
        self,
        email: str,
        *,
        password_hash: Optional[str] = None,
        **attrs: Any,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if normalized in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), email=normalized, **attrs)
            self.users[user.id] = user
            self._email_index[normalized] = user.id
            if password_hash:
                self._password_hashes[user.id] = password_hash
            return replace(user)

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise KeyError(user_id)
            self._password_hashes[user_id] = password_hash

    async def create_user(
        self,
        email: str,
        *,
        display_name: Optional[str] = None,
        external_id: Optional[str] = None,
    ) -> User:
        user = self.add_user(
            email,
            display_name=display_name,
            external_id=external_id,
            email_verified=True,
        )
        logger.info("user_provisioned", user_id=user.id, external=bool(external_id))
        return user

    async def find_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._email_index.get(email.strip().lower())
            user = self.users.get(user_id) if user_id else None
            return replace(user) if user else None

    async def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    async def get_active_password_hash(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            return self._password_hashes.get(user_id)

    async def update_user(self, user_id: str, patch: Dict[str, Any]) -> Optional[User]:
        allowed = {f.name for f in fields(User)} - {"id", "created_at"}
        unknown = set(patch) - allowed
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = replace(user, **patch)
            self.users[user_id] = updated
            return replace(updated)

    async def consume_backup_code(self, user_id: str, code_hash: str) -> Optional[int]:
        """Remove one backup code hash; returns codes left, or None when absent."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or code_hash not in user.backup_code_hashes:
                return None
            remaining = [h for h in user.backup_code_hashes if h != code_hash]
            self.users[user_id] = replace(user, backup_code_hashes=remaining)
            return len(remaining)
