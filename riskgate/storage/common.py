"""Shared state store contract and key layout.

Sessions, device registrations, challenges, counters and histories all live in
one TTL-capable keyed store. Every invariant the services rely on is a
single-key operation, so the Redis and in-memory backends only need per-key
atomicity.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Optional, Protocol


class StateStore(Protocol):
    async def get_json(self, key: str) -> Optional[dict]: ...

    async def set_json(
        self, key: str, value: dict, ttl_seconds: Optional[int] = None
    ) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def incr(self, key: str, ttl_seconds: int) -> int: ...

    async def get_int(self, key: str) -> int: ...

    async def record_event(
        self, key: str, timestamp: float, window_seconds: int
    ) -> int: ...

    async def append_capped(
        self, key: str, value: dict, max_len: int, ttl_seconds: Optional[int] = None
    ) -> None: ...

    async def get_list(self, key: str) -> list[dict]: ...

    async def push_index(
        self, key: str, member: str, cap: int, ttl_seconds: Optional[int] = None
    ) -> list[str]: ...

    async def remove_from_index(self, key: str, member: str) -> None: ...

    async def get_index(self, key: str) -> list[str]: ...

    async def add_member(self, key: str, member: str) -> None: ...

    async def remove_member(self, key: str, member: str) -> bool: ...

    async def members(self, key: str) -> set[str]: ...

    async def compare_and_set_json(
        self,
        key: str,
        field: str,
        expected: Any,
        value: dict,
        ttl_seconds: Optional[int] = None,
    ) -> bool: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


def dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def loads(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    return json.loads(raw)


def digest(value: str) -> str:
    """Collision-resistant key component; keeps raw emails and IPs out of key names."""
    return hashlib.sha256(value.encode()).hexdigest()


class Keys:
    """Key builders for every record kept in the state store."""

    @staticmethod
    def session(session_id: str) -> str:
        return f"auth:session:{session_id}"

    @staticmethod
    def user_sessions(user_id: str) -> str:
        return f"auth:user_sessions:{user_id}"

    @staticmethod
    def login_rate(email: str, ip: Optional[str]) -> str:
        subject = "|".join((email.strip().lower(), ip or "-"))
        return f"rate:login:{digest(subject)}"

    @staticmethod
    def failed_logins(user_id: str) -> str:
        return f"auth:failed:{user_id}"

    @staticmethod
    def device(user_id: str, device_id: str) -> str:
        return f"device:{user_id}:{device_id}"

    @staticmethod
    def user_devices(user_id: str) -> str:
        return f"devices:{user_id}"

    @staticmethod
    def challenge(challenge_id: str) -> str:
        return f"mfa:challenge:{challenge_id}"

    @staticmethod
    def challenge_code(method: str, challenge_id: str) -> str:
        return f"mfa:{method}:{challenge_id}"

    @staticmethod
    def challenge_attempts(method: str, challenge_id: str) -> str:
        return f"mfa:{method}:{challenge_id}:attempts"

    @staticmethod
    def login_history(user_id: str) -> str:
        return f"behavior:logins:{user_id}"

    @staticmethod
    def location_history(user_id: str) -> str:
        return f"behavior:locations:{user_id}"

    @staticmethod
    def rapid_attempts(user_id: str, ip: Optional[str]) -> str:
        return f"behavior:rapid:{user_id}:{digest(ip or '-')}"

    @staticmethod
    def recent_attempts(email: str) -> str:
        return f"behavior:attempts:{digest(email.lower())}"
