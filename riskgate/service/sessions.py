from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from riskgate.config import Settings
from riskgate.logging import get_logger
from riskgate.service.collaborators import CredentialStore
from riskgate.service.errors import InvalidSessionError
from riskgate.service.tokens import ACCESS, REFRESH, TokenCodec, hash_token
from riskgate.storage.common import Keys, StateStore
from riskgate.storage.errors import StoreUnavailable
from riskgate.storage.models import Session, User, public_user

logger = get_logger(__name__)


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: str
    session_id: str
    expires_at: float
    refresh_expires_at: float
    expires_in: int
    token_type: str = "Bearer"

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "session_id": self.session_id,
            "expires_at": self.expires_at,
            "expires_in": self.expires_in,
            "token_type": self.token_type,
        }


@dataclass
class SessionValidation:
    valid: bool
    # Caller-safe view from public_user(), never the stored record
    user: Optional[dict[str, Any]] = None
    context: Optional[dict[str, Any]] = None


INVALID = SessionValidation(valid=False)


class SessionManager:
    """Signed token pairs bound to server-side session records.

    Each session lives under one key with a TTL equal to its refresh
    lifetime. The per-user index is an ordered list capped at
    ``max_concurrent_sessions``; pushing past the cap evicts the oldest
    session ids, whose records are deleted before the new record is written.
    """

    def __init__(
        self,
        state: StateStore,
        credentials: CredentialStore,
        codec: TokenCodec,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.state = state
        self.credentials = credentials
        self.codec = codec
        self.settings = settings
        self._clock = clock

    def _record_ttl(self, session: Session, now: float) -> int:
        return max(int(session.refresh_expires_at - now), 1)

    async def _prune_index(self, user_id: str) -> None:
        index_key = Keys.user_sessions(user_id)
        for session_id in await self.state.get_index(index_key):
            if await self.state.get_json(Keys.session(session_id)) is None:
                await self.state.remove_from_index(index_key, session_id)

    async def issue(
        self,
        user: User,
        *,
        device_id: Optional[str] = None,
        risk_score: float = 0.0,
        trust_level: str = "low",
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedTokens:
        now = self._clock()
        session = Session.new(
            user.id,
            now=now,
            access_ttl_seconds=self.settings.access_token_ttl_seconds,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
            device_id=device_id,
            risk_score=risk_score,
            trust_level=trust_level,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        access, refresh = self.codec.issue_pair(
            user_id=user.id,
            session_id=session.id,
            device_id=device_id,
            issued_at=now,
            access_expires_at=session.expires_at,
            refresh_expires_at=session.refresh_expires_at,
        )
        session.refresh_token_hash = hash_token(refresh)
        ttl = self._record_ttl(session, now)

        # Sessions that expired on their own should not count against the cap
        await self._prune_index(user.id)
        evicted = await self.state.push_index(
            Keys.user_sessions(user.id),
            session.id,
            self.settings.max_concurrent_sessions,
            ttl,
        )
        for old_id in evicted:
            await self.state.delete(Keys.session(old_id))
            logger.info("session_evicted", user_id=user.id, session_id=old_id)
        await self.state.set_json(Keys.session(session.id), session.to_record(), ttl)

        logger.info(
            "session_issued",
            user_id=user.id,
            session_id=session.id,
            device_id=device_id,
            trust_level=trust_level,
        )
        return IssuedTokens(
            access_token=access,
            refresh_token=refresh,
            session_id=session.id,
            expires_at=session.expires_at,
            refresh_expires_at=session.refresh_expires_at,
            expires_in=self.settings.access_token_ttl_seconds,
        )

    async def get(self, session_id: str) -> Optional[Session]:
        raw = await self.state.get_json(Keys.session(session_id))
        return Session.from_record(raw) if raw else None

    async def refresh(self, refresh_token: str) -> tuple[IssuedTokens, User]:
        """Rotate the token pair for the session the refresh token belongs to.

        The swap is a compare-and-set on the stored refresh-token digest, so
        of two concurrent refreshes with the same token exactly one wins and
        a token that was already rotated away is always rejected.
        """
        payload = self.codec.decode(refresh_token, expected_type=REFRESH)
        if not payload:
            raise InvalidSessionError()
        session = await self.get(str(payload.get("sid")))
        presented = hash_token(refresh_token)
        now = self._clock()
        if session is None or session.user_id != payload.get("sub"):
            raise InvalidSessionError()
        if session.refresh_token_hash != presented:
            logger.warning("refresh_token_reuse", session_id=session.id, user_id=session.user_id)
            raise InvalidSessionError()
        if now > session.refresh_expires_at:
            raise InvalidSessionError()

        user = await self.credentials.get_user(session.user_id)
        if user is None or not user.is_active:
            raise InvalidSessionError()

        # Refresh lifetime stays anchored to the original login
        session.expires_at = now + self.settings.access_token_ttl_seconds
        session.last_activity = now
        access, refresh = self.codec.issue_pair(
            user_id=session.user_id,
            session_id=session.id,
            device_id=session.device_id,
            issued_at=now,
            access_expires_at=session.expires_at,
            refresh_expires_at=session.refresh_expires_at,
        )
        session.refresh_token_hash = hash_token(refresh)
        swapped = await self.state.compare_and_set_json(
            Keys.session(session.id),
            "refresh_token_hash",
            presented,
            session.to_record(),
            self._record_ttl(session, now),
        )
        if not swapped:
            logger.warning("refresh_rotation_lost", session_id=session.id)
            raise InvalidSessionError()

        logger.info("session_refreshed", user_id=session.user_id, session_id=session.id)
        tokens = IssuedTokens(
            access_token=access,
            refresh_token=refresh,
            session_id=session.id,
            expires_at=session.expires_at,
            refresh_expires_at=session.refresh_expires_at,
            expires_in=self.settings.access_token_ttl_seconds,
        )
        return tokens, user

    async def validate(self, session_id: str) -> SessionValidation:
        """Check a session is live and its user active; never raises."""
        try:
            session = await self.get(session_id)
            if session is None:
                return INVALID
            now = self._clock()
            if now > session.expires_at:
                return INVALID
            user = await self.credentials.get_user(session.user_id)
            if user is None or not user.is_active:
                return INVALID

            previous_activity = session.last_activity
            session.last_activity = now
            # Lost races with a concurrent refresh are fine: that refresh
            # already moved last_activity forward.
            await self.state.compare_and_set_json(
                Keys.session(session.id),
                "refresh_token_hash",
                session.refresh_token_hash,
                session.to_record(),
                self._record_ttl(session, now),
            )
        except StoreUnavailable as exc:
            logger.error("session_validation_store_unavailable", session_id=session_id, error=str(exc))
            return INVALID
        logger.debug(
            "session_validated",
            session_id=session_id,
            idle_seconds=round(now - previous_activity, 3),
        )
        return SessionValidation(valid=True, user=public_user(user), context=session.context())

    async def authenticate_access_token(self, token: str) -> SessionValidation:
        payload = self.codec.decode(token, expected_type=ACCESS)
        if not payload or not payload.get("sid"):
            return INVALID
        result = await self.validate(str(payload["sid"]))
        if result.valid and result.user is not None and result.user["id"] != payload.get("sub"):
            logger.warning("access_token_subject_mismatch", session_id=payload.get("sid"))
            return INVALID
        return result

    async def logout(self, session_id: str, user_id: Optional[str] = None) -> bool:
        """Delete the session and drop it from the user's index; idempotent."""
        if user_id is None:
            session = await self.get(session_id)
            user_id = session.user_id if session else None
        removed = await self.state.delete(Keys.session(session_id))
        if user_id:
            await self.state.remove_from_index(Keys.user_sessions(user_id), session_id)
        if removed:
            logger.info("session_revoked", session_id=session_id, user_id=user_id)
        return removed

    async def list_sessions(self, user_id: str) -> List[Session]:
        sessions: List[Session] = []
        for session_id in await self.state.get_index(Keys.user_sessions(user_id)):
            session = await self.get(session_id)
            if session is not None:
                sessions.append(session)
        return sessions

    async def revoke_all(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        revoked = 0
        for session_id in await self.state.get_index(Keys.user_sessions(user_id)):
            if session_id == except_session_id:
                continue
            if await self.logout(session_id, user_id):
                revoked += 1
            else:
                await self.state.remove_from_index(Keys.user_sessions(user_id), session_id)
        logger.info("sessions_revoked_all", user_id=user_id, count=revoked)
        return revoked
