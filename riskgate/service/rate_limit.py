from __future__ import annotations

from typing import Optional

from riskgate.config import Settings
from riskgate.logging import get_logger
from riskgate.service.errors import InternalError, RateLimitedError
from riskgate.storage.common import Keys, StateStore
from riskgate.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class LoginRateLimiter:
    """Fixed-window attempt counter per (email, ip) pair.

    The counter is incremented before it is compared, so concurrent attempts
    can never slip past the limit. A store failure denies the attempt.
    """

    def __init__(self, state: StateStore, settings: Settings) -> None:
        self.state = state
        self.limit = settings.rate_limit_attempts
        self.window_seconds = settings.rate_limit_window_seconds

    async def hit(self, email: str, ip: Optional[str]) -> int:
        """Count one attempt; raise ``RateLimitedError`` once over the limit."""
        try:
            count = await self.state.incr(Keys.login_rate(email, ip), self.window_seconds)
        except StoreUnavailable as exc:
            logger.error("rate_limit_store_unavailable", error=str(exc))
            raise InternalError(detail={"cause": "rate_limit_store_unavailable"}) from exc
        if count > self.limit:
            logger.warning(
                "login_rate_limited",
                attempts=count,
                limit=self.limit,
                window_seconds=self.window_seconds,
            )
            raise RateLimitedError(detail={"attempts": count, "limit": self.limit})
        return count

    async def attempts(self, email: str, ip: Optional[str]) -> int:
        return await self.state.get_int(Keys.login_rate(email, ip))

