from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from riskgate.config import Settings
from riskgate.logging import get_logger
from riskgate.service.location import LocationInfo
from riskgate.storage.common import Keys, StateStore
from riskgate.storage.models import LoginAttempt

logger = get_logger(__name__)

LOGIN_HISTORY_LIMIT = 200
LOCATION_HISTORY_LIMIT = 50
ATTEMPT_HISTORY_LIMIT = 100
RECENT_LOCATIONS = 10
MIN_PATTERN_HISTORY = 5
MIN_WEEKEND_HISTORY = 10
PATTERN_ANOMALY_THRESHOLD = 0.6
WEEKEND_RATIO_THRESHOLD = 0.1
FIRST_LOGIN_CONSISTENCY = 0.8


@dataclass
class PatternResult:
    anomalous: bool
    score: float


def local_time(timestamp: float, tz_name: Optional[str] = None) -> datetime:
    """Wall-clock time for the device's timezone, UTC when unknown."""
    tz = timezone.utc
    if tz_name:
        try:
            tz = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.debug("unknown_timezone", timezone=tz_name)
    return datetime.fromtimestamp(timestamp, tz)


def is_weekend(moment: datetime) -> bool:
    return moment.weekday() >= 5


class BehaviorAnalyzer:
    """Rolling per-user login history, location history and attempt counters."""

    def __init__(
        self,
        state: StateStore,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.state = state
        self.settings = settings
        self._clock = clock

    async def record_login(
        self,
        user_id: str,
        timestamp: float,
        *,
        tz_name: Optional[str] = None,
        location: Optional[LocationInfo] = None,
    ) -> None:
        moment = local_time(timestamp, tz_name)
        await self.state.append_capped(
            Keys.login_history(user_id),
            {"ts": timestamp, "hour": moment.hour, "weekday": moment.weekday()},
            LOGIN_HISTORY_LIMIT,
        )
        if location is not None and location.country:
            await self.state.append_capped(
                Keys.location_history(user_id),
                location.to_record(),
                LOCATION_HISTORY_LIMIT,
            )

    async def record_attempt(self, attempt: LoginAttempt) -> None:
        await self.state.append_capped(
            Keys.recent_attempts(attempt.email),
            attempt.to_record(),
            ATTEMPT_HISTORY_LIMIT,
        )

    async def recent_attempts(self, email: str, limit: int = 20) -> list[dict]:
        history = await self.state.get_list(Keys.recent_attempts(email))
        return list(reversed(history[-limit:]))

    async def login_pattern(
        self, user_id: str, timestamp: float, tz_name: Optional[str] = None
    ) -> PatternResult:
        """Score how unusual this hour and weekday are for the user.

        Each dimension scores ``1 - freq / max_freq`` over the user's history;
        the pattern is anomalous when the average exceeds 0.6. Fewer than five
        prior logins is not enough history to call anything unusual.
        """
        history = await self.state.get_list(Keys.login_history(user_id))
        if len(history) < MIN_PATTERN_HISTORY:
            return PatternResult(anomalous=False, score=0.0)

        moment = local_time(timestamp, tz_name)
        hours = Counter(entry.get("hour") for entry in history)
        days = Counter(entry.get("weekday") for entry in history)
        hour_score = 1 - hours.get(moment.hour, 0) / max(hours.values())
        day_score = 1 - days.get(moment.weekday(), 0) / max(days.values())
        score = (hour_score + day_score) / 2
        return PatternResult(anomalous=score > PATTERN_ANOMALY_THRESHOLD, score=score)

    async def session_behavior(self, user_id: str) -> PatternResult:
        # TODO: feed in-session signals (navigation cadence, API mix) once sessions report them
        return PatternResult(anomalous=False, score=0.2)

    async def rapid_attempts(
        self, user_id: str, ip: Optional[str], timestamp: float
    ) -> tuple[bool, int]:
        """Record this attempt and report whether the (user, ip) pair is hammering."""
        count = await self.state.record_event(
            Keys.rapid_attempts(user_id, ip),
            timestamp,
            self.settings.rapid_attempt_window_seconds,
        )
        return count > self.settings.rapid_attempt_limit, count

    async def usually_accesses_weekends(self, user_id: str) -> bool:
        history = await self.state.get_list(Keys.login_history(user_id))
        if len(history) < MIN_WEEKEND_HISTORY:
            return True
        weekend = sum(1 for entry in history if (entry.get("weekday") or 0) >= 5)
        return weekend / len(history) >= WEEKEND_RATIO_THRESHOLD

    async def location_consistency(self, user_id: str, location: LocationInfo) -> float:
        """Partial-match score against the last ten known locations.

        Country match 0.5, plus region 0.3, plus city 0.2, averaged and capped
        at 1.0. No history yet scores 0.8.
        """
        history = await self.state.get_list(Keys.location_history(user_id))
        if not history:
            return FIRST_LOGIN_CONSISTENCY
        recent = history[-RECENT_LOCATIONS:]
        total = 0.0
        for previous in recent:
            if previous.get("country") != location.country:
                continue
            total += 0.5
            if previous.get("region") == location.region:
                total += 0.3
                if previous.get("city") == location.city:
                    total += 0.2
        return min(total / len(recent), 1.0)
