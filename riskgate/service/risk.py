"""Risk scoring for authentication attempts.

Four independent sub-assessments (device, location, behavior, time) each
produce a score in [0, 1] built from named factors. The final score is the
weighted average over the sub-assessments that were evaluated:

    score = sum(sub.score * sub.weight) / sum(sub.weight)

Factors only ever add to a sub-assessment, and the set of evaluated
sub-assessments depends only on which inputs were supplied, so firing an
extra factor can never lower the final score. Factors listed in
``Settings.deny_factors`` (a blocked country by default) veto access outright
by lifting the score to the high-risk threshold.

Any internal failure yields the maximal-risk assessment; the engine never
raises to its caller.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional

from riskgate.config import Settings
from riskgate.logging import get_logger
from riskgate.service.behavior import BehaviorAnalyzer, is_weekend, local_time
from riskgate.service.devices import DeviceRegistry
from riskgate.service.fingerprint import DeviceInfo, is_suspicious
from riskgate.service.location import LocationInfo

logger = get_logger(__name__)

MEDIUM_LEVEL_FLOOR = 0.3
NIGHT_START_HOUR = 22
NIGHT_END_HOUR = 6


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


LEVEL_RECOMMENDATIONS: dict[RiskLevel, list[str]] = {
    RiskLevel.CRITICAL: [
        "Deny access immediately",
        "Require administrator approval",
    ],
    RiskLevel.HIGH: [
        "Require additional authentication",
        "Limit session duration",
        "Monitor user activity closely",
    ],
    RiskLevel.MEDIUM: [
        "Require MFA verification",
        "Send security notification",
    ],
    RiskLevel.LOW: [],
}

FACTOR_RECOMMENDATIONS: dict[str, str] = {
    "unregistered_device": "Register device before allowing access",
    "suspicious_device": "Verify device integrity",
    "blocked_country": "Block access from this location",
    "country_not_allowed": "Confirm travel or remote-work approval",
    "vpn_proxy_usage": "Verify legitimate VPN usage",
    "rapid_attempts": "Implement rate limiting",
}


@dataclass
class RiskFactor:
    name: str
    score: float
    weight: float
    description: str

    @property
    def contribution(self) -> float:
        return self.score * self.weight

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "score": round(self.score, 4),
            "weight": self.weight,
            "description": self.description,
        }


@dataclass
class SubAssessment:
    name: str
    weight: float
    factors: List[RiskFactor] = field(default_factory=list)

    @property
    def score(self) -> float:
        return min(1.0, sum(factor.contribution for factor in self.factors))

    def add(self, name: str, score: float, weight: float, description: str) -> None:
        self.factors.append(RiskFactor(name, score, weight, description))


@dataclass
class RiskAssessment:
    score: float
    level: RiskLevel
    factors: List[RiskFactor]
    requires_additional_auth: bool
    allow_access: bool
    recommendations: List[str]
    assessed_at: float

    @property
    def factor_names(self) -> list[str]:
        return [factor.name for factor in self.factors]

    def to_dict(self) -> dict[str, Any]:
        """Full record for the audit sink; includes factor weights."""
        return {
            "score": round(self.score, 4),
            "level": self.level.value,
            "factors": [factor.to_dict() for factor in self.factors],
            "requires_additional_auth": self.requires_additional_auth,
            "allow_access": self.allow_access,
            "recommendations": list(self.recommendations),
            "assessed_at": self.assessed_at,
        }

    def public_view(self) -> dict[str, Any]:
        """What a caller may see: level and recommendations, never weights."""
        return {
            "level": self.level.value,
            "recommendations": list(self.recommendations),
        }


def _dedupe(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


class RiskEngine:
    def __init__(
        self,
        devices: DeviceRegistry,
        behavior: BehaviorAnalyzer,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.devices = devices
        self.behavior = behavior
        self.settings = settings
        self._clock = clock

    def level_for(self, score: float) -> RiskLevel:
        if score >= self.settings.high_risk_threshold:
            return RiskLevel.CRITICAL
        if score >= self.settings.medium_risk_threshold:
            return RiskLevel.HIGH
        if score >= MEDIUM_LEVEL_FLOOR:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    async def assess(
        self,
        user_id: str,
        device: Optional[DeviceInfo],
        location: Optional[LocationInfo],
        timestamp: Optional[float] = None,
    ) -> RiskAssessment:
        timestamp = self._clock() if timestamp is None else timestamp
        try:
            return await self._assess(user_id, device, location, timestamp)
        except Exception as exc:
            logger.error(
                "risk_assessment_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return self.maximal_risk(timestamp)

    def maximal_risk(self, timestamp: Optional[float] = None) -> RiskAssessment:
        return RiskAssessment(
            score=1.0,
            level=RiskLevel.CRITICAL,
            factors=[
                RiskFactor(
                    "assessment_error", 1.0, 1.0, "Risk assessment could not be completed"
                )
            ],
            requires_additional_auth=True,
            allow_access=False,
            recommendations=["Deny access due to assessment failure"],
            assessed_at=self._clock() if timestamp is None else timestamp,
        )

    async def _assess(
        self,
        user_id: str,
        device: Optional[DeviceInfo],
        location: Optional[LocationInfo],
        timestamp: float,
    ) -> RiskAssessment:
        weights = self.settings.risk_weights
        tz_name = (device.timezone if device else None) or (
            location.timezone if location else None
        )
        subs: list[SubAssessment] = []
        if device is not None:
            subs.append(await self._device(user_id, device, weights["device"]))
        if location is not None:
            subs.append(await self._location(user_id, location, weights["location"]))
        subs.append(
            await self._behavior(
                user_id, location.ip if location else None, timestamp, tz_name, weights["behavior"]
            )
        )
        subs.append(await self._time(user_id, timestamp, tz_name, weights["time"]))

        total_weight = sum(sub.weight for sub in subs)
        score = (
            sum(sub.score * sub.weight for sub in subs) / total_weight
            if total_weight > 0
            else 0.0
        )
        factors = [factor for sub in subs for factor in sub.factors]
        vetoed = sorted(
            {factor.name for factor in factors} & set(self.settings.deny_factors)
        )
        if vetoed:
            score = max(score, self.settings.high_risk_threshold)
        score = min(max(score, 0.0), 1.0)

        level = self.level_for(score)
        recommendations = list(LEVEL_RECOMMENDATIONS[level])
        recommendations.extend(
            FACTOR_RECOMMENDATIONS[factor.name]
            for factor in factors
            if factor.name in FACTOR_RECOMMENDATIONS
        )
        assessment = RiskAssessment(
            score=score,
            level=level,
            factors=factors,
            requires_additional_auth=score >= self.settings.medium_risk_threshold,
            allow_access=score < self.settings.high_risk_threshold and not vetoed,
            recommendations=_dedupe(recommendations),
            assessed_at=timestamp,
        )
        logger.info(
            "risk_assessed",
            user_id=user_id,
            score=round(score, 4),
            level=level.value,
            factors=assessment.factor_names,
            vetoed=vetoed or None,
        )
        return assessment

    async def _device(self, user_id: str, device: DeviceInfo, weight: float) -> SubAssessment:
        sub = SubAssessment("device", weight)
        registration = await self.devices.get(user_id, device.device_id)
        if registration is None:
            sub.add("unregistered_device", 0.7, 0.4, "Device is not registered for this user")
        trust = self.devices.trust_of(registration)
        if trust < 0.5:
            sub.add("low_device_trust", 1 - trust, 0.3, "Device trust level is low")
        if is_suspicious(device):
            sub.add(
                "suspicious_device",
                0.8,
                0.3,
                "Device fingerprint looks automated or incomplete",
            )
        return sub

    async def _location(
        self, user_id: str, location: LocationInfo, weight: float
    ) -> SubAssessment:
        sub = SubAssessment("location", weight)
        country = location.country
        if country and country in self.settings.blocked_countries:
            sub.add("blocked_country", 1.0, 0.5, f"Access from blocked country {country}")
        allowed = self.settings.allowed_countries
        if allowed and country not in allowed:
            sub.add("country_not_allowed", 0.6, 0.3, "Country is outside the allow-list")
        if location.anonymized:
            sub.add("vpn_proxy_usage", 0.7, 0.3, "Anonymizing network detected")
        consistency = await self.behavior.location_consistency(user_id, location)
        if consistency < 0.5:
            sub.add(
                "location_inconsistency",
                1 - consistency,
                0.2,
                "Location differs from recent history",
            )
        return sub

    async def _behavior(
        self,
        user_id: str,
        ip: Optional[str],
        timestamp: float,
        tz_name: Optional[str],
        weight: float,
    ) -> SubAssessment:
        sub = SubAssessment("behavior", weight)
        pattern = await self.behavior.login_pattern(user_id, timestamp, tz_name)
        if pattern.anomalous:
            sub.add(
                "unusual_login_pattern",
                pattern.score,
                0.4,
                "Login time is unusual for this user",
            )
        session = await self.behavior.session_behavior(user_id)
        if session.anomalous:
            sub.add("unusual_session_behavior", session.score, 0.3, "Session behavior is unusual")
        rapid, count = await self.behavior.rapid_attempts(user_id, ip, timestamp)
        if rapid:
            sub.add("rapid_attempts", 0.8, 0.3, f"{count} attempts in a short window")
        return sub

    async def _time(
        self, user_id: str, timestamp: float, tz_name: Optional[str], weight: float
    ) -> SubAssessment:
        sub = SubAssessment("time", weight)
        moment = local_time(timestamp, tz_name)
        if moment.hour >= NIGHT_START_HOUR or moment.hour < NIGHT_END_HOUR:
            sub.add("off_hours_access", 0.4, 0.3, "Access outside business hours")
        if is_weekend(moment) and not await self.behavior.usually_accesses_weekends(user_id):
            sub.add("unusual_weekend_access", 0.3, 0.2, "Weekend access is unusual for this user")
        return sub
