"""Tests for behavior history and the weighted risk engine."""

import pytest

from riskgate.service.behavior import BehaviorAnalyzer
from riskgate.service.devices import DeviceRegistry
from riskgate.service.fingerprint import DeviceFingerprinter
from riskgate.service.location import LocationInfo
from riskgate.service.risk import RiskEngine, RiskLevel

from conftest import (
    BLOCKED_IP,
    CHROME_WINDOWS,
    DESKTOP_SIGNALS,
    SATURDAY_NOON,
    US_IP,
    VPN_IP,
    WEDNESDAY_NOON,
)

NIGHT = WEDNESDAY_NOON - 9 * 3600  # 03:00 London


@pytest.fixture
def devices(state, clock):
    return DeviceRegistry(state, clock=clock)


@pytest.fixture
def behavior(state, settings, clock):
    return BehaviorAnalyzer(state, settings, clock=clock)


@pytest.fixture
def engine(devices, behavior, settings, clock):
    return RiskEngine(devices, behavior, settings, clock=clock)


@pytest.fixture
def desktop():
    return DeviceFingerprinter().identify(CHROME_WINDOWS, DESKTOP_SIGNALS)


async def _weekday_history(behavior, user_id, count=10):
    for day in range(count):
        await behavior.record_login(
            user_id, WEDNESDAY_NOON - day * 7 * 86400, tz_name="Europe/London"
        )


class TestBehaviorAnalyzer:
    """Rolling history drives pattern, weekend and location checks."""

    async def test_short_history_is_never_anomalous(self, behavior):
        await _weekday_history(behavior, "u1", count=4)
        result = await behavior.login_pattern("u1", NIGHT, "Europe/London")
        assert not result.anomalous

    async def test_unseen_hour_and_day_is_anomalous(self, behavior):
        await _weekday_history(behavior, "u1")
        result = await behavior.login_pattern("u1", SATURDAY_NOON - 9 * 3600, "Europe/London")
        assert result.anomalous
        assert result.score == pytest.approx(1.0)

    async def test_usual_time_is_not_anomalous(self, behavior):
        await _weekday_history(behavior, "u1")
        result = await behavior.login_pattern("u1", WEDNESDAY_NOON, "Europe/London")
        assert result.score == pytest.approx(0.0)

    async def test_weekend_habit_needs_history(self, behavior):
        assert await behavior.usually_accesses_weekends("u1")
        await _weekday_history(behavior, "u1")
        assert not await behavior.usually_accesses_weekends("u1")

    async def test_location_consistency(self, behavior):
        home = LocationInfo(ip=US_IP, country="US", region="New York", city="New York")
        assert await behavior.location_consistency("u1", home) == pytest.approx(0.8)
        await behavior.record_login("u1", WEDNESDAY_NOON, location=home)
        assert await behavior.location_consistency("u1", home) == pytest.approx(1.0)
        away = LocationInfo(ip=VPN_IP, country="NL")
        assert await behavior.location_consistency("u1", away) == 0.0

    async def test_rapid_attempts_per_user_and_ip(self, behavior, clock):
        for _ in range(5):
            rapid, _ = await behavior.rapid_attempts("u1", US_IP, clock())
            assert not rapid
        rapid, count = await behavior.rapid_attempts("u1", US_IP, clock())
        assert rapid and count == 6
        rapid, _ = await behavior.rapid_attempts("u1", VPN_IP, clock())
        assert not rapid


class TestBaselineAssessment:
    """A first login from a normal desktop is low risk."""

    async def test_new_device_scores_low(self, engine, desktop, locations):
        location = await locations.resolve(US_IP)
        assessment = await engine.assess("u1", desktop, location)
        assert assessment.score == pytest.approx(0.174)
        assert assessment.level is RiskLevel.LOW
        assert assessment.allow_access
        assert not assessment.requires_additional_auth
        assert assessment.factor_names == ["unregistered_device", "low_device_trust"]

    async def test_trusted_device_scores_zero(self, engine, devices, desktop, locations):
        await devices.register("u1", desktop, trusted=True)
        assessment = await engine.assess("u1", desktop, await locations.resolve(US_IP))
        assert assessment.score == pytest.approx(0.0)
        assert assessment.factors == []
        assert assessment.recommendations == []

    async def test_missing_signals_only_scores_behavior_and_time(self, engine):
        assessment = await engine.assess("u1", None, None)
        assert assessment.score == pytest.approx(0.0)
        assert assessment.level is RiskLevel.LOW


class TestDenyFactors:
    """Deny factors veto access regardless of the weighted score."""

    async def test_blocked_country_is_critical(self, engine, desktop, locations):
        assessment = await engine.assess("u1", desktop, await locations.resolve(BLOCKED_IP))
        assert assessment.score == pytest.approx(0.8)
        assert assessment.level is RiskLevel.CRITICAL
        assert not assessment.allow_access
        assert assessment.requires_additional_auth
        assert "Deny access immediately" in assessment.recommendations
        assert "Block access from this location" in assessment.recommendations

    async def test_configured_deny_factor(self, devices, behavior, settings, clock, desktop, locations):
        strict = settings.model_copy(update={"deny_factors": ["vpn_proxy_usage"]})
        engine = RiskEngine(devices, behavior, strict, clock=clock)
        assessment = await engine.assess("u1", desktop, await locations.resolve(VPN_IP))
        assert not assessment.allow_access

    async def test_allow_list_outside_country(self, devices, behavior, settings, clock, desktop, locations):
        limited = settings.model_copy(update={"allowed_countries": ["GB"]})
        engine = RiskEngine(devices, behavior, limited, clock=clock)
        assessment = await engine.assess("u1", desktop, await locations.resolve(US_IP))
        assert "country_not_allowed" in assessment.factor_names
        assert assessment.allow_access


class TestMonotonicity:
    """Each extra factor raises the score above the baseline."""

    async def _baseline(self, engine, desktop, locations):
        return (await engine.assess("base", desktop, await locations.resolve(US_IP))).score

    async def test_vpn_raises_score(self, engine, desktop, locations):
        baseline = await self._baseline(engine, desktop, locations)
        assessment = await engine.assess("u1", desktop, await locations.resolve(VPN_IP))
        assert "vpn_proxy_usage" in assessment.factor_names
        assert assessment.score > baseline

    async def test_off_hours_raises_score(self, engine, desktop, locations):
        baseline = await self._baseline(engine, desktop, locations)
        assessment = await engine.assess(
            "u1", desktop, await locations.resolve(US_IP), timestamp=NIGHT
        )
        assert "off_hours_access" in assessment.factor_names
        assert assessment.score == pytest.approx(baseline + 0.024)

    async def test_suspicious_device_raises_score(self, engine, desktop, locations):
        baseline = await self._baseline(engine, desktop, locations)
        headless = DeviceFingerprinter().identify(CHROME_WINDOWS, {"timezone": "Europe/London"})
        assessment = await engine.assess("u1", headless, await locations.resolve(US_IP))
        assert "suspicious_device" in assessment.factor_names
        assert assessment.score > baseline

    async def test_rapid_attempts_raise_score(self, engine, desktop, locations):
        location = await locations.resolve(US_IP)
        scores = [(await engine.assess("u1", desktop, location)).score for _ in range(6)]
        assert scores[-1] > scores[0]

    async def test_unusual_weekend_access(self, engine, behavior, desktop, locations):
        await _weekday_history(behavior, "u1")
        assessment = await engine.assess(
            "u1", desktop, await locations.resolve(US_IP), timestamp=SATURDAY_NOON
        )
        assert "unusual_weekend_access" in assessment.factor_names


class TestFailureHandling:
    async def test_internal_error_yields_maximal_risk(self, engine, desktop, locations, monkeypatch):
        async def broken(user_id, device_id):
            raise RuntimeError("store exploded")

        monkeypatch.setattr(engine.devices, "get", broken)
        assessment = await engine.assess("u1", desktop, await locations.resolve(US_IP))
        assert assessment.score == 1.0
        assert assessment.level is RiskLevel.CRITICAL
        assert not assessment.allow_access
        assert assessment.factor_names == ["assessment_error"]


class TestLevels:
    @pytest.mark.parametrize(
        "score,level",
        [
            (0.0, RiskLevel.LOW),
            (0.29, RiskLevel.LOW),
            (0.3, RiskLevel.MEDIUM),
            (0.49, RiskLevel.MEDIUM),
            (0.5, RiskLevel.HIGH),
            (0.79, RiskLevel.HIGH),
            (0.8, RiskLevel.CRITICAL),
            (1.0, RiskLevel.CRITICAL),
        ],
    )
    def test_level_boundaries(self, engine, score, level):
        assert engine.level_for(score) is level

    async def test_public_view_hides_weights(self, engine, desktop, locations):
        assessment = await engine.assess("u1", desktop, await locations.resolve(US_IP))
        view = assessment.public_view()
        assert set(view) == {"level", "recommendations"}
        assert "weight" in assessment.to_dict()["factors"][0]
