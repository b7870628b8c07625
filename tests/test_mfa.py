"""Tests for TOTP, backup codes and SMS/email challenges."""

import asyncio
from urllib.parse import parse_qs, urlparse

import pytest

from riskgate.service.errors import ChallengeExpiredError, InvalidMFAError, NotFoundError
from riskgate.service.mfa import (
    MFAChallengeManager,
    available_methods,
    generate_totp,
    hash_code,
    mask_email,
    mask_phone,
    verify_totp,
)
from riskgate.service.notifier import BackgroundDispatcher
from riskgate.storage.common import Keys

RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
APP_SECRET = "JBSWY3DPEHPK3PXP"


@pytest.fixture
def dispatcher():
    return BackgroundDispatcher()


@pytest.fixture
def mfa(credentials, state, notifier, settings, dispatcher, clock):
    return MFAChallengeManager(
        credentials, state, notifier, settings, dispatcher=dispatcher, clock=clock
    )


@pytest.fixture
def phone_user(credentials):
    return credentials.add_user(
        "bob@example.com",
        phone="555-123-4567",
        phone_verified=True,
        email_verified=True,
    )


def _sms_code(notifier):
    _, message = notifier.sms[-1]
    return message.rsplit(" ", 1)[-1]


class TestTotpAlgorithm:
    """RFC 6238 compatible code generation."""

    @pytest.mark.parametrize(
        "timestamp,expected",
        [(59, "287082"), (1111111109, "081804"), (1234567890, "005924")],
    )
    def test_rfc_vectors(self, timestamp, expected):
        assert generate_totp(RFC_SECRET, timestamp) == expected

    def test_adjacent_steps_accepted(self):
        now = 1_700_000_000
        assert verify_totp(APP_SECRET, generate_totp(APP_SECRET, now - 30), timestamp=now)
        assert verify_totp(APP_SECRET, generate_totp(APP_SECRET, now + 30), timestamp=now)

    def test_steps_outside_window_rejected(self):
        now = 1_700_000_000
        assert not verify_totp(APP_SECRET, generate_totp(APP_SECRET, now + 90), timestamp=now)

    def test_zero_window_is_exact(self):
        now = 1_700_000_000
        code = generate_totp(APP_SECRET, now - 30)
        assert not verify_totp(APP_SECRET, code, timestamp=now, window=0)

    @pytest.mark.parametrize("code", ["", "12345", "abcdef", "1234567"])
    def test_malformed_codes_rejected(self, code):
        assert not verify_totp(APP_SECRET, code, timestamp=1_700_000_000)

    def test_invalid_secret_generates_nothing(self):
        assert generate_totp("not base32 !!", 59) == ""


class TestMasking:
    def test_mask_phone_keeps_last_four_digits(self):
        assert mask_phone("555-123-4567") == "***-***-4567"
        assert mask_phone("+15551234567") == "+*******4567"

    def test_mask_email(self):
        assert mask_email("alice@example.com") == "al***@example.com"
        assert mask_email("al@example.com") == "al@example.com"
        assert mask_email("nobody") == "***"

    def test_backup_code_hash_ignores_formatting(self):
        assert hash_code("abcd-efgh") == hash_code("ABCDEFGH")


class TestEnrollment:
    """TOTP setup, status and management."""

    async def test_setup_stores_encrypted_secret_and_hashed_codes(self, mfa, credentials, user, settings):
        setup = await mfa.setup_totp(user.id)
        stored = await credentials.get_user(user.id)
        assert stored.mfa_enabled
        assert stored.totp_secret and stored.totp_secret != setup.secret
        assert len(setup.backup_codes) == settings.backup_code_count
        assert stored.backup_code_hashes == [hash_code(code) for code in setup.backup_codes]

    async def test_otpauth_uri(self, mfa, user):
        setup = await mfa.setup_totp(user.id)
        uri = urlparse(setup.otpauth_uri)
        assert uri.scheme == "otpauth"
        assert uri.netloc == "totp"
        params = parse_qs(uri.query)
        assert params["secret"] == [setup.secret]
        assert params["issuer"] == ["RiskGate"]
        assert "alice%40example.com" in uri.path or "alice@example.com" in uri.path

    async def test_status_reflects_enrollment(self, mfa, user):
        before = await mfa.get_mfa_status(user.id)
        assert not before["enabled"]
        assert before["available_methods"] == ["email"]
        await mfa.setup_totp(user.id)
        after = await mfa.get_mfa_status(user.id)
        assert after["enabled"] and after["totp_configured"]
        assert after["backup_codes_remaining"] == 10
        assert after["available_methods"] == ["totp", "backup_code", "email"]

    async def test_disable_clears_secret_and_codes(self, mfa, credentials, user):
        await mfa.setup_totp(user.id)
        await mfa.disable_mfa(user.id)
        stored = await credentials.get_user(user.id)
        assert not stored.mfa_enabled
        assert stored.totp_secret is None
        assert stored.backup_code_hashes == []

    async def test_regenerate_invalidates_old_codes(self, mfa, user):
        setup = await mfa.setup_totp(user.id)
        fresh = await mfa.regenerate_backup_codes(user.id)
        assert not (await mfa.verify_backup_code(user.id, setup.backup_codes[0])).success
        assert (await mfa.verify_backup_code(user.id, fresh[0])).success

    async def test_unknown_user(self, mfa):
        with pytest.raises(NotFoundError):
            await mfa.setup_totp("missing")

    def test_available_methods_order(self, phone_user):
        phone_user.mfa_enabled = True
        phone_user.totp_secret = "encrypted"
        phone_user.backup_code_hashes = ["h"]
        assert available_methods(phone_user) == ["totp", "backup_code", "sms", "email"]


class TestDirectVerification:
    async def test_totp_against_stored_secret(self, mfa, user, clock):
        setup = await mfa.setup_totp(user.id)
        result = await mfa.verify_totp(user.id, generate_totp(setup.secret, clock()))
        assert result.success
        assert result.reason is None

    async def test_totp_not_configured(self, mfa, user):
        result = await mfa.verify_totp(user.id, "123456")
        assert not result.success
        assert result.reason == "not_configured"

    async def test_backup_code_single_use(self, mfa, user):
        setup = await mfa.setup_totp(user.id)
        code = setup.backup_codes[0]
        first = await mfa.verify_backup_code(user.id, code.lower())
        assert first.success
        assert first.remaining_backup_codes == 9
        assert not (await mfa.verify_backup_code(user.id, code)).success

    async def test_low_backup_codes_sends_notice(self, mfa, user, notifier, dispatcher):
        setup = await mfa.setup_totp(user.id)
        for code in setup.backup_codes[:7]:
            assert (await mfa.verify_backup_code(user.id, code)).success
        await dispatcher.drain()
        assert notifier.templates() == []
        result = await mfa.verify_backup_code(user.id, setup.backup_codes[7])
        assert result.remaining_backup_codes == 2
        await dispatcher.drain()
        assert notifier.emails == [("alice@example.com", "low_backup_codes", {"remaining": 2})]

    async def test_concurrent_backup_code_use_succeeds_once(self, mfa, user):
        setup = await mfa.setup_totp(user.id)
        code = setup.backup_codes[0]
        results = await asyncio.gather(*[mfa.verify_backup_code(user.id, code) for _ in range(5)])
        assert sum(result.success for result in results) == 1

    async def test_unsupported_method(self, mfa, user):
        result = await mfa.verify("carrier_pigeon", "123", user_id=user.id)
        assert result.reason == "unsupported_method"

    async def test_delivered_method_needs_challenge(self, mfa, user):
        result = await mfa.verify("email", "123456", user_id=user.id)
        assert result.reason == "no_challenge"


class TestChallenges:
    """SMS/email codes bound to a short-lived challenge."""

    async def test_challenge_describes_masked_destinations(self, mfa, phone_user):
        challenge = await mfa.create_challenge(phone_user.id)
        descriptor = challenge.descriptor()
        assert descriptor["available_methods"] == ["sms", "email"]
        assert descriptor["destinations"] == {"sms": "***-***-4567", "email": "bo*@example.com"}

    async def test_challenge_expires(self, mfa, phone_user, clock, settings):
        challenge = await mfa.create_challenge(phone_user.id)
        clock.advance(settings.mfa_challenge_ttl_seconds + 1)
        assert await mfa.get_challenge(challenge.id) is None
        with pytest.raises(ChallengeExpiredError):
            await mfa.send_challenge_code(challenge.id, "sms")

    async def test_unavailable_method_refused(self, mfa, user):
        challenge = await mfa.create_challenge(user.id)
        with pytest.raises(InvalidMFAError):
            await mfa.send_challenge_code(challenge.id, "sms")

    async def test_sms_code_succeeds_exactly_once(self, mfa, phone_user, notifier, dispatcher):
        challenge = await mfa.create_challenge(phone_user.id)
        sent = await mfa.send_challenge_code(challenge.id, "sms")
        assert sent["destination"] == "***-***-4567"
        await dispatcher.drain()
        assert notifier.sms[0][0] == "555-123-4567"
        code = _sms_code(notifier)

        first = await mfa.verify_challenge_code(challenge.id, "sms", code, user_id=phone_user.id)
        second = await mfa.verify_challenge_code(challenge.id, "sms", code, user_id=phone_user.id)
        assert first.success
        assert not second.success
        assert second.reason == "expired"

    async def test_email_code_delivered_through_template(self, mfa, user, notifier, dispatcher):
        challenge = await mfa.create_challenge(user.id)
        await mfa.send_challenge_code(challenge.id, "email")
        await dispatcher.drain()
        address, template, data = notifier.emails[0]
        assert (address, template) == ("alice@example.com", "mfa_code")
        assert data["expires_minutes"] == 5
        result = await mfa.verify("email", data["code"], user_id=user.id, challenge_id=challenge.id)
        assert result.success

    async def test_fourth_attempt_fails_even_with_correct_code(self, mfa, phone_user, notifier, dispatcher):
        challenge = await mfa.create_challenge(phone_user.id)
        await mfa.send_challenge_code(challenge.id, "sms")
        await dispatcher.drain()
        code = _sms_code(notifier)
        wrong = "000000" if code != "000000" else "111111"
        for _ in range(3):
            result = await mfa.verify_challenge_code(challenge.id, "sms", wrong)
            assert result.reason == "mismatch"
        result = await mfa.verify_challenge_code(challenge.id, "sms", code)
        assert not result.success
        with pytest.raises(ChallengeExpiredError):
            await mfa.send_challenge_code(challenge.id, "sms")

    async def test_resend_resets_attempts(self, mfa, phone_user, notifier, dispatcher):
        challenge = await mfa.create_challenge(phone_user.id)
        await mfa.send_challenge_code(challenge.id, "sms")
        await dispatcher.drain()
        wrong = "000000" if _sms_code(notifier) != "000000" else "111111"
        for _ in range(2):
            await mfa.verify_challenge_code(challenge.id, "sms", wrong)
        await mfa.send_challenge_code(challenge.id, "sms")
        await dispatcher.drain()
        assert (await mfa.verify_challenge_code(challenge.id, "sms", _sms_code(notifier))).success

    async def test_code_bound_to_challenge_user(self, mfa, phone_user, user, notifier, dispatcher):
        challenge = await mfa.create_challenge(phone_user.id)
        await mfa.send_challenge_code(challenge.id, "sms")
        await dispatcher.drain()
        result = await mfa.verify_challenge_code(
            challenge.id, "sms", _sms_code(notifier), user_id=user.id
        )
        assert result.reason == "wrong_user"

    async def test_expired_code_rejected(self, mfa, phone_user, notifier, dispatcher, clock, settings):
        challenge = await mfa.create_challenge(phone_user.id)
        await mfa.send_challenge_code(challenge.id, "sms")
        await dispatcher.drain()
        clock.advance(settings.mfa_challenge_ttl_seconds + 1)
        result = await mfa.verify_challenge_code(challenge.id, "sms", _sms_code(notifier))
        assert result.reason == "expired"

    async def test_close_challenge_discards_codes(self, mfa, phone_user, state, dispatcher):
        challenge = await mfa.create_challenge(phone_user.id)
        await mfa.send_challenge_code(challenge.id, "sms")
        await dispatcher.drain()
        await mfa.close_challenge(challenge.id)
        assert await state.get_json(Keys.challenge(challenge.id)) is None
        assert await state.get_json(Keys.challenge_code("sms", challenge.id)) is None

    async def test_failed_delivery_does_not_fail_caller(self, mfa, phone_user, notifier, dispatcher):
        notifier.fail_with = ConnectionError("gateway down")
        challenge = await mfa.create_challenge(phone_user.id)
        sent = await mfa.send_challenge_code(challenge.id, "sms")
        await dispatcher.drain()
        assert sent["method"] == "sms"
        assert dispatcher.pending == 0
