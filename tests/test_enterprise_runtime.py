"""Tests for the Office 365 identity provider and runtime wiring."""

from urllib.parse import parse_qs

import httpx
import pytest

from riskgate.service.enterprise import Office365IdentityProvider
from riskgate.service.runtime import Runtime, _mask_url_password, get_runtime, reset_runtime_for_tests
from riskgate.storage.memory import MemoryStateStore


def _provider(handler, **overrides):
    params = dict(
        tenant_id="contoso",
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="https://app.example/callback",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    params.update(overrides)
    return Office365IdentityProvider(**params)


def graph_handler(userinfo, seen=None):
    def handler(request):
        if seen is not None:
            seen.append(request)
        if request.url.host == "login.microsoftonline.com":
            return httpx.Response(200, json={"access_token": "graph-token"})
        return httpx.Response(200, json=userinfo)

    return handler


class TestOffice365IdentityProvider:
    """Authorization code exchange against Microsoft identity endpoints."""

    async def test_code_exchange(self):
        seen = []
        provider = _provider(
            graph_handler(
                {"id": "aad-1", "mail": "Carol@Corp.Example", "displayName": "Carol"}, seen
            )
        )
        identity = await provider.verify("auth-code")
        assert identity.email == "carol@corp.example"
        assert identity.display_name == "Carol"
        assert identity.external_id == "aad-1"

        token_request, userinfo_request = seen
        assert token_request.url.path == "/contoso/oauth2/v2.0/token"
        form = parse_qs(token_request.content.decode())
        assert form["code"] == ["auth-code"]
        assert form["grant_type"] == ["authorization_code"]
        assert userinfo_request.headers["Authorization"] == "Bearer graph-token"

    async def test_user_principal_name_fallback(self):
        provider = _provider(graph_handler({"id": "aad-2", "userPrincipalName": "dave@corp.example"}))
        assert (await provider.verify("auth-code")).email == "dave@corp.example"

    async def test_incomplete_identity(self):
        provider = _provider(graph_handler({"displayName": "No Id"}))
        assert await provider.verify("auth-code") is None

    async def test_token_endpoint_rejection(self):
        provider = _provider(lambda request: httpx.Response(400, json={"error": "invalid_grant"}))
        assert await provider.verify("auth-code") is None

    async def test_missing_access_token(self):
        provider = _provider(lambda request: httpx.Response(200, json={"token_type": "Bearer"}))
        assert await provider.verify("auth-code") is None

    async def test_not_configured(self):
        def handler(request):
            raise AssertionError("no request expected")

        provider = _provider(handler, client_secret=None)
        assert not provider.is_configured
        assert await provider.verify("auth-code") is None
        assert await _provider(handler).verify("") is None

    def test_from_settings(self, settings):
        configured = settings.model_copy(
            update={
                "sso_client_id": "id",
                "sso_client_secret": "secret",
                "sso_redirect_uri": "https://app.example/callback",
            }
        )
        assert Office365IdentityProvider.from_settings(configured).is_configured
        assert not Office365IdentityProvider.from_settings(settings).is_configured


class TestRuntime:
    """Composition root and health reporting."""

    async def test_health(self, runtime):
        health = await runtime.health()
        assert health["status"] == "ok"
        assert health["state_store"] is True
        assert health["redis_enabled"] is False
        assert health["sso_configured"] is False
        assert health["pending_deliveries"] == 0

    def test_memory_store_when_requested(self, settings):
        assert isinstance(Runtime(settings).state, MemoryStateStore)

    def test_falls_back_without_redis_in_test_mode(self, settings):
        runtime = Runtime(
            settings.model_copy(
                update={"use_memory_store": False, "redis_url": "redis://127.0.0.1:1/0"}
            )
        )
        assert isinstance(runtime.state, MemoryStateStore)
        assert not runtime.redis_enabled

    def test_refuses_to_start_without_redis_in_production(self, settings):
        production = settings.model_copy(
            update={
                "use_memory_store": False,
                "test_mode": False,
                "allow_redis_fallback_dev": False,
                "redis_url": None,
            }
        )
        with pytest.raises(RuntimeError):
            Runtime(production)

    def test_singleton(self):
        first = reset_runtime_for_tests()
        assert get_runtime() is first

    def test_mask_url_password(self):
        assert _mask_url_password("redis://:hunter2@cache:6379/0") == "redis://:***@cache:6379/0"
        assert _mask_url_password("redis://cache:6379/0") == "redis://cache:6379/0"
        assert _mask_url_password(None) is None

    async def test_close_drains_deliveries(self, runtime, notifier):
        runtime.dispatcher.submit(
            notifier.send_email("alice@example.com", "account_locked", {"minutes": 15}),
            event="test_delivery",
        )
        await runtime.close()
        assert notifier.templates() == ["account_locked"]
