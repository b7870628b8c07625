from __future__ import annotations

from typing import Any, Optional

import httpx

from riskgate.config import Settings
from riskgate.logging import get_logger
from riskgate.service.collaborators import VerifiedIdentity

logger = get_logger(__name__)

TOKEN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
USERINFO_URL = "https://graph.microsoft.com/v1.0/me"
DEFAULT_SCOPE = "openid email profile User.Read"


class Office365IdentityProvider:
    """Exchanges an authorization code for a verified Microsoft identity.

    The artifact is the ``code`` returned to the redirect URI. A verified
    identity needs a stable ``id`` and either ``mail`` or
    ``userPrincipalName``; anything else yields ``None``.
    """

    name = "office365"

    def __init__(
        self,
        *,
        tenant_id: str = "common",
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self._client = client
        self._timeout = timeout

    @classmethod
    def from_settings(
        cls, settings: Settings, *, client: Optional[httpx.AsyncClient] = None
    ) -> "Office365IdentityProvider":
        return cls(
            tenant_id=settings.sso_tenant_id,
            client_id=settings.sso_client_id,
            client_secret=settings.sso_client_secret,
            redirect_uri=settings.sso_redirect_uri,
            client=client,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    @staticmethod
    def parse_userinfo(userinfo: dict[str, Any]) -> Optional[VerifiedIdentity]:
        external_id = userinfo.get("id")
        email = userinfo.get("mail") or userinfo.get("userPrincipalName")
        if not external_id or not email:
            return None
        return VerifiedIdentity(
            email=str(email).strip().lower(),
            display_name=userinfo.get("displayName"),
            external_id=str(external_id),
        )

    async def _exchange(self, client: httpx.AsyncClient, code: str) -> Optional[VerifiedIdentity]:
        token_response = await client.post(
            TOKEN_URL.format(tenant=self.tenant_id),
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "redirect_uri": self.redirect_uri,
                "grant_type": "authorization_code",
                "scope": DEFAULT_SCOPE,
            },
            headers={"Accept": "application/json"},
        )
        token_response.raise_for_status()
        token_result = token_response.json()
        access_token = token_result.get("access_token") if isinstance(token_result, dict) else None
        if not access_token:
            logger.error("sso_no_access_token", provider=self.name)
            return None

        userinfo_response = await client.get(
            USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"}
        )
        userinfo_response.raise_for_status()
        userinfo = userinfo_response.json()
        if not isinstance(userinfo, dict):
            logger.error(
                "sso_userinfo_invalid_format", provider=self.name, type=type(userinfo).__name__
            )
            return None

        identity = self.parse_userinfo(userinfo)
        if identity is None:
            logger.error("sso_identity_incomplete", provider=self.name)
            return None
        logger.info("sso_exchange_success", provider=self.name, external_id=identity.external_id)
        return identity

    async def verify(self, artifact: str) -> Optional[VerifiedIdentity]:
        if not artifact:
            return None
        if not self.is_configured:
            logger.error("sso_credentials_missing", provider=self.name)
            return None
        try:
            if self._client is not None:
                return await self._exchange(self._client, artifact)
            async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=False) as client:
                return await self._exchange(client, artifact)
        except httpx.HTTPStatusError as e:
            logger.error(
                "sso_exchange_http_error",
                provider=self.name,
                status_code=e.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                "sso_exchange_error", provider=self.name, error_type=type(e).__name__, error=str(e)
            )
            return None
