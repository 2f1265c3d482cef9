"""
Upstream identity provider.

After the user approves a client, the browser is sent to the upstream provider
(GitHub by default) with a one-time `state`. The provider sends the browser
back to /api/mcp/callback/{provider}. There we exchange the code for the
provider's view of the user.

The OAuth client side is authlib's AsyncOAuth2Client, the same client
FastMCP's own OAuth proxy uses for its upstream exchange.
"""

import logging
from dataclasses import dataclass

import httpx
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.httpx_client import AsyncOAuth2Client

from src.config import Settings

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Raised when the upstream code exchange or user lookup fails."""


@dataclass(frozen=True)
class UpstreamIdentity:
    subject: str
    login: str


class UpstreamProvider:
    def __init__(
        self,
        name: str,
        authorize_url: str,
        token_url: str,
        userinfo_url: str,
        client_id: str,
        client_secret: str,
        scope: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
    ):
        self.name = name
        self._authorize_url = authorize_url
        self._token_url = token_url
        self._userinfo_url = userinfo_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._scope = scope
        self.transport = transport
        self._timeout = timeout

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> "UpstreamProvider":
        return cls(
            name=settings.provider_name,
            authorize_url=settings.provider_authorize_url,
            token_url=settings.provider_token_url,
            userinfo_url=settings.provider_userinfo_url,
            client_id=settings.provider_client_id,
            client_secret=settings.provider_client_secret,
            scope=settings.provider_scope,
            transport=transport,
        )

    def _client(self, redirect_uri: str) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=self._client_id,
            client_secret=self._client_secret,
            token_endpoint_auth_method="client_secret_post",
            scope=self._scope or None,
            redirect_uri=redirect_uri,
            transport=self.transport,
            timeout=self._timeout,
        )

    async def authorize_url(self, state: str, redirect_uri: str) -> str:
        async with self._client(redirect_uri) as client:
            url, _ = client.create_authorization_url(self._authorize_url, state=state)
        return url

    async def fetch_identity(self, code: str, redirect_uri: str) -> UpstreamIdentity:
        """Exchange an upstream authorization code and look up the user."""
        async with self._client(redirect_uri) as client:
            try:
                token = await client.fetch_token(
                    self._token_url, code=code, redirect_uri=redirect_uri
                )
            except (AuthlibBaseError, httpx.HTTPError, ValueError) as e:
                raise ProviderError(f"Token request to {self.name} failed: {e}") from e

            if not token.get("access_token"):
                raise ProviderError(f"{self.name} did not return an access token")

            # The client sends the fetched token as a bearer token from here on.
            try:
                user_response = await client.get(
                    self._userinfo_url, headers={"Accept": "application/json"}
                )
            except (AuthlibBaseError, httpx.HTTPError) as e:
                raise ProviderError(f"User lookup at {self.name} failed: {e}") from e

        if user_response.status_code != 200:
            raise ProviderError(f"{self.name} user endpoint returned {user_response.status_code}")
        try:
            user = user_response.json()
        except ValueError as e:
            raise ProviderError(f"{self.name} user response is not JSON") from e
        if not isinstance(user, dict):
            raise ProviderError(f"{self.name} user response is not an object")

        subject = user.get("id", user.get("sub"))
        if subject in (None, ""):
            raise ProviderError(f"{self.name} user response has no id")
        login = user.get("login") or user.get("email") or str(subject)
        logger.info(
            "Upstream identity resolved",
            extra={"auth_data": {"provider": self.name, "upstream_login": login}},
        )
        return UpstreamIdentity(subject=str(subject), login=str(login))
