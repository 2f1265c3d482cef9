"""
OAuth 2.1 authorization server for MCP clients, built on FastMCP's
OAuthProvider.

The MCP SDK handlers serve the protocol endpoints (/register, /authorize,
/token and the discovery metadata) and do the request validation and the PKCE
check. This provider keeps the state behind them and fills in the step the
SDK leaves open: what happens between /authorize and the redirect back to the
client.

1. authorize:          the SDK has validated the request; we park it as a
                       pending transaction and send the browser to the consent
                       page at /api/mcp/authorize?txn=...
2. describe:           the consent page asks what the pending request is
3. record_decision:    the user approves (or an API client denies); approval
                       sends the browser to the upstream identity provider
4. complete_callback:  the upstream provider returns; we issue an
                       authorization code and answer with the client redirect
5. exchange_*:         the SDK token handler trades the code (or a refresh
                       token) for an access token
"""

import asyncio
import hashlib
import hmac
import logging
import secrets
import time
from typing import Awaitable, Callable, Mapping
from urllib.parse import urlencode

from fastmcp.server.auth import AccessToken, OAuthProvider
from mcp.server.auth.handlers.authorize import AuthorizationHandler
from mcp.server.auth.provider import (
    AuthorizationCode,
    AuthorizationParams,
    RefreshToken,
    TokenError,
    construct_redirect_uri,
)
from mcp.server.auth.settings import ClientRegistrationOptions
from mcp.shared.auth import OAuthClientInformationFull, OAuthToken
from pydantic import BaseModel
from starlette.requests import Request
from starlette.responses import Response
from starlette.routing import Route

from src.approval import ApprovalDecision, AuthorizationRequest
from src.auth import AuthError, issue_access_token, validate_token
from src.config import Settings
from src.provider import ProviderError, UpstreamProvider
from src.session import User

logger = logging.getLogger(__name__)

CONSENT_PATH = "/api/mcp/authorize"
CALLBACK_PATH = "/api/mcp/callback/{provider}"

View = Callable[[Request], Awaitable[Response]]


class ConsentError(Exception):
    """
    A consent or callback failure with an RFC 6749 error code.

    str(error) is the human-readable description. The approval page shows it
    to the user as-is.
    """

    def __init__(self, error: str, description: str, status_code: int = 400):
        self.error = error
        self.description = description
        self.status_code = status_code
        super().__init__(description)


class PendingAuthorization(BaseModel):
    """An /authorize request the SDK accepted, waiting for the user."""

    txn_id: str
    client_id: str
    params: AuthorizationParams
    created_at: float


class ApprovedGrant(BaseModel):
    """An approved request, waiting for the upstream provider to return."""

    state: str
    client_id: str
    params: AuthorizationParams
    user_id: str
    created_at: float


class ConsentAuthorizationCode(AuthorizationCode):
    user_id: str
    upstream_login: str


class ConsentRefreshToken(RefreshToken):
    user_id: str


class DecisionRecord(BaseModel):
    user_id: str
    client_id: str
    decision: ApprovalDecision
    recorded_at: float


class OAuthStore:
    """
    In-memory registrations, consent transactions, codes, refresh tokens and
    the decision log.

    Every write first drops what has outlived its lifetime: transactions,
    decision keys and log entries after ttl_seconds, codes and refresh tokens
    at their own expiry. Client registrations are kept.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.time):
        self._lock = asyncio.Lock()
        self._ttl = ttl_seconds
        self._clock = clock
        self._clients: dict[str, OAuthClientInformationFull] = {}
        self._pending: dict[str, PendingAuthorization] = {}
        self._grants: dict[str, ApprovedGrant] = {}
        self._codes: dict[str, ConsentAuthorizationCode] = {}
        self._refresh_tokens: dict[str, ConsentRefreshToken] = {}
        self._decided: dict[str, float] = {}
        self.decisions: list[DecisionRecord] = []

    def _prune(self) -> None:
        now = self._clock()
        cutoff = now - self._ttl
        self._pending = {k: v for k, v in self._pending.items() if v.created_at >= cutoff}
        self._grants = {k: v for k, v in self._grants.items() if v.created_at >= cutoff}
        self._codes = {k: v for k, v in self._codes.items() if v.expires_at >= now}
        self._refresh_tokens = {
            k: v
            for k, v in self._refresh_tokens.items()
            if v.expires_at is None or v.expires_at >= now
        }
        self._decided = {k: at for k, at in self._decided.items() if at >= cutoff}
        self.decisions = [d for d in self.decisions if d.recorded_at >= cutoff]

    def counts(self) -> dict[str, int]:
        return {
            "clients": len(self._clients),
            "pending": len(self._pending),
            "grants": len(self._grants),
            "codes": len(self._codes),
            "refresh_tokens": len(self._refresh_tokens),
            "decided": len(self._decided),
            "decisions": len(self.decisions),
        }

    async def save_client(self, client: OAuthClientInformationFull) -> None:
        async with self._lock:
            self._clients[client.client_id] = client

    async def get_client(self, client_id: str) -> OAuthClientInformationFull | None:
        async with self._lock:
            return self._clients.get(client_id)

    async def put_pending(self, pending: PendingAuthorization) -> None:
        async with self._lock:
            self._prune()
            self._pending[pending.txn_id] = pending

    async def get_pending(self, txn_id: str) -> PendingAuthorization | None:
        async with self._lock:
            return self._pending.get(txn_id)

    async def claim_decision(self, key: str) -> bool:
        """Mark a request as decided. False if it already was."""
        async with self._lock:
            self._prune()
            if key in self._decided:
                return False
            self._decided[key] = self._clock()
            return True

    async def append_decision(self, record: DecisionRecord) -> None:
        async with self._lock:
            self._prune()
            self.decisions.append(record)

    async def put_grant(self, grant: ApprovedGrant) -> None:
        async with self._lock:
            self._prune()
            self._grants[grant.state] = grant

    async def pop_grant(self, state: str) -> ApprovedGrant | None:
        async with self._lock:
            return self._grants.pop(state, None)

    async def put_code(self, code: ConsentAuthorizationCode) -> None:
        async with self._lock:
            self._prune()
            self._codes[code.code] = code

    async def pop_code(self, code: str) -> ConsentAuthorizationCode | None:
        async with self._lock:
            return self._codes.pop(code, None)

    async def put_refresh_token(self, token: ConsentRefreshToken) -> None:
        async with self._lock:
            self._prune()
            self._refresh_tokens[token.token] = token

    async def get_refresh_token(self, token: str) -> ConsentRefreshToken | None:
        async with self._lock:
            return self._refresh_tokens.get(token)

    async def pop_refresh_token(self, token: str) -> ConsentRefreshToken | None:
        async with self._lock:
            return self._refresh_tokens.pop(token, None)


class ConsentOAuthProvider(OAuthProvider):
    """
    OAuthProvider whose authorize step goes through the browser consent page.

    /authorize is also an alias of the sign-in page: a request that names no
    client_id is handed to sign_in_view instead of the SDK handler.
    """

    def __init__(
        self,
        settings: Settings,
        upstream: UpstreamProvider,
        store: OAuthStore | None = None,
        clock: Callable[[], float] = time.time,
        sign_in_view: View | None = None,
    ):
        super().__init__(
            base_url=settings.base_url,
            client_registration_options=ClientRegistrationOptions(
                enabled=True,
                valid_scopes=list(settings.default_scopes),
                default_scopes=list(settings.default_scopes),
            ),
        )
        self.settings = settings
        self.upstream = upstream
        self._clock = clock
        self.store = store or OAuthStore(settings.authorization_code_ttl_seconds, clock)
        self.sign_in_view = sign_in_view

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    def get_routes(self, mcp_path: str | None = None) -> list[Route]:
        routes = []
        for route in super().get_routes(mcp_path):
            if isinstance(route, Route) and route.path == "/authorize":
                route = Route("/authorize", endpoint=self._authorize_or_sign_in, methods=["GET", "POST"])
            routes.append(route)
        return routes

    async def _authorize_or_sign_in(self, request: Request) -> Response:
        fields = request.query_params if request.method == "GET" else await request.form()
        if "client_id" in fields or self.sign_in_view is None:
            return await AuthorizationHandler(self).handle(request)
        return await self.sign_in_view(request)

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    async def get_client(self, client_id: str) -> OAuthClientInformationFull | None:
        return await self.store.get_client(client_id)

    async def register_client(self, client_info: OAuthClientInformationFull) -> None:
        await self.store.save_client(client_info)
        logger.info(
            "Client registered",
            extra={
                "auth_data": {
                    "client_id": client_info.client_id,
                    "client_name": client_info.client_name,
                }
            },
        )

    # ------------------------------------------------------------------
    # Consent
    # ------------------------------------------------------------------

    async def authorize(
        self, client: OAuthClientInformationFull, params: AuthorizationParams
    ) -> str:
        """Park a validated request and return the consent page URL."""
        if params.scopes is None:
            registered = client.scope.split() if client.scope else self.settings.default_scopes
            params = params.model_copy(update={"scopes": list(registered)})

        txn_id = secrets.token_urlsafe(24)
        await self.store.put_pending(
            PendingAuthorization(
                txn_id=txn_id,
                client_id=client.client_id,
                params=params,
                created_at=self._clock(),
            )
        )
        logger.info(
            "Authorization request awaiting consent",
            extra={"auth_data": {"client_id": client.client_id, "scopes": params.scopes}},
        )
        base = self.settings.base_url.rstrip("/")
        return f"{base}{CONSENT_PATH}?{urlencode({'txn': txn_id})}"

    async def _pending(self, txn_id: str | None) -> tuple[PendingAuthorization, OAuthClientInformationFull]:
        if not txn_id:
            raise ConsentError("invalid_request", "Missing txn parameter")
        pending = await self.store.get_pending(txn_id)
        if pending is None or pending.created_at + self.settings.authorization_code_ttl_seconds < self._clock():
            raise ConsentError("invalid_request", "Unknown or expired authorization request")
        client = await self.store.get_client(pending.client_id)
        if client is None:
            raise ConsentError("invalid_client", "Unknown or expired client registration")
        return pending, client

    async def describe(self, txn_id: str | None) -> AuthorizationRequest:
        _, client = await self._pending(txn_id)
        return AuthorizationRequest(
            client_name=client.client_name or client.client_id,
            client_uri=str(client.client_uri) if client.client_uri else None,
            policy_uri=str(client.policy_uri) if client.policy_uri else None,
            tos_uri=str(client.tos_uri) if client.tos_uri else None,
            redirect_uris=[str(uri) for uri in client.redirect_uris or []],
            contacts=list(client.contacts or []),
        )

    def csrf_token(self, user: User, txn_id: str) -> str:
        message = f"{user.id}|{txn_id}".encode()
        key = self.settings.session_secret_key.encode()
        return hmac.new(key, message, hashlib.sha256).hexdigest()

    async def record_decision(
        self,
        txn_id: str | None,
        user: User,
        decision: ApprovalDecision,
        csrf_token: str | None,
    ) -> str:
        """
        Record the user's decision and return where the browser goes next.

        At most one decision is recorded per user and request; a second
        submission fails with 409 and changes nothing.
        """
        pending, client = await self._pending(txn_id)
        params = pending.params

        if not csrf_token or not hmac.compare_digest(csrf_token, self.csrf_token(user, pending.txn_id)):
            raise ConsentError(
                "invalid_request",
                "The consent form has expired. Reload the page and try again.",
                403,
            )

        if not await self.store.claim_decision(f"{user.id}|{pending.txn_id}"):
            raise ConsentError(
                "invalid_request",
                "A decision has already been recorded for this authorization request",
                409,
            )

        await self.store.append_decision(
            DecisionRecord(
                user_id=user.id,
                client_id=client.client_id,
                decision=decision,
                recorded_at=self._clock(),
            )
        )
        logger.info(
            "Authorization decision recorded",
            extra={
                "auth_data": {
                    "subject": user.id,
                    "client_id": client.client_id,
                    "decision": decision.value,
                }
            },
        )

        if decision is ApprovalDecision.DENIED:
            return construct_redirect_uri(
                str(params.redirect_uri), error="access_denied", state=params.state
            )

        state = secrets.token_urlsafe(24)
        await self.store.put_grant(
            ApprovedGrant(
                state=state,
                client_id=client.client_id,
                params=params,
                user_id=user.id,
                created_at=self._clock(),
            )
        )
        return await self.upstream.authorize_url(state=state, redirect_uri=self.settings.callback_url)

    # ------------------------------------------------------------------
    # Upstream callback
    # ------------------------------------------------------------------

    async def complete_callback(self, provider_name: str, query: Mapping[str, str]) -> str:
        """Finish a grant after the upstream provider returns; returns the client redirect."""
        if provider_name != self.upstream.name:
            raise ConsentError("invalid_request", f"Unknown provider '{provider_name}'", 404)

        state = query.get("state")
        if not state:
            raise ConsentError("invalid_request", "Missing state parameter")

        grant = await self.store.pop_grant(state)
        if grant is None or grant.created_at + self.settings.authorization_code_ttl_seconds < self._clock():
            raise ConsentError("invalid_request", "Unknown or expired authorization transaction")
        params = grant.params

        if query.get("error"):
            logger.warning(
                "Upstream provider refused authorization",
                extra={
                    "auth_data": {
                        "provider": provider_name,
                        "client_id": grant.client_id,
                        "reason": query.get("error"),
                    }
                },
            )
            return construct_redirect_uri(
                str(params.redirect_uri), error="access_denied", state=params.state
            )

        upstream_code = query.get("code")
        if not upstream_code:
            raise ConsentError("invalid_request", "Missing code parameter")

        try:
            identity = await self.upstream.fetch_identity(upstream_code, self.settings.callback_url)
        except ProviderError as e:
            raise ConsentError("server_error", str(e), 502) from e

        code = ConsentAuthorizationCode(
            code=secrets.token_urlsafe(32),
            scopes=list(params.scopes or []),
            expires_at=self._clock() + self.settings.authorization_code_ttl_seconds,
            client_id=grant.client_id,
            code_challenge=params.code_challenge,
            redirect_uri=params.redirect_uri,
            redirect_uri_provided_explicitly=params.redirect_uri_provided_explicitly,
            resource=params.resource,
            user_id=grant.user_id,
            upstream_login=identity.login,
        )
        await self.store.put_code(code)
        logger.info(
            "Authorization code issued",
            extra={
                "auth_data": {
                    "subject": grant.user_id,
                    "client_id": grant.client_id,
                    "upstream_login": identity.login,
                }
            },
        )
        return construct_redirect_uri(str(params.redirect_uri), code=code.code, state=params.state)

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    async def load_authorization_code(
        self, client: OAuthClientInformationFull, authorization_code: str
    ) -> ConsentAuthorizationCode | None:
        # Codes are single use: a failed exchange burns the code too.
        code = await self.store.pop_code(authorization_code)
        if code is None or code.client_id != client.client_id:
            return None
        if code.expires_at < self._clock():
            return None
        return code

    async def _issue_tokens(self, user_id: str, client_id: str, scopes: list[str]) -> OAuthToken:
        access_token = issue_access_token(user_id, scopes, client_id)
        refresh_token = ConsentRefreshToken(
            token=secrets.token_urlsafe(32),
            client_id=client_id,
            scopes=scopes,
            expires_at=int(self._clock() + self.settings.refresh_token_ttl_seconds),
            user_id=user_id,
        )
        await self.store.put_refresh_token(refresh_token)
        logger.info(
            "Access token issued",
            extra={"auth_data": {"subject": user_id, "client_id": client_id, "scopes": scopes}},
        )
        return OAuthToken(
            access_token=access_token,
            token_type="Bearer",
            expires_in=self.settings.access_token_ttl_seconds,
            scope=" ".join(scopes),
            refresh_token=refresh_token.token,
        )

    async def exchange_authorization_code(
        self, client: OAuthClientInformationFull, authorization_code: ConsentAuthorizationCode
    ) -> OAuthToken:
        return await self._issue_tokens(
            authorization_code.user_id, authorization_code.client_id, authorization_code.scopes
        )

    async def load_refresh_token(
        self, client: OAuthClientInformationFull, refresh_token: str
    ) -> ConsentRefreshToken | None:
        token = await self.store.get_refresh_token(refresh_token)
        if token is None or token.client_id != client.client_id:
            return None
        if token.expires_at is not None and token.expires_at < self._clock():
            return None
        return token

    async def exchange_refresh_token(
        self,
        client: OAuthClientInformationFull,
        refresh_token: ConsentRefreshToken,
        scopes: list[str],
    ) -> OAuthToken:
        # Refresh tokens rotate: the presented one stops working.
        if await self.store.pop_refresh_token(refresh_token.token) is None:
            raise TokenError("invalid_grant", "Refresh token is invalid or has already been used")
        return await self._issue_tokens(
            refresh_token.user_id, refresh_token.client_id, scopes or refresh_token.scopes
        )

    async def load_access_token(self, token: str) -> AccessToken | None:
        try:
            token_info = validate_token(f"Bearer {token}")
        except AuthError as e:
            logger.warning(
                "Authentication failed",
                extra={
                    "auth_data": {
                        "decision": "rejected",
                        "reason": "authentication_failed",
                        "detail": e.message,
                    }
                },
            )
            return None
        return AccessToken(
            token=token,
            client_id=token_info.client_id or "",
            scopes=token_info.scopes,
            expires_at=token_info.expires_at,
            claims={"sub": token_info.subject, "client_id": token_info.client_id},
        )
