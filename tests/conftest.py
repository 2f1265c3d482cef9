"""
Shared test fixtures for the MCP server test suite.

Key fixtures:
- make_token: A factory function to generate JWT access tokens with any claims
- make_auth_header: The same, as a ready "Bearer <token>" header value
- make_session_cookie: A factory for signed browser session cookies
- asgi_app: The FastMCP ASGI app with its lifespan started (no real server)
- http_client: An httpx.AsyncClient wired to asgi_app

Testing approach:
- test_auth.py, test_gate.py, test_approval.py, test_registry.py, ...:
  unit tests of one module at a time, with fakes where a module talks to
  something else (httpx.MockTransport for HTTP, plain coroutines for the
  backend calls of the approval controller)
- test_tools.py, test_server.py: integration tests that send real HTTP
  requests through Starlette -> FastMCP -> middleware -> handlers in memory
"""

import asyncio
import datetime

import httpx
import jwt
import pytest

from src.config import settings
from src.session import SessionStore, User

# ---------------------------------------------------------------------------
# Known test secrets
# ---------------------------------------------------------------------------
# These match the settings defaults, so tokens generated in tests are accepted
# by validate_token() and SessionStore.decode().
TEST_SECRET = settings.jwt_secret_key
TEST_ALGORITHM = settings.jwt_algorithm


# ---------------------------------------------------------------------------
# Token factory fixture
# ---------------------------------------------------------------------------
@pytest.fixture
def make_token():
    """
    Factory fixture to generate JWT access tokens for testing.

    Usage in tests:
        def test_something(make_token):
            token = make_token(sub="alice", scopes=["tools:read"])
            # token is a raw JWT string (not "Bearer ..." prefixed)
    """

    def _make_token(
        sub: str = "test-user",
        scopes: list[str] | None = None,
        client_id: str | None = None,
        secret: str = TEST_SECRET,
        algorithm: str = TEST_ALGORITHM,
        exp_hours: float = 1.0,
        extra_claims: dict | None = None,
        include_exp: bool = True,
        include_sub: bool = True,
    ) -> str:
        """
        Generate a signed JWT token with the given claims.

        Args:
            sub: Subject claim (who the token identifies)
            scopes: List of scopes (None means omit the claim entirely)
            client_id: Client the token was issued to (None omits the claim)
            secret: Signing key
            algorithm: JWT algorithm
            exp_hours: Hours until expiration (negative = already expired)
            extra_claims: Additional claims to include in the payload
            include_exp: Whether to include the exp claim
            include_sub: Whether to include the sub claim
        """
        now = datetime.datetime.now(datetime.timezone.utc)
        payload: dict = {}

        if include_sub:
            payload["sub"] = sub

        if scopes is not None:
            payload["scope"] = scopes

        if client_id is not None:
            payload["client_id"] = client_id

        if include_exp:
            payload["exp"] = now + datetime.timedelta(hours=exp_hours)

        payload["iat"] = now

        if extra_claims:
            payload.update(extra_claims)

        return jwt.encode(payload, secret, algorithm=algorithm)

    return _make_token


# ---------------------------------------------------------------------------
# Authorization header helper fixture
# ---------------------------------------------------------------------------
@pytest.fixture
def make_auth_header(make_token):
    """
    Convenience fixture that returns a full "Bearer <token>" string.

    Usage in tests:
        def test_something(make_auth_header):
            header = make_auth_header(sub="alice", scopes=["tools:read"])
            # header is "Bearer eyJhbGci..."
    """

    def _make_auth_header(**kwargs) -> str:
        return f"Bearer {make_token(**kwargs)}"

    return _make_auth_header


# ---------------------------------------------------------------------------
# Session cookie fixture
# ---------------------------------------------------------------------------
@pytest.fixture
def make_session_cookie():
    """
    Factory for the value of a signed-in user's session cookie.

    Usage in tests:
        cookies = {"session": make_session_cookie(user_id="alice")}
    """
    store = SessionStore(settings)

    def _make_session_cookie(
        user_id: str = "user-1", email: str | None = "alice@example.com", exp_hours: float = 1.0
    ) -> str:
        return store.encode(User(id=user_id, email=email), ttl_hours=exp_hours)

    return _make_session_cookie


# ---------------------------------------------------------------------------
# ASGI app with a running lifespan
# ---------------------------------------------------------------------------
@pytest.fixture
async def asgi_app():
    """
    The FastMCP ASGI app with its lifespan started.

    The lifespan initializes the StreamableHTTP session manager's task group;
    without it every /mcp request fails. We drive the ASGI lifespan protocol
    by hand: send "lifespan.startup", then "lifespan.shutdown" on teardown.
    """
    from src.server import mcp

    app = mcp.http_app(transport="streamable-http")

    startup_complete = asyncio.Event()
    shutdown_triggered = asyncio.Event()

    async def receive():
        if not startup_complete.is_set():
            startup_complete.set()
            return {"type": "lifespan.startup"}
        await shutdown_triggered.wait()
        return {"type": "lifespan.shutdown"}

    async def send(message):
        pass

    scope = {"type": "lifespan", "asgi": {"version": "3.0"}}
    lifespan_task = asyncio.create_task(app(scope, receive, send))

    await startup_complete.wait()
    await asyncio.sleep(0.1)  # Give the task group time to initialize

    yield app

    shutdown_triggered.set()
    await lifespan_task


@pytest.fixture
async def http_client(asgi_app):
    """httpx client bound to the ASGI app. Redirects are not followed."""
    transport = httpx.ASGITransport(app=asgi_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
