"""
Unit tests for session resolution and the session gate
(src/session.py, src/gate.py).

The gate must fail closed: it renders a protected view only for a resolved
session with a user, renders nothing while the session is pending, and
otherwise redirects to the login entry point with the original path + query
remembered for after sign-in.
"""

import pytest
from starlette.requests import Request
from starlette.responses import Response

from src.config import settings
from src.gate import GateOutcome, ReturnPath, SessionGate, is_local_path
from src.session import Session, SessionError, SessionStore, User


def make_request(cookies: dict[str, str] | None = None, path: str = "/", query: str = "") -> Request:
    headers = []
    if cookies:
        cookie_header = "; ".join(f"{k}={v}" for k, v in cookies.items())
        headers.append((b"cookie", cookie_header.encode()))
    return Request(
        {
            "type": "http",
            "method": "GET",
            "path": path,
            "query_string": query.encode(),
            "headers": headers,
        }
    )


class TestSessionGate:
    def setup_method(self):
        self.gate = SessionGate(login_path="/login")

    def test_pending_session_renders_placeholder(self):
        result = self.gate.guard(Session.unresolved(), "/api/mcp/authorize", "client_id=abc")

        assert result.outcome is GateOutcome.PLACEHOLDER
        assert result.location is None

    def test_pending_session_with_user_still_renders_placeholder(self):
        """A user on a pending snapshot is never trusted."""
        session = Session(user=User(id="u1"), pending=True)

        assert self.gate.guard(session, "/x").outcome is GateOutcome.PLACEHOLDER

    def test_anonymous_session_redirects_with_path_and_query(self):
        result = self.gate.guard(Session.anonymous(), "/api/mcp/authorize", "client_id=abc&state=xyz")

        assert result.outcome is GateOutcome.REDIRECT
        assert result.location == "/login"
        assert result.return_path == "/api/mcp/authorize?client_id=abc&state=xyz"

    def test_anonymous_session_without_query_remembers_bare_path(self):
        result = self.gate.guard(Session.anonymous(), "/api/mcp/authorize")

        assert result.return_path == "/api/mcp/authorize"

    def test_authenticated_session_renders(self):
        result = self.gate.guard(Session.for_user(User(id="u1")), "/api/mcp/authorize")

        assert result.outcome is GateOutcome.RENDER


class TestReturnPath:
    def test_remember_then_take_restores_path_and_query(self):
        return_path = ReturnPath("redirectAfterLogin")
        response = Response()
        original = "/api/mcp/authorize?client_id=abc&state=x%20y"

        return_path.remember(response, original)

        cookie_header = response.headers["set-cookie"]
        value = cookie_header.split(";", 1)[0].split("=", 1)[1]
        request = make_request({"redirectAfterLogin": value})
        assert return_path.take(request) == original

    def test_cookie_is_secure_when_configured(self):
        response = Response()

        ReturnPath("redirectAfterLogin", secure=True).remember(response, "/api/mcp/authorize")

        attributes = response.headers["set-cookie"].lower()
        assert "; secure" in attributes
        assert "httponly" in attributes

    def test_cookie_is_not_secure_by_default(self):
        response = Response()

        ReturnPath("redirectAfterLogin").remember(response, "/api/mcp/authorize")

        assert "secure" not in response.headers["set-cookie"].lower()

    def test_take_without_cookie_returns_root(self):
        assert ReturnPath().take(make_request()) == "/"

    @pytest.mark.parametrize(
        "stored",
        ["https%3A%2F%2Fevil.example%2F", "%2F%2Fevil.example", "relative%2Fpath"],
    )
    def test_take_refuses_off_site_targets(self, stored):
        request = make_request({"redirectAfterLogin": stored})

        assert ReturnPath().take(request) == "/"

    def test_forget_expires_cookie(self):
        response = Response()

        ReturnPath("redirectAfterLogin").forget(response)

        cookie_header = response.headers["set-cookie"]
        assert cookie_header.startswith("redirectAfterLogin=")
        assert "Max-Age=0" in cookie_header

    def test_is_local_path(self):
        assert is_local_path("/login")
        assert not is_local_path("")
        assert not is_local_path(None)
        assert not is_local_path("/\\evil.example")


class TestSessionStore:
    def setup_method(self):
        self.store = SessionStore(settings)

    async def test_valid_cookie_resolves_to_user(self, make_session_cookie):
        request = make_request({"session": make_session_cookie(user_id="u1", email="a@b.co")})

        session = await self.store.resolve(request)

        assert session.resolved
        assert session.user == User(id="u1", email="a@b.co")

    async def test_missing_cookie_resolves_anonymous(self):
        session = await self.store.resolve(make_request())

        assert session.resolved
        assert session.user is None

    async def test_expired_cookie_resolves_anonymous(self, make_session_cookie):
        request = make_request({"session": make_session_cookie(exp_hours=-1)})

        session = await self.store.resolve(request)

        assert session.user is None
        assert not session.authenticated

    async def test_tampered_cookie_resolves_anonymous(self, make_session_cookie):
        value = make_session_cookie()
        request = make_request({"session": value[:-4] + "abcd"})

        session = await self.store.resolve(request)

        assert session.user is None

    def test_decode_rejects_garbage(self):
        with pytest.raises(SessionError):
            self.store.decode("not-a-session")

    def test_start_sets_http_only_cookie(self):
        response = Response()

        self.store.start(response, User(id="u1"))

        cookie_header = response.headers["set-cookie"]
        assert cookie_header.startswith("session=")
        assert "HttpOnly" in cookie_header
        assert self.store.decode(cookie_header.split(";", 1)[0].split("=", 1)[1]).id == "u1"
