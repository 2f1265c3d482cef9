"""
Session gate for protected pages.

guard() is a pure decision over a Session snapshot:

    pending                 -> PLACEHOLDER (render nothing yet)
    resolved, no user       -> REDIRECT to the login entry point, remembering
                               the requested path + query string
    resolved, with user     -> RENDER the protected view

The remembered path lives in a cookie (ReturnPath) that the login flow reads
and clears after a successful sign-in.
"""

import enum
import logging
from dataclasses import dataclass
from urllib.parse import quote, unquote

from starlette.requests import Request
from starlette.responses import Response

from src.session import Session

logger = logging.getLogger(__name__)


class GateOutcome(enum.Enum):
    PLACEHOLDER = "placeholder"
    REDIRECT = "redirect"
    RENDER = "render"


@dataclass(frozen=True)
class GateResult:
    outcome: GateOutcome
    location: str | None = None
    return_path: str | None = None


class SessionGate:
    """Decides whether a protected view may be shown for a session."""

    def __init__(self, login_path: str = "/login"):
        self.login_path = login_path

    def guard(self, session: Session, path: str, query: str = "") -> GateResult:
        if session.pending:
            return GateResult(GateOutcome.PLACEHOLDER)

        if session.user is None:
            return_path = f"{path}?{query}" if query else path
            logger.info(
                "Protected view requires login",
                extra={"auth_data": {"decision": "redirect", "return_path": return_path}},
            )
            return GateResult(
                GateOutcome.REDIRECT,
                location=self.login_path,
                return_path=return_path,
            )

        return GateResult(GateOutcome.RENDER)


def is_local_path(path: str | None) -> bool:
    """Only same-origin absolute paths are valid post-login targets."""
    return bool(path) and path.startswith("/") and not path.startswith("//") and "\\" not in path


class ReturnPath:
    """The post-login return path, kept in a single cookie."""

    def __init__(self, cookie_name: str = "redirectAfterLogin", secure: bool = False):
        self.cookie_name = cookie_name
        self.secure = secure

    def remember(self, response: Response, path: str) -> None:
        response.set_cookie(
            self.cookie_name,
            quote(path, safe=""),
            httponly=True,
            secure=self.secure,
            samesite="lax",
        )

    def take(self, request: Request) -> str:
        """Return the stored path, or "/" when nothing usable is stored."""
        stored = unquote(request.cookies.get(self.cookie_name, ""))
        if is_local_path(stored):
            return stored
        return "/"

    def forget(self, response: Response) -> None:
        response.delete_cookie(self.cookie_name)
