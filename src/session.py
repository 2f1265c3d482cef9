"""
Browser session resolution.

The signed-in user is identified by a signed session cookie (HS256 JWT with
"sub", "email" and "exp" claims). SessionStore turns the incoming request into
an immutable Session snapshot that the gate and the approval page consume.

A snapshot is either pending (resolution still in flight) or resolved. A
resolved snapshot either carries a user or it doesn't. Any problem reading the
cookie resolves to "no user": the store fails closed.
"""

import datetime
import logging
from dataclasses import dataclass

import jwt
from starlette.requests import Request
from starlette.responses import Response

from src.config import Settings

logger = logging.getLogger(__name__)


class SessionError(Exception):
    """Raised when a session cookie cannot be decoded."""


@dataclass(frozen=True)
class User:
    id: str
    email: str | None = None


@dataclass(frozen=True)
class Session:
    """
    Read-only snapshot of the current session.

    Attributes:
        user: The authenticated user, or None
        pending: True while resolution is still in flight. Consumers must not
                 look at `user` while this is set.
    """

    user: User | None = None
    pending: bool = False

    @property
    def resolved(self) -> bool:
        return not self.pending

    @property
    def authenticated(self) -> bool:
        return self.resolved and self.user is not None

    @classmethod
    def unresolved(cls) -> "Session":
        return cls(user=None, pending=True)

    @classmethod
    def anonymous(cls) -> "Session":
        return cls(user=None, pending=False)

    @classmethod
    def for_user(cls, user: User) -> "Session":
        return cls(user=user, pending=False)


class SessionStore:
    """Reads and writes the session cookie."""

    def __init__(self, settings: Settings):
        self._settings = settings

    @property
    def cookie_name(self) -> str:
        return self._settings.session_cookie_name

    def encode(self, user: User, ttl_hours: float | None = None) -> str:
        now = datetime.datetime.now(datetime.timezone.utc)
        hours = self._settings.session_ttl_hours if ttl_hours is None else ttl_hours
        payload = {
            "sub": user.id,
            "email": user.email,
            "iat": now,
            "exp": now + datetime.timedelta(hours=hours),
        }
        return jwt.encode(payload, self._settings.session_secret_key, algorithm="HS256")

    def decode(self, value: str) -> User:
        try:
            payload = jwt.decode(
                value,
                self._settings.session_secret_key,
                algorithms=["HS256"],
                options={"require": ["exp", "sub"]},
            )
        except jwt.InvalidTokenError as e:
            raise SessionError(str(e)) from e

        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise SessionError("Session subject must be a non-empty string")
        email = payload.get("email")
        return User(id=subject, email=email if isinstance(email, str) else None)

    async def resolve(self, request: Request) -> Session:
        """
        Resolve the session for a request.

        Never raises: a missing, expired, tampered or otherwise unreadable
        cookie resolves to an anonymous session.
        """
        value = request.cookies.get(self.cookie_name)
        if not value:
            return Session.anonymous()
        try:
            return Session.for_user(self.decode(value))
        except SessionError as e:
            logger.warning(
                "Session cookie rejected",
                extra={"auth_data": {"decision": "anonymous", "reason": str(e)}},
            )
            return Session.anonymous()
        except Exception:
            logger.exception("Session resolution failed")
            return Session.anonymous()

    def start(self, response: Response, user: User) -> None:
        response.set_cookie(
            self.cookie_name,
            self.encode(user),
            max_age=int(self._settings.session_ttl_hours * 3600),
            httponly=True,
            samesite="lax",
            secure=self._settings.base_url.startswith("https://"),
        )
