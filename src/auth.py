"""
Access token issuance and validation.

Once a user has approved a client and the client has exchanged its
authorization code at /token, the client holds a signed JWT access
token. Every MCP request carries it as "Authorization: Bearer <jwt>".

This module:
- Mints access tokens for an approved grant (issue_access_token)
- Extracts Bearer tokens from the HTTP Authorization header
- Validates the JWT signature and expiration
- Extracts subject, scopes and client id from the token claims

Any validation failure rejects the request; there is no fallback to
anonymous access.

Token structure (JWT payload):
    {
        "sub": "user-id",               # The user who approved the client
        "scope": ["tools:read"],        # What the client may call
        "client_id": "mcp_1f2e...",     # The registered client it was issued to
        "exp": 1738800000
    }
"""

import datetime
from dataclasses import dataclass

import jwt

from src.config import settings


class AuthError(Exception):
    """
    Raised when token validation fails for any reason.

    One exception type covers every failure (missing token, invalid signature,
    expired, malformed claims). The detailed reason is logged server-side.

    Attributes:
        message: Human-readable error description (logged server-side)
        status_code: HTTP status code to return (401 for auth failures)
    """

    def __init__(self, message: str, status_code: int = 401):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class TokenInfo:
    """
    Validated token information extracted from an access token.

    Attributes:
        subject: The user the grant belongs to
        scopes: Authorized scopes (e.g., ["tools:read", "tools:write"])
        client_id: The client the token was issued to, if recorded
        expires_at: The exp claim, as a Unix timestamp
    """

    subject: str
    scopes: list[str]
    client_id: str | None = None
    expires_at: int | None = None


def issue_access_token(
    subject: str,
    scopes: list[str],
    client_id: str | None,
    ttl_seconds: int | None = None,
) -> str:
    """Sign an access token for an approved grant."""
    now = datetime.datetime.now(datetime.timezone.utc)
    ttl = settings.access_token_ttl_seconds if ttl_seconds is None else ttl_seconds
    payload = {
        "sub": subject,
        "scope": list(scopes),
        "client_id": client_id,
        "iat": now,
        "exp": now + datetime.timedelta(seconds=ttl),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def validate_token(authorization_header: str | None) -> TokenInfo:
    """
    Validate a Bearer token from the Authorization header.

    Steps:
    1. Check that a header is present
    2. Extract the token from "Bearer <token>" format
    3. Decode and verify the JWT (signature + expiration)
    4. Extract and validate the claims (sub, scope, client_id)

    Args:
        authorization_header: The raw Authorization header value,
                              expected format: "Bearer <jwt-token>"

    Returns:
        TokenInfo with the validated subject, scopes and client id

    Raises:
        AuthError: If any validation step fails
    """
    if not authorization_header:
        raise AuthError("Missing Authorization header")

    # RFC 6750: the scheme is matched case-insensitively.
    parts = authorization_header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthError("Invalid Authorization header format, expected 'Bearer <token>'")

    token = parts[1]

    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise AuthError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise AuthError(f"Invalid token: {e}")

    subject = payload.get("sub", "")
    scopes_claim = payload.get("scope", [])

    if not isinstance(scopes_claim, list):
        raise AuthError("Invalid scope claim: must be a list")

    if not all(isinstance(s, str) for s in scopes_claim):
        raise AuthError("Invalid scope claim: all entries must be strings")

    client_id = payload.get("client_id")
    if client_id is not None and not isinstance(client_id, str):
        raise AuthError("Invalid client_id claim: must be a string")

    return TokenInfo(
        subject=subject,
        scopes=scopes_claim,
        client_id=client_id,
        expires_at=payload.get("exp"),
    )
