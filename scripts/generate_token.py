"""
CLI utility to mint tokens for local testing.

The server normally issues access tokens itself at /token once a user
has approved a client in the browser. For poking at /mcp with curl, or for
skipping the sign-in page, this script signs the same tokens directly with the
server's secrets.

Usage examples:

    # Access token for /mcp with read-only tools
    uv run python -m scripts.generate_token --sub alice --scope tools:read

    # Access token with every scope, bound to a client id
    uv run python -m scripts.generate_token --sub alice --scope tools:read tools:write \\
        --client-id mcp_local

    # Expired access token (for testing rejection)
    uv run python -m scripts.generate_token --sub alice --scope tools:read --exp-hours -1

    # Session cookie value for the browser pages
    uv run python -m scripts.generate_token --kind session --sub alice --email alice@example.com

    # MCP_ACCOUNTS entry (bcrypt hash) for the sign-in page
    uv run python -m scripts.generate_token --kind account --email alice@example.com --password s3cret

The access token is used with curl:

    curl -X POST http://localhost:8080/mcp \\
      -H "Content-Type: application/json" \\
      -H "Accept: application/json, text/event-stream" \\
      -H "Authorization: Bearer <token>" \\
      -d '{"jsonrpc":"2.0","id":1,"method":"initialize",...}'

The session value is set as the "session" cookie (MCP_SESSION_COOKIE_NAME).
"""

import argparse
import datetime
import json

from src.auth import issue_access_token
from src.config import settings
from src.login import hash_password
from src.session import SessionStore, User


def generate_access_token(
    subject: str, scopes: list[str], client_id: str | None, exp_hours: float
) -> str:
    return issue_access_token(subject, scopes, client_id, ttl_seconds=int(exp_hours * 3600))


def generate_session_cookie(subject: str, email: str | None, exp_hours: float) -> str:
    return SessionStore(settings).encode(User(id=subject, email=email), ttl_hours=exp_hours)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Mint access tokens or session cookies for the MCP server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Read-only access token:
    %(prog)s --sub alice --scope tools:read

  Full access token:
    %(prog)s --sub alice --scope tools:read tools:write

  Session cookie:
    %(prog)s --kind session --sub alice --email alice@example.com

  Sign-in account:
    %(prog)s --kind account --email alice@example.com --password s3cret

Secrets come from MCP_JWT_SECRET_KEY and MCP_SESSION_SECRET_KEY.
        """,
    )

    parser.add_argument(
        "--kind",
        choices=["access", "session", "account"],
        default="access",
        help="What to mint: a bearer token for /mcp, a session cookie value or an MCP_ACCOUNTS entry",
    )
    parser.add_argument(
        "--sub",
        help="Subject claim: the user id the token identifies",
    )
    parser.add_argument(
        "--password",
        help="Password to hash (accounts only)",
    )
    parser.add_argument(
        "--scope",
        nargs="+",
        default=list(settings.default_scopes),
        help="Space-separated list of scopes (access tokens only)",
    )
    parser.add_argument(
        "--client-id",
        default=None,
        help="Client id to bind the access token to",
    )
    parser.add_argument(
        "--email",
        default=None,
        help="Email stored in the session cookie",
    )
    parser.add_argument(
        "--exp-hours",
        type=float,
        default=1.0,
        help="Hours until expiry (negative = already expired, default: 1)",
    )

    args = parser.parse_args()

    if args.kind == "account":
        if not args.email or not args.password:
            parser.error("--kind account requires --email and --password")
        entry = {args.email.strip().lower(): hash_password(args.password)}
        print(f"MCP_ACCOUNTS='{json.dumps(entry)}'")
        return

    if not args.sub:
        parser.error("--sub is required for access tokens and session cookies")

    if args.kind == "session":
        value = generate_session_cookie(args.sub, args.email, args.exp_hours)
    else:
        value = generate_access_token(args.sub, args.scope, args.client_id, args.exp_hours)

    exp_time = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(
        hours=args.exp_hours
    )

    print(f"Kind:       {args.kind}")
    print(f"Subject:    {args.sub}")
    if args.kind == "access":
        print(f"Scopes:     {args.scope}")
        print(f"Client:     {args.client_id or '-'}")
    else:
        print(f"Email:      {args.email or '-'}")
    print(f"Expires:    {exp_time.isoformat()}")
    print()
    print(f"Token: {value}")

    if args.kind == "session":
        print()
        print(f"Cookie header:  {settings.session_cookie_name}={value}")


if __name__ == "__main__":
    main()
