"""
Application configuration loaded from environment variables.

Uses pydantic-settings to define typed configuration that automatically reads
from environment variables. All config comes from the environment (or a local
.env file), never hardcoded in source code.

Groups of settings:
- Server: host, port, log level, public base URL
- Access tokens: the JWT secret used to sign bearer tokens issued to MCP clients
- Sessions: the cookie that identifies the signed-in user in the browser
- Consent page: the static application identity shown above every request
- Upstream provider: the identity provider the user is sent to after approving
- Accounts: a small email -> bcrypt hash table for the login entry point
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Server configuration with environment variable bindings.

    Each field maps to an environment variable with the MCP_ prefix.
    For example, `base_url` reads from MCP_BASE_URL, `accounts` reads a JSON
    object from MCP_ACCOUNTS.
    """

    # --- Server settings ---

    # "0.0.0.0" is required inside containers; use "127.0.0.1" locally if you
    # only want to accept local connections.
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "info"

    # Public origin of this server. Used to build the upstream callback URL and
    # the issuer advertised in the discovery metadata.
    base_url: str = "http://localhost:8080"

    # Where the callback relay forwards requests to. Empty means "the same
    # origin that served the page", which is the normal single-process setup.
    backend_url: str = ""

    # --- Access tokens (issued at /token, checked on /mcp) ---

    # Default is for local development only.
    jwt_secret_key: str = "dev-secret-change-me"
    jwt_algorithm: str = "HS256"
    access_token_ttl_seconds: int = 3600
    refresh_token_ttl_seconds: int = 30 * 24 * 3600

    # Lifetime of every step of a pending authorization: the consent
    # transaction, the upstream round trip and the issued code.
    authorization_code_ttl_seconds: int = 600

    # Scopes granted when a client does not ask for any.
    default_scopes: list[str] = ["tools:read", "tools:write"]

    # --- Browser session ---

    session_secret_key: str = "dev-session-secret-change-me"
    session_cookie_name: str = "session"
    session_ttl_hours: float = 8.0

    # Cookie holding the path a signed-out user originally asked for.
    return_path_cookie_name: str = "redirectAfterLogin"

    login_path: str = "/login"

    # --- Consent page identity ---

    app_name: str = "MCP Boilerplate"
    app_logo: str = "https://avatars.githubusercontent.com/u/314135?s=200&v=4"
    app_description: str = (
        "A remote MCP server that exposes its tools to authorized AI clients."
    )

    # --- Upstream identity provider ---

    # The name is the {provider} segment of /api/mcp/callback/{provider}.
    provider_name: str = "github"
    provider_authorize_url: str = "https://github.com/login/oauth/authorize"
    provider_token_url: str = "https://github.com/login/oauth/access_token"
    provider_userinfo_url: str = "https://api.github.com/user"
    provider_client_id: str = ""
    provider_client_secret: str = ""
    provider_scope: str = "read:user"

    # --- Login ---

    # email -> bcrypt hash, e.g. MCP_ACCOUNTS='{"alice@example.com": "$2b$12$..."}'.
    # Account management lives elsewhere; this table only backs /login.
    accounts: dict[str, str] = {}

    model_config = {
        "env_prefix": "MCP_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }

    @property
    def callback_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/api/mcp/callback/{self.provider_name}"


# Singleton instance: import this from other modules.
settings = Settings()
