"""
Unit tests for access token issuing and validation (src/auth.py).

validate_token() is exercised step by step:

1. Header presence check
2. Bearer scheme extraction
3. JWT signature verification
4. Expiration check
5. Claims validation (sub, scope, client_id)

Each test targets one failure mode, so a failing test points straight at the
validation step that broke.
"""

import pytest

from src.auth import AuthError, issue_access_token, validate_token


class TestValidateToken:
    """Tests for the validate_token() function."""

    # ----- Happy path -----

    def test_valid_token_decodes_correctly(self, make_auth_header):
        """A properly signed token with valid claims should decode successfully."""
        header = make_auth_header(sub="alice", scopes=["tools:read", "tools:write"])

        result = validate_token(header)

        assert result.subject == "alice"
        assert result.scopes == ["tools:read", "tools:write"]
        assert result.client_id is None

    def test_client_id_claim_is_returned(self, make_auth_header):
        header = make_auth_header(sub="bob", scopes=["tools:read"], client_id="mcp_abc")

        result = validate_token(header)

        assert result.client_id == "mcp_abc"

    # ----- Missing / malformed Authorization header -----

    def test_missing_header_raises_auth_error(self):
        with pytest.raises(AuthError, match="Missing Authorization header"):
            validate_token(None)

    def test_empty_header_raises_auth_error(self):
        with pytest.raises(AuthError, match="Missing Authorization header"):
            validate_token("")

    def test_non_bearer_scheme_raises_auth_error(self, make_token):
        """Basic and other schemes are rejected even with a valid token."""
        token = make_token(sub="alice", scopes=["tools:read"])

        with pytest.raises(AuthError, match="Invalid Authorization header format"):
            validate_token(f"Basic {token}")

    def test_missing_token_after_bearer_raises_auth_error(self):
        with pytest.raises(AuthError, match="Invalid Authorization header format"):
            validate_token("Bearer")

    def test_bearer_scheme_case_insensitive(self, make_token):
        """The 'Bearer' scheme is matched case-insensitively per RFC 6750."""
        token = make_token(sub="alice", scopes=["tools:read"])

        result = validate_token(f"bearer {token}")

        assert result.subject == "alice"

    # ----- JWT signature and structure -----

    def test_malformed_token_raises_auth_error(self):
        with pytest.raises(AuthError, match="Invalid token"):
            validate_token("Bearer not-a-jwt-token")

    def test_wrong_signing_key_raises_auth_error(self, make_token):
        """
        A token signed with a different secret should be rejected.

        A forged token can carry any scopes it likes; only the signature
        tells it apart from one we issued.
        """
        token = make_token(sub="attacker", scopes=["tools:write"], secret="wrong-secret")

        with pytest.raises(AuthError, match="Invalid token"):
            validate_token(f"Bearer {token}")

    # ----- Expiration -----

    def test_expired_token_raises_auth_error(self, make_token):
        token = make_token(sub="alice", scopes=["tools:read"], exp_hours=-1)

        with pytest.raises(AuthError, match="Token has expired"):
            validate_token(f"Bearer {token}")

    def test_token_without_exp_claim_raises_auth_error(self, make_token):
        """Tokens without a finite lifetime are never accepted."""
        token = make_token(sub="alice", scopes=["tools:read"], include_exp=False)

        with pytest.raises(AuthError, match="Invalid token"):
            validate_token(f"Bearer {token}")

    # ----- Sub claim -----

    def test_token_without_sub_claim_raises_auth_error(self, make_token):
        token = make_token(scopes=["tools:read"], include_sub=False)

        with pytest.raises(AuthError, match="Invalid token"):
            validate_token(f"Bearer {token}")

    # ----- Scope claim validation -----

    def test_missing_scope_defaults_to_empty_list(self, make_token):
        """No scope claim means authenticated but allowed to use nothing."""
        token = make_token(sub="alice", scopes=None)

        result = validate_token(f"Bearer {token}")

        assert result.subject == "alice"
        assert result.scopes == []

    def test_non_list_scope_raises_auth_error(self, make_token):
        """
        A space-separated scope string is rejected rather than split.

        Access tokens we issue always carry a list.
        """
        token = make_token(
            sub="alice",
            scopes=None,
            extra_claims={"scope": "tools:read tools:write"},
        )

        with pytest.raises(AuthError, match="Invalid scope claim: must be a list"):
            validate_token(f"Bearer {token}")

    def test_scope_with_non_string_entries_raises_auth_error(self, make_token):
        token = make_token(
            sub="alice",
            scopes=None,
            extra_claims={"scope": ["tools:read", 123]},
        )

        with pytest.raises(AuthError, match="Invalid scope claim: all entries must be strings"):
            validate_token(f"Bearer {token}")

    def test_non_string_client_id_raises_auth_error(self, make_token):
        token = make_token(sub="alice", scopes=[], extra_claims={"client_id": 42})

        with pytest.raises(AuthError, match="Invalid client_id claim"):
            validate_token(f"Bearer {token}")


class TestIssueAccessToken:
    """Tokens minted by the token endpoint must pass validate_token()."""

    def test_issued_token_round_trips(self):
        token = issue_access_token("user-1", ["tools:read"], "mcp_client")

        result = validate_token(f"Bearer {token}")

        assert result.subject == "user-1"
        assert result.scopes == ["tools:read"]
        assert result.client_id == "mcp_client"

    def test_negative_ttl_issues_expired_token(self):
        token = issue_access_token("user-1", ["tools:read"], "mcp_client", ttl_seconds=-60)

        with pytest.raises(AuthError, match="Token has expired"):
            validate_token(f"Bearer {token}")
