"""
Integration tests for tool authorization via the MCP server.

These tests exercise the full path through the MCP protocol:
HTTP request -> AuthMiddleware -> RegistryTool -> ToolRegistry -> handler.

They verify that the middleware:
- Filters the tool list by the scopes registered for each tool
- Blocks calls the token is not scoped for
- Hands the validated session to the handler, which answers with content

Each test follows the MCP protocol:
1. POST to /mcp with "initialize" to start a session
2. Use the returned Mcp-Session-Id for subsequent requests
3. POST "tools/list" or "tools/call" with an Authorization header
"""

import json

import httpx
import pytest


@pytest.fixture
async def mcp_client(asgi_app, make_auth_header):
    """
    Factory for authenticated MCP sessions against the in-memory app.

    Returns (client, session_id, auth_header) for each call.
    """
    clients = []

    async def _create_mcp_client(
        sub: str = "test-user",
        scopes: list[str] | None = None,
    ):
        auth_header = make_auth_header(sub=sub, scopes=scopes or [], client_id="mcp_test")

        client = httpx.AsyncClient(transport=httpx.ASGITransport(app=asgi_app))
        clients.append(client)

        response = await client.post(
            "http://testserver/mcp",
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json, text/event-stream",
                "Authorization": auth_header,
            },
            json={
                "jsonrpc": "2.0",
                "id": 1,
                "method": "initialize",
                "params": {
                    "protocolVersion": "2025-03-26",
                    "capabilities": {},
                    "clientInfo": {"name": "test-client", "version": "1.0"},
                },
            },
        )

        session_id = response.headers.get("mcp-session-id")
        return client, session_id, auth_header

    yield _create_mcp_client

    for client in clients:
        await client.aclose()


# ---------------------------------------------------------------------------
# Helper functions for MCP protocol requests
# ---------------------------------------------------------------------------


def _headers(session_id: str, auth_header: str) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "Accept": "application/json, text/event-stream",
        "Mcp-Session-Id": session_id,
        "Authorization": auth_header,
    }


async def list_tools(client, session_id: str, auth_header: str) -> dict:
    """Send a tools/list request and return the parsed JSON-RPC response."""
    response = await client.post(
        "http://testserver/mcp",
        headers=_headers(session_id, auth_header),
        json={"jsonrpc": "2.0", "id": 2, "method": "tools/list", "params": {}},
    )
    return _parse_sse_response(response.text)


async def call_tool(
    client, session_id: str, auth_header: str, tool_name: str, arguments: dict | None = None
) -> dict:
    """Send a tools/call request and return the parsed JSON-RPC response."""
    response = await client.post(
        "http://testserver/mcp",
        headers=_headers(session_id, auth_header),
        json={
            "jsonrpc": "2.0",
            "id": 3,
            "method": "tools/call",
            "params": {"name": tool_name, "arguments": arguments or {}},
        },
    )
    return _parse_sse_response(response.text)


def _parse_sse_response(text: str) -> dict:
    """
    Parse an SSE response body into a JSON dict.

    Streamable HTTP answers with events like:
        event: message
        data: {"jsonrpc":"2.0","id":1,"result":{...}}
    """
    for line in text.strip().split("\n"):
        if line.startswith("data: "):
            return json.loads(line[6:])
    return {}


# ---------------------------------------------------------------------------
# Test: Tool list filtering by scope
# ---------------------------------------------------------------------------


class TestToolListFiltering:
    """Tests for scope-based tool list filtering (on_list_tools middleware)."""

    async def test_read_scope_sees_only_read_tools(self, mcp_client):
        client, session_id, auth_header = await mcp_client(sub="alice", scopes=["tools:read"])

        data = await list_tools(client, session_id, auth_header)
        tool_names = sorted(t["name"] for t in data["result"]["tools"])

        assert tool_names == ["add", "list_notes", "whoami"]

    async def test_both_scopes_see_all_tools(self, mcp_client):
        client, session_id, auth_header = await mcp_client(
            sub="bob", scopes=["tools:read", "tools:write"]
        )

        data = await list_tools(client, session_id, auth_header)
        tool_names = sorted(t["name"] for t in data["result"]["tools"])

        assert tool_names == [
            "add",
            "create_note",
            "delete_note",
            "list_notes",
            "update_note",
            "whoami",
        ]

    async def test_no_scopes_sees_no_tools(self, mcp_client):
        """Authenticated but not authorized for anything."""
        client, session_id, auth_header = await mcp_client(sub="dave", scopes=[])

        data = await list_tools(client, session_id, auth_header)

        assert data["result"]["tools"] == []

    async def test_listed_schema_comes_from_registry(self, mcp_client):
        client, session_id, auth_header = await mcp_client(sub="alice", scopes=["tools:read"])

        data = await list_tools(client, session_id, auth_header)
        add = next(t for t in data["result"]["tools"] if t["name"] == "add")

        assert add["description"] == "Add two numbers together"
        assert sorted(add["inputSchema"]["required"]) == ["a", "b"]

    async def test_expired_token_is_rejected(self, mcp_client, make_auth_header):
        client, session_id, _ = await mcp_client(sub="alice", scopes=["tools:read"])
        expired = make_auth_header(sub="alice", scopes=["tools:read"], exp_hours=-1)

        response = await client.post(
            "http://testserver/mcp",
            headers=_headers(session_id, expired),
            json={"jsonrpc": "2.0", "id": 2, "method": "tools/list", "params": {}},
        )

        assert response.status_code == 401
        assert response.headers["www-authenticate"].startswith("Bearer")

    async def test_missing_token_is_challenged(self, asgi_app):
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=asgi_app)) as client:
            response = await client.post(
                "http://testserver/mcp",
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json, text/event-stream",
                },
                json={"jsonrpc": "2.0", "id": 1, "method": "tools/list", "params": {}},
            )

        assert response.status_code == 401
        assert "resource_metadata=" in response.headers["www-authenticate"]


# ---------------------------------------------------------------------------
# Test: Tool call authorization
# ---------------------------------------------------------------------------


class TestToolCallAuthorization:
    """Tests for scope-based tool call authorization (on_call_tool middleware)."""

    async def test_add_returns_sum(self, mcp_client):
        client, session_id, auth_header = await mcp_client(sub="alice", scopes=["tools:read"])

        data = await call_tool(client, session_id, auth_header, "add", {"a": 1, "b": 2})

        result = data["result"]
        assert result.get("isError") is not True
        assert result["content"][0]["text"] == "3"

    async def test_write_tool_without_write_scope_is_denied(self, mcp_client):
        """A client that knows the tool name still cannot call it."""
        client, session_id, auth_header = await mcp_client(sub="alice", scopes=["tools:read"])

        data = await call_tool(client, session_id, auth_header, "create_note", {"title": "x"})

        result = data.get("result", {})
        assert result.get("isError") is True
        assert "tools:write" in result["content"][0]["text"]

    async def test_unknown_tool_is_denied(self, mcp_client):
        client, session_id, auth_header = await mcp_client(
            sub="alice", scopes=["tools:read", "tools:write"]
        )

        data = await call_tool(client, session_id, auth_header, "drop_tables")

        assert data["result"]["isError"] is True

    async def test_invalid_arguments_are_an_error(self, mcp_client):
        client, session_id, auth_header = await mcp_client(sub="alice", scopes=["tools:read"])

        data = await call_tool(client, session_id, auth_header, "add", {"a": "one", "b": 2})

        assert data["result"]["isError"] is True

    async def test_handler_sees_token_subject_and_client(self, mcp_client):
        client, session_id, auth_header = await mcp_client(sub="carol", scopes=["tools:read"])

        data = await call_tool(client, session_id, auth_header, "whoami")

        profile = json.loads(data["result"]["content"][0]["text"])
        assert profile["subject"] == "carol"
        assert profile["client_id"] == "mcp_test"
        assert profile["scopes"] == ["tools:read"]

    async def test_notes_round_trip_with_write_scope(self, mcp_client):
        client, session_id, auth_header = await mcp_client(
            sub="erin", scopes=["tools:read", "tools:write"]
        )

        created = await call_tool(
            client, session_id, auth_header, "create_note", {"title": "groceries", "body": "milk"}
        )
        note = json.loads(created["result"]["content"][0]["text"])
        listed = await call_tool(client, session_id, auth_header, "list_notes")

        notes = json.loads(listed["result"]["content"][0]["text"])
        assert [n["id"] for n in notes] == [note["id"]]
        assert notes[0]["body"] == "milk"
