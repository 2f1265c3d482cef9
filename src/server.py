"""
MCP server with a browser consent flow, built on FastMCP v2.

This module wires everything together:
- The MCP endpoint (/mcp, Streamable HTTP), guarded by FastMCP's bearer auth
  (401 with a WWW-Authenticate challenge without a valid token) and by a
  middleware that filters and guards tools by scope
- The OAuth endpoints MCP clients use, served by ConsentOAuthProvider:
  discovery metadata, dynamic client registration, /authorize and /token
- The consent page and the upstream callback
- A small sign-in page for the session cookie the consent page relies on
- Health and readiness HTTP endpoints (for Kubernetes probes)
- Structured JSON logging for all auth decisions

Architecture:
    /api/mcp/authorize and /api/mcp/callback/{provider} serve two audiences
    at the same URL. A browser navigation gets HTML; a fetch asking for JSON
    gets the backend answer. is_navigation() makes that split.

    1. The MCP client registers at /register and opens the browser at
       /authorize?client_id=...&code_challenge=...; the request is validated
       and parked, and the browser is sent to /api/mcp/authorize?txn=...
    2. The session gate sends signed-out users to /login and remembers where
       they were going
    3. The approval page shows the client's registration and posts the
       approval back to the same URL
    4. The backend records the decision and redirects to the upstream provider
    5. The provider returns to /api/mcp/callback/{provider}. That navigation
       is relayed to the backend, which answers with {"redirectUrl": ...}, and
       the browser is sent there: the client's redirect URI with a code
    6. The client exchanges the code (PKCE S256) at /token and calls /mcp
       with the access token

Running the server:
    uv run python -m src.server
"""

import json
import logging
import sys
import uuid
from typing import Sequence

import httpx
from fastmcp import FastMCP
from fastmcp.server.dependencies import get_access_token
from fastmcp.server.middleware import CallNext, Middleware, MiddlewareContext
from fastmcp.tools.tool import Tool, ToolResult
from fastmcp.utilities.ui import create_secure_html_response
from mcp.types import CallToolRequestParams, ListToolsRequest
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from src.approval import ApprovalController, ApprovalDecision, ApprovalState
from src.auth import AuthError, TokenInfo
from src.callback import CallbackRelay, RelayError
from src.config import settings
from src.datastore import InMemoryDataStore
from src.gate import GateOutcome, ReturnPath, SessionGate
from src.login import authenticate, validate_login_form
from src.oauth import CALLBACK_PATH, CONSENT_PATH, ConsentError, ConsentOAuthProvider
from src.pages import PLACEHOLDER, render_approval, render_error, render_index, render_login
from src.provider import UpstreamProvider
from src.registry import ToolRegistry, current_session
from src.session import SessionStore, User
from src.tools import register_tools

# ---------------------------------------------------------------------------
# Structured JSON Logging
# ---------------------------------------------------------------------------
# One JSON object per line on stdout, so the cluster's logging agent can
# index subject, client_id, tool and decision fields.


class JSONLogFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects.

    Example output:

        {"timestamp": "2026-02-06 10:30:00,123", "level": "INFO", "logger": "src.oauth",
         "message": "Authorization decision recorded", "subject": "1f3c...", "decision": "approved"}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        # Structured fields arrive via logger.info("msg", extra={"auth_data": {...}})
        if hasattr(record, "auth_data"):
            log_entry.update(record.auth_data)
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


handler = logging.StreamHandler(sys.stdout)
handler.setFormatter(JSONLogFormatter())

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    handlers=[handler],
)
logger = logging.getLogger("mcp-server")


# ---------------------------------------------------------------------------
# Application components
# ---------------------------------------------------------------------------
session_store = SessionStore(settings)
gate = SessionGate(login_path=settings.login_path)
return_path = ReturnPath(
    settings.return_path_cookie_name, secure=settings.base_url.startswith("https://")
)
oauth_provider = ConsentOAuthProvider(settings, UpstreamProvider.from_settings(settings))
datastore = InMemoryDataStore()
registry = register_tools(ToolRegistry(datastore))

# Transport used by the callback relay. None means real HTTP; tests point it
# at the ASGI app.
relay_transport: httpx.AsyncBaseTransport | None = None


# ---------------------------------------------------------------------------
# Authorization Middleware
# ---------------------------------------------------------------------------
# FastMCP's bearer auth has already turned the Authorization header into an
# access token (or answered 401) before a request reaches the middleware. The
# middleware checks the token's scopes against the scope each tool was
# registered with:
# - on_list_tools: tools the token cannot use are left out of the list
# - on_call_tool:  calls without the required scope are rejected, and the
#                  validated session is made available to the tool handler


class AuthMiddleware(Middleware):
    """
    Scope-based authorization middleware.

    Unknown tools and tools without a scope are denied, never allowed.
    """

    def __init__(self, tool_registry: ToolRegistry):
        self.registry = tool_registry

    def _authenticate(self, request_id: str) -> TokenInfo:
        access_token = get_access_token()
        if access_token is None:
            logger.warning(
                "Authentication failed",
                extra={
                    "auth_data": {
                        "request_id": request_id,
                        "decision": "rejected",
                        "reason": "authentication_failed",
                    }
                },
            )
            raise AuthError("Missing access token")

        token_info = TokenInfo(
            subject=access_token.claims.get("sub", ""),
            scopes=list(access_token.scopes),
            client_id=access_token.claims.get("client_id"),
            expires_at=access_token.expires_at,
        )
        logger.info(
            "Authentication successful",
            extra={
                "auth_data": {
                    "request_id": request_id,
                    "subject": token_info.subject,
                    "client_id": token_info.client_id,
                    "scopes": token_info.scopes,
                    "decision": "authenticated",
                }
            },
        )
        return token_info

    async def on_list_tools(
        self,
        context: MiddlewareContext[ListToolsRequest],
        call_next: CallNext[ListToolsRequest, Sequence[Tool]],
    ) -> Sequence[Tool]:
        request_id = str(uuid.uuid4())[:8]
        token_info = self._authenticate(request_id)

        all_tools = await call_next(context)

        authorized_tools = []
        for tool in all_tools:
            required_scope = self.registry.required_scope(tool.name)
            if required_scope and required_scope in token_info.scopes:
                authorized_tools.append(tool)

        logger.info(
            "Tool list filtered by scope",
            extra={
                "auth_data": {
                    "request_id": request_id,
                    "subject": token_info.subject,
                    "scopes": token_info.scopes,
                    "total_tools": len(all_tools),
                    "authorized_tools": [t.name for t in authorized_tools],
                    "decision": "filtered",
                }
            },
        )

        return authorized_tools

    async def on_call_tool(
        self,
        context: MiddlewareContext[CallToolRequestParams],
        call_next: CallNext[CallToolRequestParams, ToolResult],
    ) -> ToolResult:
        """
        Reject calls the token is not scoped for.

        A PermissionError is raised for unauthorized calls, which FastMCP
        converts to an MCP error response.
        """
        request_id = str(uuid.uuid4())[:8]
        tool_name = context.message.name

        token_info = self._authenticate(request_id)

        required_scope = self.registry.required_scope(tool_name)
        if required_scope is None:
            logger.warning(
                "Tool call denied: unknown tool",
                extra={
                    "auth_data": {
                        "request_id": request_id,
                        "subject": token_info.subject,
                        "tool": tool_name,
                        "decision": "denied",
                        "reason": "unknown_tool",
                    }
                },
            )
            raise PermissionError(f"Access denied: unknown tool '{tool_name}'")

        if required_scope not in token_info.scopes:
            logger.warning(
                "Tool call denied: insufficient scope",
                extra={
                    "auth_data": {
                        "request_id": request_id,
                        "subject": token_info.subject,
                        "tool": tool_name,
                        "required_scope": required_scope,
                        "token_scopes": token_info.scopes,
                        "decision": "denied",
                        "reason": "insufficient_scope",
                    }
                },
            )
            raise PermissionError(
                f"Access denied: tool '{tool_name}' requires scope '{required_scope}'"
            )

        logger.info(
            "Tool call authorized",
            extra={
                "auth_data": {
                    "request_id": request_id,
                    "subject": token_info.subject,
                    "tool": tool_name,
                    "required_scope": required_scope,
                    "decision": "allowed",
                }
            },
        )

        token = current_session.set(token_info)
        try:
            return await call_next(context)
        finally:
            current_session.reset(token)


# ---------------------------------------------------------------------------
# Create the MCP server and publish the registered tools
# ---------------------------------------------------------------------------
mcp = FastMCP(
    name="mcp-consent-server",
    instructions=(
        "Remote MCP server. Clients authorize through the browser consent "
        "flow and only see the tools their token's scopes allow."
    ),
    auth=oauth_provider,
    middleware=[AuthMiddleware(registry)],
)
registry.publish(mcp)


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------


def is_navigation(request: Request) -> bool:
    """
    True when the browser is loading the URL as a page.

    Fetch metadata decides when present; otherwise an Accept header that asks
    for HTML counts as navigation.
    """
    mode = request.headers.get("sec-fetch-mode")
    if mode:
        return mode == "navigate"
    return "text/html" in request.headers.get("accept", "")


def _html(content: str, status_code: int = 200) -> HTMLResponse:
    return create_secure_html_response(content, status_code=status_code)


def _csrf_for(user: User, txn_id: str | None) -> str:
    return oauth_provider.csrf_token(user, txn_id) if txn_id else ""


def _approval_controller(
    txn_id: str | None, user: User, csrf_token: str | None = None
) -> ApprovalController:
    async def fetch_request():
        return await oauth_provider.describe(txn_id)

    async def submit_decision(decision: ApprovalDecision) -> str:
        return await oauth_provider.record_decision(txn_id, user, decision, csrf_token)

    return ApprovalController(fetch_request, submit_decision)


def _gate_response(request: Request, session) -> Response | None:
    """The response for a view the session may not see yet, or None to render it."""
    result = gate.guard(session, request.url.path, request.url.query)
    if result.outcome is GateOutcome.PLACEHOLDER:
        return _html(PLACEHOLDER)
    if result.outcome is GateOutcome.REDIRECT:
        response = RedirectResponse(result.location, status_code=302)
        return_path.remember(response, result.return_path)
        return response
    return None


def _render_approval(controller: ApprovalController, csrf_token: str, status_code: int = 200) -> Response:
    return _html(
        render_approval(
            controller,
            csrf_token=csrf_token,
            app_name=settings.app_name,
            app_logo=settings.app_logo,
            app_description=settings.app_description,
        ),
        status_code=status_code,
    )


# ---------------------------------------------------------------------------
# Consent: /api/mcp/authorize?txn=...
# ---------------------------------------------------------------------------


@mcp.custom_route(CONSENT_PATH, methods=["GET"])
async def consent(request: Request) -> Response:
    session = await session_store.resolve(request)
    txn_id = request.query_params.get("txn")

    if not is_navigation(request):
        if session.user is None:
            return JSONResponse({"error": "Not authenticated"}, status_code=401)
        try:
            auth_request = await oauth_provider.describe(txn_id)
        except ConsentError as e:
            return JSONResponse({"error": e.description}, status_code=e.status_code)
        return JSONResponse(auth_request.model_dump(by_alias=True, exclude_none=True))

    blocked = _gate_response(request, session)
    if blocked is not None:
        return blocked

    controller = _approval_controller(txn_id, session.user)
    await controller.load()
    if controller.state is ApprovalState.ERROR:
        return _html(render_error(controller.error or ""), status_code=400)
    return _render_approval(controller, _csrf_for(session.user, txn_id))


@mcp.custom_route(CONSENT_PATH, methods=["POST"])
async def consent_decision(request: Request) -> Response:
    session = await session_store.resolve(request)
    blocked = _gate_response(request, session)
    if blocked is not None:
        return blocked
    user = session.user
    txn_id = request.query_params.get("txn")

    form = await request.form()
    decision = str(form.get("decision", "approve"))
    csrf_token = form.get("csrf_token")
    csrf_token = str(csrf_token) if csrf_token is not None else None

    if decision == "deny":
        try:
            location = await oauth_provider.record_decision(
                txn_id, user, ApprovalDecision.DENIED, csrf_token
            )
        except ConsentError as e:
            return _html(render_error(e.description), status_code=e.status_code)
        return RedirectResponse(location, status_code=303)

    if decision != "approve":
        return _html(render_error(f"Unknown decision '{decision}'"), status_code=400)

    controller = _approval_controller(txn_id, user, csrf_token)
    await controller.load()
    if controller.state is ApprovalState.ERROR:
        return _html(render_error(controller.error or ""), status_code=400)

    await controller.submit()
    if controller.state is ApprovalState.SUBMITTED:
        return RedirectResponse(controller.redirect_to, status_code=303)

    # Submission failed: show the page again with the error next to the buttons.
    return _render_approval(controller, _csrf_for(user, txn_id), status_code=400)


# ---------------------------------------------------------------------------
# Upstream callback: /api/mcp/callback/{provider}
# ---------------------------------------------------------------------------


@mcp.custom_route(CALLBACK_PATH, methods=["GET"])
async def callback(request: Request) -> Response:
    if is_navigation(request):
        relay = CallbackRelay(settings.backend_url or str(request.base_url), transport=relay_transport)
        try:
            result = await relay.relay(request)
        except RelayError as e:
            logger.warning(
                "Callback relay failed",
                extra={"auth_data": {"path": request.url.path, "reason": str(e)}},
            )
            return _html(
                render_error(
                    "The sign-in could not be completed. "
                    "Start the connection again from your MCP client."
                ),
                status_code=502,
            )
        response = RedirectResponse(result.redirect_url, status_code=302)
        for cookie in result.set_cookies:
            response.headers.append("set-cookie", cookie)
        return response

    try:
        redirect_url = await oauth_provider.complete_callback(
            request.path_params["provider"], request.query_params
        )
    except ConsentError as e:
        return JSONResponse({"error": e.description}, status_code=e.status_code)
    return JSONResponse({"redirectUrl": redirect_url})


# ---------------------------------------------------------------------------
# Login entry point
# ---------------------------------------------------------------------------


def _after_login(request: Request) -> Response:
    response = RedirectResponse(return_path.take(request), status_code=303)
    return_path.forget(response)
    return response


async def login(request: Request) -> Response:
    session = await session_store.resolve(request)
    if request.method == "GET":
        if session.user is not None:
            return _after_login(request)
        return _html(render_login())

    form = await request.form()
    email = str(form.get("email", "")).strip()
    password = str(form.get("password", ""))

    errors = validate_login_form(email, password)
    if errors:
        return _html(render_login(email, errors), status_code=400)

    user = authenticate(settings, email, password)
    if user is None:
        logger.warning(
            "Login failed",
            extra={"auth_data": {"decision": "rejected", "reason": "invalid_credentials"}},
        )
        return _html(render_login(email, message="Invalid email or password."), status_code=401)

    logger.info("Login successful", extra={"auth_data": {"subject": user.id}})
    response = _after_login(request)
    session_store.start(response, user)
    return response


# /authorize belongs to the OAuth routes; requests there without a client_id
# are handed to the same view.
oauth_provider.sign_in_view = login
if settings.login_path != "/authorize":
    mcp.custom_route(settings.login_path, methods=["GET", "POST"])(login)


@mcp.custom_route("/", methods=["GET"])
async def index(request: Request) -> Response:
    return _html(render_index(settings.app_name, settings.app_description))


# ---------------------------------------------------------------------------
# Health and Readiness Endpoints
# ---------------------------------------------------------------------------
# Plain HTTP endpoints for Kubernetes probes. No authentication: the kubelet
# has no token, and neither endpoint exposes data.


@mcp.custom_route("/health", methods=["GET"])
async def health_check(request: Request) -> Response:
    """Liveness probe: is the server process alive and responsive?"""
    return JSONResponse({"status": "healthy"})


@mcp.custom_route("/ready", methods=["GET"])
async def readiness_check(request: Request) -> Response:
    """Readiness probe: can this pod complete an authorization?"""
    if not settings.provider_client_id:
        return JSONResponse(
            {"status": "not_ready", "reason": "upstream provider not configured"},
            status_code=503,
        )
    if len(registry) == 0:
        return JSONResponse(
            {"status": "not_ready", "reason": "no tools registered"},
            status_code=503,
        )
    return JSONResponse({"status": "ready"})


# ---------------------------------------------------------------------------
# Server entry point
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    logger.info(
        "Starting MCP server on %s:%d (transport=streamable-http, auth=enabled)",
        settings.host,
        settings.port,
    )
    mcp.run(
        transport="streamable-http",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )
