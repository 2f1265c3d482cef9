"""
Callback relay.

When the upstream provider sends the browser to /api/mcp/callback/{provider},
that is a navigation, so it lands on the page side of the server rather than
on the backend JSON handler. The relay forwards the exact request (method,
path, query string, cookies and protocol headers) to the backend as a data
request, reads {"redirectUrl": ...} from the answer and hands the target back
to be used as a full browser redirect.

Exactly one forward is made. Anything other than a 200 JSON object carrying a
redirectUrl string is a RelayError, and then nothing navigates.
"""

import logging
from dataclasses import dataclass, field

import httpx
from starlette.requests import Request

logger = logging.getLogger(__name__)

# Headers copied from the inbound request. Everything else (host, accept,
# fetch metadata) is set by the relay itself.
FORWARDED_HEADERS = ("cookie", "authorization", "user-agent", "x-request-id", "mcp-protocol-version")


class RelayError(Exception):
    """The backend did not produce a usable redirect target."""


@dataclass(frozen=True)
class RelayResult:
    redirect_url: str
    set_cookies: list[str] = field(default_factory=list)


class CallbackRelay:
    def __init__(
        self,
        backend_url: str,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
    ):
        self.backend_url = backend_url.rstrip("/")
        self._transport = transport
        self._timeout = timeout

    def target_for(self, request: Request) -> str:
        url = f"{self.backend_url}{request.url.path}"
        if request.url.query:
            url = f"{url}?{request.url.query}"
        return url

    async def relay(self, request: Request) -> RelayResult:
        target = self.target_for(request)
        headers = {k: v for k, v in request.headers.items() if k.lower() in FORWARDED_HEADERS}
        headers["accept"] = "application/json"
        headers["sec-fetch-mode"] = "cors"
        body = await request.body()

        async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
            try:
                response = await client.request(
                    request.method, target, headers=headers, content=body or None
                )
            except httpx.HTTPError as e:
                raise RelayError(f"Callback forward failed: {e}") from e

        if response.status_code != 200:
            raise RelayError(f"Callback forward returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise RelayError("Callback response is not valid JSON") from e

        redirect_url = data.get("redirectUrl") if isinstance(data, dict) else None
        if not isinstance(redirect_url, str) or not redirect_url:
            raise RelayError("Callback response has no redirectUrl")

        logger.info(
            "Callback relayed",
            extra={"auth_data": {"path": request.url.path, "decision": "navigate"}},
        )
        return RelayResult(redirect_url, response.headers.get_list("set-cookie"))
