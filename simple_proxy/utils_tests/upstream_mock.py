import json
from typing import Callable, Optional

import httpx
from starlette.requests import Request

# Upstream used across the proxy tests; never resolved, MockTransport answers instead
TEST_TARGET_URL = "http://internal-app:8080"


def make_upstream_response(
    status_code: int = 200, body: bytes = b"", headers=None
) -> httpx.Response:
    """An unread upstream response, like the ones a real transport returns."""
    return httpx.Response(status_code, headers=headers, stream=httpx.ByteStream(body))


def echo(request: httpx.Request) -> httpx.Response:
    """Describe the request the upstream received as JSON."""
    payload = {
        "method": request.method,
        "url": str(request.url),
        "path": request.url.raw_path.decode("ascii"),
        "host": request.headers.get("host"),
        "headers": {k.lower(): v for k, v in request.headers.multi_items()},
        "body": request.content.decode("utf-8"),
    }
    return make_upstream_response(
        200,
        json.dumps(payload).encode("utf-8"),
        {"content-type": "application/json"},
    )


class UpstreamRecorder:
    """MockTransport wrapper that remembers every request it was sent."""

    def __init__(self, handler: Optional[Callable] = None):
        self.handler = handler or echo
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request):
        self.requests.append(request)
        return self.handler(request)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


def make_request(
    path: str = "/",
    method: str = "GET",
    headers=None,
    query_string: bytes = b"",
    root_path: str = "",
    client=("192.168.1.100", 50000),
    body: bytes = b"",
) -> Request:
    """Build a Starlette Request from a bare ASGI scope."""
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": path,
        "raw_path": path.encode("latin-1"),
        "root_path": root_path,
        "query_string": query_string,
        "headers": [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in (headers or [])
        ],
        "client": client,
        "server": ("proxy.example.com", 80),
    }
    sent = False

    async def receive():
        nonlocal sent
        if sent:
            return {"type": "http.disconnect"}
        sent = True
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)
