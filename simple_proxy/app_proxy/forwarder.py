import logging
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import AsyncIterator, Optional

import httpx
from fastapi import Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from opentelemetry import trace

from simple_proxy.app_proxy.path_rewrite import PathRewriter
from simple_proxy.app_proxy.target import TargetDescriptor
from simple_proxy.models import ProxyErrorBody
from simple_proxy.utils import route_path
from simple_proxy.utils.exception_logging import (
    format_exception_message,
    log_exception_with_details,
)
from simple_proxy.utils.traced_requests import traced_request
from simple_proxy.vars import (
    PROXY_MAX_CONNECTIONS,
    PROXY_MAX_KEEPALIVE,
    PROXY_TIMEOUT,
)

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

# Status for every upstream failure: refused, DNS, timeout or protocol error
UPSTREAM_ERROR_STATUS = 500

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}


def _strip_hop_by_hop(raw_headers) -> list[tuple[bytes, bytes]]:
    return [
        (name, value)
        for name, value in raw_headers
        if name.decode("latin-1").lower() not in HOP_BY_HOP_HEADERS
    ]


class ProxyForwarder:
    """
    Forwards inbound requests to the fixed upstream target.

    The destination scheme, host and port come from the TargetDescriptor only;
    nothing in the inbound request (headers, query, body) can change them. One
    pooled ``httpx.AsyncClient`` is kept for the lifetime of the forwarder so
    upstream connections are reused across requests.
    """

    def __init__(
        self,
        target: TargetDescriptor,
        rewriter: Optional[PathRewriter] = None,
        change_origin: bool = False,
        timeout: float = PROXY_TIMEOUT,
        max_connections: int = PROXY_MAX_CONNECTIONS,
        max_keepalive_connections: int = PROXY_MAX_KEEPALIVE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.target = target
        self.rewriter = rewriter or PathRewriter()
        self.change_origin = change_origin
        self._host_header = target.netloc.encode("idna")
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max_keepalive_connections,
            ),
            follow_redirects=False,  # Redirects are the caller's business
            trust_env=False,  # HTTP(S)_PROXY and netrc must not reroute the target
            # Upstream cookies belong to the callers, never to the shared client
            cookies=CookieJar(policy=DefaultCookiePolicy(allowed_domains=())),
            transport=transport,
        )

    def upstream_path(self, request: Request) -> str:
        """Path sent upstream: the rewritten mount-relative path, never empty."""
        path = self.rewriter.rewrite(route_path(request))
        if not path:
            return "/"
        if not path.startswith("/"):
            path = "/" + path
        return path

    def upstream_url(self, request: Request) -> httpx.URL:
        return httpx.URL(
            scheme=self.target.scheme,
            host=self.target.host,
            port=self.target.port,
            path=self.upstream_path(request),
            query=request.scope.get("query_string") or None,
        )

    def prepare_headers(self, request: Request) -> list[tuple[bytes, bytes]]:
        """
        Copy inbound headers for the upstream request.

        Hop-by-hop headers are dropped. The Host header is replaced with the
        target only when change_origin is enabled.
        """
        headers = _strip_hop_by_hop(request.headers.raw)
        if self.change_origin:
            headers = [(name, value) for name, value in headers if name.lower() != b"host"]
            headers.append((b"host", self._host_header))
        return headers

    @staticmethod
    def _has_body(request: Request) -> bool:
        return (
            "content-length" in request.headers
            or "transfer-encoding" in request.headers
        )

    async def forward(self, request: Request) -> Response:
        upstream_url = self.upstream_url(request)

        with traced_request(
            tracer,
            operation="proxy_request",
            start_message=f"[Proxy] {request.method} {request.url.path} -> {self.target}{upstream_url.raw_path.decode('ascii')}",
            attributes={
                "proxy.target": self.target.origin,
                "proxy.method": request.method,
                "proxy.upstream_path": upstream_url.path,
            },
        ) as span:
            # Built directly so the client's default headers are never merged in
            upstream_request = httpx.Request(
                method=request.method,
                url=upstream_url,
                headers=self.prepare_headers(request),
                content=request.stream() if self._has_body(request) else None,
            )

            try:
                upstream = await self.client.send(upstream_request, stream=True)
            except httpx.TimeoutException as e:
                logger.error(f"[Proxy] Upstream timeout for {self.target}: {e!r}")
                span.set_attribute("proxy.error", "timeout")
                return self.error_response(e)
            except httpx.ConnectError as e:
                logger.error(f"[Proxy] Failed to connect to {self.target}: {e!r}")
                span.set_attribute("proxy.error", "connection_failed")
                return self.error_response(e)
            except httpx.RequestError as e:
                log_exception_with_details(logger, "[Proxy]", e)
                span.set_attribute("proxy.error", format_exception_message(e))
                return self.error_response(e)

            span.set_attribute("proxy.status_code", upstream.status_code)

            response = StreamingResponse(
                self._stream_body(upstream),
                status_code=upstream.status_code,
            )
            # Keep duplicates such as multiple Set-Cookie headers intact
            response.raw_headers = [
                (name.lower(), value)
                for name, value in _strip_hop_by_hop(upstream.headers.raw)
            ]
            return response

    async def _stream_body(self, upstream: httpx.Response) -> AsyncIterator[bytes]:
        """Relay the upstream body without decoding it; always close upstream."""
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.HTTPError as e:
            log_exception_with_details(
                logger, f"[Proxy] Upstream body from {self.target} interrupted:", e
            )
        finally:
            await upstream.aclose()

    @staticmethod
    def error_response(exception: BaseException) -> JSONResponse:
        body = ProxyErrorBody(
            error="Proxy Error", message=format_exception_message(exception)
        )
        return JSONResponse(status_code=UPSTREAM_ERROR_STATUS, content=body.model_dump())

    async def aclose(self) -> None:
        await self.client.aclose()
