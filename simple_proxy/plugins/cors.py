"""
Cross-origin resource sharing for the proxy.

The origin rule may be ``"*"``, a single origin, a collection of origins or a
predicate ``(origin) -> bool``. It is normalised once into a predicate when the
policy is built. Requests from origins the rule rejects are not blocked; they
simply get no ``Access-Control-*`` headers and the browser enforces the rest.
"""

import logging
from collections.abc import Iterable
from typing import Callable, Sequence, Union

from fastapi import Request
from fastapi.responses import Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from simple_proxy.errors import ProxyConfigurationError
from simple_proxy.utils.exception_logging import log_exception_with_details

logger = logging.getLogger("uvicorn.error")

WILDCARD = "*"
DEFAULT_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH", "HEAD")
DEFAULT_ALLOWED_HEADERS = ("Content-Type", "Authorization")

OriginRule = Union[str, Iterable[str], Callable[[str], bool]]


def _header_list(name: str, values) -> tuple[str, ...]:
    if isinstance(values, str) or not isinstance(values, Iterable):
        raise ProxyConfigurationError(f"{name} must be a non-empty list")
    values = tuple(values)
    if not values or not all(isinstance(v, str) and v for v in values):
        raise ProxyConfigurationError(f"{name} must be a non-empty list")
    return values


class CorsPolicy:
    def __init__(
        self,
        origin: OriginRule = WILDCARD,
        methods: Sequence[str] = DEFAULT_METHODS,
        allowed_headers: Sequence[str] = DEFAULT_ALLOWED_HEADERS,
    ):
        if not origin:
            raise ProxyConfigurationError("origin is required")

        self.methods = _header_list("methods", methods)
        self.allowed_headers = _header_list("allowed_headers", allowed_headers)
        self.wildcard = origin == WILDCARD
        self._is_allowed = self._build_predicate(origin)

        self.methods_header = ", ".join(self.methods)
        self.headers_header = ", ".join(self.allowed_headers)

    @staticmethod
    def _build_predicate(origin: OriginRule) -> Callable[[str], bool]:
        if origin == WILDCARD:
            return lambda _origin: True

        if isinstance(origin, str):
            return lambda request_origin: request_origin == origin

        if callable(origin):
            # "null" is what browsers send for opaque origins
            try:
                origin("null")
            except Exception as e:
                raise ProxyConfigurationError(
                    f"origin predicate failed during setup: {e}"
                ) from e
            return origin

        if isinstance(origin, Iterable):
            allowed_origins = frozenset(origin)
            if not allowed_origins or not all(
                isinstance(o, str) for o in allowed_origins
            ):
                raise ProxyConfigurationError(
                    "origin list must contain at least one origin string"
                )
            return lambda request_origin: request_origin in allowed_origins

        raise ProxyConfigurationError(
            'origin must be a string, list, function, or "*"'
        )

    def is_allowed(self, request_origin: str) -> bool:
        try:
            return bool(self._is_allowed(request_origin))
        except Exception as e:
            log_exception_with_details(
                logger, f"[CORS] Origin predicate failed for {request_origin!r}:", e
            )
            return False

    def preflight_headers(self) -> dict[str, str]:
        return {
            "Access-Control-Allow-Methods": self.methods_header,
            "Access-Control-Allow-Headers": self.headers_header,
        }

    def response_headers(self, request_origin: str) -> dict[str, str]:
        """Headers for an allowed origin."""
        return {
            "Access-Control-Allow-Origin": WILDCARD if self.wildcard else request_origin,
            **self.preflight_headers(),
        }


class CorsMiddleware(BaseHTTPMiddleware):
    """Applies a CorsPolicy and answers preflight requests itself."""

    def __init__(self, app: ASGIApp, policy: CorsPolicy):
        super().__init__(app)
        self.policy = policy

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_origin = request.headers.get("origin")
        is_preflight = request.method == "OPTIONS"

        if not request_origin:
            # Same-origin requests carry no Origin header
            if is_preflight:
                return Response(status_code=204, headers=self.policy.preflight_headers())
            return await call_next(request)

        if not self.policy.is_allowed(request_origin):
            logger.debug(f"[CORS] Origin not allowed: {request_origin}")
            return await call_next(request)

        headers = self.policy.response_headers(request_origin)
        if is_preflight:
            return Response(status_code=204, headers=headers)

        response = await call_next(request)
        for name, value in headers.items():
            response.headers[name] = value
        return response
