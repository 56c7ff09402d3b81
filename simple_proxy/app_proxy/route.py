import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.types import Receive, Scope, Send

from simple_proxy.app_proxy.forwarder import ProxyForwarder
from simple_proxy.app_proxy.path_rewrite import PathRewriter
from simple_proxy.app_proxy.target import resolve_target
from simple_proxy.config import ProxyConfig
from simple_proxy.errors import ProxyConfigurationError
from simple_proxy.models import ProxyErrorBody
from simple_proxy.plugins.access_log import AccessLogMiddleware, configure_access_log
from simple_proxy.plugins.attack_detector import (
    AttackDetector,
    AttackDetectorMiddleware,
)
from simple_proxy.plugins.cors import CorsMiddleware
from simple_proxy.telemetry import instrument_app
from simple_proxy.utils.exception_logging import (
    format_exception_message,
    log_exception_with_details,
)

logger = logging.getLogger("uvicorn.error")


class ProxyEndpoint:
    """
    ASGI endpoint handing every request to the forwarder.

    Registered as a plain ASGI app rather than a path operation so that any
    HTTP method, including custom ones, is proxied. Failures are turned into
    JSON responses here, inside the middleware stack, so the attack detector
    and the access log observe them like any other response.
    """

    def __init__(self, forwarder: ProxyForwarder):
        self.forwarder = forwarder

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        try:
            response = await self.forwarder.forward(request)
        except ProxyConfigurationError as e:
            response = configuration_error_response(request, e)
        except Exception as e:
            response = unexpected_error_response(request, e)
        await response(scope, receive, send)


def configuration_error_response(
    request: Request, exc: ProxyConfigurationError
) -> JSONResponse:
    log_exception_with_details(
        logger, f"[Proxy] Misconfiguration while handling {request.url.path}:", exc
    )
    body = ProxyErrorBody(
        error="Configuration Error", message=format_exception_message(exc)
    )
    return JSONResponse(status_code=500, content=body.model_dump())


def unexpected_error_response(request: Request, exc: Exception) -> JSONResponse:
    log_exception_with_details(
        logger, f"[Proxy] Unexpected failure while handling {request.url.path}:", exc
    )
    body = ProxyErrorBody(
        error="Internal Server Error", message="The proxy failed to handle the request"
    )
    return JSONResponse(status_code=500, content=body.model_dump())


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort for faults raised by the middlewares themselves."""
    return unexpected_error_response(request, exc)


def create_proxy_app(
    config: ProxyConfig, transport: Optional[httpx.AsyncBaseTransport] = None
) -> FastAPI:
    """
    Build the proxy as an ASGI application.

    Serve it on its own (see ``simple_proxy.server.serve``) or mount it inside
    another application, e.g. ``app.mount("/api", create_proxy_app(config))``;
    the mount prefix is stripped before the path is rewritten.

    Raises ProxyConfigurationError when the configuration is invalid, so a
    misconfigured proxy never starts.
    """
    target = resolve_target(config.target)
    forwarder = ProxyForwarder(
        target,
        PathRewriter(config.path_rewrite),
        change_origin=config.change_origin,
        timeout=config.timeout,
        max_connections=config.max_connections,
        max_keepalive_connections=config.max_keepalive_connections,
        transport=transport,
    )
    detector = AttackDetector(config.attack_detector) if config.attack_detector else None

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        await forwarder.aclose()

    # No docs routes: every path belongs to the upstream
    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.target = target
    app.state.forwarder = forwarder
    app.state.attack_detector = detector

    app.add_exception_handler(Exception, unexpected_error_handler)

    if config.telemetry:
        instrument_app(
            app,
            service_name=config.service_name,
            otlp_endpoint=config.otlp_endpoint,
            otlp_headers=config.otlp_headers,
            metrics_path=config.metrics_path,
        )

    app.add_route("/{path:path}", ProxyEndpoint(forwarder), include_in_schema=False)

    # Added innermost first: CORS, then the detector, then the access log
    if config.cors is not None:
        app.add_middleware(CorsMiddleware, policy=config.cors)
    if detector is not None:
        app.add_middleware(AttackDetectorMiddleware, detector=detector)
    if config.log_dir:
        configure_access_log(config.log_dir, config.log_max_days)
    app.add_middleware(AccessLogMiddleware)

    logger.info(f"Proxying all requests to {target}")
    return app
