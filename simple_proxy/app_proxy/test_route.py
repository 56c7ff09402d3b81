"""
End-to-end tests for the proxy application.

Tests cover:
- Catch-all routing for every HTTP method
- Path rewriting, also when mounted under a prefix
- Host handling with and without change_origin
- Error responses (unreachable upstream, misconfiguration, unexpected faults)
- Middleware wiring (CORS, attack detector, access log)
- Startup validation and shutdown of the connection pool
"""

import logging

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.middleware.base import BaseHTTPMiddleware

from simple_proxy.app_proxy.route import create_proxy_app
from simple_proxy.config import ProxyConfig
from simple_proxy.errors import InvalidTargetError, ProxyConfigurationError
from simple_proxy.plugins.access_log import ACCESS_LOGGER_NAME
from simple_proxy.plugins.attack_detector import WatchRule
from simple_proxy.plugins.cors import CorsPolicy
from simple_proxy.utils_tests.upstream_mock import make_upstream_response


def explode_rewrite(path):
    raise RuntimeError("boom")


class TestRouting:
    def test_get_is_forwarded_with_query(self, make_proxy_app, upstream):
        client = TestClient(make_proxy_app())

        response = client.get("/users", params={"page": "2"})

        assert response.status_code == 200
        assert response.json()["url"] == "http://internal-app:8080/users?page=2"
        assert len(upstream.requests) == 1

    def test_rewrite_strips_prefix(self, make_proxy_app):
        client = TestClient(make_proxy_app(target="http://up:9000", path_rewrite={"^/api": ""}))

        response = client.get("/api/users")

        assert response.json()["url"] == "http://up:9000/users"

    @pytest.mark.parametrize("method", ["GET", "POST", "PUT", "PATCH", "DELETE", "PROPFIND"])
    def test_every_method_is_proxied(self, make_proxy_app, method):
        client = TestClient(make_proxy_app())

        response = client.request(method, "/resource")

        assert response.status_code == 200
        assert response.json()["method"] == method

    def test_head_is_proxied(self, make_proxy_app, upstream):
        client = TestClient(make_proxy_app())

        response = client.head("/resource")

        assert response.status_code == 200
        assert upstream.last.method == "HEAD"

    def test_post_body_reaches_upstream(self, make_proxy_app):
        client = TestClient(make_proxy_app())

        response = client.post(
            "/items",
            content=b'{"name":"widget"}',
            headers={"Content-Type": "application/json"},
        )

        echoed = response.json()
        assert echoed["body"] == '{"name":"widget"}'
        assert echoed["headers"]["content-type"] == "application/json"

    def test_docs_paths_belong_to_upstream(self, make_proxy_app):
        client = TestClient(make_proxy_app())

        for path in ("/docs", "/openapi.json", "/redoc"):
            assert client.get(path).json()["path"] == path

    def test_mounted_under_prefix(self, make_proxy_app):
        parent = FastAPI()
        parent.mount("/api", make_proxy_app(path_rewrite={"^/users": "/accounts"}))
        client = TestClient(parent)

        response = client.get("/api/users/7", params={"full": "1"})

        assert response.json()["url"] == "http://internal-app:8080/accounts/7?full=1"

    def test_upstream_status_and_headers_pass_through(self, make_proxy_app, upstream):
        upstream.handler = lambda request: make_upstream_response(
            418, b"teapot", {"x-upstream": "yes", "content-type": "text/plain"}
        )
        client = TestClient(make_proxy_app())

        response = client.get("/brew")

        assert response.status_code == 418
        assert response.text == "teapot"
        assert response.headers["x-upstream"] == "yes"

    def test_chunked_upstream_body_is_streamed(self, make_proxy_app, upstream):
        class ChunkedStream(httpx.AsyncByteStream):
            async def __aiter__(self):
                for i in range(5):
                    yield f"chunk{i};".encode()

        upstream.handler = lambda request: httpx.Response(200, stream=ChunkedStream())
        client = TestClient(make_proxy_app())

        response = client.get("/stream")

        assert response.text == "chunk0;chunk1;chunk2;chunk3;chunk4;"


class TestHostHandling:
    def test_inbound_host_is_kept_by_default(self, make_proxy_app):
        client = TestClient(make_proxy_app())
        assert client.get("/").json()["host"] == "testserver"

    def test_change_origin_uses_target_host(self, make_proxy_app):
        client = TestClient(make_proxy_app(change_origin=True))
        assert client.get("/").json()["host"] == "internal-app:8080"

    def test_target_cannot_be_changed_by_the_caller(self, make_proxy_app, upstream):
        client = TestClient(make_proxy_app())

        client.post(
            "/redirect",
            params={"url": "http://evil.example.com", "host": "evil.example.com"},
            headers={"Host": "evil.example.com", "X-Forwarded-Host": "evil.example.com"},
            content=b"http://evil.example.com",
        )

        assert upstream.last.url.host == "internal-app"
        assert upstream.last.url.port == 8080


class TestErrorResponses:
    def test_unreachable_upstream(self, make_proxy_app, upstream):
        def refuse(request):
            raise httpx.ConnectError("Connection refused")

        upstream.handler = refuse
        client = TestClient(make_proxy_app())

        response = client.get("/")

        assert response.status_code == 500
        assert response.json() == {"error": "Proxy Error", "message": "Connection refused"}

    def test_upstream_timeout(self, make_proxy_app, upstream):
        def slow(request):
            raise httpx.ConnectTimeout("timed out")

        upstream.handler = slow
        client = TestClient(make_proxy_app())

        response = client.get("/")

        assert response.status_code == 500
        assert response.json()["error"] == "Proxy Error"

    def test_rewrite_function_returning_non_string(self, make_proxy_app, upstream):
        client = TestClient(make_proxy_app(path_rewrite=lambda path: 42))

        response = client.get("/anything")

        assert response.status_code == 500
        assert response.json()["error"] == "Configuration Error"
        assert upstream.requests == []

    def test_unexpected_failure_returns_json(self, make_proxy_app):
        client = TestClient(make_proxy_app(path_rewrite=explode_rewrite))

        response = client.get("/anything")

        assert response.status_code == 500
        assert response.json() == {
            "error": "Internal Server Error",
            "message": "The proxy failed to handle the request",
        }

    @pytest.mark.parametrize(
        "rewrite, error",
        [
            (lambda path: 42, "Configuration Error"),
            (explode_rewrite, "Internal Server Error"),
        ],
    )
    def test_engine_errors_are_observed_and_logged(
        self, make_proxy_app, upstream, caplog, rewrite, error
    ):
        """The proxy's own 500s reach the attack detector and the access log."""
        events = []
        rule = WatchRule(path="/x", status_code=500, threshold=1, on_trigger=events.append)
        client = TestClient(make_proxy_app(path_rewrite=rewrite, attack_detector=[rule]))

        with caplog.at_level(logging.INFO, logger=ACCESS_LOGGER_NAME):
            response = client.get("/x", headers={"X-Real-IP": "6.6.6.6"})

        assert response.status_code == 500
        assert response.json()["error"] == error
        assert upstream.requests == []
        assert [(e.ip, e.status_code) for e in events] == [("6.6.6.6", 500)]
        access = [r.access for r in caplog.records if r.name == ACCESS_LOGGER_NAME]
        assert [(a["path"], a["statusCode"]) for a in access] == [("/x", 500)]

    def test_middleware_failure_returns_json(self, make_proxy_app):
        async def broken(request, call_next):
            raise RuntimeError("middleware down")

        app = make_proxy_app()
        app.add_middleware(BaseHTTPMiddleware, dispatch=broken)
        client = TestClient(app, raise_server_exceptions=False)

        response = client.get("/anything")

        assert response.status_code == 500
        assert response.json()["error"] == "Internal Server Error"


class TestMiddlewareWiring:
    def test_wildcard_cors_on_every_response(self, make_proxy_app):
        client = TestClient(make_proxy_app(cors=CorsPolicy()))

        for path in ("/", "/users", "/a/b/c"):
            response = client.get(path, headers={"Origin": "https://any.example.com"})
            assert response.headers["access-control-allow-origin"] == "*"

    def test_cors_preflight_is_answered_locally(self, make_proxy_app, upstream):
        client = TestClient(
            make_proxy_app(cors=CorsPolicy(origin=["https://app.example.com"]))
        )

        response = client.options("/users", headers={"Origin": "https://app.example.com"})

        assert response.status_code == 204
        assert response.content == b""
        assert response.headers["access-control-allow-origin"] == "https://app.example.com"
        assert upstream.requests == []

    def test_disallowed_origin_is_still_proxied(self, make_proxy_app, upstream):
        client = TestClient(
            make_proxy_app(cors=CorsPolicy(origin=["https://app.example.com"]))
        )

        response = client.get("/users", headers={"Origin": "https://evil.example.com"})

        assert response.status_code == 200
        assert "access-control-allow-origin" not in response.headers
        assert len(upstream.requests) == 1

    def test_no_cors_headers_without_policy(self, make_proxy_app):
        client = TestClient(make_proxy_app())

        response = client.get("/", headers={"Origin": "https://app.example.com"})

        assert "access-control-allow-origin" not in response.headers

    def test_attack_detector_sees_upstream_status(self, make_proxy_app, upstream):
        events = []
        upstream.handler = lambda request: make_upstream_response(401, b"denied")
        rule = WatchRule(path="/login", status_code=401, threshold=3, on_trigger=events.append)
        client = TestClient(make_proxy_app(attack_detector=[rule]))

        for _ in range(3):
            client.post(
                "/login",
                headers={"X-Forwarded-For": "1.2.3.4, 10.0.0.1", "User-Agent": "hydra"},
            )

        assert len(events) == 1
        assert events[0].ip == "1.2.3.4"
        assert events[0].hits == 3
        assert events[0].path == "/login"
        assert events[0].user_agent == "hydra"

    def test_attack_detector_sees_proxy_errors(self, make_proxy_app, upstream):
        events = []

        def refuse(request):
            raise httpx.ConnectError("Connection refused")

        upstream.handler = refuse
        rule = WatchRule(path="/", status_code=500, threshold=2, on_trigger=events.append)
        client = TestClient(make_proxy_app(attack_detector=[rule]))

        client.get("/")
        client.get("/")

        assert [event.status_code for event in events] == [500]

    def test_failing_trigger_callback_does_not_affect_response(self, make_proxy_app, upstream):
        def broken(event):
            raise RuntimeError("blocklist unavailable")

        upstream.handler = lambda request: make_upstream_response(404, b"missing")
        rule = WatchRule(path="/wp-admin", status_code=404, threshold=1, on_trigger=broken)
        client = TestClient(make_proxy_app(attack_detector=[rule]))

        response = client.get("/wp-admin")

        assert response.status_code == 404
        assert response.text == "missing"

    def test_access_log_event_per_response(self, make_proxy_app, caplog):
        client = TestClient(make_proxy_app())

        with caplog.at_level(logging.INFO, logger=ACCESS_LOGGER_NAME):
            client.get("/users", headers={"X-Real-IP": "5.6.7.8"})

        records = [r for r in caplog.records if r.name == ACCESS_LOGGER_NAME]
        assert len(records) == 1
        event = records[0].access
        assert event["clientIP"] == "5.6.7.8"
        assert event["method"] == "GET"
        assert event["path"] == "/users"
        assert event["statusCode"] == 200
        assert event["durationMs"] >= 0

    def test_access_log_written_to_log_dir(self, make_proxy_app, tmp_path):
        app = make_proxy_app(log_dir=str(tmp_path))
        client = TestClient(app)

        client.get("/users")

        handler = next(
            h
            for h in logging.getLogger(ACCESS_LOGGER_NAME).handlers
            if getattr(h, "baseFilename", "").startswith(str(tmp_path))
        )
        try:
            handler.flush()
            assert '"path":"/users"' in (tmp_path / "access.log").read_text()
        finally:
            logging.getLogger(ACCESS_LOGGER_NAME).removeHandler(handler)
            handler.close()


class TestStartup:
    def test_missing_target_refuses_to_start(self):
        with pytest.raises(InvalidTargetError, match="Target URL is required"):
            create_proxy_app(ProxyConfig(target=""))

    def test_invalid_target_refuses_to_start(self):
        with pytest.raises(InvalidTargetError, match="Target must be a valid URL"):
            create_proxy_app(ProxyConfig(target="not a url"))

    def test_invalid_rewrite_refuses_to_start(self):
        with pytest.raises(ProxyConfigurationError):
            create_proxy_app(ProxyConfig(target="http://up:9000", path_rewrite={"(": ""}))

    def test_state_is_exposed(self, make_proxy_app):
        app = make_proxy_app()
        assert app.state.target.origin == "http://internal-app:8080"
        assert app.state.attack_detector is None

    def test_pool_is_closed_on_shutdown(self, make_proxy_app):
        app = make_proxy_app()

        with TestClient(app) as client:
            client.get("/")
            assert not app.state.forwarder.client.is_closed

        assert app.state.forwarder.client.is_closed
