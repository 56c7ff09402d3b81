import pytest

from simple_proxy.app_proxy.route import create_proxy_app
from simple_proxy.config import ProxyConfig
from simple_proxy.utils_tests.upstream_mock import TEST_TARGET_URL, UpstreamRecorder


@pytest.fixture
def upstream():
    """Recording MockTransport standing in for the target server."""
    return UpstreamRecorder()


@pytest.fixture
def make_proxy_app(upstream):
    """Factory building a proxy app whose upstream is the recording transport."""

    def _make(target: str = TEST_TARGET_URL, **overrides):
        config = ProxyConfig(target=target, **overrides)
        return create_proxy_app(config, transport=upstream.transport)

    return _make
