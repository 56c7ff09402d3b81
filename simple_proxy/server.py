import logging
import sys
from typing import Optional

import httpx
import uvicorn

from simple_proxy.app_proxy.route import create_proxy_app
from simple_proxy.config import ProxyConfig
from simple_proxy.errors import ProxyConfigurationError
from simple_proxy.vars import HOST, PORT

logger = logging.getLogger("uvicorn.error")


def serve(
    config: ProxyConfig,
    host: str = HOST,
    port: int = PORT,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> None:
    """Run the proxy as a standalone listener until interrupted."""
    app = create_proxy_app(config, transport=transport)
    logger.info(f"Proxy listening on {host}:{port}")
    uvicorn.run(app, host=host, port=port)


def main() -> int:
    try:
        config = ProxyConfig.from_env()
        serve(config)
    except ProxyConfigurationError as e:
        logger.error(f"Refusing to start: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
