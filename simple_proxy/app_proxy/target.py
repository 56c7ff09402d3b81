from dataclasses import dataclass
from urllib.parse import urlsplit

from simple_proxy.errors import InvalidTargetError

DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass(frozen=True)
class TargetDescriptor:
    """
    The one upstream every request is forwarded to.

    Only scheme, host and port are kept. Any path, query or fragment present in
    the configuring URL is dropped so it can never leak into forwarded requests.
    """

    scheme: str
    host: str
    port: int

    @property
    def netloc(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        if self.port == DEFAULT_PORTS[self.scheme]:
            return host
        return f"{host}:{self.port}"

    @property
    def origin(self) -> str:
        return f"{self.scheme}://{self.netloc}"

    def __str__(self) -> str:
        return self.origin


def resolve_target(url: str) -> TargetDescriptor:
    """Parse the operator supplied target URL into a TargetDescriptor."""
    if not url:
        raise InvalidTargetError("Target URL is required")
    if not isinstance(url, str):
        raise InvalidTargetError("Target must be a valid URL")

    parsed = urlsplit(url.strip())
    scheme = parsed.scheme.lower()
    if scheme not in DEFAULT_PORTS or not parsed.hostname:
        raise InvalidTargetError("Target must be a valid URL")

    try:
        port = parsed.port
    except ValueError as e:
        raise InvalidTargetError(f"Target must be a valid URL: {e}") from e

    return TargetDescriptor(
        scheme=scheme,
        host=parsed.hostname,
        port=port if port is not None else DEFAULT_PORTS[scheme],
    )
