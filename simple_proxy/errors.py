class ProxyConfigurationError(ValueError):
    """Raised when the proxy is configured with values it cannot run with."""


class InvalidTargetError(ProxyConfigurationError):
    """Raised when the upstream target URL is missing or malformed."""
