from starlette.requests import Request

# Checked in order, first non-empty value wins.
CLIENT_IP_HEADERS = ("cf-connecting-ip", "x-forwarded-for", "x-real-ip")


def client_ip(request: Request) -> str:
    """Best-effort address of the real client behind tunnels and proxies."""
    for header in CLIENT_IP_HEADERS:
        value = request.headers.get(header, "")
        if header == "x-forwarded-for":
            value = value.split(",")[0]
        value = value.strip()
        if value:
            return value
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def route_path(request: Request) -> str:
    """
    Raw (still percent-encoded) request path relative to the point where the
    application is mounted.
    """
    scope = request.scope
    raw_path = scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else scope.get("path", "")
    root_path = scope.get("root_path", "")
    if root_path and path.startswith(root_path):
        path = path[len(root_path):]
    return path or "/"
