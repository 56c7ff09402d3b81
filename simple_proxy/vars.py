import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "simple-proxy")
HOST = os.environ.get("HOSTNAME", "0.0.0.0")
PORT = int(os.environ.get("PORT", "3000"))

TARGET_SERVER_URL = os.environ.get("TARGET_SERVER_URL", "")
CHANGE_ORIGIN = os.environ.get("CHANGE_ORIGIN", "false").lower() == "true"
PROXY_TIMEOUT = float(os.environ.get("PROXY_TIMEOUT", "30"))
PROXY_MAX_CONNECTIONS = int(os.environ.get("PROXY_MAX_CONNECTIONS", "100"))
PROXY_MAX_KEEPALIVE = int(os.environ.get("PROXY_MAX_KEEPALIVE", "20"))
# JSON object of regex pattern -> replacement, applied in order
PATH_REWRITE = os.environ.get("PATH_REWRITE", "")

# CORS is only enabled when an origin is configured ("*" or a comma separated list)
CORS_ORIGIN = os.environ.get("CORS_ORIGIN", "")
CORS_METHODS = [
    m.strip() for m in os.environ.get("CORS_METHODS", "").split(",") if m.strip()
]
CORS_ALLOWED_HEADERS = [
    h.strip()
    for h in os.environ.get("CORS_ALLOWED_HEADERS", "").split(",")
    if h.strip()
]

# JSON list of {"path", "status_code", "threshold", "time_window", "regex"}
ATTACK_DETECTOR_RULES = os.environ.get("ATTACK_DETECTOR_RULES", "")

LOG_DIR = os.environ.get("LOG_DIR", "")
LOG_MAX_DAYS = int(os.environ.get("LOG_MAX_DAYS", "7"))

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
METRICS_PATH = os.getenv("METRICS_PATH", "")
ENABLE_TELEMETRY = os.getenv("ENABLE_TELEMETRY", "true").lower() == "true"
