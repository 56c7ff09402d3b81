import json
import logging
import re
from dataclasses import dataclass, field
from typing import Optional, Union

from simple_proxy.app_proxy.path_rewrite import RewriteFunction, RewriteRules
from simple_proxy.errors import ProxyConfigurationError
from simple_proxy.plugins.attack_detector import (
    DEFAULT_TIME_WINDOW,
    TriggerEvent,
    WatchRule,
)
from simple_proxy.plugins.cors import (
    DEFAULT_ALLOWED_HEADERS,
    DEFAULT_METHODS,
    WILDCARD,
    CorsPolicy,
)
from simple_proxy.vars import (
    ATTACK_DETECTOR_RULES,
    CHANGE_ORIGIN,
    CORS_ALLOWED_HEADERS,
    CORS_METHODS,
    CORS_ORIGIN,
    ENABLE_TELEMETRY,
    LOG_DIR,
    LOG_MAX_DAYS,
    METRICS_PATH,
    OTLP_ENDPOINT,
    OTLP_HEADERS,
    PATH_REWRITE,
    PROXY_MAX_CONNECTIONS,
    PROXY_MAX_KEEPALIVE,
    PROXY_TIMEOUT,
    SERVICE_NAME,
    TARGET_SERVER_URL,
)

logger = logging.getLogger("uvicorn.error")


@dataclass
class ProxyConfig:
    """Everything the proxy needs, consumed once when the app is built."""

    target: str
    change_origin: bool = False
    path_rewrite: Optional[Union[RewriteRules, RewriteFunction]] = None
    cors: Optional[CorsPolicy] = None
    attack_detector: list[WatchRule] = field(default_factory=list)
    timeout: float = PROXY_TIMEOUT
    max_connections: int = PROXY_MAX_CONNECTIONS
    max_keepalive_connections: int = PROXY_MAX_KEEPALIVE
    log_dir: Optional[str] = None
    log_max_days: int = LOG_MAX_DAYS
    service_name: str = SERVICE_NAME
    telemetry: bool = False
    otlp_endpoint: Optional[str] = None
    otlp_headers: str = ""
    metrics_path: Optional[str] = None

    @classmethod
    def from_env(cls) -> "ProxyConfig":
        return cls(
            target=TARGET_SERVER_URL,
            change_origin=CHANGE_ORIGIN,
            path_rewrite=_parse_path_rewrite(PATH_REWRITE),
            cors=_parse_cors(CORS_ORIGIN, CORS_METHODS, CORS_ALLOWED_HEADERS),
            attack_detector=_parse_watch_rules(ATTACK_DETECTOR_RULES),
            timeout=PROXY_TIMEOUT,
            max_connections=PROXY_MAX_CONNECTIONS,
            max_keepalive_connections=PROXY_MAX_KEEPALIVE,
            log_dir=LOG_DIR or None,
            log_max_days=LOG_MAX_DAYS,
            service_name=SERVICE_NAME,
            telemetry=ENABLE_TELEMETRY,
            otlp_endpoint=OTLP_ENDPOINT,
            otlp_headers=OTLP_HEADERS,
            metrics_path=METRICS_PATH or None,
        )


def _load_json(name: str, raw: str):
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProxyConfigurationError(f"{name} is not valid JSON: {e}") from e


def _parse_path_rewrite(raw: str) -> Optional[dict]:
    if not raw:
        return None
    rules = _load_json("PATH_REWRITE", raw)
    if not isinstance(rules, dict):
        raise ProxyConfigurationError(
            "PATH_REWRITE must be a JSON object of pattern to replacement"
        )
    return rules


def _parse_cors(origin: str, methods: list, allowed_headers: list) -> Optional[CorsPolicy]:
    if not origin:
        return None
    origin = origin.strip()
    if origin != WILDCARD:
        origin = [o.strip() for o in origin.split(",") if o.strip()]
    return CorsPolicy(
        origin=origin,
        methods=methods or DEFAULT_METHODS,
        allowed_headers=allowed_headers or DEFAULT_ALLOWED_HEADERS,
    )


def log_trigger(event: TriggerEvent) -> None:
    """Default on_trigger for rules configured from the environment."""
    logger.warning(
        f"[AttackDetector] Possible attack from {event.ip}: {event.hits} responses "
        f"with status {event.status_code} on {event.path} (user agent: {event.user_agent})"
    )


def _parse_watch_rules(raw: str) -> list[WatchRule]:
    if not raw:
        return []
    entries = _load_json("ATTACK_DETECTOR_RULES", raw)
    if isinstance(entries, dict):
        entries = [entries]
    if not isinstance(entries, list):
        raise ProxyConfigurationError("ATTACK_DETECTOR_RULES must be a JSON list")

    rules = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ProxyConfigurationError(
                f"Invalid ATTACK_DETECTOR_RULES entry: {entry!r}"
            )
        path = entry.get("path")
        if entry.get("regex") and isinstance(path, str):
            try:
                path = re.compile(path)
            except re.error as e:
                raise ProxyConfigurationError(
                    f"Invalid attack detector path pattern {path!r}: {e}"
                ) from e
        rules.append(
            WatchRule(
                path=path,
                status_code=entry.get("status_code"),
                threshold=entry.get("threshold"),
                time_window=entry.get("time_window", DEFAULT_TIME_WINDOW),
                on_trigger=log_trigger,
            )
        )
    return rules
