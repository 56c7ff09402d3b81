from simple_proxy.app_proxy.forwarder import ProxyForwarder
from simple_proxy.app_proxy.path_rewrite import PathRewriter
from simple_proxy.app_proxy.route import create_proxy_app
from simple_proxy.app_proxy.target import TargetDescriptor, resolve_target
from simple_proxy.config import ProxyConfig
from simple_proxy.errors import InvalidTargetError, ProxyConfigurationError
from simple_proxy.plugins.access_log import AccessLogMiddleware, configure_access_log
from simple_proxy.plugins.attack_detector import (
    AttackDetector,
    AttackDetectorMiddleware,
    TriggerEvent,
    WatchRule,
)
from simple_proxy.plugins.cors import CorsMiddleware, CorsPolicy

__all__ = [
    "AccessLogMiddleware",
    "AttackDetector",
    "AttackDetectorMiddleware",
    "CorsMiddleware",
    "CorsPolicy",
    "InvalidTargetError",
    "PathRewriter",
    "ProxyConfig",
    "ProxyConfigurationError",
    "ProxyForwarder",
    "TargetDescriptor",
    "TriggerEvent",
    "WatchRule",
    "configure_access_log",
    "create_proxy_app",
    "resolve_target",
]
