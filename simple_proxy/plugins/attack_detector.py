"""
Brute-force and scan detection.

Each WatchRule keeps a sliding window of hit timestamps per client IP. A hit is
a finished response whose path matches the rule and whose status code equals
the rule's status code. When a client collects ``threshold`` hits within
``time_window`` seconds the rule's ``on_trigger`` callback receives a
TriggerEvent and that client's window starts again from zero.
"""

import inspect
import logging
import re
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Union

from fastapi import Request
from fastapi.responses import Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from simple_proxy.errors import ProxyConfigurationError
from simple_proxy.utils import client_ip
from simple_proxy.utils.exception_logging import log_exception_with_details

logger = logging.getLogger("uvicorn.error")

DEFAULT_TIME_WINDOW = 60.0
# Qualifying hits between two sweeps of idle clients
SWEEP_INTERVAL = 1024


@dataclass(frozen=True)
class TriggerEvent:
    ip: str
    hits: int
    path: str
    timestamp: int  # milliseconds since the epoch
    user_agent: str
    status_code: int


def _is_positive_number(value, types) -> bool:
    return not isinstance(value, bool) and isinstance(value, types) and value > 0


@dataclass
class WatchRule:
    path: Union[str, re.Pattern]
    status_code: int
    threshold: int
    on_trigger: Callable[[TriggerEvent], Any]
    time_window: float = DEFAULT_TIME_WINDOW

    def __post_init__(self):
        if not self.path:
            raise ProxyConfigurationError("path is required")
        if not isinstance(self.path, (str, re.Pattern)):
            raise ProxyConfigurationError("path must be a string or a compiled regex")
        if self.status_code is None:
            raise ProxyConfigurationError("status_code is required")
        if not _is_positive_number(self.status_code, int):
            raise ProxyConfigurationError("status_code must be a positive integer")
        if not _is_positive_number(self.threshold, int):
            raise ProxyConfigurationError("threshold must be a positive number")
        if not _is_positive_number(self.time_window, (int, float)):
            raise ProxyConfigurationError("time_window must be a positive number")
        if not callable(self.on_trigger):
            raise ProxyConfigurationError("on_trigger must be callable")

    def matches(self, path: str, status_code: int) -> bool:
        if status_code != self.status_code:
            return False
        if isinstance(self.path, re.Pattern):
            return self.path.search(path) is not None
        return path == self.path


class HitWindow:
    """Per-client hit timestamps for one rule."""

    def __init__(self, time_window: float):
        self.time_window = time_window
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._hits)

    def hits(self, key: str) -> int:
        return len(self._hits.get(key, ()))

    def record(self, key: str, now: float, threshold: int) -> Optional[int]:
        """
        Add a hit for key and drop the expired ones.

        Returns the hit count when the threshold is reached, in which case the
        client's window is reset, otherwise None.
        """
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            hits.append(now)
            while hits and now - hits[0] >= self.time_window:
                hits.popleft()
            if len(hits) < threshold:
                return None
            count = len(hits)
            del self._hits[key]
            return count

    def sweep(self, now: float) -> None:
        """Forget clients whose most recent hit has expired."""
        with self._lock:
            expired = [
                key
                for key, hits in self._hits.items()
                if not hits or now - hits[-1] >= self.time_window
            ]
            for key in expired:
                del self._hits[key]


class AttackDetector:
    def __init__(
        self,
        rules: Union[WatchRule, Iterable[WatchRule]],
        clock: Callable[[], float] = time.monotonic,
    ):
        if isinstance(rules, WatchRule):
            rules = [rules]
        self.rules = list(rules)
        for rule in self.rules:
            if not isinstance(rule, WatchRule):
                raise ProxyConfigurationError(
                    f"attack detector rules must be WatchRule instances, got {type(rule).__name__}"
                )
        self._windows = [HitWindow(rule.time_window) for rule in self.rules]
        self._clock = clock
        self._since_sweep = 0

    def window(self, rule: WatchRule) -> HitWindow:
        for candidate, window in zip(self.rules, self._windows):
            if candidate is rule:
                return window
        raise KeyError(rule)

    def observe(
        self,
        ip: str,
        path: str,
        status_code: int,
        user_agent: Optional[str] = None,
    ) -> list[tuple[WatchRule, TriggerEvent]]:
        """
        Record a finished response against every rule.

        Returns the triggered rules with their events; callbacks are not run
        here, see ``notify``.
        """
        triggered = []
        now = self._clock()
        for rule, window in zip(self.rules, self._windows):
            if not rule.matches(path, status_code):
                continue
            self._since_sweep += 1
            hits = window.record(ip, now, rule.threshold)
            if hits is None:
                continue
            event = TriggerEvent(
                ip=ip,
                hits=hits,
                path=path,
                timestamp=int(time.time() * 1000),
                user_agent=user_agent or "unknown",
                status_code=status_code,
            )
            logger.warning(
                f"[AttackDetector] {ip} reached {hits} x {status_code} on {path}"
            )
            triggered.append((rule, event))

        if self._since_sweep >= SWEEP_INTERVAL:
            self._since_sweep = 0
            for window in self._windows:
                window.sweep(now)
        return triggered

    async def notify(self, triggered: list[tuple[WatchRule, TriggerEvent]]) -> None:
        """Run on_trigger callbacks; their failures are logged and swallowed."""
        for rule, event in triggered:
            try:
                result = rule.on_trigger(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                log_exception_with_details(
                    logger, "[AttackDetector] Error in on_trigger callback:", e
                )


class AttackDetectorMiddleware(BaseHTTPMiddleware):
    """Feeds every finished response to an AttackDetector."""

    def __init__(self, app: ASGIApp, detector: AttackDetector):
        super().__init__(app)
        self.detector = detector

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        response = await call_next(request)
        triggered = self.detector.observe(
            client_ip(request),
            request.url.path,
            response.status_code,
            request.headers.get("user-agent"),
        )
        if triggered:
            await self.detector.notify(triggered)
        return response
