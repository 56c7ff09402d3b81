import re
from collections.abc import Mapping
from typing import Callable, Iterable, Optional, Tuple, Union

from simple_proxy.errors import ProxyConfigurationError

RewriteFunction = Callable[[str], str]
RewriteRules = Union[
    Mapping[Union[str, re.Pattern], str],
    Iterable[Tuple[Union[str, re.Pattern], str]],
]


class PathRewriter:
    """
    Rewrites the request path before it is sent upstream.

    Configured either with ordered ``pattern -> replacement`` rules or with a
    single function. Rules are chained: each one is tested against the path as
    already rewritten by the rules before it, and a matching rule substitutes
    its first occurrence only.
    """

    def __init__(self, rules: Optional[Union[RewriteRules, RewriteFunction]] = None):
        self._function: Optional[RewriteFunction] = None
        self._rules: list[Tuple[re.Pattern, str]] = []

        if rules is None:
            return
        if callable(rules):
            self._function = rules
            return
        if isinstance(rules, (str, bytes)):
            raise ProxyConfigurationError(
                "path_rewrite must be a mapping of pattern to replacement or a function"
            )

        pairs = rules.items() if isinstance(rules, Mapping) else rules
        try:
            pairs = list(pairs)
        except TypeError as e:
            raise ProxyConfigurationError(
                "path_rewrite must be a mapping of pattern to replacement or a function"
            ) from e

        for pair in pairs:
            try:
                pattern, replacement = pair
            except (TypeError, ValueError) as e:
                raise ProxyConfigurationError(
                    f"Invalid path_rewrite rule: {pair!r}"
                ) from e
            self._rules.append(self._compile_rule(pattern, replacement))

    @staticmethod
    def _compile_rule(pattern, replacement) -> Tuple[re.Pattern, str]:
        if not isinstance(replacement, str):
            raise ProxyConfigurationError(
                f"Replacement for path_rewrite pattern {pattern!r} must be a string"
            )
        if isinstance(pattern, re.Pattern):
            return pattern, replacement
        if not isinstance(pattern, str) or not pattern:
            raise ProxyConfigurationError(
                f"path_rewrite pattern must be a non-empty string, got {pattern!r}"
            )
        try:
            return re.compile(pattern), replacement
        except re.error as e:
            raise ProxyConfigurationError(
                f"Invalid path_rewrite pattern {pattern!r}: {e}"
            ) from e

    @property
    def enabled(self) -> bool:
        return self._function is not None or bool(self._rules)

    def rewrite(self, path: str) -> str:
        if self._function is not None:
            rewritten = self._function(path)
            if not isinstance(rewritten, str):
                raise ProxyConfigurationError(
                    f"path_rewrite function must return a string, got {type(rewritten).__name__}"
                )
            return rewritten

        for pattern, replacement in self._rules:
            if pattern.search(path):
                path = pattern.sub(replacement, path, count=1)
        return path
