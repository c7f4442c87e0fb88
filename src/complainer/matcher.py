"""
Framework name filtering.

Failures are only reported for frameworks that pass the configured
allow/deny regular expressions. Deny rules always win; an empty allow
list admits everything that is not denied.
"""

from __future__ import annotations

import re
from typing import Iterable, List, Optional, Pattern


class NoopMatcher:
    """Matcher that accepts every framework."""

    def match(self, name: str) -> bool:
        return True


class RegexMatcher:
    """Matcher driven by allow and deny regular expressions."""

    def __init__(
        self,
        allow: Optional[Iterable[str]] = None,
        deny: Optional[Iterable[str]] = None,
    ):
        self.allow = _compile_all(allow, "allow")
        self.deny = _compile_all(deny, "deny")

    def match(self, name: str) -> bool:
        for pattern in self.deny:
            if pattern.search(name):
                return False

        for pattern in self.allow:
            if pattern.search(name):
                return True

        return not self.allow

    def __repr__(self) -> str:
        allow = [p.pattern for p in self.allow]
        deny = [p.pattern for p in self.deny]
        return f"RegexMatcher(allow={allow}, deny={deny})"


def build_matcher(
    allow: Optional[Iterable[str]] = None,
    deny: Optional[Iterable[str]] = None,
):
    """
    Build a framework matcher from pattern lists.

    Returns a NoopMatcher when no patterns are configured.

    Raises:
        ValueError: If a pattern is not a valid regular expression.
    """
    allow = list(allow or [])
    deny = list(deny or [])
    if not allow and not deny:
        return NoopMatcher()
    return RegexMatcher(allow=allow, deny=deny)


def _compile_all(patterns: Optional[Iterable[str]], kind: str) -> List[Pattern[str]]:
    compiled = []
    for pattern in patterns or []:
        try:
            compiled.append(re.compile(pattern))
        except re.error as exc:
            raise ValueError(f"Invalid {kind} pattern {pattern!r}: {exc}") from exc
    return compiled
