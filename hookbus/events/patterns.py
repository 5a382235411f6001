"""Subscription pattern matching over dot-segmented event types.

Rules:
  "*"               matches every event type
  "project.done"    matches only itself
  "user.*"          matches any type the regex ^user\\..*$ matches

Wildcards are not segment-aware: "*" expands to ".*", so "user.*" also matches
"user.created.extra".
"""

import re
from functools import lru_cache

__all__ = ["PatternError", "WILDCARD", "compile_pattern", "matches", "matches_any", "validate_pattern"]

WILDCARD = "*"

_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_\-*]+$")


class PatternError(ValueError):
    """Subscription pattern is malformed."""


def validate_pattern(pattern: str) -> str:
    """Return pattern unchanged if well-formed, else raise PatternError."""
    if not isinstance(pattern, str) or not pattern:
        raise PatternError("pattern must be a non-empty string")
    if pattern == WILDCARD:
        return pattern
    for segment in pattern.split("."):
        if not segment:
            raise PatternError(f"pattern {pattern!r} has an empty segment")
        if not _SEGMENT_RE.match(segment):
            raise PatternError(f"pattern {pattern!r} has invalid characters in {segment!r}")
    return pattern


@lru_cache(maxsize=512)
def compile_pattern(pattern: str) -> re.Pattern[str]:
    """Escape literal dots, expand '*' to '.*', anchor both ends."""
    body = pattern.replace(".", "\\.").replace("*", ".*")
    return re.compile(f"^{body}$")


def matches(pattern: str, event_type: str) -> bool:
    """True if pattern selects event_type."""
    if pattern == WILDCARD or pattern == event_type:
        return True
    return compile_pattern(pattern).match(event_type) is not None


def matches_any(patterns: list[str] | tuple[str, ...], event_type: str) -> bool:
    return any(matches(p, event_type) for p in patterns)
