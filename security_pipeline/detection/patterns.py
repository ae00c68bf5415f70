"""
Payload pattern detectors.
Each detector is a ``(name, matcher)`` pair; the scorer runs them in order
and stops at the first match, so new detectors slot in without touching
the scoring control flow.
"""
import re
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Pattern, Sequence


@dataclass(frozen=True)
class PatternDetector:
    """A named payload matcher."""
    name: str
    matcher: Callable[[str], bool]

    def matches(self, payload: str) -> bool:
        return bool(self.matcher(payload))


def regex_detector(name: str, pattern: str, flags: int = 0) -> PatternDetector:
    """Build a detector from a regular expression."""
    compiled: Pattern[str] = re.compile(pattern, flags)
    return PatternDetector(name=name, matcher=lambda payload: compiled.search(payload) is not None)


SQL_INJECTION = regex_detector(
    "sql_injection",
    r"(\b(union|select|insert|update|delete|drop|create|alter)\b.*\b(from|where|order|group)\b)"
    r"|('.*'.*=.*')"
    r"|(\d+.*=.*\d+)",
    re.IGNORECASE,
)

XSS = regex_detector(
    "xss",
    r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>",
    re.IGNORECASE,
)

PATH_TRAVERSAL = regex_detector("path_traversal", r"(\.\.[/\\]){2,}")

COMMAND_INJECTION = regex_detector("command_injection", r"[;&|`$(){}\[\]]")

DEFAULT_DETECTORS: List[PatternDetector] = [
    SQL_INJECTION,
    XSS,
    PATH_TRAVERSAL,
    COMMAND_INJECTION,
]


def payload_fragments(payload: Any) -> List[str]:
    """Flatten a payload into the string fragments that get matched.

    Structured payloads are matched leaf by leaf so that JSON punctuation
    never counts as an injection attempt.
    """
    if payload is None:
        return []
    if isinstance(payload, str):
        return [payload]
    if isinstance(payload, dict):
        return [fragment for value in payload.values() for fragment in payload_fragments(value)]
    if isinstance(payload, (list, tuple)):
        return [fragment for value in payload for fragment in payload_fragments(value)]
    return [str(payload)]


def first_match(fragments: Sequence[str], detectors: Sequence[PatternDetector]) -> Optional[str]:
    """Name of the first detector matching any fragment, if any."""
    for detector in detectors:
        if any(detector.matches(fragment) for fragment in fragments):
            return detector.name
    return None
