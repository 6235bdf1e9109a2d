"""Data-driven error classification.

Each adapter supplies an ordered list of ``(kind, pattern)`` pairs that is
consulted first; anything it does not match falls through to the shared
table below. Adding a backend means adding patterns, never control flow.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass

from forgeloop.errors import ErrorKind

PatternSpec = tuple[ErrorKind | str, str]

# Evaluated top to bottom. Auth and quota come before rate limiting so that
# "429: insufficient_quota" is reported as a quota problem.
SHARED_TAXONOMY: tuple[tuple[ErrorKind, str], ...] = (
    (ErrorKind.AUTH_EXPIRED, r"authentication[_ ]?(error|failed|required)"),
    (ErrorKind.AUTH_EXPIRED, r"oauth token has expired"),
    (ErrorKind.AUTH_EXPIRED, r"(token|credentials?|session) (has |have )?expired"),
    (ErrorKind.AUTH_EXPIRED, r"invalid[ _-]?(api[ _-]?)?key"),
    (ErrorKind.AUTH_EXPIRED, r"unauthori[sz]ed"),
    (ErrorKind.AUTH_EXPIRED, r"(status|http|code|error)\W{0,3}(401|403)\b"),
    (ErrorKind.AUTH_EXPIRED, r"not logged in|please (run \S+ )?log ?in"),
    (ErrorKind.QUOTA_EXCEEDED, r"quota[ _]?(exceeded|exhausted)"),
    (ErrorKind.QUOTA_EXCEEDED, r"insufficient[_ ]quota"),
    (ErrorKind.QUOTA_EXCEEDED, r"credit balance is too low|out of credits"),
    (ErrorKind.QUOTA_EXCEEDED, r"billing (hard )?limit"),
    (ErrorKind.QUOTA_EXCEEDED, r"monthly (usage |spend(ing)? )?limit"),
    (ErrorKind.RATE_LIMITED, r"rate[ _-]?limit"),
    (ErrorKind.RATE_LIMITED, r"too many requests"),
    (ErrorKind.RATE_LIMITED, r"(status|http|code|error)\W{0,3}429\b"),
    (ErrorKind.RATE_LIMITED, r"usage limit reached"),
    (ErrorKind.RATE_LIMITED, r"limit (reached|hit).*resets?\b"),
    (ErrorKind.PERMANENT, r"invalid[ _-]model|unknown model"),
    (ErrorKind.PERMANENT, r"model \S+ (is )?not (found|supported|available)"),
    (ErrorKind.PERMANENT, r"unsupported[ _]operation"),
    (ErrorKind.PERMANENT, r"invalid[ _]request"),
    (ErrorKind.PERMANENT, r"(prompt is too long|context (length|window) exceeded)"),
    (ErrorKind.PERMANENT, r"(status|http|code|error)\W{0,3}(400|404|422)\b"),
    (ErrorKind.PERMANENT, r"command not found|no such file or directory"),
    (ErrorKind.TRANSIENT, r"timed? ?out|timeout"),
    (ErrorKind.TRANSIENT, r"connection (reset|refused|error|aborted)|econnreset"),
    (ErrorKind.TRANSIENT, r"temporar(y|ily)"),
    (ErrorKind.TRANSIENT, r"overloaded|service unavailable|bad gateway"),
    (ErrorKind.TRANSIENT, r"(status|http|code|error)\W{0,3}5\d\d\b"),
    (ErrorKind.TRANSIENT, r"network"),
)

DEFAULT_KIND = ErrorKind.TRANSIENT


def _compile(
    patterns: Iterable[PatternSpec],
) -> tuple[tuple[ErrorKind, re.Pattern[str]], ...]:
    return tuple(
        (ErrorKind(kind), re.compile(pattern, re.IGNORECASE))
        for kind, pattern in patterns
    )


def patterns_from_mapping(mapping: Mapping[str, Sequence[str]]) -> list[PatternSpec]:
    """Flatten a ``{kind: [regex, ...]}`` config mapping into ordered pairs."""
    flattened: list[PatternSpec] = []
    for kind, regexes in mapping.items():
        if isinstance(regexes, str):
            regexes = [regexes]
        flattened.extend((ErrorKind(kind), regex) for regex in regexes)
    return flattened


def error_message(error: BaseException | str) -> str:
    if isinstance(error, str):
        return error
    message = str(error)
    return message or type(error).__name__


@dataclass(frozen=True, slots=True)
class ErrorClassifier:
    """Maps an error onto an :class:`ErrorKind`. Pure: no state, no IO."""

    patterns: tuple[tuple[ErrorKind, re.Pattern[str]], ...] = ()
    shared: tuple[tuple[ErrorKind, re.Pattern[str]], ...] = _compile(SHARED_TAXONOMY)

    @classmethod
    def with_patterns(cls, patterns: Iterable[PatternSpec] = ()) -> ErrorClassifier:
        return cls(patterns=_compile(patterns))

    def match_specific(self, message: str) -> ErrorKind | None:
        for kind, pattern in self.patterns:
            if pattern.search(message):
                return kind
        return None

    def classify(self, error: BaseException | str) -> ErrorKind:
        message = error_message(error)

        kind = self.match_specific(message)
        if kind is not None:
            return kind

        if isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
            return ErrorKind.TRANSIENT

        for kind, pattern in self.shared:
            if pattern.search(message):
                return kind
        return DEFAULT_KIND


SHARED_CLASSIFIER = ErrorClassifier()


def classify_message(message: str) -> ErrorKind:
    """Classify with the shared table only."""
    return SHARED_CLASSIFIER.classify(message)
