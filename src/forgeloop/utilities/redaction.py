"""Secret scrubbing for backend output before it is logged or persisted."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

REDACTED = "[REDACTED]"

# (pattern, replacement). Applied in order; every pattern is case-insensitive.
DEFAULT_SECRET_PATTERNS: tuple[tuple[str, str], ...] = (
    # Key-value forms only: ":" or "=" must follow the key.
    (r"api[_-]?key\s*[:=]\s*[^\s&]+", f"api_key={REDACTED}"),
    (r"token\s*[:=]\s*[^\s&]+", f"token={REDACTED}"),
    (r"password\s*[:=]\s*[^\s&]+", f"password={REDACTED}"),
    (r"bearer\s+[^\s&]+", f"bearer {REDACTED}"),
    (r"sk-[a-zA-Z0-9_-]{20,}", f"sk-{REDACTED}"),
)


@dataclass(frozen=True, slots=True)
class SecretRedactor:
    """Replaces credential-looking substrings with a fixed marker.

    Text that matches none of the patterns comes back identical.
    """

    patterns: tuple[tuple[re.Pattern[str], str], ...]

    @classmethod
    def from_patterns(
        cls,
        patterns: Iterable[tuple[str, str]] = DEFAULT_SECRET_PATTERNS,
        *,
        extra: Iterable[tuple[str, str]] = (),
    ) -> SecretRedactor:
        compiled = tuple(
            (re.compile(pattern, re.IGNORECASE), replacement)
            for pattern, replacement in (*tuple(patterns), *tuple(extra))
        )
        return cls(patterns=compiled)

    def redact(self, text: str) -> str:
        if not text:
            return text
        for pattern, replacement in self.patterns:
            text = pattern.sub(replacement, text)
        return text

    def contains_secret(self, text: str) -> bool:
        return any(pattern.search(text) for pattern, _ in self.patterns)


DEFAULT_REDACTOR = SecretRedactor.from_patterns()


def redact_secrets(text: str) -> str:
    """Redact with the default pattern set."""
    return DEFAULT_REDACTOR.redact(text)
