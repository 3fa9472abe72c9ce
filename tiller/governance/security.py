# ==============================
# Security & Redaction
# ==============================
"""
Secret scrubbing for everything tiller shows or records outside the model call.

Where it applies:
- Event bus payloads (and therefore the event log mirror).
- Tool input shown on the approval prompt and in ToolExecuted events.

Rules:
- Mapping keys that look like credentials are masked whole, whatever the value.
- Strings are scanned with the built-in patterns plus Settings.logging.redact_patterns.
- Numbers, booleans and None pass through untouched; unknown objects are stringified.
- A user pattern that does not compile is logged and skipped; built-ins always apply.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Pattern, Tuple

from tiller.config.schema import Settings

logger = logging.getLogger("tiller.security")

MASK = "[REDACTED]"

# Matched as substrings of the lower-cased key.
CREDENTIAL_KEYS: Tuple[str, ...] = (
    "password",
    "passwd",
    "secret",
    "token",
    "api_key",
    "apikey",
    "authorization",
    "bearer",
    "cookie",
    "private_key",
    "ssh_key",
)

BUILTIN_PATTERNS: Tuple[str, ...] = (
    r"sk-[A-Za-z0-9_-]{20,}",  # OpenAI / Anthropic style keys
    r"gh[pousr]_[A-Za-z0-9]{30,}",  # GitHub tokens
    r"AKIA[0-9A-Z]{16}",  # AWS access key ids
    r"(?i)api[_-]?key\s*[:=]\s*\S+",
    r"(?i)authorization\s*:\s*bearer\s+\S+",
    r"-----BEGIN [A-Z ]*PRIVATE KEY-----[\s\S]*?-----END [A-Z ]*PRIVATE KEY-----",
)

_SCALARS = (int, float, bool)


def compile_patterns(patterns: Iterable[str]) -> List[Pattern[str]]:
    compiled: List[Pattern[str]] = []
    for raw in patterns:
        try:
            compiled.append(re.compile(raw))
        except re.error as exc:
            logger.warning("ignoring redact pattern %r: %s", raw, exc)
    return compiled


class SecurityRedactor:
    def __init__(
        self,
        *,
        patterns: Optional[Iterable[str]] = None,
        key_hints: Optional[Iterable[str]] = None,
        mask: str = MASK,
        enabled: bool = True,
    ) -> None:
        self.mask = mask
        self.enabled = enabled
        self.key_hints = tuple(k.lower() for k in (key_hints or CREDENTIAL_KEYS))
        self.patterns = compile_patterns(patterns or BUILTIN_PATTERNS)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecurityRedactor":
        return cls(
            patterns=[*BUILTIN_PATTERNS, *settings.logging.redact_patterns],
            enabled=settings.logging.redact,
        )

    def is_credential_key(self, key: Any) -> bool:
        lowered = str(key).lower()
        return any(hint in lowered for hint in self.key_hints)

    def redact_text(self, text: str) -> str:
        if not self.enabled:
            return text
        for pattern in self.patterns:
            text = pattern.sub(self.mask, text)
        return text

    def redact_dict(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Deep-copied, scrubbed view of `obj`; the same object when disabled."""
        if not self.enabled:
            return obj
        return {k: self.mask if self.is_credential_key(k) else self.redact(v) for k, v in obj.items()}

    def redact(self, value: Any) -> Any:
        if value is None or isinstance(value, _SCALARS):
            return value
        if isinstance(value, str):
            return self.redact_text(value)
        if isinstance(value, dict):
            return self.redact_dict(value)
        if isinstance(value, (list, tuple)):
            return [self.redact(item) for item in value]
        return self.redact_text(str(value))
