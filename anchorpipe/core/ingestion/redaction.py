"""
Redaction of secrets and personal data in ingested test runs.

Runs before anything from a queued report is written to the database.
Values under sensitive keys are masked outright; free text such as failure
output and test names is scrubbed with patterns for common credential and
PII shapes.
"""

import re
from typing import Any, Dict, List, Optional, Pattern, Sequence, Tuple

from ..logging import get_logger

logger = get_logger(__name__)

REDACTED = "[REDACTED]"

SENSITIVE_KEY_PATTERNS: Tuple[str, ...] = (
    "password",
    "passwd",
    "pwd",
    "secret",
    "token",
    "key",
    "auth",
    "cookie",
    "credential",
    "private",
    "email",
    "ssn",
    "card",
)

# Applied in order; block and token patterns must precede assignment and email.
TEXT_PATTERNS: Tuple[Tuple[str, Pattern[str], str], ...] = (
    (
        "private_key",
        re.compile(
            r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----",
            re.DOTALL,
        ),
        "[REDACTED_PRIVATE_KEY]",
    ),
    (
        "jwt",
        re.compile(r"\beyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+"),
        "[REDACTED_JWT]",
    ),
    (
        "bearer",
        re.compile(r"\b(Bearer)\s+[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE),
        r"\1 [REDACTED]",
    ),
    (
        "aws_access_key",
        re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b"),
        "[REDACTED_AWS_KEY]",
    ),
    (
        "github_token",
        re.compile(
            r"\b(?:gh[pousr]_[A-Za-z0-9]{36,255}|github_pat_[A-Za-z0-9_]{22,255})\b"
        ),
        "[REDACTED_GITHUB_TOKEN]",
    ),
    (
        "assignment",
        re.compile(
            r"\b(password|passwd|pwd|secret|token|api[_-]?key|access[_-]?key"
            r"|client[_-]?secret)"
            r"(\s*[=:]\s*)(\"[^\"]*\"|'[^']*'|[^\s,;&]+)",
            re.IGNORECASE,
        ),
        r"\1\2[REDACTED]",
    ),
    (
        "email",
        re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"),
        "[REDACTED_EMAIL]",
    ),
)


class Redactor:
    """
    Masks sensitive keys and scrubs secrets from text.

    Args:
        key_patterns: Substrings that mark a mapping key as sensitive
        text_patterns: (name, regex, replacement) scrubbing rules
    """

    def __init__(
        self,
        key_patterns: Sequence[str] = SENSITIVE_KEY_PATTERNS,
        text_patterns: Sequence[Tuple[str, Pattern[str], str]] = TEXT_PATTERNS,
    ) -> None:
        self.key_patterns = tuple(p.lower() for p in key_patterns)
        self.text_patterns = tuple(text_patterns)
        self.redaction_count = 0

    def is_sensitive_key(self, key: str) -> bool:
        """Case-insensitive substring match against the key patterns."""
        key_lower = key.lower()
        return any(pattern in key_lower for pattern in self.key_patterns)

    def scrub_text(self, text: Optional[str]) -> Optional[str]:
        """Replace every secret-shaped substring."""
        if not text:
            return text
        for name, pattern, replacement in self.text_patterns:
            text, count = pattern.subn(replacement, text)
            if count:
                self.redaction_count += count
                logger.debug("Redacted text pattern", pattern=name, count=count)
        return text

    def redact_value(self, value: Any) -> Any:
        """Recursively copy a value, masking sensitive keys and scrubbing strings."""
        if isinstance(value, dict):
            redacted: Dict[str, Any] = {}
            for key, item in value.items():
                if self.is_sensitive_key(str(key)):
                    redacted[key] = REDACTED
                    self.redaction_count += 1
                else:
                    redacted[key] = self.redact_value(item)
            return redacted
        if isinstance(value, list):
            return [self.redact_value(item) for item in value]
        if isinstance(value, str):
            return self.scrub_text(value)
        return value

    def redact_test(self, test: Dict[str, Any]) -> Dict[str, Any]:
        """Scrub one test entry of a queued report."""
        redacted = dict(test)
        for field in ("path", "name", "failureDetails"):
            if isinstance(redacted.get(field), str):
                redacted[field] = self.scrub_text(redacted[field])
        if redacted.get("metadata") is not None:
            redacted["metadata"] = self.redact_value(redacted["metadata"])
        return redacted

    def redact_payload(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Redact a ``test.run.received`` payload.

        Args:
            payload: Message payload with environment, metadata and tests

        Returns:
            Redacted copy; the input is not modified
        """
        redacted = dict(payload)
        for field in ("environment", "metadata"):
            if redacted.get(field) is not None:
                redacted[field] = self.redact_value(redacted[field])

        tests: List[Dict[str, Any]] = redacted.get("tests") or []
        redacted["tests"] = [self.redact_test(t) for t in tests]
        return redacted


def redact_payload(payload: Dict[str, Any]) -> Tuple[Dict[str, Any], int]:
    """Redact a payload with the default rules; returns (payload, redaction count)."""
    redactor = Redactor()
    result = redactor.redact_payload(payload)
    return result, redactor.redaction_count
