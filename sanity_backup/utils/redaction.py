"""
Secret redaction for log output and error messages.

Patterns cover bearer tokens, credentials embedded in URLs, JSON-shaped
key/value pairs and free-text ``name: value`` / ``name=value`` pairs whose
name looks sensitive (token, key, secret, password, auth, credential).
"""

import re
import logging
from typing import Iterable, List, Optional, Pattern
from urllib.parse import urlsplit

REDACTION_MARKER = '***'

_SENSITIVE_NAME = r'[A-Za-z0-9_\-]*(?:token|key|secret|password|passwd|auth|credential)[A-Za-z0-9_\-]*'

BEARER_PATTERN = re.compile(r'(Bearer\s+)[A-Za-z0-9\-_.~+/=]+', re.IGNORECASE)
URL_CREDENTIALS_PATTERN = re.compile(r'(https?://[^:/\s@]+:)[^@\s/]+(@)', re.IGNORECASE)
JSON_PAIR_PATTERN = re.compile(r'("' + _SENSITIVE_NAME + r'"\s*:\s*")[^"]*(")', re.IGNORECASE)
KEY_VALUE_PATTERN = re.compile(
    r'\b(' + _SENSITIVE_NAME + r')(\s*[:=]\s*)(?!Bearer\s)(["\']?)(?!\*\*\*)[^\s"\',;&]+\3',
    re.IGNORECASE
)


def _redact_key_value(match) -> str:
    name, separator, quote = match.group(1), match.group(2), match.group(3)
    return f"{name}{separator}{quote}{REDACTION_MARKER}{quote}"


def redact_secrets(text: str, patterns: Optional[Iterable[Pattern]] = None) -> str:
    """
    Replace sensitive substrings in text with the redaction marker.

    Args:
        text: Text to sanitize
        patterns: Optional custom compiled patterns. For a custom pattern with
            one capture group only that group is replaced; otherwise the
            whole match is.

    Returns:
        Sanitized text (unchanged when nothing sensitive was found)
    """
    if not text:
        return text

    if patterns is not None:
        redacted = text
        for pattern in patterns:
            redacted = pattern.sub(_replace_custom, redacted)
        return redacted

    redacted = BEARER_PATTERN.sub(lambda m: m.group(1) + REDACTION_MARKER, text)
    redacted = URL_CREDENTIALS_PATTERN.sub(lambda m: m.group(1) + REDACTION_MARKER + m.group(2), redacted)
    redacted = JSON_PAIR_PATTERN.sub(lambda m: m.group(1) + REDACTION_MARKER + m.group(2), redacted)
    redacted = KEY_VALUE_PATTERN.sub(_redact_key_value, redacted)
    return redacted


def _replace_custom(match) -> str:
    if match.re.groups == 1:
        start, end = match.span(1)
        offset = match.start()
        whole = match.group(0)
        return whole[:start - offset] + REDACTION_MARKER + whole[end - offset:]
    return REDACTION_MARKER


def url_secrets(url: Optional[str]) -> List[str]:
    """
    Secret forms of a credential-bearing URL such as a webhook.

    HTTP client errors often quote only the request path
    (``Max retries exceeded with url: /services/...``), so the path is
    registered next to the full URL.
    """
    if not url:
        return []

    values = [url]
    path = urlsplit(url).path
    if path.strip('/'):
        values.append(path)
    return values


def mask_literals(text: str, secrets: Iterable[str]) -> str:
    """Replace every occurrence of each literal secret value with the marker."""
    # Longest first so a secret containing another is masked whole
    for secret in sorted(secrets, key=lambda s: len(s or ''), reverse=True):
        if secret and secret in text:
            text = text.replace(secret, REDACTION_MARKER)
    return text


def sanitize(text: str, secrets: Iterable[str] = ()) -> str:
    """Mask literal secrets first, then apply the pattern-based redaction."""
    return redact_secrets(mask_literals(text, secrets))


class RedactingFormatter(logging.Formatter):
    """
    Formatter that sanitizes the fully rendered record.

    Redaction runs on the final string, so messages, interpolated arguments
    and formatted tracebacks are all covered.
    """

    def __init__(self, fmt=None, datefmt=None, secrets: Iterable[str] = ()):
        super().__init__(fmt, datefmt)
        # Longest first so a secret containing another is masked whole
        self.secrets: List[str] = sorted({s for s in secrets if s}, key=len, reverse=True)

    def format(self, record: logging.LogRecord) -> str:
        return sanitize(super().format(record), self.secrets)
