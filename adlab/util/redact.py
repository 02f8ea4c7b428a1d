"""Utilities for redacting passwords from scripts and answer files before logging."""

import re
from collections.abc import Iterable

REDACTED = "REDACTED"

# Patterns for sensitive data that should be redacted
SENSITIVE_PATTERNS = [
    # Plain-text passwords converted to SecureString
    (r"(ConvertTo-SecureString\s+(?:-String\s+)?)'(?:[^']|'')*'", rf"\1'{REDACTED}'"),
    # Base64 payloads that may carry credentials
    (r"(FromBase64String\(')[A-Za-z0-9+/=]+(')", rf"\1{REDACTED}\2"),
    (r"(-EncodedCommand\s+)\S+", rf"\1{REDACTED}"),
    # Unattend <Password>/<AdministratorPassword> values
    (r"(Password>\s*<Value>)[^<]*(</Value>)", rf"\1{REDACTED}\2"),
    # Generic key=value secrets
    (r"(password|secret)(\s*[=:]\s*)\S+", rf"\1\2{REDACTED}"),
]


def redact_sensitive(text: str, secrets: Iterable[str] = ()) -> str:
    """
    Redact passwords from text.

    Known secret values are replaced verbatim first, then pattern-based
    redaction catches anything embedded in common PowerShell idioms.

    Args:
        text: Text potentially containing sensitive data
        secrets: Literal secret values to scrub

    Returns:
        Text with sensitive data replaced with REDACTED markers

    Example:
        >>> redact_sensitive("ConvertTo-SecureString 'P@ss' -AsPlainText -Force")
        "ConvertTo-SecureString 'REDACTED' -AsPlainText -Force"
    """
    result = text
    for secret in sorted({s for s in secrets if s}, key=len, reverse=True):
        result = result.replace(secret, REDACTED)
    for pattern, replacement in SENSITIVE_PATTERNS:
        result = re.sub(pattern, replacement, result, flags=re.IGNORECASE)
    return result
