"""
Helpers for building PowerShell source from Python values.

Every value interpolated into a script goes through :func:`quote` so that
names and paths containing quotes cannot break out of the literal.
"""

import base64
from collections.abc import Iterable


def quote(value) -> str:
    """Render a value as a single-quoted PowerShell string literal."""
    text = str(value)
    # PowerShell also treats typographic single quotes as delimiters
    for ch in ("'", "‘", "’", "‚", "‛"):
        text = text.replace(ch, ch + ch)
    return f"'{text}'"


def array(values: Iterable) -> str:
    """Render an iterable as a PowerShell array of string literals."""
    return "@(" + ", ".join(quote(v) for v in values) + ")"


def boolean(value: bool) -> str:
    """Render a Python bool as ``$true``/``$false``."""
    return "$true" if value else "$false"


def encode_command(script: str) -> str:
    """Encode a script for ``powershell.exe -EncodedCommand`` (UTF-16LE base64)."""
    return base64.b64encode(script.encode("utf-16-le")).decode("ascii")


def base64_utf8(text: str) -> str:
    """Base64 of UTF-8 text, for embedding payloads without quoting concerns."""
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def credential(username: str, password: str, variable: str = "cred") -> str:
    """
    Build a statement creating a PSCredential in ``$<variable>``.

    The password is embedded as a quoted literal; callers must redact the
    resulting script before logging it.
    """
    return (
        f"${variable} = New-Object System.Management.Automation.PSCredential("
        f"{quote(username)}, (ConvertTo-SecureString {quote(password)} -AsPlainText -Force))"
    )


def value(v) -> str:
    """Render a registry-style value: ints bare, lists as arrays, everything else quoted."""
    if isinstance(v, bool):
        return boolean(v)
    if isinstance(v, int):
        return str(v)
    if isinstance(v, (list, tuple)):
        return array(v)
    return quote(v)
