"""
Security Utilities
==================

Helpers for keeping secrets out of logs and user text out of file paths.
"""

import re
from pathlib import Path


def sanitize_filename(filename: str, max_length: int = 255) -> str:
    """
    Sanitize a filename by removing dangerous characters.

    Args:
        filename: Original filename
        max_length: Maximum allowed length

    Returns:
        Sanitized filename safe for filesystem operations
    """
    if not filename:
        return "unnamed"

    # Keep: alphanumeric, underscore, hyphen, dot
    sanitized = re.sub(r"[^\w\-. ]", "_", filename)
    sanitized = re.sub(r"[_\s]+", "_", sanitized)
    sanitized = sanitized.strip("._- ")

    if len(sanitized) > max_length:
        stem = Path(sanitized).stem
        ext = Path(sanitized).suffix
        sanitized = stem[: max_length - len(ext)] + ext

    if not sanitized or sanitized in (".", ".."):
        sanitized = "unnamed"

    return sanitized


_KEY_PATTERNS = [
    (r"AIza[A-Za-z0-9_\-]{35}", "AIza***REDACTED***"),
    (r"([?&]key=)[^&\s\"']+", r"\1***REDACTED***"),
    (r"Bearer\s+[A-Za-z0-9_\-\.]+", "Bearer ***REDACTED***"),
    (r"(GEMINI_API_KEY|GOOGLE_API_KEY)=[^\s]+", r"\1=***REDACTED***"),
]


def redact_api_key(text: str) -> str:
    """
    Redact API keys and sensitive tokens from text.

    Args:
        text: Text that might contain API keys

    Returns:
        Text with API keys redacted
    """
    if not text:
        return text

    result = text
    for pattern, replacement in _KEY_PATTERNS:
        result = re.sub(pattern, replacement, result)
    return result


def truncate_data_url(value: str, keep: int = 48) -> str:
    """Shorten base64 data URLs for log output."""
    if value and value.startswith("data:") and len(value) > keep:
        return f"{value[:keep]}...({len(value)} chars)"
    return value
