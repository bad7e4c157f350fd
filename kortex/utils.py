"""
Utility functions for Kortex.

Provides helpers for text processing, URLs, and redaction of sensitive arguments.
"""

import re
from typing import Any


def truncate_text(text: str, max_chars: int, suffix: str = "...") -> str:
    """Truncate text to a maximum number of characters.

    Args:
        text: Text to truncate
        max_chars: Maximum number of characters
        suffix: Suffix to add when truncated

    Returns:
        Truncated text
    """
    if len(text) <= max_chars:
        return text
    return text[:max_chars - len(suffix)] + suffix


def clean_text(text: str) -> str:
    """Collapse all whitespace runs to single spaces and strip the ends."""
    return re.sub(r'\s+', ' ', text).strip()


def compact_name(text: str, max_chars: int = 50) -> str:
    """Normalize a node name for the accessibility snapshot.

    Whitespace is collapsed first, then the result is cut at ``max_chars``
    without a suffix so the same DOM always yields the same name.
    """
    return clean_text(text)[:max_chars].rstrip()


def normalize_url(url: str) -> str:
    """Add an https:// scheme to bare hosts, leave anything with a scheme alone."""
    url = url.strip()
    if re.match(r'^[a-zA-Z][a-zA-Z0-9+.-]*:', url):
        return url
    return "https://" + url


def is_password_field(selector: str) -> bool:
    """Check if a selector likely refers to a password field.

    Args:
        selector: The selector to check

    Returns:
        True if likely a password field
    """
    password_patterns = [
        r'password',
        r'type=["\']?password',
        r'#pass',
        r'\.pass',
        r'passwd',
        r'pwd',
    ]
    selector_lower = selector.lower()
    return any(re.search(p, selector_lower) for p in password_patterns)


def redact_args(tool: str, args: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``args`` with secrets typed into password fields removed."""
    if tool != "type":
        return dict(args)
    selector = str(args.get("selector", ""))
    if is_password_field(selector) and "text" in args:
        return {**args, "text": "[REDACTED]"}
    return dict(args)
