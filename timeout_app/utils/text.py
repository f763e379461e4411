"""Text utilities for user-supplied names, subjects and descriptions."""
import re
from typing import Optional


def sanitize_text(text: Optional[str]) -> str:
    """Clean and normalize a single-line display string.

    Removes control characters, collapses runs of whitespace and strips
    the ends. UTF-8 content is preserved.

    Examples:
        >>> sanitize_text("  Physics   101\\x07 ")
        'Physics 101'
        >>> sanitize_text(None)
        ''
    """
    if text is None:
        return ""

    text = str(text)
    text = re.sub(r'[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F-\x9F]', '', text)
    text = re.sub(r'\s+', ' ', text)
    return text.strip()


def sanitize_multiline(text: Optional[str]) -> str:
    """Like ``sanitize_text`` but keeps paragraph breaks (max one blank line)."""
    if text is None:
        return ""

    text = str(text)
    text = re.sub(r'[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F-\x9F]', '', text)
    text = re.sub(r'[ \t]+', ' ', text)
    text = re.sub(r'\n{3,}', '\n\n', text)
    return '\n'.join(line.strip() for line in text.split('\n')).strip()


def display_name(first_name: Optional[str], last_name: Optional[str]) -> str:
    """Display name derived from identity name fields ("Anonymous" if blank)."""
    return f"{first_name or ''} {last_name or ''}".strip() or "Anonymous"
