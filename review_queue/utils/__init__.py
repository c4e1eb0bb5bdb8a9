"""Utility module for text handling and sanitization."""

from review_queue.utils.sanitization import (
    PathTraversalError,
    PromptSanitizer,
    PromptTooLongError,
)


def truncate_with_marker(text: str, max_length: int, marker: str = "[...truncated]") -> str:
    """
    Truncate text and add marker if it exceeds max_length.

    Args:
        text: The text to truncate.
        max_length: Maximum length before truncation.
        marker: Marker to append when truncated.

    Returns:
        Original text if within limit, otherwise truncated with marker.
    """
    if len(text) <= max_length:
        return text
    # Reserve space for marker
    truncate_at = max_length - len(marker)
    return text[:truncate_at] + marker


def tail_text(text: str, max_length: int) -> str:
    """Keep the last max_length characters, marking the cut at the front."""
    text = text.strip()
    if len(text) <= max_length:
        return text
    marker = "[...]"
    return marker + text[-(max_length - len(marker)):]


__all__ = [
    "PathTraversalError",
    "PromptSanitizer",
    "PromptTooLongError",
    "tail_text",
    "truncate_with_marker",
]
