"""Outbound text helpers: chunking to a platform limit and truncation."""

from __future__ import annotations

import json
from typing import Any


def split_message(text: str, max_length: int) -> list[str]:
    """Split *text* into ordered chunks no longer than *max_length*.

    Tries to split at paragraph boundaries first, then line boundaries,
    then hard-splits as a last resort. Whitespace-only chunks are dropped.
    """
    if max_length < 1:
        raise ValueError("max_length must be positive")
    if len(text) <= max_length:
        return [text] if text.strip() else []

    chunks: list[str] = []
    remaining = text

    while remaining:
        if len(remaining) <= max_length:
            chunks.append(remaining)
            break

        # Try to split at paragraph boundary
        split_point = remaining.rfind("\n\n", 0, max_length)

        # Fall back to line boundary
        if split_point < max_length // 2:
            split_point = remaining.rfind("\n", 0, max_length)

        # Hard split as last resort
        if split_point < max(max_length // 4, 1):
            split_point = max_length

        chunks.append(remaining[:split_point].rstrip())
        remaining = remaining[split_point:].lstrip("\n")

    return [chunk for chunk in chunks if chunk.strip()]


def truncate_text(text: str, limit: int) -> str:
    """Cut *text* to at most *limit* characters, marking the cut with an ellipsis."""
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 1)] + "…"


def format_input_summary(data: dict[str, Any]) -> str:
    """One-line rendering of a tool's input arguments."""
    if not data:
        return ""
    try:
        return json.dumps(data, ensure_ascii=False)
    except (TypeError, ValueError):
        return ", ".join(f"{key}={value}" for key, value in data.items())
