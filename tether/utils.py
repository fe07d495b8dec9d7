"""Shared utility functions for Tether."""

from __future__ import annotations

import json
import re
import uuid
from typing import Any

_THINK_TAG = re.compile(r"<\s*(think|analysis|thinking)\s*>(.*?)<\s*/\s*\1\s*>", re.IGNORECASE | re.DOTALL)


def new_id(prefix: str) -> str:
    """Short random identifier like ``call_3f9a1c2b7d4e``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def extract_thinking(content: str | None, existing: str | None = None) -> tuple[str, str | None]:
    """Pull inline <think>/<thinking>/<analysis> blocks out of model text.

    Returns (cleaned_content, thinking). Existing thinking is kept in front
    of whatever the tags contribute.
    """
    text = content or ""
    collected = [m.group(2).strip() for m in _THINK_TAG.finditer(text) if m.group(2).strip()]
    if not collected:
        return text, existing or None
    thinking = "\n\n".join(part for part in [existing, *collected] if part).strip()
    return _THINK_TAG.sub("", text).strip(), thinking or None


def dedupe_thinking(thinking: str | None) -> str:
    """Collapse repeated paragraphs and runs of identical lines.

    Some reasoning models echo the same paragraph several times across
    stream chunks. Paragraphs are compared case-insensitively; a line
    repeated back-to-back is kept at most once.
    """
    if not thinking:
        return ""

    seen: set[str] = set()
    paragraphs: list[str] = []
    for para in re.split(r"\n\n+", thinking):
        key = para.strip().lower()
        if key and key not in seen:
            seen.add(key)
            paragraphs.append(para.strip())

    lines: list[str] = []
    last: str | None = None
    for line in "\n\n".join(paragraphs).split("\n"):
        stripped = line.strip()
        if stripped and stripped == last:
            continue
        lines.append(line)
        last = stripped
    return "\n".join(lines).strip()


def safe_json_dumps(value: Any) -> str:
    """JSON-encode anything; falls back to str() for non-serializable values."""
    if value is None:
        return ""
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)
