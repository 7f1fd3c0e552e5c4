from __future__ import annotations

import os
from typing import Any, Iterable, Mapping

DEFAULT_BLOCKED_KEYWORDS: tuple[str, ...] = (
    "scam",
    "fraud",
    "wire transfer",
    "upfront fee",
    "registration fee",
    "guaranteed income",
    "crypto giveaway",
    "click here",
    "whatsapp only",
    "hate",
    "violence",
    "nsfw",
)

PREVIEW_FIELDS: tuple[str, ...] = (
    "title",
    "name",
    "description",
    "introduction",
    "question",
    "answer",
    "feedback_subject",
    "feedback_desc",
)

PREVIEW_LIMIT = 100


def get_blocked_keywords() -> tuple[str, ...]:
    raw = os.getenv("CAREER_COMPASS_BLOCKED_KEYWORDS", "").strip()
    if not raw:
        return DEFAULT_BLOCKED_KEYWORDS
    keywords = [item.strip().lower() for item in raw.split(",")]
    return tuple(keyword for keyword in keywords if keyword)


def scan_text(text: str | None, keywords: Iterable[str] | None = None) -> list[str]:
    content = (text or "").lower()
    if not content:
        return []
    selected = get_blocked_keywords() if keywords is None else keywords
    matched: list[str] = []
    for keyword in selected:
        needle = keyword.strip().lower()
        if needle and needle in content and needle not in matched:
            matched.append(needle)
    return matched


def scan_record(record: Mapping[str, Any], keywords: Iterable[str] | None = None) -> list[str]:
    text = " ".join(str(record[field]) for field in PREVIEW_FIELDS if record.get(field))
    return scan_text(text, keywords)


def content_preview(record: Mapping[str, Any]) -> str:
    for field in PREVIEW_FIELDS:
        value = record.get(field)
        if value:
            text = str(value)
            return text if len(text) <= PREVIEW_LIMIT else f"{text[:PREVIEW_LIMIT]}..."
    return "No content preview available"
