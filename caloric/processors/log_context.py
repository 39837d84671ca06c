# caloric/processors/log_context.py
"""
Recent food-log hints supplied by the client, and the prompts built from them.

- parse_recent_log_hints(raw) -> [RecentLogHint]   lenient, newest first
- build_recent_log_context_prompt(hints)           extra system message for the agent
- build_recent_log_transcription_prompt(hints)     biasing prompt for speech-to-text
"""

import re
from dataclasses import dataclass
from typing import Any, List, Optional

from caloric.processors.food_normalizer import as_number

MAX_RECENT_LOG_HINTS = 120
MAX_DISPLAY_HINTS = 40
MAX_TRANSCRIPTION_NAMES = 20

_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class RecentLogHint:
    food_name: str
    meal: Optional[str] = None
    brand: Optional[str] = None
    serving: Optional[str] = None
    created_at: Optional[float] = None
    date_key: Optional[str] = None


def _trimmed(value: Any, max_length: int) -> Optional[str]:
    if not isinstance(value, str):
        return None
    normalized = _WHITESPACE.sub(" ", value).strip()
    if not normalized:
        return None
    return normalized[:max_length]


def parse_recent_log_hints(raw: Any) -> List[RecentLogHint]:
    if not isinstance(raw, list):
        return []

    parsed: List[RecentLogHint] = []
    for item in raw:
        if len(parsed) >= MAX_RECENT_LOG_HINTS:
            break
        if not isinstance(item, dict):
            continue
        food_name = _trimmed(item.get("foodName"), 120)
        if not food_name:
            continue
        parsed.append(RecentLogHint(
            food_name=food_name,
            meal=_trimmed(item.get("meal"), 32),
            brand=_trimmed(item.get("brand"), 80),
            serving=_trimmed(item.get("serving"), 80),
            created_at=as_number(item.get("createdAt")),
            date_key=_trimmed(item.get("dateKey"), 24),
        ))

    parsed.sort(key=lambda h: h.created_at or 0, reverse=True)
    return parsed


def build_recent_log_context_prompt(hints: List[RecentLogHint]) -> Optional[str]:
    if not hints:
        return None

    lines = []
    for hint in hints[:MAX_DISPLAY_HINTS]:
        parts = [p for p in (hint.date_key, hint.meal, hint.food_name, hint.brand, hint.serving) if p]
        lines.append("- " + " | ".join(parts))

    return "\n".join([
        "User context from the last 3 days of logged foods (noisy voice hints may refer to these).",
        "Use this list to resolve likely ASR/transcription mistakes and map to likely foods before searching.",
        "Examples: 'laga banana' -> banana; incorrect ASR 'anana protein scoop' likely means intended "
        "query 'ena protein scoop' -> the matching Ena whey/protein item from recent logs.",
        "If a phrase likely contains multiple foods, split it and search each likely item.",
        *lines,
    ])


def _spoken_phrase(name: str) -> str:
    return _WHITESPACE.sub(" ", name.replace("&", " and ")).strip().lower()


def build_recent_log_transcription_prompt(hints: List[RecentLogHint]) -> Optional[str]:
    """Short vocabulary prompt: likely spoken phrases plus brand-qualified names."""
    if not hints:
        return None

    names: List[str] = []
    phrases: List[str] = []
    for hint in hints:
        full_name = f"{hint.brand} {hint.food_name}" if hint.brand else hint.food_name
        if full_name in names:
            continue
        names.append(full_name)
        phrases.append(f"log {_spoken_phrase(hint.food_name)}")
        if len(names) >= MAX_TRANSCRIPTION_NAMES:
            break

    return " ".join([
        "Food logging voice note.",
        "Preserve brand names when possible.",
        "Likely phrases: " + ", ".join(phrases) + ".",
        "Recent foods: " + ", ".join(names) + ".",
    ])
