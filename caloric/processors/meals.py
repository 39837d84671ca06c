# caloric/processors/meals.py
import math
from enum import Enum
from typing import Any, Optional

MIN_PORTION = 0.25
DEFAULT_PORTION = 1.0


class Meal(str, Enum):
    BREAKFAST = "breakfast"
    LUNCH = "lunch"
    DINNER = "dinner"
    SNACKS = "snacks"


DEFAULT_MEAL = Meal.LUNCH

_MEAL_ALIASES = {
    "breakfast": Meal.BREAKFAST,
    "lunch": Meal.LUNCH,
    "dinner": Meal.DINNER,
    "snack": Meal.SNACKS,
    "snacks": Meal.SNACKS,
}


def normalize_meal(raw: Any) -> Optional[Meal]:
    """Map a free-form meal name to a Meal, or None if unrecognized."""
    if isinstance(raw, (list, tuple)):
        raw = raw[0] if raw else None
    if isinstance(raw, Meal):
        return raw
    if not isinstance(raw, str):
        return None
    return _MEAL_ALIASES.get(raw.strip().lower())


def round_to_quarter(value: float) -> float:
    # half-up, so 0.125 -> 0.25 and 1.375 -> 1.5 (round() would go to even)
    return math.floor(value * 4 + 0.5) / 4


def sanitize_portion(value: Any) -> float:
    """Nearest quarter, never below MIN_PORTION; non-numbers fall back to DEFAULT_PORTION."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return DEFAULT_PORTION
    if not math.isfinite(number):
        return DEFAULT_PORTION
    return max(MIN_PORTION, round_to_quarter(number))
