# caloric/processors/food_normalizer.py
"""
Food normalizer for upstream nutrition records.

Functions:
- as_number(value) / as_string(value)         lenient scalar coercion
- format_serving(serving_sizes) -> str|None    first usable {value, unit}
- map_nutrition(contents) -> Nutrition|None    None when every field is absent
- decode_food(raw) -> RawFood                  optional-field view of one record
- map_search_results(result) -> [SearchFood]   search items enriched by details

Upstream shapes drift; every accessor here fails soft (returns None) instead
of raising.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from caloric.schemas import Nutrition, SearchFood, SearchResult

# upstream key -> normalized Nutrition field
NUTRITION_FIELDS = {
    "protein": "protein",
    "carbohydrates": "carbs",
    "fat": "fat",
    "fiber": "fiber",
    "sugar": "sugars",
    "sodium": "sodium_mg",
    "potassium": "potassium_mg",
}


def _finite(value: Any) -> Optional[float]:
    try:
        parsed = float(value)
    except (OverflowError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def as_number(value: Any) -> Optional[float]:
    # bool is an int subclass; it is not a quantity
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _finite(value)
    if isinstance(value, str):
        normalized = value.strip()
        if not normalized:
            return None
        return _finite(normalized)
    return None


def as_string(value: Any) -> Optional[str]:
    if isinstance(value, str):
        normalized = value.strip()
        return normalized or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _format_number(value) if _finite(value) is not None else None
    return None


def _format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def format_serving(serving_sizes: Any) -> Optional[str]:
    if not isinstance(serving_sizes, list):
        return None
    for candidate in serving_sizes:
        if not isinstance(candidate, dict):
            continue
        value = as_number(candidate.get("value"))
        unit = as_string(candidate.get("unit"))
        if value is not None and unit:
            return f"{_format_number(value)} {unit}"
        if value is not None:
            return _format_number(value)
        if unit:
            return unit
    return None


def map_nutrition(contents: Any) -> Optional[Nutrition]:
    if not isinstance(contents, dict):
        return None
    energy = contents.get("energy")
    fields: Dict[str, Optional[float]] = {
        "calories": as_number(energy.get("value")) if isinstance(energy, dict) else None,
    }
    for upstream_key, name in NUTRITION_FIELDS.items():
        fields[name] = as_number(contents.get(upstream_key))
    if all(v is None for v in fields.values()):
        return None
    return Nutrition(**fields)


@dataclass(frozen=True)
class RawFood:
    id: Optional[str] = None
    version: Optional[str] = None
    name: Optional[str] = None
    brand: Optional[str] = None
    serving: Optional[str] = None
    nutrition: Optional[Nutrition] = None


def decode_food(raw: Any) -> Optional[RawFood]:
    if not isinstance(raw, dict):
        return None
    return RawFood(
        id=as_string(raw.get("id")),
        version=as_string(raw.get("version")),
        name=as_string(raw.get("description")),
        brand=as_string(raw.get("brand_name")),
        serving=format_serving(raw.get("serving_sizes")),
        nutrition=map_nutrition(raw.get("nutritional_contents")),
    )


def _details_by_key(result: SearchResult) -> Dict[str, RawFood]:
    out: Dict[str, RawFood] = {}
    for detail in result.details:
        if detail.status != 200 or not isinstance(detail.data, dict):
            continue
        food_id = as_string(detail.food_id)
        version = as_string(detail.version)
        if not food_id or not version:
            continue
        decoded = decode_food(detail.data)
        if decoded is not None:
            out[f"{food_id}:{version}"] = decoded
    return out


def map_search_results(result: SearchResult) -> List[SearchFood]:
    """
    Normalize a search payload into display foods.
    Detail fields win over the thinner search-item fields, one field at a time;
    items without a usable name are dropped.
    """
    data = result.search.data
    items = data.get("items") if isinstance(data, dict) else None
    if not isinstance(items, list):
        return []

    details = _details_by_key(result)
    foods: List[SearchFood] = []
    seen = set()

    for row in items:
        item = decode_food(row.get("item") if isinstance(row, dict) else None)
        if item is None or not item.id or not item.version:
            continue
        composite_id = f"{item.id}:{item.version}"
        if composite_id in seen:
            continue
        seen.add(composite_id)

        detail = details.get(composite_id)
        name = (detail.name if detail else None) or item.name
        if not name:
            continue

        foods.append(SearchFood(
            id=composite_id,
            name=name,
            brand=(detail.brand if detail else None) or item.brand,
            serving=(detail.serving if detail else None) or item.serving,
            nutrition=(detail.nutrition if detail else None) or item.nutrition,
        ))
    return foods
