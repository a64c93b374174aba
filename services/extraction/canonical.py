# services/extraction/canonical.py
from __future__ import annotations

import re
from typing import Any, Dict, Mapping, Optional, TypedDict


class MedicineAttributes(TypedDict, total=False):
    name: str
    brand_name: str
    generic_name: str
    dosage_form: str
    active_ingredient: str
    strength_value: float
    strength_unit: str
    container_type: str
    total_quantity: float
    quantity_unit: str
    manufacturer: str
    lot_number: str
    expiration_date: str


# field -> expected type; everything not listed here is dropped
FIELD_TYPES: Dict[str, type] = {
    "name": str,
    "brand_name": str,
    "generic_name": str,
    "dosage_form": str,
    "active_ingredient": str,
    "strength_value": float,
    "strength_unit": str,
    "container_type": str,
    "total_quantity": float,
    "quantity_unit": str,
    "manufacturer": str,
    "lot_number": str,
    "expiration_date": str,
}

CANONICAL_FIELDS = tuple(FIELD_TYPES.keys())

DOSAGE_FORMS = (
    "tablet",
    "capsule",
    "syrup",
    "suspension",
    "solution",
    "cream",
    "ointment",
    "gel",
    "lotion",
    "drops",
    "injection",
    "inhaler",
    "spray",
    "patch",
    "suppository",
)

CONTAINER_TYPES = (
    "bottle",
    "box",
    "tube",
    "vial",
    "inhaler",
    "blister_pack",
    "sachet",
    "ampoule",
)

# Leading number of a string such as "500", "500.0" or "500mg".
_LEADING_NUMBER_RE = re.compile(r"^\s*([-+]?(?:\d+(?:\.\d*)?|\.\d+))")


def parse_leading_number(value: str) -> Optional[float]:
    m = _LEADING_NUMBER_RE.match(value)
    if not m:
        return None
    try:
        return float(m.group(1))
    except ValueError:
        return None


def coerce_value(field: str, value: Any) -> Any:
    """
    Apply the coercion table to one value.
    Unparseable numeric strings are returned unchanged so persistence can reject them
    with a field-level message.
    """
    expected = FIELD_TYPES.get(field)
    if expected is float:
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, str):
            n = parse_leading_number(value)
            return n if n is not None else value
        return value
    if expected is str and isinstance(value, str):
        return value.strip()
    return value


def normalize_attributes(data: Mapping[str, Any]) -> MedicineAttributes:
    """Allow-list, coerce, and drop null or empty values."""
    out: Dict[str, Any] = {}
    for field in CANONICAL_FIELDS:
        if field not in data:
            continue
        value = coerce_value(field, data[field])
        if value is None or value == "":
            continue
        out[field] = value
    return out  # type: ignore[return-value]


def is_known_dosage_form(value: Any) -> bool:
    return isinstance(value, str) and value in DOSAGE_FORMS


def is_known_container_type(value: Any) -> bool:
    return isinstance(value, str) and value in CONTAINER_TYPES
