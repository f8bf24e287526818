"""
Reduces loosely typed form values to JSON-safe primitives.

Every value that ends up in a submission payload passes through
``coerce_value``. The result is always one of the ``ValueKind`` shapes:
str, bool, int/float, list of coerced values or str-keyed dict of coerced
values. Anything else comes back as ``None`` and the caller treats the field
as absent.
"""
import json
import logging
import numbers
from collections.abc import Mapping
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from runstudio.core.errors import FormValidationError, GENERAL_ERROR_KEY

logger = logging.getLogger(__name__)

JsonValue = Union[str, bool, int, float, List[Any], Dict[str, Any]]


class ValueKind(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOL = "boolean"
    LIST = "list"
    MAP = "map"


def _coerce_enum(value: Enum) -> Optional[JsonValue]:
    return coerce_value(value.value)


def _coerce_int(value: int) -> int:
    return int(value)


def _coerce_wrapped_number(value: numbers.Number) -> float:
    # Decimal, Fraction and friends: float is the widest JSON-compatible shape
    return float(value)


def _coerce_mapping(value: Mapping) -> Dict[str, Any]:
    result = {}
    for key, item in value.items():
        if not isinstance(key, str):
            logger.warning("Dropping non-string mapping key %r", key)
            continue
        coerced = coerce_value(item)
        if coerced is not None:
            result[key] = coerced
    return result


def _coerce_sequence(value) -> List[Any]:
    return [c for c in (coerce_value(item) for item in value) if c is not None]


# Order matters: bool is an int subclass and must win over the numeric rows,
# and str-based enums must be unwrapped before the str row.
COERCION_TABLE: List[Tuple[Union[type, Tuple[type, ...]], Optional[ValueKind], Callable[[Any], Any]]] = [
    (bool, ValueKind.BOOL, bool),
    (Enum, None, _coerce_enum),
    (str, ValueKind.STRING, str),
    (int, ValueKind.NUMBER, _coerce_int),
    (float, ValueKind.NUMBER, float),
    (numbers.Number, ValueKind.NUMBER, _coerce_wrapped_number),
    (Mapping, ValueKind.MAP, _coerce_mapping),
    ((list, tuple), ValueKind.LIST, _coerce_sequence),
]


def kind_of(value: Any) -> Optional[ValueKind]:
    """Which JSON shape ``value`` would coerce to, or None when it is unsupported."""
    for types, kind, _ in COERCION_TABLE:
        if isinstance(value, types):
            if kind is None:
                return kind_of(value.value)
            return kind
    return None


def coerce_value(value: Any) -> Optional[JsonValue]:
    """Convert ``value`` to a JSON-safe primitive, or None when it has no JSON shape."""
    if value is None:
        return None
    for types, _, convert in COERCION_TABLE:
        if isinstance(value, types):
            try:
                return convert(value)
            except (TypeError, ValueError, ArithmeticError) as e:
                logger.warning("Dropping %s value that failed coercion: %s", type(value).__name__, e)
                return None
    logger.warning("Dropping unsupported value of type %s", type(value).__name__)
    return None


def is_blank(value: Any) -> bool:
    """None, the empty string and empty collections never count as a user-supplied value."""
    if value is None:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def ensure_json_safe(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize and re-parse ``payload``; the parsed copy is what gets submitted."""
    try:
        encoded = json.dumps(payload, allow_nan=False)
        decoded = json.loads(encoded)
    except (TypeError, ValueError) as e:
        logger.error("Payload failed JSON round-trip: %s", e)
        raise FormValidationError({GENERAL_ERROR_KEY: f"Invalid input data: {e}"})
    if not isinstance(decoded, dict):
        raise FormValidationError({GENERAL_ERROR_KEY: "Failed to prepare input data"})
    return decoded
