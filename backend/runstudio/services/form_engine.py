"""
Turns a model's input schema plus the user's raw form values into a
validated, JSON-safe submission payload.

The engine itself holds no user data: every call takes the ``FormState`` it
should read and annotate, so one engine can back any number of sessions for
the same schema.
"""
import logging
import math
import numbers
from typing import Any, Callable, Dict, List, Optional

from runstudio.core.errors import FormValidationError, GENERAL_ERROR_KEY
from runstudio.schemas import ControlKind, FormField, InputProperty, InputSchema
from runstudio.services.coercion import coerce_value, ensure_json_safe, is_blank
from runstudio.services.image_encoder import ImageSource, encode_image

logger = logging.getLogger(__name__)

REQUIRED_MESSAGE = "This field is required"
NUMBER_MESSAGE = "Enter a valid number"
TOGGLE_MESSAGE = "Must be true or false"
IMAGE_FIELD_MESSAGE = "This field does not take an image"

MULTILINE_DESCRIPTION_LENGTH = 100
IMAGE_FORMATS = ("uri", "data-url")
NUMERIC_TYPES = ("integer", "number")

_TRUE_STRINGS = ("true", "1", "yes", "on")
_FALSE_STRINGS = ("false", "0", "no", "off")

# Controls that always display a concrete value, so an untouched optional
# field still submits what the user saw.
_DISPLAYED_INITIAL_CONTROLS = (ControlKind.CHOICE, ControlKind.TOGGLE, ControlKind.SLIDER)


class FormState:
    """Raw values and validation errors for one form session."""

    def __init__(self):
        self.values: Dict[str, Any] = {}
        self.errors: Dict[str, str] = {}

    def set_value(self, key: str, value: Any):
        self.values[key] = value
        self.errors.pop(key, None)

    def clear_value(self, key: str):
        self.values.pop(key, None)
        self.errors.pop(key, None)

    def clear(self):
        self.values.clear()
        self.errors.clear()

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


class _FieldError(Exception):
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


def _as_number(value: Any) -> float:
    if isinstance(value, bool):
        raise _FieldError(NUMBER_MESSAGE)
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            raise _FieldError(NUMBER_MESSAGE)
    if not isinstance(value, numbers.Number):
        raise _FieldError(NUMBER_MESSAGE)
    try:
        finite = math.isfinite(value)
    except TypeError:
        raise _FieldError(NUMBER_MESSAGE)
    if not finite:
        raise _FieldError(NUMBER_MESSAGE)
    return value


def _integral(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


class FormEngine:
    def __init__(self, schema: InputSchema, image_encoder: Callable[[ImageSource], str] = encode_image):
        self.schema = schema
        self.image_encoder = image_encoder
        self._required = set(schema.required)
        self._fields = {key: self._build_field(key, prop) for key, prop in schema.properties.items()}

    # === Layout ===

    def ordered_keys(self) -> List[str]:
        """Required keys first, then the rest; each block sorted lexically."""
        keys = self.schema.properties.keys()
        return sorted(keys, key=lambda k: (k not in self._required, k))

    def fields(self) -> List[FormField]:
        return [self._fields[key] for key in self.ordered_keys()]

    def field(self, key: str) -> FormField:
        return self._fields[key]

    def is_required(self, key: str) -> bool:
        return key in self._required

    def _build_field(self, key: str, prop: InputProperty) -> FormField:
        control = select_control(prop)
        integer = prop.normalized_type == "integer"
        field = FormField(
            key=key,
            label=prop.label(key),
            description=prop.description,
            required=key in self._required,
            control=control,
            integer=integer,
        )

        if control == ControlKind.CHOICE:
            field.options = list(prop.enumValues)
            field.initial = prop.defaultValue if prop.has_default else prop.enumValues[0]
        elif control == ControlKind.TOGGLE:
            field.initial = prop.defaultValue if prop.has_default else False
        elif control == ControlKind.SLIDER:
            field.minimum = prop.minimum
            field.maximum = prop.maximum
            field.step = 1
            initial = prop.defaultValue if prop.has_default else prop.minimum
            field.initial = _integral(initial) if integer else initial
        elif control == ControlKind.NUMBER:
            field.minimum = prop.minimum
            field.maximum = prop.maximum
            initial = prop.defaultValue if prop.has_default else 0
            field.initial = _integral(initial) if integer else initial
        else:
            field.initial = prop.defaultValue
            if control == ControlKind.TEXT:
                field.multiline = len(prop.description or "") > MULTILINE_DESCRIPTION_LENGTH
        return field

    # === Editing ===

    def attach_image(self, state: FormState, key: str, source: ImageSource) -> str:
        """Encode a picked image into a data URI and store it as the field's value."""
        if key not in self._fields:
            raise KeyError(key)
        if self._fields[key].control != ControlKind.IMAGE:
            state.errors[key] = IMAGE_FIELD_MESSAGE
            raise FormValidationError({key: IMAGE_FIELD_MESSAGE})
        try:
            encoded = self.image_encoder(source)
        except FormValidationError as e:
            message = next(iter(e.errors.values()), "Could not read image")
            state.errors[key] = message
            raise FormValidationError({key: message})
        state.set_value(key, encoded)
        return encoded

    # === Validation ===

    def _from_control(self, field: FormField, raw: Any) -> Any:
        control = field.control
        if control == ControlKind.CHOICE:
            value = raw if isinstance(raw, str) else str(coerce_value(raw))
            if value not in field.options:
                raise _FieldError(f"Must be one of: {', '.join(field.options)}")
            return value
        if control == ControlKind.TOGGLE:
            if isinstance(raw, bool):
                return raw
            text = str(raw).strip().lower()
            if text in _TRUE_STRINGS:
                return True
            if text in _FALSE_STRINGS:
                return False
            raise _FieldError(TOGGLE_MESSAGE)
        if control == ControlKind.SLIDER:
            value = _as_number(raw)
            # Slider moves in whole steps from the lower bound
            value = field.minimum + math.floor(float(value) - field.minimum + 0.5)
            value = min(max(value, field.minimum), field.maximum)
            return _integral(value) if field.integer else value
        if control == ControlKind.NUMBER:
            value = _as_number(raw)
            return _integral(value) if field.integer else value
        if control == ControlKind.IMAGE and not isinstance(raw, str):
            try:
                return self.image_encoder(raw)
            except FormValidationError as e:
                raise _FieldError(next(iter(e.errors.values()), "Could not read image"))
        return raw

    def _candidate(self, key: str, state: FormState, errors: Dict[str, str]) -> Any:
        field = self._fields[key]
        prop = self.schema.properties[key]
        raw = state.values.get(key)

        if not is_blank(raw):
            try:
                return self._from_control(field, raw)
            except _FieldError as e:
                errors[key] = e.message
                return None
        if prop.has_default:
            default = prop.defaultValue
            if field.integer and isinstance(default, float):
                return _integral(default)
            return default
        if not field.required and field.control in _DISPLAYED_INITIAL_CONTROLS:
            return field.initial
        return None

    def collect(self, state: FormState) -> tuple[Dict[str, Any], Dict[str, str]]:
        """Resolve every field to a coerced value. Returns (payload, errors)."""
        payload: Dict[str, Any] = {}
        errors: Dict[str, str] = {}

        for key in self.ordered_keys():
            candidate = self._candidate(key, state, errors)
            value = coerce_value(candidate)
            if value is None:
                if candidate is not None:
                    logger.warning("Field %s dropped: value could not be coerced", key)
                continue
            payload[key] = value

        for key in self.schema.required:
            if key not in payload and key not in errors:
                errors[key] = REQUIRED_MESSAGE

        return payload, errors

    def validate(self, state: FormState) -> Dict[str, str]:
        _, errors = self.collect(state)
        state.errors = dict(errors)
        return errors

    def build_payload(self, state: FormState) -> Dict[str, Any]:
        """
        Produce the normalized payload for submission.
        Raises FormValidationError (all-or-nothing) when any field fails.
        """
        payload, errors = self.collect(state)
        if errors:
            state.errors = dict(errors)
            logger.info("Form validation failed for %d field(s): %s", len(errors), sorted(errors))
            raise FormValidationError(errors)

        try:
            cleaned = ensure_json_safe(payload)
        except FormValidationError as e:
            state.errors = dict(e.errors)
            raise
        state.errors = {}
        return cleaned


def select_control(prop: InputProperty) -> ControlKind:
    """Pick the input control for a property, in priority order."""
    kind = prop.normalized_type
    if prop.enumValues:
        return ControlKind.CHOICE
    if kind == "boolean":
        return ControlKind.TOGGLE
    if kind in NUMERIC_TYPES:
        if prop.minimum is not None and prop.maximum is not None:
            return ControlKind.SLIDER
        return ControlKind.NUMBER
    if prop.format in IMAGE_FORMATS:
        return ControlKind.IMAGE
    return ControlKind.TEXT


__all__ = ["FormEngine", "FormState", "select_control", "REQUIRED_MESSAGE", "GENERAL_ERROR_KEY"]
