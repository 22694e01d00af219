"""Field value payloads.

One variant per :class:`FieldType`. Values are persisted as small JSON
objects tagged with the field type, and every consumer dispatches on the
variant class (see ``signature.logic.pdf_composer``), never on raw data.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, Optional, Union

from signing.enum.field_type import FieldType
from signing.exceptions.errors import InvalidFieldValue


@dataclass(frozen=True)
class SignatureValue:
    image_ref: str


@dataclass(frozen=True)
class InitialMarkValue:
    image_ref: str


@dataclass(frozen=True)
class TextValue:
    text: str


@dataclass(frozen=True)
class DateValue:
    value: date


@dataclass(frozen=True)
class CheckboxValue:
    checked: bool


FieldValue = Union[SignatureValue, InitialMarkValue, TextValue, DateValue, CheckboxValue]

_VARIANTS: Dict[FieldType, type] = {
    FieldType.SIGNATURE: SignatureValue,
    FieldType.INITIAL_MARK: InitialMarkValue,
    FieldType.TEXT: TextValue,
    FieldType.DATE: DateValue,
    FieldType.CHECKBOX: CheckboxValue,
}

MAX_TEXT_LENGTH = 2000


def variant_for(field_type: FieldType) -> type:
    return _VARIANTS[field_type]


def coerce_value(
    field_type: FieldType,
    raw: Any,
    *,
    image_sink: Optional[Callable[[bytes], str]] = None,
) -> FieldValue:
    """Turn recipient input into the variant for ``field_type``.

    Image fields take the PNG/JPEG bytes of the drawn mark; ``image_sink``
    persists them and returns the reference kept in the value.
    """
    expected = _VARIANTS[field_type]
    if isinstance(raw, expected):
        return raw
    if isinstance(raw, tuple(_VARIANTS.values())):
        raise InvalidFieldValue(
            f"{type(raw).__name__} does not fit a {field_type.value} field"
        )

    if field_type.is_image:
        if not isinstance(raw, (bytes, bytearray)) or not raw:
            raise InvalidFieldValue(f"{field_type.value} fields need image bytes")
        if image_sink is None:
            raise InvalidFieldValue(f"{field_type.value} image cannot be stored here")
        ref = image_sink(bytes(raw))
        return expected(image_ref=ref)

    if field_type == FieldType.TEXT:
        if not isinstance(raw, str):
            raise InvalidFieldValue("TEXT fields need a string")
        if len(raw) > MAX_TEXT_LENGTH:
            raise InvalidFieldValue(f"TEXT value longer than {MAX_TEXT_LENGTH} characters")
        return TextValue(text=raw)

    if field_type == FieldType.DATE:
        if isinstance(raw, date):
            # datetime is a date subclass; keep the calendar day only
            return DateValue(value=date(raw.year, raw.month, raw.day))
        if isinstance(raw, str):
            text = raw.strip()
            try:
                day = date.fromisoformat(text) if len(text) <= 10 else datetime.fromisoformat(text).date()
            except ValueError as ex:
                raise InvalidFieldValue(f"DATE value {raw!r} is not an ISO date") from ex
            return DateValue(value=day)
        raise InvalidFieldValue("DATE fields need a date or ISO date string")

    if field_type == FieldType.CHECKBOX:
        if not isinstance(raw, bool):
            raise InvalidFieldValue("CHECKBOX fields need a boolean")
        return CheckboxValue(checked=raw)

    raise InvalidFieldValue(f"Unsupported field type {field_type!r}")


def is_filled(value: Optional[FieldValue]) -> bool:
    """Whether ``value`` satisfies a required field."""
    if value is None:
        return False
    if isinstance(value, (SignatureValue, InitialMarkValue)):
        return bool(value.image_ref)
    if isinstance(value, TextValue):
        return bool(value.text.strip())
    if isinstance(value, DateValue):
        return True
    if isinstance(value, CheckboxValue):
        return value.checked
    raise TypeError(f"Unknown field value {value!r}")


def value_to_json(value: FieldValue) -> Dict[str, Any]:
    if isinstance(value, SignatureValue):
        return {"type": FieldType.SIGNATURE.value, "image_ref": value.image_ref}
    if isinstance(value, InitialMarkValue):
        return {"type": FieldType.INITIAL_MARK.value, "image_ref": value.image_ref}
    if isinstance(value, TextValue):
        return {"type": FieldType.TEXT.value, "text": value.text}
    if isinstance(value, DateValue):
        return {"type": FieldType.DATE.value, "value": value.value.isoformat()}
    if isinstance(value, CheckboxValue):
        return {"type": FieldType.CHECKBOX.value, "checked": value.checked}
    raise TypeError(f"Unknown field value {value!r}")


def value_from_json(data: Dict[str, Any]) -> FieldValue:
    field_type = FieldType(data["type"])
    if field_type == FieldType.SIGNATURE:
        return SignatureValue(image_ref=str(data["image_ref"]))
    if field_type == FieldType.INITIAL_MARK:
        return InitialMarkValue(image_ref=str(data["image_ref"]))
    if field_type == FieldType.TEXT:
        return TextValue(text=str(data["text"]))
    if field_type == FieldType.DATE:
        return DateValue(value=date.fromisoformat(data["value"]))
    return CheckboxValue(checked=bool(data["checked"]))
