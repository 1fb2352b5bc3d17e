"""
Field validation shared by the guest pre-submit check and the server-side check.

``validate_all`` only visits identifiers in ``visible``. The server passes
``all_identifiers(fields)`` because it cannot trust a client-reported set.
"""

from datetime import datetime
import re

from .field_registry import (
    BRIEF, CHECKBOX, CURRENCY_NUMBER, DATE, DROPDOWN, FILE, LABEL, PERCENTAGE_NUMBER,
    RADIO_BUTTON, RICHTEXT, TEXT, TEXT_AREA, SHAPE_NONE, SHAPE_STRING_LIST,
    coerce_value, get_kind,
)

HTML_TAG_RE = re.compile(r'<[^>]*>')


def strip_html(html):
    return HTML_TAG_RE.sub('', html).strip()


def is_valid_date(value):
    try:
        datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    except ValueError:
        return False
    return True


def _validate_text(field, value):
    if field.required and value.is_empty():
        return f"{field.label} is required."
    return None


def _validate_rich(field, value):
    if field.required and strip_html(value.value) == '':
        return f"{field.label} is required."
    return None


def _validate_multi(field, value):
    if field.required and value.is_empty():
        return f"{field.label} requires at least one selection."
    for choice_id in value.values:
        if not isinstance(choice_id, str) or field.find_choice(choice_id) is None:
            return f"{field.label} contains an invalid selection."
    return None


def _validate_single(field, value):
    if value.value == '':
        if field.required:
            return f"{field.label} is required."
        return None
    if field.find_choice(value.value) is None:
        return f"{field.label} contains an invalid selection."
    return None


def _validate_date(field, value):
    if value.is_empty():
        if field.required:
            return f"{field.label} is required."
        return None
    if not is_valid_date(value.value):
        return f"{field.label} must be a valid date."
    return None


def _validate_file(field, value):
    if field.required and value.is_empty():
        return f"{field.label} is required."
    return None


def _validate_percentage(field, value):
    if value.is_empty():
        return f"{field.label} is required." if field.required else None
    if value.value < 0 or value.value > 100:
        return f"{field.label} must be between 0 and 100."
    return None


def _validate_currency(field, value):
    if value.is_empty():
        return f"{field.label} is required." if field.required else None
    if value.value < 0:
        return f"{field.label} must be 0 or greater."
    return None


SINGLE_VALUE_VALIDATORS = {
    TEXT: _validate_text,
    TEXT_AREA: _validate_text,
    RICHTEXT: _validate_rich,
    BRIEF: _validate_rich,
    CHECKBOX: _validate_multi,
    RADIO_BUTTON: _validate_single,
    DROPDOWN: _validate_single,
    LABEL: _validate_single,
    DATE: _validate_date,
    FILE: _validate_file,
    PERCENTAGE_NUMBER: _validate_percentage,
    CURRENCY_NUMBER: _validate_currency,
}


def validate(field, raw_value):
    """Returns an error message for one field, or None when the value is acceptable."""
    kind = get_kind(field)
    if kind is None or kind.shape == SHAPE_NONE:
        return None
    value = coerce_value(field, raw_value)
    if kind.shape == SHAPE_STRING_LIST:
        return _validate_multi(field, value)
    return SINGLE_VALUE_VALIDATORS[kind.name](field, value)


def validate_all(fields, values, visible):
    """Maps identifier -> error for every visible field that fails validation."""
    errors = {}
    for field in fields:
        if field.identifier not in visible:
            continue
        error = validate(field, values.get(field.identifier))
        if error:
            errors[field.identifier] = error
    return errors


def all_identifiers(fields):
    return {field.identifier for field in fields}
