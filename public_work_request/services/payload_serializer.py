"""
Converts guest values into the ``form_fields`` entries of a CMP work request.

Each entry is ``{"identifier", "type", "values": [...]}``. File, instruction
and section fields (and unrecognised kinds) never appear in the payload;
files travel through the attachment upload instead.
"""

from .field_registry import (
    BRIEF, CHECKBOX, CURRENCY_NUMBER, DATE, DROPDOWN, LABEL, PERCENTAGE_NUMBER,
    RADIO_BUTTON, RICHTEXT, TEXT, TEXT_AREA, SHAPE_STRING_LIST,
    coerce_value, format_number, get_kind,
)


def _choice_objects(field, ids):
    # ids that no longer resolve against the snapshot are dropped
    objects = []
    for choice_id in ids:
        choice = field.find_choice(choice_id) if isinstance(choice_id, str) else None
        if choice is not None:
            objects.append({'id': choice.id, 'name': choice.name})
    return objects


def _single_choice(field, value):
    choice = field.find_choice(value.value)
    if choice is not None:
        return [{'id': choice.id, 'name': choice.name}]
    return [value.value]


def _date(field, value):
    raw = value.value
    if raw and 'T' not in raw:
        raw = f"{raw}T00:00:00Z"
    return [raw]


def _number(field, value):
    # CMP rejects JSON numbers here
    if value.value is None:
        return ['0']
    return [format_number(value.value)]


SERIALIZERS = {
    TEXT: lambda field, value: [value.value],
    TEXT_AREA: lambda field, value: [value.value],
    RICHTEXT: lambda field, value: [{'type': 'text_brief', 'value': value.value}],
    BRIEF: lambda field, value: [{'type': 'text_brief', 'value': value.value}],
    CHECKBOX: lambda field, value: _choice_objects(field, value.values),
    RADIO_BUTTON: _single_choice,
    DROPDOWN: _single_choice,
    LABEL: _single_choice,
    DATE: _date,
    PERCENTAGE_NUMBER: _number,
    CURRENCY_NUMBER: _number,
}


def serialize(field, raw_value):
    kind = get_kind(field)
    if kind is None or not kind.serializable:
        return None
    value = coerce_value(field, raw_value)
    if kind.shape == SHAPE_STRING_LIST:
        values = _choice_objects(field, value.values)
    else:
        values = SERIALIZERS[kind.name](field, value)
    return {'identifier': field.identifier, 'type': field.type, 'values': values}


def serialize_form(fields, values, visible):
    """Serializes every visible field in sort order, skipping non-serializable kinds."""
    entries = []
    for field in sorted(fields, key=lambda f: f.sort_order):
        if field.identifier not in visible:
            continue
        entry = serialize(field, values.get(field.identifier))
        if entry is not None:
            entries.append(entry)
    return entries
