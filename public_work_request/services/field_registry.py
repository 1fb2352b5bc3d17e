"""
Static knowledge of the CMP field kinds.

Template fields are stored as plain JSON snapshots. ``FormField.from_dict``
turns one into a typed object and ``coerce_value`` turns a raw guest value
into one of the value variants below, so the validator and the serializer
only ever see shapes they expect.
"""

from dataclasses import dataclass, field as dc_field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple, Union
import math

TEXT = 'text'
TEXT_AREA = 'text_area'
RICHTEXT = 'richtext'
CHECKBOX = 'checkbox'
RADIO_BUTTON = 'radio_button'
DROPDOWN = 'dropdown'
LABEL = 'label'
DATE = 'date'
FILE = 'file'
BRIEF = 'brief'
INSTRUCTION = 'instruction'
SECTION = 'section'
PERCENTAGE_NUMBER = 'percentage_number'
CURRENCY_NUMBER = 'currency_number'

# Value shapes
SHAPE_STRING = 'string'
SHAPE_STRING_LIST = 'string_list'
SHAPE_NUMBER = 'number'
SHAPE_FILE = 'file'
SHAPE_NONE = 'none' # display-only


@dataclass(frozen=True)
class FieldKind:
    name: str
    shape: str
    serializable: bool = True

    @property
    def display_only(self):
        return self.shape == SHAPE_NONE


FIELD_KINDS: Dict[str, FieldKind] = {
    TEXT: FieldKind(TEXT, SHAPE_STRING),
    TEXT_AREA: FieldKind(TEXT_AREA, SHAPE_STRING),
    RICHTEXT: FieldKind(RICHTEXT, SHAPE_STRING),
    BRIEF: FieldKind(BRIEF, SHAPE_STRING),
    CHECKBOX: FieldKind(CHECKBOX, SHAPE_STRING_LIST),
    RADIO_BUTTON: FieldKind(RADIO_BUTTON, SHAPE_STRING),
    # dropdown/label switch to SHAPE_STRING_LIST when is_multi_select is set
    DROPDOWN: FieldKind(DROPDOWN, SHAPE_STRING),
    LABEL: FieldKind(LABEL, SHAPE_STRING),
    DATE: FieldKind(DATE, SHAPE_STRING),
    FILE: FieldKind(FILE, SHAPE_FILE, serializable=False),
    INSTRUCTION: FieldKind(INSTRUCTION, SHAPE_NONE, serializable=False),
    SECTION: FieldKind(SECTION, SHAPE_NONE, serializable=False),
    PERCENTAGE_NUMBER: FieldKind(PERCENTAGE_NUMBER, SHAPE_NUMBER),
    CURRENCY_NUMBER: FieldKind(CURRENCY_NUMBER, SHAPE_NUMBER),
}

MULTI_SELECTABLE = (DROPDOWN, LABEL)


# --- Field snapshot types ---

@dataclass(frozen=True)
class Choice:
    id: str
    name: str
    color: Optional[str] = None


@dataclass(frozen=True)
class LogicCondition:
    field_identifier: str
    operator: str = 'equal'
    values: Tuple[str, ...] = ()


@dataclass(frozen=True)
class LogicRule:
    action: str # 'jump_to' | 'show_values'
    target_identifier: str
    conditions: Tuple[LogicCondition, ...] = ()


@dataclass(frozen=True)
class FormField:
    identifier: str
    label: str
    type: str
    required: bool = False
    helper_text: Optional[str] = None
    sort_order: int = 0
    choices: Tuple[Choice, ...] = ()
    is_multi_select: bool = False
    decimal_places: Optional[int] = None
    currency_code: Optional[str] = None
    logic_rules: Tuple[LogicRule, ...] = ()
    raw: Dict[str, Any] = dc_field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_dict(cls, data):
        """Builds a field from a CMP template snapshot entry."""
        meta = data.get('type_specific_meta') or {}
        choices = tuple(
            Choice(id=str(c.get('id')), name=c.get('name', ''), color=c.get('color'))
            for c in (meta.get('choices') or [])
        )
        rules = []
        for rule in data.get('logic_rules') or []:
            conditions = tuple(
                LogicCondition(
                    field_identifier=c.get('field_identifier', ''),
                    operator=c.get('operator', 'equal'),
                    values=tuple(str(v) for v in (c.get('values') or [])),
                )
                for c in (rule.get('conditions') or [])
            )
            rules.append(LogicRule(
                action=rule.get('action', ''),
                target_identifier=rule.get('target_identifier', ''),
                conditions=conditions,
            ))
        return cls(
            identifier=data['identifier'],
            label=data.get('name') or data.get('label') or data['identifier'],
            type=data.get('type', ''),
            required=bool(data.get('required', data.get('is_required', False))),
            helper_text=data.get('description'),
            sort_order=int(data.get('order', data.get('sort_order', 0)) or 0),
            choices=choices,
            is_multi_select=meta.get('is_multi_select') is True,
            decimal_places=meta.get('decimal_places'),
            currency_code=meta.get('currency_code'),
            logic_rules=tuple(rules),
            raw=dict(data),
        )

    @property
    def kind(self) -> Optional[FieldKind]:
        return get_kind(self)

    def find_choice(self, choice_id):
        for choice in self.choices:
            if choice.id == choice_id:
                return choice
        return None


def get_kind(form_field: FormField) -> Optional[FieldKind]:
    """Kind entry for a field, resolving multi-select. None for unrecognised kinds."""
    kind = FIELD_KINDS.get(form_field.type)
    if kind is None:
        return None
    if form_field.type in MULTI_SELECTABLE and form_field.is_multi_select:
        return FieldKind(kind.name, SHAPE_STRING_LIST)
    return kind


def is_known_kind(form_field: FormField) -> bool:
    return form_field.type in FIELD_KINDS


def parse_fields(snapshot) -> List[FormField]:
    """Parses a snapshot and returns the fields sorted by sort_order (stable)."""
    fields = [FormField.from_dict(item) for item in (snapshot or [])]
    return sorted(fields, key=lambda f: f.sort_order)


# --- Value variants ---

@dataclass(frozen=True)
class StringValue:
    value: str = ''

    def is_empty(self):
        return self.value.strip() == ''


@dataclass(frozen=True)
class StringListValue:
    values: Tuple[Any, ...] = ()

    def is_empty(self):
        return len(self.values) == 0


@dataclass(frozen=True)
class NumberValue:
    value: Optional[Decimal] = None

    def is_empty(self):
        return self.value is None


@dataclass(frozen=True)
class FileRefValue:
    name: Optional[str] = None
    content_type: Optional[str] = None
    size: Optional[int] = None

    def is_empty(self):
        return not self.name


FieldValue = Union[StringValue, StringListValue, NumberValue, FileRefValue, None]


def default_value(form_field: FormField):
    """Type-appropriate empty value, in raw (JSON) form."""
    kind = get_kind(form_field)
    if kind is None or kind.shape == SHAPE_NONE:
        return None
    if kind.shape == SHAPE_STRING:
        return ''
    if kind.shape == SHAPE_STRING_LIST:
        return []
    return None


def parse_number(raw):
    """Exact Decimal for numeric input (including numeric strings), None otherwise."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, float):
        if math.isnan(raw) or math.isinf(raw):
            return None
        # shortest repr, so 0.1 stays 0.1 rather than its binary expansion
        return Decimal(repr(raw))
    if isinstance(raw, int):
        return Decimal(raw)
    if isinstance(raw, Decimal):
        return raw if raw.is_finite() else None
    if isinstance(raw, str) and raw.strip():
        try:
            number = Decimal(raw.strip())
        except InvalidOperation:
            return None
        return number if number.is_finite() else None
    return None


def format_number(number):
    """Plain decimal string, never exponent notation: 42.0 -> "42", 1e-07 -> "0.0000001"."""
    if not isinstance(number, Decimal):
        number = parse_number(number)
        if number is None:
            return ''
    text = format(number, 'f')
    if '.' in text:
        text = text.rstrip('0').rstrip('.')
    return '0' if text in ('', '-0') else text


def coerce_value(form_field: FormField, raw) -> FieldValue:
    """Maps a raw guest value onto the variant for the field's kind.

    Values of the wrong shape collapse to the kind's empty variant. List
    items are kept as-is so the validator can reject non-string ids.
    """
    kind = get_kind(form_field)
    if kind is None or kind.shape == SHAPE_NONE:
        return None
    if kind.shape == SHAPE_STRING:
        return StringValue(raw if isinstance(raw, str) else '')
    if kind.shape == SHAPE_STRING_LIST:
        return StringListValue(tuple(raw) if isinstance(raw, (list, tuple)) else ())
    if kind.shape == SHAPE_NUMBER:
        return NumberValue(parse_number(raw))
    # SHAPE_FILE
    if isinstance(raw, FileRefValue):
        return raw
    if isinstance(raw, dict) and raw.get('name'):
        return FileRefValue(name=raw['name'], content_type=raw.get('contentType'), size=raw.get('size'))
    if isinstance(raw, str) and raw:
        return FileRefValue(name=raw)
    return FileRefValue()
