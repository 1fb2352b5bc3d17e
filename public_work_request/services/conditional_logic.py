"""
Field visibility and choice filtering driven by template logic rules.

``compute_visibility`` always recomputes from scratch: one O(fields x rules)
pass per value change.
"""

from dataclasses import dataclass, field as dc_field
from typing import Dict, Tuple

from .field_registry import format_number

JUMP_TO = 'jump_to'
SHOW_VALUES = 'show_values'


@dataclass(frozen=True)
class VisibilityState:
    visible: Tuple[str, ...] = ()                      # in sort order
    choice_filters: Dict[str, Tuple[str, ...]] = dc_field(default_factory=dict)

    def visible_set(self):
        return frozenset(self.visible)

    def allowed_choices(self, identifier):
        """Allow-listed choice ids for a field, or None when every choice is allowed."""
        return self.choice_filters.get(identifier)

    def to_dict(self):
        return {
            'visibleFields': list(self.visible),
            'filteredChoices': {key: list(ids) for key, ids in self.choice_filters.items()},
        }


def _as_comparable(value):
    if value is None:
        return ''
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return format_number(value)
    return str(value)


def condition_holds(condition, values):
    if condition.operator != 'equal':
        return False
    current = values.get(condition.field_identifier)
    if isinstance(current, (list, tuple)):
        return any(v in current for v in condition.values)
    return _as_comparable(current) in condition.values


def rule_fires(rule, values):
    return all(condition_holds(c, values) for c in rule.conditions)


def compute_visibility(fields, values):
    """Evaluates every rule against ``values`` and returns the resulting VisibilityState."""
    ordered = sorted(fields, key=lambda f: f.sort_order)
    positions = {}
    for index, f in enumerate(ordered):
        positions.setdefault(f.identifier, index)

    hidden = set()
    filters: Dict[str, list] = {}

    for source_index, source in enumerate(ordered):
        for rule in source.logic_rules:
            if not rule_fires(rule, values):
                continue
            if rule.action == JUMP_TO:
                target_index = positions.get(rule.target_identifier)
                if target_index is None or target_index <= source_index:
                    continue
                for skipped in ordered[source_index + 1:target_index]:
                    hidden.add(skipped.identifier)
            elif rule.action == SHOW_VALUES:
                allowed = filters.setdefault(rule.target_identifier, [])
                for condition in rule.conditions:
                    for choice_id in condition.values:
                        if choice_id not in allowed:
                            allowed.append(choice_id)

    visible = tuple(f.identifier for f in ordered if f.identifier not in hidden)
    return VisibilityState(
        visible=visible,
        choice_filters={key: tuple(ids) for key, ids in filters.items()},
    )


def diff_visibility(previous, current):
    """What changed between two states, compared by value.

    Returns ``(visibility_changed, changed_filter_keys)``; the keys are sorted.
    A ``None`` previous state reports everything as changed.
    """
    if previous is None:
        return True, sorted(current.choice_filters)
    visibility_changed = previous.visible_set() != current.visible_set()
    keys = set(previous.choice_filters) | set(current.choice_filters)
    changed = sorted(
        key for key in keys
        if previous.choice_filters.get(key, ()) != current.choice_filters.get(key, ())
    )
    return visibility_changed, changed
