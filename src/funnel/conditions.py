"""Conditional display (``showIf``) evaluation.

Absent fields are represented by the ``UNSET`` sentinel, which compares
unequal to every value, ``None`` included:

    absent field + eq   -> False
    absent field + neq  -> True
    absent field + in   -> False  (never a member)
    absent field + nin  -> True   (when the comparison value is a list)

A field that is present with value ``None`` is compared as ``None``.
Booleans only ever equal booleans, so ``True`` does not match ``1``.
"""

from typing import Any, Mapping, Optional

from funnel.models import ShowIfOperator, ShowIfRule


class _Unset:
    """Marker for a field missing from answer data."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __eq__(self, other: Any) -> bool:
        return other is self

    def __hash__(self) -> int:
        return id(self)

    def __repr__(self) -> str:
        return "UNSET"


UNSET = _Unset()


def _same(actual: Any, expected: Any) -> bool:
    if isinstance(actual, bool) or isinstance(expected, bool):
        return type(actual) is type(expected) and actual == expected
    return actual == expected


def _member(actual: Any, values: Any) -> bool:
    return any(_same(actual, value) for value in values)


def lookup_field(answer_data: Mapping[str, Any], field_name: str) -> Any:
    """Return the answer for ``field_name`` or ``UNSET``."""
    if field_name in answer_data:
        return answer_data[field_name]
    return UNSET


def evaluate_show_if(rule: Optional[ShowIfRule], answer_data: Mapping[str, Any]) -> bool:
    """Evaluate a step's showIf rule. A step without a rule is always shown."""
    if rule is None:
        return True

    actual = lookup_field(answer_data, rule.field)
    expected = rule.value

    if rule.operator == ShowIfOperator.EQ:
        return actual is not UNSET and _same(actual, expected)
    if rule.operator == ShowIfOperator.NEQ:
        return actual is UNSET or not _same(actual, expected)

    # Membership operators require a list comparison value
    if not isinstance(expected, (list, tuple)):
        return False
    if rule.operator == ShowIfOperator.IN:
        return actual is not UNSET and _member(actual, expected)
    if rule.operator == ShowIfOperator.NIN:
        return actual is UNSET or not _member(actual, expected)

    raise ValueError(f"Unsupported showIf operator: {rule.operator!r}")
