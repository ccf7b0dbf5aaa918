"""Field-level diffing of an entity against an incoming update payload.

Values are compared in the textual form they are persisted in. The coercion
rules are fixed for every call site:

* ``None`` stays ``None`` (stored as SQL NULL, never ``""`` or ``"null"``)
* booleans render as ``"true"`` / ``"false"``
* numbers render without trailing zeros (``Decimal("100.00")`` -> ``"100"``)
* dates and datetimes render as ISO-8601; naive datetimes are read as UTC
* enums render as their value
* everything else goes through ``str()``
"""

from __future__ import annotations

import enum
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any


@dataclass(frozen=True, slots=True)
class FieldChange:
    field: str
    old_value: str | None
    new_value: str | None


def coerce_value(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, enum.Enum):
        return coerce_value(value.value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, Decimal)):
        return _format_number(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _format_number(value: int | float | Decimal) -> str:
    if isinstance(value, int):
        return str(value)
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        return str(value)
    if not number.is_finite():
        return str(value)
    if number == number.to_integral_value():
        return str(int(number))
    return format(number.normalize(), "f")


def compute_diff(existing: Mapping[str, Any], incoming: Mapping[str, Any]) -> list[FieldChange]:
    """Return one change per key of ``incoming`` whose coerced value differs.

    Output order follows the insertion order of ``incoming``.
    """
    changes: list[FieldChange] = []
    for field_name, new_raw in incoming.items():
        old_value = coerce_value(existing.get(field_name))
        new_value = coerce_value(new_raw)
        if old_value != new_value:
            changes.append(FieldChange(field=field_name, old_value=old_value, new_value=new_value))
    return changes


def snapshot(entity: Any, fields: Iterable[str]) -> dict[str, Any]:
    """Read the given attributes off an ORM row into a plain mapping."""
    return {field_name: getattr(entity, field_name, None) for field_name in fields}
