"""Role-scoped visibility: the single policy deciding which owned records an actor may see.

| Role    | Visible                                                          |
|---------|------------------------------------------------------------------|
| ADMIN   | everything                                                       |
| MANAGER | records whose owner is in the manager's team (none without team) |
| SALES   | records the actor owns                                           |

``visible`` filters loaded collections; ``apply_visibility_filter`` expresses the
same set as a SQL predicate so list endpoints never load rows the caller may
not see.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any, TypeVar

from sqlalchemy import false, select
from sqlalchemy.orm import InstrumentedAttribute
from sqlalchemy.sql import Select

from crmtrail.crm.models import User
from crmtrail.security.context import Actor, Role


T = TypeVar("T")


def can_view(actor: Actor, owner_id: int | None, owner_team_id: str | None = None) -> bool:
    if actor.role is Role.ADMIN:
        return True
    if actor.role is Role.MANAGER:
        return bool(actor.team_id) and bool(owner_team_id) and owner_team_id == actor.team_id
    return owner_id is not None and owner_id == actor.id


def visible(
    actor: Actor,
    records: Iterable[T],
    owner_of: Callable[[T], int | None],
    team_of: Callable[[T], str | None] | None = None,
) -> list[T]:
    """Return the subset of ``records`` the actor may observe, preserving order."""
    items = list(records)
    if actor.role is Role.ADMIN:
        return items
    if actor.role is Role.MANAGER:
        if not actor.team_id or team_of is None:
            return []
        return [item for item in items if can_view(actor, owner_of(item), team_of(item))]
    return [item for item in items if can_view(actor, owner_of(item))]


def apply_visibility_filter(query: Select[Any], actor: Actor, owner_column: InstrumentedAttribute) -> Select[Any]:
    if actor.role is Role.ADMIN:
        return query
    if actor.role is Role.MANAGER:
        if not actor.team_id:
            return query.where(false())
        return query.where(owner_column.in_(select(User.id).where(User.team_id == actor.team_id)))
    return query.where(owner_column == actor.id)
