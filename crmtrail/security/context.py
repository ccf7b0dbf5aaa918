from __future__ import annotations

import enum
from dataclasses import dataclass


class Role(str, enum.Enum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    SALES = "SALES"

    @classmethod
    def parse(cls, value: str | None) -> Role:
        """Parse a stored or token role; unknown values fall back to SALES."""
        if value is None:
            return cls.SALES
        try:
            return cls(str(value).upper())
        except ValueError:
            return cls.SALES


@dataclass(frozen=True, slots=True)
class Actor:
    """Identity of whoever performs a mutation or issues a read."""

    id: int
    role: Role
    team_id: str | None = None
    name: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN
