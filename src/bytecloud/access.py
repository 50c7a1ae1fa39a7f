"""AccessLevel enum — the closed set of effective permissions."""

from __future__ import annotations

from enum import Enum

GRANT_PERMISSIONS = ("view", "create", "edit")
"""Values allowed in ``FolderGrant.permission_type``."""


class AccessLevel(str, Enum):
    """Effective access level of a caller on a folder or file.

    Levels are totally ordered: ``NONE < VIEW < CREATE < EDIT < OWNER``.
    """

    NONE = "none"
    VIEW = "view"
    CREATE = "create"
    EDIT = "edit"
    OWNER = "owner"

    @property
    def rank(self) -> int:
        return _RANKS[self]

    def satisfies(self, required: AccessLevel) -> bool:
        """True if this level is at least *required*."""
        return self.rank >= required.rank

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, AccessLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, AccessLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, AccessLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, AccessLevel):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def from_grant(cls, permission_type: str | None) -> AccessLevel:
        """Map a stored grant's ``permission_type`` to a level.

        ``None`` (no grant row) maps to ``NONE``.  Unknown values raise
        ``ValueError`` — the column is constrained to ``GRANT_PERMISSIONS``.
        """
        if permission_type is None:
            return cls.NONE
        if permission_type not in GRANT_PERMISSIONS:
            raise ValueError(
                f"Invalid permission: {permission_type!r}. "
                f"Must be one of {', '.join(GRANT_PERMISSIONS)}."
            )
        return cls(permission_type)


_RANKS: dict[AccessLevel, int] = {
    AccessLevel.NONE: 0,
    AccessLevel.VIEW: 1,
    AccessLevel.CREATE: 2,
    AccessLevel.EDIT: 3,
    AccessLevel.OWNER: 4,
}
