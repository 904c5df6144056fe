from __future__ import annotations

from enum import Enum


class Role(str, Enum):
    """
    Reserved role names with fixed meaning in capability evaluation.

    Use the module constants below (plain str values) for set membership:
    str Enum members do not hash like their values.
    """

    SUPER_ADMIN = "super-admin"
    ADMINISTRATOR = "administrator"
    BANNED = "banned"
    ANONYMOUS = "anonymous"


SUPER_ADMIN: str = Role.SUPER_ADMIN.value
ADMINISTRATOR: str = Role.ADMINISTRATOR.value
BANNED: str = Role.BANNED.value
ANONYMOUS: str = Role.ANONYMOUS.value

RESERVED_ROLES = frozenset({SUPER_ADMIN, ADMINISTRATOR, BANNED, ANONYMOUS})
