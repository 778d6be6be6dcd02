"""Account enums."""

from enum import Enum


class Role(str, Enum):
    """
    Account roles.

    - USER: reports problems and tracks their own tickets
    - IT: technician, works the repair queue
    - ADMIN: technician plus data management
    """

    USER = "USER"
    IT = "IT"
    ADMIN = "ADMIN"

    @classmethod
    def has_value(cls, value: str) -> bool:
        """Check if value is a valid role."""
        return value in cls._value2member_map_


STAFF_ROLES = (Role.IT, Role.ADMIN)
