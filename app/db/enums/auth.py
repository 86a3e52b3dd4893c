"""Auth-related enums."""

from enum import Enum


class Role(str, Enum):
    """
    User roles with increasing privilege levels.

    - AGENT: Works tickets, may view channel health
    - ADMIN: Manages channels and integrations
    - DEVELOPER: Platform admin (integrations, logs)
    """

    AGENT = "agent"
    ADMIN = "admin"
    DEVELOPER = "developer"

    @classmethod
    def has_value(cls, value: str) -> bool:
        """Check if value is a valid role."""
        return value in cls._value2member_map_


ROLES_CAN_MANAGE_CHANNELS = frozenset({Role.ADMIN, Role.DEVELOPER})
