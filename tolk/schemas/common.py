from enum import Enum


class Role(str, Enum):
    TRANSLATOR = "translator"
    DEVELOPER = "developer"
    MANAGER = "manager"
    OWNER = "owner"


# Lowest first; index + 1 is the role priority
ROLE_ORDER: list["Role"] = [
    Role.TRANSLATOR,
    Role.DEVELOPER,
    Role.MANAGER,
    Role.OWNER,
]

DEFAULT_ROLE = Role.TRANSLATOR


class RoleSource(str, Enum):
    PROJECT = "project"
    ORGANIZATION = "organization"
    NONE = "none"
