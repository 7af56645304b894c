"""
Role ordering: translator < developer < manager < owner.
"""

from __future__ import annotations

from typing import Optional, Union

from tolk.core.errors import RoleNotFound
from tolk.schemas.common import ROLE_ORDER, Role

ROLE_PRIORITY: dict[Role, int] = {role: index + 1 for index, role in enumerate(ROLE_ORDER)}


def parse_role(value: Union[str, Role, None], default: Optional[Role] = None) -> Role:
    """Convert a role string to ``Role``.

    ``None`` yields ``default``; unknown strings, or ``None`` without a
    default, raise ``RoleNotFound``.
    """
    if value is None:
        if default is None:
            raise RoleNotFound()
        return default
    if isinstance(value, Role):
        return value
    try:
        return Role(value)
    except ValueError:
        raise RoleNotFound(f"Role '{value}' does not exist.") from None


def priority(role: Union[str, Role]) -> int:
    return ROLE_PRIORITY[Role(role)]


def higher(a: Union[str, Role], b: Union[str, Role]) -> bool:
    """True if ``a`` is strictly higher than ``b``."""
    return priority(a) > priority(b)


def roles_below(role: Union[str, Role]) -> set[Role]:
    """All roles strictly lower than ``role``."""
    limit = priority(role)
    return {r for r, p in ROLE_PRIORITY.items() if p < limit}


def max_role(*roles: Optional[Union[str, Role]]) -> Optional[Role]:
    """Highest of the given roles, ignoring ``None``; earlier arguments win ties."""
    best: Optional[Role] = None
    for role in roles:
        if role is None:
            continue
        if best is None or higher(role, best):
            best = Role(role)
    return best
