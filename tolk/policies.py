"""
Authorization policy for membership actions.

Pure function of the actor's effective role and the roles involved. It
decides *access* only; the membership invariants are enforced by
``MembershipStore`` regardless of the outcome here.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from tolk.schemas.common import Role
from tolk.services.roles import higher


class Action(str, Enum):
    VIEW_MEMBERS = "view_members"
    ADD_MEMBER = "add_member"
    UPDATE_ROLE = "update_role"
    REMOVE_MEMBER = "remove_member"
    INVITE = "invite"
    CANCEL_INVITE = "cancel_invite"


def _below_manager(role: Optional[Role]) -> bool:
    return role is not None and higher(Role.MANAGER, role)


def is_allowed(
    action: Action,
    actor_role: Optional[Role],
    *,
    target_role: Optional[Role] = None,
    new_role: Optional[Role] = None,
    is_self: bool = False,
) -> bool:
    """Decide whether an actor may perform ``action``.

    - Non-members may do nothing.
    - Owners may do everything.
    - Managers may add, invite and re-role members below manager, and only
      to roles below manager.
    - Removing someone else requires owner; leaving is always allowed here.
    """
    if action == Action.REMOVE_MEMBER and is_self:
        return True
    if actor_role is None:
        return False
    if action == Action.VIEW_MEMBERS or actor_role == Role.OWNER:
        return True
    if actor_role != Role.MANAGER:
        return False

    if action == Action.UPDATE_ROLE:
        return _below_manager(target_role) and _below_manager(new_role)
    if action in (Action.ADD_MEMBER, Action.INVITE):
        return _below_manager(new_role or Role.TRANSLATOR)
    if action == Action.CANCEL_INVITE:
        return True
    return False
