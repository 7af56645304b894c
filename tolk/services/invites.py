"""
Pending organization invites addressed by email.

An invite exists only while no member of the organization has its email.
Accepting one materializes the membership through ``MembershipStore``.
"""

from __future__ import annotations

import uuid
from typing import Optional

import structlog
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from tolk.core.errors import NotFound, UserAlreadyInvitedOrAdded
from tolk.models.organization_invite import OrganizationInvite
from tolk.models.organization_user import OrganizationUser
from tolk.models.user import User
from tolk.schemas.common import DEFAULT_ROLE, Role
from tolk.schemas.memberships import MembershipEvent, MembershipEventType
from tolk.services import resolver
from tolk.services.memberships import MembershipStore, RoleInput, get_user
from tolk.services.roles import parse_role

log = structlog.get_logger()


def normalize_email(email: str) -> str:
    return email.strip().lower()


class InviteService:
    def __init__(self, store: MembershipStore):
        self.store = store

    async def create_invite(
        self,
        org_id: uuid.UUID,
        email: str,
        role: RoleInput = None,
        actor_id: Optional[uuid.UUID] = None,
    ) -> OrganizationInvite:
        invite_role = parse_role(role, default=DEFAULT_ROLE)
        email = normalize_email(email)

        async with self.store.unit_of_work() as (session, pending):
            await resolver.get_organization(org_id, session, lock=True)

            existing = await session.execute(
                select(OrganizationInvite.id).where(
                    OrganizationInvite.org_id == org_id,
                    func.lower(OrganizationInvite.email) == email,
                )
            )
            member = await session.execute(
                select(OrganizationUser.user_id)
                .join(User, User.id == OrganizationUser.user_id)
                .where(
                    OrganizationUser.org_id == org_id,
                    func.lower(User.email) == email,
                )
            )
            if existing.first() is not None or member.first() is not None:
                raise UserAlreadyInvitedOrAdded()

            invite = OrganizationInvite(org_id=org_id, email=email, role=invite_role.value)
            session.add(invite)
            try:
                await session.flush()
            except IntegrityError as exc:
                raise UserAlreadyInvitedOrAdded() from exc

            pending.append(
                MembershipEvent(
                    type=MembershipEventType.INVITE_CREATED,
                    org_id=org_id,
                    role=invite_role,
                    email=email,
                    actor_id=actor_id,
                )
            )

        log.info("invite.created", org_id=str(org_id), invite_id=str(invite.id), role=invite_role.value)
        return invite

    async def accept_invite(self, invite_id: uuid.UUID, user_id: uuid.UUID) -> OrganizationUser:
        """Turn an invite into a membership and delete it.

        Only the user whose email the invite is addressed to may accept it;
        for anyone else the invite does not exist. If the user already
        belongs to the organization the invite is only discarded and the
        existing membership returned.
        """
        async with self.store.unit_of_work() as (session, pending):
            user = await get_user(user_id, session)
            invite = await session.get(OrganizationInvite, invite_id)
            if invite is None:
                raise NotFound("Invite not found.")
            await resolver.get_organization(invite.org_id, session, lock=True)
            invite = await session.get(OrganizationInvite, invite_id, with_for_update=True)
            if invite is None or normalize_email(invite.email) != normalize_email(user.email):
                raise NotFound("Invite not found.")

            membership = await self._accept(invite, user_id, session, pending)

        return membership

    async def claim_invites(self, user_id: uuid.UUID) -> list[OrganizationUser]:
        """Accept every pending invite addressed to the user's email."""
        async with self.store.unit_of_work() as (session, pending):
            user = await get_user(user_id, session)
            result = await session.execute(
                select(OrganizationInvite.id, OrganizationInvite.org_id)
                .where(func.lower(OrganizationInvite.email) == normalize_email(user.email))
                .order_by(OrganizationInvite.org_id)
            )
            memberships = []
            for invite_id, org_id in result.all():
                await resolver.get_organization(org_id, session, lock=True)
                invite = await session.get(OrganizationInvite, invite_id, with_for_update=True)
                if invite is None:
                    continue
                memberships.append(await self._accept(invite, user_id, session, pending))

        return memberships

    async def _accept(
        self,
        invite: OrganizationInvite,
        user_id: uuid.UUID,
        session: AsyncSession,
        pending: list[MembershipEvent],
    ) -> OrganizationUser:
        org_id, email = invite.org_id, invite.email
        await session.delete(invite)
        await session.flush()

        membership = await session.get(OrganizationUser, (org_id, user_id))
        if membership is None:
            membership = await self.store.grant_organization_role(
                org_id, user_id, Role(invite.role), session, pending, actor_id=user_id
            )
        else:
            log.info("invite.discarded", org_id=str(org_id), user_id=str(user_id))

        pending.append(
            MembershipEvent(
                type=MembershipEventType.INVITE_ACCEPTED,
                org_id=org_id,
                user_id=user_id,
                role=Role(membership.role),
                email=email,
                actor_id=user_id,
            )
        )
        log.info("invite.accepted", org_id=str(org_id), invite_id=str(invite.id), user_id=str(user_id))
        return membership

    async def cancel_invite(
        self,
        org_id: uuid.UUID,
        invite_id: uuid.UUID,
        actor_id: Optional[uuid.UUID] = None,
    ) -> OrganizationInvite:
        async with self.store.unit_of_work() as (session, pending):
            await resolver.get_organization(org_id, session, lock=True)
            result = await session.execute(
                select(OrganizationInvite)
                .where(OrganizationInvite.id == invite_id, OrganizationInvite.org_id == org_id)
                .with_for_update()
            )
            invite = result.scalar_one_or_none()
            if invite is None:
                raise NotFound("Invite not found.")

            await session.delete(invite)
            await session.flush()
            pending.append(
                MembershipEvent(
                    type=MembershipEventType.INVITE_CANCELLED,
                    org_id=org_id,
                    role=Role(invite.role),
                    email=invite.email,
                    actor_id=actor_id,
                )
            )

        log.info("invite.cancelled", org_id=str(org_id), invite_id=str(invite_id))
        return invite

    async def list_invites(self, org_id: uuid.UUID) -> list[OrganizationInvite]:
        """Pending invites of an organization, newest first."""
        async with self.store.read_session() as session:
            await resolver.get_organization(org_id, session)
            result = await session.execute(
                select(OrganizationInvite)
                .where(OrganizationInvite.org_id == org_id)
                .order_by(OrganizationInvite.created_at.desc())
            )
            return list(result.scalars().all())
