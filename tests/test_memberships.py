"""
Tests for membership mutations and their invariants.

Covers:
- Organization members: add, role update, removal, last-owner rules
- Cascading revoke of redundant project grants
- Project members: default role, role floor, owner coverage by the organization
- Feature gate precedence
- Post-commit events
"""

from __future__ import annotations

import uuid

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from tolk.core.database import transaction
from tolk.core.errors import (
    AlreadyMember,
    FeatureNotAvailable,
    LastOwnerCannotBeRemoved,
    LastOwnerCannotChangeRole,
    LastUserCannotLeave,
    NoRoleGiven,
    NotFound,
    ProjectRoleBelowOrganizationRole,
    RoleNotFound,
    StorageUnavailable,
    UserNotFound,
)
from tolk.core.events import MembershipEventBus
from tolk.core.features import OrganizationSettingsFeatureGate, StaticFeatureGate
from tolk.models import OrganizationInvite, OrganizationUser, ProjectUser
from tolk.schemas.common import Role, RoleSource
from tolk.schemas.memberships import EffectiveRole, MembershipEventType
from tolk.services.memberships import MembershipStore


@pytest.fixture
async def org_with_owner(factory):
    org = await factory.organization()
    owner = await factory.user("owner")
    await factory.org_member(org, owner, Role.OWNER)
    return org, owner


# ---------------------------------------------------------------------------
# Organization scope
# ---------------------------------------------------------------------------

class TestAddOrganizationMember:
    async def test_default_role_is_translator(self, store, factory, org_with_owner):
        org, _ = org_with_owner
        user = await factory.user()

        membership = await store.add_organization_member(org.id, user.id)
        assert membership.role == Role.TRANSLATOR.value

    async def test_already_member(self, store, factory, org_with_owner):
        org, owner = org_with_owner
        with pytest.raises(AlreadyMember):
            await store.add_organization_member(org.id, owner.id, "developer")

    async def test_unknown_role(self, store, factory, org_with_owner):
        org, _ = org_with_owner
        user = await factory.user()
        with pytest.raises(RoleNotFound):
            await store.add_organization_member(org.id, user.id, "superuser")

    async def test_by_email(self, store, factory, org_with_owner):
        org, _ = org_with_owner
        user = await factory.user("carla", "Carla@Example.com")

        membership = await store.add_organization_member_by_email(org.id, "carla@example.com", "manager")
        assert membership.user_id == user.id
        assert membership.role == Role.MANAGER.value

    async def test_by_email_unknown_user(self, store, org_with_owner):
        org, _ = org_with_owner
        with pytest.raises(UserNotFound):
            await store.add_organization_member_by_email(org.id, "nobody@example.com")

    async def test_unknown_organization(self, store, factory):
        user = await factory.user()
        with pytest.raises(NotFound):
            await store.add_organization_member(uuid.uuid4(), user.id)

    async def test_pending_invite_discarded(self, store, factory, org_with_owner):
        org, _ = org_with_owner
        user = await factory.user("dave")
        invite = await factory.invite(org, "dave@example.com", Role.DEVELOPER)

        await store.add_organization_member(org.id, user.id)
        assert await factory.get(OrganizationInvite, invite.id) is None

    async def test_redundant_project_grants_revoked(self, store, factory, org_with_owner):
        org, _ = org_with_owner
        project = await factory.project(org)
        user = await factory.user()
        await factory.project_member(project, user, Role.TRANSLATOR)

        await store.add_organization_member(org.id, user.id, "developer")
        assert await factory.project_rows(user) == []


class TestUpdateOrganizationMemberRole:
    async def test_sole_owner_cannot_downgrade(self, store, org_with_owner):
        org, owner = org_with_owner
        with pytest.raises(LastOwnerCannotChangeRole):
            await store.update_organization_member_role(org.id, owner.id, "developer")

    async def test_owner_can_downgrade_with_another_owner(self, store, factory, org_with_owner):
        org, owner = org_with_owner
        other = await factory.user()
        await factory.org_member(org, other, Role.OWNER)

        membership = await store.update_organization_member_role(org.id, owner.id, "developer")
        assert membership.role == Role.DEVELOPER.value

    async def test_sole_owner_may_keep_owner(self, store, org_with_owner):
        org, owner = org_with_owner
        membership = await store.update_organization_member_role(org.id, owner.id, "owner")
        assert membership.role == Role.OWNER.value

    async def test_no_role_given(self, store, org_with_owner):
        org, owner = org_with_owner
        with pytest.raises(NoRoleGiven):
            await store.update_organization_member_role(org.id, owner.id, None)

    async def test_non_member(self, store, factory, org_with_owner):
        org, _ = org_with_owner
        stranger = await factory.user()
        with pytest.raises(NotFound):
            await store.update_organization_member_role(org.id, stranger.id, "developer")

    async def test_promotion_revokes_lower_project_grant(self, store, factory, org_with_owner):
        org, _ = org_with_owner
        project = await factory.project(org)
        b = await factory.user()
        await factory.org_member(org, b, Role.TRANSLATOR)
        await factory.project_member(project, b, Role.DEVELOPER)

        await store.update_organization_member_role(org.id, b.id, "owner")

        assert await factory.get(ProjectUser, (project.id, b.id)) is None
        assert await store.effective_role(b.id, project.id) == EffectiveRole(
            role=Role.OWNER, source=RoleSource.ORGANIZATION
        )

    async def test_promotion_keeps_grants_at_or_above_new_role(self, store, factory, org_with_owner):
        org, _ = org_with_owner
        docs = await factory.project(org, "Docs")
        app = await factory.project(org, "App")
        user = await factory.user()
        await factory.org_member(org, user, Role.TRANSLATOR)
        await factory.project_member(docs, user, Role.MANAGER)
        await factory.project_member(app, user, Role.DEVELOPER)

        await store.update_organization_member_role(org.id, user.id, "manager")

        rows = await factory.project_rows(user)
        assert [(r.project_id, r.role) for r in rows] == [(docs.id, Role.MANAGER.value)]

    async def test_repeated_promotion_leaves_no_lower_grants(self, store, factory, org_with_owner):
        org, _ = org_with_owner
        project = await factory.project(org)
        user = await factory.user()
        await factory.org_member(org, user, Role.TRANSLATOR)
        await factory.project_member(project, user, Role.MANAGER)

        await store.update_organization_member_role(org.id, user.id, "developer")
        assert len(await factory.project_rows(user)) == 1

        await store.update_organization_member_role(org.id, user.id, "owner")
        assert await factory.project_rows(user) == []

    async def test_promotion_leaves_other_organizations_alone(self, store, factory, org_with_owner):
        org, _ = org_with_owner
        other_org = await factory.organization("Other")
        elsewhere = await factory.project(other_org)
        user = await factory.user()
        await factory.org_member(org, user, Role.TRANSLATOR)
        await factory.project_member(elsewhere, user, Role.DEVELOPER)

        await store.update_organization_member_role(org.id, user.id, "owner")
        assert len(await factory.project_rows(user)) == 1

    async def test_demotion_does_not_revoke(self, store, factory, org_with_owner):
        org, _ = org_with_owner
        project = await factory.project(org)
        user = await factory.user()
        await factory.org_member(org, user, Role.DEVELOPER)
        await factory.project_member(project, user, Role.MANAGER)

        await store.update_organization_member_role(org.id, user.id, "translator")
        assert len(await factory.project_rows(user)) == 1


class TestRemoveOrganizationMember:
    async def test_last_user_cannot_leave(self, store, org_with_owner):
        org, owner = org_with_owner
        with pytest.raises(LastUserCannotLeave):
            await store.remove_organization_member(org.id, owner.id, actor_id=owner.id)

    async def test_last_owner_cannot_be_removed(self, store, factory, org_with_owner):
        org, owner = org_with_owner
        other = await factory.user()
        await factory.org_member(org, other, Role.MANAGER)

        with pytest.raises(LastOwnerCannotBeRemoved):
            await store.remove_organization_member(org.id, owner.id, actor_id=owner.id)

    async def test_remove_member(self, store, factory, org_with_owner):
        org, owner = org_with_owner
        other = await factory.user()
        await factory.org_member(org, other, Role.DEVELOPER)

        await store.remove_organization_member(org.id, other.id, actor_id=owner.id)
        assert await factory.get(OrganizationUser, (org.id, other.id)) is None

    async def test_owner_removed_when_another_owner_remains(self, store, factory, org_with_owner):
        org, owner = org_with_owner
        other = await factory.user()
        await factory.org_member(org, other, Role.OWNER)

        await store.remove_organization_member(org.id, owner.id, actor_id=owner.id)
        members = await store.list_organization_members(org.id)
        assert [(m.user_id, m.role) for m in members] == [(other.id, Role.OWNER)]

    async def test_non_member(self, store, factory, org_with_owner):
        org, _ = org_with_owner
        stranger = await factory.user()
        with pytest.raises(NotFound):
            await store.remove_organization_member(org.id, stranger.id)


# ---------------------------------------------------------------------------
# Project scope
# ---------------------------------------------------------------------------

class TestAddProjectMember:
    async def test_defaults_to_organization_role(self, store, factory, org_with_owner):
        org, _ = org_with_owner
        project = await factory.project(org)
        user = await factory.user()
        await factory.org_member(org, user, Role.MANAGER)

        membership = await store.add_project_member(project.id, user.id, "translator")
        assert membership.role == Role.MANAGER.value

    async def test_higher_requested_role_wins(self, store, factory, org_with_owner):
        org, _ = org_with_owner
        project = await factory.project(org)
        user = await factory.user()
        await factory.org_member(org, user, Role.DEVELOPER)

        membership = await store.add_project_member(project.id, user.id, "manager")
        assert membership.role == Role.MANAGER.value

    async def test_default_translator_without_organization(self, store, factory):
        project = await factory.project(None)
        user = await factory.user()

        membership = await store.add_project_member(project.id, user.id)
        assert membership.role == Role.TRANSLATOR.value

    async def test_already_member(self, store, factory):
        project = await factory.project(None)
        user = await factory.user()
        await factory.project_member(project, user, Role.OWNER)

        with pytest.raises(AlreadyMember):
            await store.add_project_member(project.id, user.id, "developer")

    async def test_by_email_unknown_user(self, store, factory):
        project = await factory.project(None)
        with pytest.raises(UserNotFound):
            await store.add_project_member_by_email(project.id, "ghost@example.com")

    async def test_unknown_project(self, store, factory):
        user = await factory.user()
        with pytest.raises(NotFound):
            await store.add_project_member(uuid.uuid4(), user.id)


class TestUpdateProjectMemberRole:
    async def test_role_below_organization_role_rejected(self, store, factory, org_with_owner):
        org, _ = org_with_owner
        project = await factory.project(org)
        user = await factory.user()
        await factory.org_member(org, user, Role.OWNER)

        with pytest.raises(ProjectRoleBelowOrganizationRole):
            await store.update_project_member_role(project.id, user.id, "developer")

    async def test_creates_grant_when_missing(self, store, factory, org_with_owner):
        org, _ = org_with_owner
        project = await factory.project(org)
        user = await factory.user()
        await factory.org_member(org, user, Role.TRANSLATOR)

        membership = await store.update_project_member_role(project.id, user.id, "developer")
        assert membership.role == Role.DEVELOPER.value
        assert await store.effective_role(user.id, project.id) == EffectiveRole(
            role=Role.DEVELOPER, source=RoleSource.PROJECT
        )

    async def test_no_role_given(self, store, factory):
        project = await factory.project(None)
        user = await factory.user()
        await factory.project_member(project, user, Role.OWNER)

        with pytest.raises(NoRoleGiven):
            await store.update_project_member_role(project.id, user.id, None)

    async def test_last_project_owner_cannot_downgrade(self, store, factory):
        project = await factory.project(None)
        a, b = await factory.user(), await factory.user()
        await factory.project_member(project, a, Role.OWNER)
        await factory.project_member(project, b, Role.DEVELOPER)

        with pytest.raises(LastOwnerCannotChangeRole):
            await store.update_project_member_role(project.id, a.id, "manager")

    async def test_last_project_owner_covered_by_organization_owner(self, store, factory, org_with_owner):
        org, _ = org_with_owner
        project = await factory.project(org)
        user = await factory.user()
        await factory.org_member(org, user, Role.TRANSLATOR)
        await factory.project_member(project, user, Role.OWNER)

        membership = await store.update_project_member_role(project.id, user.id, "developer")
        assert membership.role == Role.DEVELOPER.value

    async def test_unknown_role(self, store, factory):
        project = await factory.project(None)
        user = await factory.user()
        with pytest.raises(RoleNotFound):
            await store.update_project_member_role(project.id, user.id, "admin")


class TestRemoveProjectMember:
    async def test_sole_member_check_precedes_owner_check(self, store, factory):
        project = await factory.project(None)
        a = await factory.user()
        await factory.project_member(project, a, Role.OWNER)

        with pytest.raises(LastUserCannotLeave):
            await store.remove_project_member(project.id, a.id, actor_id=a.id)

    async def test_last_owner_cannot_be_removed(self, store, factory):
        project = await factory.project(None)
        a, b = await factory.user(), await factory.user()
        await factory.project_member(project, a, Role.OWNER)
        await factory.project_member(project, b, Role.TRANSLATOR)

        with pytest.raises(LastOwnerCannotBeRemoved):
            await store.remove_project_member(project.id, a.id, actor_id=b.id)

    async def test_owner_removed_when_organization_has_owner(self, store, factory, org_with_owner):
        org, _ = org_with_owner
        project = await factory.project(org)
        user = await factory.user()
        await factory.project_member(project, user, Role.OWNER)

        await store.remove_project_member(project.id, user.id, actor_id=user.id)
        assert await factory.get(ProjectUser, (project.id, user.id)) is None

    async def test_non_member(self, store, factory):
        project = await factory.project(None)
        user = await factory.user()
        with pytest.raises(NotFound):
            await store.remove_project_member(project.id, user.id)


class TestOwnerInvariant:
    async def test_random_walk_keeps_an_owner(self, store, factory):
        """Whatever sequence of requests arrives, the org keeps an owner."""
        org = await factory.organization()
        project = await factory.project(org)
        users = [await factory.user() for _ in range(3)]
        await factory.org_member(org, users[0], Role.OWNER)
        await factory.org_member(org, users[1], Role.OWNER)
        await factory.org_member(org, users[2], Role.DEVELOPER)

        requests = [
            ("update", 0, "translator"),
            ("update", 1, "manager"),
            ("remove", 1, None),
            ("update", 2, "owner"),
            ("update", 2, "developer"),
            ("remove", 0, None),
            ("remove", 2, None),
            ("update", 0, "manager"),
        ]
        for kind, index, role in requests:
            try:
                if kind == "update":
                    await store.update_organization_member_role(org.id, users[index].id, role)
                else:
                    await store.remove_organization_member(org.id, users[index].id)
            except (LastOwnerCannotChangeRole, LastOwnerCannotBeRemoved, LastUserCannotLeave, NotFound):
                pass

            members = await store.list_organization_members(org.id)
            assert any(m.role == Role.OWNER for m in members)
            project_members = await store.list_project_members(project.id)
            assert any(m.role == Role.OWNER for m in project_members)


# ---------------------------------------------------------------------------
# Feature gate
# ---------------------------------------------------------------------------

class TestFeatureGate:
    @pytest.fixture
    def basic_store(self, session_factory, event_bus):
        return MembershipStore(session_factory, StaticFeatureGate(False), event_bus)

    async def test_non_owner_role_rejected(self, basic_store, factory, org_with_owner):
        org, _ = org_with_owner
        user = await factory.user()
        with pytest.raises(FeatureNotAvailable):
            await basic_store.add_organization_member(org.id, user.id, "developer")

    async def test_owner_role_allowed(self, basic_store, factory, org_with_owner):
        org, _ = org_with_owner
        user = await factory.user()
        membership = await basic_store.add_organization_member(org.id, user.id, "owner")
        assert membership.role == Role.OWNER.value

    async def test_checked_before_invariants(self, basic_store, org_with_owner):
        org, owner = org_with_owner
        with pytest.raises(FeatureNotAvailable):
            await basic_store.update_organization_member_role(org.id, owner.id, "developer")

    async def test_checked_before_role_validation(self, basic_store, org_with_owner):
        org, owner = org_with_owner
        with pytest.raises(FeatureNotAvailable):
            await basic_store.update_organization_member_role(org.id, owner.id, None)
        with pytest.raises(FeatureNotAvailable):
            await basic_store.add_organization_member(org.id, owner.id, "superuser")

    async def test_missing_project_role_rejected_by_gate(self, basic_store, factory):
        project = await factory.project(None)
        user = await factory.user()
        with pytest.raises(FeatureNotAvailable):
            await basic_store.update_project_member_role(project.id, user.id, None)

    async def test_project_scope(self, basic_store, factory, org_with_owner):
        org, _ = org_with_owner
        project = await factory.project(org)
        user = await factory.user()
        with pytest.raises(FeatureNotAvailable):
            await basic_store.update_project_member_role(project.id, user.id, "manager")

    async def test_organization_settings_gate(self, session_factory, event_bus, factory):
        paid = await factory.organization("Paid", {"features": {"permission_system": True}})
        free = await factory.organization("Free", {"features": {"permission_system": False}})
        gate = OrganizationSettingsFeatureGate(session_factory, default=False)
        gated_store = MembershipStore(session_factory, gate, event_bus)
        user = await factory.user()

        assert await gate.is_permission_system_enabled(paid.id)
        assert not await gate.is_permission_system_enabled(free.id)
        assert not await gate.is_permission_system_enabled(None)

        await gated_store.add_organization_member(paid.id, user.id, "developer")
        with pytest.raises(FeatureNotAvailable):
            await gated_store.add_organization_member(free.id, user.id, "developer")


# ---------------------------------------------------------------------------
# Events and storage failures
# ---------------------------------------------------------------------------

class TestEvents:
    async def test_events_published_after_commit(self, store, factory, published, org_with_owner):
        org, owner = org_with_owner
        project = await factory.project(org)
        user = await factory.user()
        await factory.org_member(org, user, Role.TRANSLATOR)
        await factory.project_member(project, user, Role.DEVELOPER)

        await store.update_organization_member_role(org.id, user.id, "manager", actor_id=owner.id)

        assert [e.type for e in published] == [
            MembershipEventType.ORGANIZATION_MEMBER_ROLE_UPDATED,
            MembershipEventType.PROJECT_MEMBER_REVOKED,
        ]
        updated, revoked = published
        assert updated.previous_role == Role.TRANSLATOR
        assert updated.role == Role.MANAGER
        assert updated.actor_id == owner.id
        assert revoked.project_id == project.id
        assert updated.id != revoked.id

    async def test_no_events_on_rejection(self, store, published, org_with_owner):
        org, owner = org_with_owner
        with pytest.raises(LastOwnerCannotChangeRole):
            await store.update_organization_member_role(org.id, owner.id, "developer")
        assert published == []


    async def test_flaky_hook_receives_event_again(self, session_factory, factory, org_with_owner):
        org, _ = org_with_owner
        user = await factory.user()
        received = []

        async def flaky(event):
            received.append(event.type)
            if len(received) == 1:
                raise ConnectionError("redis down")

        bus = MembershipEventBus([flaky], attempts=3, retry_delay=0)
        flaky_store = MembershipStore(session_factory, StaticFeatureGate(True), bus)

        await flaky_store.add_organization_member(org.id, user.id, "developer")
        assert received == [MembershipEventType.ORGANIZATION_MEMBER_ADDED] * 2


class TestStorageFailures:
    async def test_operational_error_becomes_storage_unavailable(self, session_factory):
        with pytest.raises(StorageUnavailable) as exc_info:
            async with transaction(session_factory):
                raise OperationalError("SELECT 1", {}, Exception("server closed the connection"))
        assert "server closed" not in str(exc_info.value)
        assert exc_info.value.code == "STORAGE_UNAVAILABLE"

    async def test_failed_mutation_rolls_back(self, store, factory, session_factory, org_with_owner):
        org, _ = org_with_owner
        project = await factory.project(org)
        user = await factory.user()
        await factory.org_member(org, user, Role.TRANSLATOR)
        await factory.project_member(project, user, Role.DEVELOPER)

        with pytest.raises(RuntimeError):
            async with store.unit_of_work() as (session, pending):
                membership = await session.get(OrganizationUser, (org.id, user.id))
                membership.role = Role.OWNER.value
                session.add(membership)
                await session.flush()
                raise RuntimeError("abort")

        row = await factory.get(OrganizationUser, (org.id, user.id))
        assert row.role == Role.TRANSLATOR.value
        assert len(await factory.project_rows(user)) == 1

    @pytest.mark.parametrize(
        "driver_error",
        ["DeadlockDetectedError", "SerializationError", "LockNotAvailableError"],
    )
    async def test_driver_abort_becomes_storage_unavailable(self, session_factory, driver_error):
        orig = type(driver_error, (Exception,), {})("deadlock detected")
        with pytest.raises(StorageUnavailable) as exc_info:
            async with transaction(session_factory):
                raise DBAPIError("UPDATE organizations_users SET role=?", {}, orig)
        assert "deadlock" not in str(exc_info.value)

    async def test_integrity_error_passes_through(self, session_factory):
        with pytest.raises(IntegrityError):
            async with transaction(session_factory):
                raise IntegrityError("INSERT INTO organizations_users", {}, Exception("duplicate key"))
