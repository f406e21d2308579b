"""Unit tests for the role capability table and tenant overrides."""

import pytest

from collabauth.service.authorization import (
    ROLE_CAPABILITIES,
    RoleAuthorizer,
    capability_allowed,
)
from collabauth.storage.memory import MemoryStore
from collabauth.storage.models import Role, Session, User, UserTenantAssociation


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def authorizer(memory_store):
    return RoleAuthorizer(memory_store)


@pytest.fixture
def tenant(memory_store):
    return memory_store.create_tenant("acme", "Acme")


def _session_for(memory_store, user, tenant_id):
    return memory_store.create_session(Session.new(user.id, tenant_id))


class TestCapabilityTable:
    def test_roles_are_nested_supersets(self):
        guest = ROLE_CAPABILITIES[Role.GUEST]
        standard = ROLE_CAPABILITIES[Role.STANDARD_USER]
        special = ROLE_CAPABILITIES[Role.SPECIAL_USER]
        admin = ROLE_CAPABILITIES[Role.ADMIN]

        assert guest < standard < special < admin
        assert "all" in admin

    def test_unknown_role_has_nothing(self, authorizer):
        assert authorizer.capabilities("superuser") == frozenset()
        assert authorizer.capabilities(None) == frozenset()

    def test_wildcard_prefix_covers_children(self):
        special = ROLE_CAPABILITIES[Role.SPECIAL_USER]

        assert capability_allowed(special, {}, "files.delete")
        assert not capability_allowed(special, {}, "users.delete")

    def test_all_covers_everything(self):
        assert capability_allowed(ROLE_CAPABILITIES[Role.ADMIN], {}, "anything.at.all")

    @pytest.mark.parametrize("capability", ["", "   ", None, 42])
    def test_blank_or_non_string_capability_denied(self, capability):
        assert not capability_allowed(ROLE_CAPABILITIES[Role.ADMIN], {}, capability)


class TestOverrides:
    def test_grant_adds_capability(self):
        assert capability_allowed(ROLE_CAPABILITIES[Role.GUEST], {"chat.use": True}, "chat.use")

    def test_revoke_removes_base_capability(self):
        assert not capability_allowed(
            ROLE_CAPABILITIES[Role.STANDARD_USER], {"chat.use": False}, "chat.use"
        )

    def test_revoke_beats_admin_wildcard(self):
        admin = ROLE_CAPABILITIES[Role.ADMIN]

        assert not capability_allowed(admin, {"users.delete": False}, "users.delete")
        assert capability_allowed(admin, {"users.delete": False}, "users.create")

    def test_prefix_revoke(self):
        special = ROLE_CAPABILITIES[Role.SPECIAL_USER]

        assert not capability_allowed(special, {"files.*": False}, "files.delete")
        assert capability_allowed(special, {"files.*": False}, "folders.delete")


class TestAuthorize:
    def test_role_in_tenant_takes_precedence(self, memory_store, authorizer, tenant):
        user = memory_store.create_user("dan@example.com", "h", role="guest")
        memory_store.add_membership(user.id, tenant.id, role_in_tenant="special_user")
        session = _session_for(memory_store, user, tenant.id)

        assert authorizer.authorize(session, "tenants.switch")

    def test_user_role_used_without_tenant_role(self, memory_store, authorizer, tenant):
        user = memory_store.create_user("erin@example.com", "h", role="guest")
        memory_store.add_membership(user.id, tenant.id)
        session = _session_for(memory_store, user, tenant.id)

        assert authorizer.authorize(session, "files.view")
        assert not authorizer.authorize(session, "files.own")

    def test_override_on_association(self, memory_store, authorizer, tenant):
        user = memory_store.create_user("fay@example.com", "h", role="standard_user")
        memory_store.add_membership(
            user.id,
            tenant.id,
            permission_overrides={"tenants.switch": True, "chat.use": False},
        )
        session = _session_for(memory_store, user, tenant.id)

        assert authorizer.authorize(session, "tenants.switch")
        assert not authorizer.authorize(session, "chat.use")

    def test_fails_closed(self, memory_store, authorizer, tenant):
        user = memory_store.create_user("gil@example.com", "h", role="admin")
        session = _session_for(memory_store, user, tenant.id)

        # no association
        assert not authorizer.authorize(session, "profile.view")
        assert not authorizer.authorize(None, "profile.view")

        memory_store.add_membership(user.id, tenant.id, is_active=False)
        assert not authorizer.authorize(session, "profile.view")

    def test_unknown_tenant_role_denies(self, memory_store, authorizer, tenant):
        user = memory_store.create_user("hal@example.com", "h", role="admin")
        memory_store.add_membership(user.id, tenant.id, role_in_tenant="wizard")
        session = _session_for(memory_store, user, tenant.id)

        assert not authorizer.authorize(session, "profile.view")

    def test_inactive_user_or_tenant_denies(self, memory_store, authorizer, tenant):
        user = memory_store.create_user("ivy@example.com", "h", role="admin")
        memory_store.add_membership(user.id, tenant.id)
        session = _session_for(memory_store, user, tenant.id)
        assert authorizer.authorize(session, "profile.view")

        memory_store.update_tenant_status(tenant.id, "suspended")
        assert not authorizer.authorize(session, "profile.view")

        memory_store.update_tenant_status(tenant.id, "active")
        memory_store.update_user(user.id, status="inactive")
        assert not authorizer.authorize(session, "profile.view")

    def test_system_admin_without_association(self, memory_store, authorizer, tenant):
        root = memory_store.create_user("root@example.com", "h", role="guest", is_system_admin=True)
        session = _session_for(memory_store, root, tenant.id)

        assert authorizer.authorize(session, "users.delete")

    def test_effective_capabilities_apply_overrides(self, memory_store, authorizer, tenant):
        user = memory_store.create_user("jo@example.com", "h", role="guest")
        membership = memory_store.add_membership(
            user.id, tenant.id, permission_overrides={"chat.use": True, "files.view": False}
        )

        caps = authorizer.effective_capabilities(user, membership)

        assert "chat.use" in caps
        assert "files.view" not in caps
        assert "profile.view" in caps


class TestTenantSwitchRight:
    @pytest.mark.parametrize(
        "role,expected",
        [("guest", False), ("standard_user", False), ("special_user", True), ("admin", True)],
    )
    def test_global_role_decides(self, authorizer, role, expected):
        user = User(id=1, email="u@example.com", password_hash="h", role=role)

        assert authorizer.can_switch_tenant(user, None) is expected

    def test_tenant_role_does_not_narrow_switching(self, authorizer):
        user = User(id=1, email="u@example.com", password_hash="h", role="special_user")
        membership = UserTenantAssociation(user_id=1, tenant_id=1, role_in_tenant="guest")

        assert authorizer.can_switch_tenant(user, membership)

    def test_membership_overrides_apply(self, authorizer):
        special = User(id=1, email="s@example.com", password_hash="h", role="special_user")
        standard = User(id=2, email="t@example.com", password_hash="h")
        revoke = UserTenantAssociation(
            user_id=1, tenant_id=1, permission_overrides={"tenants.switch": False}
        )
        grant = UserTenantAssociation(
            user_id=2, tenant_id=1, permission_overrides={"tenants.switch": True}
        )

        assert not authorizer.can_switch_tenant(special, revoke)
        assert authorizer.can_switch_tenant(standard, grant)

    def test_system_admin_and_unknown_role(self, authorizer):
        root = User(id=1, email="r@example.com", password_hash="h", role="guest", is_system_admin=True)
        odd = User(id=2, email="o@example.com", password_hash="h", role="superuser")

        assert authorizer.can_switch_tenant(root, None)
        assert not authorizer.can_switch_tenant(odd, None)
