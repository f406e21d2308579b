"""Unit tests for tenant listing, auto-selection and requested tenants."""

import pytest

from collabauth.service.errors import TenantAccessDeniedError, TenantNotFoundError
from collabauth.service.tenants import TenantResolver
from collabauth.storage.memory import MemoryStore


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def resolver(memory_store):
    return TenantResolver(memory_store)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("bob@example.com", "hash")


class TestResolveTenants:
    def test_only_active_tenants_with_active_associations(self, memory_store, resolver, user):
        active = memory_store.create_tenant("acme", "Acme")
        suspended = memory_store.create_tenant("old", "Old Corp", status="suspended")
        disabled = memory_store.create_tenant("gone", "Gone Inc")
        memory_store.create_tenant("foreign", "Foreign")
        memory_store.add_membership(user.id, active.id)
        memory_store.add_membership(user.id, suspended.id)
        memory_store.add_membership(user.id, disabled.id, is_active=False)

        choices = resolver.resolve_tenants(user)

        assert [c.tenant.id for c in choices] == [active.id]

    def test_default_first_then_name(self, memory_store, resolver, user):
        zeta = memory_store.create_tenant("z", "zeta")
        alpha = memory_store.create_tenant("a", "Alpha")
        beta = memory_store.create_tenant("b", "beta")
        memory_store.add_membership(user.id, alpha.id)
        memory_store.add_membership(user.id, zeta.id, is_default=True)
        memory_store.add_membership(user.id, beta.id)

        names = [c.tenant.name for c in resolver.resolve_tenants(user)]

        assert names == ["zeta", "Alpha", "beta"]

    def test_no_tenant_is_access_denied(self, resolver, user):
        with pytest.raises(TenantAccessDeniedError):
            resolver.resolve_tenants(user)

    def test_system_admin_sees_all_active_tenants(self, memory_store, resolver):
        admin = memory_store.create_user("root@example.com", "hash", is_system_admin=True)
        first = memory_store.create_tenant("one", "One")
        second = memory_store.create_tenant("two", "Two")
        memory_store.create_tenant("three", "Three", status="archived")

        ids = {c.tenant.id for c in resolver.resolve_tenants(admin)}

        assert ids == {first.id, second.id}


class TestPickCurrent:
    def test_single_tenant_is_auto_selected(self, memory_store, resolver, user):
        tenant = memory_store.create_tenant("acme", "Acme")
        memory_store.add_membership(user.id, tenant.id)

        selection = resolver.pick_current(user)

        assert selection.tenant.id == tenant.id
        assert selection.auto_selected is True
        assert selection.needs_selection is False

    def test_default_wins_among_several(self, memory_store, resolver, user):
        first = memory_store.create_tenant("a", "Alpha")
        second = memory_store.create_tenant("b", "Beta")
        memory_store.add_membership(user.id, first.id)
        memory_store.add_membership(user.id, second.id, is_default=True)

        selection = resolver.pick_current(user)

        assert selection.tenant.id == second.id
        assert selection.auto_selected is False
        assert selection.needs_selection is False

    def test_several_without_default_needs_selection_but_still_picks(
        self, memory_store, resolver, user
    ):
        beta = memory_store.create_tenant("b", "Beta")
        alpha = memory_store.create_tenant("a", "Alpha")
        memory_store.add_membership(user.id, beta.id)
        memory_store.add_membership(user.id, alpha.id)

        selection = resolver.pick_current(user)

        assert selection.tenant.id == alpha.id
        assert selection.needs_selection is True

    def test_requested_foreign_tenant_denied(self, memory_store, resolver, user):
        own = memory_store.create_tenant("own", "Own")
        foreign = memory_store.create_tenant("foreign", "Foreign")
        memory_store.add_membership(user.id, own.id)

        with pytest.raises(TenantAccessDeniedError):
            resolver.pick_current(user, requested_tenant_id=foreign.id)

    def test_requested_missing_tenant_looks_foreign(self, memory_store, resolver, user):
        own = memory_store.create_tenant("own", "Own")
        memory_store.add_membership(user.id, own.id)

        with pytest.raises(TenantAccessDeniedError):
            resolver.pick_current(user, requested_tenant_id=9999)

    def test_requested_inactive_tenant_not_found(self, memory_store, resolver, user):
        suspended = memory_store.create_tenant("old", "Old", status="suspended")
        memory_store.add_membership(user.id, suspended.id)

        with pytest.raises(TenantNotFoundError):
            resolver.pick_current(user, requested_tenant_id=suspended.id)

    def test_requested_accessible_tenant(self, memory_store, resolver, user):
        first = memory_store.create_tenant("a", "Alpha")
        second = memory_store.create_tenant("b", "Beta")
        memory_store.add_membership(user.id, first.id, is_default=True)
        memory_store.add_membership(user.id, second.id)

        selection = resolver.pick_current(user, requested_tenant_id=second.id)

        assert selection.tenant.id == second.id
        assert selection.auto_selected is False


class TestValidateBinding:
    def test_binding_follows_membership_and_tenant_status(self, memory_store, resolver, user):
        tenant = memory_store.create_tenant("acme", "Acme")
        memory_store.add_membership(user.id, tenant.id)

        assert resolver.validate_binding(user, tenant.id)
        assert not resolver.validate_binding(user, None)

        memory_store.update_tenant_status(tenant.id, "suspended")
        assert not resolver.validate_binding(user, tenant.id)
