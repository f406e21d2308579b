"""Unit tests for the session lifecycle and CSRF tokens."""

from datetime import datetime, timedelta, timezone

import pytest

from collabauth.config import Settings
from collabauth.service.errors import SessionExpiredError, UnauthenticatedError
from collabauth.service.sessions import CSRF_TOKEN_KEY, REGENERATED_KEY, SessionManager
from collabauth.storage.memory import MemoryStore

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def manager(memory_store):
    return SessionManager(memory_store, Settings())


@pytest.fixture
def clock(manager, monkeypatch):
    """Controllable clock for the session manager."""

    class Clock:
        now = T0

        def advance(self, **kwargs):
            self.now = self.now + timedelta(**kwargs)

    c = Clock()
    monkeypatch.setattr(manager, "_now", lambda: c.now)
    return c


@pytest.fixture
def user_and_tenant(memory_store):
    user = memory_store.create_user("carol@example.com", "hash")
    tenant = memory_store.create_tenant("acme", "Acme")
    memory_store.add_membership(user.id, tenant.id)
    return user, tenant


class TestCreate:
    def test_ids_are_long_random_and_unique(self, manager, user_and_tenant):
        user, tenant = user_and_tenant
        ids = {manager.create(user, tenant).id for _ in range(20)}

        assert len(ids) == 20
        # 32 random bytes, urlsafe base64 without padding
        assert all(len(sid) >= 43 for sid in ids)
        assert all(str(user.id) != sid for sid in ids)

    def test_create_binds_user_tenant_and_csrf(self, manager, user_and_tenant):
        user, tenant = user_and_tenant
        session = manager.create(user, tenant, ip_addr="1.2.3.4", user_agent="pytest")

        assert session.user_id == user.id
        assert session.tenant_id == tenant.id
        assert session.ip_addr == "1.2.3.4"
        assert session.meta[CSRF_TOKEN_KEY]

    def test_previous_session_is_replaced(self, manager, memory_store, user_and_tenant):
        user, tenant = user_and_tenant
        old = manager.create(user, tenant)
        new = manager.create(user, tenant, previous_session_id=old.id)

        assert new.id != old.id
        assert memory_store.get_session(old.id) is None
        assert memory_store.get_session(new.id) is not None

    def test_concurrent_sessions_track_own_tenant(self, manager, memory_store, user_and_tenant):
        user, tenant = user_and_tenant
        other = memory_store.create_tenant("beta", "Beta")
        memory_store.add_membership(user.id, other.id)

        first = manager.create(user, tenant)
        second = manager.create(user, tenant)
        manager.switch_tenant(second, other)

        assert manager.get(first.id).tenant_id == tenant.id
        assert manager.get(second.id).tenant_id == other.id

    def test_create_sweeps_idle_sessions(self, manager, clock, memory_store, user_and_tenant):
        user, tenant = user_and_tenant
        abandoned = manager.create(user, tenant)
        clock.advance(hours=2, seconds=1)

        current = manager.create(user, tenant)

        assert memory_store.get_session(abandoned.id) is None
        assert memory_store.get_session(current.id) is not None


class TestTouch:
    def test_touch_extends_idle_window(self, manager, clock, user_and_tenant):
        user, tenant = user_and_tenant
        session = manager.create(user, tenant)

        clock.advance(minutes=119)
        session = manager.touch(session)
        clock.advance(minutes=119)
        session = manager.touch(session)

        assert session.last_activity_at == clock.now

    def test_idle_expiry_deletes_session(self, manager, clock, memory_store, user_and_tenant):
        user, tenant = user_and_tenant
        session = manager.create(user, tenant)

        clock.advance(hours=2)
        with pytest.raises(SessionExpiredError):
            manager.touch(session)

        assert memory_store.get_session(session.id) is None

    def test_renewal_regenerates_old_ids(self, manager, clock, memory_store, user_and_tenant):
        user, tenant = user_and_tenant
        session = manager.create(user, tenant)

        clock.advance(minutes=30)
        same = manager.touch(session, renew=True)
        assert same.id == session.id

        clock.advance(minutes=31)
        renewed = manager.touch(same, renew=True)
        assert renewed.id != session.id
        assert memory_store.get_session(session.id) is None
        assert renewed.meta[REGENERATED_KEY] == clock.now.isoformat()


class TestRegenerate:
    def test_old_id_stops_resolving_and_data_survives(
        self, manager, memory_store, user_and_tenant
    ):
        user, tenant = user_and_tenant
        session = manager.create(user, tenant)
        manager.update_meta(session, {**session.meta, "redirect_counters": {"admin": 2}})
        session = manager.get(session.id)
        old_csrf = session.meta[CSRF_TOKEN_KEY]

        rotated = manager.regenerate(session)

        assert rotated.id != session.id
        assert manager.get(session.id) is None
        assert rotated.user_id == user.id
        assert rotated.tenant_id == tenant.id
        assert rotated.meta["redirect_counters"] == {"admin": 2}
        assert rotated.meta[CSRF_TOKEN_KEY] != old_csrf

    def test_regenerate_destroyed_session_fails(self, manager, user_and_tenant):
        user, tenant = user_and_tenant
        session = manager.create(user, tenant)
        manager.destroy(session)

        with pytest.raises(UnauthenticatedError):
            manager.regenerate(session)


class TestDestroy:
    def test_destroy_is_idempotent(self, manager, user_and_tenant):
        user, tenant = user_and_tenant
        session = manager.create(user, tenant)

        assert manager.destroy(session.id) is True
        assert manager.destroy(session.id) is False
        assert manager.destroy(None) is False

    def test_destroy_other_sessions_keeps_current(self, manager, user_and_tenant):
        user, tenant = user_and_tenant
        keep = manager.create(user, tenant)
        manager.create(user, tenant)
        manager.create(user, tenant)

        assert manager.destroy_other_sessions(user.id, keep.id) == 2
        assert manager.get(keep.id) is not None


class TestCsrf:
    def test_token_validates_with_constant_time_compare(self, manager, user_and_tenant):
        user, tenant = user_and_tenant
        session = manager.create(user, tenant)
        token = manager.ensure_csrf_token(session)

        assert manager.validate_csrf_token(session, token)
        assert not manager.validate_csrf_token(session, token + "x")
        assert not manager.validate_csrf_token(session, None)

    def test_stale_token_is_reissued(self, manager, clock, user_and_tenant):
        user, tenant = user_and_tenant
        session = manager.create(user, tenant)
        token = manager.ensure_csrf_token(session)

        clock.advance(hours=1)
        assert not manager.validate_csrf_token(session, token)
        fresh = manager.ensure_csrf_token(session)

        assert fresh != token
        assert manager.validate_csrf_token(manager.get(session.id), fresh)
