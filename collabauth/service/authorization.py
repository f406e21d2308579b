"""Role to capability mapping with tenant-scoped overrides.

Roles are strictly nested: guest, then standard_user, then special_user, then
admin, each holding everything the previous one holds. ``all`` covers every
capability; an entry ending in ``.*`` covers everything under that prefix.
Every lookup fails closed.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Mapping, Optional

from collabauth.logging import get_logger
from collabauth.storage.common import CredentialStore
from collabauth.storage.models import (
    Role,
    Session,
    User,
    UserStatus,
    UserTenantAssociation,
)

logger = get_logger(__name__)

ALL = "all"
SWITCH_CAPABILITY = "tenants.switch"

_GUEST = frozenset({"profile.view", "files.view", "calendar.view"})
_STANDARD = _GUEST | {
    "profile.edit",
    "files.own",
    "folders.own",
    "tasks.own",
    "calendar.own",
    "chat.use",
}
_SPECIAL = _STANDARD | {
    "files.*",
    "folders.*",
    "users.view",
    "tenants.view",
    "tenants.switch",
}
_ADMIN = _SPECIAL | {ALL}

ROLE_CAPABILITIES: Dict[Role, FrozenSet[str]] = {
    Role.GUEST: _GUEST,
    Role.STANDARD_USER: frozenset(_STANDARD),
    Role.SPECIAL_USER: frozenset(_SPECIAL),
    Role.ADMIN: frozenset(_ADMIN),
}


def _prefixes(capability: str):
    parts = capability.split(".")
    for idx in range(1, len(parts)):
        yield ".".join(parts[:idx]) + ".*"


def _covered(capability: str, entries) -> bool:
    if capability in entries:
        return True
    return any(prefix in entries for prefix in _prefixes(capability))


def capability_allowed(
    base: FrozenSet[str], overrides: Mapping[str, bool], capability: object
) -> bool:
    """Apply revokes, then grants, then the base table."""

    if not isinstance(capability, str) or not capability.strip():
        return False
    revoked = {cap for cap, allowed in overrides.items() if allowed is False}
    granted = {cap for cap, allowed in overrides.items() if allowed is True}
    if _covered(capability, revoked):
        return False
    if ALL in granted or _covered(capability, granted):
        return True
    if ALL in base and ALL not in revoked:
        return True
    return _covered(capability, base)


class RoleAuthorizer:
    def __init__(self, store: CredentialStore) -> None:
        self.store = store
        self.logger = logger

    @staticmethod
    def capabilities(role: object) -> FrozenSet[str]:
        parsed = Role.parse(role)
        if parsed is None:
            return frozenset()
        return ROLE_CAPABILITIES[parsed]

    @staticmethod
    def role_for(
        user: User, association: Optional[UserTenantAssociation]
    ) -> Optional[Role]:
        if user.is_system_admin:
            return Role.ADMIN
        if association is not None and association.role_in_tenant:
            return Role.parse(association.role_in_tenant)
        return Role.parse(user.role)

    def effective_capabilities(
        self, user: User, association: Optional[UserTenantAssociation]
    ) -> FrozenSet[str]:
        role = self.role_for(user, association)
        if role is None:
            return frozenset()
        overrides = association.permission_overrides if association else {}
        caps = set(ROLE_CAPABILITIES[role])
        caps.update(cap for cap, allowed in overrides.items() if allowed)
        caps.difference_update(cap for cap, allowed in overrides.items() if not allowed)
        return frozenset(caps)

    def can_switch_tenant(
        self, user: User, association: Optional[UserTenantAssociation]
    ) -> bool:
        """Switching is a user-level right.

        The global role decides, not the role held in the current tenant;
        ``association`` only contributes its overrides.
        """
        if user.is_system_admin:
            return True
        role = Role.parse(user.role)
        if role is None:
            return False
        overrides = association.permission_overrides if association else {}
        return capability_allowed(ROLE_CAPABILITIES[role], overrides, SWITCH_CAPABILITY)

    def check(self, user_id: int, tenant_id: Optional[int], capability: object) -> bool:
        """Whether ``user_id`` holds ``capability`` inside ``tenant_id``."""

        user = self.store.get_user(user_id)
        if user is None or user.status != UserStatus.ACTIVE.value:
            return False
        if tenant_id is None:
            return False
        tenant = self.store.get_tenant(tenant_id)
        if tenant is None or not tenant.is_active:
            return False
        association = self.store.get_membership(user.id, tenant_id)
        if association is not None and not association.is_active:
            association = None
        if association is None and not user.is_system_admin:
            return False
        role = self.role_for(user, association)
        if role is None:
            self.logger.warning("authorization_unknown_role", user_id=user.id)
            return False
        overrides = association.permission_overrides if association else {}
        allowed = capability_allowed(ROLE_CAPABILITIES[role], overrides, capability)
        if not allowed:
            self.logger.info(
                "authorization_denied",
                user_id=user.id,
                tenant_id=tenant_id,
                capability=capability if isinstance(capability, str) else None,
            )
        return allowed

    def authorize(self, session: Optional[Session], capability: object) -> bool:
        if session is None:
            return False
        return self.check(session.user_id, session.tenant_id, capability)
