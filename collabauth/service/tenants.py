from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from collabauth.logging import get_logger
from collabauth.service.errors import TenantAccessDeniedError, TenantNotFoundError
from collabauth.storage.common import CredentialStore, membership_sort_key
from collabauth.storage.models import Tenant, TenantStatus, User, UserTenantAssociation

logger = get_logger(__name__)


@dataclass
class TenantChoice:
    tenant: Tenant
    membership: Optional[UserTenantAssociation] = None

    @property
    def is_default(self) -> bool:
        return bool(self.membership and self.membership.is_default)

    def to_dict(self) -> dict:
        return {
            "id": self.tenant.id,
            "code": self.tenant.code,
            "name": self.tenant.name,
            "is_default": self.is_default,
        }


@dataclass
class TenantSelection:
    tenant: Tenant
    auto_selected: bool
    needs_selection: bool
    choices: List[TenantChoice] = field(default_factory=list)


class TenantResolver:
    """Works out which tenants a user may act in and which one is current."""

    def __init__(self, store: CredentialStore) -> None:
        self.store = store
        self.logger = logger

    def _memberships(self, user: User) -> Dict[int, UserTenantAssociation]:
        return {m.tenant_id: m for m in self.store.list_memberships(user.id)}

    def resolve_tenants(self, user: User) -> List[TenantChoice]:
        """Active tenants the user holds an active association to, default first.

        System administrators see every active tenant. Raises
        ``TenantAccessDeniedError`` when nothing is accessible.
        """

        memberships = self._memberships(user)
        choices: List[TenantChoice] = []
        if user.is_system_admin:
            for tenant in self.store.list_tenants(status=TenantStatus.ACTIVE.value):
                membership = memberships.get(tenant.id)
                if membership is not None and not membership.is_active:
                    membership = None
                choices.append(TenantChoice(tenant=tenant, membership=membership))
        else:
            for tenant_id, membership in memberships.items():
                if not membership.is_active:
                    continue
                tenant = self.store.get_tenant(tenant_id)
                if tenant is None or not tenant.is_active:
                    continue
                choices.append(TenantChoice(tenant=tenant, membership=membership))

        if not choices:
            self.logger.warning("tenant_none_accessible", user_id=user.id)
            raise TenantAccessDeniedError("No accessible tenant for this account")
        choices.sort(key=lambda c: membership_sort_key(c.membership, c.tenant))
        return choices

    def _requested_tenant(self, user: User, tenant_id: int) -> TenantChoice:
        membership = self.store.get_membership(user.id, tenant_id)
        if membership is not None and membership.is_active:
            tenant = self.store.get_tenant(tenant_id)
            if tenant is None or not tenant.is_active:
                raise TenantNotFoundError()
            return TenantChoice(tenant=tenant, membership=membership)

        if user.is_system_admin:
            tenant = self.store.get_tenant(tenant_id)
            if tenant is None or not tenant.is_active:
                raise TenantNotFoundError()
            return TenantChoice(tenant=tenant, membership=membership)

        # foreign and nonexistent tenants look the same to ordinary users
        self.logger.warning("tenant_access_denied", user_id=user.id, tenant_id=tenant_id)
        raise TenantAccessDeniedError()

    def pick_current(
        self,
        user: User,
        tenants: Optional[List[TenantChoice]] = None,
        requested_tenant_id: Optional[int] = None,
    ) -> TenantSelection:
        """Choose the current tenant; an explicit request must be accessible."""

        if requested_tenant_id is not None:
            choice = self._requested_tenant(user, requested_tenant_id)
            return TenantSelection(
                tenant=choice.tenant,
                auto_selected=False,
                needs_selection=False,
                choices=list(tenants or []),
            )

        choices = tenants if tenants else self.resolve_tenants(user)
        default = next((c for c in choices if c.is_default), None)
        chosen = default or choices[0]
        return TenantSelection(
            tenant=chosen.tenant,
            auto_selected=len(choices) == 1,
            needs_selection=len(choices) > 1 and default is None,
            choices=list(choices),
        )

    def validate_binding(self, user: User, tenant_id: Optional[int]) -> bool:
        """True when a session bound to ``tenant_id`` may still act for ``user``."""

        if tenant_id is None:
            return False
        tenant = self.store.get_tenant(tenant_id)
        if tenant is None or not tenant.is_active:
            return False
        if user.is_system_admin:
            return True
        membership = self.store.get_membership(user.id, tenant_id)
        return membership is not None and membership.is_active
