#!/usr/bin/env python3
"""Create or promote an administrator and link them to a tenant.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123! \
        --tenant-code acme --tenant-name "Acme Corp"

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from 3 or more character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def _ensure_tenant(store, code: str, name: str):
    for tenant in store.list_tenants():
        if tenant.code == code:
            return tenant, False
    return store.create_tenant(code, name), True


def bootstrap_admin(
    email: str,
    password: str,
    *,
    tenant_code: str = "default",
    tenant_name: str = "Default",
    system_admin: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create or promote the admin; returns ``{"user_id", "email", "tenant_id", "status"}``."""
    from collabauth.service.runtime import get_runtime

    runtime = get_runtime()
    store = runtime.store
    verifier = runtime.auth.verifier

    existing = store.get_user_by_email(email)
    if dry_run:
        action = "promote" if existing else "create"
        print(f"[DRY RUN] Would {action} admin user {email} in tenant {tenant_code}")
        return {"user_id": existing.id if existing else None, "email": email, "status": "dry_run"}

    tenant, tenant_created = _ensure_tenant(store, tenant_code, tenant_name)
    if tenant_created:
        print(f"Created tenant {tenant.code} (id: {tenant.id})")

    if existing:
        status = "already_admin" if existing.role == "admin" else "promoted"
        user = store.update_user(
            existing.id,
            role="admin",
            status="active",
            is_system_admin=existing.is_system_admin or system_admin,
        )
    else:
        status = "created"
        user = store.create_user(
            email,
            verifier.hash_password(password),
            display_name="Administrator",
            role="admin",
            is_system_admin=system_admin,
        )

    if store.get_membership(user.id, tenant.id) is None:
        has_default = any(m.is_default for m in store.list_memberships(user.id))
        store.add_membership(
            user.id, tenant.id, role_in_tenant="admin", is_default=not has_default
        )

    print(f"{status}: {email} (id: {user.id}) in tenant {tenant.code}")
    return {"user_id": user.id, "email": email, "tenant_id": tenant.id, "status": status}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator for the auth core",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--tenant-code", default=os.environ.get("ADMIN_TENANT_CODE", "default"))
    parser.add_argument("--tenant-name", default=os.environ.get("ADMIN_TENANT_NAME", "Default"))
    parser.add_argument(
        "--system-admin",
        action="store_true",
        help="Grant access to every active tenant",
    )
    parser.add_argument("--dry-run", action="store_true")

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/collabauth-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from collabauth.storage.errors import ConstraintViolation, StoreUnavailable

    try:
        bootstrap_admin(
            args.email,
            args.password,
            tenant_code=args.tenant_code,
            tenant_name=args.tenant_name,
            system_admin=args.system_admin,
            dry_run=args.dry_run,
        )
    except (ConstraintViolation, StoreUnavailable) as exc:
        print(f"Error: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
