#!/usr/bin/env python3
"""Create the first tenant and its owner account.

Usage:
    # Using environment variables:
    OWNER_EMAIL=owner@example.com OWNER_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_tenant.py --tenant-name Acme --tenant-slug acme

    # Or with command line args:
    python scripts/bootstrap_tenant.py --tenant-name Acme --tenant-slug acme \
        --email owner@example.com --password SecurePassword123!

Environment Variables:
    OWNER_EMAIL: Email for the tenant owner
    OWNER_PASSWORD: Password for the owner (must satisfy the password policy)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_tenant(
    tenant_name: str,
    tenant_slug: str,
    email: str,
    password: str,
    owner_name: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Register a tenant with its owner through the credential service.

    Returns:
        dict with tenant_id, user_id, email and status ('created', 'exists' or 'dry_run')
    """
    # Import here so config is read after the env defaults below are applied
    from portalauth.service.credentials import normalize_email, validate_password
    from portalauth.service.runtime import get_runtime

    runtime = get_runtime()
    normalized = normalize_email(email)

    existing = runtime.store.find_user_by_email_global(normalized)
    if existing is not None:
        print(f"User {normalized} already exists (tenant: {existing.tenant_id})")
        return {
            "tenant_id": existing.tenant_id,
            "user_id": existing.id,
            "email": normalized,
            "status": "exists",
        }

    if dry_run:
        validate_password(password, runtime.settings.password_policy())
        print(f"[DRY RUN] Would create tenant '{tenant_slug}' owned by {normalized}")
        return {"tenant_id": None, "user_id": None, "email": normalized, "status": "dry_run"}

    tenant, owner = runtime.credentials.register_tenant(
        tenant_name=tenant_name,
        tenant_slug=tenant_slug,
        email=normalized,
        password=password,
        owner_name=owner_name,
    )
    return {
        "tenant_id": tenant.id,
        "user_id": owner.id,
        "email": owner.email,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a tenant and its owner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--tenant-name", required=True, help="Display name of the tenant")
    parser.add_argument("--tenant-slug", required=True, help="URL-safe tenant identifier")
    parser.add_argument(
        "--email",
        default=os.environ.get("OWNER_EMAIL"),
        help="Owner email (or set OWNER_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("OWNER_PASSWORD"),
        help="Owner password (or set OWNER_PASSWORD env var)",
    )
    parser.add_argument("--name", default=None, help="Owner display name")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or OWNER_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or OWNER_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from portalauth.service.errors import ServiceError
    from portalauth.storage.errors import ConstraintViolation

    try:
        result = bootstrap_tenant(
            args.tenant_name,
            args.tenant_slug,
            args.email,
            args.password,
            owner_name=args.name,
            dry_run=args.dry_run,
        )
    except (ServiceError, ConstraintViolation) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nTenant created successfully!")
        print(f"  Tenant ID: {result['tenant_id']}")
        print(f"  Owner: {result['email']} ({result['user_id']})")
    elif result["status"] == "exists":
        print("\nNo changes made.")


if __name__ == "__main__":
    main()
