from __future__ import annotations

import argparse
import asyncio
from uuid import uuid4

from tenantgate.domain.models import User
from tenantgate.persistence.db import SessionLocal
from tenantgate.services.container import CoreServices
from tenantgate.services.tenancy.tenants import create_tenant


async def run(*, subdomain: str, name: str, business_type: str | None, admin_email: str | None) -> None:
    services = CoreServices.build(SessionLocal)
    await services.roles.ensure_system_roles()
    async with SessionLocal() as session:
        tenant = await create_tenant(session, subdomain=subdomain, name=name, business_type=business_type)
        admin = None
        if admin_email:
            # Invited admins link their identity-provider subject on first sign-in.
            admin = User(id=uuid4().hex, tenant_id=tenant.id, email=admin_email.lower(), status="invited")
            session.add(admin)
            await session.flush()
            await services.roles.assign_role(
                user_id=admin.id,
                role_id="tenant_admin",
                tenant_id=tenant.id,
                assigned_by=None,
                session=session,
            )
        await session.commit()
    await services.audit.flush()
    print(f"tenant_id={tenant.id}")
    print(f"subdomain={tenant.subdomain}")
    if admin is not None:
        print(f"invited_admin_id={admin.id}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Register a tenant and optionally invite its first admin.")
    parser.add_argument("subdomain")
    parser.add_argument("--name", required=True)
    parser.add_argument("--business-type")
    parser.add_argument("--admin-email")
    args = parser.parse_args()
    asyncio.run(
        run(
            subdomain=args.subdomain,
            name=args.name,
            business_type=args.business_type,
            admin_email=args.admin_email,
        )
    )


if __name__ == "__main__":
    main()
