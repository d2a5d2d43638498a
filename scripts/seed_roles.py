from __future__ import annotations

import argparse
import asyncio

from tenantgate.persistence.db import SessionLocal, create_schema, engine
from tenantgate.services.container import CoreServices


async def seed(create_tables: bool) -> None:
    if create_tables:
        await create_schema(engine)
    services = CoreServices.build(SessionLocal)
    created = await services.roles.ensure_system_roles()
    await services.audit.flush()
    print(f"system_roles_created={created}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed the built-in roles and their permissions.")
    parser.add_argument("--create-tables", action="store_true", help="Create missing tables first")
    args = parser.parse_args()
    asyncio.run(seed(args.create_tables))


if __name__ == "__main__":
    main()
