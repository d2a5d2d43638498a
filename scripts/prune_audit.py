from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone

from tenantgate.persistence.db import SessionLocal
from tenantgate.services.audit.retention import purge_expired_events


async def prune(now: datetime | None) -> None:
    async with SessionLocal() as session:
        deleted = await purge_expired_events(session, now=now)
        await session.commit()
    for category, count in sorted(deleted.items()):
        print(f"pruned_audit_events category={category} count={count}")
    print(f"pruned_audit_events_total={sum(deleted.values())}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Delete audit events past their retention window.")
    parser.add_argument("--as-of", help="ISO timestamp to evaluate retention against (default: now)")
    args = parser.parse_args()
    now = None
    if args.as_of:
        now = datetime.fromisoformat(args.as_of)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
    asyncio.run(prune(now))


if __name__ == "__main__":
    main()
