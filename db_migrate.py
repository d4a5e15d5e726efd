from __future__ import annotations

"""Manual DB migration helper."""

import asyncio

from timecapsule.db import DB_PATH, migrate_db


async def migrate() -> None:
    applied = await migrate_db()
    for stmt in applied:
        print(stmt)
    print(f"{len(applied)} migration(s) applied to {DB_PATH}")


if __name__ == "__main__":
    asyncio.run(migrate())
