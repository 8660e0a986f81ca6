from __future__ import annotations

import asyncio

from cvrelay.persistence.db import SessionLocal
from cvrelay.services.maintenance import run_maintenance


async def prune() -> None:
    # Same retention pass the scheduler runs daily.
    async with SessionLocal() as session:
        results = await run_maintenance(session)
    for task, deleted in results.items():
        print(f"{task}={deleted}")


if __name__ == "__main__":
    asyncio.run(prune())
