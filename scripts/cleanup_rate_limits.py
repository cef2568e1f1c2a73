from __future__ import annotations

import argparse
import asyncio

from storescorer.persistence.db import dispose_engine
from storescorer.services.maintenance import cleanup_rate_limits


async def prune(older_than_hours: int | None) -> None:
    # Remove aged rate-limit events to keep storage bounded.
    try:
        deleted = await cleanup_rate_limits(older_than_hours=older_than_hours)
    finally:
        await dispose_engine()
    print(f"pruned_rate_limit_events={deleted}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Delete rate-limit events past retention.")
    parser.add_argument("--older-than-hours", type=int, default=None)
    args = parser.parse_args()
    asyncio.run(prune(args.older_than_hours))
