from __future__ import annotations

import argparse
import asyncio

from storescorer.core.logging import configure_logging
from storescorer.persistence.db import dispose_engine
from storescorer.services.maintenance import sweep_jobs


async def run(max_jobs: int | None, lock_timeout_minutes: int | None) -> None:
    # Run a single sweep out of band, e.g. from a platform cron or by hand.
    try:
        result = await sweep_jobs(max_jobs=max_jobs, lock_timeout_minutes=lock_timeout_minutes)
    finally:
        await dispose_engine()
    print(
        f"processed={result.processed} failed={result.failed} skipped={result.skipped} "
        f"retried={result.retried} exhausted={result.exhausted}"
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Process pending audit jobs once.")
    parser.add_argument("--max-jobs", type=int, default=None)
    parser.add_argument("--lock-timeout-minutes", type=int, default=None)
    args = parser.parse_args()
    configure_logging()
    asyncio.run(run(args.max_jobs, args.lock_timeout_minutes))


if __name__ == "__main__":
    main()
