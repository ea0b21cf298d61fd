"""
Run the stage backfill from a scheduler without going through HTTP.

Usage:
  python -m scripts.run_backfill            # all active jobs
  python -m scripts.run_backfill <job_id>   # one job
"""
from __future__ import annotations

import asyncio
import logging
import sys

from app.config import settings
from app.db import close_db_pool, init_db_pool
from app.stages.backfill import backfill
from app.stages.store import PostgresStageStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


async def main(job_id: str | None) -> int:
    pool = await init_db_pool()
    try:
        async with pool.acquire() as conn:
            report = await backfill(
                PostgresStageStore(conn), job_id, max_jobs=settings.backfill_max_jobs
            )
    finally:
        await close_db_pool()

    logger.info(
        "Backfill done: processed=%d updated=%d steps=%d errors=%d truncated=%s",
        report.jobs_processed,
        report.jobs_updated,
        report.total_steps_completed,
        len(report.errors),
        report.truncated,
    )
    for err in report.errors:
        logger.error("  %s", err)
    return 1 if report.errors else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else None)))
