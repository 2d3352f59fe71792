#!/usr/bin/env python3
"""Rebuild every daily health score from the stored per-device records.

Usage:
    python scripts/backfill_daily_scores.py
    python scripts/backfill_daily_scores.py --checkpoint-file backfill.json --max-concurrent 8

With ``--checkpoint-file`` the job resumes after the pair recorded in the
file and writes its own checkpoint back on exit.  Ctrl-C stops the job
between chunks.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

from healthscore.config import get_settings
from healthscore.enrichment.aggregator import DailyAggregator
from healthscore.enrichment.backfill import BackfillCheckpoint, BackfillJob
from healthscore.enrichment.repository import (
    PostgresDailyScoreRepository,
    PostgresEnrichmentRepository,
)
from healthscore.services.connections import PostgresConnectionDirectory
from healthscore.services.database import Database

logger = logging.getLogger("healthscore.scripts.backfill")


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--checkpoint-file", type=Path, default=None)
    parser.add_argument("--max-concurrent", type=int, default=None)
    return parser.parse_args(argv)


async def main(argv: list[str]) -> int:
    args = _parse_args(argv)
    settings = get_settings()

    checkpoint = None
    if args.checkpoint_file and args.checkpoint_file.exists():
        checkpoint = BackfillCheckpoint.from_json(json.loads(args.checkpoint_file.read_text()))

    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, cancel.set)

    db = Database.from_settings(settings)
    await db.open()
    try:
        enrichment_repo = PostgresEnrichmentRepository(db)
        aggregator = DailyAggregator(
            PostgresConnectionDirectory(db),
            enrichment_repo,
            PostgresDailyScoreRepository(db),
            lock=db.advisory_lock if settings.aggregation_advisory_lock else None,
        )
        job = BackfillJob(
            enrichment_repo,
            aggregator,
            max_concurrent=args.max_concurrent or settings.backfill_max_concurrent,
        )

        summary = None
        async for progress in job.iter_progress(cancel, checkpoint):
            logger.info(
                "Backfill %.1f%% (%d/%d, %d failed)",
                progress.pct_complete, progress.processed, progress.total, progress.failed,
            )
            if args.checkpoint_file:
                args.checkpoint_file.write_text(json.dumps(progress.checkpoint.to_json()))
            summary = progress
    finally:
        await db.close()

    for failure in summary.failures:
        logger.warning("Failed: %s %s: %s", failure.user_id, failure.score_date, failure.error)
    logger.info(
        "Backfill %s: %d processed, %d written, %d failed",
        "cancelled" if summary.cancelled else "complete",
        summary.processed, summary.written, summary.failed,
    )
    return 1 if summary.failed or summary.cancelled else 0


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )
    sys.exit(asyncio.run(main(sys.argv[1:])))
