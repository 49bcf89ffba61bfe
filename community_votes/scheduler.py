"""
Scheduler for periodic aggregate reconciliation.

This module provides a background scheduler that periodically recomputes
post vote aggregates from the votes table and drops cached reads when any
aggregate had to be corrected.
"""

import asyncio
import logging
from datetime import datetime, UTC
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from starlette.concurrency import run_in_threadpool

from community_votes.engine import VoteEngine
from community_votes.reconciliation_service import ReconciliationService


logger = logging.getLogger(__name__)

JOB_ID = "aggregate_reconciliation"


class ReconciliationScheduler:
    """
    Scheduler for periodic reconciliation runs.

    Owned by the application lifespan alongside the engine whose cache it
    invalidates.
    """

    def __init__(
        self,
        service: ReconciliationService,
        engine: VoteEngine,
        interval_minutes: Optional[int] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            service: Reconciliation service to run
            engine: Engine whose read cache is dropped after corrections
            interval_minutes: Run interval (default from engine settings)
        """
        self.service = service
        self.engine = engine
        self.interval_minutes = interval_minutes or engine.settings.reconcile_interval_minutes
        self.scheduler = AsyncIOScheduler()
        self._is_running = False
        self._last_run: Optional[datetime] = None
        self._last_result: Optional[dict] = None

    async def run_reconciliation(self) -> Optional[dict]:
        """
        Run a reconciliation pass.

        This is called by the scheduler at each interval. Failures are
        logged and returned as ``{"success": False, "error": ...}``; returns
        None when a pass is already in progress.
        """
        if self._is_running:
            logger.warning("Reconciliation already in progress, skipping this iteration")
            return None

        self._is_running = True
        start_time = datetime.now(UTC)

        try:
            logger.info(f"Starting reconciliation run at {start_time.isoformat()}")

            result = await run_in_threadpool(self.service.run)
            if result["posts_corrected"]:
                self.engine.invalidate_reads()

            self._last_run = datetime.now(UTC)
            self._last_result = result
            return result

        except Exception as e:
            logger.exception(f"Error in scheduled reconciliation: {e}")
            self._last_result = {"success": False, "error": str(e)}
            return self._last_result
        finally:
            self._is_running = False

    def start(self):
        """Start the scheduler."""
        if self.scheduler.running:
            logger.warning("Scheduler already running")
            return

        self.scheduler.add_job(
            self.run_reconciliation,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id=JOB_ID,
            name="Aggregate Reconciliation",
            replace_existing=True,
            max_instances=1,  # Prevent overlapping runs
        )

        self.scheduler.start()
        logger.info(
            f"Reconciliation scheduler started - running every {self.interval_minutes} minutes"
        )

    def stop(self):
        """Stop the scheduler."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Reconciliation scheduler stopped")

    @property
    def last_run(self) -> Optional[datetime]:
        return self._last_run

    def get_status(self) -> dict:
        """Get scheduler status."""
        return {
            "running": self.scheduler.running,
            "interval_minutes": self.interval_minutes,
            "last_run": self._last_run.isoformat() if self._last_run else None,
            "last_result": self._last_result,
            "is_reconciling": self._is_running,
            "next_run": self._get_next_run_time(),
        }

    def _get_next_run_time(self) -> Optional[str]:
        """Get the next scheduled run time."""
        if not self.scheduler.running:
            return None

        job = self.scheduler.get_job(JOB_ID)
        if job and job.next_run_time:
            return job.next_run_time.isoformat()
        return None


# CLI entry point for a one-off reconciliation
if __name__ == "__main__":
    import argparse

    from community_votes.config import get_settings
    from community_votes.database import create_db_engine, init_db, make_session_factory
    from community_votes.store import SqlAlchemyStore

    parser = argparse.ArgumentParser(description="Vote Aggregate Reconciliation")
    parser.add_argument(
        "--database-url",
        default=None,
        help="Database URL (default from settings)"
    )
    args = parser.parse_args()

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    db_engine = create_db_engine(args.database_url or settings.database_url)
    init_db(db_engine)
    store = SqlAlchemyStore(make_session_factory(db_engine))
    scheduler = ReconciliationScheduler(ReconciliationService(store), VoteEngine(store, settings))
    result = asyncio.run(scheduler.run_reconciliation())
    print(f"Reconciliation complete: {result}")
