"""
Reconciliation of denormalized vote aggregates.

Every post's category counts are recomputed from the votes table and
compared with the stored aggregate. Posts that drifted (for example after
a manual data fix or a partially applied migration) are rewritten, and
each run is logged to ``reconciliation_runs``.
"""

import logging
import time
from datetime import datetime, UTC
from typing import Dict, List

import pandas as pd

from community_votes.database import ReconciliationRun
from community_votes.models import VoteCategory
from community_votes.store import SqlAlchemyStore


logger = logging.getLogger(__name__)

CATEGORY_FIELDS = [category.value for category in VoteCategory]


class ReconciliationService:
    """
    Recomputes post aggregates from individual votes.

    - Loads votes and stored aggregates as DataFrames
    - Counts votes per post and category
    - Rewrites the posts whose stored counts differ
    """

    def __init__(self, store: SqlAlchemyStore):
        self.store = store

    def run(self) -> Dict:
        """
        Run one reconciliation pass.

        Returns:
            Dictionary with run results
        """
        start_time = time.time()

        with self.store.session_scope() as session:
            run = ReconciliationRun(started_at=datetime.now(UTC))
            session.add(run)
            session.commit()
            run_id = run.id

        try:
            stored_df = pd.DataFrame(
                self.store.aggregate_rows(),
                columns=["post_id", *CATEGORY_FIELDS, "total"],
            )
            if stored_df.empty:
                logger.info("No posts to reconcile")
                return self._finalize_run(run_id, 0, 0, start_time, [])

            votes_df = pd.DataFrame(self.store.vote_rows(), columns=["post_id", "category"])
            recomputed_df = self._count_votes(votes_df)
            drifted = self._find_drift(stored_df, recomputed_df)

            # The snapshots only pick candidates; votes written since are
            # picked up by the recount, which reads the votes table itself.
            errors: List[str] = []
            corrected = 0
            for post_id in drifted["post_id"].tolist():
                try:
                    aggregate = self.store.recount_aggregate(post_id)
                except Exception as e:
                    logger.exception(f"Failed to correct post {post_id}")
                    errors.append(f"post {post_id}: {e}")
                    continue
                if aggregate is None:
                    logger.debug(f"Post {post_id} was consistent on recount")
                    continue
                corrected += 1
                summary = ", ".join(f"{c.value}={n}" for c, n in aggregate.counts().items())
                logger.warning(f"Corrected aggregate for post {post_id}: {summary}")

            return self._finalize_run(run_id, len(stored_df), corrected, start_time, errors)

        except Exception as e:
            logger.exception("Error during reconciliation")
            with self.store.session_scope() as session:
                run = session.get(ReconciliationRun, run_id)
                run.success = False
                run.error_message = str(e)
                run.completed_at = datetime.now(UTC)
                session.commit()
            raise

    def _count_votes(self, votes_df: pd.DataFrame) -> pd.DataFrame:
        """Votes per post, one column per category."""
        if votes_df.empty:
            return pd.DataFrame(
                {column: pd.Series(dtype="int64") for column in ["post_id", *CATEGORY_FIELDS]}
            )
        counts = (
            votes_df.groupby(["post_id", "category"])
            .size()
            .unstack(fill_value=0)
            .reindex(columns=CATEGORY_FIELDS, fill_value=0)
            .reset_index()
        )
        counts.columns.name = None
        return counts

    def _find_drift(self, stored_df: pd.DataFrame, recomputed_df: pd.DataFrame) -> pd.DataFrame:
        """Posts whose stored counts or total differ from the votes table."""
        merged = stored_df.merge(
            recomputed_df, on="post_id", how="left", suffixes=("", "_actual")
        )
        for field in CATEGORY_FIELDS:
            merged[f"{field}_actual"] = merged[f"{field}_actual"].fillna(0).astype(int)
        merged["total_actual"] = merged[[f"{f}_actual" for f in CATEGORY_FIELDS]].sum(axis=1)

        mismatch = merged["total"] != merged["total_actual"]
        for field in CATEGORY_FIELDS:
            mismatch |= merged[field] != merged[f"{field}_actual"]
        return merged[mismatch]

    def _finalize_run(
        self,
        run_id: int,
        posts_checked: int,
        posts_corrected: int,
        start_time: float,
        errors: List[str]
    ) -> Dict:
        """Finalize and log the run."""
        duration = time.time() - start_time
        now = datetime.now(UTC)

        with self.store.session_scope() as session:
            run = session.get(ReconciliationRun, run_id)
            run.completed_at = now
            run.posts_checked = posts_checked
            run.posts_corrected = posts_corrected
            run.duration_seconds = duration
            run.success = len(errors) == 0
            if errors:
                run.error_message = "; ".join(errors)
            session.commit()

        logger.info(
            f"Reconciliation complete: {posts_checked} posts checked, "
            f"{posts_corrected} corrected in {duration:.2f}s"
        )

        return {
            "success": len(errors) == 0,
            "posts_checked": posts_checked,
            "posts_corrected": posts_corrected,
            "duration_seconds": duration,
            "errors": errors,
            "completed_at": now.isoformat()
        }
