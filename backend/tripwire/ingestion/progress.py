"""Combined ingestion + vectorization progress for pollers.

Loading a file is reported by the run itself (batch callbacks write
``progress_*`` columns). Once the run links a vectorization job, the
job's own progress is folded in: ingestion accounts for the first 70%
and vectorization for the remaining 30%, so a finished load does not sit
at 100% while embeddings are still being computed.

Progress polling never fails because of the job service: any error there
falls back to the ingestion-only view.
"""

from __future__ import annotations

import logging
import math
from typing import Any

from tripwire.db.models import IngestionProgress
from tripwire.db.repositories import IngestionRunRepo
from tripwire.jobs.client import JobServiceClient, JobServiceError

logger = logging.getLogger(__name__)

INGESTION_SHARE = 70
VECTORIZATION_SHARE = 30

# Phase reported for a run whose progress_phase was never written.
_STATUS_PHASES = {
    "pending": "idle",
    "running": "initializing",
    "completed": "completed",
    "failed": "failed",
}


def round_half_up(value: float) -> int:
    """Round .5 away from zero for non-negative values (2.5 -> 3)."""
    return int(math.floor(value + 0.5))


def clamp_percentage(value: float) -> int:
    return max(0, min(100, round_half_up(value)))


class ProgressAggregator:
    """Builds the progress snapshot of an ingestion run.

    Parameters
    ----------
    runs : IngestionRunRepo
        Source of the run's stored progress fields.
    jobs : JobServiceClient | None
        Job service used to read vectorization progress. When None, only
        the ingestion progress is reported.
    """

    def __init__(self, runs: IngestionRunRepo, jobs: JobServiceClient | None = None) -> None:
        self._runs = runs
        self._jobs = jobs

    async def get_progress(self, run_id: int) -> IngestionProgress:
        """Progress of *run_id*.

        Raises
        ------
        RunNotFoundError
            If the run does not exist.
        """
        run = self._runs.require(run_id)
        progress = self._ingestion_progress(run)

        job_id = run.get("vectorize_job_id")
        if not job_id or self._jobs is None:
            return progress
        return await self._merge_vectorization(progress, job_id)

    @staticmethod
    def _ingestion_progress(run: dict[str, Any]) -> IngestionProgress:
        phase = run.get("progress_phase") or _STATUS_PHASES.get(run["status"], "idle")
        return IngestionProgress(
            phase=phase,
            records_processed=run.get("progress_records_processed") or 0,
            total_records_estimate=run.get("progress_total_estimate") or 0,
            percentage=clamp_percentage(run.get("progress_percentage") or 0),
            current_batch=run.get("progress_current_batch") or 0,
            updated_at=run.get("progress_updated_at") or run.get("updated_at"),
        )

    async def _merge_vectorization(
        self, progress: IngestionProgress, job_id: str
    ) -> IngestionProgress:
        assert self._jobs is not None
        try:
            thread = await self._jobs.get_thread(job_id)
        except JobServiceError as exc:
            logger.info("Vectorization status unavailable for job %s: %s", job_id, exc)
            return progress

        if thread.status == "RUNNING":
            return progress.model_copy(update={
                "phase": thread.phase or "vectorizing",
                "percentage": clamp_percentage(
                    INGESTION_SHARE + round_half_up(thread.progress * VECTORIZATION_SHARE / 100)
                ),
            })
        if thread.status == "COMPLETED":
            return progress.model_copy(update={"phase": "completed", "percentage": 100})
        if thread.status == "FAILED":
            return progress.model_copy(update={"phase": "vectorize_failed"})
        return progress
