"""Job ledger bookkeeping for one pipeline run.

A JobTracker owns the in-memory copy of a job's errors, batch ids and
statistics and writes them to the record store at the points that matter
for crash recovery: batch ids as soon as they exist, progress while
waiting, and the final counts when the job is sealed.
"""

import time
from typing import Any

import logfire

from sitecorpus.constants import BATCH_PROGRESS_LOG_SECONDS
from sitecorpus.db.store import RecordStore
from sitecorpus.models.fetch_models import BatchStatus
from sitecorpus.models.website_models import (
    Job,
    JobCreate,
    JobError,
    JobStatus,
    JobUpdate,
    utc_now,
)


class JobTracker:
    """Accumulates a job's audit trail and seals it exactly once."""

    def __init__(
        self,
        store: RecordStore,
        job: Job,
        progress_interval: float = BATCH_PROGRESS_LOG_SECONDS,
    ):
        self._store = store
        self.job = job
        self.errors: list[JobError] = list(job.errors)
        self.batch_ids: list[str] = list(job.batch_ids)
        self.metadata: dict[str, Any] = dict(job.metadata)
        self._progress_interval = progress_interval
        self._last_progress: float | None = None
        self._sealed = False

    @classmethod
    def open(
        cls,
        store: RecordStore,
        data: JobCreate,
        progress_interval: float = BATCH_PROGRESS_LOG_SECONDS,
    ) -> "JobTracker":
        """Create the job row and start tracking it."""
        job = store.create_job(data)
        logfire.info(
            "Job started",
            job_id=job.id,
            website_id=job.website_id,
            job_type=job.job_type.value,
            capture_mode=job.capture_mode.value if job.capture_mode else None,
            parent_job_id=job.parent_job_id,
        )
        return cls(store, job, progress_interval)

    @property
    def id(self) -> str:
        return self.job.id

    @property
    def sealed(self) -> bool:
        return self._sealed

    def record_error(
        self,
        error: str,
        url: str | None = None,
        stage: str | None = None,
    ) -> JobError:
        entry = JobError(error=error, url=url, stage=stage)
        self.errors.append(entry)
        logfire.warning(
            "Job error recorded",
            job_id=self.id,
            url=url,
            stage=stage,
            error=error,
        )
        return entry

    def record_discovered(self, count: int) -> None:
        self._store.update_job(self.id, JobUpdate(urls_discovered=count))

    def record_batch(self, batch_id: str) -> None:
        """Persist a batch id immediately so a crashed run can be recovered."""
        self.batch_ids.append(batch_id)
        self._store.update_job(self.id, JobUpdate(batch_ids=list(self.batch_ids)))

    def record_progress(self, status: BatchStatus, force: bool = False) -> None:
        """Write batch progress to job metadata, at most once per interval."""
        now = time.monotonic()
        if (
            not force
            and self._last_progress is not None
            and now - self._last_progress < self._progress_interval
        ):
            return
        self._last_progress = now
        self.metadata["progress"] = {
            "batch_id": status.batch_id,
            "status": status.status,
            "completed": status.completed,
            "total": status.total,
            "updated_at": utc_now().isoformat(),
        }
        self._store.update_job(self.id, JobUpdate(metadata=dict(self.metadata)))
        logfire.info(
            "Batch progress",
            job_id=self.id,
            batch_id=status.batch_id,
            completed=status.completed,
            total=status.total,
        )

    async def on_batch_progress(self, status: BatchStatus) -> None:
        """Progress callback for ContentFetcher.await_batch."""
        self.record_progress(status)

    def seal(
        self,
        discovered: int,
        updated: int,
        deleted: int = 0,
        errored: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Mark the job completed with its final counts."""
        self._finish(JobStatus.COMPLETED, discovered, updated, deleted, errored, metadata)

    def fail(
        self,
        exception: BaseException,
        discovered: int = 0,
        updated: int = 0,
        deleted: int = 0,
        stage: str | None = None,
    ) -> None:
        """Mark the job failed, recording the exception as its last error."""
        self.record_error(f"{type(exception).__name__}: {exception}", stage=stage)
        self._finish(JobStatus.FAILED, discovered, updated, deleted, None, None)

    def _finish(
        self,
        status: JobStatus,
        discovered: int,
        updated: int,
        deleted: int,
        errored: int | None,
        metadata: dict[str, Any] | None,
    ) -> None:
        if self._sealed:
            return
        if metadata:
            self.metadata.update(metadata)
        self.metadata.pop("progress", None)
        errored = len(self.errors) if errored is None else errored

        self._store.update_job(
            self.id,
            JobUpdate(
                status=status,
                completed_at=utc_now(),
                urls_discovered=discovered,
                urls_updated=updated,
                urls_deleted=deleted,
                urls_errored=errored,
                batch_ids=list(self.batch_ids),
                errors=list(self.errors),
                metadata=dict(self.metadata),
            ),
        )
        self._sealed = True
        log = logfire.info if status == JobStatus.COMPLETED else logfire.error
        log(
            "Job sealed",
            job_id=self.id,
            website_id=self.job.website_id,
            status=status.value,
            urls_discovered=discovered,
            urls_updated=updated,
            urls_deleted=deleted,
            urls_errored=errored,
        )
