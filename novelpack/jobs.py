"""Download jobs: submission, execution and status queries.

A job is one user's request for one work in one output format. Its row
moves ``pending -> downloading -> completed | failed``; every move is
also appended to ``job_events``. A failed job keeps its error message
until it is resubmitted, which puts it back to ``pending``.

``JobRunner.run_job`` drives a job end to end:

1. fetch the work detail (a degraded detail fails the job),
2. fetch and merge the unit listing (a listing failure fails the job),
3. acquire every unit through the shared cache and the fetcher,
   publishing progress after each one,
4. package the units, hand the file to the sink and complete the job.

Problems with individual units never fail a job; they show up as
not-subscribed or failed units inside a completed artifact.
"""

from __future__ import annotations

import logging
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from . import config, db
from .cache import UnitCache
from .coordinator import acquire_units, fetch_unit_listing
from .errors import AcquisitionError, FetchError, JobStateError, NovelpackError
from .fetcher import RemoteFetcher, validate_id
from .models import Artifact, Job, JobStatus, OutputFormat, Platform, UnitOutcome
from .packager import package
from .progress import ProgressHub
from .sink import ArtifactSink, NullSink

logger = logging.getLogger(__name__)

FetcherFactory = Callable[[Platform, Optional[str]], RemoteFetcher]


def job_from_row(row: Dict[str, Any]) -> Job:
    return Job(
        id=row["id"],
        user_id=row["user_id"],
        work_id=row["work_id"],
        platform=Platform(row["platform"]),
        format=OutputFormat(row["format"]),
        status=JobStatus(row["status"]),
        progress=row.get("progress") or 0,
        total_units=row.get("total_units") or 0,
        title=row.get("title") or "",
        author=row.get("author") or "",
        file_path=row.get("file_path"),
        file_size=row.get("file_size"),
        duration=row.get("duration"),
        sink_path=row.get("sink_path"),
        error=row.get("error"),
        created_at=row.get("created_at"),
        started_at=row.get("started_at"),
        completed_at=row.get("completed_at"),
    )


class JobRunner:
    """Owns the collaborators a job needs and runs jobs with them."""

    def __init__(
        self,
        *,
        fetcher_factory: FetcherFactory = RemoteFetcher,
        cache: Optional[UnitCache] = None,
        hub: Optional[ProgressHub] = None,
        sink: Optional[ArtifactSink] = None,
        output_dir: Optional[str] = None,
        concurrency: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> None:
        self.fetcher_factory = fetcher_factory
        self.cache = cache if cache is not None else UnitCache()
        self.hub = hub if hub is not None else ProgressHub()
        self.sink = sink if sink is not None else NullSink()
        self.output_dir = output_dir or config.OUTPUT_DIR
        self.concurrency = concurrency or config.CONCURRENCY
        self.page_size = page_size or config.PAGE_SIZE

    # -- queries and submission ----------------------------------------

    def submit_job(self, user_id: str, work_id: str, fmt: str,
                   platform: str = Platform.PO18.value) -> str:
        """Record a pending job and return its id.

        Raises ``ValueError`` for an unknown format or platform and
        ``TerminalFetchError`` for a malformed work id.
        """
        output_format = OutputFormat(fmt)
        platform_tag = Platform(platform)
        work_id = validate_id(work_id)
        job_id = str(uuid.uuid4())
        db.insert_job({
            "id": job_id,
            "user_id": str(user_id),
            "work_id": work_id,
            "platform": platform_tag.value,
            "format": output_format.value,
            "status": JobStatus.PENDING.value,
            "progress": 0,
            "total_units": 0,
        })
        logger.info("Job %s submitted: user %s, work %s, %s", job_id, user_id, work_id, output_format.value)
        return job_id

    def get_job_status(self, job_id: str) -> Optional[Job]:
        row = db.get_job(job_id)
        return job_from_row(row) if row else None

    def list_jobs(self, user_id: str) -> List[Job]:
        return [job_from_row(row) for row in db.get_jobs_for_user(str(user_id))]

    def clear_finished(self, user_id: str) -> int:
        """Delete the user's finished jobs and drop their progress snapshots."""
        finished = [job.id for job in self.list_jobs(user_id)
                    if job.status in (JobStatus.COMPLETED, JobStatus.FAILED)]
        deleted = db.delete_finished_jobs(str(user_id))
        for job_id in finished:
            self.hub.forget(job_id)
        return deleted

    def get_finished_artifact(self, job_id: str) -> Optional[Artifact]:
        """Return the finished file of a completed job, if it still exists."""
        job = self.get_job_status(job_id)
        if job is None or job.status is not JobStatus.COMPLETED or not job.file_path:
            return None
        path = Path(job.file_path)
        if not path.exists():
            return None
        return Artifact(path=str(path), size_bytes=path.stat().st_size)

    def resubmit_job(self, job_id: str) -> Job:
        """Put a finished job back to ``pending`` and clear its error."""
        job = self.get_job_status(job_id)
        if job is None:
            raise KeyError(job_id)
        if job.status not in (JobStatus.COMPLETED, JobStatus.FAILED):
            raise JobStateError(f"Job {job_id} is {job.status.value} and cannot be resubmitted")
        db.reset_job(job_id)
        self.hub.forget(job_id)
        db.transition_job(job_id, job.status.value, JobStatus.PENDING.value, "resubmitted")
        return self.get_job_status(job_id)  # type: ignore[return-value]

    # -- execution -----------------------------------------------------

    def _fail(self, job_id: str, message: str) -> None:
        logger.warning("Job %s failed: %s", job_id, message)
        db.transition_job(job_id, JobStatus.DOWNLOADING.value, JobStatus.FAILED.value, message, error=message)
        self.hub.publish(job_id, {"type": "error", "error": message})

    async def run_job(self, job_id: str, cookie: Optional[str] = None) -> Job:
        """Execute a pending job and return its final record.

        ``cookie`` is the owner's session cookie for the platform; it is
        passed to the fetcher and never stored.
        """
        job = self.get_job_status(job_id)
        if job is None:
            raise KeyError(job_id)
        if job.status is not JobStatus.PENDING:
            raise JobStateError(f"Job {job_id} is {job.status.value}, expected pending")

        db.transition_job(job_id, JobStatus.PENDING.value, JobStatus.DOWNLOADING.value, "started")
        try:
            return await self._execute(job, cookie)
        except Exception as exc:
            # A job never stays ``downloading`` once its task has ended.
            logger.exception("Job %s crashed", job_id)
            self._fail(job_id, f"Unexpected error: {exc.__class__.__name__}: {exc}")
            return self.get_job_status(job_id)  # type: ignore[return-value]

    async def _execute(self, job: Job, cookie: Optional[str]) -> Job:
        job_id = job.id
        started = time.monotonic()
        fetcher = self.fetcher_factory(job.platform, cookie)

        try:
            work = await fetcher.fetch_work_detail(job.work_id)
            if work.is_degraded:
                raise AcquisitionError(f"Failed to fetch work details: {work.error}")
            units = await fetch_unit_listing(fetcher, job.work_id, work.unit_count, self.page_size)
            if not units:
                raise AcquisitionError("No units are listed for this work")
        except (AcquisitionError, FetchError) as exc:
            self._fail(job_id, str(exc))
            return self.get_job_status(job_id)  # type: ignore[return-value]

        total = len(units)
        db.update_job(job_id, total_units=total, title=work.title, author=work.author)
        self.hub.publish(job_id, {"type": "start", "title": work.title, "total": total})

        def on_progress(completed: int, total_units: int) -> None:
            db.update_job(job_id, progress=completed)
            self.hub.on_progress(job_id, completed, total_units)

        acquired = await acquire_units(units, fetcher, self.cache, concurrency=self.concurrency,
                                       on_progress=on_progress)

        try:
            artifact = await package(work, acquired, job.format, self.output_dir, fetcher.fetch_image)
        except (OSError, ValueError, NovelpackError) as exc:
            self._fail(job_id, f"Packaging failed: {exc}")
            return self.get_job_status(job_id)  # type: ignore[return-value]

        sink_path: Optional[str] = None
        try:
            sink_path = await self.sink.store(artifact.path, work)
        except Exception:
            # Sink errors never fail a job.
            logger.exception("Sink rejected %s for job %s", artifact.path, job_id)

        failed = sum(1 for unit in acquired if unit.outcome is UnitOutcome.FAILED)
        not_subscribed = sum(1 for unit in acquired if unit.outcome is UnitOutcome.NOT_SUBSCRIBED)
        duration = round(time.monotonic() - started, 3)
        db.transition_job(
            job_id,
            JobStatus.DOWNLOADING.value,
            JobStatus.COMPLETED.value,
            f"{total} units, {failed} failed, {not_subscribed} not subscribed",
            progress=total,
            file_path=artifact.path,
            file_size=artifact.size_bytes,
            duration=duration,
            sink_path=sink_path,
        )
        self.hub.publish(job_id, {
            "type": "completed",
            "file_name": Path(artifact.path).name,
            "size_bytes": artifact.size_bytes,
            "total": total,
            "failed": failed,
            "not_subscribed": not_subscribed,
        })
        logger.info("Job %s completed in %.1fs: %s (%d bytes)", job_id, duration, artifact.path,
                    artifact.size_bytes)
        return self.get_job_status(job_id)  # type: ignore[return-value]
