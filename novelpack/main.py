"""FastAPI application exposing the download pipeline.

Jobs are submitted with ``POST /jobs`` and executed in the background
via FastAPI's ``BackgroundTasks``; clients poll ``GET /jobs/{id}`` or
stream ``GET /jobs/{id}/events`` (server-sent events) for progress and
fetch the finished file from ``GET /jobs/{id}/artifact``.

Authentication and rate limiting are handled in front of this
application: the ``user_id`` in a request is trusted as given, and the
platform session cookie, when supplied, is used for that job only.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any, AsyncIterator, Dict

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request, Response
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse

from . import config, db
from .errors import CacheError, JobStateError, TerminalFetchError
from .fetcher import RemoteFetcher
from .jobs import JobRunner
from .models import JobStatus, Platform
from .sink import DirectorySink, NullSink

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="novelpack")

runner = JobRunner(sink=DirectorySink(config.SINK_DIR) if config.SINK_DIR else NullSink())

# Seconds between keep-alive comments on an idle event stream.
EVENT_KEEPALIVE = 15.0


@app.on_event("startup")
async def on_startup() -> None:
    """Initialise the database on startup."""
    db.init_db()


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be JSON")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return data


def _job_or_404(job_id: str):
    job = runner.get_job_status(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@app.post("/jobs")
async def submit_job_endpoint(request: Request, background_tasks: BackgroundTasks) -> Response:
    """Submit a download job and start it in the background.

    The payload must contain ``user_id``, ``work_id`` and ``format``
    (``txt``, ``html`` or ``epub``); ``platform`` defaults to ``po18``
    and ``cookie`` optionally carries the user's platform session.
    """
    data = await _json_body(request)
    user_id = data.get("user_id")
    work_id = data.get("work_id")
    if not user_id or not work_id:
        raise HTTPException(status_code=400, detail="Missing 'user_id' or 'work_id' in request body")
    try:
        job_id = runner.submit_job(str(user_id), str(work_id), data.get("format", "txt"),
                                   data.get("platform", Platform.PO18.value))
    except (ValueError, TerminalFetchError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    background_tasks.add_task(runner.run_job, job_id, data.get("cookie"))
    return JSONResponse({"job_id": job_id}, status_code=202)


@app.get("/jobs/{job_id}")
async def job_status(job_id: str) -> Response:
    job = _job_or_404(job_id)
    payload = job.to_dict()
    payload["live"] = runner.hub.latest(job_id)
    return JSONResponse(payload)


@app.post("/jobs/{job_id}/retry")
async def retry_job(job_id: str, request: Request, background_tasks: BackgroundTasks) -> Response:
    """Resubmit a completed or failed job and run it again."""
    _job_or_404(job_id)
    data: Dict[str, Any] = {}
    if await request.body():
        data = await _json_body(request)
    try:
        job = runner.resubmit_job(job_id)
    except JobStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    background_tasks.add_task(runner.run_job, job_id, data.get("cookie"))
    return JSONResponse(job.to_dict(), status_code=202)


async def _event_stream(job_id: str) -> AsyncIterator[str]:
    queue = runner.hub.subscribe(job_id)
    try:
        yield f"data: {json.dumps({'type': 'connected', 'job_id': job_id})}\n\n"
        latest = runner.hub.latest(job_id)
        if latest:
            yield f"data: {json.dumps(latest)}\n\n"
        while True:
            job = runner.get_job_status(job_id)
            if job is None or job.status in (JobStatus.COMPLETED, JobStatus.FAILED):
                if job is not None:
                    yield f"data: {json.dumps({'type': 'status', 'status': job.status.value})}\n\n"
                return
            try:
                event = await asyncio.wait_for(queue.get(), timeout=EVENT_KEEPALIVE)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            yield f"data: {json.dumps(event)}\n\n"
            if event.get("type") in ("completed", "error"):
                return
    finally:
        runner.hub.unsubscribe(job_id, queue)


@app.get("/jobs/{job_id}/events")
async def job_events(job_id: str) -> StreamingResponse:
    """Stream progress of a job as server-sent events."""
    _job_or_404(job_id)
    headers = {"Cache-Control": "no-cache", "Connection": "keep-alive"}
    return StreamingResponse(_event_stream(job_id), media_type="text/event-stream", headers=headers)


@app.get("/jobs/{job_id}/artifact")
async def download_artifact(job_id: str) -> Response:
    """Download the packaged file of a completed job."""
    _job_or_404(job_id)
    artifact = runner.get_finished_artifact(job_id)
    if not artifact:
        raise HTTPException(status_code=404, detail="Artifact not available")
    return FileResponse(artifact.path, filename=Path(artifact.path).name,
                        headers={"X-Artifact-Size": str(artifact.size_bytes)})


@app.get("/users/{user_id}/jobs")
async def list_user_jobs(user_id: str) -> Response:
    return JSONResponse({"jobs": [job.to_dict() for job in runner.list_jobs(user_id)]})


@app.delete("/users/{user_id}/jobs")
async def clear_user_jobs(user_id: str) -> Response:
    """Delete the user's completed and failed jobs."""
    return JSONResponse({"deleted": runner.clear_finished(user_id)})


@app.get("/works/{platform}/{work_id}")
async def work_detail(platform: str, work_id: str) -> Response:
    """Fetch a work's metadata from the platform."""
    try:
        fetcher = RemoteFetcher(Platform(platform))
    except ValueError:
        raise HTTPException(status_code=404, detail="Unknown platform")
    work = await fetcher.fetch_work_detail(work_id)
    payload = asdict(work)
    try:
        payload["cached_units"] = runner.cache.count_for_work(work.work_id)
    except CacheError as exc:
        logger.warning("Cache unavailable: %s", exc)
        payload["cached_units"] = None
    return JSONResponse(payload)


@app.get("/cache/{work_id}")
async def cache_stats(work_id: str) -> Response:
    try:
        count = runner.cache.count_for_work(work_id)
    except CacheError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return JSONResponse({"work_id": work_id, "cached_units": count})


@app.delete("/cache/{work_id}")
async def clear_cache(work_id: str) -> Response:
    try:
        deleted = runner.cache.delete_work(work_id)
    except CacheError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return JSONResponse({"work_id": work_id, "deleted": deleted})
