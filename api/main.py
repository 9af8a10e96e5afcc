#!/usr/bin/env python3
import asyncio
import logging
import os
from typing import Optional

import anyio
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from config.settings import (
    JOB_MAX_AGE_SECONDS,
    OUTPUT_MEDIA_TYPE,
    STREAM_CHUNK_SIZE,
    SWEEP_INTERVAL_SECONDS,
)
from download.worker import JobRunner
from engine.errors import (
    AggregateError,
    AudiograbError,
    InvalidRangeError,
    InvalidSourceError,
    JobFailedError,
    NotFoundError,
    StillProcessingError,
    TranscodeError,
)
from engine.events import safe_json_dumps
from engine.extract import ExtractionAdapter
from engine.job_store import JOB_STATUS_FAILED, JOB_STATUS_PROCESSING, JobRegistry
from engine.paths import build_engine_paths, cleanup_dir, ensure_dir, safe_unlink
from engine.retry import RetryOrchestrator
from engine.runtime import APP_NAME, get_runtime_info
from engine.streaming import StreamingPipeline
from engine.transcode import TranscodeAdapter, build_output_filename, validate_trim_range
from input.candidates import resolve_source

SWEEP_JOB_ID = "job_sweep"


def _setup_logging(log_dir):
    ensure_dir(log_dir)
    root = logging.getLogger("")
    log_path = os.path.join(log_dir, "audiograb.log")
    root.setLevel(logging.INFO)
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                return
    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    file_handler.setLevel(logging.INFO)
    root.addHandler(file_handler)


class JobSubmission(BaseModel):
    source_url: str = Field(alias="sourceUrl")
    video_id: Optional[str] = Field(default=None, alias="videoId")
    start_time: Optional[float] = Field(default=None, alias="startTime")
    end_time: Optional[float] = Field(default=None, alias="endTime")


class SafeJSONResponse(JSONResponse):
    def render(self, content):
        return safe_json_dumps(
            content,
            allow_nan=False,
            separators=(",", ":"),
        ).encode("utf-8")


app = FastAPI(
    title=APP_NAME,
    description="Audiograb API: audio extraction jobs, one-shot downloads and live streams.",
    default_response_class=SafeJSONResponse,
)


_ERROR_STATUS = (
    (InvalidSourceError, 400),
    (InvalidRangeError, 400),
    (NotFoundError, 404),
    (JobFailedError, 409),
    (AggregateError, 502),
    (TranscodeError, 500),
)


def _status_for(exc):
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


@app.exception_handler(AudiograbError)
async def audiograb_error_handler(request: Request, exc: AudiograbError):
    status_code = _status_for(exc)
    content = {"detail": str(exc)}
    if isinstance(exc, AggregateError):
        content["attemptedUrls"] = exc.attempted_urls
    if isinstance(exc, JobFailedError):
        content = {"status": JOB_STATUS_FAILED, "error": exc.reason}
    if status_code >= 500:
        logging.warning("Request failed path=%s status=%d error=%s", request.url.path, status_code, exc)
    return SafeJSONResponse(status_code=status_code, content=content)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return SafeJSONResponse(status_code=400, content={"detail": exc.errors()})


@app.on_event("startup")
async def startup():
    paths = build_engine_paths()
    _setup_logging(paths.log_dir)
    deleted_files, deleted_bytes = cleanup_dir(paths.work_dir)
    ensure_dir(paths.oneshot_dir)
    if deleted_files:
        logging.info("Purged stale work files=%d bytes=%d", deleted_files, deleted_bytes)
    app.state.paths = paths

    extractor = ExtractionAdapter()
    transcoder = TranscodeAdapter()
    orchestrator = RetryOrchestrator()
    app.state.registry = JobRegistry()
    app.state.runner = JobRunner(app.state.registry, extractor, transcoder, orchestrator, paths.work_dir)
    app.state.pipeline = StreamingPipeline(extractor, transcoder, orchestrator)

    app.state.scheduler = BackgroundScheduler(timezone="UTC")
    app.state.scheduler.start()
    _apply_sweep_schedule(SWEEP_INTERVAL_SECONDS)
    logging.info("Startup complete work_dir=%s", paths.work_dir)


@app.on_event("shutdown")
async def shutdown():
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler:
        scheduler.shutdown(wait=False)
    runner = getattr(app.state, "runner", None)
    if runner is not None:
        try:
            await runner.drain(timeout=10)
        except asyncio.CancelledError:
            pass


def _sweep_tick():
    registry = getattr(app.state, "registry", None)
    if registry is None:
        return
    registry.sweep_expired(JOB_MAX_AGE_SECONDS)


def _apply_sweep_schedule(interval_seconds):
    scheduler = app.state.scheduler
    if not scheduler:
        return
    scheduler.add_job(
        _sweep_tick,
        trigger=IntervalTrigger(seconds=interval_seconds),
        id=SWEEP_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )


def _safe_filename(name):
    cleaned = name.replace('"', "'").replace("\n", " ").replace("\r", " ").strip()
    return cleaned or "download"


def _attachment_headers(filename):
    return {"Content-Disposition": f'attachment; filename="{_safe_filename(filename)}"'}


def _iter_file(path, chunk_size=STREAM_CHUNK_SIZE):
    with open(path, "rb") as handle:
        while True:
            chunk = handle.read(chunk_size)
            if not chunk:
                break
            yield chunk


@app.post("/jobs", status_code=202)
async def create_job(payload: JobSubmission):
    source_ref = resolve_source(payload.source_url, payload.video_id)
    trim = validate_trim_range(payload.start_time, payload.end_time)
    job_id = app.state.runner.submit(source_ref, trim)
    return {"jobId": job_id, "status": JOB_STATUS_PROCESSING}


@app.get("/jobs/{job_id}")
async def get_job(job_id: str):
    return app.state.registry.get_status(job_id).to_dict()


@app.get("/jobs/{job_id}/result")
async def get_job_result(job_id: str):
    registry = app.state.registry
    try:
        path, filename = registry.acquire_artifact(job_id)
    except StillProcessingError:
        return SafeJSONResponse(status_code=202, content={"jobId": job_id, "status": JOB_STATUS_PROCESSING})
    logging.info("Result download started job_id=%s", job_id)

    def stream():
        completed = False
        try:
            yield from _iter_file(path)
            completed = True
        except Exception:
            logging.exception("Result stream failed job_id=%s", job_id)
            raise
        finally:
            # Single delivery: the artifact goes away even after a broken transfer.
            registry.finalize_delivery(job_id, delivered=completed)

    return StreamingResponse(stream(), media_type=OUTPUT_MEDIA_TYPE, headers=_attachment_headers(filename))


@app.post("/stream")
async def stream_audio(payload: JobSubmission):
    source_ref = resolve_source(payload.source_url, payload.video_id)
    trim = validate_trim_range(payload.start_time, payload.end_time)
    session = await anyio.to_thread.run_sync(app.state.pipeline.open, source_ref, trim)
    return StreamingResponse(
        session.iter_bytes(),
        media_type=session.media_type,
        headers=_attachment_headers(session.filename),
    )


@app.get("/download")
async def download_once(
    url: str = Query(..., min_length=1),
    video_id: Optional[str] = Query(None, alias="videoId"),
    start_time: Optional[float] = Query(None, alias="startTime"),
    end_time: Optional[float] = Query(None, alias="endTime"),
):
    source_ref = resolve_source(url, video_id)
    trim = validate_trim_range(start_time, end_time)
    path = await anyio.to_thread.run_sync(
        app.state.runner.download_once,
        source_ref,
        trim,
        app.state.paths.oneshot_dir,
    )
    filename = build_output_filename(source_ref.video_id, trim)

    def stream():
        try:
            yield from _iter_file(path)
        finally:
            safe_unlink(str(path))

    return StreamingResponse(stream(), media_type=OUTPUT_MEDIA_TYPE, headers=_attachment_headers(filename))


@app.get("/api/version")
async def api_version():
    return get_runtime_info()
