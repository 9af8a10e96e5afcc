"""Job runner: drives one submitted job from candidates to a finished artifact."""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from pathlib import Path
from typing import Optional
from uuid import uuid4

import anyio

from engine.errors import AudiograbError
from engine.extract import ExtractionAdapter, remove_partials
from engine.job_store import JobRegistry
from engine.paths import safe_unlink
from engine.retry import RetryOrchestrator
from engine.transcode import TranscodeAdapter, TrimRange, build_output_filename
from input.candidates import SourceRef, candidates_for

logger = logging.getLogger(__name__)


class JobRunner:
    """Runs one background task per submitted job.

    The runner is the only writer of its job's state. Intermediate files live
    under ``work_dir`` named after the job id and are removed on every exit
    path; the finished artifact is handed to the registry, or deleted when the
    registry discards the completion because the job has been swept.
    """

    def __init__(
        self,
        registry: JobRegistry,
        extractor: ExtractionAdapter,
        transcoder: TranscodeAdapter,
        orchestrator: RetryOrchestrator,
        work_dir,
    ) -> None:
        self.registry = registry
        self.extractor = extractor
        self.transcoder = transcoder
        self.orchestrator = orchestrator
        self.work_dir = Path(work_dir)
        self._tasks: set[asyncio.Task] = set()

    def submit(self, source_ref: SourceRef, trim_range: Optional[TrimRange] = None) -> str:
        """Create a processing job and start its runner without blocking."""
        job = self.registry.create_job(source_ref, trim_range)
        self.dispatch(job.id)
        return job.id

    def dispatch(self, job_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is None:
            threading.Thread(
                target=self.run_job,
                args=(job_id,),
                name=f"job-runner-{job_id[:8]}",
                daemon=True,
            ).start()
            return
        task = loop.create_task(self.run_async(job_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def run_async(self, job_id: str) -> None:
        await anyio.to_thread.run_sync(self.run_job, job_id)

    async def drain(self, timeout: float = 10.0) -> None:
        pending = [task for task in self._tasks if not task.done()]
        if not pending:
            return
        _done, still_running = await asyncio.wait(pending, timeout=timeout)
        if still_running:
            logger.warning("Shutdown with %d job runner(s) still active", len(still_running))

    def materialize(
        self,
        key: str,
        source_ref: SourceRef,
        trim_range: Optional[TrimRange],
        work_dir: Path,
        *,
        context: Optional[dict] = None,
    ) -> Path:
        """Extract (with retries) and optionally trim into ``work_dir/<key>.mp3``.

        The pre-trim file is deleted whatever the transcode outcome. On failure
        nothing named after ``key`` is left in ``work_dir``.
        """
        work_dir.mkdir(parents=True, exist_ok=True)
        source_path = work_dir / f"{key}.source.mp3"
        final_path = work_dir / f"{key}.mp3"
        succeeded = False
        try:
            candidates = candidates_for(source_ref)
            self.orchestrator.run(
                candidates,
                lambda url: self.extractor.extract(url, source_path),
                cleanup=lambda: remove_partials(source_path),
                context=context,
            )
            if trim_range is not None:
                try:
                    self.transcoder.transcode(source_path, trim_range, final_path)
                finally:
                    remove_partials(source_path)
            else:
                os.replace(source_path, final_path)
            succeeded = True
            return final_path
        finally:
            remove_partials(source_path)
            if not succeeded:
                safe_unlink(str(final_path))

    def run_job(self, job_id: str) -> None:
        job = self.registry.get(job_id)
        if job is None:
            logger.info("Job %s disappeared before its runner started", job_id)
            return

        final_path = None
        try:
            final_path = self.materialize(
                job_id,
                job.source_ref,
                job.trim_range,
                self.work_dir,
                context={"job_id": job_id},
            )
            filename = build_output_filename(job.source_ref.video_id, job.trim_range)
            if not self.registry.complete(job_id, str(final_path), filename):
                # Swept while running: nobody else owns this file.
                safe_unlink(str(final_path))
        except AudiograbError as exc:
            self.registry.fail(job_id, exc)
        except Exception as exc:
            logger.exception("Unexpected error processing job %s", job_id)
            if final_path is not None:
                safe_unlink(str(final_path))
            self.registry.fail(job_id, f"internal error: {exc}")

    def download_once(self, source_ref: SourceRef, trim_range: Optional[TrimRange], work_dir) -> Path:
        """Synchronous materialization outside the registry, for one-shot delivery."""
        key = uuid4().hex
        return self.materialize(key, source_ref, trim_range, Path(work_dir), context={"oneshot": key})
