import asyncio
import logging
from pathlib import Path

from .errors import ConversionFailed, ConversionNotReady, InvalidTransition, JobNotFound, SheetServiceError
from .interfaces import ChunkReader, JobStatus, ScoreRecord, StorageGateway
from .pipeline import INTERCHANGE, PACKAGE, ScorePipeline

logger = logging.getLogger(__name__)


class ConversionService:
    """Core domain service orchestrating sheet conversion jobs.

    This service is framework-agnostic. Uploads are stored by content hash,
    new jobs are queued, and a pool of worker tasks drives each one through
    ``pending -> in-progress -> done|fail``. Only the worker that owns a job
    writes its status.
    """

    def __init__(
        self,
        storage: StorageGateway,
        pipeline: ScorePipeline,
        *,
        workers: int = 4,
    ) -> None:
        self._storage = storage
        self._pipeline = pipeline
        self._workers = workers
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []

    @property
    def queue(self) -> asyncio.Queue[str]:
        return self._queue

    async def start(self) -> None:
        for i in range(self._workers):
            task = asyncio.create_task(self._worker_loop(f"worker-{i+1}"))
            self._tasks.append(task)

    async def stop(self) -> None:
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def create_job_from_upload(
        self,
        content_type: str,
        reader: ChunkReader,
        *,
        size: int | None = None,
    ) -> tuple[ScoreRecord, bool]:
        """Persist an upload and queue it when it is new.

        ``size`` is the declared upload size when the caller knows it; an
        oversized declaration is rejected before anything is stored.
        Returns the job and whether this upload created it. Re-uploads of
        identical bytes resolve to the existing job and queue nothing.
        """
        self._storage.validate(content_type, size)
        record, created = await self._storage.store_upload(content_type, reader)
        if created:
            await self._queue.put(record.id)
            logger.info("job %s queued", record.id, extra={"job_id": record.id})
        return record, created

    def load_job(self, job_id: str) -> ScoreRecord:
        return self._storage.load_job(job_id)

    def input_path(self, job_id: str) -> tuple[ScoreRecord, Path]:
        record = self._storage.load_job(job_id)
        return record, self._storage.job_dir(job_id) / record.input_name

    def interchange_path(self, job_id: str) -> Path:
        record = self._storage.load_job(job_id)
        if record.status == JobStatus.DONE:
            return self._storage.job_dir(job_id) / INTERCHANGE
        if record.status == JobStatus.FAIL:
            raise ConversionFailed("conversion failed")
        raise ConversionNotReady("conversion in progress")

    def package_path(self, job_id: str) -> Path:
        record = self._storage.load_job(job_id)
        if record.status != JobStatus.DONE:
            raise ConversionNotReady("score not ready or conversion failed")
        return self._storage.job_dir(job_id) / PACKAGE

    def error_text(self, job_id: str) -> str:
        record = self._storage.load_job(job_id)
        text = self._storage.read_error(job_id) if record.status == JobStatus.FAIL else None
        if text is None:
            raise JobNotFound(job_id)
        return text

    async def process_job(self, job_id: str) -> JobStatus:
        """Drive one job to a terminal status and return the last status persisted."""
        extra = {"job_id": job_id}
        try:
            record = await asyncio.to_thread(self._storage.save_status, job_id, JobStatus.IN_PROGRESS)
        except InvalidTransition as e:
            # already picked up or finished; its owner decides the outcome
            logger.warning("job %s is %s, not starting it again", job_id, e.current, extra=extra)
            return JobStatus(e.current)
        except SheetServiceError:
            logger.exception("job %s: cannot mark in-progress", job_id, extra=extra)
            return await self._mark_failed(job_id, fallback=JobStatus.PENDING)

        try:
            await self._pipeline.convert(self._storage.job_dir(job_id), record.input_name)
        except Exception as e:
            logger.error("job %s: conversion failed: %s", job_id, e, extra=extra)
            try:
                await asyncio.to_thread(self._storage.write_error, job_id, str(e))
            except SheetServiceError:
                logger.exception("job %s: cannot write error record", job_id, extra=extra)
            return await self._mark_failed(job_id, fallback=JobStatus.IN_PROGRESS)

        try:
            await asyncio.to_thread(self._storage.save_status, job_id, JobStatus.DONE)
        except SheetServiceError:
            logger.exception("job %s: cannot mark done", job_id, extra=extra)
            return JobStatus.IN_PROGRESS
        logger.info("job %s done", job_id, extra=extra)
        return JobStatus.DONE

    async def _mark_failed(self, job_id: str, fallback: JobStatus) -> JobStatus:
        try:
            await asyncio.to_thread(self._storage.save_status, job_id, JobStatus.FAIL)
        except SheetServiceError:
            logger.exception("job %s: cannot mark failed", job_id, extra={"job_id": job_id})
            return fallback
        return JobStatus.FAIL

    async def _worker_loop(self, name: str) -> None:
        while True:
            job_id = await self._queue.get()
            try:
                logger.debug("%s picked up job %s", name, job_id, extra={"job_id": job_id})
                await self.process_job(job_id)
            except Exception:
                logger.exception("%s: unexpected error on job %s", name, job_id, extra={"job_id": job_id})
            finally:
                self._queue.task_done()
