from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from typing import Any, Dict, Optional, Tuple

from .errors import AnalysisError, ErrorCode
from .logging import bind_job_context, current_request_id, reset_job_context
from .monitor import JobMonitor
from .pipeline import AnalysisPipeline
from .schemas import AnalysisRequest, PipelineJob
from .settings import Settings, settings as default_settings
from .storage import AnalysisStore
from .webhook import send_webhook

logger = logging.getLogger(__name__)

TERMINAL = {"complete", "failed"}


class JobRunner:
    """Background execution of analysis requests.

    Jobs are queued, picked up by a single worker loop and run under a concurrency
    semaphore and a heartbeat watchdog. Each job record leaves ``processing`` exactly
    once.
    """

    def __init__(
        self,
        pipeline: Optional[AnalysisPipeline] = None,
        store: Optional[AnalysisStore] = None,
        max_concurrency: Optional[int] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or default_settings
        self.pipeline = pipeline or AnalysisPipeline(store=store, settings=self.settings)
        self.store = store
        self.queue: "asyncio.Queue[Tuple[str, AnalysisRequest]]" = asyncio.Queue()
        self.jobs: Dict[str, PipelineJob] = {}
        self.sema = asyncio.Semaphore(max_concurrency or self.settings.MAX_CONCURRENCY)
        self._worker_task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

    def _init_job(self, job_id: str) -> PipelineJob:
        now = time.time()
        job: PipelineJob = {
            "job_id": job_id,
            "status": "processing",
            "stage": "received",
            "pct": 0.0,
            "detail": "",
            "result": None,
            "error": None,
            "error_code": None,
            "created_at": now,
            "updated_at": now,
            "last_heartbeat_at": now,
            "progress": {},
        }
        self.jobs[job_id] = job
        return job

    def _prune(self) -> None:
        cutoff = time.time() - float(self.settings.JOB_RETENTION_SECONDS)
        stale = [
            job_id
            for job_id, job in self.jobs.items()
            if job.get("status") in TERMINAL and float(job.get("updated_at") or 0) < cutoff
        ]
        for job_id in stale:
            self.jobs.pop(job_id, None)

    def _complete(self, job_id: str, result: Dict[str, Any]) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job.get("status") in TERMINAL:
            return False
        now = time.time()
        job.update(status="complete", stage="persisted", pct=100.0, result=result, updated_at=now)
        logger.info("job_complete", extra={"job_id": job_id})
        return True

    def _fail(self, job_id: str, exc: AnalysisError) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job.get("status") in TERMINAL:
            return False
        job.update(
            status="failed",
            stage="failed",
            error=exc.detail,
            error_code=exc.code.value,
            user_message=exc.user_message,
            can_retry=exc.can_retry,
            updated_at=time.time(),
        )
        return True

    async def _watchdog(self, job_id: str) -> AnalysisError:
        start = time.time()
        ttl = float(self.settings.JOB_HEARTBEAT_TTL_SECONDS)
        hard = float(self.settings.JOB_WATCHDOG_SECONDS)
        while True:
            await asyncio.sleep(1.0)
            job = self.jobs.get(job_id) or {}
            now = time.time()
            last = float(job.get("last_heartbeat_at") or job.get("created_at") or now)
            if now - last > ttl:
                return AnalysisError(
                    ErrorCode.ANALYSIS_TIMEOUT, f"Job watchdog expired: idle {int(now - last)}s > {int(ttl)}s"
                )
            if now - start > hard:
                return AnalysisError(
                    ErrorCode.ANALYSIS_TIMEOUT, f"Job time limit exceeded: {int(now - start)}s > {int(hard)}s"
                )

    async def _run_with_watchdog(self, job_id: str, request: AnalysisRequest) -> None:
        job_task = asyncio.create_task(self._job_exec(job_id, request))
        watchdog = asyncio.create_task(self._watchdog(job_id))
        try:
            done, _ = await asyncio.wait({job_task, watchdog}, return_when=asyncio.FIRST_COMPLETED)
            if watchdog in done and not job_task.done():
                job_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await job_task
                exc = watchdog.result()
                if self._fail(job_id, exc):
                    logger.error("job_failed", extra={"job_id": job_id, "code": exc.code.value, "error": exc.detail})
                    await self._after_terminal(job_id, request)
        finally:
            watchdog.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watchdog

    def is_running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    def start(self) -> None:
        if self.is_running():
            logger.info("worker_start_noop", extra={"reason": "already_running"})
            return
        self._stop.clear()
        self._worker_task = asyncio.create_task(self._worker_loop(), name="jobrunner-worker")
        logger.info("worker_start_requested")

    def ensure_started(self) -> None:
        if not self.is_running():
            self.start()

    async def stop(self) -> None:
        if not self._worker_task:
            logger.info("worker_stop_noop", extra={"reason": "not_running"})
            return
        logger.info("worker_stop_requested")
        self._stop.set()
        try:
            await self._worker_task
        finally:
            self._worker_task = None
            logger.info("worker_stopped")

    async def _worker_loop(self) -> None:
        logger.info("worker_started")
        pending = set()
        try:
            while not self._stop.is_set():
                try:
                    job_id, request = await asyncio.wait_for(self.queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue
                # _run_one holds the semaphore, bounding how many run at once
                task = asyncio.create_task(self._run_one(job_id, request))
                pending.add(task)
                task.add_done_callback(pending.discard)
                await asyncio.sleep(0)
        except asyncio.CancelledError:
            logger.info("worker_cancelled")
            raise
        finally:
            for task in list(pending):
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            logger.info("worker_exit", extra={"cancelled": len(pending)})

    async def _run_one(self, job_id: str, request: AnalysisRequest) -> None:
        try:
            async with self.sema:
                job = self.jobs.get(job_id)
                if job is not None:
                    job["last_heartbeat_at"] = time.time()
                await self._run_with_watchdog(job_id, request)
        except Exception:
            logger.exception("worker_loop_error", extra={"job_id": job_id})

    def prepare_job(self) -> str:
        self._prune()
        job_id = uuid.uuid4().hex
        self._init_job(job_id)
        logger.info("job_prepared", extra={"job_id": job_id, "request_id": current_request_id()})
        return job_id

    def enqueue_prepared(self, job_id: str, request: AnalysisRequest) -> None:
        if job_id not in self.jobs:
            self._init_job(job_id)
        self.queue.put_nowait((job_id, request))
        logger.info("job_queued", extra={"job_id": job_id, "frames": len(request.frames)})

    def enqueue(self, request: AnalysisRequest) -> str:
        job_id = self.prepare_job()
        self.enqueue_prepared(job_id, request)
        return job_id

    def get_job(self, job_id: str) -> Optional[PipelineJob]:
        job = self.jobs.get(job_id)
        if job is None and self.store is not None:
            job = self.store.load_job(job_id)
        return job

    def status_document(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Polling view of a job: ``{status, result?, error?, code?}``."""

        job = self.get_job(job_id)
        if job is None:
            return None
        doc: Dict[str, Any] = {"job_id": job_id, "status": job.get("status")}
        if job.get("status") == "complete":
            doc["result"] = job.get("result")
        elif job.get("status") == "failed":
            doc["error"] = job.get("user_message") or job.get("error")
            doc["code"] = job.get("error_code")
        return doc

    async def _job_exec(self, job_id: str, request: AnalysisRequest) -> None:
        monitor = JobMonitor(self.jobs, job_id, self.settings.JOB_STATUS_HEARTBEAT_MIN_INTERVAL)
        token = bind_job_context(job_id)
        terminal = False
        try:
            logger.info("job_start", extra={"job_id": job_id, "mode": request.mode})
            outcome = await self.pipeline.run(
                request,
                on_stage=monitor.stage_callback(),
                job_id=job_id,
                on_progress=monitor.progress_callback(),
            )
            terminal = self._complete(job_id, outcome.document)
        except AnalysisError as exc:
            terminal = self._fail(job_id, exc)
            logger.warning("job_failed", extra={"job_id": job_id, "code": exc.code.value, "error": exc.detail})
        except Exception as exc:
            terminal = self._fail(job_id, AnalysisError(ErrorCode.ANALYSIS_ERROR, str(exc)))
            logger.exception("job_failed", extra={"job_id": job_id})
        finally:
            reset_job_context(token)
        if terminal:
            await self._after_terminal(job_id, request)

    async def _after_terminal(self, job_id: str, request: AnalysisRequest) -> None:
        job = self.jobs.get(job_id)
        if job is None:
            return
        if self.store is not None:
            try:
                await asyncio.to_thread(self.store.save_job, dict(job))
            except Exception:  # noqa: BLE001 - persistence never changes job outcome
                logger.exception("job_save_failed", extra={"job_id": job_id})
        if request.webhook_url:
            await asyncio.to_thread(
                send_webhook,
                str(request.webhook_url),
                self.status_document(job_id) or {},
                self.settings.webhook_hmac_secret,
                self.settings.WEBHOOK_MAX_ATTEMPTS,
            )
