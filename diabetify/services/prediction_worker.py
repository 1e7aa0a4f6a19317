"""
Prediction Worker.

Owns the submission queue, a pool of executor tasks and the reply
dispatcher. A job goes

    pending -> processing -> submitted -> completed | failed

and every status write for a job is made by the one executor holding it.
Replies are matched to executors through the waiter map, keyed by job id
(the correlation token). Entries are registered before the request is
published and removed on reply, timeout or abandonment; a reply that finds
no entry is dropped.
"""

import asyncio
import threading
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from diabetify.config import Settings
from diabetify.database.database import utcnow
from diabetify.database.models import (
    FEATURE_COLUMNS, JOB_CANCELLED, JOB_COMPLETED, JOB_FAILED, JOB_PENDING, JOB_PROCESSING,
    JOB_SUBMITTED, Prediction, PredictionJob,
)
from diabetify.errors import (
    BusUnavailable, CannotCancel, DiabetifyError, Forbidden, IncompleteProfile, JobTimeout,
    ModelError, NotFound, Permanent, QueueFull, Transient, WorkerNotRunning,
)
from diabetify.repositories.jobs import CANCELLABLE_STATUSES, JobStore, apply_status
from diabetify.repositories.predictions import PredictionStore, add_prediction
from diabetify.repositories.users import UserRepo
from diabetify.services.features import AssembledFeatures, FeatureAssembler
from diabetify.services.ml_transport import Reply
from diabetify.services.whatif_cache import WhatIfCache
from diabetify.utils.logger import get_logger, log_job_event

logger = get_logger(__name__)

MAX_PUBLISH_RETRIES = 2
PUBLISH_RETRY_DELAY_SECONDS = 0.5
RECOVERY_BATCH = 50
WORKER_STOPPED = "WorkerStopped"


@dataclass
class JobRequest:
    job_id: str
    user_id: int
    is_what_if: bool = False
    overrides: Optional[dict] = None


@dataclass
class _Waiter:
    future: asyncio.Future
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)


def build_prediction(user_id: int, reply: Reply, assembled: AssembledFeatures) -> Prediction:
    info = assembled.info
    prediction = Prediction(
        user_id=user_id,
        created_at=utcnow(),
        risk_score=reply.score,
        avg_smoke_count=info.get("avg_smoke_count", 0),
    )
    for name in FEATURE_COLUMNS:
        setattr(prediction, name, info[name])
    for name, attribution in zip(FEATURE_COLUMNS, reply.per_feature or ()):
        setattr(prediction, f"{name}_shap", attribution.shap)
        setattr(prediction, f"{name}_contribution", attribution.contribution)
        setattr(prediction, f"{name}_impact", attribution.impact)
    return prediction


def what_if_payload(job_id: str, reply: Reply, assembled: AssembledFeatures) -> dict:
    explanations = {}
    for name, attribution in zip(FEATURE_COLUMNS, reply.per_feature or ()):
        explanations[name] = attribution.to_dict()
    return {
        "jobId": job_id,
        "riskScore": reply.score,
        "riskPercentage": round(reply.score * 100, 2),
        "features": dict(assembled.info),
        "featureExplanations": explanations,
        "elapsedMs": reply.elapsed_ms,
        "createdAt": utcnow().isoformat(),
    }


class PredictionWorker:
    def __init__(self, settings: Settings, jobs: JobStore, predictions: PredictionStore,
                 users: UserRepo, assembler: FeatureAssembler, transport,
                 cache: WhatIfCache = None):
        self.jobs = jobs
        self.predictions = predictions
        self.users = users
        self.assembler = assembler
        self.transport = transport
        self.cache = cache or WhatIfCache(ttl=settings.what_if_ttl_seconds)

        self.pool_size = settings.worker_pool_size
        self.backlog = settings.submission_backlog
        self.reply_timeout = settings.reply_timeout_seconds
        self.max_active_jobs = settings.max_active_jobs_per_user
        self.stop_grace = settings.stop_grace_seconds
        self.explain = settings.ml_explain

        self._queue: Optional[asyncio.Queue] = None
        self._waiters: Dict[str, _Waiter] = {}
        self._waiters_lock = threading.Lock()
        self._submit_lock: Optional[asyncio.Lock] = None
        self._executors: List[asyncio.Task] = []
        self._busy = set()
        self._dispatcher: Optional[asyncio.Task] = None
        self._running = False
        self._stopping = False

    # --- lifecycle ---

    async def start(self):
        if self._running:
            return
        self._queue = asyncio.Queue(maxsize=self.backlog)
        self._submit_lock = asyncio.Lock()
        self._stopping = False
        await self.transport.start()

        self._dispatcher = asyncio.create_task(self._dispatch_replies(), name="prediction-reply-dispatcher")
        self._executors = [
            asyncio.create_task(self._executor(i), name=f"prediction-executor-{i}")
            for i in range(self.pool_size)
        ]
        self._running = True
        logger.info(f"Prediction worker started with {self.pool_size} executors (backlog {self.backlog})")
        await self._recover_pending_jobs()

    async def stop(self):
        """
        Stops taking submissions, lets running jobs finish for up to the grace
        period, then cancels whatever is left. Jobs still queued stay pending
        and are picked up again by the next start().
        """
        if not self._running:
            return
        self._stopping = True
        self._running = False

        left_queued = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
            left_queued += 1
        if left_queued:
            logger.info(f"{left_queued} queued jobs left pending for recovery")

        for task in self._executors:
            if task not in self._busy:
                task.cancel()
        busy = [t for t in self._executors if t in self._busy]
        if busy:
            logger.info(f"Waiting up to {self.stop_grace}s for {len(busy)} running jobs")
            _, still_running = await asyncio.wait(busy, timeout=self.stop_grace)
            for task in still_running:
                task.cancel()
        await asyncio.gather(*self._executors, return_exceptions=True)
        self._executors = []

        if self._dispatcher is not None:
            self._dispatcher.cancel()
            await asyncio.gather(self._dispatcher, return_exceptions=True)
            self._dispatcher = None
        await self.transport.close()
        logger.info("Prediction worker stopped")

    def status(self) -> dict:
        return {
            "running": self._running,
            "busConnected": bool(self.transport.is_connected),
            "inFlight": len(self._busy),
            "queueDepth": self._queue.qsize() if self._queue is not None else 0,
        }

    # --- public operations ---

    async def submit_job(self, user_id: int, is_what_if: bool = False,
                         overrides: Optional[dict] = None) -> PredictionJob:
        """
        Persists a pending job and queues it. Nothing is written when the
        worker is down, the bus is disconnected, the profile is incomplete or
        the user/queue limits are reached.
        """
        if not self._running:
            raise WorkerNotRunning("Prediction worker is not running")
        if not self.transport.is_connected:
            raise BusUnavailable("Prediction service is temporarily unavailable")

        # IncompleteProfile must surface synchronously, before any row exists
        await asyncio.to_thread(self.assembler.assemble, user_id, overrides)

        async with self._submit_lock:
            active = await asyncio.to_thread(self.jobs.active_jobs_count, user_id)
            if active >= self.max_active_jobs:
                raise QueueFull(f"User already has {active} active prediction jobs (limit {self.max_active_jobs})")
            if self._queue.full():
                raise QueueFull("Submission queue is full")

            job = PredictionJob(id=str(uuid.uuid4()), user_id=user_id, is_what_if=is_what_if, status=JOB_PENDING)
            await asyncio.to_thread(self.jobs.save_job, job)
            try:
                self._queue.put_nowait(JobRequest(job.id, user_id, is_what_if, overrides))
            except asyncio.QueueFull:
                await asyncio.to_thread(self.jobs.delete_job, job.id, user_id)
                raise QueueFull("Submission queue is full")

        log_job_event(logger, job.id, user_id, JOB_PENDING, "what-if" if is_what_if else None)
        return job

    def get_what_if_result(self, job_id: str) -> Tuple[Optional[dict], bool]:
        return self.cache.get(job_id)

    async def cancel(self, job_id: str, user_id: int) -> PredictionJob:
        job = await asyncio.to_thread(self.jobs.get_job, job_id)
        if job is None:
            raise NotFound(f"Job {job_id} not found")
        if job.user_id != user_id:
            raise Forbidden("Job belongs to a different user")
        if job.status not in CANCELLABLE_STATUSES:
            raise CannotCancel(f"Job cannot be cancelled in its current status: {job.status}")

        if not await asyncio.to_thread(self.jobs.cancel_job, job_id, user_id):
            current = await asyncio.to_thread(self.jobs.get_job, job_id)
            raise CannotCancel(f"Job cannot be cancelled in its current status: {current.status if current else 'deleted'}")

        with self._waiters_lock:
            waiter = self._waiters.get(job_id)
        if waiter is not None:
            waiter.cancelled.set()
        log_job_event(logger, job_id, user_id, JOB_CANCELLED)
        return await asyncio.to_thread(self.jobs.get_job, job_id)

    # --- waiter map ---

    def _register(self, job_id: str) -> _Waiter:
        waiter = _Waiter(future=asyncio.get_running_loop().create_future())
        with self._waiters_lock:
            self._waiters[job_id] = waiter
        return waiter

    def _unregister(self, job_id: str, waiter: _Waiter):
        with self._waiters_lock:
            if self._waiters.get(job_id) is waiter:
                del self._waiters[job_id]

    async def _dispatch_replies(self):
        while True:
            try:
                async for reply in self.transport.replies():
                    self._deliver(reply)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Reply stream failed, resuming: {e}", exc_info=True)
                await asyncio.sleep(1.0)

    def _deliver(self, reply: Reply):
        with self._waiters_lock:
            waiter = self._waiters.pop(reply.correlation_id, None)
        if waiter is None or waiter.future.done():
            logger.info(f"Dropping reply for {reply.correlation_id}: no job is waiting for it")
            return
        waiter.future.set_result(reply)

    # --- executors ---

    async def _executor(self, index: int):
        task = asyncio.current_task()
        while not self._stopping:
            request = await self._queue.get()
            self._busy.add(task)
            try:
                await self._execute(request)
            except asyncio.CancelledError:
                await asyncio.shield(self._abandon(request))
                raise
            except DiabetifyError as e:
                logger.error(f"Executor {index} failed job {request.job_id}: {e.message}")
                await self._fail(request, e.message)
            except Exception as e:
                logger.error(f"Executor {index} crashed on job {request.job_id}: {e}", exc_info=True)
                await self._fail(request, f"Internal error: {e}")
            finally:
                self._busy.discard(task)
                self._queue.task_done()

    async def _execute(self, request: JobRequest):
        job_id, user_id = request.job_id, request.user_id
        moved = await asyncio.to_thread(self.jobs.transition_if, job_id, user_id, (JOB_PENDING,), JOB_PROCESSING)
        if not moved:
            logger.info(f"Job {job_id} is no longer pending, skipping")
            return
        log_job_event(logger, job_id, user_id, JOB_PROCESSING)

        waiter = self._register(job_id)
        try:
            await self._run(request, waiter)
        finally:
            self._unregister(job_id, waiter)

    async def _run(self, request: JobRequest, waiter: _Waiter):
        job_id, user_id = request.job_id, request.user_id

        try:
            assembled = await asyncio.to_thread(self.assembler.assemble, user_id, request.overrides)
        except IncompleteProfile as e:
            await self._fail(request, e.message)
            return

        if waiter.cancelled.is_set():
            logger.info(f"Job {job_id} cancelled before dispatch")
            return
        # Loses to a concurrent cancel; a cancelled job is never published
        moved = await asyncio.to_thread(self.jobs.transition_if, job_id, user_id, (JOB_PROCESSING,), JOB_SUBMITTED)
        if not moved:
            logger.info(f"Job {job_id} cancelled before dispatch")
            return

        if not await self._publish(request, assembled):
            return
        log_job_event(logger, job_id, user_id, JOB_SUBMITTED)

        reply = await self._await_reply(request, waiter)
        if reply is None:
            return
        await self._complete(request, reply, assembled)

    async def _publish(self, request: JobRequest, assembled: AssembledFeatures) -> bool:
        attempt = 0
        while True:
            try:
                await self.transport.publish(request.job_id, assembled.vector, self.explain)
                return True
            except Permanent as e:
                await self._fail(request, e.message)
                return False
            except Transient as e:
                attempt += 1
                if attempt > MAX_PUBLISH_RETRIES:
                    await self._fail(request, f"BusUnavailable: {e.message}")
                    return False
                logger.warning(f"Publish of job {request.job_id} failed ({e.message}), retry {attempt}/{MAX_PUBLISH_RETRIES}")
                await asyncio.sleep(PUBLISH_RETRY_DELAY_SECONDS * attempt)

    async def _await_reply(self, request: JobRequest, waiter: _Waiter) -> Optional[Reply]:
        cancel_wait = asyncio.ensure_future(waiter.cancelled.wait())
        try:
            await asyncio.wait({waiter.future, cancel_wait}, timeout=self.reply_timeout,
                               return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()

        # Take the entry out first so a reply racing the timeout is either ours or dropped
        self._unregister(request.job_id, waiter)
        if waiter.future.done():
            return waiter.future.result()
        if waiter.cancelled.is_set():
            logger.info(f"Job {request.job_id} abandoned its reply wait after cancellation")
            return None
        await self._fail(request, JobTimeout().message)
        return None

    async def _complete(self, request: JobRequest, reply: Reply, assembled: AssembledFeatures):
        job_id, user_id = request.job_id, request.user_id
        if not reply.ok:
            await self._fail(request, ModelError(reply.message or reply.error_kind).message)
            return

        if request.is_what_if:
            self.cache.put(job_id, what_if_payload(job_id, reply, assembled))
            await asyncio.to_thread(self.jobs.update_status, job_id, JOB_COMPLETED, user_id=user_id)
            log_job_event(logger, job_id, user_id, JOB_COMPLETED, f"what-if score {reply.score:.4f}")
            return

        prediction = build_prediction(user_id, reply, assembled)

        def persist(db):
            add_prediction(db, prediction)
            apply_status(db, job_id, JOB_COMPLETED, prediction_id=prediction.id)
            return prediction.id

        prediction_id = await asyncio.to_thread(self.jobs.router.on_user_shard, user_id, persist)
        log_job_event(logger, job_id, user_id, JOB_COMPLETED, f"prediction {prediction_id} score {reply.score:.4f}")
        try:
            await asyncio.to_thread(self.users.update_last_prediction_at, user_id)
        except DiabetifyError as e:
            logger.warning(f"Could not stamp last prediction time for user {user_id}: {e.message}")

    async def _fail(self, request: JobRequest, message: str):
        try:
            moved = await asyncio.to_thread(
                self.jobs.transition_if, request.job_id, request.user_id,
                (JOB_PROCESSING, JOB_SUBMITTED), JOB_FAILED, message,
            )
        except DiabetifyError as e:
            logger.error(f"Could not record failure of job {request.job_id} ({message}): {e.message}")
            return
        if moved:
            log_job_event(logger, request.job_id, request.user_id, JOB_FAILED, message)
        else:
            logger.info(f"Job {request.job_id} already left processing/submitted; failure '{message}' not recorded")

    async def _abandon(self, request: JobRequest):
        """Terminal write for a job whose executor is being torn down."""
        try:
            if await asyncio.to_thread(
                self.jobs.transition_if, request.job_id, request.user_id,
                CANCELLABLE_STATUSES, JOB_CANCELLED, WORKER_STOPPED,
            ):
                log_job_event(logger, request.job_id, request.user_id, JOB_CANCELLED, WORKER_STOPPED)
                return
        except DiabetifyError as e:
            logger.error(f"Could not cancel job {request.job_id} on shutdown: {e.message}")
            return
        await self._fail(request, WORKER_STOPPED)

    # --- recovery ---

    async def _recover_pending_jobs(self):
        try:
            pending = await asyncio.to_thread(self.jobs.get_pending_jobs, RECOVERY_BATCH)
        except DiabetifyError as e:
            logger.error(f"Pending job recovery failed: {e.message}")
            return

        recovered = 0
        for job in pending:
            if job.is_what_if:
                # What-if inputs are never persisted, so these cannot be rerun
                await asyncio.to_thread(
                    self.jobs.transition_if, job.id, job.user_id, (JOB_PENDING,), JOB_CANCELLED,
                    "What-if input lost on restart",
                )
                continue
            try:
                self._queue.put_nowait(JobRequest(job.id, job.user_id))
            except asyncio.QueueFull:
                logger.warning("Submission queue full during recovery; remaining jobs stay pending")
                break
            recovered += 1
        if recovered:
            logger.info(f"Recovered {recovered} pending jobs")
