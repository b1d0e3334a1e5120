"""In-process async dispatcher for transcription jobs.

Each job id gets a single processing invocation at a time; duplicate enqueues
of a running job are dropped. A watchdog sweeps jobs whose lease lapsed in a
non-terminal state, refunds their minutes and fails them. Expired jobs are
not requeued. The same sweep refunds usage left on failed or cancelled jobs.
"""

import asyncio
from datetime import datetime
from os import getenv
from typing import Iterable, Optional, Set

from sqlalchemy import select

from vidscribe.config import settings
from vidscribe.database import AsyncSessionLocal
from vidscribe.logging_config import get_logger
from vidscribe.models.transcription_job import ACTIVE_STATUSES, JobStatus, TranscriptionJob
from vidscribe.models.transcription_usage import UsageRecord
from vidscribe.services.credit_ledger import CreditLedger, ledger as default_ledger
from vidscribe.services.transcription import fail_job, process_transcription_job

logger = get_logger(__name__)

LEASE_EXPIRED_MESSAGE = "Transcription stalled (lease expired)"
_STOP = "__STOP__"


class TranscriptionJobQueue:
    def __init__(self, concurrency: int = 3, *, enable_watchdog: bool = True):
        # Queue and semaphore are created in start() so they bind to the running loop
        self._queue: "asyncio.Queue[str] | None" = None
        self._workers: list[asyncio.Task] = []
        self._running_ids: Set[str] = set()
        self._concurrency = concurrency
        self._started = False
        self._slot_lock: asyncio.Semaphore | None = None
        self._watchdog_task: Optional[asyncio.Task] = None
        self._enable_watchdog = enable_watchdog

    @property
    def running_ids(self) -> frozenset[str]:
        return frozenset(self._running_ids)

    @property
    def is_started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._queue = asyncio.Queue()
        self._slot_lock = asyncio.Semaphore(self._concurrency)
        for _ in range(self._concurrency):
            self._workers.append(asyncio.create_task(self._worker()))
        logger.info("Job queue started with %s workers", self._concurrency)
        if self._enable_watchdog:
            self._watchdog_task = asyncio.create_task(self._watchdog())

    async def stop(self) -> None:
        if self._queue is not None:
            for _ in self._workers:
                await self._queue.put(_STOP)
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        if self._watchdog_task:
            self._watchdog_task.cancel()
            await asyncio.gather(self._watchdog_task, return_exceptions=True)
            self._watchdog_task = None
        self._started = False
        self._queue = None
        self._slot_lock = None
        logger.info("Job queue stopped")

    async def _worker(self) -> None:
        while True:
            assert self._queue is not None
            job_id = await self._queue.get()
            if job_id == _STOP:
                self._queue.task_done()
                break
            if job_id in self._running_ids:
                self._queue.task_done()
                continue
            self._running_ids.add(job_id)
            assert self._slot_lock is not None
            try:
                logger.debug("Worker picked job %s", job_id)
                async with self._slot_lock:
                    async with AsyncSessionLocal() as db:
                        outcome = await process_transcription_job(job_id, db)
                logger.info("Job %s finished with status %s", job_id, outcome.status)
            except Exception:
                logger.exception("Job %s processing raised", job_id)
            finally:
                self._running_ids.discard(job_id)
                self._queue.task_done()

    async def enqueue(self, job_id: str) -> None:
        if job_id in self._running_ids:
            logger.debug("Job %s already running; skipping enqueue", job_id)
            return
        if not self._started:
            force_start = getenv("FORCE_QUEUE_START") == "1"
            if settings.is_testing and not force_start:
                # Tests start the queue explicitly so background work does not race assertions.
                return
            await self.start()
        assert self._queue is not None
        await self._queue.put(job_id)
        logger.info("Queued job %s", job_id)

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def _watchdog(self) -> None:
        interval = max(1.0, float(settings.lease_check_interval_seconds))
        try:
            while self._started:
                await asyncio.sleep(interval)
                try:
                    await reap_expired_leases(skip_ids=self._running_ids)
                    await refund_orphaned_usage(skip_ids=self._running_ids)
                except Exception as exc:
                    logger.warning("Lease watchdog encountered an error: %s", exc)
        except asyncio.CancelledError:
            return


async def reap_expired_leases(
    now: Optional[datetime] = None,
    *,
    ledger: Optional[CreditLedger] = None,
    skip_ids: Iterable[str] = (),
) -> int:
    """Refund and fail non-terminal jobs whose lease lapsed. Returns the count."""
    now = now or datetime.utcnow()
    ledger = ledger or default_ledger
    skip = set(skip_ids)

    async with AsyncSessionLocal() as session:
        result = await session.execute(
            select(TranscriptionJob.id, TranscriptionJob.status).where(
                TranscriptionJob.status.in_(list(ACTIVE_STATUSES)),
                TranscriptionJob.lease_expires_at.isnot(None),
                TranscriptionJob.lease_expires_at < now,
            )
        )
        expired = [(job_id, status) for job_id, status in result.all() if job_id not in skip]

        reaped = 0
        for job_id, status in expired:
            # Only fail the job if it is still in the state we observed.
            if await fail_job(session, job_id, LEASE_EXPIRED_MESSAGE, ledger, from_statuses=[status]):
                reaped += 1
                logger.warning("Job %s lease expired while %s; marked failed", job_id, status)
    return reaped


async def refund_orphaned_usage(
    *, ledger: Optional[CreditLedger] = None, skip_ids: Iterable[str] = ()
) -> int:
    """Refund usage still recorded against failed or cancelled jobs. Returns the job count."""
    ledger = ledger or default_ledger
    skip = set(skip_ids)

    async with AsyncSessionLocal() as session:
        result = await session.execute(
            select(UsageRecord.job_id)
            .join(TranscriptionJob, TranscriptionJob.id == UsageRecord.job_id)
            .where(
                TranscriptionJob.status.in_(
                    [JobStatus.FAILED.value, JobStatus.CANCELLED.value]
                )
            )
            .distinct()
        )
        job_ids = [job_id for job_id in result.scalars().all() if job_id not in skip]

    refunded = 0
    for job_id in job_ids:
        refund = await ledger.refund(job_id)
        if refund.minutes_refunded:
            refunded += 1
            logger.warning(
                "Refunded %s orphaned minute(s) for job %s", refund.minutes_refunded, job_id
            )
    return refunded


# Global singleton for app lifetime
queue = TranscriptionJobQueue(concurrency=settings.max_concurrent_jobs)


async def resume_pending_jobs(queue_obj: TranscriptionJobQueue) -> int:
    """Re-enqueue jobs left pending when the app restarts."""
    async with AsyncSessionLocal() as db:
        result = await db.execute(
            select(TranscriptionJob.id).where(TranscriptionJob.status == JobStatus.PENDING.value)
        )
        job_ids = result.scalars().all()

    for job_id in job_ids:
        await queue_obj.enqueue(str(job_id))
    return len(job_ids)
