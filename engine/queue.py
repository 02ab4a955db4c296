"""Durable, at-least-once job queue backed by the ``jobs`` table.

Claiming is a single conditional UPDATE over a ``FOR UPDATE SKIP LOCKED``
subselect, so concurrent workers never claim the same row. A claimed job
holds a lock until ``locked_until``; if the worker dies the lock expires and
the job is recovered by the next claimer, which means handlers must tolerate
running the same payload twice. Workers renew the lock while a handler runs.
"""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from pydantic import ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from . import models
from .config import settings
from .jobs import JobPayload, JobPriority, compute_payload_hash, dump_payload, parse_payload
from .models import JobStatus, utcnow

logger = logging.getLogger(__name__)

LOCK_EXPIRED_ERROR = "lock expired before the job completed"


class QueueError(Exception):
    """Raised when a queue operation cannot be performed."""
    pass


class UnknownJobTypeError(QueueError):
    """Raised when a stored payload does not match any known job type."""
    pass


@dataclass
class QueuedJob:
    """A claimed or inspected job row."""

    id: int
    type: str
    raw_payload: dict[str, Any]
    payload: JobPayload | None
    status: str
    priority: int
    attempts: int
    max_attempts: int
    enqueued_at: datetime
    next_run_at: datetime
    locked_by: str | None = None
    locked_until: datetime | None = None
    last_error: str | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_row(cls, row: models.Job) -> "QueuedJob":
        try:
            payload = parse_payload(row.payload)
        except ValidationError:
            payload = None
        return cls(
            id=row.id,
            type=row.type,
            raw_payload=row.payload,
            payload=payload,
            status=row.status,
            priority=row.priority,
            attempts=row.attempts,
            max_attempts=row.max_attempts,
            enqueued_at=row.enqueued_at,
            next_run_at=row.next_run_at,
            locked_by=row.locked_by,
            locked_until=row.locked_until,
            last_error=row.last_error,
            completed_at=row.completed_at,
        )


class JobQueue:
    """Relational job queue.

    Args:
        session_factory: async session factory bound to the queue database.
        max_attempts: default attempt budget for newly enqueued jobs.
        retry_base_delay: backoff base in seconds.
        retry_max_delay: backoff cap in seconds (before jitter).
        jitter_ratio: upper bound of the random jitter as a fraction of the delay.
        lock_timeout: seconds a claimed job stays locked.
        clock: returns the current naive-UTC time.
        rng: returns a float in [0, 1) used for jitter.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_attempts: int | None = None,
        retry_base_delay: float | None = None,
        retry_max_delay: float | None = None,
        jitter_ratio: float | None = None,
        lock_timeout: float | None = None,
        clock: Callable[[], datetime] = utcnow,
        rng: Callable[[], float] = random.random,
    ) -> None:
        cfg = settings.queue
        self._session_factory = session_factory
        self.max_attempts = max_attempts if max_attempts is not None else cfg.max_attempts
        self.retry_base_delay = retry_base_delay if retry_base_delay is not None else cfg.retry_base_delay_seconds
        self.retry_max_delay = retry_max_delay if retry_max_delay is not None else cfg.retry_max_delay_seconds
        self.jitter_ratio = jitter_ratio if jitter_ratio is not None else cfg.retry_jitter_ratio
        self.lock_timeout = lock_timeout if lock_timeout is not None else cfg.lock_timeout_seconds
        self._clock = clock
        self._rng = rng

    # Producers

    async def enqueue(
        self,
        payload: JobPayload,
        *,
        priority: int = JobPriority.NORMAL,
        max_attempts: int | None = None,
    ) -> int:
        """Persist a job and return its id.

        Payloads with a dedup hash collapse onto an existing *pending* job with
        the same hash; a job that is already processing does not absorb the new
        request, so a version bump during evaluation still gets its own run.
        """
        payload_hash = compute_payload_hash(payload)
        async with self._session_factory() as session:
            try:
                if payload_hash is not None:
                    existing = await self._pending_job_id(session, payload_hash)
                    if existing is not None:
                        logger.debug(f"Deduplicated {payload.type} onto pending job {existing}")
                        return existing

                now = self._clock()
                job = models.Job(
                    type=payload.type,
                    payload=dump_payload(payload),
                    payload_hash=payload_hash,
                    status=JobStatus.PENDING.value,
                    priority=priority,
                    attempts=0,
                    max_attempts=max_attempts or self.max_attempts,
                    enqueued_at=now,
                    next_run_at=now,
                )
                session.add(job)
                await session.commit()
                logger.info(f"Enqueued {payload.type} job {job.id} (priority={priority})")
                return job.id
            except IntegrityError as e:
                # Lost the insert race to a concurrent enqueue of the same payload
                await session.rollback()
                existing = await self._pending_job_id(session, payload_hash) if payload_hash else None
                if existing is None:
                    logger.error(f"Failed to enqueue {payload.type}: {e}", exc_info=True)
                    raise QueueError(f"Failed to enqueue {payload.type}: {e}") from e
                logger.debug(f"Deduplicated {payload.type} onto concurrently enqueued job {existing}")
                return existing
            except Exception as e:
                logger.error(f"Failed to enqueue {payload.type}: {e}", exc_info=True)
                await session.rollback()
                raise QueueError(f"Failed to enqueue {payload.type}: {e}") from e

    @staticmethod
    async def _pending_job_id(session: AsyncSession, payload_hash: str) -> int | None:
        return await session.scalar(
            select(models.Job.id)
            .where(
                models.Job.payload_hash == payload_hash,
                models.Job.status == JobStatus.PENDING.value,
            )
            .order_by(models.Job.id)
            .limit(1)
        )

    # Consumers

    async def claim_next(self, worker_id: str, limit: int = 1) -> list[QueuedJob]:
        """Atomically claim up to ``limit`` due pending jobs for ``worker_id``.

        Expired locks are recovered first. Returned jobs are ordered by
        priority (highest first), then by enqueue time.
        """
        await self.recover_expired()

        now = self._clock()
        candidate = aliased(models.Job)
        due_ids = (
            select(candidate.id)
            .where(
                candidate.status == JobStatus.PENDING.value,
                candidate.next_run_at <= now,
            )
            .order_by(candidate.priority.desc(), candidate.enqueued_at.asc(), candidate.id.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(models.Job)
            .where(
                models.Job.id.in_(due_ids),
                models.Job.status == JobStatus.PENDING.value,
            )
            .values(
                status=JobStatus.PROCESSING.value,
                locked_by=worker_id,
                locked_until=now + timedelta(seconds=self.lock_timeout),
                started_at=now,
            )
            .returning(models.Job)
        )

        async with self._session_factory() as session:
            try:
                result = await session.execute(stmt, execution_options={"synchronize_session": False})
                rows = list(result.scalars().all())
                await session.commit()
            except Exception as e:
                logger.error(f"Claim failed for worker {worker_id}: {e}", exc_info=True)
                await session.rollback()
                raise QueueError(f"Claim failed: {e}") from e

        rows.sort(key=lambda r: (-r.priority, r.enqueued_at, r.id))
        if rows:
            logger.debug(f"Worker {worker_id} claimed jobs {[r.id for r in rows]}")
        return [QueuedJob.from_row(r) for r in rows]

    async def renew_lock(self, job_id: int, worker_id: str) -> bool:
        """Push ``locked_until`` out by a full lock timeout for a job ``worker_id`` still holds.

        Returns False when the lock was already lost to expiry recovery.
        """
        now = self._clock()
        stmt = (
            update(models.Job)
            .where(
                models.Job.id == job_id,
                models.Job.status == JobStatus.PROCESSING.value,
                models.Job.locked_by == worker_id,
            )
            .values(locked_until=now + timedelta(seconds=self.lock_timeout))
        )
        async with self._session_factory() as session:
            try:
                result = await session.execute(stmt, execution_options={"synchronize_session": False})
                await session.commit()
            except Exception as e:
                await session.rollback()
                raise QueueError(f"Lock renewal failed for job {job_id}: {e}") from e

        if result.rowcount == 0:
            logger.warning(f"Job {job_id} lock could not be renewed by {worker_id}: lock no longer held")
            return False
        logger.debug(f"Job {job_id} lock renewed by {worker_id}")
        return True

    async def complete(self, job_id: int, worker_id: str | None = None) -> bool:
        """Mark a processing job completed. Returns False if the lock was lost."""
        stmt = (
            update(models.Job)
            .where(models.Job.id == job_id, models.Job.status == JobStatus.PROCESSING.value)
            .values(
                status=JobStatus.COMPLETED.value,
                completed_at=self._clock(),
                locked_by=None,
                locked_until=None,
            )
        )
        if worker_id is not None:
            stmt = stmt.where(models.Job.locked_by == worker_id)

        async with self._session_factory() as session:
            result = await session.execute(stmt, execution_options={"synchronize_session": False})
            await session.commit()

        if result.rowcount == 0:
            logger.warning(f"Job {job_id} could not be completed by {worker_id}: lock no longer held")
            return False
        logger.info(f"Job {job_id} completed")
        return True

    async def fail(self, job_id: int, error: str, worker_id: str | None = None) -> QueuedJob | None:
        """Record a failed attempt.

        Increments ``attempts``. Below the budget the job goes back to pending
        with ``next_run_at`` pushed out by the backoff delay; at the budget it
        is dead-lettered and never claimed again. Returns the updated job, or
        None when the caller no longer owns the lock.
        """
        async with self._session_factory() as session:
            try:
                query = (
                    select(models.Job)
                    .where(models.Job.id == job_id, models.Job.status == JobStatus.PROCESSING.value)
                    .with_for_update()
                )
                if worker_id is not None:
                    query = query.where(models.Job.locked_by == worker_id)
                row = await session.scalar(query)
                if row is None:
                    logger.warning(f"Job {job_id} could not be failed by {worker_id}: lock no longer held")
                    return None

                self._record_failure(row, error)
                await session.commit()
            except Exception as e:
                logger.error(f"Failed to record failure for job {job_id}: {e}", exc_info=True)
                await session.rollback()
                raise QueueError(f"Failed to record failure for job {job_id}: {e}") from e

            return QueuedJob.from_row(row)

    async def recover_expired(self) -> int:
        """Reclaim processing jobs whose lock has expired.

        Each recovery counts as a failed attempt, so a payload that keeps
        crashing its worker still ends up dead-lettered.
        """
        now = self._clock()
        async with self._session_factory() as session:
            try:
                rows = (
                    await session.scalars(
                        select(models.Job)
                        .where(
                            models.Job.status == JobStatus.PROCESSING.value,
                            models.Job.locked_until < now,
                        )
                        .with_for_update(skip_locked=True)
                    )
                ).all()
                for row in rows:
                    logger.warning(f"Job {row.id} lock held by {row.locked_by} expired at {row.locked_until}")
                    self._record_failure(row, LOCK_EXPIRED_ERROR)
                await session.commit()
            except Exception as e:
                await session.rollback()
                raise QueueError(f"Lock recovery failed: {e}") from e
        return len(rows)

    def _record_failure(self, row: models.Job, error: str) -> None:
        now = self._clock()
        row.attempts += 1
        row.last_error = error
        row.locked_by = None
        row.locked_until = None

        if row.attempts < row.max_attempts:
            delay = self.compute_retry_delay(row.attempts)
            row.status = JobStatus.PENDING.value
            row.next_run_at = now + timedelta(seconds=delay)
            logger.warning(
                f"Job {row.id} ({row.type}) failed attempt {row.attempts}/{row.max_attempts}, "
                f"retrying in {delay:.2f}s: {error}"
            )
        else:
            row.status = JobStatus.DEAD.value
            row.completed_at = now
            logger.error(
                f"Job {row.id} ({row.type}) dead-lettered after {row.attempts} attempts. "
                f"Last error: {error}"
            )

    def compute_retry_delay(self, attempts: int) -> float:
        """Backoff in seconds: min(max, base * 2^(attempts-1)) plus up to jitter_ratio of that."""
        if self.retry_base_delay <= 0:
            return 0.0
        exponential = self.retry_base_delay * (2 ** max(attempts - 1, 0))
        capped = min(exponential, self.retry_max_delay)
        return capped + self._rng() * capped * self.jitter_ratio

    # Inspection

    async def get_job(self, job_id: int) -> QueuedJob | None:
        async with self._session_factory() as session:
            row = await session.get(models.Job, job_id)
            return QueuedJob.from_row(row) if row is not None else None

    async def pending_count(self) -> int:
        async with self._session_factory() as session:
            count = await session.scalar(
                select(func.count()).select_from(models.Job).where(models.Job.status == JobStatus.PENDING.value)
            )
            return count or 0

    async def status_counts(self) -> dict[str, int]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(models.Job.status, func.count()).group_by(models.Job.status)
            )
            counts = {status.value: 0 for status in JobStatus}
            counts.update({status: count for status, count in rows.all()})
            return counts
