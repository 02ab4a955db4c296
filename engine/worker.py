"""Worker dispatcher: claims queued jobs and routes them to handlers by payload type.

A handler that returns normally completes the job; any exception fails it and
hands it to the queue's backoff and dead-letter logic. Handlers finding that
their work no longer applies (pair not eligible, context gone) return
normally, since that is an expected outcome of at-least-once delivery.
"""
from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol, assert_never

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ai.llm_client import ProposalModelClient
from engine.config import settings
from engine.jobs import (
    PAYLOAD_TYPES,
    ExpandMatchPoolPayload,
    GenerateProfilePayload,
    JobPayload,
    MonthlyRefreshPayload,
    RunMatchingPayload,
    SendEmailPayload,
)
from engine.pipeline_status import PipelineStage, PipelineStatusStore, pipeline_status_store
from engine.pipelines.context import assemble_context_for_pair
from engine.pipelines.eligibility import find_eligible_pair
from engine.pipelines.matching import generate_proposals_for_pair
from engine.pipelines.pool_expansion import expand_match_pools_for_new_user
from engine.pipelines.storage import store_proposals_and_result
from engine.pipelines.triggers import enqueue_for_new_pairs, enqueue_for_new_user, enqueue_for_profile_update
from engine.queue import JobQueue, QueueError, QueuedJob, UnknownJobTypeError

logger = logging.getLogger(__name__)


class CollaboratorUnavailableError(Exception):
    """Raised when a handler needs an external collaborator this process was not given."""
    pass


# External collaborators

StageCallback = Callable[[PipelineStage], None]


@dataclass
class ProfilePipelineResult:
    publications_found: int
    profile_created: bool
    profile_version: int
    warnings: list[str] = field(default_factory=list)


class ProfilePipeline(Protocol):
    """Bibliographic ingestion and profile synthesis for one user."""

    async def run(self, user_id: int, orcid: str, *, on_stage: StageCallback) -> ProfilePipelineResult:
        ...


class MonthlyRefresher(Protocol):
    async def refresh(self, user_id: int) -> dict[str, Any]:
        ...


class EmailSender(Protocol):
    async def send(self, template_id: str, to: str, data: dict[str, Any]) -> None:
        ...


@dataclass
class WorkerDependencies:
    """Everything handlers need; collaborators left as None make their job type fail."""
    session_factory: async_sessionmaker[AsyncSession]
    queue: JobQueue
    model_client: ProposalModelClient | None = None
    status_store: PipelineStatusStore = field(default_factory=lambda: pipeline_status_store)
    profile_pipeline: ProfilePipeline | None = None
    monthly_refresher: MonthlyRefresher | None = None
    email_sender: EmailSender | None = None


# Handlers

async def handle_generate_profile(payload: GenerateProfilePayload, deps: WorkerDependencies) -> None:
    user_id = payload.user_id
    status = deps.status_store
    status.set_stage(user_id, PipelineStage.STARTING)

    try:
        if deps.profile_pipeline is None:
            raise CollaboratorUnavailableError("No profile pipeline configured")
        result = await deps.profile_pipeline.run(
            user_id,
            payload.orcid,
            on_stage=lambda stage: status.set_stage(user_id, stage),
        )
    except Exception as e:
        status.set_stage(user_id, PipelineStage.ERROR, error=str(e))
        raise

    status.set_stage(
        user_id,
        PipelineStage.COMPLETE,
        warnings=result.warnings,
        result={"publications_found": result.publications_found, "profile_created": result.profile_created},
    )
    logger.info(
        f"Profile generated for user {user_id}: {result.publications_found} publications, "
        f"v{result.profile_version}"
    )

    if result.profile_created:
        await enqueue_for_new_user(deps.queue, user_id)
    else:
        async with deps.session_factory() as session:
            await enqueue_for_profile_update(session, deps.queue, user_id)


async def handle_run_matching(payload: RunMatchingPayload, deps: WorkerDependencies) -> None:
    if deps.model_client is None:
        raise CollaboratorUnavailableError("No model client configured")

    # Short read session; closed before the model call
    async with deps.session_factory() as session:
        pair = await find_eligible_pair(session, payload.researcher_a_id, payload.researcher_b_id)
        if pair is None:
            logger.info(
                f"Pair {payload.researcher_a_id}:{payload.researcher_b_id} not eligible or already "
                "evaluated, skipping"
            )
            return
        context = await assemble_context_for_pair(session, pair)

    if context is None:
        logger.warning(f"Pair {pair.label}: context unavailable, skipping")
        return

    result = await generate_proposals_for_pair(deps.model_client, context)

    async with deps.session_factory() as session:
        summary = await store_proposals_and_result(session, context, result)

    logger.info(
        f"Pair {pair.label}: {len(result.proposals)} proposals generated, {summary.stored} stored, "
        f"{result.discarded} discarded, {result.deduplicated} deduplicated"
    )


async def handle_expand_match_pool(payload: ExpandMatchPoolPayload, deps: WorkerDependencies) -> None:
    async with deps.session_factory() as session:
        result = await expand_match_pools_for_new_user(session, payload.user_id)

    if not result.affected_user_ids:
        logger.info(f"expand_match_pool for user {payload.user_id}: no matching selections")
        return

    for affected_user_id in result.affected_user_ids:
        await enqueue_for_new_pairs(deps.queue, affected_user_id, [payload.user_id])
    logger.info(
        f"expand_match_pool for user {payload.user_id}: {result.entries_created} entries created, "
        f"matching queued for {len(result.affected_user_ids)} users"
    )


async def handle_monthly_refresh(payload: MonthlyRefreshPayload, deps: WorkerDependencies) -> None:
    if deps.monthly_refresher is None:
        raise CollaboratorUnavailableError("No monthly refresher configured")
    outcome = await deps.monthly_refresher.refresh(payload.user_id)
    logger.info(f"monthly_refresh for user {payload.user_id}: {outcome}")


async def handle_send_email(payload: SendEmailPayload, deps: WorkerDependencies) -> None:
    if deps.email_sender is None:
        raise CollaboratorUnavailableError("No email sender configured")
    await deps.email_sender.send(payload.template_id, payload.to, payload.data)
    logger.info(f"send_email {payload.template_id} delivered")


Handler = Callable[[Any, WorkerDependencies], Awaitable[None]]


def handler_for(payload: JobPayload) -> Handler:
    """Exhaustive over the payload union; a new variant without a branch fails type checking."""
    if isinstance(payload, GenerateProfilePayload):
        return handle_generate_profile
    elif isinstance(payload, RunMatchingPayload):
        return handle_run_matching
    elif isinstance(payload, ExpandMatchPoolPayload):
        return handle_expand_match_pool
    elif isinstance(payload, MonthlyRefreshPayload):
        return handle_monthly_refresh
    elif isinstance(payload, SendEmailPayload):
        return handle_send_email
    else:
        assert_never(payload)


def _check_handlers() -> None:
    for payload_type in PAYLOAD_TYPES:
        try:
            handler_for(payload_type.model_construct())
        except AssertionError as e:
            raise RuntimeError(f"No handler registered for {payload_type.__name__}") from e


_check_handlers()


async def dispatch(payload: JobPayload, deps: WorkerDependencies) -> None:
    await handler_for(payload)(payload, deps)


# Worker loop

class Worker:
    """Polls the queue and processes claimed jobs with bounded concurrency.

    Each poll claims at most ``concurrency`` jobs so every claimed job starts
    right away, and a heartbeat renews the lock of each running job so a
    long model call never outlives it.
    """

    def __init__(
        self,
        deps: WorkerDependencies,
        worker_id: str | None = None,
        *,
        batch_size: int | None = None,
        concurrency: int | None = None,
        poll_interval: float | None = None,
        heartbeat_interval: float | None = None,
    ) -> None:
        cfg = settings.worker
        self.deps = deps
        self.worker_id = worker_id or cfg.resolved_worker_id()
        self.batch_size = batch_size or cfg.batch_size
        self.concurrency = concurrency or cfg.concurrency
        self.poll_interval = poll_interval or cfg.poll_interval_seconds
        self.heartbeat_interval = (
            heartbeat_interval or cfg.heartbeat_interval_seconds or deps.queue.lock_timeout / 3
        )
        self._stop_event = asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    @property
    def claim_limit(self) -> int:
        return min(self.batch_size, self.concurrency)

    def stop(self) -> None:
        if not self._stop_event.is_set():
            logger.info(f"Worker {self.worker_id} stopping after in-flight jobs")
        self._stop_event.set()

    async def _heartbeat(self, job_id: int, done: asyncio.Event) -> None:
        while True:
            try:
                await asyncio.wait_for(done.wait(), timeout=self.heartbeat_interval)
                return
            except asyncio.TimeoutError:
                pass
            try:
                if not await self.deps.queue.renew_lock(job_id, self.worker_id):
                    return
            except QueueError as e:
                logger.warning(f"Heartbeat for job {job_id} failed, retrying: {e}")

    async def process_job(self, job: QueuedJob) -> bool:
        """Run one claimed job and record its outcome.

        Returns True only when the job was marked completed; a failure or a
        lock lost before completion returns False.
        """
        queue = self.deps.queue
        done = asyncio.Event()
        heartbeat = asyncio.create_task(self._heartbeat(job.id, done))
        try:
            try:
                if job.payload is None:
                    raise UnknownJobTypeError(f"Unknown job type {job.type!r} for job {job.id}")
                await dispatch(job.payload, self.deps)
            finally:
                done.set()
                await heartbeat
        except Exception as e:
            logger.error(
                f"Job {job.id} ({job.type}) failed on attempt {job.attempts + 1}: {e}",
                exc_info=True,
            )
            await queue.fail(job.id, f"{type(e).__name__}: {e}", worker_id=self.worker_id)
            return False

        return await queue.complete(job.id, worker_id=self.worker_id)

    async def run_once(self) -> int:
        """Claim one batch and process it. Returns the number of jobs claimed."""
        jobs = await self.deps.queue.claim_next(self.worker_id, limit=self.claim_limit)
        if not jobs:
            return 0

        await asyncio.gather(*(self.process_job(job) for job in jobs))
        return len(jobs)

    async def run_forever(self) -> None:
        """Poll until stop() or SIGINT/SIGTERM."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                # add_signal_handler is unavailable off the main thread and on Windows
                pass

        logger.info(
            f"Worker {self.worker_id} started (batch_size={self.batch_size}, "
            f"concurrency={self.concurrency}, poll={self.poll_interval}s)"
        )
        while not self.stopping:
            try:
                claimed = await self.run_once()
            except Exception as e:
                logger.error(f"Worker {self.worker_id} poll failed: {e}", exc_info=True)
                claimed = 0

            if claimed == 0:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        logger.info(f"Worker {self.worker_id} stopped")
