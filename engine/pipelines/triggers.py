"""Entry points other subsystems use to request matching work.

Every trigger durably enqueues jobs and returns once they are committed;
nothing runs in the caller's process after it returns.
"""
from __future__ import annotations

import logging

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from engine import models
from engine.jobs import ExpandMatchPoolPayload, JobPriority, RunMatchingPayload
from engine.pipelines.eligibility import compute_eligible_pairs, order_user_ids
from engine.queue import JobQueue

logger = logging.getLogger(__name__)


def _run_matching(user_id: int, other_id: int) -> RunMatchingPayload:
    a_id, b_id = order_user_ids(user_id, other_id)
    return RunMatchingPayload(researcher_a_id=a_id, researcher_b_id=b_id)


async def enqueue_for_new_pair(queue: JobQueue, user_id: int, target_user_id: int) -> int:
    """Queue evaluation of one pair after a pool entry was added."""
    job_id = await queue.enqueue(_run_matching(user_id, target_user_id))
    logger.info(f"Enqueued run_matching for pair {user_id}/{target_user_id} (job {job_id})")
    return job_id


async def enqueue_for_new_pairs(queue: JobQueue, user_id: int, target_user_ids: list[int]) -> int:
    """Queue evaluation of many pairs sharing one user (affiliation or all-users selections)."""
    enqueued = 0
    for target_user_id in dict.fromkeys(target_user_ids):
        if target_user_id == user_id:
            continue
        await queue.enqueue(_run_matching(user_id, target_user_id))
        enqueued += 1
    logger.info(f"Enqueued {enqueued} run_matching jobs for user {user_id}")
    return enqueued


async def enqueue_for_profile_update(session: AsyncSession, queue: JobQueue, user_id: int) -> int:
    """Queue every pair that touches ``user_id`` through a pool entry, in either direction."""
    entries = (
        await session.execute(
            select(models.MatchPoolEntry.user_id, models.MatchPoolEntry.target_user_id).where(
                or_(
                    models.MatchPoolEntry.user_id == user_id,
                    models.MatchPoolEntry.target_user_id == user_id,
                )
            )
        )
    ).all()

    others = []
    for selector_id, target_id in entries:
        other_id = target_id if selector_id == user_id else selector_id
        if other_id != user_id and other_id not in others:
            others.append(other_id)

    for other_id in others:
        await queue.enqueue(_run_matching(user_id, other_id))

    logger.info(f"Enqueued {len(others)} run_matching jobs for profile update of user {user_id}")
    return len(others)


async def enqueue_for_new_user(queue: JobQueue, user_id: int) -> int:
    """Queue match-pool expansion for a user who just finished onboarding."""
    job_id = await queue.enqueue(ExpandMatchPoolPayload(user_id=user_id))
    logger.info(f"Enqueued expand_match_pool for user {user_id} (job {job_id})")
    return job_id


async def enqueue_scheduled_sweep(session: AsyncSession, queue: JobQueue) -> int:
    """Queue every globally eligible pair at background priority."""
    pairs = await compute_eligible_pairs(session)
    if not pairs:
        logger.info("Scheduled sweep: no eligible pairs")
        return 0

    for pair in pairs:
        await queue.enqueue(
            RunMatchingPayload(researcher_a_id=pair.researcher_a_id, researcher_b_id=pair.researcher_b_id),
            priority=JobPriority.BACKGROUND,
        )
    logger.info(f"Scheduled sweep: enqueued {len(pairs)} run_matching jobs")
    return len(pairs)
