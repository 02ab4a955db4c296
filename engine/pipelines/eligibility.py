"""Eligible pair resolution.

A pair (A, B) with A < B needs evaluation when:
    - at least one directed pool entry connects the two users,
    - the selection is mutual, or the non-selecting side allows incoming proposals,
    - both users have a researcher profile,
    - no MatchingResult exists at the pair's current (profile_version_a, profile_version_b).

All of this is decided by one query; the only work done in Python is mapping
the selection direction onto per-side visibility.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import and_, case, exists, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from engine import models
from engine.models import Visibility

logger = logging.getLogger(__name__)


def order_user_ids(first: int, second: int) -> tuple[int, int]:
    """Canonical pair order used by the resolver and every storage path."""
    if first == second:
        raise ValueError(f"A pair needs two distinct users, got {first} twice")
    return (first, second) if first < second else (second, first)


@dataclass(frozen=True)
class PairCandidate:
    """One unit of eligible matching work."""

    researcher_a_id: int
    researcher_b_id: int
    profile_version_a: int
    profile_version_b: int
    visibility_a: Visibility = Visibility.VISIBLE
    visibility_b: Visibility = Visibility.VISIBLE

    @property
    def label(self) -> str:
        return (
            f"{self.researcher_a_id}:{self.researcher_b_id}"
            f"@v{self.profile_version_a}/v{self.profile_version_b}"
        )

    @property
    def is_mutual(self) -> bool:
        return self.visibility_a == Visibility.VISIBLE and self.visibility_b == Visibility.VISIBLE


def _visibility(a_selected_b: bool, b_selected_a: bool) -> tuple[Visibility, Visibility]:
    if a_selected_b and b_selected_a:
        return Visibility.VISIBLE, Visibility.VISIBLE
    if a_selected_b:
        return Visibility.VISIBLE, Visibility.PENDING_OTHER_INTEREST
    return Visibility.PENDING_OTHER_INTEREST, Visibility.VISIBLE


async def compute_eligible_pairs(
    session: AsyncSession,
    *,
    for_user_id: int | None = None,
) -> list[PairCandidate]:
    """Return every pair that needs evaluation at current profile versions.

    Args:
        session: Database session.
        for_user_id: Restrict to pairs involving this user; None means all users.

    Returns:
        Pair candidates sorted by (researcher_a_id, researcher_b_id). Calling
        this twice with no intervening writes returns the same list.
    """
    entry = models.MatchPoolEntry
    low = case((entry.user_id < entry.target_user_id, entry.user_id), else_=entry.target_user_id)
    high = case((entry.user_id < entry.target_user_id, entry.target_user_id), else_=entry.user_id)

    pair_query = select(low.label("a_id"), high.label("b_id")).where(entry.user_id != entry.target_user_id)
    if for_user_id is not None:
        pair_query = pair_query.where(
            or_(entry.user_id == for_user_id, entry.target_user_id == for_user_id)
        )
    pairs = pair_query.distinct().subquery("pairs")

    user_a = aliased(models.User)
    user_b = aliased(models.User)
    profile_a = aliased(models.ResearcherProfile)
    profile_b = aliased(models.ResearcherProfile)
    a_to_b = aliased(models.MatchPoolEntry)
    b_to_a = aliased(models.MatchPoolEntry)

    already_evaluated = exists().where(
        models.MatchingResult.researcher_a_id == pairs.c.a_id,
        models.MatchingResult.researcher_b_id == pairs.c.b_id,
        models.MatchingResult.profile_version_a == profile_a.profile_version,
        models.MatchingResult.profile_version_b == profile_b.profile_version,
    )

    stmt = (
        select(
            pairs.c.a_id,
            pairs.c.b_id,
            profile_a.profile_version,
            profile_b.profile_version,
            a_to_b.id,
            b_to_a.id,
        )
        .select_from(pairs)
        .join(user_a, user_a.id == pairs.c.a_id)
        .join(user_b, user_b.id == pairs.c.b_id)
        .join(profile_a, profile_a.user_id == pairs.c.a_id)
        .join(profile_b, profile_b.user_id == pairs.c.b_id)
        .outerjoin(a_to_b, and_(a_to_b.user_id == pairs.c.a_id, a_to_b.target_user_id == pairs.c.b_id))
        .outerjoin(b_to_a, and_(b_to_a.user_id == pairs.c.b_id, b_to_a.target_user_id == pairs.c.a_id))
        .where(
            or_(
                and_(a_to_b.id.is_not(None), b_to_a.id.is_not(None)),
                and_(a_to_b.id.is_not(None), user_b.allow_incoming_proposals.is_(True)),
                and_(b_to_a.id.is_not(None), user_a.allow_incoming_proposals.is_(True)),
            ),
            ~already_evaluated,
        )
        .order_by(pairs.c.a_id, pairs.c.b_id)
    )

    rows = (await session.execute(stmt)).all()

    candidates = []
    for a_id, b_id, version_a, version_b, a_to_b_id, b_to_a_id in rows:
        visibility_a, visibility_b = _visibility(a_to_b_id is not None, b_to_a_id is not None)
        candidates.append(
            PairCandidate(
                researcher_a_id=a_id,
                researcher_b_id=b_id,
                profile_version_a=version_a,
                profile_version_b=version_b,
                visibility_a=visibility_a,
                visibility_b=visibility_b,
            )
        )

    scope = f"user {for_user_id}" if for_user_id is not None else "all users"
    logger.debug(f"Resolved {len(candidates)} eligible pairs for {scope}")
    return candidates


async def find_eligible_pair(session: AsyncSession, user_x: int, user_y: int) -> PairCandidate | None:
    """Re-check a single pair; None means it is not (or no longer) eligible."""
    a_id, b_id = order_user_ids(user_x, user_y)
    for candidate in await compute_eligible_pairs(session, for_user_id=a_id):
        if candidate.researcher_b_id == b_id:
            return candidate
    return None
