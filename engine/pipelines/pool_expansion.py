"""Add a newly joined user to other users' standing affiliation and all-users selections."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from engine import models
from engine.models import PoolSource

logger = logging.getLogger(__name__)


class PoolExpansionError(Exception):
    """Raised when new pool entries cannot be written."""
    pass


@dataclass
class PoolExpansionResult:
    user_id: int
    entries_created: int = 0
    affected_user_ids: list[int] = field(default_factory=list)


def _same(left: str | None, right: str | None) -> bool:
    return left is not None and right is not None and left.strip().lower() == right.strip().lower()


def match_selection(selection: models.AffiliationSelection, user: models.User) -> PoolSource | None:
    """Source tag for the entry this selection implies for ``user``, or None."""
    if selection.select_all:
        return PoolSource.ALL_USERS
    if not selection.institution or not _same(selection.institution, user.institution):
        return None
    if selection.department and not _same(selection.department, user.department):
        return None
    return PoolSource.AFFILIATION_SELECT


async def expand_match_pools_for_new_user(session: AsyncSession, user_id: int) -> PoolExpansionResult:
    """Create ``(selector → user_id)`` pool entries for every matching selection.

    A selector with several matching selections gets one entry; ``all_users``
    wins over ``affiliation_select``. Entries that already exist (for example
    an individual selection made earlier) are left untouched.

    Returns:
        Entries created and every selector whose selections matched.
    """
    user = await session.get(models.User, user_id)
    if user is None:
        logger.warning(f"User {user_id} not found, skipping pool expansion")
        return PoolExpansionResult(user_id=user_id)

    selections = (
        await session.scalars(
            select(models.AffiliationSelection)
            .where(models.AffiliationSelection.user_id != user_id)
            .order_by(models.AffiliationSelection.id)
        )
    ).all()

    sources: dict[int, PoolSource] = {}
    for selection in selections:
        source = match_selection(selection, user)
        if source is None:
            continue
        if source == PoolSource.ALL_USERS or selection.user_id not in sources:
            sources[selection.user_id] = source

    if not sources:
        return PoolExpansionResult(user_id=user_id)

    existing = set(
        (
            await session.scalars(
                select(models.MatchPoolEntry.user_id).where(
                    models.MatchPoolEntry.target_user_id == user_id,
                    models.MatchPoolEntry.user_id.in_(list(sources)),
                )
            )
        ).all()
    )

    new_entries = [
        models.MatchPoolEntry(user_id=selector_id, target_user_id=user_id, source=source.value)
        for selector_id, source in sources.items()
        if selector_id not in existing
    ]
    created = len(new_entries)
    try:
        session.add_all(new_entries)
        await session.commit()
    except IntegrityError as e:
        # A concurrent writer added one of the entries; the retried job will skip it
        await session.rollback()
        raise PoolExpansionError(f"Pool entries for user {user_id} changed concurrently: {e}") from e
    except Exception as e:
        logger.error(f"Pool expansion for user {user_id} failed: {e}", exc_info=True)
        await session.rollback()
        raise PoolExpansionError(f"Pool expansion for user {user_id} failed: {e}") from e

    affected = list(sources)
    logger.info(f"User {user_id}: {created} pool entries created across {len(affected)} users' pools")
    return PoolExpansionResult(user_id=user_id, entries_created=created, affected_user_ids=affected)
