"""Proposal store: proposals plus one MatchingResult per pair-version tuple, in one transaction.

The unique constraint on (researcher_a_id, researcher_b_id, profile_version_a,
profile_version_b) is what makes evaluation idempotent. A worker that loses
the race gets an IntegrityError, rolls back its proposals with it and reports
a no-op.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from engine import models
from engine.models import MatchOutcome
from engine.pipelines.context import PairContext
from engine.pipelines.matching import ProposalGenerationResult

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when proposals or the matching result cannot be stored."""
    pass


@dataclass
class StoreSummary:
    stored: int
    unresolved_pmids: int = 0
    already_evaluated: bool = False
    matching_result_id: int | None = None


async def _existing_result_id(session: AsyncSession, context: PairContext) -> int | None:
    pair = context.pair
    return await session.scalar(
        select(models.MatchingResult.id).where(
            models.MatchingResult.researcher_a_id == pair.researcher_a_id,
            models.MatchingResult.researcher_b_id == pair.researcher_b_id,
            models.MatchingResult.profile_version_a == pair.profile_version_a,
            models.MatchingResult.profile_version_b == pair.profile_version_b,
        )
    )


async def store_proposals_and_result(
    session: AsyncSession,
    context: PairContext,
    result: ProposalGenerationResult,
) -> StoreSummary:
    """Persist the surviving proposals and exactly one MatchingResult.

    Args:
        session: A fresh session; this function owns its transaction.
        context: Pair context the proposals were generated from.
        result: Output of generate_proposals_for_pair.

    Returns:
        StoreSummary. ``already_evaluated`` is True when another worker stored
        this tuple first, in which case nothing from this call was written.

    Raises:
        StorageError: on any database failure other than the tuple conflict.
    """
    pair = context.pair
    outcome = MatchOutcome.PROPOSALS_GENERATED if result.proposals else MatchOutcome.NO_PROPOSAL

    pmids = {pmid for draft in result.proposals for pmid in draft.anchoring_publication_pmids}
    pmid_to_id: dict[str, int] = {}
    if pmids:
        rows = await session.execute(
            select(models.Publication.pmid, models.Publication.id).where(
                models.Publication.pmid.in_(pmids),
                models.Publication.user_id.in_([pair.researcher_a_id, pair.researcher_b_id]),
            )
        )
        for pmid, publication_id in rows.all():
            pmid_to_id.setdefault(pmid, publication_id)

    unresolved = 0
    try:
        # Ledger row first so a losing worker fails before writing any proposal
        matching_result = models.MatchingResult(
            researcher_a_id=pair.researcher_a_id,
            researcher_b_id=pair.researcher_b_id,
            profile_version_a=pair.profile_version_a,
            profile_version_b=pair.profile_version_b,
            outcome=outcome.value,
            proposal_count=len(result.proposals),
            discarded_count=result.discarded,
            deduplicated_count=result.deduplicated,
            llm_model=result.model or None,
        )
        session.add(matching_result)
        await session.flush()

        for draft in result.proposals:
            anchoring_ids = []
            for pmid in draft.anchoring_publication_pmids:
                if pmid in pmid_to_id:
                    anchoring_ids.append(pmid_to_id[pmid])
                else:
                    unresolved += 1

            session.add(
                models.CollaborationProposal(
                    researcher_a_id=pair.researcher_a_id,
                    researcher_b_id=pair.researcher_b_id,
                    title=draft.title,
                    collaboration_type=draft.collaboration_type,
                    scientific_question=draft.scientific_question,
                    one_line_summary_a=draft.one_line_summary_a,
                    one_line_summary_b=draft.one_line_summary_b,
                    detailed_rationale=draft.detailed_rationale,
                    lab_a_contributions=draft.lab_a_contributions,
                    lab_b_contributions=draft.lab_b_contributions,
                    lab_a_benefits=draft.lab_a_benefits,
                    lab_b_benefits=draft.lab_b_benefits,
                    proposed_first_experiment=draft.proposed_first_experiment,
                    anchoring_publication_ids=anchoring_ids,
                    confidence_tier=draft.confidence_tier,
                    llm_reasoning=draft.reasoning,
                    llm_model=result.model,
                    visibility_a=pair.visibility_a.value,
                    visibility_b=pair.visibility_b.value,
                    profile_version_a=pair.profile_version_a,
                    profile_version_b=pair.profile_version_b,
                )
            )

        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        winner = await _existing_result_id(session, context)
        if winner is None:
            logger.error(f"Pair {pair.label}: integrity error without a stored result", exc_info=True)
            raise StorageError(f"Pair {pair.label}: integrity error: {e}") from e
        logger.info(f"Pair {pair.label}: already evaluated by another worker (result {winner}), skipping")
        return StoreSummary(stored=0, already_evaluated=True, matching_result_id=winner)
    except Exception as e:
        logger.error(f"Pair {pair.label}: storage failed: {e}", exc_info=True)
        await session.rollback()
        raise StorageError(f"Pair {pair.label}: storage failed: {e}") from e

    if unresolved:
        logger.warning(f"Pair {pair.label}: {unresolved} anchoring PMIDs did not resolve to publications")
    logger.info(
        f"Pair {pair.label}: stored {len(result.proposals)} proposals, outcome={outcome.value}"
    )
    return StoreSummary(
        stored=len(result.proposals),
        unresolved_pmids=unresolved,
        matching_result_id=matching_result.id,
    )
