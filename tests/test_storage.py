"""Tests for the proposal store."""

from sqlalchemy import func, select

from engine import models
from engine.models import MatchOutcome, Visibility
from engine.pipelines.context import assemble_context_for_pair
from engine.pipelines.eligibility import find_eligible_pair
from engine.pipelines.matching import ProposalGenerationResult
from engine.pipelines.storage import store_proposals_and_result
from ai.proposal_prompt import validate_proposal
from tests.conftest import proposal_dict


PUBLICATIONS_A = [{"pmid": "111", "title": "Condensates in neurons", "year": 2022, "author_position": "last"}]
PUBLICATIONS_B = [{"pmid": "221", "title": "Lattice light-sheet imaging", "year": 2021, "author_position": "first"}]


async def setup_pair(session_factory, make_user, add_pool_entry, *, mutual=True):
    a = await make_user("Ada", publications=PUBLICATIONS_A)
    b = await make_user("Bo", allow_incoming=True, publications=PUBLICATIONS_B)
    await add_pool_entry(a, b)
    if mutual:
        await add_pool_entry(b, a)
    async with session_factory() as s:
        pair = await find_eligible_pair(s, a, b)
        context = await assemble_context_for_pair(s, pair)
    return a, b, context


def generation(*candidates, discarded=0, deduplicated=0) -> ProposalGenerationResult:
    drafts = []
    for candidate in candidates:
        draft, errors = validate_proposal(candidate, {"111", "221"})
        assert errors == []
        drafts.append(draft)
    return ProposalGenerationResult(
        proposals=drafts, discarded=discarded, deduplicated=deduplicated, model="fake-model"
    )


async def count(session_factory, model) -> int:
    async with session_factory() as s:
        return await s.scalar(select(func.count()).select_from(model))


class TestStoreProposals:
    async def test_stores_proposals_and_result(self, session_factory, make_user, add_pool_entry):
        a, b, context = await setup_pair(session_factory, make_user, add_pool_entry)
        result = generation(proposal_dict(anchoring_publication_pmids=["111", "221"]), discarded=2)

        async with session_factory() as s:
            summary = await store_proposals_and_result(s, context, result)

        assert summary.stored == 1
        assert summary.already_evaluated is False
        async with session_factory() as s:
            stored = await s.get(models.MatchingResult, summary.matching_result_id)
            proposal = await s.scalar(select(models.CollaborationProposal))
            pub_ids = set((await s.scalars(select(models.Publication.id))).all())

        assert stored.outcome == MatchOutcome.PROPOSALS_GENERATED.value
        assert (stored.proposal_count, stored.discarded_count) == (1, 2)
        assert (proposal.researcher_a_id, proposal.researcher_b_id) == (a, b)
        assert set(proposal.anchoring_publication_ids) == pub_ids
        assert proposal.llm_model == "fake-model"
        assert proposal.llm_reasoning == "Complementary methods and shared target."

    async def test_no_proposals_records_outcome(self, session_factory, make_user, add_pool_entry):
        _, _, context = await setup_pair(session_factory, make_user, add_pool_entry)

        async with session_factory() as s:
            summary = await store_proposals_and_result(s, context, generation(deduplicated=1))

        assert summary.stored == 0
        async with session_factory() as s:
            stored = await s.get(models.MatchingResult, summary.matching_result_id)
        assert stored.outcome == MatchOutcome.NO_PROPOSAL.value
        assert stored.deduplicated_count == 1
        assert await count(session_factory, models.CollaborationProposal) == 0

    async def test_one_directional_visibility(self, session_factory, make_user, add_pool_entry):
        _, _, context = await setup_pair(session_factory, make_user, add_pool_entry, mutual=False)

        async with session_factory() as s:
            await store_proposals_and_result(s, context, generation(proposal_dict()))
        async with session_factory() as s:
            proposal = await s.scalar(select(models.CollaborationProposal))

        assert proposal.visibility_a == Visibility.VISIBLE.value
        assert proposal.visibility_b == Visibility.PENDING_OTHER_INTEREST.value

    async def test_second_store_is_a_no_op(self, session_factory, make_user, add_pool_entry):
        _, _, context = await setup_pair(session_factory, make_user, add_pool_entry)

        async with session_factory() as s:
            first = await store_proposals_and_result(s, context, generation(proposal_dict()))
        async with session_factory() as s:
            second = await store_proposals_and_result(
                s, context, generation(proposal_dict(title="A different idea", scientific_question="Why?"))
            )

        assert second.already_evaluated is True
        assert second.stored == 0
        assert second.matching_result_id == first.matching_result_id
        assert await count(session_factory, models.MatchingResult) == 1
        assert await count(session_factory, models.CollaborationProposal) == 1
