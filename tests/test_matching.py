"""Tests for proposal parsing, validation, deduplication and the matching engine."""

import json

import pytest

from ai.proposal_prompt import (
    RETRY_MESSAGE,
    ProposalParseError,
    build_user_message,
    parse_proposal_output,
    select_abstracts,
    validate_proposal,
)
from config.collaboration_types import normalize_collaboration_type
from engine.pipelines.context import (
    ExistingProposal,
    PairContext,
    PublicationContext,
    ResearcherContext,
    parse_user_submitted_texts,
)
from engine.pipelines.eligibility import PairCandidate
from engine.pipelines.matching import (
    ModelOutputError,
    deduplicate_proposals,
    generate_proposals_for_pair,
)
from tests.conftest import FakeModelClient, model_output, proposal_dict


def publication(pub_id: int, pmid: str, *, year: int = 2020, position: str = "middle", abstract: str = "An abstract.") -> PublicationContext:
    return PublicationContext(
        id=pub_id,
        pmid=pmid,
        title=f"Paper {pmid}",
        journal="Cell",
        year=year,
        author_position=position,
        abstract=abstract,
    )


def researcher(user_id: int, name: str, publications=None) -> ResearcherContext:
    return ResearcherContext(
        user_id=user_id,
        name=name,
        institution="Example University",
        department=None,
        research_summary=f"{name} studies RNA-binding proteins.",
        techniques=["live-cell imaging"],
        publications=publications or [],
    )


def make_context(existing=None) -> PairContext:
    return PairContext(
        pair=PairCandidate(researcher_a_id=1, researcher_b_id=2, profile_version_a=1, profile_version_b=1),
        researcher_a=researcher(1, "Ada", [publication(10, "111"), publication(11, "112")]),
        researcher_b=researcher(2, "Bo", [publication(20, "221")]),
        existing_proposals=existing or [],
    )


# ── collaboration types ──


class TestCollaborationTypes:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("mechanistic extension", "mechanistic extension"),
            ("Methodological_Enhancement", "methodological enhancement"),
            ("translational-application", "translational application"),
            ("  Translational  ", "translational application"),
            ("speculative vibes", None),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_collaboration_type(raw) == expected


# ── output parsing ──


class TestParseOutput:
    def test_plain_array(self):
        assert parse_proposal_output(model_output(proposal_dict())) == [proposal_dict()]

    def test_code_fences_stripped(self):
        raw = "```json\n" + model_output(proposal_dict()) + "\n```"
        assert len(parse_proposal_output(raw)) == 1

    def test_trailing_commas_tolerated(self):
        assert parse_proposal_output('[{"title": "x", "anchoring_publication_pmids": ["1",],},]') == [
            {"title": "x", "anchoring_publication_pmids": ["1"]}
        ]

    def test_commas_inside_strings_are_preserved(self):
        rationale = "Combine readouts {imaging, proteomics,} and panels [A, B,] across labs."
        raw = model_output(proposal_dict(detailed_rationale=rationale))
        assert parse_proposal_output(raw)[0]["detailed_rationale"] == rationale

    def test_commas_inside_strings_survive_trailing_comma_cleanup(self):
        raw = '[{"title": "Sets {a, b,} and lists [c,]", "note": "quote \\" then ,}",},]'
        assert parse_proposal_output(raw) == [{"title": "Sets {a, b,} and lists [c,]", "note": 'quote " then ,}'}]

    def test_empty_array(self):
        assert parse_proposal_output("[]") == []

    def test_truncates_to_max(self):
        raw = json.dumps([proposal_dict(title=f"t{i}") for i in range(5)])
        parsed = parse_proposal_output(raw, max_proposals=3)
        assert [p["title"] for p in parsed] == ["t0", "t1", "t2"]

    @pytest.mark.parametrize("raw", ["not json", '{"title": "x"}', ""])
    def test_rejects_non_arrays(self, raw):
        with pytest.raises(ProposalParseError):
            parse_proposal_output(raw)


# ── validation ──


class TestValidateProposal:
    def test_valid_candidate(self):
        draft, errors = validate_proposal(
            proposal_dict(collaboration_type="Mechanistic", confidence_tier="HIGH", anchoring_publication_pmids=["111", 221]),
            {"111", "221"},
        )
        assert errors == []
        assert draft.collaboration_type == "mechanistic extension"
        assert draft.confidence_tier == "high"
        assert draft.anchoring_publication_pmids == ["111", "221"]

    def test_missing_field(self):
        candidate = proposal_dict()
        del candidate["lab_b_benefits"]
        draft, errors = validate_proposal(candidate, set())
        assert draft is None
        assert "missing or empty field: lab_b_benefits" in errors

    def test_blank_field(self):
        draft, _ = validate_proposal(proposal_dict(title="   "), set())
        assert draft is None

    def test_unknown_collaboration_type(self):
        draft, errors = validate_proposal(proposal_dict(collaboration_type="joint grant"), set())
        assert draft is None
        assert any("collaboration_type" in e for e in errors)

    def test_invalid_confidence_tier(self):
        draft, _ = validate_proposal(proposal_dict(confidence_tier="certain"), set())
        assert draft is None

    def test_unknown_pmid(self):
        draft, errors = validate_proposal(proposal_dict(anchoring_publication_pmids=["999"]), {"111"})
        assert draft is None
        assert any("999" in e for e in errors)

    def test_pmids_must_be_a_list(self):
        draft, _ = validate_proposal(proposal_dict(anchoring_publication_pmids="111"), {"111"})
        assert draft is None

    def test_non_object(self):
        assert validate_proposal(["title"], set()) == (None, ["proposal must be a JSON object"])


# ── prompt assembly ──


class TestPromptAssembly:
    def test_abstract_selection_order(self):
        pubs = [
            publication(1, "1", year=2018, position="middle"),
            publication(2, "2", year=2021, position="first"),
            publication(3, "3", year=2015, position="last"),
            publication(4, "4", year=2022, position="last"),
            publication(5, "5", year=2023, position="middle", abstract=""),
        ]
        assert [p.pmid for p in select_abstracts(pubs, limit=10)] == ["4", "3", "2", "1"]
        assert [p.pmid for p in select_abstracts(pubs, limit=2)] == ["4", "3"]

    def test_user_message_lists_pmids_and_existing(self):
        context = make_context(existing=[ExistingProposal("Old idea", "Old question?", 1, 1)])
        message = build_user_message(context)

        assert "PMID:111" in message
        assert "PMID:221" in message
        assert "Existing Proposals" in message
        assert "Old idea" in message

    def test_user_submitted_texts_filtered(self):
        raw = [{"label": "Priority", "content": "Find a mouse model"}, {"label": "x"}, "junk", {"label": "y", "content": " "}]
        assert parse_user_submitted_texts(raw) == [{"label": "Priority", "content": "Find a mouse model"}]
        assert parse_user_submitted_texts(None) == []


# ── deduplication ──


class TestDeduplicate:
    def test_identical_candidates_collapse(self):
        draft, _ = validate_proposal(proposal_dict(), set())
        twin, _ = validate_proposal(proposal_dict(), set())

        unique, dropped = deduplicate_proposals([draft, twin], make_context(), threshold=85)
        assert len(unique) == 1
        assert dropped == 1

    def test_matches_stored_proposal_by_question(self):
        draft, _ = validate_proposal(proposal_dict(title="Something new entirely"), set())
        existing = ExistingProposal(
            "Different title",
            "does oxidative stress change TDP-43 condensate dynamics in neurons",
            1,
            1,
        )
        unique, dropped = deduplicate_proposals([draft], make_context([existing]), threshold=85)
        assert unique == []
        assert dropped == 1

    def test_distinct_candidates_survive(self):
        first, _ = validate_proposal(proposal_dict(), set())
        second, _ = validate_proposal(
            proposal_dict(
                title="Mouse models for stress granule clearance",
                scientific_question="Can autophagy inducers clear granules in a knock-in mouse?",
            ),
            set(),
        )
        unique, dropped = deduplicate_proposals([first, second], make_context(), threshold=85)
        assert len(unique) == 2
        assert dropped == 0


# ── engine ──


class TestGenerateProposals:
    async def test_valid_output(self):
        client = FakeModelClient(model_output(proposal_dict(anchoring_publication_pmids=["111"])))
        result = await generate_proposals_for_pair(client, make_context())

        assert len(result.proposals) == 1
        assert result.model == "fake-model"
        assert result.retried is False
        assert len(client.calls) == 1

    async def test_counts_discarded_and_deduplicated(self):
        raw = model_output(
            proposal_dict(),
            proposal_dict(),
            proposal_dict(title="Bad", anchoring_publication_pmids=["404"]),
        )
        result = await generate_proposals_for_pair(FakeModelClient(raw), make_context())

        assert len(result.proposals) == 1
        assert result.deduplicated == 1
        assert result.discarded == 1
        assert result.raw_count == 3

    async def test_empty_array_is_no_proposal(self):
        result = await generate_proposals_for_pair(FakeModelClient("[]"), make_context())
        assert result.proposals == []
        assert result.discarded == 0

    async def test_unparseable_output_retried_once(self):
        client = FakeModelClient("Sure! Here are some ideas:", model_output(proposal_dict()))
        result = await generate_proposals_for_pair(client, make_context(), max_attempts=2)

        assert result.retried is True
        assert len(result.proposals) == 1
        assert len(client.calls) == 2
        retry_messages = client.calls[1]
        assert [m["role"] for m in retry_messages] == ["user", "assistant", "user"]
        assert retry_messages[-1]["content"] == RETRY_MESSAGE

    async def test_unparseable_after_retry_raises(self):
        client = FakeModelClient("nope", "still nope")
        with pytest.raises(ModelOutputError):
            await generate_proposals_for_pair(client, make_context(), max_attempts=2)
        assert len(client.calls) == 2

    async def test_retry_disabled(self):
        client = FakeModelClient("nope")
        with pytest.raises(ModelOutputError):
            await generate_proposals_for_pair(client, make_context(), max_attempts=1)
        assert len(client.calls) == 1
