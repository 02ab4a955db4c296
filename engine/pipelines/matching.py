"""Matching engine: pair context → model call → validated, deduplicated proposals.

The model call happens outside any database session. Output that cannot be
parsed gets exactly one stricter retry; individual malformed candidates are
discarded and counted, never retried.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from rapidfuzz import fuzz, utils

from ai.llm_client import ProposalModelClient
from ai.proposal_prompt import (
    RETRY_MESSAGE,
    SYSTEM_PROMPT,
    ProposalDraft,
    ProposalParseError,
    build_user_message,
    parse_proposal_output,
    validate_proposal,
)
from engine.config import settings
from engine.pipelines.context import PairContext

logger = logging.getLogger(__name__)


class ModelOutputError(Exception):
    """Raised when the model output stays unparseable after the stricter retry."""
    pass


@dataclass
class ProposalGenerationResult:
    """Outcome of one model evaluation for a pair."""
    proposals: list[ProposalDraft] = field(default_factory=list)
    discarded: int = 0
    deduplicated: int = 0
    attempts: int = 1
    retried: bool = False
    model: str = ""
    raw_count: int = 0


def is_similar(first: str, second: str, threshold: int) -> bool:
    score = fuzz.token_sort_ratio(first, second, processor=utils.default_process)
    return score >= threshold


def deduplicate_proposals(
    drafts: list[ProposalDraft],
    context: PairContext,
    threshold: int | None = None,
) -> tuple[list[ProposalDraft], int]:
    """Drop drafts whose title or question matches a stored proposal or an earlier draft.

    Returns:
        (unique drafts, number dropped)
    """
    threshold = threshold if threshold is not None else settings.matching.dedup_similarity_threshold
    seen = [(p.title, p.scientific_question) for p in context.existing_proposals]
    unique: list[ProposalDraft] = []
    duplicates = 0

    for draft in drafts:
        duplicate_of = next(
            (
                title
                for title, question in seen
                if is_similar(draft.title, title, threshold)
                or is_similar(draft.scientific_question, question, threshold)
            ),
            None,
        )
        if duplicate_of is not None:
            duplicates += 1
            logger.info(f"Pair {context.pair.label}: dropping {draft.title!r}, duplicates {duplicate_of!r}")
            continue
        unique.append(draft)
        seen.append((draft.title, draft.scientific_question))

    return unique, duplicates


async def generate_proposals_for_pair(
    client: ProposalModelClient,
    context: PairContext,
    *,
    max_attempts: int | None = None,
) -> ProposalGenerationResult:
    """Ask the model for proposals and keep the ones that survive validation and dedup.

    Args:
        client: Model client; transient API retries happen inside it.
        context: Assembled pair context.
        max_attempts: 1 disables the stricter parse retry. Defaults to settings.

    Raises:
        ModelCallError: model API failure (from the client).
        ModelOutputError: output unparseable on every allowed attempt.
    """
    max_attempts = max_attempts if max_attempts is not None else settings.matching.parse_max_attempts
    label = context.pair.label
    messages = [{"role": "user", "content": build_user_message(context)}]

    response = await client.complete(SYSTEM_PROMPT, messages)
    attempts = 1
    try:
        raw_candidates = parse_proposal_output(response.text)
    except ProposalParseError as first_error:
        if max_attempts < 2:
            raise ModelOutputError(f"Pair {label}: unparseable model output: {first_error}") from first_error

        logger.warning(f"Pair {label}: unparseable model output, retrying with stricter instructions")
        messages.append({"role": "assistant", "content": response.text})
        messages.append({"role": "user", "content": RETRY_MESSAGE})
        response = await client.complete(SYSTEM_PROMPT, messages)
        attempts = 2
        try:
            raw_candidates = parse_proposal_output(response.text)
        except ProposalParseError as retry_error:
            raise ModelOutputError(
                f"Pair {label}: model output unparseable after stricter retry: {retry_error}"
            ) from retry_error

    known_pmids = context.known_pmids()
    valid: list[ProposalDraft] = []
    discarded = 0
    for index, candidate in enumerate(raw_candidates):
        draft, errors = validate_proposal(candidate, known_pmids)
        if draft is None:
            discarded += 1
            logger.info(f"Pair {label}: discarded candidate {index}: {'; '.join(errors)}")
        else:
            valid.append(draft)

    unique, deduplicated = deduplicate_proposals(valid, context)

    result = ProposalGenerationResult(
        proposals=unique,
        discarded=discarded,
        deduplicated=deduplicated,
        attempts=attempts,
        retried=attempts > 1,
        model=response.model,
        raw_count=len(raw_candidates),
    )
    logger.info(
        f"Pair {label}: {result.raw_count} candidates, {len(unique)} kept, "
        f"{discarded} discarded, {deduplicated} deduplicated"
    )
    return result
