"""Prompt construction and output parsing for collaboration proposals.

Builds the per-pair user message, parses the model's JSON array (tolerating
code fences and trailing commas) and validates each candidate against the
proposal schema.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from config.collaboration_types import (
    COLLABORATION_TYPE_TAXONOMY,
    CONFIDENCE_TIERS,
    normalize_collaboration_type,
)
from engine.config import settings
from engine.pipelines.context import PairContext, PublicationContext, ResearcherContext

logger = logging.getLogger(__name__)

REQUIRED_STRING_FIELDS = (
    "title",
    "collaboration_type",
    "scientific_question",
    "one_line_summary_a",
    "one_line_summary_b",
    "detailed_rationale",
    "lab_a_contributions",
    "lab_b_contributions",
    "lab_a_benefits",
    "lab_b_benefits",
    "proposed_first_experiment",
    "confidence_tier",
    "reasoning",
)

_POSITION_PRIORITY = {"last": 0, "first": 1, "middle": 2}

_TYPE_LINES = "\n".join(
    f'- "{entry["canonical_type"]}": {entry["description"]}' for entry in COLLABORATION_TYPE_TAXONOMY
)

SYSTEM_PROMPT = f"""You propose specific, synergistic scientific collaborations between two researchers.

Rules:
1. Each lab must bring something the other does not have, and each must benefit in a non-generic way.
2. Every proposal needs a concrete first experiment scoped to days or weeks of effort.
3. Anchor proposals in the researchers' publications and cite them by PMID.
4. Return an empty array [] when no proposal is worth making.

Collaboration types (use exactly one of these strings):
{_TYPE_LINES}

Confidence tiers: "high", "moderate", "speculative".

Output: a JSON array of at most 3 objects, each with the string fields
{", ".join(REQUIRED_STRING_FIELDS)}
and "anchoring_publication_pmids" (an array of PMID strings, possibly empty).
Return only the JSON array."""

RETRY_MESSAGE = """Your previous response could not be parsed as valid JSON. Regenerate it following these rules:

1. Return ONLY a JSON array, with no markdown fencing and no commentary.
2. The array must contain 0-3 proposal objects following the schema in your instructions.
3. If no quality proposals exist, return exactly: []
4. Escape all strings properly.
5. Do not use trailing commas.

Use the same researcher pair context from your previous message."""


class ProposalParseError(Exception):
    """Raised when model output is not a JSON array."""
    pass


@dataclass
class ProposalDraft:
    """A validated proposal candidate, not yet stored."""
    title: str
    collaboration_type: str
    scientific_question: str
    one_line_summary_a: str
    one_line_summary_b: str
    detailed_rationale: str
    lab_a_contributions: str
    lab_b_contributions: str
    lab_a_benefits: str
    lab_b_benefits: str
    proposed_first_experiment: str
    confidence_tier: str
    reasoning: str
    anchoring_publication_pmids: list[str] = field(default_factory=list)


# Prompt assembly

def select_abstracts(publications: list[PublicationContext], limit: int | None = None) -> list[PublicationContext]:
    """Publications with abstracts, last author first, then first author, then middle; newest first within a position."""
    limit = limit if limit is not None else settings.matching.max_abstracts_per_researcher
    with_abstracts = [p for p in publications if p.abstract and p.abstract.strip()]
    ranked = sorted(
        with_abstracts,
        key=lambda p: (_POSITION_PRIORITY.get(p.author_position, 2), -(p.year or 0)),
    )
    return ranked[:limit]


def _joined(values: list[str]) -> str:
    return ", ".join(values) or "(none)"


def _researcher_block(label: str, researcher: ResearcherContext) -> str:
    lines = [
        f"=== {label} ===",
        f"Name: {researcher.name}",
        f"Institution: {researcher.institution or '(unknown)'}",
    ]
    if researcher.department:
        lines.append(f"Department: {researcher.department}")

    lines += [
        "",
        "Research Summary:",
        researcher.research_summary,
        "",
        f"Techniques: {_joined(researcher.techniques)}",
        f"Experimental Models: {_joined(researcher.experimental_models)}",
        f"Disease Areas: {_joined(researcher.disease_areas)}",
        f"Key Targets: {_joined(researcher.key_targets)}",
        f"Keywords: {_joined(researcher.keywords)}",
    ]

    if researcher.grant_titles:
        lines += ["", "Grant Titles:"] + [f"- {grant}" for grant in researcher.grant_titles]

    if researcher.user_submitted_texts:
        lines += ["", "User-Submitted Priorities:"]
        lines += [f"- {text['label']}: {text['content']}" for text in researcher.user_submitted_texts]

    if researcher.publications:
        newest_first = sorted(researcher.publications, key=lambda p: -(p.year or 0))
        lines += ["", "Publication Titles (all, most recent first):"]
        for i, pub in enumerate(newest_first, start=1):
            pmid = f" PMID:{pub.pmid}" if pub.pmid else ""
            lines.append(f"{i}. {pub.title} ({pub.journal}, {pub.year}) [{pub.author_position} author]{pmid}")

        abstracts = select_abstracts(researcher.publications)
        if abstracts:
            lines += [
                "",
                f"Selected Abstracts ({len(abstracts)} of {len(researcher.publications)}, "
                "prioritized by author position and recency):",
            ]
            lines.append("\n\n".join(f'- "{p.title}" ({p.year})\n  {p.abstract}' for p in abstracts))

    return "\n".join(lines)


def build_user_message(context: PairContext) -> str:
    max_proposals = settings.matching.max_proposals_per_call
    sections = [
        f"Analyze the following pair of researchers and propose up to {max_proposals} specific, "
        "synergistic collaboration proposals. Return a JSON array following the schema in your "
        "instructions. Return an empty array [] if no quality proposals exist.",
        "",
        _researcher_block("Researcher A", context.researcher_a),
        "",
        _researcher_block("Researcher B", context.researcher_b),
    ]

    if context.existing_proposals:
        sections += [
            "",
            "=== Existing Proposals for This Pair ===",
            "These proposals already exist. Propose something DISTINCT or return nothing.",
        ]
        for proposal in context.existing_proposals:
            sections.append(f"- Title: {proposal.title}")
            sections.append(f"  Question: {proposal.scientific_question}")

    return "\n".join(sections)


# Output parsing

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*\n?", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\n?\s*```\s*$")


def _strip_trailing_commas(text: str) -> str:
    """Drop commas that directly precede ``]`` or ``}``, leaving string contents alone."""
    out = []
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == ",":
            j = i + 1
            while j < len(text) and text[j].isspace():
                j += 1
            if j < len(text) and text[j] in "]}":
                continue
        out.append(ch)
    return "".join(out)


def parse_proposal_output(raw: str, max_proposals: int | None = None) -> list[Any]:
    """Parse the model's response into a list of raw candidates.

    Raises:
        ProposalParseError: if the text is not a JSON array.
    """
    max_proposals = max_proposals if max_proposals is not None else settings.matching.max_proposals_per_call
    cleaned = raw.strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_OPEN.sub("", cleaned)
        cleaned = _FENCE_CLOSE.sub("", cleaned)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        try:
            parsed = json.loads(_strip_trailing_commas(cleaned))
        except json.JSONDecodeError as e:
            raise ProposalParseError(f"Output is not valid JSON: {cleaned[:200]!r}") from e

    if not isinstance(parsed, list):
        raise ProposalParseError(f"Output must be a JSON array, got {type(parsed).__name__}")

    if len(parsed) > max_proposals:
        logger.info(f"Model returned {len(parsed)} proposals, keeping the first {max_proposals}")
        parsed = parsed[:max_proposals]
    return parsed


def validate_proposal(candidate: Any, known_pmids: set[str]) -> tuple[ProposalDraft | None, list[str]]:
    """Check one raw candidate.

    Returns:
        (draft, []) when valid, otherwise (None, errors).
    """
    if not isinstance(candidate, dict):
        return None, ["proposal must be a JSON object"]

    errors = []
    for name in REQUIRED_STRING_FIELDS:
        value = candidate.get(name)
        if not isinstance(value, str) or not value.strip():
            errors.append(f"missing or empty field: {name}")

    collaboration_type = None
    if isinstance(candidate.get("collaboration_type"), str) and candidate["collaboration_type"].strip():
        collaboration_type = normalize_collaboration_type(candidate["collaboration_type"])
        if collaboration_type is None:
            errors.append(f"unknown collaboration_type: {candidate['collaboration_type']!r}")

    tier = candidate.get("confidence_tier")
    if isinstance(tier, str) and tier.strip() and tier.strip().lower() not in CONFIDENCE_TIERS:
        errors.append(f"invalid confidence_tier: {tier!r}")

    pmids_raw = candidate.get("anchoring_publication_pmids")
    pmids: list[str] = []
    if not isinstance(pmids_raw, list):
        errors.append("anchoring_publication_pmids must be an array")
    else:
        for value in pmids_raw:
            pmid = str(value).strip() if isinstance(value, (str, int)) and not isinstance(value, bool) else ""
            if not pmid:
                errors.append(f"invalid anchoring pmid: {value!r}")
            elif pmid not in known_pmids:
                errors.append(f"anchoring pmid {pmid} is not in either researcher's publications")
            elif pmid not in pmids:
                pmids.append(pmid)

    if errors:
        return None, errors

    fields = {name: candidate[name].strip() for name in REQUIRED_STRING_FIELDS}
    fields["collaboration_type"] = collaboration_type
    fields["confidence_tier"] = fields["confidence_tier"].lower()
    return ProposalDraft(**fields, anchoring_publication_pmids=pmids), []
