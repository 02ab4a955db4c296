"""Per-pair context assembly for the matching engine."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from engine import models
from engine.pipelines.eligibility import PairCandidate

logger = logging.getLogger(__name__)


@dataclass
class PublicationContext:
    id: int
    pmid: str | None
    title: str
    journal: str
    year: int | None
    author_position: str
    abstract: str


@dataclass
class ResearcherContext:
    user_id: int
    name: str
    institution: str | None
    department: str | None
    research_summary: str
    techniques: list[str] = field(default_factory=list)
    experimental_models: list[str] = field(default_factory=list)
    disease_areas: list[str] = field(default_factory=list)
    key_targets: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    grant_titles: list[str] = field(default_factory=list)
    user_submitted_texts: list[dict[str, str]] = field(default_factory=list)
    publications: list[PublicationContext] = field(default_factory=list)


@dataclass
class ExistingProposal:
    title: str
    scientific_question: str
    profile_version_a: int
    profile_version_b: int


@dataclass
class PairContext:
    """Everything the matching engine needs for one pair, read in one short session."""

    pair: PairCandidate
    researcher_a: ResearcherContext
    researcher_b: ResearcherContext
    existing_proposals: list[ExistingProposal] = field(default_factory=list)

    def known_pmids(self) -> set[str]:
        return {
            pub.pmid
            for researcher in (self.researcher_a, self.researcher_b)
            for pub in researcher.publications
            if pub.pmid
        }


def parse_user_submitted_texts(raw: Any) -> list[dict[str, str]]:
    """Keep only well-formed {label, content} entries."""
    if not isinstance(raw, list):
        return []
    texts = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        label, content = item.get("label"), item.get("content")
        if isinstance(label, str) and isinstance(content, str) and content.strip():
            texts.append({"label": label, "content": content})
    return texts


async def _load_researcher(session: AsyncSession, user_id: int) -> ResearcherContext | None:
    row = (
        await session.execute(
            select(models.User, models.ResearcherProfile)
            .join(models.ResearcherProfile, models.ResearcherProfile.user_id == models.User.id)
            .where(models.User.id == user_id)
        )
    ).first()
    if row is None:
        return None
    user, profile = row

    publications = (
        await session.scalars(
            select(models.Publication)
            .where(models.Publication.user_id == user_id)
            .order_by(models.Publication.year.desc(), models.Publication.id.desc())
        )
    ).all()

    return ResearcherContext(
        user_id=user.id,
        name=user.name,
        institution=user.institution,
        department=user.department,
        research_summary=profile.research_summary,
        techniques=list(profile.techniques or []),
        experimental_models=list(profile.experimental_models or []),
        disease_areas=list(profile.disease_areas or []),
        key_targets=list(profile.key_targets or []),
        keywords=list(profile.keywords or []),
        grant_titles=list(profile.grant_titles or []),
        user_submitted_texts=parse_user_submitted_texts(profile.user_submitted_texts),
        publications=[
            PublicationContext(
                id=pub.id,
                pmid=pub.pmid,
                title=pub.title,
                journal=pub.journal,
                year=pub.year,
                author_position=pub.author_position,
                abstract=pub.abstract,
            )
            for pub in publications
        ],
    )


async def assemble_context_for_pair(session: AsyncSession, pair: PairCandidate) -> PairContext | None:
    """Load both researchers, their publications and the pair's stored proposals.

    Returns None, not an error, when either user or profile is gone: the pair
    can stop being eligible between enqueue and processing.
    """
    researcher_a = await _load_researcher(session, pair.researcher_a_id)
    researcher_b = await _load_researcher(session, pair.researcher_b_id)
    if researcher_a is None or researcher_b is None:
        logger.info(f"Pair {pair.label}: researcher or profile missing, no context")
        return None

    existing = (
        await session.scalars(
            select(models.CollaborationProposal)
            .where(
                models.CollaborationProposal.researcher_a_id == pair.researcher_a_id,
                models.CollaborationProposal.researcher_b_id == pair.researcher_b_id,
            )
            .order_by(models.CollaborationProposal.id)
        )
    ).all()

    return PairContext(
        pair=pair,
        researcher_a=researcher_a,
        researcher_b=researcher_b,
        existing_proposals=[
            ExistingProposal(
                title=p.title,
                scientific_question=p.scientific_question,
                profile_version_a=p.profile_version_a,
                profile_version_b=p.profile_version_b,
            )
            for p in existing
        ],
    )
