"""SQLAlchemy models (2.x style) for the collaboration matching schema.

The core pipeline reads users, profiles, publications, pool entries and
affiliation selections, and writes proposals, matching results and jobs.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation used by every datetime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class PoolSource(str, Enum):
    INDIVIDUAL_SELECT = "individual_select"
    AFFILIATION_SELECT = "affiliation_select"
    ALL_USERS = "all_users"


class Visibility(str, Enum):
    VISIBLE = "visible"
    PENDING_OTHER_INTEREST = "pending_other_interest"
    HIDDEN = "hidden"


class MatchOutcome(str, Enum):
    PROPOSALS_GENERATED = "proposals_generated"
    NO_PROPOSAL = "no_proposal"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    DEAD = "dead"


class User(Base):
    """Registered researchers."""
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    institution: Mapped[str | None] = mapped_column(String(255))
    department: Mapped[str | None] = mapped_column(String(255))
    orcid: Mapped[str | None] = mapped_column(String(32), unique=True)
    allow_incoming_proposals: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    profile: Mapped[ResearcherProfile | None] = relationship(
        "ResearcherProfile", back_populates="user", uselist=False
    )
    publications: Mapped[list[Publication]] = relationship("Publication", back_populates="user")


class ResearcherProfile(Base):
    """Synthesized researcher profile; profile_version increases on every content change."""
    __tablename__ = "researcher_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    research_summary: Mapped[str] = mapped_column(Text, nullable=False, default="")
    techniques: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    experimental_models: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    disease_areas: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    key_targets: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    keywords: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    grant_titles: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    user_submitted_texts: Mapped[list | None] = mapped_column(JSON)
    profile_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    profile_generated_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    user: Mapped[User] = relationship("User", back_populates="profile")


class Publication(Base):
    """Publications attributed to a researcher."""
    __tablename__ = "publications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    pmid: Mapped[str | None] = mapped_column(String(32))
    pmcid: Mapped[str | None] = mapped_column(String(32))
    doi: Mapped[str | None] = mapped_column(String(255))
    title: Mapped[str] = mapped_column(Text, nullable=False)
    abstract: Mapped[str] = mapped_column(Text, nullable=False, default="")
    journal: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    year: Mapped[int | None] = mapped_column(Integer)
    author_position: Mapped[str] = mapped_column(String(16), nullable=False, default="middle")
    methods_text: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    user: Mapped[User] = relationship("User", back_populates="publications")

    __table_args__ = (
        Index("ix_publications_user_id", "user_id"),
        Index("ix_publications_user_pmid", "user_id", "pmid", unique=True),
    )


class MatchPoolEntry(Base):
    """Directed pool edge: user_id wants to be evaluated against target_user_id."""
    __tablename__ = "match_pool_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    target_user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    source: Mapped[str] = mapped_column(String(32), nullable=False, default=PoolSource.INDIVIDUAL_SELECT.value)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "target_user_id", name="uq_match_pool_entries_pair"),
        Index("ix_match_pool_entries_target", "target_user_id"),
    )


class AffiliationSelection(Base):
    """Standing selection of an institution (optionally a department) or of all users."""
    __tablename__ = "affiliation_selections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    institution: Mapped[str | None] = mapped_column(String(255))
    department: Mapped[str | None] = mapped_column(String(255))
    select_all: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_affiliation_selections_user_id", "user_id"),
    )


class CollaborationProposal(Base):
    """Generated proposal for a canonical pair (researcher_a_id < researcher_b_id)."""
    __tablename__ = "collaboration_proposals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    researcher_a_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    researcher_b_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    collaboration_type: Mapped[str] = mapped_column(String(64), nullable=False)
    scientific_question: Mapped[str] = mapped_column(Text, nullable=False)
    one_line_summary_a: Mapped[str] = mapped_column(Text, nullable=False)
    one_line_summary_b: Mapped[str] = mapped_column(Text, nullable=False)
    detailed_rationale: Mapped[str] = mapped_column(Text, nullable=False)
    lab_a_contributions: Mapped[str] = mapped_column(Text, nullable=False)
    lab_b_contributions: Mapped[str] = mapped_column(Text, nullable=False)
    lab_a_benefits: Mapped[str] = mapped_column(Text, nullable=False)
    lab_b_benefits: Mapped[str] = mapped_column(Text, nullable=False)
    proposed_first_experiment: Mapped[str] = mapped_column(Text, nullable=False)
    anchoring_publication_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    confidence_tier: Mapped[str] = mapped_column(String(16), nullable=False)
    llm_reasoning: Mapped[str | None] = mapped_column(Text)
    llm_model: Mapped[str] = mapped_column(String(100), nullable=False)
    visibility_a: Mapped[str] = mapped_column(String(32), nullable=False, default=Visibility.VISIBLE.value)
    visibility_b: Mapped[str] = mapped_column(String(32), nullable=False, default=Visibility.VISIBLE.value)
    profile_version_a: Mapped[int] = mapped_column(Integer, nullable=False)
    profile_version_b: Mapped[int] = mapped_column(Integer, nullable=False)
    is_updated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("researcher_a_id < researcher_b_id", name="ck_collaboration_proposals_order"),
        Index("ix_collaboration_proposals_pair", "researcher_a_id", "researcher_b_id"),
        Index("ix_collaboration_proposals_b", "researcher_b_id"),
    )


class Match(Base):
    """Created when both researchers express interest in a proposal."""
    __tablename__ = "matches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    proposal_id: Mapped[int] = mapped_column(
        ForeignKey("collaboration_proposals.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    matched_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


class MatchingResult(Base):
    """Evaluation ledger: one row per (pair, profile_version_a, profile_version_b)."""
    __tablename__ = "matching_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    researcher_a_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    researcher_b_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    profile_version_a: Mapped[int] = mapped_column(Integer, nullable=False)
    profile_version_b: Mapped[int] = mapped_column(Integer, nullable=False)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False)
    proposal_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discarded_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deduplicated_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    llm_model: Mapped[str | None] = mapped_column(String(100))
    evaluated_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("researcher_a_id < researcher_b_id", name="ck_matching_results_order"),
        UniqueConstraint(
            "researcher_a_id",
            "researcher_b_id",
            "profile_version_a",
            "profile_version_b",
            name="uq_matching_results_pair_versions",
        ),
    )


class Job(Base):
    """Durable queue row. payload is the JSON form of one engine.jobs payload variant."""
    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    payload_hash: Mapped[str | None] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=JobStatus.PENDING.value)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_error: Mapped[str | None] = mapped_column(Text)
    enqueued_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    next_run_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    locked_by: Mapped[str | None] = mapped_column(String(255))
    locked_until: Mapped[datetime | None] = mapped_column()
    started_at: Mapped[datetime | None] = mapped_column()
    completed_at: Mapped[datetime | None] = mapped_column()

    __table_args__ = (
        Index("ix_jobs_claim", "status", "priority", "next_run_at"),
        Index("ix_jobs_payload_hash", "payload_hash", "status"),
        Index("ix_jobs_locked_until", "status", "locked_until"),
        # One fresh pending job per dedup hash; retried jobs back in pending are exempt
        Index(
            "uq_jobs_pending_payload_hash",
            "payload_hash",
            unique=True,
            postgresql_where=text("status = 'pending' AND attempts = 0"),
            sqlite_where=text("status = 'pending' AND attempts = 0"),
        ),
    )
