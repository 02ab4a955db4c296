"""FastAPI app: trigger API for other subsystems and a read-only query surface.

Triggers only enqueue durable jobs; all matching work happens in worker
processes.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, model_validator
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from . import models
from .config import settings
from .db import AsyncSessionMaker, get_session
from .logging_config import setup_logging
from .pipeline_status import PipelineStage, PipelineStatusStore, STAGE_MESSAGES, pipeline_status_store
from .pipelines.triggers import (
    enqueue_for_new_pair,
    enqueue_for_new_pairs,
    enqueue_for_new_user,
    enqueue_for_profile_update,
    enqueue_scheduled_sweep,
)
from .queue import JobQueue, QueueError

logger = logging.getLogger(__name__)


# Pydantic request/response models
class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    detail: str | None = None


class PairTriggerRequest(BaseModel):
    user_id: int
    target_user_id: int

    @model_validator(mode="after")
    def _distinct(self) -> "PairTriggerRequest":
        if self.user_id == self.target_user_id:
            raise ValueError("user_id and target_user_id must differ")
        return self


class BatchPairTriggerRequest(BaseModel):
    user_id: int
    target_user_ids: list[int] = Field(min_length=1, max_length=5000)


class JobEnqueuedResponse(BaseModel):
    job_id: int


class EnqueuedCountResponse(BaseModel):
    enqueued: int


class ProposalDTO(BaseModel):
    id: int
    researcher_a_id: int
    researcher_b_id: int
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
    anchoring_publication_ids: list[int]
    confidence_tier: str
    llm_model: str
    visibility_a: str
    visibility_b: str
    profile_version_a: int
    profile_version_b: int
    created_at: datetime


class MatchingResultDTO(BaseModel):
    id: int
    researcher_a_id: int
    researcher_b_id: int
    profile_version_a: int
    profile_version_b: int
    outcome: str
    proposal_count: int
    discarded_count: int
    deduplicated_count: int
    llm_model: str | None
    evaluated_at: datetime


class JobDTO(BaseModel):
    id: int
    type: str
    status: str
    priority: int
    attempts: int
    max_attempts: int
    payload: dict[str, Any]
    last_error: str | None
    enqueued_at: datetime
    next_run_at: datetime
    completed_at: datetime | None


class StatsResponse(BaseModel):
    proposals_total: int
    proposals_by_confidence: dict[str, int]
    matching_results_by_outcome: dict[str, int]
    jobs_by_status: dict[str, int]
    matches_total: int


class PipelineStatusResponse(BaseModel):
    user_id: int
    stage: PipelineStage
    message: str
    warnings: list[str] = Field(default_factory=list)
    error: str | None = None
    result: dict[str, Any] | None = None
    source: str = Field(description="'cache' for live progress, 'database' when reconstructed")


# Dependencies
def get_queue() -> JobQueue:
    return JobQueue(AsyncSessionMaker)


def get_status_store() -> PipelineStatusStore:
    return pipeline_status_store


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    setup_logging()
    logger.info("Application starting up")
    yield
    logger.info("Application shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="Background collaboration matching: triggers and query surface",
    lifespan=lifespan,
)


# Exception handlers
@app.exception_handler(QueueError)
async def queue_error_handler(request, exc: QueueError):
    """Handle job queue errors."""
    logger.error(f"Queue error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(error="queue_error", detail=str(exc)).model_dump(),
    )


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", version=settings.version)


# Trigger API

@app.post("/triggers/pairs", response_model=JobEnqueuedResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_new_pair(
    request: PairTriggerRequest,
    queue: JobQueue = Depends(get_queue),
) -> JobEnqueuedResponse:
    """A pool entry was added: evaluate the pair."""
    job_id = await enqueue_for_new_pair(queue, request.user_id, request.target_user_id)
    return JobEnqueuedResponse(job_id=job_id)


@app.post("/triggers/pairs/batch", response_model=EnqueuedCountResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_new_pairs(
    request: BatchPairTriggerRequest,
    queue: JobQueue = Depends(get_queue),
) -> EnqueuedCountResponse:
    enqueued = await enqueue_for_new_pairs(queue, request.user_id, request.target_user_ids)
    return EnqueuedCountResponse(enqueued=enqueued)


@app.post(
    "/triggers/profile-updates/{user_id}",
    response_model=EnqueuedCountResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_profile_update(
    user_id: int,
    session: AsyncSession = Depends(get_session),
    queue: JobQueue = Depends(get_queue),
) -> EnqueuedCountResponse:
    """A profile version was bumped: re-evaluate every pair involving the user."""
    enqueued = await enqueue_for_profile_update(session, queue, user_id)
    return EnqueuedCountResponse(enqueued=enqueued)


@app.post("/triggers/new-users/{user_id}", response_model=JobEnqueuedResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_new_user(
    user_id: int,
    session: AsyncSession = Depends(get_session),
    queue: JobQueue = Depends(get_queue),
) -> JobEnqueuedResponse:
    if await session.get(models.User, user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"User {user_id} not found")
    job_id = await enqueue_for_new_user(queue, user_id)
    return JobEnqueuedResponse(job_id=job_id)


@app.post("/triggers/sweep", response_model=EnqueuedCountResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_sweep(
    session: AsyncSession = Depends(get_session),
    queue: JobQueue = Depends(get_queue),
) -> EnqueuedCountResponse:
    enqueued = await enqueue_scheduled_sweep(session, queue)
    return EnqueuedCountResponse(enqueued=enqueued)


# Query surface

def _proposal_dto(proposal: models.CollaborationProposal) -> ProposalDTO:
    return ProposalDTO.model_validate(proposal, from_attributes=True)


@app.get("/proposals", response_model=list[ProposalDTO])
async def list_proposals(
    user_id: int = Query(..., description="Researcher on either side of the pair"),
    visible_only: bool = Query(False, description="Only proposals visible to this user"),
    session: AsyncSession = Depends(get_session),
) -> list[ProposalDTO]:
    proposal = models.CollaborationProposal
    query = select(proposal).where(or_(proposal.researcher_a_id == user_id, proposal.researcher_b_id == user_id))
    if visible_only:
        query = query.where(
            or_(
                (proposal.researcher_a_id == user_id) & (proposal.visibility_a == models.Visibility.VISIBLE.value),
                (proposal.researcher_b_id == user_id) & (proposal.visibility_b == models.Visibility.VISIBLE.value),
            )
        )
    rows = (await session.scalars(query.order_by(proposal.created_at.desc(), proposal.id.desc()))).all()
    return [_proposal_dto(row) for row in rows]


@app.get("/proposals/{proposal_id}", response_model=ProposalDTO)
async def get_proposal(proposal_id: int, session: AsyncSession = Depends(get_session)) -> ProposalDTO:
    proposal = await session.get(models.CollaborationProposal, proposal_id)
    if proposal is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Proposal {proposal_id} not found")
    return _proposal_dto(proposal)


@app.get("/matching-results", response_model=list[MatchingResultDTO])
async def list_matching_results(
    user_id: int | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    session: AsyncSession = Depends(get_session),
) -> list[MatchingResultDTO]:
    result = models.MatchingResult
    query = select(result)
    if user_id is not None:
        query = query.where(or_(result.researcher_a_id == user_id, result.researcher_b_id == user_id))
    rows = (await session.scalars(query.order_by(result.evaluated_at.desc(), result.id.desc()).limit(limit))).all()
    return [MatchingResultDTO.model_validate(row, from_attributes=True) for row in rows]


@app.get("/admin/stats", response_model=StatsResponse)
async def admin_stats(
    session: AsyncSession = Depends(get_session),
    queue: JobQueue = Depends(get_queue),
) -> StatsResponse:
    by_tier = dict(
        (
            await session.execute(
                select(models.CollaborationProposal.confidence_tier, func.count()).group_by(
                    models.CollaborationProposal.confidence_tier
                )
            )
        ).all()
    )
    by_outcome = {outcome.value: 0 for outcome in models.MatchOutcome}
    by_outcome.update(
        (
            await session.execute(
                select(models.MatchingResult.outcome, func.count()).group_by(models.MatchingResult.outcome)
            )
        ).all()
    )
    matches_total = await session.scalar(select(func.count()).select_from(models.Match)) or 0

    return StatsResponse(
        proposals_total=sum(by_tier.values()),
        proposals_by_confidence=by_tier,
        matching_results_by_outcome=by_outcome,
        jobs_by_status=await queue.status_counts(),
        matches_total=matches_total,
    )


@app.get("/jobs/{job_id}", response_model=JobDTO)
async def get_job(job_id: int, queue: JobQueue = Depends(get_queue)) -> JobDTO:
    job = await queue.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")
    return JobDTO(
        id=job.id,
        type=job.type,
        status=job.status,
        priority=job.priority,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        payload=job.raw_payload,
        last_error=job.last_error,
        enqueued_at=job.enqueued_at,
        next_run_at=job.next_run_at,
        completed_at=job.completed_at,
    )


@app.get("/pipeline-status/{user_id}", response_model=PipelineStatusResponse)
async def get_pipeline_status(
    user_id: int,
    session: AsyncSession = Depends(get_session),
    store: PipelineStatusStore = Depends(get_status_store),
) -> PipelineStatusResponse:
    """Live progress when this process has it, otherwise reconstructed from the profile row."""
    cached = store.get(user_id)
    if cached is not None:
        return PipelineStatusResponse(
            user_id=user_id,
            stage=cached.stage,
            message=cached.message,
            warnings=cached.warnings,
            error=cached.error,
            result=cached.result,
            source="cache",
        )

    profile_id = await session.scalar(
        select(models.ResearcherProfile.id).where(models.ResearcherProfile.user_id == user_id)
    )
    if profile_id is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No profile pipeline status for user {user_id}",
        )
    return PipelineStatusResponse(
        user_id=user_id,
        stage=PipelineStage.COMPLETE,
        message=STAGE_MESSAGES[PipelineStage.COMPLETE],
        source="database",
    )
