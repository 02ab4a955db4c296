"""
Shared fixtures for the matching pipeline tests.

Sets environment variables before any engine imports so settings resolve to
test values, then provides a file-backed SQLite database per test, data
factories and a scripted model client.
"""

import os

# === Set environment BEFORE any engine imports ===
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("DB_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LLM_API_KEY", "test-key")

import asyncio
import json
from datetime import datetime, timedelta
from typing import Any, Optional

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from ai.llm_client import ModelResponse
from engine import models
from engine.db import build_session_factory
from engine.models import Base, PoolSource
from engine.pipeline_status import PipelineStatusStore
from engine.queue import JobQueue
from engine.worker import WorkerDependencies


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'matching.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


# ---------------------------------------------------------------------------
# Clock and queue
# ---------------------------------------------------------------------------


class FakeClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 5, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(session_factory, clock):
    return JobQueue(
        session_factory,
        max_attempts=3,
        retry_base_delay=1.0,
        retry_max_delay=30.0,
        jitter_ratio=0.25,
        lock_timeout=60,
        clock=clock,
        rng=lambda: 0.0,
    )


# ---------------------------------------------------------------------------
# Data factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user(session_factory):
    """Factory that inserts a user, optionally with a profile and publications."""

    async def _factory(
        name: str,
        *,
        institution: Optional[str] = "Example University",
        department: Optional[str] = None,
        allow_incoming: bool = False,
        with_profile: bool = True,
        profile_version: int = 1,
        publications: Optional[list[dict[str, Any]]] = None,
    ) -> int:
        async with session_factory() as s:
            user = models.User(
                email=f"{name.lower().replace(' ', '.')}@example.edu",
                name=name,
                institution=institution,
                department=department,
                allow_incoming_proposals=allow_incoming,
            )
            s.add(user)
            await s.flush()
            if with_profile:
                s.add(
                    models.ResearcherProfile(
                        user_id=user.id,
                        research_summary=f"{name} studies cellular stress responses.",
                        techniques=["CRISPR screening", "live-cell imaging"],
                        experimental_models=["HeLa cells"],
                        disease_areas=["neurodegeneration"],
                        key_targets=["TDP-43"],
                        keywords=["autophagy"],
                        grant_titles=[],
                        profile_version=profile_version,
                    )
                )
            for pub in publications or []:
                s.add(models.Publication(user_id=user.id, **pub))
            await s.commit()
            return user.id

    return _factory


@pytest.fixture
def add_pool_entry(session_factory):
    async def _add(user_id: int, target_user_id: int, source: PoolSource = PoolSource.INDIVIDUAL_SELECT) -> None:
        async with session_factory() as s:
            s.add(models.MatchPoolEntry(user_id=user_id, target_user_id=target_user_id, source=source.value))
            await s.commit()

    return _add


@pytest.fixture
def bump_profile(session_factory):
    async def _bump(user_id: int) -> int:
        async with session_factory() as s:
            profile = await s.scalar(
                select(models.ResearcherProfile).where(models.ResearcherProfile.user_id == user_id)
            )
            profile.profile_version += 1
            await s.commit()
            return profile.profile_version

    return _bump


# ---------------------------------------------------------------------------
# Model client
# ---------------------------------------------------------------------------


def proposal_dict(**overrides: Any) -> dict[str, Any]:
    proposal = {
        "title": "Imaging TDP-43 condensates under oxidative stress",
        "collaboration_type": "methodological enhancement",
        "scientific_question": "Does oxidative stress change TDP-43 condensate dynamics in neurons?",
        "one_line_summary_a": "Your imaging platform answers B's open question on condensates.",
        "one_line_summary_b": "A's live-cell imaging resolves condensate kinetics you cannot measure.",
        "detailed_rationale": "Lab B has the stress models and Lab A has the imaging pipeline.",
        "lab_a_contributions": "Live-cell lattice light-sheet imaging.",
        "lab_b_contributions": "Patient-derived iPSC neurons.",
        "lab_a_benefits": "A disease-relevant system for the imaging method.",
        "lab_b_benefits": "Kinetic measurements for the condensate model.",
        "proposed_first_experiment": "Image 3 iPSC lines for 48h under arsenite stress.",
        "confidence_tier": "high",
        "reasoning": "Complementary methods and shared target.",
        "anchoring_publication_pmids": [],
    }
    proposal.update(overrides)
    return proposal


def model_output(*proposals: dict[str, Any]) -> str:
    return json.dumps(list(proposals))


class FakeModelClient:
    """Scripted model client.

    Each call pops the next scripted response; the last one repeats. A
    response that is an Exception instance is raised instead. When ``gate``
    is set, every call waits on it first.
    """

    model = "fake-model"

    def __init__(self, *responses: Any, gate: Optional[asyncio.Event] = None):
        self.responses = list(responses) or ["[]"]
        self.gate = gate
        self.calls: list[list[dict[str, str]]] = []
        self.systems: list[str] = []

    async def complete(self, system: str, messages: list[dict[str, str]]) -> ModelResponse:
        self.calls.append([dict(m) for m in messages])
        self.systems.append(system)
        if self.gate is not None:
            await self.gate.wait()
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return ModelResponse(text=response, model=self.model)


@pytest.fixture
def fake_model():
    return FakeModelClient(model_output(proposal_dict()))


@pytest.fixture
def status_store():
    return PipelineStatusStore(ttl_seconds=3600, max_entries=100)


@pytest.fixture
def deps(session_factory, queue, fake_model, status_store):
    return WorkerDependencies(
        session_factory=session_factory,
        queue=queue,
        model_client=fake_model,
        status_store=status_store,
    )
