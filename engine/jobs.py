"""Job payload types for the durable queue.

The payload set is closed: every variant is listed in ``JobPayload`` and the
worker registers exactly one handler per variant.
"""
from __future__ import annotations

import hashlib
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class JobPriority:
    """Named priority levels; higher values are claimed first."""
    BACKGROUND = -10
    NORMAL = 0
    INTERACTIVE = 10


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class GenerateProfilePayload(_Payload):
    """Run the profile ingestion pipeline for one user."""
    type: Literal["generate_profile"] = "generate_profile"
    user_id: int
    orcid: str


class RunMatchingPayload(_Payload):
    """Evaluate one researcher pair. Carries ids only; context is reloaded at run time."""
    type: Literal["run_matching"] = "run_matching"
    researcher_a_id: int
    researcher_b_id: int


class ExpandMatchPoolPayload(_Payload):
    """Add a newly joined user to existing affiliation and all-users selections."""
    type: Literal["expand_match_pool"] = "expand_match_pool"
    user_id: int


class MonthlyRefreshPayload(_Payload):
    """Check one user for new publications."""
    type: Literal["monthly_refresh"] = "monthly_refresh"
    user_id: int


class SendEmailPayload(_Payload):
    """Send one notification email."""
    type: Literal["send_email"] = "send_email"
    template_id: str
    to: str
    data: dict[str, Any] = Field(default_factory=dict)


JobPayload = Annotated[
    Union[
        GenerateProfilePayload,
        RunMatchingPayload,
        ExpandMatchPoolPayload,
        MonthlyRefreshPayload,
        SendEmailPayload,
    ],
    Field(discriminator="type"),
]

PAYLOAD_TYPES: tuple[type[_Payload], ...] = (
    GenerateProfilePayload,
    RunMatchingPayload,
    ExpandMatchPoolPayload,
    MonthlyRefreshPayload,
    SendEmailPayload,
)

_payload_adapter: TypeAdapter = TypeAdapter(JobPayload)


def parse_payload(data: dict[str, Any]) -> JobPayload:
    """Rebuild a typed payload from its stored JSON form.

    Raises:
        pydantic.ValidationError: if the type tag is unknown or fields are invalid.
    """
    return _payload_adapter.validate_python(data)


def dump_payload(payload: JobPayload) -> dict[str, Any]:
    return payload.model_dump(mode="json")


def compute_payload_hash(payload: JobPayload) -> str | None:
    """Dedup hash for a payload, or None for job types that are never deduplicated.

    run_matching hashes the canonical (sorted) pair so (A, B) and (B, A)
    collapse onto the same pending job.
    """
    if isinstance(payload, RunMatchingPayload):
        low, high = sorted((payload.researcher_a_id, payload.researcher_b_id))
        key = f"run_matching:{low}:{high}"
    elif isinstance(payload, (GenerateProfilePayload, ExpandMatchPoolPayload)):
        key = f"{payload.type}:{payload.user_id}"
    else:
        return None
    return hashlib.sha256(key.encode("utf-8")).hexdigest()
