"""Best-effort progress tracking for profile pipeline runs.

Entries live only in this process, expire after a TTL and are bounded in
number. Nothing here is a source of truth: callers that find no entry must
fall back to durable state (does the profile row exist).
"""
from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable

from .config import settings


class PipelineStage(str, Enum):
    STARTING = "starting"
    FETCHING_ORCID = "fetching_orcid"
    FETCHING_PUBLICATIONS = "fetching_publications"
    MINING_METHODS = "mining_methods"
    SYNTHESIZING = "synthesizing"
    COMPLETE = "complete"
    ERROR = "error"


STAGE_MESSAGES: dict[PipelineStage, str] = {
    PipelineStage.STARTING: "Starting profile generation...",
    PipelineStage.FETCHING_ORCID: "Pulling your publications...",
    PipelineStage.FETCHING_PUBLICATIONS: "Pulling your publications...",
    PipelineStage.MINING_METHODS: "Analyzing your research...",
    PipelineStage.SYNTHESIZING: "Building your profile...",
    PipelineStage.COMPLETE: "Your profile is ready!",
    PipelineStage.ERROR: "Something went wrong.",
}


@dataclass(frozen=True)
class PipelineStatus:
    stage: PipelineStage
    message: str
    warnings: list[str] = field(default_factory=list)
    error: str | None = None
    result: dict[str, Any] | None = None
    updated_at: float = 0.0


class PipelineStatusStore:
    """Bounded TTL map of user id to the latest pipeline status."""

    def __init__(
        self,
        *,
        ttl_seconds: float | None = None,
        max_entries: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.pipeline_status.ttl_seconds
        self.max_entries = max_entries if max_entries is not None else settings.pipeline_status.max_entries
        self._clock = clock
        self._entries: OrderedDict[int, PipelineStatus] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, user_id: int) -> PipelineStatus | None:
        with self._lock:
            status = self._entries.get(user_id)
            if status is None:
                return None
            if self._clock() - status.updated_at > self.ttl_seconds:
                del self._entries[user_id]
                return None
            return status

    def set_stage(
        self,
        user_id: int,
        stage: PipelineStage,
        *,
        warnings: list[str] | None = None,
        error: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> PipelineStatus:
        """Record a stage. Warnings carry over from the previous stage unless replaced."""
        with self._lock:
            previous = self._entries.pop(user_id, None)
            kept_warnings = warnings if warnings is not None else (list(previous.warnings) if previous else [])
            status = PipelineStatus(
                stage=stage,
                message=STAGE_MESSAGES[stage],
                warnings=kept_warnings,
                error=error,
                result=result,
                updated_at=self._clock(),
            )
            self._entries[user_id] = status
            self._evict()
            return status

    def add_warning(self, user_id: int, warning: str) -> None:
        with self._lock:
            status = self._entries.get(user_id)
            if status is not None:
                self._entries[user_id] = replace(status, warnings=[*status.warnings, warning])

    def clear(self, user_id: int) -> None:
        with self._lock:
            self._entries.pop(user_id, None)

    def clear_all(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def _evict(self) -> None:
        now = self._clock()
        expired = [uid for uid, s in self._entries.items() if now - s.updated_at > self.ttl_seconds]
        for uid in expired:
            del self._entries[uid]
        # oldest first
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)


pipeline_status_store = PipelineStatusStore()
