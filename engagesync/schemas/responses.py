"""Pydantic request/response models for the sync API."""

from datetime import datetime
from typing import Any
from pydantic import BaseModel, ConfigDict, Field


class SyncRequest(BaseModel):
    """Body of a sync invocation."""
    workspace_id: str = Field(min_length=1)
    reset: bool = False
    diagnostic: bool = False


class SyncResponse(BaseModel):
    """Outcome of one sync invocation."""
    model_config = ConfigDict(populate_by_name=True)

    status: str
    phase: str
    contacts_synced: int = 0
    sessions_synced: int = 0
    calls_synced: int = 0
    records_synced: int = 0
    leads_linked: int = 0
    needs_continuation: bool = Field(default=False, alias="needsContinuation")
    error: str | None = None
    message: str | None = None


class DiagnosticResponse(BaseModel):
    """Endpoint probe report; nothing is written."""
    diagnostic: bool = True
    platform: str
    timestamp: str
    tests: dict[str, dict[str, Any]]
    recommendation: str | None = None


class ProgressResponse(BaseModel):
    """Connection status and persisted progress for UI polling."""
    workspace_id: str
    platform: str
    sync_status: str
    progress: dict[str, Any] | None
    last_sync_at: datetime | None
    last_full_sync_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class PauseResponse(BaseModel):
    paused: bool
    cancelled_jobs: int
    message: str


class StatsResponse(BaseModel):
    platform: str
    workspace_id: str
    counts: dict[str, int]


class SyncLogEntry(BaseModel):
    """One row of the invocation log."""
    id: int
    platform: str
    started_at: datetime
    completed_at: datetime | None
    status: str
    phase: str | None
    details: dict[str, Any] | None
    error_message: str | None

    model_config = ConfigDict(from_attributes=True)
