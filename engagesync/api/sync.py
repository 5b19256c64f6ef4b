"""Sync API endpoints."""

import logging
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from engagesync.core.database import get_db
from engagesync.models.database import SyncConnection
from engagesync.models.sync_log import SyncLog
from engagesync.schemas.responses import (
    DiagnosticResponse,
    PauseResponse,
    ProgressResponse,
    StatsResponse,
    SyncLogEntry,
    SyncRequest,
    SyncResponse,
)
from engagesync.services.scheduler import build_sync_service, cancel_pending_jobs
from engagesync.services.sync import JOBS, SyncService, SyncUnavailable

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


def get_sync_service() -> SyncService:
    """Dependency providing a sync service wired to the job queue."""
    return build_sync_service()


def _check_platform(platform: str):
    if platform not in JOBS:
        raise HTTPException(status_code=400, detail=f"Unsupported platform: {platform}")


@router.get("/log", response_model=list[SyncLogEntry])
async def sync_log(
    workspace_id: str,
    limit: int = 20,
    db: AsyncSession = Depends(get_db),
):
    """Most recent sync invocations for a workspace."""
    result = await db.execute(
        select(SyncLog)
        .where(SyncLog.workspace_id == workspace_id)
        .order_by(desc(SyncLog.started_at), desc(SyncLog.id))
        .limit(min(max(limit, 1), 200))
    )
    return [SyncLogEntry.model_validate(row) for row in result.scalars()]


@router.post("/{platform}", response_model=SyncResponse | DiagnosticResponse)
async def run_sync(
    platform: str,
    request: SyncRequest,
    service: SyncService = Depends(get_sync_service),
):
    """
    Run one bounded sync invocation.

    Long syncs return ``needsContinuation``; the next invocation is already
    queued server-side, so callers only need to poll progress.
    """
    _check_platform(platform)
    try:
        result = await service.run(
            request.workspace_id,
            platform,
            reset=request.reset,
            diagnostic=request.diagnostic,
        )
    except SyncUnavailable as e:
        raise HTTPException(status_code=400, detail=str(e))

    if request.diagnostic:
        return DiagnosticResponse(**result)
    return SyncResponse(**result)


@router.get("/{platform}/progress", response_model=ProgressResponse)
async def sync_progress(
    platform: str,
    workspace_id: str,
    db: AsyncSession = Depends(get_db),
):
    """Connection status and persisted progress."""
    _check_platform(platform)
    result = await db.execute(
        select(SyncConnection).where(
            SyncConnection.workspace_id == workspace_id,
            SyncConnection.platform == platform,
        )
    )
    connection = result.scalar_one_or_none()
    if connection is None:
        raise HTTPException(status_code=404, detail=f"{platform} is not connected for workspace {workspace_id}")
    return ProgressResponse(
        workspace_id=connection.workspace_id,
        platform=connection.platform,
        sync_status=connection.sync_status,
        progress=connection.sync_progress,
        last_sync_at=connection.last_sync_at,
        last_full_sync_at=connection.last_full_sync_at,
    )


@router.post("/{platform}/pause", response_model=PauseResponse)
async def pause_sync(
    platform: str,
    workspace_id: str,
    service: SyncService = Depends(get_sync_service),
):
    """Pause a running sync; it stops at its next checkpoint and is not continued."""
    _check_platform(platform)
    try:
        paused = await service.pause(workspace_id, platform)
    except SyncUnavailable as e:
        raise HTTPException(status_code=400, detail=str(e))

    cancelled = await cancel_pending_jobs(workspace_id, platform, service.session_maker)
    return PauseResponse(
        paused=paused,
        cancelled_jobs=cancelled,
        message="Sync paused" if paused else "No sync is running",
    )


@router.get("/{platform}/stats", response_model=StatsResponse)
async def sync_stats(
    platform: str,
    workspace_id: str,
    service: SyncService = Depends(get_sync_service),
):
    """Row counts for everything the platform has synced into the workspace."""
    _check_platform(platform)
    try:
        counts = await service.stats(workspace_id, platform)
    except SyncUnavailable as e:
        raise HTTPException(status_code=400, detail=str(e))
    return StatsResponse(platform=platform, workspace_id=workspace_id, counts=counts)
