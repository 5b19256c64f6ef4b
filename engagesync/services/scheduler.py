"""APScheduler setup: continuation queue, stale-sync recovery and daily syncs."""

import logging
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from engagesync.core.config import get_settings
from engagesync.core.database import async_session_maker
from engagesync.models.database import SyncConnection, utcnow
from engagesync.models.sync_log import SyncJob
from engagesync.services.lock import heartbeat_age
from engagesync.services.parsers import parse_datetime
from engagesync.services.sync import SyncService, SyncUnavailable

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


def build_sync_service(session_maker: async_sessionmaker[AsyncSession] | None = None) -> SyncService:
    """Sync service whose continuations go through the durable job queue."""
    maker = session_maker or async_session_maker

    async def continuation(workspace_id: str, platform: str, generation: int):
        await enqueue_continuation(workspace_id, platform, generation, maker)

    return SyncService(maker, get_settings(), continuation=continuation)


async def enqueue_continuation(
    workspace_id: str,
    platform: str,
    generation: int,
    session_maker: async_sessionmaker[AsyncSession] | None = None,
) -> int:
    """
    Queue the next invocation of a sync chain.

    The job row is committed first so it survives a restart; the scheduler
    run is only a fast path for the drain sweep.
    """
    maker = session_maker or async_session_maker
    async with maker() as session:
        job = SyncJob(workspace_id=workspace_id, platform=platform, generation=generation, status="pending")
        session.add(job)
        await session.commit()
        job_id = job.id

    logger.info(f"[{platform}] Queued continuation {generation} for {workspace_id} (job {job_id})")
    if scheduler is not None:
        scheduler.add_job(
            run_sync_job,
            DateTrigger(run_date=datetime.now(ZoneInfo(get_settings().tz))),
            args=[job_id, maker],
            id=f"sync_job_{job_id}",
            replace_existing=True,
            misfire_grace_time=None,
        )
    return job_id


async def run_sync_job(job_id: int, session_maker: async_sessionmaker[AsyncSession] | None = None) -> dict | None:
    """Claim a pending job and run its invocation. Returns None when already claimed."""
    maker = session_maker or async_session_maker

    async with maker() as session:
        claimed = await session.execute(
            update(SyncJob)
            .where(SyncJob.id == job_id, SyncJob.status == "pending")
            .values(status="running", started_at=utcnow())
        )
        await session.commit()
        if claimed.rowcount != 1:
            return None
        job = await session.get(SyncJob, job_id)

    status, error, result = "done", None, None
    try:
        result = await build_sync_service(maker).run(job.workspace_id, job.platform, generation=job.generation)
    except SyncUnavailable as e:
        logger.warning(f"[{job.platform}] Continuation job {job_id} dropped: {e}")
        status, error = "failed", str(e)
    except Exception as e:
        logger.exception(f"[{job.platform}] Continuation job {job_id} failed")
        status, error = "failed", str(e)

    async with maker() as session:
        await session.execute(
            update(SyncJob)
            .where(SyncJob.id == job_id)
            .values(status=status, completed_at=utcnow(), error_message=error)
        )
        await session.commit()
    return result


async def drain_pending_jobs(session_maker: async_sessionmaker[AsyncSession] | None = None) -> int:
    """Run pending jobs left behind by a restart, oldest first."""
    maker = session_maker or async_session_maker
    async with maker() as session:
        result = await session.execute(
            select(SyncJob.id).where(SyncJob.status == "pending").order_by(SyncJob.id)
        )
        job_ids = list(result.scalars())

    ran = 0
    for job_id in job_ids:
        if await run_sync_job(job_id, maker) is not None:
            ran += 1
    if ran:
        logger.info(f"Drained {ran} pending sync jobs")
    return ran


async def cancel_pending_jobs(
    workspace_id: str,
    platform: str,
    session_maker: async_sessionmaker[AsyncSession] | None = None,
) -> int:
    maker = session_maker or async_session_maker
    async with maker() as session:
        result = await session.execute(
            update(SyncJob)
            .where(
                SyncJob.workspace_id == workspace_id,
                SyncJob.platform == platform,
                SyncJob.status == "pending",
            )
            .values(status="cancelled", completed_at=utcnow())
        )
        await session.commit()
        return result.rowcount or 0


async def recover_stale_syncs(session_maker: async_sessionmaker[AsyncSession] | None = None) -> int:
    """
    Re-queue connections stuck in ``syncing``.

    A connection is stuck when its last heartbeat (or last progress write,
    when the heartbeat was released) is older than ``stale_sync_minutes`` and
    no continuation is pending for it. Jobs left ``running`` longer than
    that by a crashed process are failed first so they stop counting.
    """
    maker = session_maker or async_session_maker
    stale_after = timedelta(minutes=get_settings().stale_sync_minutes)
    now = utcnow()

    async with maker() as session:
        abandoned = await session.execute(
            update(SyncJob)
            .where(SyncJob.status == "running", SyncJob.started_at < now - stale_after)
            .values(status="failed", completed_at=now, error_message="abandoned")
        )
        await session.commit()
        if abandoned.rowcount:
            logger.warning(f"Marked {abandoned.rowcount} abandoned sync jobs as failed")

        connections = (await session.execute(
            select(SyncConnection).where(
                SyncConnection.sync_status == "syncing",
                SyncConnection.is_active.is_(True),
            )
        )).scalars().all()
        pending = {
            (row.workspace_id, row.platform)
            for row in (await session.execute(
                select(SyncJob.workspace_id, SyncJob.platform).where(SyncJob.status.in_(("pending", "running")))
            )).all()
        }

    recovered = 0
    for connection in connections:
        if (connection.workspace_id, connection.platform) in pending:
            continue
        progress = connection.sync_progress if isinstance(connection.sync_progress, dict) else {}
        age = heartbeat_age(progress, now)
        if age is None:
            updated_at = parse_datetime(progress.get("updated_at"))
            age = now - updated_at if updated_at else None
        if age is not None and age < stale_after:
            continue

        logger.warning(
            f"[{connection.platform}] Recovering stale sync for {connection.workspace_id} "
            f"(last activity {age} ago)"
        )
        await enqueue_continuation(connection.workspace_id, connection.platform, 0, maker)
        recovered += 1
    return recovered


async def run_scheduled_syncs(session_maker: async_sessionmaker[AsyncSession] | None = None) -> list[dict]:
    """Start a sync for every active connection that is idle or complete."""
    maker = session_maker or async_session_maker
    logger.info("Starting scheduled sync job")

    async with maker() as session:
        connections = (await session.execute(
            select(SyncConnection).where(
                SyncConnection.is_active.is_(True),
                SyncConnection.sync_status.in_(("idle", "complete")),
            )
        )).scalars().all()

    service = build_sync_service(maker)
    results = []
    for connection in connections:
        try:
            result = await service.run(connection.workspace_id, connection.platform)
        except SyncUnavailable as e:
            logger.warning(f"[{connection.platform}] Scheduled sync skipped for {connection.workspace_id}: {e}")
            continue
        logger.info(f"[{connection.platform}] Scheduled sync for {connection.workspace_id}: {result['status']}")
        results.append(result)
    return results


def start_scheduler():
    """Start the APScheduler."""
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already started")
        return

    settings = get_settings()
    scheduler = AsyncIOScheduler(timezone=ZoneInfo(settings.tz))

    scheduler.add_job(
        run_scheduled_syncs,
        CronTrigger(hour=settings.sync_hour, minute=0),
        id="daily_sync",
        name="Daily sync of all active connections",
        replace_existing=True
    )
    scheduler.add_job(
        drain_pending_jobs,
        IntervalTrigger(seconds=settings.drain_interval_seconds),
        id="drain_sync_jobs",
        name="Run pending sync continuations",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        recover_stale_syncs,
        IntervalTrigger(minutes=settings.stale_sync_minutes),
        id="recover_stale_syncs",
        name="Re-queue stuck syncs",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    scheduler.start()
    logger.info(f"Scheduler started - daily sync at {settings.sync_hour}:00")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler is not None:
        scheduler.shutdown()
        scheduler = None
        logger.info("Scheduler stopped")
