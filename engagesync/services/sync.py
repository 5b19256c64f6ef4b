"""Sync orchestration - runs a connection's phases under a time budget."""

import logging
import time
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Optional
from zoneinfo import ZoneInfo
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from engagesync.core.config import Settings
from engagesync.models.database import SyncConnection, utcnow
from engagesync.models.sync_log import SyncLog
from engagesync.services.budget import TimeBudget
from engagesync.services.client import AuthError, SyncError
from engagesync.services.jobs import PhaseContext, PlatformJob
from engagesync.services.lock import is_locked
from engagesync.services.nocodb import NocoDBJob
from engagesync.services.phoneburner import PhoneBurnerJob
from engagesync.services.session import Phase, SyncSession
from engagesync.services.store import ConnectionStore
from engagesync.services.writer import UpsertWriter

logger = logging.getLogger(__name__)

JOBS: dict[str, type[PlatformJob]] = {
    PhoneBurnerJob.platform: PhoneBurnerJob,
    NocoDBJob.platform: NocoDBJob,
}

Continuation = Callable[[str, str, int], Awaitable[None]]
JobFactory = Callable[[SyncConnection, Settings], PlatformJob]


class SyncUnavailable(Exception):
    """The requested sync cannot start for this workspace."""
    pass


class UnsupportedPlatform(SyncUnavailable):
    pass


class ConnectionNotFound(SyncUnavailable):
    pass


def create_job(connection: SyncConnection, settings: Settings) -> PlatformJob:
    job_class = JOBS.get(connection.platform)
    if job_class is None:
        raise UnsupportedPlatform(f"Unsupported platform: {connection.platform}")
    return job_class(connection.api_key, settings)


class SyncService:
    """
    Phase state machine for one connection.

    Each ``run`` is one bounded invocation: it resumes from the persisted
    session, works through phases until the time budget runs out, persists
    progress at every checkpoint and asks for a continuation when work is
    left. Complete and error are terminal until the next explicit run.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        settings: Settings,
        continuation: Optional[Continuation] = None,
        job_factory: JobFactory = create_job,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utcnow,
    ):
        self.session_maker = session_maker
        self.settings = settings
        self.continuation = continuation
        self.job_factory = job_factory
        self.store = ConnectionStore(session_maker)
        self._clock = clock
        self._now = now

    def _today(self) -> date:
        return datetime.now(ZoneInfo(self.settings.tz)).date()

    async def run(
        self,
        workspace_id: str,
        platform: str,
        reset: bool = False,
        diagnostic: bool = False,
        generation: int = 0,
    ) -> dict[str, Any]:
        """
        Run one invocation of a connection's sync.

        Returns:
            Response dict with status, phase, counters and ``needsContinuation``,
            or the diagnostic report when ``diagnostic`` is set.

        Raises:
            SyncUnavailable: the platform is unknown or not connected.
        """
        if platform not in JOBS:
            raise UnsupportedPlatform(f"Unsupported platform: {platform}")

        connection = await self.store.get(workspace_id, platform)
        if connection is None:
            raise ConnectionNotFound(f"{platform} is not connected for workspace {workspace_id}")

        try:
            job = self.job_factory(connection, self.settings)
        except SyncError as e:
            raise SyncUnavailable(str(e)) from e

        try:
            if diagnostic:
                logger.info(f"[{platform}] Running diagnostics for {workspace_id}")
                return await job.diagnose()

            if is_locked(connection.sync_status, connection.sync_progress, self._now(), self.settings.sync_lock_timeout_ms):
                logger.info(f"[{platform}] Sync already running for {workspace_id}, not starting another")
                session = SyncSession.from_progress(connection.sync_progress)
                return self._response("already_syncing", session, message="Sync already in progress")

            if generation > 0 and connection.sync_status != "syncing":
                logger.info(f"[{platform}] Dropping continuation for {workspace_id}: status is {connection.sync_status}")
                session = SyncSession.from_progress(connection.sync_progress)
                return self._response(
                    "in_progress", session, message=f"Continuation skipped, sync is {connection.sync_status}"
                )

            return await self._run_invocation(job, connection, reset, generation)
        finally:
            await job.close()

    async def _run_invocation(
        self,
        job: PlatformJob,
        connection: SyncConnection,
        reset: bool,
        generation: int,
    ) -> dict[str, Any]:
        workspace_id, platform = connection.workspace_id, connection.platform
        started_at = self._now()

        if reset:
            await job.purge(self.session_maker, workspace_id)
            session = SyncSession()
        else:
            session = SyncSession.from_progress(connection.sync_progress)
            if session.phase == Phase.COMPLETE:
                session = SyncSession()
            elif session.phase == Phase.ERROR:
                logger.info(f"[{platform}] Retrying {workspace_id} from failed phase {session.failed_phase}")
                session.resume_after_error()

        if session.started_on is None:
            session.started_on = self._today()
        session.heartbeat = self._now()
        await self.store.save(connection.id, session, status="syncing", force=True)
        logger.info(
            f"[{platform}] Sync invocation {generation} for {workspace_id} "
            f"starting at phase {session.phase.value}"
        )

        budget = TimeBudget(self.settings.time_budget_ms, clock=self._clock)

        async def checkpoint():
            session.heartbeat = self._now()
            status = await self.store.save(connection.id, session, status="syncing")
            if status == "partial" and not budget.halted:
                logger.info(f"[{platform}] Pause requested for {workspace_id}, stopping at this checkpoint")
                budget.halt()

        ctx = PhaseContext(
            workspace_id=workspace_id,
            session=session,
            budget=budget,
            writer=UpsertWriter(self.session_maker, self.settings.write_batch_size),
            session_maker=self.session_maker,
            checkpoint=checkpoint,
            settings=self.settings,
        )

        try:
            while not session.is_finished and not budget.exceeded():
                phase = session.phase
                logger.info(f"[{platform}] Phase {phase.value} ({budget.elapsed():.0f}ms elapsed)")
                exhausted = await job.run_phase(phase, ctx)
                if not exhausted or budget.exceeded():
                    break
                session.advance()
                await checkpoint()
        except AuthError as e:
            logger.error(f"[{platform}] Authentication failed for {workspace_id}: {e}")
            session.fail(str(e))
        except Exception as e:
            logger.exception(f"[{platform}] Sync failed for {workspace_id} in phase {session.phase.value}")
            session.fail(f"{type(e).__name__}: {e}")

        response = await self._finish(connection, session, budget, generation)
        await self._log(connection, session, response, started_at)
        return response

    async def _finish(
        self,
        connection: SyncConnection,
        session: SyncSession,
        budget: TimeBudget,
        generation: int,
    ) -> dict[str, Any]:
        workspace_id, platform = connection.workspace_id, connection.platform

        if session.phase == Phase.ERROR:
            await self.store.save(connection.id, session, status="error", force=True)
            return self._response("error", session)

        if session.phase == Phase.COMPLETE:
            now = self._now()
            session.heartbeat = None
            await self.store.save(
                connection.id, session, status="complete", force=True, last_sync_at=now, last_full_sync_at=now
            )
            logger.info(f"[{platform}] Sync complete for {workspace_id}: {session.counters()}")
            return self._response("complete", session)

        # Releasing the heartbeat lets the queued continuation take the lock straight away
        session.heartbeat = None

        if budget.halted:
            await self.store.save(connection.id, session, status="partial", force=True)
            return self._response("in_progress", session, message="Sync paused")

        if generation + 1 > self.settings.max_continuations:
            message = f"Stopped after {self.settings.max_continuations} continuations; run the sync again to resume"
            logger.warning(f"[{platform}] {message} ({workspace_id})")
            session.record_error(message)
            await self.store.save(connection.id, session, status="partial", force=True)
            return self._response("in_progress", session, message=message)

        status = await self.store.save(connection.id, session, status="syncing")
        if status == "partial":
            return self._response("in_progress", session, message="Sync paused")

        if self.continuation is not None:
            try:
                await self.continuation(workspace_id, platform, generation + 1)
            except Exception:
                # Progress is persisted; the stale-sync sweep picks the connection up again
                logger.exception(f"[{platform}] Failed to enqueue continuation for {workspace_id}")
        return self._response("in_progress", session, needs_continuation=True)

    def _response(
        self,
        status: str,
        session: SyncSession,
        needs_continuation: bool = False,
        message: str | None = None,
    ) -> dict[str, Any]:
        response: dict[str, Any] = {
            "status": status,
            "phase": session.phase.value,
            **session.counters(),
            "needsContinuation": needs_continuation,
        }
        if session.error:
            response["error"] = session.error
        if message:
            response["message"] = message
        return response

    async def _log(
        self,
        connection: SyncConnection,
        session: SyncSession,
        response: dict[str, Any],
        started_at: datetime,
    ) -> None:
        async with self.session_maker() as db:
            db.add(SyncLog(
                workspace_id=connection.workspace_id,
                platform=connection.platform,
                started_at=started_at,
                completed_at=self._now(),
                status=response["status"],
                phase=session.phase.value,
                details={**session.counters(), "errors": session.errors[-5:]},
                error_message=session.error,
            ))
            await db.commit()

    async def pause(self, workspace_id: str, platform: str) -> bool:
        """Mark a connection paused; a running invocation halts at its next checkpoint."""
        connection = await self.store.get(workspace_id, platform)
        if connection is None:
            raise ConnectionNotFound(f"{platform} is not connected for workspace {workspace_id}")
        if connection.sync_status != "syncing":
            return False
        await self.store.set_status(connection.id, "partial")
        logger.info(f"[{platform}] Paused sync for {workspace_id}")
        return True

    async def stats(self, workspace_id: str, platform: str) -> dict[str, int]:
        connection = await self.store.get(workspace_id, platform)
        if connection is None:
            raise ConnectionNotFound(f"{platform} is not connected for workspace {workspace_id}")
        try:
            job = self.job_factory(connection, self.settings)
        except SyncError as e:
            raise SyncUnavailable(str(e)) from e
        try:
            return await job.stats(self.session_maker, workspace_id)
        finally:
            await job.close()
