"""Per-platform phase handlers driven by the sync state machine."""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from engagesync.core.config import Settings
from engagesync.models.database import Call, ExternalContact, Lead, ScoredCall
from engagesync.services.budget import TimeBudget
from engagesync.services.linker import EntityLinker
from engagesync.services.session import Phase, SyncSession
from engagesync.services.writer import UpsertWriter, WriteResult

logger = logging.getLogger(__name__)


@dataclass
class PhaseContext:
    """Everything a phase handler needs from the running invocation."""

    workspace_id: str
    session: SyncSession
    budget: TimeBudget
    writer: UpsertWriter
    session_maker: async_sessionmaker[AsyncSession]
    checkpoint: Callable[[], Awaitable[None]]
    settings: Settings

    def record(self, counter: str, result: WriteResult):
        """Add a write result to a counter and keep its errors."""
        self.session.add(counter, result.written)
        for error in result.errors:
            self.session.record_error(error)


class PlatformJob:
    """
    Base class for a platform's sync job.

    Subclasses implement ``sync_<phase>`` for the phases they have data for;
    a phase without a handler is exhausted immediately. Every handler
    returns True once its phase has no more work.
    """

    platform: str = ""

    def __init__(self, settings: Settings):
        self.settings = settings

    async def run_phase(self, phase: Phase, ctx: PhaseContext) -> bool:
        handler = getattr(self, f"sync_{phase.value}", None)
        if handler is None:
            return True
        return await handler(ctx)

    async def sync_linking(self, ctx: PhaseContext) -> bool:
        linker = EntityLinker(ctx.session_maker, self.platform, tuple(self.settings.internal_email_domains))
        while not ctx.budget.exceeded():
            result = await linker.link(ctx.workspace_id, self.settings.link_batch_size)
            ctx.session.add("leads_linked", result.linked)
            await ctx.checkpoint()
            if result.done:
                return True
        return False

    async def purge(self, session_maker: async_sessionmaker[AsyncSession], workspace_id: str) -> dict[str, int]:
        """Delete this platform's synced rows, then the leads it created."""
        deleted: dict[str, int] = {}
        async with session_maker() as session:
            for model in self.purge_models():
                result = await session.execute(delete(model).where(*self.purge_filter(model, workspace_id)))
                deleted[model.__tablename__] = result.rowcount or 0

            owned = select(Lead.id).where(Lead.workspace_id == workspace_id, Lead.platform == self.platform)
            for model in (ExternalContact, Call, ScoredCall):
                # Rows of other platforms linked to a lead about to go are relinked on their next sync
                await session.execute(update(model).where(model.lead_id.in_(owned)).values(lead_id=None))

            result = await session.execute(
                delete(Lead).where(Lead.workspace_id == workspace_id, Lead.platform == self.platform)
            )
            deleted["leads"] = result.rowcount or 0
            await self.after_purge(session, workspace_id)
            await session.commit()

        logger.info(f"[{self.platform}] Purged workspace {workspace_id}: {deleted}")
        return deleted

    def purge_models(self) -> list:
        return []

    def purge_filter(self, model, workspace_id: str) -> list:
        return [model.workspace_id == workspace_id]

    async def after_purge(self, session: AsyncSession, workspace_id: str) -> None:
        pass

    async def stats(self, session_maker: async_sessionmaker[AsyncSession], workspace_id: str) -> dict[str, int]:
        """Row counts per synced table, plus how many of them are linked."""
        counts: dict[str, int] = {}
        async with session_maker() as session:
            for model in self.purge_models():
                filters = self.purge_filter(model, workspace_id)
                counts[model.__tablename__] = await session.scalar(
                    select(func.count()).select_from(model).where(*filters)
                ) or 0
                if "lead_id" in model.__table__.columns:
                    counts[f"{model.__tablename__}_linked"] = await session.scalar(
                        select(func.count()).select_from(model).where(*filters, model.lead_id.is_not(None))
                    ) or 0
            counts["leads_created"] = await session.scalar(
                select(func.count()).select_from(Lead).where(
                    Lead.workspace_id == workspace_id, Lead.platform == self.platform
                )
            ) or 0
        return counts

    async def diagnose(self) -> dict[str, Any]:
        return {}

    async def close(self):
        pass


async def clear_contact_links(session: AsyncSession, workspace_id: str) -> None:
    """Drop dialer contact ids from leads that survive a purge."""
    await session.execute(
        update(Lead)
        .where(Lead.workspace_id == workspace_id, Lead.phoneburner_contact_id.is_not(None))
        .values(phoneburner_contact_id=None)
    )
