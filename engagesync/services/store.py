"""Persistence of connection status and sync progress."""

import logging
from typing import Any, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from engagesync.models.database import SyncConnection, utcnow
from engagesync.services.session import SyncSession

logger = logging.getLogger(__name__)


class ConnectionStore:
    """Short-lived session access to ``sync_connections`` rows."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def get(self, workspace_id: str, platform: str, active_only: bool = True) -> Optional[SyncConnection]:
        async with self.session_maker() as session:
            stmt = select(SyncConnection).where(
                SyncConnection.workspace_id == workspace_id,
                SyncConnection.platform == platform,
            )
            if active_only:
                stmt = stmt.where(SyncConnection.is_active.is_(True))
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def save(
        self,
        connection_id: int,
        sync_session: SyncSession,
        status: str | None = None,
        force: bool = False,
        **fields: Any,
    ) -> str:
        """
        Persist progress and optionally a new status; returns the stored status.

        Without ``force`` a ``partial`` status is never overwritten, so a pause
        requested through the API survives the running invocation's checkpoints.
        """
        async with self.session_maker() as session:
            connection = await session.get(SyncConnection, connection_id)
            if connection is None:
                raise LookupError(f"Sync connection {connection_id} disappeared")

            progress = sync_session.to_progress()
            progress["updated_at"] = utcnow().isoformat()
            connection.sync_progress = progress

            if status is not None and (force or connection.sync_status != "partial"):
                connection.sync_status = status
            for name, value in fields.items():
                setattr(connection, name, value)

            await session.commit()
            return connection.sync_status

    async def set_status(self, connection_id: int, status: str) -> None:
        async with self.session_maker() as session:
            connection = await session.get(SyncConnection, connection_id)
            if connection is not None:
                connection.sync_status = status
                await session.commit()
