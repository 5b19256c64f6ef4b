"""Batched, idempotent upserts into the canonical tables."""

import logging
from dataclasses import dataclass, field
from typing import Any, Sequence
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from engagesync.models.database import utcnow

logger = logging.getLogger(__name__)


@dataclass
class WriteResult:
    written: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def merge(self, other: "WriteResult") -> "WriteResult":
        self.written += other.written
        self.failed += other.failed
        self.errors.extend(other.errors)
        return self


class UpsertWriter:
    """
    Merges records into a table keyed by a composite conflict key.

    Each batch is a single ``INSERT ... ON CONFLICT DO UPDATE`` committed in
    its own session, so a failed batch is rolled back alone and never aborts
    the batches around it.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], batch_size: int = 200):
        self.session_maker = session_maker
        self.batch_size = max(1, batch_size)

    async def write(
        self,
        model_class,
        records: Sequence[dict[str, Any]],
        conflict_keys: Sequence[str],
    ) -> WriteResult:
        """Upsert ``records``; returns counts and per-batch error messages."""
        result = WriteResult()
        if not records:
            return result

        table = model_class.__table__
        has_synced_at = "synced_at" in table.columns

        for start in range(0, len(records), self.batch_size):
            batch = [dict(r) for r in records[start:start + self.batch_size]]
            if has_synced_at:
                now = utcnow()
                for row in batch:
                    row["synced_at"] = now

            stmt = insert(table).values(batch)
            update_columns = {k for row in batch for k in row} - set(conflict_keys)
            stmt = stmt.on_conflict_do_update(
                index_elements=list(conflict_keys),
                set_={k: stmt.excluded[k] for k in sorted(update_columns)},
            )

            async with self.session_maker() as session:
                try:
                    await session.execute(stmt)
                    await session.commit()
                    result.written += len(batch)
                except SQLAlchemyError as e:
                    await session.rollback()
                    message = f"{table.name} batch {start // self.batch_size + 1} ({len(batch)} rows): {e}"
                    logger.error(f"Upsert failed for {message}")
                    result.failed += len(batch)
                    result.errors.append(message[:500])

        logger.debug(f"Upserted {result.written} rows into {table.name} ({result.failed} failed)")
        return result
