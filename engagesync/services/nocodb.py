"""NocoDB tabular source client and sync job for scored call records."""

import asyncio
import logging
import math
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
import httpx
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from engagesync.core.config import Settings
from engagesync.models.database import ScoredCall
from engagesync.services.client import AuthError, RateLimitedClient, SyncError
from engagesync.services.jobs import PhaseContext, PlatformJob
from engagesync.services.pagination import FetchedPage, PaginationWalker
from engagesync.services.parsers import normalize_scored_call, parse_int
from engagesync.services.payloads import dig, extract_items
from engagesync.services.session import Cursor

logger = logging.getLogger(__name__)

SCORED_CALL_KEYS = ("workspace_id", "external_id")


class NocoDBClient(RateLimitedClient):
    """Client for one NocoDB table's records endpoint."""

    def __init__(
        self,
        api_token: str,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(
            settings.nocodb_base_url,
            headers={"xc-token": api_token, "Accept": "application/json"},
            delay_ms=settings.rate_limit_delay_ms,
            max_retries=settings.max_retries,
            rate_limit_backoff=settings.rate_limit_backoff_seconds,
            retry_backoff=settings.retry_backoff_seconds,
            timeout=settings.request_timeout_seconds,
            transport=transport,
            sleep=sleep,
            clock=clock,
        )
        self.table_id = settings.nocodb_table_id

    async def get_records(self, page: int, page_size: int) -> FetchedPage:
        """Fetch one page; NocoDB pages by offset, so page numbers are translated."""
        data = await self.request(
            f"/api/v2/tables/{self.table_id}/records",
            {"limit": page_size, "offset": (page - 1) * page_size},
        )
        items = extract_items(data, ("list",))

        total_pages = None
        total_rows = parse_int(dig(data, ("pageInfo", "totalRows")))
        if total_rows is not None:
            total_pages = max(1, math.ceil(total_rows / page_size))
        if dig(data, ("pageInfo", "isLastPage")) is True:
            total_pages = page
        return FetchedPage(items, total_pages)


class NocoDBJob(PlatformJob):
    """
    Tabular source sync.

    Scored call records are walked in the ``sessions`` phase; there are no
    contacts or metrics. Linking creates leads from each call's prospect.
    """

    platform = "nocodb"

    def __init__(self, api_token: str | None, settings: Settings, **client_kwargs):
        super().__init__(settings)
        token = api_token or settings.nocodb_api_token
        if not token:
            raise AuthError("NocoDB API token is not configured")
        if not settings.nocodb_table_id:
            raise SyncError("NocoDB table id is not configured")
        self.client = NocoDBClient(token, settings, **client_kwargs)

    async def close(self):
        await self.client.close()

    async def sync_sessions(self, ctx: PhaseContext) -> bool:
        page_size = self.settings.nocodb_page_size
        internal_domains = tuple(self.settings.internal_email_domains)

        async def process(page: FetchedPage, cursor: Cursor) -> bool:
            rows = [
                r for r in (normalize_scored_call(raw, ctx.workspace_id, internal_domains) for raw in page.items)
                if r
            ]
            skipped = len(page.items) - len(rows)
            if skipped:
                ctx.session.record_error(f"records page {cursor.page}: {skipped} rows without an id")
            ctx.record("records_synced", await ctx.writer.write(ScoredCall, rows, SCORED_CALL_KEYS))
            return True

        walker = PaginationWalker(
            "records",
            fetch=lambda page: self.client.get_records(page, page_size),
            process=process,
            checkpoint=ctx.checkpoint,
            budget=ctx.budget,
            cursor=ctx.session.cursor(),
            page_size=page_size,
            max_consecutive_failures=self.settings.max_consecutive_failures,
            on_error=ctx.session.record_error,
        )
        return (await walker.walk()).exhausted

    def purge_models(self) -> list:
        return [ScoredCall]

    async def stats(self, session_maker: async_sessionmaker[AsyncSession], workspace_id: str) -> dict[str, int]:
        counts = await super().stats(session_maker, workspace_id)
        async with session_maker() as session:
            counts["scored"] = await session.scalar(
                select(func.count()).select_from(ScoredCall).where(
                    ScoredCall.workspace_id == workspace_id,
                    ScoredCall.overall_quality_score.is_not(None),
                )
            ) or 0
        return counts

    async def diagnose(self) -> dict[str, Any]:
        report: dict[str, Any] = {
            "diagnostic": True,
            "platform": self.platform,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "tests": {},
        }
        try:
            page = await self.client.get_records(1, 1)
            report["tests"]["records"] = {
                "success": True,
                "total_pages": page.total_pages,
                "sample_columns": sorted(page.items[0].keys()) if page.items else [],
            }
            report["recommendation"] = (
                "Table reachable. Ready to sync." if page.items else "Table is empty; nothing to sync."
            )
        except SyncError as e:
            report["tests"]["records"] = {"success": False, "error": str(e)}
            report["recommendation"] = "Records endpoint failing. Check the API token and table id."
        return report
