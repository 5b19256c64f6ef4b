"""PhoneBurner dialer client and sync job."""

import asyncio
import logging
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable
import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from engagesync.core.config import Settings
from engagesync.models.database import Call, DailyMetric, DialSession, ExternalContact
from engagesync.services.client import RateLimitedClient, SyncError, TransientError
from engagesync.services.jobs import PhaseContext, PlatformJob, clear_contact_links
from engagesync.services.pagination import FetchedPage, PaginationWalker
from engagesync.services.parsers import (
    normalize_call,
    normalize_contact,
    normalize_dial_session,
    normalize_usage,
    parse_int,
)
from engagesync.services.payloads import dig, extract_items, page_info
from engagesync.services.session import Cursor

logger = logging.getLogger(__name__)

CONTACT_KEYS = ("workspace_id", "platform", "external_id")
SESSION_KEYS = ("workspace_id", "external_id")
CALL_KEYS = ("workspace_id", "external_id")
METRIC_KEYS = ("workspace_id", "date", "member_id")


class PhoneBurnerClient(RateLimitedClient):
    """Client for the PhoneBurner REST API."""

    def __init__(
        self,
        api_key: str,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(
            settings.phoneburner_base_url,
            headers={"Authorization": f"Bearer {api_key}", "Accept": "application/json"},
            delay_ms=settings.rate_limit_delay_ms,
            max_retries=settings.max_retries,
            rate_limit_backoff=settings.rate_limit_backoff_seconds,
            retry_backoff=settings.retry_backoff_seconds,
            timeout=settings.request_timeout_seconds,
            transport=transport,
            sleep=sleep,
            clock=clock,
        )

    async def get_contacts(self, page: int, page_size: int) -> FetchedPage:
        data = await self.request("/contacts", {"page": page, "page_size": page_size})
        total_pages, _ = page_info(data, ("contacts",))
        return FetchedPage(extract_items(data, ("contacts", "contacts"), ("contacts",)), total_pages)

    async def get_dial_sessions(self, page: int, page_size: int, date_start: date, date_end: date) -> FetchedPage:
        data = await self.request("/dialsession", {
            "page": page,
            "page_size": page_size,
            "date_start": date_start.isoformat(),
            "date_end": date_end.isoformat(),
        })
        total_pages, _ = page_info(data, ("dialsessions",))
        return FetchedPage(extract_items(data, ("dialsessions", "dialsessions"), ("dialsessions",)), total_pages)

    async def get_session_calls(self, session_id: str) -> list[dict]:
        data = await self.request(f"/dialsession/{session_id}")
        return extract_items(
            data,
            ("dialsession", "calls"),
            ("dialsessions", "calls"),
            ("dialsessions", "dialsessions", "calls"),
            ("calls",),
        )

    async def get_usage(self, date_start: date, date_end: date) -> Any:
        data = await self.request("/dialsession/usage", {
            "date_start": date_start.isoformat(),
            "date_end": date_end.isoformat(),
        })
        return dig(data, ("usage",))

    async def get_members(self) -> list[dict]:
        data = await self.request("/members")
        return extract_items(data, ("members", "members"), ("members",))


class PhoneBurnerJob(PlatformJob):
    """
    Dialer sync: contacts, dial sessions with their calls, usage metrics,
    then linking contacts and calls to leads.
    """

    platform = "phoneburner"

    def __init__(self, api_key: str, settings: Settings, **client_kwargs):
        super().__init__(settings)
        self.client = PhoneBurnerClient(api_key, settings, **client_kwargs)

    async def close(self):
        await self.client.close()

    def _walker(self, name: str, ctx: PhaseContext, fetch, process, page_size: int) -> PaginationWalker:
        return PaginationWalker(
            name,
            fetch=fetch,
            process=process,
            checkpoint=ctx.checkpoint,
            budget=ctx.budget,
            cursor=ctx.session.cursor(),
            page_size=page_size,
            max_consecutive_failures=self.settings.max_consecutive_failures,
            on_error=ctx.session.record_error,
        )

    @staticmethod
    def _window_end(ctx: PhaseContext) -> date:
        return ctx.session.started_on or datetime.now(timezone.utc).date()

    async def sync_contacts(self, ctx: PhaseContext) -> bool:
        page_size = self.settings.contacts_page_size

        async def process(page: FetchedPage, cursor: Cursor) -> bool:
            rows = [r for r in (normalize_contact(c, ctx.workspace_id, self.platform) for c in page.items) if r]
            ctx.record("contacts_synced", await ctx.writer.write(ExternalContact, rows, CONTACT_KEYS))
            return True

        walker = self._walker(
            "contacts", ctx, lambda page: self.client.get_contacts(page, page_size), process, page_size
        )
        return (await walker.walk()).exhausted

    async def sync_sessions(self, ctx: PhaseContext) -> bool:
        page_size = self.settings.sessions_page_size
        date_end = self._window_end(ctx)
        date_start = date_end - timedelta(days=self.settings.sessions_lookback_days)
        threshold = self.settings.send_email_dm_threshold_seconds

        async def process(page: FetchedPage, cursor: Cursor) -> bool:
            sessions = [r for r in (normalize_dial_session(s, ctx.workspace_id) for s in page.items) if r]
            if cursor.offset == 0:
                ctx.record("sessions_synced", await ctx.writer.write(DialSession, sessions, SESSION_KEYS))

            # Session details are fetched one by one; offset tracks the first session not yet done
            for index in range(cursor.offset, len(sessions)):
                if ctx.budget.exceeded():
                    cursor.offset = index
                    return False

                session_id = sessions[index]["external_id"]
                try:
                    raw_calls = await self.client.get_session_calls(session_id)
                except TransientError as e:
                    message = f"dial session {session_id} skipped: {e}"
                    logger.error(message)
                    ctx.session.record_error(message)
                else:
                    rows = [
                        r for r in (
                            normalize_call(c, ctx.workspace_id, session_id, threshold) for c in raw_calls
                        ) if r
                    ]
                    ctx.record("calls_synced", await ctx.writer.write(Call, rows, CALL_KEYS))

                cursor.offset = index + 1
                await ctx.checkpoint()
            return True

        walker = self._walker(
            "sessions",
            ctx,
            lambda page: self.client.get_dial_sessions(page, page_size, date_start, date_end),
            process,
            page_size,
        )
        return (await walker.walk()).exhausted

    async def sync_metrics(self, ctx: PhaseContext) -> bool:
        """Aggregate usage for the lookback window, stored against the window's last day."""
        date_end = self._window_end(ctx)
        date_start = date_end - timedelta(days=self.settings.usage_lookback_days)
        try:
            usage = await self.client.get_usage(date_start, date_end)
        except TransientError as e:
            message = f"usage metrics skipped: {e}"
            logger.error(message)
            ctx.session.record_error(message)
            return True

        rows = normalize_usage(usage, ctx.workspace_id, date_end)
        result = await ctx.writer.write(DailyMetric, rows, METRIC_KEYS)
        for error in result.errors:
            ctx.session.record_error(error)
        logger.info(f"[metrics] Stored usage for {result.written} members")
        await ctx.checkpoint()
        return True

    def purge_models(self) -> list:
        return [Call, DialSession, DailyMetric, ExternalContact]

    def purge_filter(self, model, workspace_id: str) -> list:
        filters = [model.workspace_id == workspace_id]
        if model is ExternalContact:
            filters.append(ExternalContact.platform == self.platform)
        return filters

    async def after_purge(self, session: AsyncSession, workspace_id: str) -> None:
        await clear_contact_links(session, workspace_id)

    async def diagnose(self) -> dict[str, Any]:
        """Probe each endpoint the sync depends on without writing anything."""
        report: dict[str, Any] = {
            "diagnostic": True,
            "platform": self.platform,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "tests": {},
        }
        tests = report["tests"]
        today = datetime.now(timezone.utc).date()

        try:
            members = await self.client.get_members()
            tests["members"] = {
                "success": True,
                "count": len(members),
                "sample": [
                    {
                        "user_id": m.get("user_id") or m.get("member_user_id"),
                        "name": f"{m.get('first_name') or ''} {m.get('last_name') or ''}".strip(),
                    }
                    for m in members[:3]
                ],
            }
        except SyncError as e:
            tests["members"] = {"success": False, "error": str(e)}

        try:
            page = await self.client.get_contacts(1, 5)
            tests["contacts"] = {
                "success": True,
                "total_pages": page.total_pages,
                "sample": [
                    {"contact_user_id": c.get("contact_user_id"), "email": c.get("email")}
                    for c in page.items[:2]
                ],
            }
        except SyncError as e:
            tests["contacts"] = {"success": False, "error": str(e)}

        try:
            page = await self.client.get_dial_sessions(1, 5, today - timedelta(days=7), today)
            tests["dial_sessions"] = {"success": True, "count": len(page.items), "total_pages": page.total_pages}
        except SyncError as e:
            tests["dial_sessions"] = {"success": False, "error": str(e)}

        try:
            usage = await self.client.get_usage(today - timedelta(days=self.settings.usage_lookback_days), today)
            stats = [v for v in usage.values() if isinstance(v, dict)] if isinstance(usage, dict) else []
            tests["usage"] = {
                "success": True,
                "member_count": len(stats),
                "total_calls": sum(parse_int(s.get("calls")) or 0 for s in stats),
                "total_sessions": sum(parse_int(s.get("sessions")) or 0 for s in stats),
            }
        except SyncError as e:
            tests["usage"] = {"success": False, "error": str(e)}

        report["recommendation"] = _recommend(tests)
        return report


def _recommend(tests: dict[str, dict]) -> str:
    failed = [name for name, result in tests.items() if not result.get("success")]
    if failed:
        return f"Endpoints failing: {', '.join(failed)}. Check the API key and account permissions."
    if not tests["contacts"]["sample"]:
        return "No contacts found. Ensure the dialer account has contact data."
    if tests["usage"]["total_calls"] and not tests["dial_sessions"]["count"]:
        return "Usage reports calls but no dial sessions in the last 7 days; call history will come from older sessions."
    return "All endpoints reachable. Ready to sync."
