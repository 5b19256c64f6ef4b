"""Tests for the sync state machine against a fake dialer API.

Tests focus on:
1. Phase ordering and a full run to completion
2. Resuming mid-phase after the time budget runs out
3. Idempotent re-runs over already synced data
4. Authentication failures, the heartbeat lock, pause and reset
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from engagesync.models.database import (
    Call,
    DailyMetric,
    DialSession,
    ExternalContact,
    Lead,
    SyncConnection,
    utcnow,
)
from engagesync.models.sync_log import SyncLog
from engagesync.services.sync import (
    JOBS,
    ConnectionNotFound,
    SyncService,
    UnsupportedPlatform,
)
from conftest import FakePhoneBurner


async def _connect(session_maker, platform="phoneburner", **fields) -> int:
    async with session_maker() as session:
        connection = SyncConnection(workspace_id="ws1", platform=platform, api_key="pb-key", **fields)
        session.add(connection)
        await session.commit()
        return connection.id


async def _connection(session_maker, connection_id: int) -> SyncConnection:
    async with session_maker() as session:
        return await session.get(SyncConnection, connection_id)


async def _count(session_maker, model, *filters) -> int:
    async with session_maker() as session:
        return await session.scalar(select(func.count()).select_from(model).where(*filters))


def _service(session_maker, settings, server, clock, continuation=None) -> SyncService:
    def job_factory(connection, job_settings):
        return JOBS[connection.platform](
            connection.api_key, job_settings, transport=server.transport(), sleep=clock.sleep, clock=clock
        )

    return SyncService(
        session_maker,
        settings,
        continuation=continuation or AsyncMock(),
        job_factory=job_factory,
        clock=clock,
    )


class TestFullSync:

    @pytest.mark.asyncio
    async def test_runs_phases_in_order_to_completion(self, session_maker, settings, clock):
        connection_id = await _connect(session_maker)
        server = FakePhoneBurner(contacts=250, sessions=3, calls_per_session=2)
        continuation = AsyncMock()

        result = await _service(session_maker, settings, server, clock, continuation).run("ws1", "phoneburner")

        assert result["status"] == "complete"
        assert result["phase"] == "complete"
        assert result["needsContinuation"] is False
        assert result["contacts_synced"] == 250
        assert result["sessions_synced"] == 3
        assert result["calls_synced"] == 6
        continuation.assert_not_called()

        paths = server.paths()
        assert paths.count("/contacts") == 3
        last_contacts = max(i for i, p in enumerate(paths) if p == "/contacts")
        first_sessions = paths.index("/dialsession")
        usage = paths.index("/dialsession/usage")
        assert last_contacts < first_sessions < usage
        assert all(p != "/contacts" for p in paths[first_sessions:])

        connection = await _connection(session_maker, connection_id)
        assert connection.sync_status == "complete"
        assert connection.last_sync_at is not None
        assert connection.last_full_sync_at is not None
        assert connection.sync_progress["phase"] == "complete"

    @pytest.mark.asyncio
    async def test_writes_and_links_records(self, session_maker, settings, clock):
        await _connect(session_maker)
        server = FakePhoneBurner(contacts=250, sessions=3, calls_per_session=2)

        result = await _service(session_maker, settings, server, clock).run("ws1", "phoneburner")

        assert await _count(session_maker, ExternalContact) == 250
        assert await _count(session_maker, DialSession) == 3
        assert await _count(session_maker, Call) == 6
        assert await _count(session_maker, DailyMetric) == 1
        assert await _count(session_maker, Lead, Lead.platform == "phoneburner") == 250
        assert await _count(session_maker, ExternalContact, ExternalContact.lead_id.is_(None)) == 0
        assert await _count(session_maker, Call, Call.lead_id.is_(None)) == 0
        assert result["leads_linked"] == 256

        # Long "send email" calls count as decision-maker conversations
        assert await _count(session_maker, Call, Call.is_dm_conversation.is_(True)) == 3

        async with session_maker() as session:
            lead = (await session.execute(select(Lead).where(Lead.email == "contact0@example.com"))).scalar_one()
            metric = (await session.execute(select(DailyMetric))).scalar_one()
        assert lead.phoneburner_contact_id == "1000"
        assert metric.total_talk_time_seconds == 900

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, session_maker, settings, clock):
        await _connect(session_maker)
        server = FakePhoneBurner(contacts=30, sessions=2)
        service = _service(session_maker, settings, server, clock)

        await service.run("ws1", "phoneburner")
        second = await service.run("ws1", "phoneburner")

        assert second["status"] == "complete"
        assert second["leads_linked"] == 0
        assert await _count(session_maker, ExternalContact) == 30
        assert await _count(session_maker, Call) == 4
        assert await _count(session_maker, Lead) == 30
        assert await _count(session_maker, SyncLog) == 2

    @pytest.mark.asyncio
    async def test_every_invocation_is_logged(self, session_maker, settings, clock):
        await _connect(session_maker)
        await _service(session_maker, settings, FakePhoneBurner(contacts=3), clock).run("ws1", "phoneburner")

        async with session_maker() as session:
            log = (await session.execute(select(SyncLog))).scalar_one()
        assert log.status == "complete"
        assert log.platform == "phoneburner"
        assert log.details["contacts_synced"] == 3
        assert log.completed_at >= log.started_at


class TestResumability:

    @pytest.mark.asyncio
    async def test_budget_stop_mid_sessions_resumes_at_offset(self, session_maker, settings, clock):
        connection_id = await _connect(session_maker)
        server = FakePhoneBurner(contacts=0, sessions=100, calls_per_session=2, clock=clock, request_cost=1.0)
        continuation = AsyncMock()
        tight = settings.model_copy(update={"time_budget_ms": 42_000})

        # contacts page (1s) + sessions page (1s) + 40 session details (40s) hits the 42s budget
        first = await _service(session_maker, tight, server, clock, continuation).run("ws1", "phoneburner")

        assert first["status"] == "in_progress"
        assert first["phase"] == "sessions"
        assert first["needsContinuation"] is True
        assert first["sessions_synced"] == 100
        assert first["calls_synced"] == 80
        continuation.assert_awaited_once_with("ws1", "phoneburner", 1)

        connection = await _connection(session_maker, connection_id)
        assert connection.sync_status == "syncing"
        assert connection.sync_progress["phase"] == "sessions"
        assert connection.sync_progress["sessions_page"] == 1
        assert connection.sync_progress["sessions_offset"] == 40
        assert connection.sync_progress["heartbeat"] is None
        assert await _count(session_maker, Call) == 80

        before = len(server.requests)
        second = await _service(session_maker, settings, server, clock).run("ws1", "phoneburner", generation=1)

        assert second["status"] == "complete"
        assert second["sessions_synced"] == 100
        assert second["calls_synced"] == 200
        assert await _count(session_maker, Call) == 200

        resumed = server.paths()[before:]
        assert "/contacts" not in resumed
        details = {p for p in resumed if p.startswith("/dialsession/s")}
        assert details == {f"/dialsession/s{i}" for i in range(40, 100)}

    @pytest.mark.asyncio
    async def test_failed_session_detail_is_skipped(self, session_maker, settings, clock):
        connection_id = await _connect(session_maker)
        server = FakePhoneBurner(contacts=3, sessions=3, calls_per_session=2)
        server.failing_paths.add("/dialsession/s1")

        result = await _service(session_maker, settings, server, clock).run("ws1", "phoneburner")

        assert result["status"] == "complete"
        assert await _count(session_maker, Call) == 4
        assert server.paths().count("/dialsession/s1") == settings.max_retries

        connection = await _connection(session_maker, connection_id)
        assert any("s1" in e for e in connection.sync_progress["errors"])

    @pytest.mark.asyncio
    async def test_continuation_chain_is_bounded(self, session_maker, settings, clock):
        connection_id = await _connect(session_maker, sync_status="syncing")
        server = FakePhoneBurner(contacts=500, clock=clock, request_cost=10.0)
        continuation = AsyncMock()
        bounded = settings.model_copy(update={"time_budget_ms": 15_000, "max_continuations": 2})

        result = await _service(session_maker, bounded, server, clock, continuation).run(
            "ws1", "phoneburner", generation=2
        )

        assert result["needsContinuation"] is False
        assert "continuations" in result["message"]
        continuation.assert_not_called()
        assert (await _connection(session_maker, connection_id)).sync_status == "partial"


class TestErrors:

    @pytest.mark.asyncio
    async def test_auth_failure_enters_error_without_retry(self, session_maker, settings, clock):
        connection_id = await _connect(session_maker)
        server = FakePhoneBurner(contacts=10)
        server.status_override = 401
        continuation = AsyncMock()

        result = await _service(session_maker, settings, server, clock, continuation).run("ws1", "phoneburner")

        assert result["status"] == "error"
        assert result["phase"] == "error"
        assert "401" in result["error"]
        assert result["needsContinuation"] is False
        assert len(server.requests) == 1
        continuation.assert_not_called()

        connection = await _connection(session_maker, connection_id)
        assert connection.sync_status == "error"
        assert connection.sync_progress["failed_phase"] == "contacts"

        async with session_maker() as session:
            log = (await session.execute(select(SyncLog))).scalar_one()
        assert log.status == "error"
        assert "401" in log.error_message

    @pytest.mark.asyncio
    async def test_explicit_retry_resumes_failed_phase(self, session_maker, settings, clock):
        await _connect(session_maker)
        server = FakePhoneBurner(contacts=10)
        service = _service(session_maker, settings, server, clock)

        server.status_override = 401
        await service.run("ws1", "phoneburner")
        server.status_override = None
        result = await service.run("ws1", "phoneburner")

        assert result["status"] == "complete"
        assert await _count(session_maker, ExternalContact) == 10

    @pytest.mark.asyncio
    async def test_unknown_platform_and_missing_connection(self, session_maker, settings, clock):
        service = _service(session_maker, settings, FakePhoneBurner(), clock)

        with pytest.raises(UnsupportedPlatform):
            await service.run("ws1", "hubspot")
        with pytest.raises(ConnectionNotFound):
            await service.run("ws1", "phoneburner")

    @pytest.mark.asyncio
    async def test_inactive_connection_is_not_found(self, session_maker, settings, clock):
        await _connect(session_maker, is_active=False)
        with pytest.raises(ConnectionNotFound):
            await _service(session_maker, settings, FakePhoneBurner(), clock).run("ws1", "phoneburner")


class TestLock:

    @pytest.mark.asyncio
    async def test_fresh_heartbeat_returns_already_syncing(self, session_maker, settings, clock):
        progress = {
            "phase": "sessions",
            "sessions_page": 2,
            "calls_synced": 17,
            "heartbeat": (utcnow() - timedelta(seconds=5)).isoformat(),
        }
        connection_id = await _connect(session_maker, sync_status="syncing", sync_progress=progress)
        server = FakePhoneBurner(contacts=10)

        result = await _service(session_maker, settings, server, clock).run("ws1", "phoneburner")

        assert result["status"] == "already_syncing"
        assert result["calls_synced"] == 17
        assert server.requests == []

        connection = await _connection(session_maker, connection_id)
        assert connection.sync_progress == progress
        assert connection.sync_status == "syncing"
        assert await _count(session_maker, SyncLog) == 0

    @pytest.mark.asyncio
    async def test_stale_heartbeat_is_taken_over(self, session_maker, settings, clock):
        progress = {"phase": "contacts", "heartbeat": (utcnow() - timedelta(seconds=60)).isoformat()}
        await _connect(session_maker, sync_status="syncing", sync_progress=progress)

        result = await _service(session_maker, settings, FakePhoneBurner(contacts=2), clock).run("ws1", "phoneburner")

        assert result["status"] == "complete"

    @pytest.mark.asyncio
    async def test_continuation_dropped_when_not_syncing(self, session_maker, settings, clock):
        await _connect(session_maker, sync_status="partial")
        server = FakePhoneBurner(contacts=2)

        result = await _service(session_maker, settings, server, clock).run("ws1", "phoneburner", generation=3)

        assert "skipped" in result["message"]
        assert server.requests == []


class TestPauseAndReset:

    @pytest.mark.asyncio
    async def test_pause_stops_at_next_checkpoint(self, session_maker, settings, clock):
        connection_id = await _connect(session_maker)
        server = FakePhoneBurner(contacts=5, sessions=10)
        continuation = AsyncMock()
        service = _service(session_maker, settings, server, clock, continuation)

        original_save = service.store.save
        saves = 0

        async def save_then_pause(*args, **kwargs):
            nonlocal saves
            saves += 1
            if saves == 3:
                await service.pause("ws1", "phoneburner")
            return await original_save(*args, **kwargs)

        service.store.save = save_then_pause
        result = await service.run("ws1", "phoneburner")

        assert result["status"] == "in_progress"
        assert result["message"] == "Sync paused"
        assert result["needsContinuation"] is False
        continuation.assert_not_called()
        assert "/dialsession/usage" not in server.paths()
        assert (await _connection(session_maker, connection_id)).sync_status == "partial"

    @pytest.mark.asyncio
    async def test_pause_when_idle_is_a_noop(self, session_maker, settings, clock):
        connection_id = await _connect(session_maker)
        paused = await _service(session_maker, settings, FakePhoneBurner(), clock).pause("ws1", "phoneburner")

        assert paused is False
        assert (await _connection(session_maker, connection_id)).sync_status == "idle"

    @pytest.mark.asyncio
    async def test_reset_purges_platform_data_and_created_leads(self, session_maker, settings, clock):
        await _connect(session_maker)
        async with session_maker() as session:
            session.add(Lead(workspace_id="ws1", email="contact0@example.com", platform="manual"))
            await session.commit()

        server = FakePhoneBurner(contacts=20, sessions=2)
        service = _service(session_maker, settings, server, clock)
        await service.run("ws1", "phoneburner")
        assert await _count(session_maker, Lead) == 20

        server.contacts = []
        server.sessions = []
        result = await service.run("ws1", "phoneburner", reset=True)

        assert result["status"] == "complete"
        assert result["contacts_synced"] == 0
        assert await _count(session_maker, ExternalContact) == 0
        assert await _count(session_maker, Call) == 0
        assert await _count(session_maker, DialSession) == 0

        async with session_maker() as session:
            leads = (await session.execute(select(Lead))).scalars().all()
        assert [(lead.email, lead.platform) for lead in leads] == [("contact0@example.com", "manual")]
        assert leads[0].phoneburner_contact_id is None


class TestDiagnostics:

    @pytest.mark.asyncio
    async def test_diagnostic_probes_without_writing(self, session_maker, settings, clock):
        connection_id = await _connect(session_maker)
        server = FakePhoneBurner(contacts=3, sessions=1)

        report = await _service(session_maker, settings, server, clock).run("ws1", "phoneburner", diagnostic=True)

        assert report["diagnostic"] is True
        assert report["tests"]["members"]["success"] is True
        assert report["tests"]["usage"]["total_calls"] == 40
        assert report["recommendation"]
        assert await _count(session_maker, ExternalContact) == 0
        assert await _count(session_maker, SyncLog) == 0
        assert (await _connection(session_maker, connection_id)).sync_status == "idle"

    @pytest.mark.asyncio
    async def test_diagnostic_reports_failures(self, session_maker, settings, clock):
        await _connect(session_maker)
        server = FakePhoneBurner()
        server.status_override = 403

        report = await _service(session_maker, settings, server, clock).run("ws1", "phoneburner", diagnostic=True)

        assert all(not test["success"] for test in report["tests"].values())
        assert "failing" in report["recommendation"]
