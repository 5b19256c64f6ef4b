"""Tests for the pagination walker."""

import pytest

from engagesync.services.budget import TimeBudget
from engagesync.services.client import TransientError
from engagesync.services.pagination import FetchedPage, PaginationWalker
from engagesync.services.session import Cursor
from conftest import FakeClock


class Harness:
    """Records fetches, processed items and checkpoints for one walk."""

    def __init__(self, total_items: int, page_size: int = 100, report_total_pages: bool = True,
                 failing_pages: set[int] | None = None, clock: FakeClock | None = None, page_cost: float = 0.0):
        self.items = [{"id": i} for i in range(total_items)]
        self.page_size = page_size
        self.report_total_pages = report_total_pages
        self.failing_pages = failing_pages or set()
        self.clock = clock
        self.page_cost = page_cost
        self.fetched: list[int] = []
        self.processed: list[dict] = []
        self.checkpoints: list[int] = []
        self.errors: list[str] = []

    async def fetch(self, page: int) -> FetchedPage:
        self.fetched.append(page)
        if self.clock is not None:
            self.clock.advance(self.page_cost)
        if page in self.failing_pages:
            raise TransientError(f"page {page} failed")
        chunk = self.items[(page - 1) * self.page_size:page * self.page_size]
        total_pages = -(-len(self.items) // self.page_size) if self.report_total_pages else None
        return FetchedPage(chunk, total_pages)

    async def process(self, page: FetchedPage, cursor: Cursor) -> bool:
        self.processed.extend(page.items)
        return True

    def walker(self, cursor: Cursor, budget: TimeBudget, **kwargs) -> PaginationWalker:
        async def checkpoint():
            self.checkpoints.append(cursor.page)

        return PaginationWalker(
            "test",
            fetch=self.fetch,
            process=kwargs.pop("process", self.process),
            checkpoint=checkpoint,
            budget=budget,
            cursor=cursor,
            page_size=self.page_size,
            on_error=self.errors.append,
            **kwargs,
        )


def _budget(clock: FakeClock, limit_ms: int = 45_000) -> TimeBudget:
    return TimeBudget(limit_ms, clock=clock)


class TestWalkToExhaustion:

    @pytest.mark.asyncio
    async def test_short_last_page_ends_walk(self, clock):
        harness = Harness(250)
        cursor = Cursor()

        result = await harness.walker(cursor, _budget(clock)).walk()

        assert result.exhausted
        assert harness.fetched == [1, 2, 3]
        assert cursor.page == 4
        assert len(harness.processed) == 250
        assert harness.checkpoints == [2, 3, 4]

    @pytest.mark.asyncio
    async def test_total_pages_ends_walk_on_full_last_page(self, clock):
        harness = Harness(200)
        cursor = Cursor()

        result = await harness.walker(cursor, _budget(clock)).walk()

        assert result.exhausted
        assert harness.fetched == [1, 2]

    @pytest.mark.asyncio
    async def test_empty_page_ends_walk_without_totals(self, clock):
        harness = Harness(200, report_total_pages=False)
        cursor = Cursor()

        result = await harness.walker(cursor, _budget(clock)).walk()

        assert result.exhausted
        assert harness.fetched == [1, 2, 3]
        assert len(harness.processed) == 200

    @pytest.mark.asyncio
    async def test_resumes_from_cursor_page(self, clock):
        harness = Harness(250)
        cursor = Cursor(page=3)

        await harness.walker(cursor, _budget(clock)).walk()

        assert harness.fetched == [3]
        assert [item["id"] for item in harness.processed] == list(range(200, 250))


class TestBudget:

    @pytest.mark.asyncio
    async def test_stops_between_pages_with_cursor_on_next_page(self, clock):
        harness = Harness(1000, clock=clock, page_cost=20.0)
        cursor = Cursor()

        result = await harness.walker(cursor, _budget(clock, 45_000)).walk()

        assert result.stopped
        assert not result.exhausted
        assert harness.fetched == [1, 2, 3]
        assert cursor.page == 4
        assert harness.checkpoints[-1] == 4

    @pytest.mark.asyncio
    async def test_exhausted_budget_fetches_nothing(self, clock):
        harness = Harness(100)
        budget = _budget(clock)
        budget.halt()

        result = await harness.walker(Cursor(), budget).walk()

        assert result.stopped
        assert harness.fetched == []

    @pytest.mark.asyncio
    async def test_processor_stopping_mid_page_keeps_cursor(self, clock):
        harness = Harness(250)
        cursor = Cursor()

        async def half_page(page, cur):
            cur.offset = 40
            return False

        result = await harness.walker(cursor, _budget(clock), process=half_page).walk()

        assert result.stopped
        assert cursor.page == 1
        assert cursor.offset == 40
        assert harness.checkpoints == [1]


class TestTransientFailures:

    @pytest.mark.asyncio
    async def test_failed_page_is_skipped_and_recorded(self, clock):
        harness = Harness(250, failing_pages={2})
        cursor = Cursor()

        result = await harness.walker(cursor, _budget(clock)).walk()

        assert result.exhausted
        assert harness.fetched == [1, 2, 3]
        assert len(harness.processed) == 150
        assert len(harness.errors) == 1
        assert "page 2" in harness.errors[0]

    @pytest.mark.asyncio
    async def test_consecutive_failures_end_walk(self, clock):
        harness = Harness(1000, failing_pages={2, 3, 4, 5})
        cursor = Cursor()

        result = await harness.walker(cursor, _budget(clock), max_consecutive_failures=3).walk()

        assert result.exhausted
        assert harness.fetched == [1, 2, 3, 4]
        assert cursor.page == 5
        assert any("giving up" in e for e in harness.errors)
