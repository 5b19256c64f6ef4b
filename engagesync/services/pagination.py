"""Drives fetch -> process -> checkpoint cycles across one paginated resource."""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from engagesync.services.budget import TimeBudget
from engagesync.services.client import TransientError
from engagesync.services.session import Cursor

logger = logging.getLogger(__name__)


@dataclass
class FetchedPage:
    items: list[dict] = field(default_factory=list)
    total_pages: Optional[int] = None


@dataclass
class WalkResult:
    exhausted: bool = False
    stopped: bool = False
    pages: int = 0
    items: int = 0


# process(page, cursor) -> True when every item on the page is done.
# A processor that stops early must leave cursor.offset at the first undone item.
PageProcessor = Callable[[FetchedPage, Cursor], Awaitable[bool]]


class PaginationWalker:
    """
    Walks a paginated resource starting at ``cursor.page``.

    After each page the cursor is advanced and checkpointed *before* the
    time budget is consulted, so a forced stop always leaves the cursor on
    the next page to fetch. A walk ends when a page comes back shorter than
    ``page_size`` or the reported ``total_pages`` is reached.
    """

    def __init__(
        self,
        name: str,
        fetch: Callable[[int], Awaitable[FetchedPage]],
        process: PageProcessor,
        checkpoint: Callable[[], Awaitable[None]],
        budget: TimeBudget,
        cursor: Cursor,
        page_size: int,
        max_consecutive_failures: int = 3,
        on_error: Callable[[str], None] | None = None,
    ):
        self.name = name
        self.fetch = fetch
        self.process = process
        self.checkpoint = checkpoint
        self.budget = budget
        self.cursor = cursor
        self.page_size = page_size
        self.max_consecutive_failures = max(1, max_consecutive_failures)
        self.on_error = on_error or (lambda message: None)

    async def walk(self) -> WalkResult:
        result = WalkResult()
        failures = 0
        total_pages: Optional[int] = None

        while True:
            if self.budget.exceeded():
                logger.info(f"[{self.name}] Stopping before page {self.cursor.page}: time budget exhausted")
                result.stopped = True
                return result

            page_number = self.cursor.page
            try:
                page = await self.fetch(page_number)
            except TransientError as e:
                failures += 1
                message = f"{self.name} page {page_number} skipped: {e}"
                logger.error(message)
                self.on_error(message)

                self.cursor.page += 1
                self.cursor.offset = 0
                await self.checkpoint()

                past_end = total_pages is not None and page_number >= total_pages
                if past_end or failures >= self.max_consecutive_failures:
                    if not past_end:
                        self.on_error(f"{self.name}: giving up after {failures} consecutive failed pages")
                    result.exhausted = True
                    return result
                continue

            failures = 0
            if page.total_pages is not None:
                total_pages = page.total_pages

            completed = await self.process(page, self.cursor)
            result.pages += 1
            result.items += len(page.items)
            logger.info(
                f"[{self.name}] Page {page_number}"
                + (f"/{total_pages}" if total_pages else "")
                + f": {len(page.items)} items"
            )

            if not completed:
                # Processor stopped mid-page; its offset marks where to resume
                await self.checkpoint()
                result.stopped = True
                return result

            last_page = len(page.items) < self.page_size or (
                total_pages is not None and page_number >= total_pages
            )
            self.cursor.page += 1
            self.cursor.offset = 0
            await self.checkpoint()

            if last_page:
                result.exhausted = True
                return result
