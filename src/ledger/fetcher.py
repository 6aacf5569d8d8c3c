"""
Paged ledger reads.

The ledger store caps every query (1000 rows by default). The fetcher keeps
asking for the next page until a short page signals the end of data. All of
this happens before the compute stage starts, so a slow or failing store can
never leave a half-computed cycle behind.
"""

import time
from typing import Callable, Optional
import structlog

from src.exceptions import UpstreamTimeout
from src.ledger.trades import TradeRecord

logger = structlog.get_logger(__name__)

# fetch_page(offset, limit) -> rows
PageFunction = Callable[[int, int], list]


class PagedTradeFetcher:
    """Reads the full ledger through a page function."""

    def __init__(
        self,
        page_size: int = 1000,
        timeout_seconds: Optional[float] = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.page_size = page_size
        self.timeout_seconds = timeout_seconds
        self._clock = clock

    def fetch_all(self, fetch_page: PageFunction) -> list[TradeRecord]:
        """
        Fetch every page and convert rows to TradeRecord.

        Errors raised by fetch_page propagate unchanged; the caller decides
        between retry and serving stale results.
        """
        started = self._clock()
        trades: list[TradeRecord] = []
        offset = 0
        pages = 0

        while True:
            if self.timeout_seconds is not None:
                elapsed = self._clock() - started
                if elapsed > self.timeout_seconds:
                    logger.error(
                        "ledger_fetch_timeout",
                        pages=pages,
                        rows=len(trades),
                        elapsed_seconds=elapsed,
                    )
                    raise UpstreamTimeout(
                        f"Ledger fetch exceeded {self.timeout_seconds}s after {pages} pages"
                    )

            rows = fetch_page(offset, self.page_size)
            pages += 1

            for row in rows:
                trades.append(row if isinstance(row, TradeRecord) else TradeRecord.from_dict(row))

            if len(rows) < self.page_size:
                break
            offset += self.page_size

        logger.info("ledger_fetched", pages=pages, rows=len(trades))
        return trades


def list_page_function(rows: list) -> PageFunction:
    """Serve an in-memory list through the page interface."""
    def fetch_page(offset: int, limit: int) -> list:
        return rows[offset:offset + limit]
    return fetch_page
