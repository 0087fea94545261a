"""Paginated retrieval of every opportunity matching a date-bounded query."""

import asyncio
import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Union

from .config import settings
from .models import Opportunity, SearchParams
from .rate_limiter import Sleep
from .sam_client import SamOpportunitiesClient

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class BulkFetcher:
    """Pages through the search API until ``totalRecords`` have been read.

    The fetcher does not retry: the client already retries transient
    errors, so a page that still fails aborts the whole fetch.
    """

    def __init__(
        self,
        client: SamOpportunitiesClient,
        page_size: Optional[int] = None,
        page_delay: Optional[float] = None,
        sleep: Optional[Sleep] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.client = client
        self.page_size = page_size or settings.SYNC_PAGE_SIZE
        self.page_delay = (
            settings.SYNC_PAGE_DELAY_SECONDS if page_delay is None else page_delay
        )
        self._sleep = sleep or asyncio.sleep
        self.on_progress = on_progress

    async def fetch_all(
        self,
        posted_from: Union[date, str],
        posted_to: Union[date, str],
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Opportunity]:
        """Fetch all opportunities posted in the given range.

        Args:
            posted_from: Start of the posted-date range.
            posted_to: End of the posted-date range.
            filters: Extra SearchParams fields (ptype, ncode, ...).

        Returns:
            Every record reported by the API, in page order.
        """
        filters = {k: v for k, v in (filters or {}).items() if v is not None}
        results: List[Opportunity] = []
        offset = 0
        total_records: Optional[int] = None

        logger.info(
            f"Starting bulk fetch {posted_from}..{posted_to} "
            f"(page size {self.page_size}, filters {filters})"
        )

        while True:
            params = SearchParams(
                posted_from=posted_from,
                posted_to=posted_to,
                limit=self.page_size,
                offset=offset,
                **filters,
            )
            page = await self.client.search(params)

            if total_records is None:
                total_records = page.total_count
                logger.info(f"Total records to fetch: {total_records}")

            if not page.records:
                if results:
                    logger.warning(
                        f"Empty page at offset {offset} before reaching "
                        f"{total_records} records; stopping"
                    )
                break

            remaining = total_records - len(results)
            results.extend(page.records[:remaining])
            offset += self.page_size

            percent = round(len(results) / total_records * 100) if total_records else 100
            logger.info(
                f"Fetched {len(results)}/{total_records} records ({percent}%)"
            )
            if self.on_progress:
                self.on_progress(len(results), total_records)

            if len(results) >= total_records or offset >= total_records:
                break

            # Courtesy pause between pages, separate from rate limiting
            await self._sleep(self.page_delay)

        logger.info(
            f"Bulk fetch completed: {len(results)} records for "
            f"{posted_from}..{posted_to}"
        )
        return results
