import math
import os
from typing import Any, Dict, List, Optional, Union

# Settings are loaded at import time and require an API key.
os.environ.setdefault("SAM_API_KEY", "test-api-key-0000")

import httpx  # noqa: E402
import pytest  # noqa: E402

from samsync.rate_limiter import RateLimiter  # noqa: E402
from samsync.sam_client import SamOpportunitiesClient  # noqa: E402

ARMY_PATH = "DEPT OF DEFENSE.DEPT OF THE ARMY.W7NR USA ENGINEER DIST"


def make_notice(index: int, **overrides: Any) -> Dict[str, Any]:
    """A raw opportunitiesData element as the search API returns it."""
    notice: Dict[str, Any] = {
        "noticeId": f"notice-{index}",
        "title": f"Construction Opportunity {index}",
        "solicitationNumber": f"W912-25-R-{index:04d}",
        "fullParentPathName": ARMY_PATH,
        "postedDate": "2025-06-02",
        "type": "Award Notice",
        "baseType": "Award Notice",
        "naicsCode": "236220",
        "classificationCode": "Y1AA",
        "typeOfSetAside": "SBA",
        "typeOfSetAsideDescription": "Total Small Business Set-Aside",
        "responseDeadLine": None,
        "organizationType": "OFFICE",
        "uiLink": f"https://sam.gov/opp/notice-{index}/view",
        "award": {
            "number": f"W912-25-C-{index:04d}",
            "amount": "125000.50",
            "date": "2025-06-01",
            "awardee": {
                "name": "Acme Builders LLC",
                "ueiSAM": "ACME12345678",
                "cageCode": "1ABC2",
            },
        },
    }
    notice.update(overrides)
    return notice


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeClock:
    """Manual clock whose sleep advances time."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeSamApi:
    """In-process stand-in for the SAM.gov search endpoint.

    Serves ``notices`` page by page according to limit/offset, filtered by
    the ``ncode`` query parameter. Queued responses (or exceptions) are
    returned first, one per request.
    """

    def __init__(
        self,
        notices: Optional[List[Dict[str, Any]]] = None,
        total_records: Optional[int] = None,
    ) -> None:
        self.notices = list(notices or [])
        self.total_records = total_records
        self.requests: List[httpx.Request] = []
        self.fail_ncodes: Dict[str, int] = {}
        self._queued: List[Union[httpx.Response, Exception]] = []

    def queue(self, *responses: Union[httpx.Response, Exception]) -> None:
        self._queued.extend(responses)

    def params(self, index: int) -> httpx.QueryParams:
        return self.requests[index].url.params

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self._queued:
            queued = self._queued.pop(0)
            if isinstance(queued, Exception):
                raise queued
            return queued

        params = request.url.params
        ncode = params.get("ncode")
        if ncode in self.fail_ncodes:
            return httpx.Response(
                self.fail_ncodes[ncode], json={"error": {"message": f"bad ncode {ncode}"}}
            )

        notices = self.notices
        if ncode:
            notices = [n for n in notices if n.get("naicsCode") == ncode]
        limit = int(params.get("limit", 1000))
        offset = int(params.get("offset", 0))
        total = len(notices) if self.total_records is None else self.total_records
        return httpx.Response(
            200,
            json={
                "opportunitiesData": notices[offset : offset + limit],
                "totalRecords": total,
                "limit": limit,
                "offset": offset,
                "pageNumber": offset // limit,
                "totalPages": math.ceil(total / limit) if total else 0,
            },
        )

    def client(self, **kwargs: Any) -> SamOpportunitiesClient:
        kwargs.setdefault("api_keys", ["key-one-aaaaaaaa"])
        kwargs.setdefault("base_url", "https://api.sam.test/opportunities/v2/search")
        kwargs.setdefault("retry_delay", 1.0)
        kwargs.setdefault("max_retries", 3)
        kwargs.setdefault("rate_limiter", RateLimiter(1000, 60.0))
        kwargs.setdefault("sleep", FakeSleep())
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return SamOpportunitiesClient(http_client=http_client, **kwargs)


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_api() -> FakeSamApi:
    return FakeSamApi()
