"""SAM.gov Opportunities API client with rate limiting and retry logic."""

import asyncio
import email.utils
import logging
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx
from pydantic import ValidationError

from .config import settings
from .exceptions import (
    SamApiClientError,
    SamApiMaxRetriesError,
    SamApiNotFoundError,
    SamApiRateLimitError,
    SamApiResponseError,
)
from .models import (
    Opportunity,
    OpportunityResponse,
    PageInfo,
    SearchPage,
    SearchParams,
    SearchResponse,
    coerce_date,
)
from .rate_limiter import RateLimiter, Sleep

logger = logging.getLogger(__name__)

USER_AGENT = "samsync/0.1.0"
SAM_DATE_FORMAT = "%m/%d/%Y"

# Query parameters the API expects as MM/dd/yyyy
DATE_PARAMS = ("postedFrom", "postedTo", "rdlfrom", "rdlto")


def format_date_for_api(value: Union[date, str]) -> str:
    """Format a calendar date the way the SAM.gov API expects (MM/dd/yyyy).

    Strings that already contain a ``/`` are assumed to be in API format and
    returned as is.

    Raises:
        ValueError: If ``value`` is not a recognizable date.
    """
    if isinstance(value, date):
        return value.strftime(SAM_DATE_FORMAT)
    text = str(value).strip()
    if "/" in text:
        return text
    parsed = coerce_date(text)
    if parsed is None:
        raise ValueError(f"Invalid date format: {value!r}")
    return parsed.strftime(SAM_DATE_FORMAT)


def sanitize_params(params: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Copy of ``params`` with the API key shortened for logging."""
    if not params:
        return params
    sanitized = dict(params)
    api_key = sanitized.get("api_key")
    if api_key:
        sanitized["api_key"] = f"{str(api_key)[:8]}..."
    return sanitized


def extract_department_name(full_parent_path_name: Optional[str]) -> Optional[str]:
    """First segment of a dotted organization path.

    "DEPT OF DEFENSE.DEPT OF THE ARMY.W7NR" -> "DEPT OF DEFENSE"
    """
    if not full_parent_path_name:
        return None
    return full_parent_path_name.split(".")[0].strip() or None


def parse_award_amount(amount: Any) -> Optional[Decimal]:
    if amount is None or amount == "":
        return None
    try:
        return Decimal(str(amount).replace(",", "").replace("$", "").strip())
    except InvalidOperation:
        logger.warning(f"Unparsable award amount {amount!r}, storing as null")
        return None


def normalize_opportunity(item: Dict[str, Any]) -> Opportunity:
    """Flatten a raw ``opportunitiesData`` element into an Opportunity.

    The raw element is kept untouched on ``raw_data``.
    """
    opp = OpportunityResponse.model_validate(item)
    award = opp.award
    awardee = award.awardee if award else None

    return Opportunity(
        opportunity_id=opp.noticeId,
        notice_id=opp.noticeId,
        title=opp.title,
        description=opp.description,
        opportunity_type=opp.type,
        base_type=opp.baseType,
        archive_type=opp.archiveType,
        archive_date=opp.archiveDate,
        classification_code=opp.classificationCode,
        naics_code=opp.naicsCode,
        set_aside_code=opp.typeOfSetAside,
        set_aside=opp.typeOfSetAsideDescription,
        department=extract_department_name(opp.fullParentPathName),
        sub_tier=opp.fullParentPathName,
        office=opp.organizationType,
        solicitation_number=opp.solicitationNumber,
        posted_date=opp.postedDate,
        response_deadline=opp.responseDeadLine,
        updated_date=opp.updatedDate,
        contact_info=opp.pointOfContact or [],
        attachments=opp.resourceLinks or [],
        award_number=award.number if award else None,
        award_amount=parse_award_amount(award.amount) if award else None,
        awardee_name=awardee.name if awardee else None,
        awardee_uei=awardee.ueiSAM if awardee else None,
        awardee_cage=awardee.cageCode if awardee else None,
        awardee_info=(item.get("award") or {}).get("awardee") or {},
        sam_url=opp.uiLink,
        related_notices=opp.links or [],
        raw_data=item,
    )


class SamOpportunitiesClient:
    """Async client for SAM.gov Get Opportunities Public API.

    Every attempt first takes a token from the active key's rate-limit
    bucket. 429/5xx/1xx responses, timeouts and transport errors are
    retried with exponential backoff. When several keys are configured a
    429 rotates to the next key before falling back to backoff.

    Usage:
        async with SamOpportunitiesClient() as client:
            page = await client.search(
                SearchParams(posted_from="2025-06-01", posted_to="2025-06-16")
            )
    """

    def __init__(
        self,
        api_keys: Optional[Sequence[str]] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        max_rate_limit_wait: Optional[float] = None,
        rate_limiter: Optional[RateLimiter] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Optional[Sleep] = None,
    ) -> None:
        self.api_keys: List[str] = list(api_keys or settings.api_keys)
        if not self.api_keys:
            raise ValueError("At least one SAM.gov API key is required")
        self.base_url = base_url or settings.SAM_BASE_URL
        self.timeout = settings.SAM_REQUEST_TIMEOUT if timeout is None else timeout
        self.max_retries = (
            settings.SAM_MAX_RETRIES if max_retries is None else max_retries
        )
        self.retry_delay = (
            settings.SAM_RETRY_DELAY if retry_delay is None else retry_delay
        )
        self.max_rate_limit_wait = (
            settings.SAM_MAX_RATE_LIMIT_WAIT_SECONDS
            if max_rate_limit_wait is None
            else max_rate_limit_wait
        )
        self.rate_limiter = rate_limiter or RateLimiter(
            settings.SAM_RATE_LIMIT_PER_MINUTE,
            settings.SAM_RATE_LIMIT_WINDOW_SECONDS,
        )
        self._sleep = sleep or asyncio.sleep
        self.client = http_client or httpx.AsyncClient(
            timeout=self.timeout,
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
        )
        self._key_index = 0

    async def __aenter__(self) -> "SamOpportunitiesClient":
        """Enter async context manager."""
        return self

    async def __aexit__(self, *args: object) -> None:
        """Exit async context manager and close the HTTP client."""
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self.client.aclose()

    @property
    def current_api_key(self) -> str:
        return self.api_keys[self._key_index]

    @property
    def key_index(self) -> int:
        return self._key_index

    def rotate_api_key(self) -> None:
        """Advance to the next key in round-robin order."""
        self._key_index = (self._key_index + 1) % len(self.api_keys)
        logger.info(
            f"Rotated to API key {self._key_index + 1}/{len(self.api_keys)}"
        )

    async def _request_with_retry(
        self, url: str, params: Dict[str, Any]
    ) -> httpx.Response:
        """Make a GET request with rate limiting, key rotation and retries.

        Args:
            url: The API endpoint URL.
            params: Query parameters, without the api_key.

        Returns:
            The successful HTTP response.

        Raises:
            SamApiRateLimitError: If Retry-After exceeds the wait ceiling.
            SamApiMaxRetriesError: If max retries are exhausted.
            SamApiClientError: On a non-transient 3xx/4xx response.
        """
        attempt = 0
        rotations = 0

        while True:
            api_key = self.current_api_key
            await self.rate_limiter.acquire(api_key)

            request_params = {**params, "api_key": api_key}
            logger.debug(f"SAM API request: GET {url} {sanitize_params(request_params)}")

            retry_after: Optional[float] = None
            try:
                response = await self.client.get(
                    url, params=request_params, timeout=self.timeout
                )
            except httpx.TimeoutException as e:
                status_code: Optional[int] = None
                trigger = f"timeout ({type(e).__name__})"
            except httpx.RequestError as e:
                status_code = None
                trigger = f"request error ({type(e).__name__}: {e})"
            else:
                status_code = response.status_code
                trigger = f"HTTP {status_code}"

                if 200 <= status_code < 300:
                    logger.debug(
                        f"SAM API response: {status_code} "
                        f"({len(response.content)} bytes)"
                    )
                    return response

                if status_code == 429:
                    if rotations < len(self.api_keys) - 1:
                        rotations += 1
                        logger.warning(
                            f"Rate limited (429) on key {self._key_index + 1}; "
                            "rotating API key and retrying immediately"
                        )
                        self.rotate_api_key()
                        continue

                    retry_after = self._parse_retry_after(response)
                    if retry_after is not None and retry_after > self.max_rate_limit_wait:
                        logger.error(
                            f"Rate limit wait time too long: {retry_after:.2f}s. "
                            "Aborting."
                        )
                        raise SamApiRateLimitError(
                            f"Rate limit exceeded. Try again after {retry_after:.0f}s",
                            status_code=429,
                        )
                elif 300 <= status_code < 500:
                    message = self._error_message(response)
                    logger.error(
                        f"SAM API request failed with {status_code}: {message} "
                        f"params={sanitize_params(request_params)}"
                    )
                    error_cls = (
                        SamApiNotFoundError if status_code == 404 else SamApiClientError
                    )
                    raise error_cls(message, status_code=status_code)

            if attempt >= self.max_retries:
                logger.error(
                    f"Giving up on {url} after {attempt + 1} attempts; last {trigger}"
                )
                raise SamApiMaxRetriesError(
                    f"Max retries exceeded for url: {url} (last error: {trigger})",
                    status_code=status_code,
                )

            wait_time = (
                retry_after
                if retry_after is not None
                else self.retry_delay * (2**attempt)
            )
            attempt += 1
            logger.warning(
                f"SAM API retry attempt {attempt}/{self.max_retries} after "
                f"{trigger}. Waiting {wait_time:.2f}s..."
            )
            await self._sleep(wait_time)

    def _parse_retry_after(self, response: httpx.Response) -> Optional[float]:
        """Parse the Retry-After header of a 429 response.

        Returns:
            Wait time in seconds, or None when the header is absent or
            unreadable.
        """
        retry_after = response.headers.get("Retry-After")
        if not retry_after:
            return None

        # Try parsing as seconds first
        try:
            return max(0.0, float(retry_after))
        except ValueError:
            pass

        # Try parsing as HTTP date
        try:
            date_obj = email.utils.parsedate_to_datetime(retry_after)
            now = datetime.now(date_obj.tzinfo)
            wait_time = (date_obj - now).total_seconds()
            return max(1.0, wait_time)  # Minimum 1 second if date is past
        except (TypeError, ValueError) as parse_err:
            logger.warning(
                f"Failed to parse Retry-After header '{retry_after}': {parse_err}"
            )
        return None

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:500] or response.reason_phrase
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            for key in ("message", "errorMessage", "error"):
                if body.get(key):
                    return str(body[key])
        return str(body)[:500]

    def _format_date_param(self, name: str, value: Any, warnings: List[str]) -> str:
        try:
            return format_date_for_api(value)
        except ValueError:
            message = f"Invalid date format for {name}: {value!r}; sent unchanged"
            logger.warning(message)
            warnings.append(message)
            return str(value)

    async def search(
        self, params: Optional[SearchParams] = None, **filters: Any
    ) -> SearchPage:
        """Fetch one page of opportunities.

        Args:
            params: Search parameters. Keyword filters build one if omitted.

        Returns:
            The normalized page with the total count reported by the API.

        Raises:
            SamApiError: When retries are exhausted, the request is rejected
                or the response cannot be understood.
        """
        if params is None:
            params = SearchParams(**filters)

        warnings: List[str] = []
        query = params.model_dump(by_alias=True, exclude_none=True)
        for name in DATE_PARAMS:
            if name in query:
                query[name] = self._format_date_param(name, query[name], warnings)

        logger.info(f"Searching SAM opportunities: {sanitize_params(query)}")
        response = await self._request_with_retry(self.base_url, query)

        try:
            data = response.json()
        except ValueError as e:
            raise SamApiResponseError(
                f"Response is not valid JSON: {e}", status_code=response.status_code
            ) from e

        try:
            parsed = SearchResponse.model_validate(data)
            records = [normalize_opportunity(item) for item in parsed.opportunitiesData]
        except ValidationError as e:
            raise SamApiResponseError(
                f"Unexpected response shape: {e}", status_code=response.status_code
            ) from e

        logger.info(
            f"SAM search returned {len(records)} of {parsed.totalRecords} records "
            f"(page {parsed.pageNumber}/{parsed.totalPages})"
        )

        return SearchPage(
            records=records,
            total_count=parsed.totalRecords,
            page_info=PageInfo(
                limit=parsed.limit if parsed.limit is not None else params.limit,
                offset=parsed.offset if parsed.offset is not None else params.offset,
                page_number=parsed.pageNumber,
                total_pages=parsed.totalPages,
            ),
            warnings=warnings,
        )

    async def test_connection(self) -> Dict[str, Any]:
        """Run a minimal search to verify connectivity and authentication."""
        today = date.today()
        try:
            page = await self.search(
                SearchParams(
                    posted_from=today - timedelta(days=30),
                    posted_to=today,
                    limit=1,
                    ptype="a",
                )
            )
        except Exception as e:
            logger.error(f"SAM.gov API connection test failed: {e}")
            return {
                "success": False,
                "message": f"API connection failed: {e}",
                "details": {
                    "error": str(e),
                    "status": getattr(e, "status_code", None),
                    "api_url": self.base_url,
                },
            }

        logger.info(
            f"SAM.gov API connection test successful ({page.total_count} records)"
        )
        return {
            "success": True,
            "message": "API connection successful",
            "details": {
                "total_records": page.total_count,
                "api_url": self.base_url,
                "rate_limit_per_window": self.rate_limiter.requests_per_window,
            },
        }

    def get_rate_limit_status(self) -> Dict[str, Any]:
        """Remaining budget of the active key."""
        status = self.rate_limiter.status(self.current_api_key)
        status["key_index"] = self._key_index
        status["total_keys"] = len(self.api_keys)
        return status
