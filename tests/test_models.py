"""Tests for Pydantic models."""

from datetime import date, datetime, timezone

import pytest
from pydantic import ValidationError

from samsync.models import (
    OpportunityResponse,
    SearchParams,
    SearchResponse,
    SyncOptions,
    SyncRun,
    coerce_date,
)


class TestOpportunityResponse:
    """Tests for OpportunityResponse model."""

    def test_minimal_opportunity(self) -> None:
        """Test creating opportunity with only a notice id."""
        opp = OpportunityResponse(noticeId="abc123")
        assert opp.noticeId == "abc123"
        assert opp.title is None
        assert opp.award is None

    def test_missing_notice_id_still_parses(self) -> None:
        """A record without noticeId is reported later, not at parse time."""
        opp = OpportunityResponse(title="No id")
        assert opp.noticeId is None

    def test_award_block(self) -> None:
        opp = OpportunityResponse.model_validate(
            {
                "noticeId": "abc123",
                "award": {
                    "number": "W912-1",
                    "amount": 1500.25,
                    "date": "2025-06-01",
                    "awardee": {"name": "Acme", "ueiSAM": "UEI1", "location": {}},
                },
            }
        )
        assert opp.award.award_date == "2025-06-01"
        assert opp.award.awardee.ueiSAM == "UEI1"

    def test_unknown_fields_are_kept(self) -> None:
        opp = OpportunityResponse.model_validate(
            {"noticeId": "abc123", "placeOfPerformance": {"state": {"code": "VA"}}}
        )
        assert opp.model_extra["placeOfPerformance"]["state"]["code"] == "VA"


class TestSearchResponse:
    """Tests for SearchResponse model."""

    def test_valid_search_response(self) -> None:
        response = SearchResponse(
            totalRecords=2,
            opportunitiesData=[{"noticeId": "1"}, {"noticeId": "2"}],
        )
        assert response.totalRecords == 2
        assert response.opportunitiesData[0]["noticeId"] == "1"

    def test_empty_opportunities_list(self) -> None:
        response = SearchResponse(totalRecords=0, opportunitiesData=[])
        assert len(response.opportunitiesData) == 0

    def test_missing_opportunities_raises(self) -> None:
        with pytest.raises(ValidationError):
            SearchResponse(totalRecords=0)  # type: ignore[call-arg]


class TestSearchParams:
    """Query parameter validation."""

    def test_aliases_for_wire_names(self) -> None:
        params = SearchParams(postedFrom="2025-06-01", typeOfSetAside="SBA")
        dumped = params.model_dump(by_alias=True, exclude_none=True)
        assert dumped["postedFrom"] == "2025-06-01"
        assert dumped["typeOfSetAside"] == "SBA"
        assert dumped["limit"] == 1000

    def test_limit_bounds(self) -> None:
        with pytest.raises(ValidationError):
            SearchParams(limit=0)
        with pytest.raises(ValidationError):
            SearchParams(limit=1001)
        with pytest.raises(ValidationError):
            SearchParams(offset=-1)

    def test_mixed_date_formats_compared(self) -> None:
        with pytest.raises(ValidationError):
            SearchParams(posted_from="06/20/2025", posted_to=date(2025, 6, 1))


class TestCoerceDate:
    def test_formats(self) -> None:
        assert coerce_date("2025-06-01") == date(2025, 6, 1)
        assert coerce_date("06/01/2025") == date(2025, 6, 1)
        assert coerce_date("2025-06-01T10:00:00") == date(2025, 6, 1)
        assert coerce_date(datetime(2025, 6, 1, 9)) == date(2025, 6, 1)
        assert coerce_date("13/45/2025") is None
        assert coerce_date("") is None


class TestSyncModels:
    def test_sync_options_dates_become_iso(self) -> None:
        options = SyncOptions(posted_from=date(2025, 6, 1), posted_to="2025-06-16")
        assert options.posted_from == "2025-06-01"
        assert options.sync_type == "api_sync"

    def test_batch_size_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            SyncOptions(posted_from="2025-06-01", posted_to="2025-06-16", batch_size=0)

    def test_sync_run_finality(self) -> None:
        run = SyncRun(id="r", sync_type="api_sync", started_at=datetime.now(timezone.utc))
        assert run.status == "running"
        assert not run.is_final
        assert run.model_copy(update={"status": "failed"}).is_final
