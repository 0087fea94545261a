"""Pydantic models for SAM.gov API responses and the sync pipeline."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

SyncStatus = Literal["running", "completed", "failed"]
RecordSyncStatus = Literal["pending", "synced", "error"]

FINAL_SYNC_STATUSES = ("completed", "failed")


def coerce_date(value: Union[date, str, None]) -> Optional[date]:
    """Best-effort conversion of a calendar value to a date.

    Accepts date/datetime objects, ISO strings (``2025-06-01`` or a full
    timestamp) and SAM.gov's ``MM/dd/yyyy``. Returns None when the value
    cannot be understood.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    if "/" in text:
        try:
            return datetime.strptime(text, "%m/%d/%Y").date()
        except ValueError:
            return None
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Wire models
# ---------------------------------------------------------------------------


class AwardeeResponse(BaseModel):
    """Awardee sub-object of an award notice."""

    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    ueiSAM: Optional[str] = None
    cageCode: Optional[str] = None


class AwardResponse(BaseModel):
    """Award sub-object of an award notice."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    number: Optional[str] = None
    amount: Optional[Union[str, float, int]] = None
    award_date: Optional[str] = Field(None, alias="date")
    awardee: Optional[AwardeeResponse] = None


class OpportunityResponse(BaseModel):
    """SAM.gov opportunity data from search API response.

    Every field is optional: a record missing its noticeId is still parsed
    so it can be reported individually during reconciliation instead of
    failing the whole page.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    noticeId: Optional[str] = None
    solicitationNumber: Optional[str] = None
    title: Optional[str] = None
    fullParentPathName: Optional[str] = None
    subTier: Optional[str] = None
    office: Optional[str] = None
    postedDate: Optional[str] = None
    updatedDate: Optional[str] = None
    type: Optional[str] = None
    baseType: Optional[str] = None
    archiveType: Optional[str] = None
    archiveDate: Optional[str] = None
    typeOfSetAsideDescription: Optional[str] = None
    typeOfSetAside: Optional[str] = None
    responseDeadLine: Optional[str] = None
    naicsCode: Optional[str] = None
    naicsCodes: Optional[List[str]] = None
    classificationCode: Optional[str] = None
    active: Optional[Union[bool, str]] = None
    organizationType: Optional[str] = None
    resourceLinks: Optional[List[str]] = None
    uiLink: Optional[str] = None
    description: Optional[str] = None
    pointOfContact: Optional[List[Any]] = None
    links: Optional[List[Any]] = None
    award: Optional[AwardResponse] = None


class SearchResponse(BaseModel):
    """SAM.gov search API response wrapper.

    ``opportunitiesData`` is kept as raw dicts so each element can be
    retained verbatim on the normalized record.
    """

    totalRecords: int
    opportunitiesData: List[Dict[str, Any]]
    limit: Optional[int] = None
    offset: Optional[int] = None
    pageNumber: Optional[int] = None
    totalPages: Optional[int] = None


# ---------------------------------------------------------------------------
# Search input / output
# ---------------------------------------------------------------------------


class SearchParams(BaseModel):
    """Query parameters for one search call."""

    model_config = ConfigDict(populate_by_name=True)

    posted_from: Optional[Union[date, str]] = Field(None, alias="postedFrom")
    posted_to: Optional[Union[date, str]] = Field(None, alias="postedTo")
    limit: int = Field(1000, ge=1, le=1000)
    offset: int = Field(0, ge=0)
    ptype: Optional[str] = None
    ncode: Optional[str] = None
    title: Optional[str] = None
    department: Optional[str] = None
    subtier: Optional[str] = None
    office: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    type_of_set_aside: Optional[str] = Field(None, alias="typeOfSetAside")
    rdlfrom: Optional[Union[date, str]] = None
    rdlto: Optional[Union[date, str]] = None
    organization_type: Optional[str] = Field(None, alias="organizationType")

    @model_validator(mode="after")
    def _check_date_range(self) -> "SearchParams":
        start = coerce_date(self.posted_from)
        end = coerce_date(self.posted_to)
        if start and end and start > end:
            raise ValueError(
                f"posted_from ({start}) must not be after posted_to ({end})"
            )
        return self


class PageInfo(BaseModel):
    """Pagination details reported by the API for one page."""

    limit: int
    offset: int
    page_number: Optional[int] = None
    total_pages: Optional[int] = None


class Opportunity(BaseModel):
    """Normalized opportunity record."""

    opportunity_id: Optional[str] = None
    notice_id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    opportunity_type: Optional[str] = None
    base_type: Optional[str] = None
    archive_type: Optional[str] = None
    archive_date: Optional[str] = None
    classification_code: Optional[str] = None
    naics_code: Optional[str] = None
    set_aside_code: Optional[str] = None
    set_aside: Optional[str] = None
    department: Optional[str] = None
    sub_tier: Optional[str] = None
    office: Optional[str] = None
    solicitation_number: Optional[str] = None
    posted_date: Optional[str] = None
    response_deadline: Optional[str] = None
    updated_date: Optional[str] = None
    contact_info: List[Any] = []
    attachments: List[str] = []
    award_number: Optional[str] = None
    award_amount: Optional[Decimal] = None
    awardee_name: Optional[str] = None
    awardee_uei: Optional[str] = None
    awardee_cage: Optional[str] = None
    awardee_info: Dict[str, Any] = {}
    sam_url: Optional[str] = None
    related_notices: List[Any] = []
    raw_data: Dict[str, Any] = {}
    data_source: str = "sam.gov"


class SearchPage(BaseModel):
    """One normalized page of search results."""

    records: List[Opportunity]
    total_count: int
    page_info: PageInfo
    warnings: List[str] = []


# ---------------------------------------------------------------------------
# Storage records
# ---------------------------------------------------------------------------


class OpportunityRecord(Opportunity):
    """An opportunity as held by an OpportunityStore."""

    id: str
    opportunity_id: str
    version: int = 1
    sync_status: RecordSyncStatus = "pending"
    last_synced_at: Optional[datetime] = None
    sync_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None


class SyncErrorDetail(BaseModel):
    """One entry in a sync run's error list."""

    message: str
    error_type: str
    opportunity_id: Optional[str] = None
    batch_number: Optional[int] = None


class SyncRun(BaseModel):
    """A persisted record of one orchestrator invocation."""

    id: str
    sync_type: str
    status: SyncStatus = "running"
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_failed: int = 0
    error_details: List[SyncErrorDetail] = []
    sync_parameters: Dict[str, Any] = {}
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_SYNC_STATUSES


# ---------------------------------------------------------------------------
# Orchestrator input / output
# ---------------------------------------------------------------------------


class SyncOptions(BaseModel):
    """Parameters for one sync run."""

    posted_from: str
    posted_to: str
    ptype: Optional[str] = None
    ncode: Optional[str] = None
    batch_size: Optional[int] = Field(None, ge=1)
    dry_run: bool = False
    sync_type: str = "api_sync"

    @field_validator("posted_from", "posted_to", mode="before")
    @classmethod
    def _date_to_iso(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return value.date().isoformat()
        if isinstance(value, date):
            return value.isoformat()
        return value


class SyncResult(BaseModel):
    """Summary returned to the caller once a run has finished."""

    success: bool
    run_id: str
    processed: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    errors: List[str] = []
    duration_ms: int = 0
    started_at: datetime
    completed_at: datetime
