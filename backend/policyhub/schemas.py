from enum import Enum
from typing import List, Optional, TypeVar

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

# Value the filter widgets send for "All ..."
EMPTY_SENTINEL = "__empty"

MAX_PAGE_SIZE = 100


class SortBy(str, Enum):
    title = "title"
    created_at = "created_at"
    updated_at = "updated_at"
    effective_date = "effective_date"


class SortOrder(str, Enum):
    asc = "asc"
    desc = "desc"


class ReviewSort(str, Enum):
    review_date = "review_date"
    title = "title"
    department = "department"


class ReviewStatus(str, Enum):
    overdue = "overdue"
    due_soon = "due_soon"
    upcoming = "upcoming"


def _blank_to_none(value):
    if value is None:
        return None
    value = str(value).strip()
    if not value or value == EMPTY_SENTINEL:
        return None
    return value


class PageParams(BaseModel):
    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1, le=MAX_PAGE_SIZE)


class PolicyFilters(BaseModel):
    search: Optional[str] = None
    status: Optional[str] = None
    department: Optional[str] = None
    category: Optional[str] = None
    portal: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    requires_acknowledgment: Optional[bool] = None

    @field_validator("search", "status", "department", "category", "portal", mode="before")
    @classmethod
    def _strip(cls, value):
        return _blank_to_none(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _clean_tags(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        out = []
        for tag in value:
            tag = _blank_to_none(tag)
            if tag and tag not in out:
                out.append(tag)
        return out

    @property
    def any_set(self) -> bool:
        return bool(
            self.search or self.status or self.department or self.category or self.portal
            or self.tags or self.requires_acknowledgment is not None
        )


class PolicyListParams(PolicyFilters, PageParams):
    sort_by: SortBy = SortBy.created_at
    sort_order: SortOrder = SortOrder.desc
    public_only: bool = False
    get_filter_metadata: bool = False


class PortalPolicyListParams(PolicyFilters, PageParams):
    sort_by: SortBy = SortBy.created_at
    sort_order: SortOrder = SortOrder.desc
    password: Optional[str] = None


class ReviewQueueParams(PageParams):
    department: Optional[str] = None
    category: Optional[str] = None
    overdue_only: bool = False
    sort: ReviewSort = ReviewSort.review_date
    order: Optional[SortOrder] = None

    @field_validator("department", "category", mode="before")
    @classmethod
    def _strip(cls, value):
        return _blank_to_none(value)

    @property
    def resolved_order(self) -> SortOrder:
        if self.order is not None:
            return self.order
        return SortOrder.asc if self.sort == ReviewSort.review_date else SortOrder.desc


P = TypeVar("P", bound=BaseModel)


def parse_params(model: type, **raw) -> P:
    """Build a parameter object, turning the first pydantic complaint into our ValidationError."""
    values = {k: v for k, v in raw.items() if v is not None}
    try:
        return model(**values)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        loc = first.get("loc") or ("params",)
        raise ValidationError(str(loc[0]), first.get("msg", "Invalid value")) from None


# --- Response models ---
class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class AssignedPortal(BaseModel):
    id: int
    name: str
    slug: str
    requires_acknowledgment: bool


class PolicyRow(BaseModel):
    id: int
    title: str
    status: str
    department: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = []
    effective_date: Optional[str] = None
    review_date: Optional[str] = None
    expiration_date: Optional[str] = None
    organization_id: str
    author_id: str
    reviewed_by: Optional[str] = None
    created_at: str
    updated_at: str
    acknowledged: bool = False
    acknowledged_count: int = 0
    assigned_count: int = 0
    overdue_count: int = 0
    due_soon_count: int = 0
    requires_acknowledgment_from_portals: bool = False
    assigned_portals: List[AssignedPortal] = []


class FilterMetadata(BaseModel):
    departments: List[str] = []
    categories: List[str] = []
    statuses: List[str] = []
    tags: List[str] = []
    portals: List[str] = []


class PolicyListResponse(BaseModel):
    policies: List[PolicyRow]
    pagination: Pagination
    filter_metadata: Optional[FilterMetadata] = None


class PortalInfo(BaseModel):
    id: int
    name: str
    slug: str
    access_type: str
    requires_acknowledgment: bool


class PortalPolicyListResponse(BaseModel):
    portal: PortalInfo
    policies: List[PolicyRow]
    pagination: Pagination


class ReviewRow(BaseModel):
    id: int
    title: str
    department: Optional[str] = None
    category: Optional[str] = None
    review_date: Optional[str] = None
    author_id: str
    author_display_name: Optional[str] = None
    days_overdue: int
    review_status: ReviewStatus


class ReviewQueueResponse(BaseModel):
    policies: List[ReviewRow]
    pagination: Pagination


class ReviewStats(BaseModel):
    total_due_for_review: int = 0
    total_overdue: int = 0
    due_soon: int = 0
    upcoming: int = 0


class ErrorResponse(BaseModel):
    detail: str
    field: Optional[str] = None
