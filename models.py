"""Pydantic models for pull request snapshots, details and cost estimates."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys (the on-disk cache layout)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReviewSummary(str, Enum):
    APPROVED = "approved"
    CHANGES_REQUESTED = "changesRequested"
    REVIEW_REQUIRED = "reviewRequired"
    NONE = "none"


class CheckSummary(str, Enum):
    PASSING = "passing"
    FAILING = "failing"
    PENDING = "pending"
    NONE = "none"


class PullRequestCheckStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"


class PullRequestCommentThreadStatus(str, Enum):
    UNRESOLVED = "unresolved"
    RESOLVED = "resolved"


class PullRequestReviewActor(CamelModel):
    """A reviewer, identified by login. Teams use ``@teamname``."""

    login: str
    avatar_url: str | None = Field(default=None, alias="avatarURL")


class PullRequestReviewDetails(CamelModel):
    """Aggregated review state, each list sorted case-insensitively by login."""

    approved_by: list[PullRequestReviewActor] = []
    changes_requested_by: list[PullRequestReviewActor] = []
    review_requested_from: list[PullRequestReviewActor] = []

    @field_validator("approved_by", "changes_requested_by", "review_requested_from", mode="before")
    @classmethod
    def _accept_plain_logins(cls, value: object) -> object:
        # Older caches stored bare login strings.
        if isinstance(value, list):
            return [{"login": v} if isinstance(v, str) else v for v in value]
        return value

    @property
    def is_empty(self) -> bool:
        return not (self.approved_by or self.changes_requested_by or self.review_requested_from)


class PullRequestCheck(CamelModel):
    """A single CI check run or status context."""

    id: str
    name: str
    category: str
    status: PullRequestCheckStatus
    url: str | None = None


class PullRequestCommentThread(CamelModel):
    """A review thread, previewed by its first comment."""

    id: str
    preview: str
    author: str | None = None
    path: str | None = None
    line: int | None = None
    status: PullRequestCommentThreadStatus
    is_outdated: bool = False
    url: str | None = None


class PullRequestItem(CamelModel):
    """A pull request as last observed by a search."""

    id: str
    number: int
    repository: str  # "owner/repo"
    title: str
    author: str
    author_avatar_url: str | None = Field(default=None, alias="authorAvatarURL")
    additions: int = 0
    deletions: int = 0
    created_at: datetime
    updated_at: datetime
    url: str
    review_summary: ReviewSummary
    review_details: PullRequestReviewDetails = Field(default_factory=PullRequestReviewDetails)
    check_summary: CheckSummary
    checks: list[PullRequestCheck] = []
    unresolved_review_threads: int
    review_threads_total: int
    comment_threads: list[PullRequestCommentThread] = []

    @model_validator(mode="after")
    def _check_thread_counts(self) -> PullRequestItem:
        if self.unresolved_review_threads > self.review_threads_total:
            raise ValueError("unresolvedReviewThreads cannot exceed reviewThreadsTotal")
        return self

    @computed_field
    @property
    def checks_url(self) -> str:
        """Link to the pull request's Checks tab."""
        return f"{self.url.rstrip('/')}/checks"

    @computed_field
    @property
    def files_url(self) -> str:
        """Link to the pull request's changed files."""
        return f"{self.url.rstrip('/')}/files"

    def updating(
        self,
        review_details: PullRequestReviewDetails | None = None,
        checks: list[PullRequestCheck] | None = None,
        comment_threads: list[PullRequestCommentThread] | None = None,
        unresolved_review_threads: int | None = None,
        review_threads_total: int | None = None,
    ) -> PullRequestItem:
        """Return a copy with the given detail fields replaced; the rest is kept."""
        overrides = {
            "review_details": review_details,
            "checks": checks,
            "comment_threads": comment_threads,
            "unresolved_review_threads": unresolved_review_threads,
            "review_threads_total": review_threads_total,
        }
        return self.model_copy(update={k: v for k, v in overrides.items() if v is not None})


class PullRequestCache(CamelModel):
    """Persisted snapshot: every tab's items at the time of the last refresh."""

    updated_at: datetime
    by_tab_id: dict[str, list[PullRequestItem]] = {}


class QueryCostEstimate(BaseModel):
    """Result of a ``rateLimit(dryRun: true)`` query."""

    cost: int
    remaining: int
    limit: int


class CostWarningLevel(str, Enum):
    NONE = "none"
    MODERATE = "moderate"
    HIGH = "high"


class TabCost(BaseModel):
    tab_id: str
    title: str
    cost: int


class CostAssessment(BaseModel):
    """Estimated GraphQL cost of refreshing every active tab."""

    total_cost: int
    remaining: int
    limit: int
    tab_costs: list[TabCost]
    failed_tabs: list[str] = []
    broad_tabs: list[str] = []
    heavy_tabs: list[str] = []
    warning_level: CostWarningLevel = CostWarningLevel.NONE

    @computed_field
    @property
    def should_warn(self) -> bool:
        return self.warning_level != CostWarningLevel.NONE or bool(self.broad_tabs)
