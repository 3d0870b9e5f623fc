"""Mapping of GitHub GraphQL response nodes onto domain models."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from urllib.parse import urlsplit

from models import (
    CheckSummary,
    PullRequestCheck,
    PullRequestCheckStatus,
    PullRequestCommentThread,
    PullRequestCommentThreadStatus,
    PullRequestItem,
    PullRequestReviewActor,
    PullRequestReviewDetails,
    ReviewSummary,
)

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 120
EMPTY_PREVIEW = "Open thread"
DEFAULT_CHECK_RUN_CATEGORY = "GitHub Actions"
STATUS_CONTEXT_CATEGORY = "Status checks"

_REVIEW_DECISIONS = {
    "APPROVED": ReviewSummary.APPROVED,
    "CHANGES_REQUESTED": ReviewSummary.CHANGES_REQUESTED,
    "REVIEW_REQUIRED": ReviewSummary.REVIEW_REQUIRED,
}

_ROLLUP_STATES = {
    "SUCCESS": CheckSummary.PASSING,
    "FAILURE": CheckSummary.FAILING,
    "ERROR": CheckSummary.FAILING,
    "STARTUP_FAILURE": CheckSummary.FAILING,
    "PENDING": CheckSummary.PENDING,
    "EXPECTED": CheckSummary.PENDING,
}

_CHECK_RUN_CONCLUSIONS = {
    "SUCCESS": PullRequestCheckStatus.SUCCESS,
    "NEUTRAL": PullRequestCheckStatus.SUCCESS,
    "SKIPPED": PullRequestCheckStatus.SUCCESS,
    "FAILURE": PullRequestCheckStatus.FAILURE,
    "ERROR": PullRequestCheckStatus.FAILURE,
    "TIMED_OUT": PullRequestCheckStatus.FAILURE,
    "ACTION_REQUIRED": PullRequestCheckStatus.FAILURE,
    "STARTUP_FAILURE": PullRequestCheckStatus.FAILURE,
    "STALE": PullRequestCheckStatus.FAILURE,
    "CANCELLED": PullRequestCheckStatus.FAILURE,
}

_CHECK_RUN_STATUSES = {
    "COMPLETED": PullRequestCheckStatus.SUCCESS,
    "IN_PROGRESS": PullRequestCheckStatus.PENDING,
    "QUEUED": PullRequestCheckStatus.PENDING,
    "PENDING": PullRequestCheckStatus.PENDING,
    "WAITING": PullRequestCheckStatus.PENDING,
    "REQUESTED": PullRequestCheckStatus.PENDING,
    "EXPECTED": PullRequestCheckStatus.PENDING,
}

_STATUS_CONTEXT_STATES = {
    "SUCCESS": PullRequestCheckStatus.SUCCESS,
    "FAILURE": PullRequestCheckStatus.FAILURE,
    "ERROR": PullRequestCheckStatus.FAILURE,
    "TIMED_OUT": PullRequestCheckStatus.FAILURE,
    "CANCELLED": PullRequestCheckStatus.FAILURE,
    "ACTION_REQUIRED": PullRequestCheckStatus.FAILURE,
    "STARTUP_FAILURE": PullRequestCheckStatus.FAILURE,
    "PENDING": PullRequestCheckStatus.PENDING,
    "EXPECTED": PullRequestCheckStatus.PENDING,
}


def parse_github_date(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp with or without fractional seconds.

    Returns None for anything without an explicit UTC offset.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return parsed.astimezone(timezone.utc)


def parse_url(value: str | None) -> str | None:
    """Return the URL if it is absolute (scheme and host), else None."""
    if not value or any(ch.isspace() for ch in value):
        return None
    try:
        parts = urlsplit(value)
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return value


def review_summary(decision: str | None) -> ReviewSummary:
    """Map a ``reviewDecision`` value; unknown or missing is NONE."""
    return _REVIEW_DECISIONS.get(decision or "", ReviewSummary.NONE)


def check_summary(state: str | None) -> CheckSummary:
    """Map a ``statusCheckRollup.state`` value; unknown or missing is NONE."""
    return _ROLLUP_STATES.get(state or "", CheckSummary.NONE)


def _parse_rollup_state(pr_node: dict) -> str | None:
    """Extract the rollup state from the last commit."""
    commits = (pr_node.get("commits") or {}).get("nodes") or []
    if not commits:
        return None
    rollup = (commits[0].get("commit") or {}).get("statusCheckRollup")
    if not rollup:
        return None
    return rollup.get("state")


def parse_pr_node(pr_node: dict) -> PullRequestItem | None:
    """Convert a search result node into a PullRequestItem.

    Nodes with an unparseable url, createdAt or updatedAt are skipped (None).
    Empty dicts come back for search hits that are not pull requests.
    """
    if not pr_node.get("id"):
        return None
    url = parse_url(pr_node.get("url"))
    created_at = parse_github_date(pr_node.get("createdAt"))
    updated_at = parse_github_date(pr_node.get("updatedAt"))
    if url is None or created_at is None or updated_at is None:
        logger.debug("Skipping search node %s with unparseable url or timestamps", pr_node.get("id"))
        return None

    author = pr_node.get("author") or {}
    threads = pr_node.get("reviewThreads") or {}
    thread_nodes = threads.get("nodes") or []
    unresolved = sum(1 for t in thread_nodes if not t.get("isResolved"))

    return PullRequestItem(
        id=pr_node["id"],
        number=pr_node["number"],
        repository=(pr_node.get("repository") or {}).get("nameWithOwner", ""),
        title=pr_node.get("title", ""),
        author=author.get("login") or "unknown",
        author_avatar_url=parse_url(author.get("avatarUrl")),
        additions=pr_node.get("additions") or 0,
        deletions=pr_node.get("deletions") or 0,
        created_at=created_at,
        updated_at=updated_at,
        url=url,
        review_summary=review_summary(pr_node.get("reviewDecision")),
        check_summary=check_summary(_parse_rollup_state(pr_node)),
        unresolved_review_threads=unresolved,
        review_threads_total=max(threads.get("totalCount") or 0, unresolved),
    )


def deduplicate(items: list[PullRequestItem]) -> list[PullRequestItem]:
    """Drop repeated ids, keeping the first occurrence and the input order."""
    seen: set[str] = set()
    unique: list[PullRequestItem] = []
    for item in items:
        if item.id in seen:
            continue
        seen.add(item.id)
        unique.append(item)
    return unique


def map_search_nodes(nodes: list[dict]) -> list[PullRequestItem]:
    """Map, deduplicate and sort search nodes newest-updated first."""
    mapped = [item for item in (parse_pr_node(node or {}) for node in nodes) if item is not None]
    return sorted(deduplicate(mapped), key=lambda item: item.updated_at, reverse=True)


def check_run_status(conclusion: str | None, status: str | None) -> PullRequestCheckStatus | None:
    """Conclusion wins when known; otherwise fall back to the run status."""
    mapped = _CHECK_RUN_CONCLUSIONS.get(conclusion or "")
    if mapped is not None:
        return mapped
    return _CHECK_RUN_STATUSES.get(status or "")


def status_context_status(state: str | None) -> PullRequestCheckStatus | None:
    return _STATUS_CONTEXT_STATES.get(state or "")


def parse_check_context(context_node: dict) -> PullRequestCheck | None:
    """Convert a CheckRun or StatusContext node. Unmappable nodes yield None."""
    type_name = context_node.get("__typename")

    if type_name == "CheckRun":
        name = context_node.get("name")
        status = check_run_status(context_node.get("conclusion"), context_node.get("status"))
        if not name or status is None:
            return None
        workflow = ((context_node.get("checkSuite") or {}).get("workflowRun") or {}).get("workflow") or {}
        category = workflow.get("name") or DEFAULT_CHECK_RUN_CATEGORY
        return PullRequestCheck(
            id=f"{category}|{name}",
            name=name,
            category=category,
            status=status,
            url=parse_url(context_node.get("detailsUrl")),
        )

    if type_name == "StatusContext":
        name = context_node.get("context")
        status = status_context_status(context_node.get("state"))
        if not name or status is None:
            return None
        return PullRequestCheck(
            id=f"{STATUS_CONTEXT_CATEGORY}|{name}",
            name=name,
            category=STATUS_CONTEXT_CATEGORY,
            status=status,
            url=parse_url(context_node.get("targetUrl")),
        )

    return None


def map_checks(pr_node: dict | None) -> list[PullRequestCheck]:
    """Checks of the last commit of a ``node(id:)`` pull request response."""
    if not pr_node:
        return []
    commits = (pr_node.get("commits") or {}).get("nodes") or []
    if not commits:
        return []
    rollup = (commits[0].get("commit") or {}).get("statusCheckRollup") or {}
    contexts = (rollup.get("contexts") or {}).get("nodes") or []
    return [check for check in (parse_check_context(c or {}) for c in contexts) if check is not None]


def parse_comment_thread(thread_node: dict) -> PullRequestCommentThread:
    """Build a thread previewed by its first comment, truncated to PREVIEW_LENGTH."""
    comments = (thread_node.get("comments") or {}).get("nodes") or []
    first = comments[0] if comments else {}
    raw_preview = (first.get("bodyText") or "").strip()
    preview = raw_preview[:PREVIEW_LENGTH] if raw_preview else EMPTY_PREVIEW

    return PullRequestCommentThread(
        id=thread_node["id"],
        preview=preview,
        author=(first.get("author") or {}).get("login"),
        path=thread_node.get("path"),
        line=thread_node.get("line"),
        status=(
            PullRequestCommentThreadStatus.RESOLVED
            if thread_node.get("isResolved")
            else PullRequestCommentThreadStatus.UNRESOLVED
        ),
        is_outdated=bool(thread_node.get("isOutdated")),
        url=parse_url(first.get("url")),
    )


def map_comment_threads(pr_node: dict | None) -> list[PullRequestCommentThread]:
    """Review threads of a ``node(id:)`` pull request response, skipping ones without an id."""
    if not pr_node:
        return []
    threads = (pr_node.get("reviewThreads") or {}).get("nodes") or []
    return [parse_comment_thread(t) for t in threads if t and t.get("id")]


def _sorted_by_login(actors: list[PullRequestReviewActor]) -> list[PullRequestReviewActor]:
    return sorted(actors, key=lambda actor: actor.login.casefold())


def _requested_reviewer_actor(request_node: dict) -> PullRequestReviewActor | None:
    reviewer = request_node.get("requestedReviewer")
    if not reviewer:
        return None
    type_name = reviewer.get("__typename")
    if type_name == "User" and reviewer.get("login"):
        return PullRequestReviewActor(login=reviewer["login"], avatar_url=parse_url(reviewer.get("avatarUrl")))
    if type_name == "Team" and reviewer.get("name"):
        return PullRequestReviewActor(login=f"@{reviewer['name']}", avatar_url=parse_url(reviewer.get("avatarUrl")))
    return None


def build_review_details(review_nodes: list[dict], request_nodes: list[dict]) -> PullRequestReviewDetails:
    """Aggregate latest reviews and every page of review requests.

    Only the most recently submitted review per author counts; requested
    reviewers are deduplicated by login, first entry wins.
    """
    oldest = datetime.min.replace(tzinfo=timezone.utc)
    latest_by_author: dict[str, dict] = {}
    for review in review_nodes:
        login = (review.get("author") or {}).get("login")
        if not login:
            continue
        existing = latest_by_author.get(login)
        if existing is None:
            latest_by_author[login] = review
            continue
        existing_date = parse_github_date(existing.get("submittedAt")) or oldest
        review_date = parse_github_date(review.get("submittedAt")) or oldest
        if review_date >= existing_date:
            latest_by_author[login] = review

    def actors_with_state(state: str) -> list[PullRequestReviewActor]:
        return _sorted_by_login(
            [
                PullRequestReviewActor(login=login, avatar_url=parse_url((review.get("author") or {}).get("avatarUrl")))
                for login, review in latest_by_author.items()
                if review.get("state") == state
            ]
        )

    requested: dict[str, PullRequestReviewActor] = {}
    for request in request_nodes:
        actor = _requested_reviewer_actor(request or {})
        if actor is not None and actor.login not in requested:
            requested[actor.login] = actor

    return PullRequestReviewDetails(
        approved_by=actors_with_state("APPROVED"),
        changes_requested_by=actors_with_state("CHANGES_REQUESTED"),
        review_requested_from=_sorted_by_login(list(requested.values())),
    )
