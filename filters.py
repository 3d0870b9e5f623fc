"""Pure filtering and sorting of pull request lists per tab."""

from __future__ import annotations

from config import PRSortOrder, PRTabConfig, PRTabFilterMatchMode, PRTabFilterRule, PRTabFilterValue
from models import CheckSummary, PullRequestItem, ReviewSummary

_BASELINE_QUERIES = {"is:pr archived:false", "is:open is:pr archived:false"}
_SCOPE_QUALIFIERS = ("repo:", "org:", "user:")
_ACTOR_QUALIFIERS = ("author:", "assignee:", "review-requested:", "involves:")
_NARROWING_QUALIFIERS = ("label:", "base:", "head:")


def matches_filter(pr: PullRequestItem, rule: PRTabFilterRule) -> bool:
    value = rule.value
    if value == PRTabFilterValue.HAS_UNRESOLVED_COMMENTS:
        return pr.unresolved_review_threads > 0
    if value == PRTabFilterValue.NO_UNRESOLVED_COMMENTS:
        return pr.unresolved_review_threads == 0
    if value == PRTabFilterValue.REVIEW_APPROVED:
        return pr.review_summary == ReviewSummary.APPROVED
    if value == PRTabFilterValue.REVIEW_CHANGES_REQUESTED:
        return pr.review_summary == ReviewSummary.CHANGES_REQUESTED
    if value == PRTabFilterValue.REVIEW_REQUIRED:
        return pr.review_summary == ReviewSummary.REVIEW_REQUIRED
    if value == PRTabFilterValue.REVIEW_NONE:
        return pr.review_summary == ReviewSummary.NONE
    if value == PRTabFilterValue.CHECKS_PASSING:
        return pr.check_summary == CheckSummary.PASSING
    if value == PRTabFilterValue.CHECKS_FAILING:
        return pr.check_summary == CheckSummary.FAILING
    if value == PRTabFilterValue.CHECKS_PENDING:
        return pr.check_summary == CheckSummary.PENDING
    if value == PRTabFilterValue.CHECKS_NONE:
        return pr.check_summary == CheckSummary.NONE
    return False


def apply_tab_filters(items: list[PullRequestItem], tab: PRTabConfig) -> list[PullRequestItem]:
    """Keep items matching all (or any) of the tab's rules.

    A tab without rules keeps everything.
    """
    if not tab.filters:
        return list(items)
    if tab.filter_match_mode == PRTabFilterMatchMode.ANY:
        return [pr for pr in items if any(matches_filter(pr, rule) for rule in tab.filters)]
    return [pr for pr in items if all(matches_filter(pr, rule) for rule in tab.filters)]


def sort_pull_requests(items: list[PullRequestItem], order: PRSortOrder) -> list[PullRequestItem]:
    """Newest first by the chosen timestamp; ties keep their input order."""
    if order == PRSortOrder.CREATED_DESC:
        return sorted(items, key=lambda pr: pr.created_at, reverse=True)
    return sorted(items, key=lambda pr: pr.updated_at, reverse=True)


def is_broad_query(query: str) -> bool:
    """Heuristic for searches likely to match a large share of GitHub."""
    normalized = query.strip().lower()
    if not normalized or normalized in _BASELINE_QUERIES:
        return True

    has_pr = "is:pr" in normalized
    has_scope = any(q in normalized for q in _SCOPE_QUALIFIERS)
    has_actor = any(q in normalized for q in _ACTOR_QUALIFIERS)
    has_narrowing = any(q in normalized for q in _NARROWING_QUALIFIERS)

    if has_pr and not has_scope and not has_actor:
        return True
    if has_pr and has_scope and not has_actor and not has_narrowing:
        return True
    return False
