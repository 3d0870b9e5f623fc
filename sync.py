"""Pull request synchronization engine.

Fans out one search per enabled tab, merges the results into a snapshot,
persists it, and hydrates per-item details on demand. All state lives on one
asyncio event loop: mutations of ``by_tab_id`` never await between reading
and writing, and every mutation swaps in a new dict so readers only ever see
a complete snapshot.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable

from cache_store import CacheStore
from config import BuiltinTabKind, PRTabConfig, Settings, clamp_refresh_interval
from errors import GitHubClientError
from filters import apply_tab_filters, is_broad_query, sort_pull_requests
from gh_client import GitHubClient
from models import (
    CostAssessment,
    CostWarningLevel,
    PullRequestCache,
    PullRequestCommentThread,
    PullRequestCommentThreadStatus,
    PullRequestItem,
    QueryCostEstimate,
    TabCost,
)

logger = logging.getLogger(__name__)

GENERIC_TAB_FAILURE = "Unable to refresh pull requests."


@dataclass(frozen=True)
class CostThresholds:
    """Policy for classifying an estimated refresh cost."""

    high_tab_cost: int = 50
    moderate_tab_cost: int = 25
    low_budget_ratio: float = 0.1


def error_message(error: BaseException) -> str:
    """User-facing sentence for an error, generic for unknown failures."""
    if isinstance(error, GitHubClientError):
        message = str(error)
        if message:
            return message
    return GENERIC_TAB_FAILURE


def classify_cost(
    tab_costs: list[TabCost],
    total_cost: int,
    remaining: int,
    limit: int,
    thresholds: CostThresholds,
) -> CostWarningLevel:
    """High on a heavy tab or a nearly spent budget, moderate on a mid-sized tab."""
    max_tab_cost = max((t.cost for t in tab_costs), default=0)
    low_budget = limit > 0 and remaining / limit < thresholds.low_budget_ratio
    if max_tab_cost >= thresholds.high_tab_cost or low_budget or total_cost > remaining:
        return CostWarningLevel.HIGH
    if max_tab_cost >= thresholds.moderate_tab_cost:
        return CostWarningLevel.MODERATE
    return CostWarningLevel.NONE


_SEVERITY_PREFIX = {
    CostWarningLevel.HIGH: "This apply is likely expensive.",
    CostWarningLevel.MODERATE: "This apply may be expensive.",
}


def describe_cost_warning(assessment: CostAssessment) -> str:
    """Sentence shown before applying tab changes whose estimate warrants a warning."""
    prefix = _SEVERITY_PREFIX.get(assessment.warning_level, "")
    if not prefix and assessment.broad_tabs:
        prefix = "This apply includes broad queries."
    message = (
        f"{prefix} Estimated GraphQL cost is {assessment.total_cost} points "
        f"(remaining: {assessment.remaining}/{assessment.limit}). "
        "Review and narrow queries before applying."
    ).strip()
    if assessment.heavy_tabs:
        message += f"\nHigh-cost tabs: {', '.join(assessment.heavy_tabs)}."
    if assessment.broad_tabs:
        message += f"\nBroad-scope tabs: {', '.join(assessment.broad_tabs)}."
    if assessment.failed_tabs:
        message += f"\nNot estimated: {' '.join(assessment.failed_tabs)}"
    return message


def describe_unknown_cost(broad_tabs: list[str]) -> str:
    """Sentence shown when the cost dry-run failed for every tab."""
    if broad_tabs:
        return (
            f"Could not estimate query cost right now, and these tabs appear broad: {', '.join(broad_tabs)}. "
            "Review and narrow queries before proceeding."
        )
    return (
        "Could not estimate query cost right now. Applying may consume significant GraphQL points. "
        "Review your custom tab queries before proceeding."
    )


def broad_custom_tabs(settings: Settings) -> list[str]:
    """Titles of active custom tabs whose query is likely to match too much."""
    return [t.title for t in settings.active_tabs if not t.is_default and is_broad_query(settings.effective_query(t))]


class PullRequestStore:
    """Holds the per-tab snapshot and drives refreshes against GitHub."""

    def __init__(
        self,
        client: GitHubClient,
        cache: CacheStore,
        cost_thresholds: CostThresholds | None = None,
    ):
        self.client = client
        self.cache = cache
        self.cost_thresholds = cost_thresholds or CostThresholds()

        self.by_tab_id: dict[str, list[PullRequestItem]] = {}
        self.is_refreshing = False
        self.last_error_message: str | None = None
        self.last_detail_error: str | None = None
        self.detail_errors: dict[str, str] = {}
        self.last_updated_at: datetime | None = None
        self.notification_hint_count = 0

        self._auto_refresh_task: asyncio.Task | None = None
        self._loop_settings: Settings | None = None
        self._background_refreshes: set[asyncio.Task] = set()
        self._did_load_cache = False
        self._hydrations_in_flight: dict[tuple[str, str], asyncio.Task] = {}

    # --- lifecycle ---

    async def configure(self, settings: Settings) -> None:
        """Start auto-refresh for ``settings`` and recompute the hint count."""
        self.restart_auto_refresh(settings)
        self.update_notification_hints(settings)

    async def load_cached_if_needed(self) -> None:
        """Load the persisted snapshot once per process, before any network call."""
        if self._did_load_cache:
            return
        self._did_load_cache = True

        cached = self.cache.load()
        if cached is not None:
            self.by_tab_id = dict(cached.by_tab_id)
            self.last_updated_at = cached.updated_at
        else:
            self.by_tab_id = {}

    async def shutdown(self) -> None:
        """Stop the refresh loop and cancel background refreshes and detail loads."""
        await self.stop_auto_refresh()
        pending = list(self._background_refreshes) + list(self._hydrations_in_flight.values())
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    # --- refresh ---

    async def refresh_all(self, force: bool, settings: Settings) -> None:
        """Refresh every enabled tab concurrently and replace the snapshot.

        A non-forced call while another refresh is running does nothing. Tabs
        fail independently; the snapshot is replaced only if at least one tab
        succeeded.
        """
        if self.is_refreshing and not force:
            logger.debug("Refresh already in flight, skipping")
            return

        self.is_refreshing = True
        try:
            await self._refresh(settings)
        finally:
            self.is_refreshing = False

    async def _refresh(self, settings: Settings) -> None:
        tabs = settings.active_tabs
        if not tabs:
            self.by_tab_id = {}
            self.last_error_message = None
            self.notification_hint_count = 0
            return

        try:
            token = self.client.resolve_token()
        except GitHubClientError as e:
            self.last_error_message = error_message(e)
            logger.warning("Refresh aborted: %s", self.last_error_message)
            return

        graphql_url = settings.resolved_graphql_url

        async def fetch(tab: PRTabConfig) -> list[PullRequestItem]:
            return await self.client.fetch_pull_requests(settings.effective_query(tab), graphql_url, token)

        results = await asyncio.gather(*(fetch(tab) for tab in tabs), return_exceptions=True)

        updated = dict(self.by_tab_id)
        errors: list[str] = []
        success_count = 0
        for tab, result in zip(tabs, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                if not isinstance(result, GitHubClientError):
                    logger.exception("Unexpected failure refreshing tab %s", tab.title, exc_info=result)
                errors.append(f"{tab.title}: {error_message(result)}")
                continue
            updated[tab.id] = sort_pull_requests(apply_tab_filters(result, tab), settings.sort_order)
            success_count += 1

        logger.info("Refreshed %d of %d tabs", success_count, len(tabs))

        if success_count > 0:
            self.by_tab_id = updated
            self.last_updated_at = datetime.now(timezone.utc)
            self._persist()

        self.update_notification_hints(settings)
        self.last_error_message = "\n".join(errors) if errors else None

    # --- auto refresh ---

    def restart_auto_refresh(self, settings: Settings) -> None:
        """Cancel any running refresh loop and start a new one."""
        if self._auto_refresh_task is not None and not self._auto_refresh_task.done():
            self._auto_refresh_task.cancel()
        self._loop_settings = settings
        interval = clamp_refresh_interval(settings.refresh_interval_seconds)
        logger.info("Auto refresh every %ds", interval)
        self._auto_refresh_task = asyncio.create_task(self._auto_refresh_loop(interval))

    async def stop_auto_refresh(self) -> None:
        """Cancel the refresh loop and wait for it to exit."""
        task = self._auto_refresh_task
        self._auto_refresh_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def auto_refresh_running(self) -> bool:
        return self._auto_refresh_task is not None and not self._auto_refresh_task.done()

    async def _auto_refresh_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            # A restart stops the loop, not a refresh that already started.
            refresh = asyncio.create_task(self.refresh_all(False, self._loop_settings))
            self._background_refreshes.add(refresh)
            refresh.add_done_callback(self._background_refreshes.discard)
            try:
                await asyncio.shield(refresh)
            except Exception:
                logger.exception("Background refresh failed")

    # --- derived state ---

    def update_notification_hints(self, settings: Settings) -> None:
        """Review-requested items plus distinct pull requests with unresolved threads."""
        count = 0

        if settings.notify_review_requests:
            review_tab = next(
                (t for t in settings.active_tabs if t.default_kind == BuiltinTabKind.REVIEW_REQUESTED),
                None,
            )
            if review_tab is not None:
                count += len(self.by_tab_id.get(review_tab.id, []))

        if settings.notify_open_comments:
            with_open_comments = {
                pr.id for prs in self.by_tab_id.values() for pr in prs if pr.unresolved_review_threads > 0
            }
            count += len(with_open_comments)

        self.notification_hint_count = count

    def apply_sort(self, settings: Settings) -> None:
        """Re-sort every tab in memory without refetching."""
        self.by_tab_id = {
            tab_id: sort_pull_requests(items, settings.sort_order) for tab_id, items in self.by_tab_id.items()
        }
        if self.last_updated_at is not None:
            self._persist()

    def _persist(self) -> None:
        self.cache.save(PullRequestCache(updated_at=self.last_updated_at, by_tab_id=self.by_tab_id))

    def settings_changed(self, old: Settings, new: Settings) -> bool:
        """React to a saved settings change without fetching anything.

        Restarts auto-refresh when the interval changed, re-sorts when the sort
        order changed and recomputes hints. Returns True when tabs or hosts
        changed, meaning the snapshot is stale until the next forced refresh.
        """
        self._loop_settings = new
        if old.refresh_interval_seconds != new.refresh_interval_seconds:
            self.restart_auto_refresh(new)
        if old.sort_order != new.sort_order:
            self.apply_sort(new)
        self.update_notification_hints(new)
        return (
            old.active_tabs != new.active_tabs
            or old.resolved_graphql_url != new.resolved_graphql_url
        )

    # --- item lookup and replacement ---

    def find_item(self, item_id: str) -> PullRequestItem | None:
        """First item with ``item_id`` in any tab."""
        for items in self.by_tab_id.values():
            for item in items:
                if item.id == item_id:
                    return item
        return None

    def replace_item(
        self,
        item_id: str,
        mutator: Callable[[PullRequestItem], PullRequestItem],
        tab_id: str | None = None,
    ) -> bool:
        """Apply ``mutator`` to the item with ``item_id`` in place.

        Only tab ``tab_id`` is touched when given, otherwise every tab holding
        that pull request. Returns False if the item is no longer present.
        """
        updated = dict(self.by_tab_id)
        found = False
        for key, items in self.by_tab_id.items():
            if tab_id is not None and key != tab_id:
                continue
            if not any(item.id == item_id for item in items):
                continue
            updated[key] = [mutator(item) if item.id == item_id else item for item in items]
            found = True
        if found:
            self.by_tab_id = updated
        return found

    # --- detail hydration ---

    async def _hydrate(
        self,
        kind: str,
        item: PullRequestItem,
        settings: Settings,
        fetch: Callable[[str, str, str], Awaitable],
        apply: Callable[[PullRequestItem, object], PullRequestItem],
        tab_id: str | None,
    ) -> bool:
        """Fetch one detail kind for one item and swap it into the snapshot.

        A second caller for the same kind and item while a load is running
        awaits that load and gets its result instead of issuing another query.
        """
        key = (kind, item.id)
        task = self._hydrations_in_flight.get(key)
        if task is None:
            task = asyncio.create_task(self._load_detail(kind, item, settings, fetch, apply, tab_id))
            self._hydrations_in_flight[key] = task

            def forget(done: asyncio.Task) -> None:
                if self._hydrations_in_flight.get(key) is done:
                    del self._hydrations_in_flight[key]

            task.add_done_callback(forget)
        return await asyncio.shield(task)

    async def _load_detail(
        self,
        kind: str,
        item: PullRequestItem,
        settings: Settings,
        fetch: Callable[[str, str, str], Awaitable],
        apply: Callable[[PullRequestItem, object], PullRequestItem],
        tab_id: str | None,
    ) -> bool:
        try:
            token = self.client.resolve_token()
            result = await fetch(item.id, settings.resolved_graphql_url, token)
        except Exception as e:
            if isinstance(e, GitHubClientError):
                logger.warning("Loading %s for %s failed: %s", kind, item.id, e)
            else:
                logger.exception("Unexpected failure loading %s for %s", kind, item.id)
            message = f"#{item.number}: {error_message(e)}"
            self.detail_errors[item.id] = message
            self.last_detail_error = message
            return False

        self.detail_errors.pop(item.id, None)
        self.last_detail_error = None
        return self.replace_item(item.id, lambda current: apply(current, result), tab_id)

    def detail_error(self, item_id: str) -> str | None:
        """Message of the last failed detail load for ``item_id``, if it has not since succeeded."""
        return self.detail_errors.get(item_id)

    async def ensure_review_details_loaded(
        self, item: PullRequestItem, settings: Settings, tab_id: str | None = None, force: bool = False
    ) -> bool:
        """Load reviewers and review requests unless already loaded. Returns False on failure."""
        if not force and not item.review_details.is_empty:
            return True
        return await self._hydrate(
            "reviews",
            item,
            settings,
            self.client.fetch_review_details,
            lambda current, details: current.updating(review_details=details),
            tab_id,
        )

    async def ensure_checks_details_loaded(
        self, item: PullRequestItem, settings: Settings, tab_id: str | None = None, force: bool = False
    ) -> bool:
        """Load CI checks unless already loaded. Returns False on failure."""
        if not force and item.checks:
            return True
        return await self._hydrate(
            "checks",
            item,
            settings,
            self.client.fetch_checks,
            lambda current, checks: current.updating(checks=checks),
            tab_id,
        )

    async def ensure_comment_details_loaded(
        self, item: PullRequestItem, settings: Settings, tab_id: str | None = None, force: bool = False
    ) -> bool:
        """Load comment threads and recount unresolved ones. Returns False on failure."""
        if not force and item.comment_threads:
            return True

        def apply(current: PullRequestItem, threads: list[PullRequestCommentThread]) -> PullRequestItem:
            unresolved = sum(1 for t in threads if t.status == PullRequestCommentThreadStatus.UNRESOLVED)
            return current.updating(
                comment_threads=threads,
                unresolved_review_threads=unresolved,
                review_threads_total=max(current.review_threads_total, len(threads)),
            )

        loaded = await self._hydrate("comments", item, settings, self.client.fetch_comment_threads, apply, tab_id)
        if loaded:
            self.update_notification_hints(settings)
        return loaded

    # --- cost estimation ---

    async def assess_refresh_cost(self, settings: Settings) -> CostAssessment:
        """Dry-run every active tab's search and classify the expected cost.

        Tabs whose dry-run fails are left out of the totals and listed in
        ``failed_tabs``; if every tab fails the first error is raised.
        """
        tabs = settings.active_tabs
        broad_tabs = broad_custom_tabs(settings)
        if not tabs:
            return CostAssessment(total_cost=0, remaining=0, limit=0, tab_costs=[], broad_tabs=broad_tabs)

        token = self.client.resolve_token()
        graphql_url = settings.resolved_graphql_url

        async def estimate(tab: PRTabConfig) -> QueryCostEstimate:
            return await self.client.estimate_search_cost(settings.effective_query(tab), graphql_url, token)

        results = await asyncio.gather(*(estimate(tab) for tab in tabs), return_exceptions=True)

        tab_costs: list[TabCost] = []
        estimates: list[QueryCostEstimate] = []
        failed: list[str] = []
        first_error: BaseException | None = None
        for tab, result in zip(tabs, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                first_error = first_error or result
                failed.append(f"{tab.title}: {error_message(result)}")
                logger.warning("Cost estimate for tab %s failed: %s", tab.title, result)
                continue
            estimates.append(result)
            tab_costs.append(TabCost(tab_id=tab.id, title=tab.title, cost=result.cost))

        if not estimates:
            raise first_error

        total_cost = sum(t.cost for t in tab_costs)
        remaining = min(e.remaining for e in estimates)
        limit = max(e.limit for e in estimates)
        level = classify_cost(tab_costs, total_cost, remaining, limit, self.cost_thresholds)
        if failed and level == CostWarningLevel.NONE:
            level = CostWarningLevel.MODERATE

        return CostAssessment(
            total_cost=total_cost,
            remaining=remaining,
            limit=limit,
            tab_costs=tab_costs,
            failed_tabs=failed,
            broad_tabs=broad_tabs,
            heavy_tabs=[t.title for t in tab_costs if t.cost >= self.cost_thresholds.moderate_tab_cost],
            warning_level=level,
        )
