"""Tests for the pull request synchronization engine."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

import sync
from cache_store import CacheStore
from config import (
    PRSortOrder,
    PRTabConfig,
    PRTabFilterField,
    PRTabFilterRule,
    PRTabFilterValue,
    Settings,
)
from errors import GraphQLError, MissingTokenError, NetworkError
from models import (
    CheckSummary,
    CostAssessment,
    CostWarningLevel,
    PullRequestCheck,
    PullRequestCheckStatus,
    PullRequestCommentThread,
    PullRequestCommentThreadStatus,
    PullRequestItem,
    PullRequestReviewActor,
    PullRequestReviewDetails,
    QueryCostEstimate,
    ReviewSummary,
    TabCost,
)
from sync import CostThresholds, PullRequestStore, describe_cost_warning, describe_unknown_cost

BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)
ASSIGNED = "is:open is:pr archived:false assignee:@me"
REVIEW = "is:open is:pr archived:false review-requested:@me"
CREATED = "is:open is:pr archived:false author:@me"


def make_item(item_id: str, hours: int = 0, unresolved: int = 0, **overrides) -> PullRequestItem:
    fields = dict(
        id=item_id,
        number=int("".join(ch for ch in item_id if ch.isdigit()) or 1),
        repository="acme/api",
        title=f"PR {item_id}",
        author="octocat",
        created_at=BASE,
        updated_at=BASE + timedelta(hours=hours),
        url=f"https://github.com/acme/api/pull/{item_id}",
        review_summary=ReviewSummary.NONE,
        check_summary=CheckSummary.NONE,
        unresolved_review_threads=unresolved,
        review_threads_total=max(unresolved, 2),
    )
    fields.update(overrides)
    return PullRequestItem(**fields)


class FakeGitHubClient:
    """In-memory stand-in for GitHubClient, keyed by search query."""

    def __init__(self, results=None, costs=None, token="secret"):
        self.results = results or {}
        self.costs = costs or {}
        self.token = token
        self.search_calls: list[str] = []
        self.detail_calls: list[tuple[str, str]] = []
        self.gate: asyncio.Event | None = None
        self.checks: dict[str, object] = {}
        self.threads: dict[str, object] = {}
        self.reviews: dict[str, object] = {}

    def resolve_token(self) -> str:
        if not self.token:
            raise MissingTokenError()
        return self.token

    async def fetch_pull_requests(self, query, graphql_url, token=None):
        self.search_calls.append(query)
        if self.gate is not None:
            await self.gate.wait()
        result = self.results.get(query, [])
        if isinstance(result, BaseException):
            raise result
        return list(result)

    async def estimate_search_cost(self, query, graphql_url, token=None):
        result = self.costs[query]
        if isinstance(result, BaseException):
            raise result
        return result

    async def _detail(self, kind, store, node_id):
        self.detail_calls.append((kind, node_id))
        await asyncio.sleep(0)
        result = store[node_id]
        if isinstance(result, BaseException):
            raise result
        return result

    async def fetch_checks(self, node_id, graphql_url, token=None):
        return await self._detail("checks", self.checks, node_id)

    async def fetch_comment_threads(self, node_id, graphql_url, token=None):
        return await self._detail("comments", self.threads, node_id)

    async def fetch_review_details(self, node_id, graphql_url, token=None):
        return await self._detail("reviews", self.reviews, node_id)


@pytest.fixture
def cache(tmp_path) -> CacheStore:
    return CacheStore(tmp_path / "cache.json")


def _store(client: FakeGitHubClient, cache: CacheStore, **kwargs) -> PullRequestStore:
    return PullRequestStore(client, cache, **kwargs)


async def _settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_refresh_replaces_snapshot_and_persists(cache) -> None:
    client = FakeGitHubClient({ASSIGNED: [make_item("PR_1", hours=1), make_item("PR_2", hours=5)]})
    store = _store(client, cache)

    await store.refresh_all(False, Settings())

    assert sorted(client.search_calls) == sorted([ASSIGNED, REVIEW, CREATED])
    assert [pr.id for pr in store.by_tab_id["assignedToMe"]] == ["PR_2", "PR_1"]
    assert store.by_tab_id["reviewRequested"] == []
    assert store.last_error_message is None
    assert store.last_updated_at is not None
    assert cache.load().by_tab_id == store.by_tab_id


@pytest.mark.asyncio
async def test_failing_tab_keeps_previous_data_and_reports_only_itself(cache) -> None:
    client = FakeGitHubClient(
        {
            ASSIGNED: [make_item("PR_1")],
            REVIEW: NetworkError(),
            CREATED: [make_item("PR_3")],
        }
    )
    store = _store(client, cache)
    store.by_tab_id = {"assignedToMe": [], "reviewRequested": [make_item("PR_OLD")], "createdByMe": []}

    await store.refresh_all(False, Settings())

    assert [pr.id for pr in store.by_tab_id["assignedToMe"]] == ["PR_1"]
    assert [pr.id for pr in store.by_tab_id["reviewRequested"]] == ["PR_OLD"]
    assert [pr.id for pr in store.by_tab_id["createdByMe"]] == ["PR_3"]
    assert store.last_error_message == "Review: Network request failed. Check your connection and host settings."


@pytest.mark.asyncio
async def test_total_failure_leaves_snapshot_untouched(cache) -> None:
    client = FakeGitHubClient({ASSIGNED: GraphQLError("bad query"), REVIEW: NetworkError(), CREATED: RuntimeError()})
    store = _store(client, cache)
    previous = {"assignedToMe": [make_item("PR_1")]}
    store.by_tab_id = previous
    store.last_updated_at = BASE

    await store.refresh_all(False, Settings())

    assert store.by_tab_id is previous
    assert store.last_updated_at == BASE
    assert store.last_error_message.splitlines() == [
        "Assigned: bad query",
        "Review: Network request failed. Check your connection and host settings.",
        "Created: Unable to refresh pull requests.",
    ]
    assert cache.load() is None


@pytest.mark.asyncio
async def test_missing_token_aborts_without_fetching(cache) -> None:
    client = FakeGitHubClient(token=None)
    store = _store(client, cache)
    store.by_tab_id = {"assignedToMe": [make_item("PR_1")]}

    await store.refresh_all(True, Settings())

    assert client.search_calls == []
    assert store.by_tab_id["assignedToMe"][0].id == "PR_1"
    assert store.last_error_message == "GitHub token is missing. Add a Personal Access Token in Settings."


@pytest.mark.asyncio
async def test_no_enabled_tabs_clears_everything(cache) -> None:
    settings = Settings(tabs=[PRTabConfig(id=k, title="", query="", is_enabled=False) for k in ("assignedToMe", "reviewRequested", "createdByMe")])
    store = _store(FakeGitHubClient(), cache)
    store.by_tab_id = {"assignedToMe": [make_item("PR_1", unresolved=1)]}
    store.last_error_message = "old"
    store.notification_hint_count = 3

    await store.refresh_all(False, settings)

    assert store.by_tab_id == {}
    assert store.last_error_message is None
    assert store.notification_hint_count == 0


@pytest.mark.asyncio
async def test_non_forced_refresh_is_skipped_while_one_is_in_flight(cache) -> None:
    client = FakeGitHubClient()
    client.gate = asyncio.Event()
    store = _store(client, cache)
    settings = Settings()

    first = asyncio.create_task(store.refresh_all(False, settings))
    await _settle()
    assert store.is_refreshing
    assert len(client.search_calls) == 3

    await store.refresh_all(False, settings)
    assert len(client.search_calls) == 3

    forced = asyncio.create_task(store.refresh_all(True, settings))
    await _settle()
    assert len(client.search_calls) == 6

    client.gate.set()
    await asyncio.gather(first, forced)
    assert not store.is_refreshing


@pytest.mark.asyncio
async def test_custom_tab_filters_and_sort_order_are_applied(cache) -> None:
    query = "is:pr repo:acme/api"
    items = [
        make_item("PR_1", hours=9, created_at=BASE + timedelta(hours=1), check_summary=CheckSummary.FAILING),
        make_item("PR_2", hours=1, created_at=BASE + timedelta(hours=5), check_summary=CheckSummary.FAILING),
        make_item("PR_3", hours=5, check_summary=CheckSummary.PASSING),
    ]
    rule = PRTabFilterRule(field=PRTabFilterField.CHECKS_STATUS, value=PRTabFilterValue.CHECKS_FAILING)
    settings = Settings(
        tabs=[
            PRTabConfig(id=k, title="", query="", is_enabled=False)
            for k in ("assignedToMe", "reviewRequested", "createdByMe")
        ]
        + [PRTabConfig(id="c1", title="Broken", query=query, filters=[rule])],
        sort_order=PRSortOrder.CREATED_DESC,
    )
    store = _store(FakeGitHubClient({query: items}), cache)

    await store.refresh_all(False, settings)

    assert [pr.id for pr in store.by_tab_id["c1"]] == ["PR_2", "PR_1"]

    store.apply_sort(settings.model_copy(update={"sort_order": PRSortOrder.UPDATED_DESC}))
    assert [pr.id for pr in store.by_tab_id["c1"]] == ["PR_1", "PR_2"]
    assert [pr.id for pr in cache.load().by_tab_id["c1"]] == ["PR_1", "PR_2"]


@pytest.mark.asyncio
async def test_notification_hint_count(cache) -> None:
    store = _store(FakeGitHubClient(), cache)
    store.by_tab_id = {
        "reviewRequested": [make_item("PR_1"), make_item("PR_2"), make_item("PR_3"), make_item("PR_4", unresolved=1)],
        "assignedToMe": [make_item("PR_4", unresolved=1), make_item("PR_5", unresolved=2), make_item("PR_6")],
    }

    store.update_notification_hints(Settings())
    assert store.notification_hint_count == 6

    store.update_notification_hints(Settings(notify_review_requests=False))
    assert store.notification_hint_count == 2

    store.update_notification_hints(Settings(notify_open_comments=False))
    assert store.notification_hint_count == 4


@pytest.mark.asyncio
async def test_load_cached_if_needed_runs_once(cache) -> None:
    first = _store(FakeGitHubClient({ASSIGNED: [make_item("PR_1")]}), cache)
    await first.refresh_all(False, Settings())

    second = _store(FakeGitHubClient(), cache)
    await second.load_cached_if_needed()
    assert [pr.id for pr in second.by_tab_id["assignedToMe"]] == ["PR_1"]
    assert second.last_updated_at == first.last_updated_at

    second.by_tab_id = {}
    await second.load_cached_if_needed()
    assert second.by_tab_id == {}


@pytest.mark.asyncio
async def test_checks_hydration_replaces_only_that_item(cache) -> None:
    client = FakeGitHubClient()
    check = PullRequestCheck(id="CI|build", name="build", category="CI", status=PullRequestCheckStatus.SUCCESS)
    client.checks["PR_1"] = [check]
    store = _store(client, cache)
    other = make_item("PR_2")
    store.by_tab_id = {"assignedToMe": [make_item("PR_1"), other], "createdByMe": [make_item("PR_9")]}
    untouched_tab = store.by_tab_id["createdByMe"]

    loaded = await store.ensure_checks_details_loaded(store.find_item("PR_1"), Settings())

    assert loaded
    assert [pr.id for pr in store.by_tab_id["assignedToMe"]] == ["PR_1", "PR_2"]
    assert store.by_tab_id["assignedToMe"][0].checks == [check]
    assert store.by_tab_id["assignedToMe"][1] is other
    assert store.by_tab_id["createdByMe"] is untouched_tab

    assert await store.ensure_checks_details_loaded(store.find_item("PR_1"), Settings())
    assert client.detail_calls == [("checks", "PR_1")]


@pytest.mark.asyncio
async def test_concurrent_hydration_of_different_kinds_keeps_both(cache) -> None:
    client = FakeGitHubClient()
    client.checks["PR_1"] = [
        PullRequestCheck(id="CI|lint", name="lint", category="CI", status=PullRequestCheckStatus.PENDING)
    ]
    client.reviews["PR_1"] = PullRequestReviewDetails(approved_by=[PullRequestReviewActor(login="amy")])
    store = _store(client, cache)
    store.by_tab_id = {"assignedToMe": [make_item("PR_1")]}
    item = store.find_item("PR_1")

    results = await asyncio.gather(
        store.ensure_checks_details_loaded(item, Settings()),
        store.ensure_review_details_loaded(item, Settings()),
    )

    assert results == [True, True]
    hydrated = store.find_item("PR_1")
    assert hydrated.checks[0].name == "lint"
    assert hydrated.review_details.approved_by[0].login == "amy"


@pytest.mark.asyncio
async def test_comment_hydration_updates_counts_and_hints(cache) -> None:
    client = FakeGitHubClient()
    client.threads["PR_1"] = [
        PullRequestCommentThread(id="T1", preview="nit", status=PullRequestCommentThreadStatus.UNRESOLVED),
        PullRequestCommentThread(id="T2", preview="ok", status=PullRequestCommentThreadStatus.RESOLVED),
        PullRequestCommentThread(id="T3", preview="why", status=PullRequestCommentThreadStatus.UNRESOLVED),
    ]
    store = _store(client, cache)
    store.by_tab_id = {"assignedToMe": [make_item("PR_1", unresolved=0, review_threads_total=0)]}

    assert await store.ensure_comment_details_loaded(store.find_item("PR_1"), Settings())

    item = store.find_item("PR_1")
    assert len(item.comment_threads) == 3
    assert item.unresolved_review_threads == 2
    assert item.review_threads_total == 3
    assert store.notification_hint_count == 1


@pytest.mark.asyncio
async def test_failed_hydration_leaves_snapshot_and_records_error(cache) -> None:
    client = FakeGitHubClient()
    client.reviews["PR_7"] = NetworkError()
    store = _store(client, cache)
    snapshot = {"assignedToMe": [make_item("PR_7")]}
    store.by_tab_id = snapshot

    assert not await store.ensure_review_details_loaded(store.find_item("PR_7"), Settings())
    assert store.by_tab_id is snapshot
    assert store.last_detail_error.startswith("#7: Network request failed")


@pytest.mark.asyncio
async def test_concurrent_loads_of_same_kind_share_one_query(cache) -> None:
    client = FakeGitHubClient()
    client.checks["PR_1"] = [
        PullRequestCheck(id="CI|build", name="build", category="CI", status=PullRequestCheckStatus.SUCCESS)
    ]
    store = _store(client, cache)
    store.by_tab_id = {"assignedToMe": [make_item("PR_1")]}
    item = store.find_item("PR_1")

    results = await asyncio.gather(
        store.ensure_checks_details_loaded(item, Settings()),
        store.ensure_checks_details_loaded(item, Settings()),
    )

    assert results == [True, True]
    assert client.detail_calls == [("checks", "PR_1")]
    assert store._hydrations_in_flight == {}


@pytest.mark.asyncio
async def test_detail_errors_are_kept_per_item(cache) -> None:
    client = FakeGitHubClient()
    client.checks["PR_1"] = []
    client.checks["PR_2"] = NetworkError()
    store = _store(client, cache)
    store.by_tab_id = {"assignedToMe": [make_item("PR_1"), make_item("PR_2")]}

    assert not await store.ensure_checks_details_loaded(store.find_item("PR_2"), Settings())
    assert await store.ensure_checks_details_loaded(store.find_item("PR_1"), Settings(), force=True)

    assert store.detail_error("PR_1") is None
    assert store.detail_error("PR_2").startswith("#2: Network request failed")


@pytest.mark.asyncio
async def test_unexpected_detail_failure_uses_generic_message(cache) -> None:
    client = FakeGitHubClient()
    client.checks["PR_1"] = ValueError("unexpected payload")
    store = _store(client, cache)
    snapshot = {"assignedToMe": [make_item("PR_1")]}
    store.by_tab_id = snapshot

    assert not await store.ensure_checks_details_loaded(store.find_item("PR_1"), Settings())
    assert store.by_tab_id is snapshot
    assert store.last_detail_error == "#1: Unable to refresh pull requests."
    assert store.detail_error("PR_1") == "#1: Unable to refresh pull requests."


@pytest.mark.asyncio
async def test_settings_change_reacts_without_fetching(cache) -> None:
    client = FakeGitHubClient()
    store = _store(client, cache)
    store.by_tab_id = {
        "assignedToMe": [
            make_item("PR_1", hours=9, created_at=BASE),
            make_item("PR_2", hours=1, created_at=BASE + timedelta(hours=5)),
        ]
    }
    old = Settings()
    store.restart_auto_refresh(old)
    first_task = store._auto_refresh_task

    assert not store.settings_changed(old, Settings())
    assert store._auto_refresh_task is first_task

    assert not store.settings_changed(old, Settings(sort_order=PRSortOrder.CREATED_DESC))
    assert [pr.id for pr in store.by_tab_id["assignedToMe"]] == ["PR_2", "PR_1"]

    assert not store.settings_changed(old, Settings(refresh_interval_seconds=300))
    assert store._auto_refresh_task is not first_task

    custom = Settings(tabs=[PRTabConfig(id="c1", title="Mine", query="is:pr author:@me")])
    assert store.settings_changed(old, custom)
    assert store.settings_changed(old, Settings(enterprise_host_url="ghe.example.com"))
    assert client.search_calls == []

    await store.shutdown()


@pytest.mark.asyncio
async def test_auto_refresh_uses_latest_settings(cache, monkeypatch) -> None:
    monkeypatch.setattr(sync, "clamp_refresh_interval", lambda seconds: 0.01)
    client = FakeGitHubClient()
    store = _store(client, cache)
    old = Settings()
    store.restart_auto_refresh(old)

    custom = Settings(tabs=[PRTabConfig(id="c1", title="Mine", query="is:pr author:@me")])
    store.settings_changed(old, custom)
    await asyncio.sleep(0.05)
    await store.shutdown()

    assert "is:pr author:@me" in client.search_calls


def test_cost_warning_text() -> None:
    assessment = CostAssessment(
        total_cost=70,
        remaining=4000,
        limit=5000,
        tab_costs=[TabCost(tab_id="c1", title="Everything", cost=60)],
        failed_tabs=["Review: Network request failed. Check your connection and host settings."],
        broad_tabs=["Everything"],
        heavy_tabs=["Everything"],
        warning_level=CostWarningLevel.HIGH,
    )
    assert describe_cost_warning(assessment).splitlines() == [
        "This apply is likely expensive. Estimated GraphQL cost is 70 points (remaining: 4000/5000). "
        "Review and narrow queries before applying.",
        "High-cost tabs: Everything.",
        "Broad-scope tabs: Everything.",
        "Not estimated: Review: Network request failed. Check your connection and host settings.",
    ]

    broad_only = assessment.model_copy(update={"warning_level": CostWarningLevel.NONE, "heavy_tabs": [], "failed_tabs": []})
    assert describe_cost_warning(broad_only).startswith("This apply includes broad queries. Estimated")


def test_unknown_cost_text() -> None:
    assert describe_unknown_cost(["Everything"]).startswith(
        "Could not estimate query cost right now, and these tabs appear broad: Everything."
    )
    assert describe_unknown_cost([]).startswith("Could not estimate query cost right now. Applying may")


@pytest.mark.asyncio
async def test_hydration_for_item_dropped_by_refresh_is_ignored(cache) -> None:
    client = FakeGitHubClient()
    client.checks["PR_1"] = []
    store = _store(client, cache)
    item = make_item("PR_1")
    store.by_tab_id = {}

    assert not await store.ensure_checks_details_loaded(item, Settings())


@pytest.mark.asyncio
async def test_restart_auto_refresh_replaces_loop(cache, monkeypatch) -> None:
    monkeypatch.setattr(sync, "clamp_refresh_interval", lambda seconds: 0.01)
    client = FakeGitHubClient()
    store = _store(client, cache)

    await store.configure(Settings())
    first_task = store._auto_refresh_task
    await asyncio.sleep(0.05)
    assert len(client.search_calls) >= 3

    store.restart_auto_refresh(Settings())
    await _settle()
    assert first_task.done()
    assert store._auto_refresh_task is not first_task
    assert store.auto_refresh_running

    await store.shutdown()
    assert not store.auto_refresh_running
    calls = len(client.search_calls)
    await asyncio.sleep(0.03)
    assert len(client.search_calls) == calls


@pytest.mark.asyncio
async def test_restart_does_not_cancel_refresh_in_flight(cache, monkeypatch) -> None:
    monkeypatch.setattr(sync, "clamp_refresh_interval", lambda seconds: 0.01)
    client = FakeGitHubClient({ASSIGNED: [make_item("PR_1")]})
    client.gate = asyncio.Event()
    store = _store(client, cache)

    store.restart_auto_refresh(Settings())
    while len(client.search_calls) < 3:
        await asyncio.sleep(0.005)

    store.restart_auto_refresh(Settings(refresh_interval_seconds=300))
    await _settle()
    assert store.is_refreshing

    client.gate.set()
    await _settle()
    assert [pr.id for pr in store.by_tab_id["assignedToMe"]] == ["PR_1"]

    await store.shutdown()


def _cost_settings() -> Settings:
    return Settings(tabs=[PRTabConfig(id="c1", title="Everything", query="is:pr archived:false")])


@pytest.mark.asyncio
async def test_cost_assessment_levels(cache) -> None:
    broad = "is:pr archived:false"
    settings = _cost_settings()

    def assess(costs):
        client = FakeGitHubClient(costs={q: QueryCostEstimate(cost=c, remaining=r, limit=5000) for q, (c, r) in costs.items()})
        return _store(client, cache).assess_refresh_cost(settings)

    low = await assess({ASSIGNED: (1, 4990), REVIEW: (1, 4990), CREATED: (1, 4990), broad: (2, 4990)})
    assert low.warning_level == CostWarningLevel.NONE
    assert low.total_cost == 5
    assert low.broad_tabs == ["Everything"]
    assert low.should_warn

    moderate = await assess({ASSIGNED: (1, 4990), REVIEW: (1, 4990), CREATED: (1, 4990), broad: (30, 4990)})
    assert moderate.warning_level == CostWarningLevel.MODERATE
    assert moderate.heavy_tabs == ["Everything"]

    high = await assess({ASSIGNED: (1, 4990), REVIEW: (1, 4990), CREATED: (1, 4990), broad: (60, 4990)})
    assert high.warning_level == CostWarningLevel.HIGH

    low_budget = await assess({ASSIGNED: (1, 400), REVIEW: (1, 400), CREATED: (1, 400), broad: (1, 400)})
    assert low_budget.warning_level == CostWarningLevel.HIGH
    assert low_budget.remaining == 400


@pytest.mark.asyncio
async def test_cost_assessment_with_custom_thresholds(cache) -> None:
    costs = {q: QueryCostEstimate(cost=10, remaining=4000, limit=5000) for q in (ASSIGNED, REVIEW, CREATED)}
    store = _store(FakeGitHubClient(costs=costs), cache, cost_thresholds=CostThresholds(high_tab_cost=10))
    assert (await store.assess_refresh_cost(Settings())).warning_level == CostWarningLevel.HIGH


@pytest.mark.asyncio
async def test_cost_assessment_excludes_failed_tabs(cache) -> None:
    costs = {
        ASSIGNED: QueryCostEstimate(cost=2, remaining=4900, limit=5000),
        REVIEW: NetworkError(),
        CREATED: QueryCostEstimate(cost=3, remaining=4800, limit=5000),
    }
    assessment = await _store(FakeGitHubClient(costs=costs), cache).assess_refresh_cost(Settings())

    assert assessment.total_cost == 5
    assert [t.tab_id for t in assessment.tab_costs] == ["assignedToMe", "createdByMe"]
    assert assessment.remaining == 4800
    assert assessment.failed_tabs == ["Review: Network request failed. Check your connection and host settings."]
    assert assessment.warning_level == CostWarningLevel.MODERATE


@pytest.mark.asyncio
async def test_cost_assessment_raises_when_every_tab_fails(cache) -> None:
    costs = {ASSIGNED: GraphQLError("nope"), REVIEW: NetworkError(), CREATED: NetworkError()}
    with pytest.raises(GraphQLError):
        await _store(FakeGitHubClient(costs=costs), cache).assess_refresh_cost(Settings())
