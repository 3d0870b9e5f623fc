"""FastAPI app for pullbar: local API over the pull request sync engine."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from cache_store import CacheStore
from config import PRTabConfig, Settings, get_config_dir, load_settings, save_settings
from credentials import TOKEN_FILENAME, CredentialCache, FileTokenStore
from errors import GHCLIError, GitHubClientError
from gh_client import GitHubClient, GraphQLTransport
from gh_import import import_active_auth, import_profile, list_profiles, switch_active_profile
from models import CostAssessment, PullRequestItem
from sync import (
    PullRequestStore,
    broad_custom_tabs,
    describe_cost_warning,
    describe_unknown_cost,
    error_message,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: load settings and cache, start polling. Shutdown: stop polling."""
    global _settings, _credentials, _store

    logging.basicConfig(level=logging.INFO)
    _settings = load_settings()
    _credentials = CredentialCache(FileTokenStore(get_config_dir() / TOKEN_FILENAME))
    transport = GraphQLTransport()
    _store = PullRequestStore(GitHubClient(transport, _credentials), CacheStore())

    await _store.load_cached_if_needed()
    print(f"Loaded cache: {sum(len(items) for items in _store.by_tab_id.values())} pull requests")
    await _store.configure(_settings)
    initial = asyncio.create_task(_store.refresh_all(True, _settings))
    yield
    initial.cancel()
    await _store.shutdown()
    await transport.aclose()


app = FastAPI(
    title="Pullbar",
    description="Pull request status across saved GitHub searches",
    version="0.1.0",
    lifespan=lifespan,
)

# In-memory state
_settings: Settings = Settings()
_credentials: CredentialCache | None = None
_store: PullRequestStore | None = None
_pending_apply = False


class TabView(BaseModel):
    id: str
    title: str
    query: str
    items: list[PullRequestItem]


class StatusView(BaseModel):
    is_refreshing: bool
    last_error_message: str | None
    last_detail_error: str | None
    last_updated_at: datetime | None
    notification_hint_count: int
    show_notification_count: bool


class TokenBody(BaseModel):
    token: str


class SettingsView(BaseModel):
    settings: Settings
    needs_apply: bool


class ProfileBody(BaseModel):
    host: str
    login: str


class ProfileView(BaseModel):
    id: str
    host: str
    login: str
    active: bool


def _require_store() -> PullRequestStore:
    if _store is None:
        raise HTTPException(status_code=503, detail="Sync engine not started")
    return _store


def _require_credentials() -> CredentialCache:
    if _credentials is None:
        raise HTTPException(status_code=503, detail="Credential store not available")
    return _credentials


def _tab_view(store: PullRequestStore, tab_id: str) -> TabView:
    tab = _settings.tab(tab_id)
    if tab is None or not tab.is_enabled:
        raise HTTPException(status_code=404, detail=f"Tab '{tab_id}' not found")
    return TabView(
        id=tab.id,
        title=tab.title,
        query=_settings.effective_query(tab),
        items=store.by_tab_id.get(tab.id, []),
    )


# --- API Endpoints ---


@app.get("/api/tabs", response_model=list[TabView])
async def list_tabs():
    """Return every active tab with its current items."""
    store = _require_store()
    return [_tab_view(store, tab.id) for tab in _settings.active_tabs]


@app.get("/api/tabs/{tab_id}", response_model=TabView)
async def get_tab(tab_id: str):
    """Return one tab by id."""
    return _tab_view(_require_store(), tab_id)


@app.get("/api/status", response_model=StatusView)
async def status():
    """Return refresh state and the notification hint count."""
    store = _require_store()
    return StatusView(
        is_refreshing=store.is_refreshing,
        last_error_message=store.last_error_message,
        last_detail_error=store.last_detail_error,
        last_updated_at=store.last_updated_at,
        notification_hint_count=store.notification_hint_count,
        show_notification_count=_settings.show_notification_count,
    )


@app.post("/api/refresh", response_model=StatusView)
async def refresh(force: bool = False):
    """Refresh all tabs now."""
    await _require_store().refresh_all(force, _settings)
    return await status()


@app.post("/api/sort", response_model=StatusView)
async def sort():
    """Re-apply the configured sort order without refetching."""
    _require_store().apply_sort(_settings)
    return await status()


@app.get("/api/cost", response_model=CostAssessment)
async def cost():
    """Estimate the GraphQL cost of refreshing every active tab."""
    try:
        return await _require_store().assess_refresh_cost(_settings)
    except GitHubClientError as e:
        raise HTTPException(status_code=502, detail=error_message(e))


async def _hydrate(item_id: str, kind: str) -> PullRequestItem:
    store = _require_store()
    item = store.find_item(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail=f"Pull request '{item_id}' not found")
    loaders = {
        "checks": store.ensure_checks_details_loaded,
        "comments": store.ensure_comment_details_loaded,
        "reviews": store.ensure_review_details_loaded,
    }
    if not await loaders[kind](item, _settings):
        raise HTTPException(status_code=502, detail=store.detail_error(item_id) or "Unable to load details.")
    return store.find_item(item_id) or item


@app.post("/api/prs/{item_id}/checks", response_model=PullRequestItem)
async def load_checks(item_id: str):
    """Load CI checks for one pull request."""
    return await _hydrate(item_id, "checks")


@app.post("/api/prs/{item_id}/comments", response_model=PullRequestItem)
async def load_comments(item_id: str):
    """Load review comment threads for one pull request."""
    return await _hydrate(item_id, "comments")


@app.post("/api/prs/{item_id}/reviews", response_model=PullRequestItem)
async def load_reviews(item_id: str):
    """Load reviewers and review requests for one pull request."""
    return await _hydrate(item_id, "reviews")


@app.put("/api/token", status_code=204)
async def save_token(body: TokenBody):
    """Store a personal access token."""
    try:
        _require_credentials().save(body.token)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.delete("/api/token", status_code=204)
async def delete_token():
    """Forget the stored token."""
    _require_credentials().delete()


@app.post("/api/token/import-gh")
async def import_token_from_gh():
    """Copy the active ``gh`` CLI account's token into the credential store."""
    credentials = _require_credentials()
    try:
        result = await asyncio.to_thread(import_active_auth)
    except GHCLIError as e:
        raise HTTPException(status_code=502, detail=str(e))
    credentials.save(result.token)
    return {"host": result.host, "login": result.login}


# --- Settings ---


def _settings_view() -> SettingsView:
    return SettingsView(settings=_settings, needs_apply=_pending_apply)


def _store_settings(new: Settings) -> SettingsView:
    """Persist ``new``, make it current and let the engine react to the change."""
    global _settings, _pending_apply

    store = _require_store()
    old = _settings
    save_settings(new)
    _settings = new
    if store.settings_changed(old, new):
        _pending_apply = True
    return _settings_view()


@app.get("/api/settings", response_model=SettingsView)
async def get_settings():
    return _settings_view()


@app.put("/api/settings", response_model=SettingsView)
async def put_settings(body: Settings):
    """Replace every setting. Tab or host changes take effect on the next apply."""
    return _store_settings(body)


@app.post("/api/settings/tabs", response_model=PRTabConfig, status_code=201)
async def add_tab():
    """Add a custom tab with the default query."""
    updated = _settings.model_copy(deep=True)
    tab = updated.add_custom_tab()
    if tab is None:
        raise HTTPException(status_code=409, detail="Tab limit reached")
    _store_settings(updated)
    return tab


@app.put("/api/settings/tabs/{tab_id}", response_model=PRTabConfig)
async def update_tab(tab_id: str, body: PRTabConfig):
    updated = _settings.model_copy(deep=True)
    if updated.tab(tab_id) is None:
        raise HTTPException(status_code=404, detail=f"Tab '{tab_id}' not found")
    updated.update_tab(body.model_copy(update={"id": tab_id}))
    _store_settings(updated)
    return _settings.tab(tab_id)


@app.delete("/api/settings/tabs/{tab_id}", status_code=204)
async def remove_tab(tab_id: str):
    """Remove a custom tab. Built-in tabs can only be disabled."""
    tab = _settings.tab(tab_id)
    if tab is None:
        raise HTTPException(status_code=404, detail=f"Tab '{tab_id}' not found")
    if tab.is_default:
        raise HTTPException(status_code=400, detail="Built-in tabs cannot be removed")
    updated = _settings.model_copy(deep=True)
    updated.remove_custom_tab(tab_id)
    _store_settings(updated)


@app.post("/api/settings/apply", response_model=StatusView)
async def apply_settings(confirm: bool = False):
    """Refetch every tab for the current settings.

    Unless ``confirm`` is set, the GraphQL cost is estimated first and a 409
    carrying the warning is returned when the refresh looks expensive or broad.
    """
    global _pending_apply

    store = _require_store()
    if not confirm:
        try:
            assessment = await store.assess_refresh_cost(_settings)
        except GitHubClientError:
            message = describe_unknown_cost(broad_custom_tabs(_settings))
            return JSONResponse(status_code=409, content={"detail": message, "assessment": None})
        if assessment.should_warn:
            return JSONResponse(
                status_code=409,
                content={"detail": describe_cost_warning(assessment), "assessment": assessment.model_dump(mode="json")},
            )

    await store.refresh_all(True, _settings)
    _pending_apply = False
    return await status()


# --- gh CLI accounts ---


@app.get("/api/gh/profiles", response_model=list[ProfileView])
async def gh_profiles():
    """Accounts the ``gh`` CLI is logged in to, github.com and active ones first."""
    try:
        profiles = await asyncio.to_thread(list_profiles)
    except GHCLIError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return [ProfileView(id=p.id, host=p.host, login=p.login, active=p.active) for p in profiles]


@app.post("/api/gh/profiles/switch")
async def gh_switch_profile(body: ProfileBody):
    """Make an account active in ``gh`` and import its token."""
    credentials = _require_credentials()

    def switch_and_import():
        switch_active_profile(body.host, body.login)
        return import_profile(body.host, body.login)

    try:
        result = await asyncio.to_thread(switch_and_import)
    except GHCLIError as e:
        raise HTTPException(status_code=502, detail=str(e))
    credentials.save(result.token)
    return {"host": result.host, "login": result.login}


@app.get("/health")
async def health():
    """Health check."""
    store = _store
    return {
        "status": "ok",
        "tabs": len(_settings.active_tabs),
        "has_token": _credentials.has() if _credentials else False,
        "last_updated_at": store.last_updated_at if store else None,
    }
