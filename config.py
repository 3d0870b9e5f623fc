"""Settings snapshot: tab definitions, refresh cadence, sort order and host URLs."""

from __future__ import annotations

import json
import logging
import os
import uuid
from enum import Enum
from pathlib import Path
from urllib.parse import urlsplit

from platformdirs import user_config_dir, user_data_dir
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

APP_NAME = "pullbar"
MAX_TABS = 5
MIN_REFRESH_INTERVAL = 60
MAX_REFRESH_INTERVAL = 600
DEFAULT_REFRESH_INTERVAL = 90

DEFAULT_WEB_URL = "https://github.com"
DEFAULT_GRAPHQL_URL = "https://api.github.com/graphql"
DEFAULT_CUSTOM_QUERY = "is:open is:pr archived:false"


def get_config_dir(override: str | None = None) -> Path:
    """Directory holding settings.json and the token file.

    Priority: override > PULLBAR_CONFIG_DIR env var > platform config dir
    """
    if override:
        return Path(override)
    env_dir = os.getenv("PULLBAR_CONFIG_DIR")
    if env_dir:
        return Path(env_dir)
    return Path(user_config_dir(APP_NAME))


def get_data_dir(override: str | None = None) -> Path:
    """Directory holding the pull request cache.

    Priority: override > PULLBAR_DATA_DIR env var > platform data dir
    """
    if override:
        return Path(override)
    env_dir = os.getenv("PULLBAR_DATA_DIR")
    if env_dir:
        return Path(env_dir)
    return Path(user_data_dir(APP_NAME))


class PRSortOrder(str, Enum):
    UPDATED_DESC = "updatedDesc"
    CREATED_DESC = "createdDesc"


class BuiltinTabKind(str, Enum):
    ASSIGNED_TO_ME = "assignedToMe"
    REVIEW_REQUESTED = "reviewRequested"
    CREATED_BY_ME = "createdByMe"

    @property
    def tab_title(self) -> str:
        return _BUILTIN_TITLES[self]

    @property
    def default_query(self) -> str:
        return _BUILTIN_QUERIES[self]


_BUILTIN_TITLES = {
    BuiltinTabKind.ASSIGNED_TO_ME: "Assigned",
    BuiltinTabKind.REVIEW_REQUESTED: "Review",
    BuiltinTabKind.CREATED_BY_ME: "Created",
}

_BUILTIN_QUERIES = {
    BuiltinTabKind.ASSIGNED_TO_ME: "is:open is:pr archived:false assignee:@me",
    BuiltinTabKind.REVIEW_REQUESTED: "is:open is:pr archived:false review-requested:@me",
    BuiltinTabKind.CREATED_BY_ME: "is:open is:pr archived:false author:@me",
}


class PRTabFilterMatchMode(str, Enum):
    ALL = "all"
    ANY = "any"


class PRTabFilterField(str, Enum):
    UNRESOLVED_COMMENTS = "unresolvedComments"
    REVIEW_STATUS = "reviewStatus"
    CHECKS_STATUS = "checksStatus"

    @property
    def allowed_values(self) -> list[PRTabFilterValue]:
        return _ALLOWED_FILTER_VALUES[self]


class PRTabFilterValue(str, Enum):
    HAS_UNRESOLVED_COMMENTS = "hasUnresolvedComments"
    NO_UNRESOLVED_COMMENTS = "noUnresolvedComments"
    REVIEW_APPROVED = "reviewApproved"
    REVIEW_CHANGES_REQUESTED = "reviewChangesRequested"
    REVIEW_REQUIRED = "reviewRequired"
    REVIEW_NONE = "reviewNone"
    CHECKS_PASSING = "checksPassing"
    CHECKS_FAILING = "checksFailing"
    CHECKS_PENDING = "checksPending"
    CHECKS_NONE = "checksNone"


_ALLOWED_FILTER_VALUES = {
    PRTabFilterField.UNRESOLVED_COMMENTS: [
        PRTabFilterValue.HAS_UNRESOLVED_COMMENTS,
        PRTabFilterValue.NO_UNRESOLVED_COMMENTS,
    ],
    PRTabFilterField.REVIEW_STATUS: [
        PRTabFilterValue.REVIEW_APPROVED,
        PRTabFilterValue.REVIEW_CHANGES_REQUESTED,
        PRTabFilterValue.REVIEW_REQUIRED,
        PRTabFilterValue.REVIEW_NONE,
    ],
    PRTabFilterField.CHECKS_STATUS: [
        PRTabFilterValue.CHECKS_PASSING,
        PRTabFilterValue.CHECKS_FAILING,
        PRTabFilterValue.CHECKS_PENDING,
        PRTabFilterValue.CHECKS_NONE,
    ],
}


class PRTabFilterRule(BaseModel):
    """One post-fetch filter condition on a tab."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    field: PRTabFilterField
    value: PRTabFilterValue


class PRTabConfig(BaseModel):
    """A saved search shown as one tab."""

    id: str
    title: str
    query: str  # extra suffix for built-in tabs, full query for custom tabs
    is_enabled: bool = True
    default_kind: BuiltinTabKind | None = None
    filter_match_mode: PRTabFilterMatchMode = PRTabFilterMatchMode.ALL
    filters: list[PRTabFilterRule] = []

    @property
    def is_default(self) -> bool:
        return self.default_kind is not None


def _normalized_url_string(value: str) -> str:
    return value.strip().rstrip("/")


def _with_scheme(value: str) -> str:
    if value.startswith("http://") or value.startswith("https://"):
        return value
    return f"https://{value}"


def _normalize_default_extra_query(query: str, base: str) -> str:
    """Strip a built-in tab's base query so only the user's extra terms remain."""
    trimmed = query.strip()
    base_trimmed = base.strip()
    if trimmed == base_trimmed:
        return ""
    if trimmed.startswith(base_trimmed + " "):
        return trimmed[len(base_trimmed) + 1 :]
    return trimmed


def _sanitize_filters(filters: list[PRTabFilterRule]) -> list[PRTabFilterRule]:
    return [f for f in filters if f.value in f.field.allowed_values]


def normalize_tabs(tabs: list[PRTabConfig]) -> list[PRTabConfig]:
    """Built-in tabs first in fixed order, then custom tabs, capped at MAX_TABS."""
    builtin_ids = {kind.value for kind in BuiltinTabKind}
    normalized: list[PRTabConfig] = []

    for kind in BuiltinTabKind:
        existing = next((t for t in tabs if t.default_kind == kind or t.id == kind.value), None)
        normalized.append(
            PRTabConfig(
                id=kind.value,
                title=kind.tab_title,
                query=_normalize_default_extra_query(existing.query, kind.default_query) if existing else "",
                is_enabled=existing.is_enabled if existing else True,
                default_kind=kind,
            )
        )

    for tab in tabs:
        if tab.default_kind is not None or tab.id in builtin_ids:
            continue
        normalized.append(
            PRTabConfig(
                id=tab.id,
                title=tab.title if tab.title.strip() else "Custom",
                query=tab.query,
                is_enabled=tab.is_enabled,
                default_kind=None,
                filter_match_mode=tab.filter_match_mode,
                filters=_sanitize_filters(tab.filters),
            )
        )

    return normalized[:MAX_TABS]


def default_tabs() -> list[PRTabConfig]:
    return normalize_tabs([])


class Settings(BaseModel):
    """Read-only snapshot consumed by the sync engine for one operation."""

    tabs: list[PRTabConfig] = Field(default_factory=default_tabs)
    refresh_interval_seconds: int = DEFAULT_REFRESH_INTERVAL
    sort_order: PRSortOrder = PRSortOrder.UPDATED_DESC
    enterprise_host_url: str = ""
    enterprise_api_url: str = ""
    notify_review_requests: bool = True
    notify_open_comments: bool = True
    show_notification_count: bool = True

    def model_post_init(self, __context) -> None:
        self.tabs = normalize_tabs(self.tabs)
        self.refresh_interval_seconds = clamp_refresh_interval(self.refresh_interval_seconds)
        self.enterprise_host_url = _normalized_url_string(self.enterprise_host_url)
        self.enterprise_api_url = _normalized_url_string(self.enterprise_api_url)

    @property
    def active_tabs(self) -> list[PRTabConfig]:
        return [t for t in self.tabs if t.is_enabled][:MAX_TABS]

    def effective_query(self, tab: PRTabConfig) -> str:
        """Built-in base query plus the trimmed suffix, or the raw custom query."""
        extra = tab.query.strip()
        if tab.default_kind is not None:
            base = tab.default_kind.default_query
            return f"{base} {extra}" if extra else base
        return extra

    @property
    def resolved_web_base_url(self) -> str:
        normalized = _normalized_url_string(self.enterprise_host_url)
        if not normalized:
            return DEFAULT_WEB_URL
        return _with_scheme(normalized)

    @property
    def resolved_graphql_url(self) -> str:
        explicit = _normalized_url_string(self.enterprise_api_url)
        if explicit:
            return _with_scheme(explicit)
        web = self.resolved_web_base_url
        if urlsplit(web).hostname == "github.com":
            return DEFAULT_GRAPHQL_URL
        return f"{web}/api/graphql"

    def tab(self, tab_id: str) -> PRTabConfig | None:
        return next((t for t in self.tabs if t.id == tab_id), None)

    def update_tab(self, tab: PRTabConfig) -> None:
        """Replace the tab with the same id; unknown ids are ignored."""
        for index, existing in enumerate(self.tabs):
            if existing.id == tab.id:
                self.tabs[index] = tab
                self.tabs = normalize_tabs(self.tabs)
                return

    def add_custom_tab(self) -> PRTabConfig | None:
        if len(self.tabs) >= MAX_TABS:
            return None
        number = sum(1 for t in self.tabs if not t.is_default) + 1
        tab = PRTabConfig(id=str(uuid.uuid4()), title=f"Custom {number}", query=DEFAULT_CUSTOM_QUERY)
        self.tabs.append(tab)
        return tab

    def remove_custom_tab(self, tab_id: str) -> None:
        self.tabs = [t for t in self.tabs if t.id != tab_id or t.is_default]


def clamp_refresh_interval(seconds: int) -> int:
    return max(MIN_REFRESH_INTERVAL, min(seconds, MAX_REFRESH_INTERVAL))


def settings_path(config_dir: Path | None = None) -> Path:
    return (config_dir or get_config_dir()) / "settings.json"


def load_settings(path: Path | None = None) -> Settings:
    """Load settings from disk, falling back to defaults if missing or unreadable."""
    path = path or settings_path()
    if not path.exists():
        return Settings()
    try:
        return Settings.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        logger.warning("Ignoring unreadable settings file %s: %s", path, e)
        return Settings()


def save_settings(settings: Settings, path: Path | None = None) -> None:
    path = path or settings_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(settings.model_dump_json(indent=2), encoding="utf-8")
