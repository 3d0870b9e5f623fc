"""Import a GitHub token from the ``gh`` CLI's authenticated accounts."""

from __future__ import annotations

import json
import shutil
import subprocess
from dataclasses import dataclass

from errors import (
    GHCLICommandFailedError,
    GHCLIInvalidStatusError,
    GHCLINoAuthenticatedHostError,
    GHCLINotInstalledError,
    GHCLITokenMissingError,
)

GH_TIMEOUT_SECONDS = 15
DEFAULT_HOST = "github.com"


@dataclass(frozen=True)
class GHCLIProfile:
    """One account known to ``gh auth status``."""

    host: str
    login: str
    active: bool
    state: str

    @property
    def id(self) -> str:
        return f"{self.host}::{self.login}"


@dataclass(frozen=True)
class GHCLIImportResult:
    host: str
    login: str
    token: str


def _ensure_gh() -> None:
    if shutil.which("gh") is None:
        raise GHCLINotInstalledError()


def _run_gh(args: list[str]) -> str:
    """Run a gh command, returning stdout or raising a GHCLIError."""
    try:
        result = subprocess.run(
            ["gh"] + args,
            capture_output=True,
            text=True,
            timeout=GH_TIMEOUT_SECONDS,
        )
    except FileNotFoundError:
        raise GHCLINotInstalledError() from None
    except subprocess.TimeoutExpired:
        raise GHCLICommandFailedError(f"GitHub CLI timed out after {GH_TIMEOUT_SECONDS}s.") from None

    if result.returncode != 0:
        raise GHCLICommandFailedError(result.stderr.strip() or None)
    return result.stdout


def parse_profiles(raw: str) -> list[GHCLIProfile]:
    """Parse ``gh auth status --json hosts`` output."""
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        raise GHCLIInvalidStatusError() from None
    hosts = payload.get("hosts") if isinstance(payload, dict) else None
    if not isinstance(hosts, dict):
        raise GHCLIInvalidStatusError()

    profiles: list[GHCLIProfile] = []
    for host, entries in hosts.items():
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            login, active, state = entry.get("login"), entry.get("active"), entry.get("state")
            if not isinstance(login, str) or not isinstance(active, bool) or not isinstance(state, str):
                continue
            profiles.append(GHCLIProfile(host=host, login=login, active=active, state=state))
    return profiles


def _profile_sort_key(profile: GHCLIProfile) -> tuple:
    # github.com first, then other hosts alphabetically; active account first per host
    return (profile.host != DEFAULT_HOST, profile.host, not profile.active, profile.login)


def list_profiles() -> list[GHCLIProfile]:
    """Successfully authenticated accounts, github.com and active ones first."""
    _ensure_gh()
    profiles = [p for p in parse_profiles(_run_gh(["auth", "status", "--json", "hosts"])) if p.state == "success"]
    if not profiles:
        raise GHCLINoAuthenticatedHostError()
    return sorted(profiles, key=_profile_sort_key)


def switch_active_profile(host: str, login: str) -> None:
    _ensure_gh()
    _run_gh(["auth", "switch", "--hostname", host, "--user", login])


def import_profile(host: str, login: str) -> GHCLIImportResult:
    _ensure_gh()
    token = _run_gh(["auth", "token", "--hostname", host, "--user", login]).strip()
    if not token:
        raise GHCLITokenMissingError()
    return GHCLIImportResult(host=host, login=login, token=token)


def select_active_profile(profiles: list[GHCLIProfile]) -> GHCLIProfile:
    """Active github.com account, else any active account, else the first one."""
    successful = [p for p in profiles if p.state == "success"]
    for candidate in (
        next((p for p in successful if p.host == DEFAULT_HOST and p.active), None),
        next((p for p in successful if p.active), None),
        successful[0] if successful else None,
    ):
        if candidate is not None:
            return candidate
    raise GHCLINoAuthenticatedHostError()


def import_active_auth() -> GHCLIImportResult:
    _ensure_gh()
    profile = select_active_profile(parse_profiles(_run_gh(["auth", "status", "--json", "hosts"])))
    return import_profile(profile.host, profile.login)
