"""Unit tests for importing a token from the gh CLI."""

import json
import subprocess

import pytest

import gh_import
from errors import (
    GHCLICommandFailedError,
    GHCLIInvalidStatusError,
    GHCLINoAuthenticatedHostError,
    GHCLINotInstalledError,
    GHCLITokenMissingError,
)
from gh_import import GHCLIProfile, parse_profiles, select_active_profile

STATUS = {
    "hosts": {
        "ghe.example.com": [{"login": "worker", "active": True, "state": "success"}],
        "github.com": [
            {"login": "zoe", "active": False, "state": "success"},
            {"login": "amy", "active": True, "state": "success"},
            {"login": "old", "active": False, "state": "error"},
            {"login": 7, "active": True, "state": "success"},
        ],
    }
}


class FakeGH:
    """Canned responses for ``subprocess.run(["gh", ...])``."""

    def __init__(self, outputs: dict[str, subprocess.CompletedProcess]):
        self.outputs = outputs
        self.calls: list[list[str]] = []

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        return self.outputs[" ".join(cmd[1:3])]


def _ok(stdout: str) -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=0, stdout=stdout, stderr="")


@pytest.fixture
def gh_installed(monkeypatch):
    monkeypatch.setattr(gh_import.shutil, "which", lambda name: "/usr/bin/gh")


def test_parse_profiles_skips_malformed_entries() -> None:
    profiles = parse_profiles(json.dumps(STATUS))
    assert [(p.host, p.login) for p in profiles] == [
        ("ghe.example.com", "worker"),
        ("github.com", "zoe"),
        ("github.com", "amy"),
        ("github.com", "old"),
    ]
    assert profiles[0].id == "ghe.example.com::worker"


@pytest.mark.parametrize("raw", ["not json", "[]", '{"hosts": []}'])
def test_parse_profiles_rejects_bad_status(raw) -> None:
    with pytest.raises(GHCLIInvalidStatusError):
        parse_profiles(raw)


def test_select_active_prefers_github_com() -> None:
    profiles = parse_profiles(json.dumps(STATUS))
    assert select_active_profile(profiles).login == "amy"


def test_select_active_falls_back_to_any_active_then_first() -> None:
    enterprise = GHCLIProfile(host="ghe.example.com", login="worker", active=True, state="success")
    idle = GHCLIProfile(host="github.com", login="zoe", active=False, state="success")
    assert select_active_profile([idle, enterprise]) == enterprise
    assert select_active_profile([idle]) == idle
    with pytest.raises(GHCLINoAuthenticatedHostError):
        select_active_profile([GHCLIProfile(host="github.com", login="x", active=True, state="error")])


def test_list_profiles_orders_github_com_and_active_first(monkeypatch, gh_installed) -> None:
    monkeypatch.setattr(gh_import.subprocess, "run", FakeGH({"auth status": _ok(json.dumps(STATUS))}))
    assert [p.id for p in gh_import.list_profiles()] == [
        "github.com::amy",
        "github.com::zoe",
        "ghe.example.com::worker",
    ]


def test_import_active_auth_fetches_token_for_selected_account(monkeypatch, gh_installed) -> None:
    fake = FakeGH({"auth status": _ok(json.dumps(STATUS)), "auth token": _ok("gho_secret\n")})
    monkeypatch.setattr(gh_import.subprocess, "run", fake)

    result = gh_import.import_active_auth()

    assert (result.host, result.login, result.token) == ("github.com", "amy", "gho_secret")
    assert fake.calls[-1] == ["gh", "auth", "token", "--hostname", "github.com", "--user", "amy"]


def test_empty_token_is_an_error(monkeypatch, gh_installed) -> None:
    monkeypatch.setattr(gh_import.subprocess, "run", FakeGH({"auth token": _ok("  \n")}))
    with pytest.raises(GHCLITokenMissingError):
        gh_import.import_profile("github.com", "amy")


def test_failed_command_reports_stderr(monkeypatch, gh_installed) -> None:
    failed = subprocess.CompletedProcess(args=[], returncode=1, stdout="", stderr="not logged in\n")
    monkeypatch.setattr(gh_import.subprocess, "run", FakeGH({"auth switch": failed}))
    with pytest.raises(GHCLICommandFailedError) as exc_info:
        gh_import.switch_active_profile("github.com", "amy")
    assert str(exc_info.value) == "not logged in"


def test_failed_command_without_stderr_uses_generic_message(monkeypatch, gh_installed) -> None:
    failed = subprocess.CompletedProcess(args=[], returncode=1, stdout="", stderr="")
    monkeypatch.setattr(gh_import.subprocess, "run", FakeGH({"auth token": failed}))
    with pytest.raises(GHCLICommandFailedError) as exc_info:
        gh_import.import_profile("github.com", "amy")
    assert str(exc_info.value) == "GitHub CLI command failed."


def test_missing_gh_binary(monkeypatch) -> None:
    monkeypatch.setattr(gh_import.shutil, "which", lambda name: None)
    with pytest.raises(GHCLINotInstalledError):
        gh_import.import_active_auth()
