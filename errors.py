"""Error taxonomy for GitHub access, caching and the gh CLI importer.

``str(error)`` is always a sentence that can be shown to the user as-is.
"""

from __future__ import annotations

from datetime import datetime


class GitHubClientError(Exception):
    """Base class for failures talking to the GitHub GraphQL API."""

    message = "Unable to refresh pull requests."

    def __str__(self) -> str:
        return self.message


class MissingTokenError(GitHubClientError):
    message = "GitHub token is missing. Add a Personal Access Token in Settings."


class UnauthorizedError(GitHubClientError):
    message = "Authentication failed. Verify your token and host URL."


class RateLimitedError(GitHubClientError):
    def __init__(self, reset_at: str | None = None):
        super().__init__(reset_at)
        self.reset_at = reset_at

    @property
    def reset_time(self) -> datetime | None:
        """Local time at which the rate limit resets, if GitHub reported it."""
        if not self.reset_at:
            return None
        try:
            return datetime.fromtimestamp(float(self.reset_at))
        except (ValueError, OverflowError, OSError):
            return None

    @property
    def message(self) -> str:
        reset = self.reset_time
        if reset is not None:
            return f"GitHub API rate limit reached. Try again after {reset.strftime('%H:%M')}."
        return "GitHub API rate limit reached. Try again later."


class NetworkError(GitHubClientError):
    message = "Network request failed. Check your connection and host settings."


class InvalidResponseError(GitHubClientError):
    message = "Received an invalid response from GitHub."


class GraphQLError(GitHubClientError):
    """A GraphQL-level error; the server's own message is surfaced verbatim."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class CacheUnavailableError(Exception):
    """The local snapshot cache could not be read or written. Never fatal."""


class TokenNotFoundError(Exception):
    """No token is stored in the credential store."""


class GHCLIError(Exception):
    """Base class for failures of the ``gh`` CLI token importer."""

    message = "GitHub CLI command failed."

    def __str__(self) -> str:
        return self.message


class GHCLINotInstalledError(GHCLIError):
    message = "GitHub CLI is not installed. Install it and run `gh auth login` first."


class GHCLIInvalidStatusError(GHCLIError):
    message = "Unable to read authentication state from GitHub CLI."


class GHCLINoAuthenticatedHostError(GHCLIError):
    message = "No authenticated GitHub host found in GitHub CLI."


class GHCLITokenMissingError(GHCLIError):
    message = "GitHub CLI did not return a token for the selected account."


class GHCLICommandFailedError(GHCLIError):
    def __init__(self, message: str | None = None):
        super().__init__(message)
        if message:
            self.message = message
