"""GitHub GraphQL client: authenticated transport plus pull request queries."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Union

import httpx

import queries
from credentials import CredentialCache
from errors import (
    GraphQLError,
    InvalidResponseError,
    MissingTokenError,
    NetworkError,
    RateLimitedError,
    TokenNotFoundError,
    UnauthorizedError,
)
from mapping import build_review_details, map_checks, map_comment_threads, map_search_nodes
from models import (
    PullRequestCheck,
    PullRequestCommentThread,
    PullRequestItem,
    PullRequestReviewDetails,
    QueryCostEstimate,
)

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 15.0
RESOURCE_TIMEOUT_SECONDS = 30.0

# Values allowed in a GraphQL variables payload.
GraphQLVariable = Union[str, int, float, bool, None]


def encode_variables(variables: dict[str, GraphQLVariable]) -> dict[str, GraphQLVariable]:
    """Validate that every variable is a JSON scalar GraphQL accepts."""
    for name, value in variables.items():
        if value is not None and not isinstance(value, (str, int, float, bool)):
            raise TypeError(f"Unsupported GraphQL variable {name!r}: {type(value).__name__}")
    return dict(variables)


class GraphQLTransport:
    """POSTs GraphQL documents and classifies HTTP and GraphQL failures.

    Args:
        client: Optional pre-built httpx client (tests inject a MockTransport).
        request_timeout: Per-phase timeout (connect/read/write) in seconds.
        resource_timeout: Upper bound for the whole request in seconds.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        request_timeout: float = REQUEST_TIMEOUT_SECONDS,
        resource_timeout: float = RESOURCE_TIMEOUT_SECONDS,
    ):
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(request_timeout))
        self._resource_timeout = resource_timeout

    async def aclose(self) -> None:
        await self._client.aclose()

    async def execute(
        self,
        query: str,
        variables: dict[str, GraphQLVariable],
        endpoint: str,
        token: str,
    ) -> dict:
        """Run a query and return its ``data`` object.

        Raises:
            NetworkError: DNS failure, timeout, connection reset.
            UnauthorizedError: HTTP 401.
            RateLimitedError: HTTP 403 with ``x-ratelimit-remaining: 0``.
            InvalidResponseError: any other non-2xx, undecodable body, or no data.
            GraphQLError: the response carried GraphQL errors.
        """
        payload = {"query": query, "variables": encode_variables(variables)}
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

        logger.debug("POST %s", endpoint)
        try:
            async with asyncio.timeout(self._resource_timeout):
                response = await self._client.post(endpoint, json=payload, headers=headers)
        except (httpx.TransportError, TimeoutError) as e:
            logger.warning("GraphQL request to %s failed: %s", endpoint, type(e).__name__)
            raise NetworkError() from e
        except httpx.InvalidURL as e:
            raise InvalidResponseError() from e

        if response.status_code == 401:
            raise UnauthorizedError()
        if response.status_code == 403 and response.headers.get("x-ratelimit-remaining") == "0":
            raise RateLimitedError(response.headers.get("x-ratelimit-reset"))
        if not 200 <= response.status_code < 300:
            logger.warning("GraphQL request to %s returned HTTP %d", endpoint, response.status_code)
            raise InvalidResponseError()

        try:
            body = response.json()
        except ValueError as e:
            raise InvalidResponseError() from e
        if not isinstance(body, dict):
            raise InvalidResponseError()

        errors = body.get("errors") or []
        if errors:
            first = errors[0] if isinstance(errors[0], dict) else {}
            raise GraphQLError(first.get("message") or "GraphQL request failed.")

        data = body.get("data")
        if not isinstance(data, dict):
            raise InvalidResponseError()
        return data


class GitHubClient:
    """High-level pull request operations on top of GraphQLTransport."""

    def __init__(self, transport: GraphQLTransport, credentials: CredentialCache):
        self.transport = transport
        self.credentials = credentials

    def resolve_token(self) -> str:
        """Stored token first, then GITHUB_TOKEN, else MissingTokenError."""
        try:
            token = self.credentials.read().strip()
        except TokenNotFoundError:
            token = ""
        if not token:
            token = os.environ.get("GITHUB_TOKEN", "").strip()
        if not token:
            raise MissingTokenError()
        return token

    async def _execute(
        self,
        query: str,
        variables: dict[str, GraphQLVariable],
        graphql_url: str,
        token: str | None,
    ) -> dict:
        resolved = token if token and token.strip() else self.resolve_token()
        return await self.transport.execute(query, variables, graphql_url, resolved)

    async def fetch_pull_requests(self, query: str, graphql_url: str, token: str | None = None) -> list[PullRequestItem]:
        """Search pull requests; deduplicated by id, newest-updated first."""
        data = await self._execute(
            queries.SEARCH_PULL_REQUESTS,
            {"query": query, "first": queries.SEARCH_PAGE_SIZE},
            graphql_url,
            token,
        )
        nodes = (data.get("search") or {}).get("nodes") or []
        return map_search_nodes(nodes)

    async def estimate_search_cost(self, query: str, graphql_url: str, token: str | None = None) -> QueryCostEstimate:
        """Dry-run cost of a search, with the remaining and total rate-limit budget."""
        data = await self._execute(
            queries.PULL_REQUEST_QUERY_COST,
            {"query": query, "first": queries.SEARCH_PAGE_SIZE},
            graphql_url,
            token,
        )
        rate_limit = data.get("rateLimit")
        if not isinstance(rate_limit, dict):
            raise InvalidResponseError()
        try:
            return QueryCostEstimate(
                cost=rate_limit["cost"],
                remaining=rate_limit["remaining"],
                limit=rate_limit["limit"],
            )
        except (KeyError, ValueError) as e:
            raise InvalidResponseError() from e

    async def fetch_checks(self, node_id: str, graphql_url: str, token: str | None = None) -> list[PullRequestCheck]:
        """Check runs and status contexts on the last commit of one pull request."""
        data = await self._execute(queries.PULL_REQUEST_CHECKS, {"id": node_id}, graphql_url, token)
        return map_checks(data.get("node"))

    async def fetch_comment_threads(
        self, node_id: str, graphql_url: str, token: str | None = None
    ) -> list[PullRequestCommentThread]:
        """Review threads of one pull request."""
        data = await self._execute(queries.PULL_REQUEST_COMMENT_THREADS, {"id": node_id}, graphql_url, token)
        return map_comment_threads(data.get("node"))

    async def fetch_review_details(
        self, node_id: str, graphql_url: str, token: str | None = None
    ) -> PullRequestReviewDetails:
        """Latest reviews plus every page of review requests for one pull request."""
        token = token if token and token.strip() else self.resolve_token()
        data = await self._execute(queries.PULL_REQUEST_REVIEW_DETAILS, {"id": node_id}, graphql_url, token)
        node = data.get("node")
        if not node:
            return PullRequestReviewDetails()

        review_nodes = (node.get("latestReviews") or {}).get("nodes") or []
        requests = node.get("reviewRequests") or {}
        request_nodes = list(requests.get("nodes") or [])
        page_info = requests.get("pageInfo") or {}

        seen_cursors: set[str | None] = set()
        while page_info.get("hasNextPage"):
            cursor = page_info.get("endCursor")
            if cursor in seen_cursors:
                logger.warning("Review request pagination for %s repeated cursor %r", node_id, cursor)
                break
            seen_cursors.add(cursor)
            page = await self._execute(
                queries.PULL_REQUEST_REVIEW_REQUESTS_PAGE,
                {"id": node_id, "after": cursor},
                graphql_url,
                token,
            )
            page_node = page.get("node")
            if not page_node:
                break
            page_requests = page_node.get("reviewRequests") or {}
            request_nodes.extend(page_requests.get("nodes") or [])
            page_info = page_requests.get("pageInfo") or {}

        return build_review_details(review_nodes, request_nodes)
