"""GitHub API client using httpx for issue synchronization.

This module provides an async HTTP client that reads issues, pull requests
and comments from GitHub. GITHUB_TOKEN is optional: without it the client
runs unauthenticated with the lower 60 requests/hour quota.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

import httpx

from kanbn_sync.sync.errors import (
    ClientError,
    NotFoundError,
    RateLimitError,
    ServerError,
)

logger = logging.getLogger(__name__)

# GitHub API constants
GITHUB_API_BASE = "https://api.github.com"
DEFAULT_TIMEOUT = 30.0
MAX_RETRIES = 3
INITIAL_BACKOFF = 1.0  # seconds
PER_PAGE = 100

IssueState = Literal["open", "closed", "all"]

# Bare "#N" or a closing keyword form such as "fixes #N"
_PR_REFERENCE_TEMPLATE = r"(?:\b(?:fix(?:e[sd])?|close[sd]?|resolve[sd]?|address(?:e[sd])?)\s+)?#{number}\b"


@dataclass
class GitHubUser:
    """A GitHub account reference."""

    login: str
    html_url: str = ""


@dataclass
class IssueLabel:
    """A label attached to a GitHub issue."""

    name: str
    color: str | None = None


@dataclass
class GitHubIssue:
    """Represents a GitHub issue as returned by the REST issues endpoint."""

    number: int
    title: str
    state: str  # "open" or "closed"
    html_url: str = ""
    body: str | None = None
    labels: list[IssueLabel] = field(default_factory=list)
    assignees: list[str] = field(default_factory=list)
    pull_request_url: str | None = None
    author: GitHubUser | None = None
    created_at: str | None = None
    updated_at: str | None = None
    comments: int = 0

    @property
    def is_closed(self) -> bool:
        """Check if the issue is closed."""
        return self.state.lower() == "closed"


@dataclass
class GitHubPullRequest:
    """Represents a GitHub pull request."""

    number: int
    title: str
    state: str
    html_url: str = ""
    body: str | None = None
    draft: bool = False
    assignees: list[str] = field(default_factory=list)
    requested_reviewers: list[str] = field(default_factory=list)


@dataclass
class IssueListing:
    """One pass over the issues endpoint, split into issues and PR entries.

    The PR entries lack requested reviewers; they only serve as references
    when the pull request listing is unavailable.
    """

    issues: list[GitHubIssue] = field(default_factory=list)
    pull_requests: list[GitHubPullRequest] = field(default_factory=list)


@dataclass
class GitHubComment:
    """Represents an issue comment."""

    id: int
    body: str
    author: GitHubUser | None = None
    created_at: str = ""
    updated_at: str = ""


def _parse_user(data: dict[str, Any] | None) -> GitHubUser | None:
    if not data:
        return None
    return GitHubUser(login=data.get("login", ""), html_url=data.get("html_url", ""))


def _parse_issue(data: dict[str, Any]) -> GitHubIssue:
    pull_request = data.get("pull_request") or {}
    return GitHubIssue(
        number=data["number"],
        title=data.get("title", ""),
        state=data.get("state", "open"),
        html_url=data.get("html_url", ""),
        body=data.get("body"),
        labels=[IssueLabel(name=label["name"], color=label.get("color")) for label in data.get("labels") or []],
        assignees=[a["login"] for a in data.get("assignees") or []],
        pull_request_url=pull_request.get("url") or pull_request.get("html_url"),
        author=_parse_user(data.get("user")),
        created_at=data.get("created_at"),
        updated_at=data.get("updated_at"),
        comments=data.get("comments") or 0,
    )


def _parse_pull_request(data: dict[str, Any]) -> GitHubPullRequest:
    return GitHubPullRequest(
        number=data["number"],
        title=data.get("title", ""),
        state=data.get("state", "open"),
        html_url=data.get("html_url", ""),
        body=data.get("body"),
        draft=bool(data.get("draft", False)),
        assignees=[a["login"] for a in data.get("assignees") or []],
        requested_reviewers=[r["login"] for r in data.get("requested_reviewers") or []],
    )


def _parse_comment(data: dict[str, Any]) -> GitHubComment:
    return GitHubComment(
        id=data["id"],
        body=data.get("body") or "",
        author=_parse_user(data.get("user")),
        created_at=data.get("created_at", ""),
        updated_at=data.get("updated_at", ""),
    )


def rate_limit_error(headers: httpx.Headers | dict[str, str], now: float | None = None) -> RateLimitError:
    """Build a RateLimitError carrying the reset time computed from headers.

    ``Retry-After`` (seconds from now) wins over ``X-RateLimit-Reset``
    (epoch seconds). Without either, the message falls back to GitHub's
    hourly reset.
    """
    now = time.time() if now is None else now
    retry_after = headers.get("Retry-After")
    reset_header = headers.get("X-RateLimit-Reset")

    reset_epoch: float | None = None
    if retry_after and retry_after.isdigit():
        reset_epoch = now + int(retry_after)
    elif reset_header and reset_header.isdigit():
        reset_epoch = float(reset_header)

    if reset_epoch is not None:
        wait_seconds = max(0, int(reset_epoch - now + 0.999))
        reset_at = datetime.fromtimestamp(reset_epoch).astimezone()
        wait_minutes = max(1, -(-wait_seconds // 60))
        return RateLimitError(
            f"GitHub API rate limit exceeded. Rate limit resets at {reset_at:%H:%M:%S %Z} (in {wait_minutes} minute(s)).",
            service="github",
            reset_at=reset_at,
            retry_after=wait_seconds,
        )

    return RateLimitError(
        "GitHub API rate limit exceeded. Rate limit resets hourly. Waiting 60 minute(s) before trying again.",
        service="github",
        retry_after=3600,
    )


def find_prs_for_issue(
    pull_requests: Iterable[GitHubPullRequest],
    issue_number: int,
) -> list[GitHubPullRequest]:
    """Find pull requests whose title or body reference an issue.

    Matches ``#N`` and closing-keyword forms (``fixes #N``, ``closes #N``,
    ``resolves #N``, ``addresses #N``) case-insensitively. ``#12`` does not
    match issue 1.
    """
    pattern = re.compile(_PR_REFERENCE_TEMPLATE.format(number=issue_number), re.IGNORECASE)
    return [pr for pr in pull_requests if pattern.search(pr.title or "") or pattern.search(pr.body or "")]


class GitHubClient:
    """Async GitHub API client for reading issues and pull requests.

    Implements header-based rate limit detection and retry logic with
    exponential backoff for transport failures.
    """

    def __init__(
        self,
        token: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        base_url: str = GITHUB_API_BASE,
    ) -> None:
        """Initialize the GitHub client.

        Args:
            token: GitHub token. None means unauthenticated access.
            timeout: Request timeout in seconds.
            base_url: API base URL (for GitHub Enterprise or tests).
        """
        self.timeout = timeout
        self.base_url = base_url
        self._token = token or None

        # Build headers - never log the token!
        self._headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self._token:
            self._headers["Authorization"] = f"Bearer {self._token}"

        self._client: httpx.AsyncClient | None = None

    @property
    def authenticated(self) -> bool:
        """Whether requests carry a bearer token."""
        return self._token is not None

    async def __aenter__(self) -> GitHubClient:
        """Enter async context manager."""
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers,
            timeout=self.timeout,
        )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit async context manager."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client, ensuring it's initialized."""
        if self._client is None:
            raise RuntimeError("GitHubClient must be used as async context manager")
        return self._client

    async def _request(
        self,
        method: str,
        endpoint: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """Make an HTTP request with retry logic.

        Args:
            method: HTTP method.
            endpoint: API endpoint (e.g., "/repos/owner/repo/issues").
            **kwargs: Additional arguments passed to httpx request.

        Returns:
            httpx.Response object.

        Raises:
            RateLimitError: If the quota is exhausted.
            NotFoundError: If resource is not found.
            ServerError: For 5xx responses or repeated transport failures.
            ClientError: For other API errors.
        """
        backoff = INITIAL_BACKOFF

        for attempt in range(MAX_RETRIES):
            try:
                response = await self.client.request(method, endpoint, **kwargs)
            except httpx.TimeoutException as e:
                if attempt < MAX_RETRIES - 1:
                    wait_time = backoff * (2**attempt)
                    logger.warning(f"Request timeout, retrying in {wait_time:.1f}s")
                    await asyncio.sleep(wait_time)
                    continue
                raise ServerError(f"Request timeout after {MAX_RETRIES} attempts", method=method, url=endpoint) from e
            except httpx.HTTPError as e:
                if attempt < MAX_RETRIES - 1:
                    wait_time = backoff * (2**attempt)
                    logger.warning(f"HTTP error: {e}, retrying in {wait_time:.1f}s")
                    await asyncio.sleep(wait_time)
                    continue
                raise ServerError(f"HTTP error after {MAX_RETRIES} attempts: {e}", method=method, url=endpoint) from e

            # Check the quota before consuming the page
            if response.headers.get("X-RateLimit-Remaining") == "0":
                raise rate_limit_error(response.headers)

            status = response.status_code
            if status in (403, 429) and "rate limit" in response.text.lower():
                raise rate_limit_error(response.headers)

            if status == 404:
                raise NotFoundError(f"Resource not found: {endpoint}", method=method, url=endpoint, status_code=status)

            if status >= 400:
                error_body = response.text
                logger.error(f"GitHub API error {status}: {error_body[:500]}")
                error_cls = ServerError if status >= 500 else ClientError
                raise error_cls(
                    f"GitHub API error {status}: {error_body[:200]}",
                    method=method,
                    url=endpoint,
                    status_code=status,
                    body=error_body,
                )

            return response

        # Should not reach here, but just in case
        raise ServerError("Max retries exceeded", method=method, url=endpoint)

    async def _paginate(self, endpoint: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Follow page numbers until a short page is returned."""
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            query = {**(params or {}), "per_page": PER_PAGE, "page": page}
            response = await self._request("GET", endpoint, params=query)
            page_items = response.json()
            if not page_items:
                break
            items.extend(page_items)
            if len(page_items) < PER_PAGE:
                break
            page += 1
        return items

    # =========================================================================
    # Issue Operations
    # =========================================================================

    async def fetch_issues(self, owner: str, repo: str, state: IssueState = "all") -> list[GitHubIssue]:
        """Fetch all issues of a repository (open and closed by default).

        Pull requests also appear on the issues endpoint; they are
        identified by their ``/pull/`` URL and dropped.
        """
        listing = await self.fetch_issue_listing(owner, repo, state)
        return listing.issues

    async def fetch_issue_listing(self, owner: str, repo: str, state: IssueState = "all") -> IssueListing:
        """Fetch the issues endpoint once, keeping the PR entries apart."""
        raw = await self._paginate(f"/repos/{owner}/{repo}/issues", {"state": state})
        listing = IssueListing()
        for item in raw:
            if "/pull/" in item.get("html_url", ""):
                listing.pull_requests.append(_parse_pull_request(item))
            else:
                listing.issues.append(_parse_issue(item))
        return listing

    async def fetch_comments(self, owner: str, repo: str, issue_number: int) -> list[GitHubComment]:
        """Fetch all comments of an issue. A 404 means no comments."""
        try:
            raw = await self._paginate(f"/repos/{owner}/{repo}/issues/{issue_number}/comments")
        except NotFoundError:
            return []
        return [_parse_comment(item) for item in raw]

    # =========================================================================
    # Pull Request Operations
    # =========================================================================

    async def fetch_pull_requests(self, owner: str, repo: str, state: IssueState = "open") -> list[GitHubPullRequest]:
        """Fetch all pull requests of a repository."""
        raw = await self._paginate(f"/repos/{owner}/{repo}/pulls", {"state": state})
        return [_parse_pull_request(item) for item in raw]

    async def fetch_pull_request(self, owner: str, repo: str, number: int) -> GitHubPullRequest:
        """Fetch a single pull request by number."""
        response = await self._request("GET", f"/repos/{owner}/{repo}/pulls/{number}")
        return _parse_pull_request(response.json())

    def find_prs_for_issue(self, pull_requests: Iterable[GitHubPullRequest], issue_number: int) -> list[GitHubPullRequest]:
        """Find pull requests that reference an issue (see module function)."""
        return find_prs_for_issue(pull_requests, issue_number)
