"""Issue to list routing.

Maps an issue (and its linked pull request, if any) to exactly one board
list. Rules are evaluated in priority order and the first match wins:

1. Closed issue -> Completed
2. Linked PR with assignees or requested reviewers -> Quality Assurance
3. Linked draft PR -> In Progress
4. Linked PR -> Ready for QA
5. PR reference whose details could not be fetched -> Ready for QA
6. Assigned issue -> Selected
7. Everything else -> Backlog

Rules 2-5 need the Ready-for-QA and Quality-Assurance lists. Without them
any linked PR (or PR reference) routes to In Progress.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kanbn_sync.config import ListNamesConfig
    from kanbn_sync.sync.github_client import GitHubIssue, GitHubPullRequest


def determine_list(
    issue: GitHubIssue,
    pull_request: GitHubPullRequest | None,
    list_names: ListNamesConfig,
    pr_lookup_failed: bool = False,
) -> str:
    """Return the name of the list an issue belongs in.

    Args:
        issue: The GitHub issue.
        pull_request: The PR linked to the issue, if one was found.
        list_names: Configured list names.
        pr_lookup_failed: True when the issue references a PR but its
            details could not be fetched.

    Returns:
        One of the configured list names.
    """
    if issue.is_closed:
        return list_names.completed

    has_pr_reference = bool(issue.pull_request_url) or pr_lookup_failed

    if list_names.pr_aware:
        if pull_request is not None:
            if pull_request.assignees or pull_request.requested_reviewers:
                return list_names.quality_assurance  # type: ignore[return-value]
            if pull_request.draft:
                return list_names.in_progress
            return list_names.ready_for_qa  # type: ignore[return-value]
        if has_pr_reference:
            # Optimistic default when PR details are unavailable
            return list_names.ready_for_qa  # type: ignore[return-value]
    elif pull_request is not None or has_pr_reference:
        return list_names.in_progress

    if issue.assignees:
        return list_names.selected

    return list_names.backlog
