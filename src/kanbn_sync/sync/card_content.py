"""Card title, description and label colour derivation."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kanbn_sync.sync.github_client import GitHubIssue

# Kanbn rejects oversized descriptions; keep a safety margin below its limit
MAX_DESCRIPTION_LENGTH = 10_000
TRUNCATION_MARKER = "\n\n*[Description truncated - see the GitHub issue for the full text]*"
DEFAULT_LABEL_COLOUR = "#808080"

_HEX_COLOUR = re.compile(r"#?[0-9a-fA-F]{6}")


def card_title(issue: GitHubIssue) -> str:
    """Canonical card title, ``#<number>: <title>``.

    The prefix makes the issue number recoverable from the title alone.
    """
    return f"#{issue.number}: {issue.title}"


def _format_date(value: str | None) -> str | None:
    # GitHub timestamps are ISO 8601 (2024-01-31T12:00:00Z); keep the date part
    if not value:
        return None
    return value.split("T", 1)[0]


def description_header(issue: GitHubIssue, comment_count: int | None = None) -> str:
    """Metadata lines placed above the issue body."""
    parts = [f"GitHub Issue: {issue.html_url}"]
    if issue.author:
        parts.append(f"Created by: [{issue.author.login}]({issue.author.html_url})")
    created = _format_date(issue.created_at)
    if created:
        parts.append(f"Created: {created}")
    updated = _format_date(issue.updated_at)
    if updated:
        parts.append(f"Updated: {updated}")
    if issue.assignees:
        links = ", ".join(f"[{login}](https://github.com/{login})" for login in issue.assignees)
        parts.append(f"Assigned to: {links}")
    if comment_count is not None:
        parts.append(f"Comments: {comment_count}")
    return "\n".join(parts)


def truncate_description(header: str, body: str | None, max_length: int = MAX_DESCRIPTION_LENGTH) -> str:
    """Join header and body, cutting the body when over ``max_length`` bytes.

    Lengths are UTF-8 byte counts. The header comes first so it survives
    truncation unless it alone exceeds the cap. A truncated result ends with
    ``TRUNCATION_MARKER`` and is never longer than ``max_length``.
    """
    full = header if not body else f"{header}\n\n---\n\n{body}"
    encoded = full.encode("utf-8")
    if len(encoded) <= max_length:
        return full

    budget = max(0, max_length - len(TRUNCATION_MARKER.encode("utf-8")))
    # "ignore" drops a multi-byte character split by the cut
    kept = encoded[:budget].decode("utf-8", errors="ignore").rstrip()
    return kept + TRUNCATION_MARKER


def card_description(
    issue: GitHubIssue,
    comment_count: int | None = None,
    max_length: int = MAX_DESCRIPTION_LENGTH,
) -> str:
    """Build the card description: back-link, metadata, then the issue body."""
    return truncate_description(description_header(issue, comment_count), issue.body, max_length)


def sanitize_colour(color: str | None) -> str:
    """Convert a GitHub label colour into Kanbn's 7-character ``#RRGGBB``.

    GitHub sends ``RRGGBB`` without the hash; anything malformed falls back
    to grey.
    """
    if not color or not _HEX_COLOUR.fullmatch(color):
        return DEFAULT_LABEL_COLOUR
    return color if color.startswith("#") else f"#{color}"
