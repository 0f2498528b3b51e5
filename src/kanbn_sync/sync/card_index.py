"""Card to issue matching and duplicate resolution.

The board snapshot is fetched once per repository sweep. Every card is
mapped back to an issue number; when several cards claim the same issue,
one survivor is kept and the rest are deleted.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from kanbn_sync.sync.errors import SyncError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from kanbn_sync.sync.kanbn_client import Card, KanbnClient

logger = logging.getLogger(__name__)

# "#42: Title", "[#42] Title", "#42 - Title", "42: Title"
TITLE_PREFIX_PATTERN = re.compile(r"^[\[#]?(\d+)[\]:\s-]")
CANONICAL_PREFIX_PATTERN = re.compile(r"^#(\d+):")
LOOSE_TITLE_PATTERN = re.compile(r"#(\d+)")


def extract_issue_number(title: str, description: str | None, repository_url: str) -> int | None:
    """Recover the issue number a card belongs to.

    Tried in order:
    1. Title prefix (the canonical ``#N:`` and legacy variants)
    2. ``<repository_url>/issues/N`` inside the description
    3. ``#N`` anywhere in the title

    Args:
        title: Card title.
        description: Card description, if any.
        repository_url: e.g. ``https://github.com/owner/repo``.

    Returns:
        The issue number, or None if the card cannot be matched.
    """
    if title:
        match = TITLE_PREFIX_PATTERN.match(title)
        if match:
            return int(match.group(1))

    if description:
        url_pattern = re.escape(repository_url.rstrip("/")) + r"/issues/(\d+)"
        match = re.search(url_pattern, description)
        if match:
            return int(match.group(1))

    if title:
        match = LOOSE_TITLE_PATTERN.search(title)
        if match:
            return int(match.group(1))

    return None


def has_canonical_title(card: Card, issue_number: int) -> bool:
    """Check whether a card title starts with ``#<issue_number>:``."""
    match = CANONICAL_PREFIX_PATTERN.match(card.title)
    return match is not None and int(match.group(1)) == issue_number


def choose_survivor(cards: list[Card], issue_number: int) -> Card:
    """Pick the card to keep among duplicates.

    The first card with the canonical title prefix wins; otherwise the
    first card found.
    """
    for card in cards:
        if has_canonical_title(card, issue_number):
            return card
    return cards[0]


@dataclass
class DuplicateResolution:
    """Outcome of removing duplicate cards."""

    deleted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class CardIndex:
    """Issue number -> card mapping for one board snapshot."""

    def __init__(self, repository_url: str) -> None:
        self.repository_url = repository_url
        self._groups: dict[int, list[Card]] = {}
        self.unmatched: list[Card] = []

    @classmethod
    def build(cls, cards: Iterable[Card], repository_url: str) -> CardIndex:
        """Group cards by the issue number they resolve to."""
        index = cls(repository_url)
        for card in cards:
            number = extract_issue_number(card.title, card.description, repository_url)
            if number is None:
                index.unmatched.append(card)
                continue
            index._groups.setdefault(number, []).append(card)
        return index

    def __len__(self) -> int:
        return len(self._groups)

    def __contains__(self, issue_number: object) -> bool:
        return issue_number in self._groups

    def duplicates(self) -> dict[int, list[Card]]:
        """Issue numbers claimed by more than one card."""
        return {number: cards for number, cards in self._groups.items() if len(cards) > 1}

    def get(self, issue_number: int) -> Card | None:
        """Return the card for an issue (the survivor if duplicates remain)."""
        cards = self._groups.get(issue_number)
        if not cards:
            return None
        return choose_survivor(cards, issue_number)

    def put(self, issue_number: int, card: Card) -> None:
        """Record the single card for an issue."""
        self._groups[issue_number] = [card]

    def remove(self, issue_number: int) -> None:
        self._groups.pop(issue_number, None)

    async def resolve_duplicates(self, client: KanbnClient, repo_name: str = "") -> DuplicateResolution:
        """Delete every card but the survivor for each duplicated issue.

        Deletion failures are logged as warnings and never abort the sweep;
        the failed card stays out of the index so it is retried next cycle.
        """
        result = DuplicateResolution()
        for number, cards in self.duplicates().items():
            survivor = choose_survivor(cards, number)
            for card in cards:
                if card.public_id == survivor.public_id:
                    continue
                try:
                    await client.delete_card(card.public_id)
                    result.deleted.append(card.public_id)
                    logger.info(
                        f"[CARD] Deleted duplicate card {card.public_id} for issue #{number}"
                        f"{f' in {repo_name}' if repo_name else ''} (kept {survivor.public_id})"
                    )
                except SyncError as e:
                    result.failed.append(card.public_id)
                    logger.warning(f"[CARD] Failed to delete duplicate card {card.public_id} for issue #{number}: {e}")
            self._groups[number] = [survivor]
        return result
