"""Label mapping from GitHub issues to Kanbn board labels.

This module resolves GitHub label names to Kanbn label IDs, creating
missing labels on the board and caching the result per board.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from kanbn_sync.sync.card_content import sanitize_colour
from kanbn_sync.sync.errors import RateLimitError, SyncError
from kanbn_sync.sync.provisioner import is_duplicate_error

if TYPE_CHECKING:
    from collections.abc import Iterable

    from kanbn_sync.sync.github_client import IssueLabel
    from kanbn_sync.sync.kanbn_client import KanbnClient, Label

logger = logging.getLogger(__name__)


class LabelManager:
    """Maps GitHub labels 1:1 onto board labels by case-insensitive name.

    Handles:
    - Seeding the cache from a board snapshot
    - Label creation if missing, with a sanitized colour
    - Creation races (someone else created it first) by re-fetching
    """

    def __init__(self, client: KanbnClient, create_if_missing: bool = True) -> None:
        """Initialize the label manager.

        Args:
            client: KanbnClient instance for API calls.
            create_if_missing: Whether to create labels that don't exist.
        """
        self.client = client
        self.create_if_missing = create_if_missing
        self._labels: dict[str, dict[str, str]] = {}  # board ID -> (lowercase name -> label ID)

    def reset(self) -> None:
        """Clear all cached labels."""
        self._labels.clear()

    def is_loaded(self, board_id: str) -> bool:
        return board_id in self._labels

    def load_board_labels(self, board_id: str, labels: Iterable[Label]) -> None:
        """Seed (or refresh) the cache for a board from known labels."""
        cache = self._labels.setdefault(board_id, {})
        for label in labels:
            cache.setdefault(label.name.lower(), label.public_id)

    async def refresh(self, board_id: str) -> None:
        """Re-fetch a board's labels from the API."""
        labels = await self.client.list_labels(board_id)
        self._labels[board_id] = {}
        self.load_board_labels(board_id, labels)

    def lookup(self, board_id: str, name: str) -> str | None:
        """Return a cached label ID by case-insensitive name."""
        return self._labels.get(board_id, {}).get(name.lower())

    async def get_or_create_label(self, board_id: str, name: str, color: str | None = None) -> str | None:
        """Return the label ID for ``name``, creating the label if needed.

        Returns:
            The label ID, or None if the label could not be resolved.

        Raises:
            RateLimitError: Throttling is never swallowed here.
        """
        if not self.is_loaded(board_id):
            try:
                await self.refresh(board_id)
            except RateLimitError:
                raise
            except SyncError as e:
                logger.warning(f"[LABEL] Failed to fetch labels for board {board_id}: {e}")
                self._labels[board_id] = {}

        label_id = self.lookup(board_id, name)
        if label_id or not self.create_if_missing:
            return label_id

        colour = sanitize_colour(color)
        try:
            label = await self.client.create_label(board_id, name, colour)
        except RateLimitError:
            raise
        except SyncError as e:
            if not is_duplicate_error(e):
                logger.warning(f'[LABEL] Failed to create label "{name}": {e}')
                return None
            # Created by another process or an earlier cycle: re-fetch instead of failing
            try:
                await self.refresh(board_id)
            except SyncError as refresh_error:
                logger.warning(f'[LABEL] Failed to re-fetch labels after duplicate "{name}": {refresh_error}')
                return None
            return self.lookup(board_id, name)

        self._labels.setdefault(board_id, {})[name.lower()] = label.public_id
        logger.info(f"[LABEL] Created new label: {name}")
        return label.public_id

    async def resolve_label_ids(self, board_id: str, issue_labels: Iterable[IssueLabel]) -> list[str]:
        """Map every GitHub label of an issue to a board label ID.

        Labels that cannot be resolved are skipped; duplicates collapse.
        """
        label_ids: list[str] = []
        for issue_label in issue_labels:
            label_id = await self.get_or_create_label(board_id, issue_label.name, issue_label.color)
            if label_id and label_id not in label_ids:
                label_ids.append(label_id)
        return label_ids
