"""Idempotent card upsert for a single GitHub issue.

The reconciler owns no persistent state: it works from the board snapshot
(``CardIndex``) and list map handed in by the orchestrator and writes
through ``KanbnClient`` only when something actually changed.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from kanbn_sync.sync.card_content import card_description, card_title
from kanbn_sync.sync.card_index import CardIndex
from kanbn_sync.sync.errors import NotFoundError, SyncError
from kanbn_sync.sync.list_router import determine_list

if TYPE_CHECKING:
    from kanbn_sync.config import ListNamesConfig, RepositoryConfig
    from kanbn_sync.sync.github_client import GitHubIssue, GitHubPullRequest
    from kanbn_sync.sync.kanbn_client import Card, KanbnClient
    from kanbn_sync.sync.label_manager import LabelManager

logger = logging.getLogger(__name__)


def _list_name_for(list_map: dict[str, str], list_id: str) -> str:
    return next((name for name, lid in list_map.items() if lid == list_id), "unknown")


class CardReconciler:
    """Creates, updates or leaves alone the card mirroring one issue."""

    def __init__(
        self,
        client: KanbnClient,
        label_manager: LabelManager,
        list_names: ListNamesConfig,
    ) -> None:
        """Initialize the reconciler.

        Args:
            client: KanbnClient instance for API calls.
            label_manager: Resolves GitHub labels to board label IDs.
            list_names: Configured list names (selects the routing variant).
        """
        self.client = client
        self.label_manager = label_manager
        self.list_names = list_names

    async def sync_issue_card(
        self,
        issue: GitHubIssue,
        repository: RepositoryConfig,
        board_id: str,
        list_map: dict[str, str],
        card_index: CardIndex,
        pull_request: GitHubPullRequest | None = None,
        pr_lookup_failed: bool = False,
        comment_count: int | None = None,
    ) -> bool:
        """Create or update the card for an issue.

        Args:
            issue: The GitHub issue.
            repository: Repository the issue belongs to.
            board_id: Board public ID.
            list_map: List name -> list ID for the board.
            card_index: Board snapshot; updated in place after writes.
            pull_request: Linked PR, if one was found.
            pr_lookup_failed: The issue references a PR that could not be fetched.
            comment_count: Comment count to show in the description, if enabled.

        Returns:
            True if a write occurred, False if the card was already up to date.

        Raises:
            SyncError: If the target list is missing or a write fails.
        """
        target_list_name = determine_list(issue, pull_request, self.list_names, pr_lookup_failed)
        target_list_id = list_map.get(target_list_name)
        if not target_list_id:
            raise SyncError(f'List "{target_list_name}" not found for board {board_id}')

        title = card_title(issue)
        description = card_description(issue, comment_count)
        existing = card_index.get(issue.number)

        if existing is not None and not self._needs_update(existing, title, description, target_list_id):
            return False

        label_ids = await self.label_manager.resolve_label_ids(board_id, issue.labels)

        if existing is None:
            card = await self._create(issue, repository, target_list_id, title, description, label_ids)
            card_index.put(issue.number, card)
            return True

        try:
            card = await self.client.update_card(existing.public_id, title, description, target_list_id, label_ids)
        except NotFoundError:
            card, wrote = await self._recover_missing_card(
                issue, repository, board_id, card_index, existing, target_list_id, title, description, label_ids
            )
            card_index.put(issue.number, card)
            return wrote

        self._log_changes(issue, repository, existing, title, description, target_list_id, list_map)
        card_index.put(issue.number, card)
        return True

    @staticmethod
    def _needs_update(existing: Card, title: str, description: str, list_id: str) -> bool:
        return existing.title != title or existing.description != description or existing.list_public_id != list_id

    async def _create(
        self,
        issue: GitHubIssue,
        repository: RepositoryConfig,
        list_id: str,
        title: str,
        description: str,
        label_ids: list[str],
    ) -> Card:
        card = await self.client.create_card(list_id, title, description, label_ids)
        logger.info(f"[CARD] Created card for issue #{issue.number} in {repository.full_name}: {card.public_id}")
        return card

    async def _recover_missing_card(
        self,
        issue: GitHubIssue,
        repository: RepositoryConfig,
        board_id: str,
        card_index: CardIndex,
        stale: Card,
        list_id: str,
        title: str,
        description: str,
        label_ids: list[str],
    ) -> tuple[Card, bool]:
        """Handle an update that hit a deleted card.

        The board is re-scanned once. If another card for the issue exists
        it is updated; only when none is found is a new card created.

        Returns:
            (card now holding the issue, whether a write occurred)
        """
        logger.warning(
            f"[CARD] Card {stale.public_id} for issue #{issue.number} no longer exists, re-scanning board {board_id}"
        )
        fresh_index = CardIndex.build(await self.client.list_cards(board_id), card_index.repository_url)
        replacement = fresh_index.get(issue.number)

        if replacement is not None and replacement.public_id != stale.public_id:
            if not self._needs_update(replacement, title, description, list_id):
                return replacement, False
            card = await self.client.update_card(replacement.public_id, title, description, list_id, label_ids)
            return card, True

        return await self._create(issue, repository, list_id, title, description, label_ids), True

    @staticmethod
    def _log_changes(
        issue: GitHubIssue,
        repository: RepositoryConfig,
        existing: Card,
        title: str,
        description: str,
        list_id: str,
        list_map: dict[str, str],
    ) -> None:
        if existing.title != title:
            logger.info(f"[CARD] Updated title for issue #{issue.number} in {repository.full_name}")
        if existing.description != description:
            logger.info(f"[CARD] Updated description for issue #{issue.number} in {repository.full_name}")
        if existing.list_public_id != list_id:
            old_name = _list_name_for(list_map, existing.list_public_id)
            new_name = _list_name_for(list_map, list_id)
            logger.info(f'[CARD] Moved issue #{issue.number} in {repository.full_name} from "{old_name}" to "{new_name}"')
