"""Board and list provisioning for mirrored repositories.

Ensures each configured repository has a board and the canonical set of
workflow lists, memoizing the IDs for the lifetime of the process.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from kanbn_sync.sync.errors import APIError, ServerError

if TYPE_CHECKING:
    from kanbn_sync.config import ListNamesConfig, RepositoryConfig
    from kanbn_sync.sync.kanbn_client import Board, KanbnClient

logger = logging.getLogger(__name__)

BOARD_LIST_MAX_ATTEMPTS = 5
BOARD_LIST_INITIAL_BACKOFF = 1.0  # seconds
_DUPLICATE_MARKERS = ("already exists", "duplicate", "unique constraint")


def is_duplicate_error(error: Exception) -> bool:
    """Check whether a creation error means the resource already exists."""
    text = str(error).lower()
    if isinstance(error, APIError):
        text += " " + error.body.lower()
    return any(marker in text for marker in _DUPLICATE_MARKERS)


class BoardProvisioner:
    """Creates boards and lists on demand and caches their IDs.

    Caches:
    - repository -> board ID
    - repository -> (list name -> list ID)

    Both are cleared by ``reset()``, e.g. when the workspace changes.
    """

    def __init__(
        self,
        client: KanbnClient,
        list_names: ListNamesConfig,
        workspace_id: str | None = None,
    ) -> None:
        """Initialize the provisioner.

        Args:
            client: KanbnClient instance for API calls.
            list_names: Configured list names, in board order.
            workspace_id: Workspace to scope boards to, if any.
        """
        self.client = client
        self.list_names = list_names
        self.workspace_id = workspace_id
        self._boards: dict[str, str] = {}
        self._lists: dict[str, dict[str, str]] = {}

    def reset(self) -> None:
        """Drop every cached board and list ID."""
        self._boards.clear()
        self._lists.clear()

    def set_workspace(self, workspace_id: str | None) -> None:
        """Switch workspace, invalidating caches if it changed."""
        if workspace_id != self.workspace_id:
            self.workspace_id = workspace_id
            self.reset()

    def set_list_names(self, list_names: ListNamesConfig) -> None:
        """Switch list names, invalidating list caches if they changed."""
        if list_names.ordered() != self.list_names.ordered():
            self._lists.clear()
        self.list_names = list_names

    def cached_board(self, repository: RepositoryConfig) -> str | None:
        return self._boards.get(repository.full_name)

    async def _find_board(self, name: str) -> Board | None:
        """List boards and match by exact name, retrying on server errors."""
        backoff = BOARD_LIST_INITIAL_BACKOFF
        for attempt in range(BOARD_LIST_MAX_ATTEMPTS):
            try:
                boards = await self.client.list_boards(self.workspace_id)
            except ServerError as e:
                if attempt < BOARD_LIST_MAX_ATTEMPTS - 1:
                    wait_time = backoff * (2**attempt)
                    logger.warning(f"[PHASE 1] Server error when fetching boards, retrying in {wait_time:.0f}s...")
                    await asyncio.sleep(wait_time)
                    continue
                raise
            except APIError as e:
                # Creation may then hit the duplicate path, which re-queries
                logger.warning(f"[PHASE 1] Could not fetch boards to check for duplicates: {e}")
                return None
            return next((board for board in boards if board.name == name), None)
        return None

    async def ensure_board(self, repository: RepositoryConfig) -> str:
        """Return the board ID for a repository, creating the board if needed.

        Raises:
            APIError: If the board can neither be found nor created.
        """
        cached = self._boards.get(repository.full_name)
        if cached:
            return cached

        board_name = repository.display_name
        existing = await self._find_board(board_name)
        if existing:
            self._boards[repository.full_name] = existing.public_id
            return existing.public_id

        try:
            board = await self.client.create_board(
                board_name,
                self.list_names.ordered(),
                label_names=[],
                workspace_id=self.workspace_id,
            )
        except APIError as e:
            if not is_duplicate_error(e):
                logger.error(f"[BOARD] Failed to create board for {repository.full_name}: {e}")
                raise
            logger.warning(f'[BOARD] Board "{board_name}" may already exist, searching for it...')
            found = await self._find_board(board_name)
            if found is None:
                raise
            self._boards[repository.full_name] = found.public_id
            return found.public_id

        self._boards[repository.full_name] = board.public_id
        logger.info(f"[BOARD] Created board for {repository.full_name}: {board.public_id}")
        return board.public_id

    async def ensure_lists(self, board_id: str, repository: RepositoryConfig) -> dict[str, str]:
        """Return list name -> ID for a board, creating missing lists.

        List creation failures propagate: a board without its target lists
        cannot receive cards.
        """
        cached = self._lists.get(repository.full_name)
        if cached is not None:
            return cached

        try:
            existing = await self.client.list_lists(board_id)
        except APIError as e:
            logger.warning(f"[LIST] Failed to fetch lists for board {board_id}: {e}")
            existing = []

        by_name = {board_list.name: board_list.public_id for board_list in existing}
        list_map: dict[str, str] = {}

        for position, name in enumerate(self.list_names.ordered()):
            if name in by_name:
                list_map[name] = by_name[name]
                continue
            new_list = await self.client.create_list(board_id, name, position)
            list_map[name] = new_list.public_id
            logger.info(f'[LIST] Created list "{name}" for board {board_id}')

        self._lists[repository.full_name] = list_map
        return list_map
