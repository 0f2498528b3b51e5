"""Shared fixtures: issue factories and an in-memory Kanbn board."""

from __future__ import annotations

import itertools
import logging
from typing import Any

import pytest

from kanbn_sync.config import Config, ListNamesConfig, RepositoryConfig
from kanbn_sync.sync.errors import ClientError, NotFoundError
from kanbn_sync.sync.github_client import GitHubIssue, GitHubPullRequest, GitHubUser, IssueLabel
from kanbn_sync.sync.kanbn_client import Board, BoardDetail, BoardList, Card, Label


def make_issue(number: int = 1, title: str = "Fix login", state: str = "open", **kwargs: Any) -> GitHubIssue:
    """Build an issue with sensible defaults."""
    kwargs.setdefault("html_url", f"https://github.com/acme/widgets/issues/{number}")
    kwargs.setdefault("author", GitHubUser(login="octocat", html_url="https://github.com/octocat"))
    kwargs.setdefault("created_at", "2024-01-31T12:00:00Z")
    kwargs.setdefault("updated_at", "2024-02-01T08:30:00Z")
    return GitHubIssue(number=number, title=title, state=state, **kwargs)


def make_pr(number: int = 100, body: str | None = "Fixes #1", **kwargs: Any) -> GitHubPullRequest:
    kwargs.setdefault("title", f"PR {number}")
    kwargs.setdefault("state", "open")
    return GitHubPullRequest(number=number, body=body, **kwargs)


class FakeKanbnClient:
    """In-memory stand-in for KanbnClient that records every write."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.boards: dict[str, Board] = {}
        self.lists: dict[str, list[BoardList]] = {}
        self.cards: dict[str, Card] = {}
        self.card_board: dict[str, str] = {}
        self.labels: dict[str, list[Label]] = {}
        self.writes: list[tuple[str, str]] = []
        self.fail_create_label: Exception | None = None

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}{next(self._ids)}"

    def _board_of_list(self, list_id: str) -> str:
        for board_id, lists in self.lists.items():
            if any(board_list.public_id == list_id for board_list in lists):
                return board_id
        raise NotFoundError(f"List {list_id} not found", status_code=404)

    # Helpers for arranging state

    def add_board(self, name: str, list_names: list[str]) -> str:
        board_id = self._next_id("board")
        self.boards[board_id] = Board(public_id=board_id, name=name)
        self.lists[board_id] = [
            BoardList(public_id=self._next_id("list"), name=list_name, position=i)
            for i, list_name in enumerate(list_names)
        ]
        self.labels[board_id] = []
        return board_id

    def list_id(self, board_id: str, name: str) -> str:
        return next(board_list.public_id for board_list in self.lists[board_id] if board_list.name == name)

    def add_card(self, board_id: str, list_name: str, title: str, description: str = "") -> Card:
        card = Card(
            public_id=self._next_id("card"),
            title=title,
            list_public_id=self.list_id(board_id, list_name),
            description=description,
        )
        self.cards[card.public_id] = card
        self.card_board[card.public_id] = board_id
        return card

    def board_cards(self, board_id: str) -> list[Card]:
        return [card for card_id, card in self.cards.items() if self.card_board[card_id] == board_id]

    # KanbnClient surface

    async def list_boards(self, workspace_id: str | None = None) -> list[Board]:
        return list(self.boards.values())

    async def create_board(
        self,
        name: str,
        list_names: list[str],
        label_names: list[str] | None = None,
        workspace_id: str | None = None,
    ) -> Board:
        self.writes.append(("create_board", name))
        board_id = self.add_board(name, list_names)
        return self.boards[board_id]

    async def get_board(self, board_id: str) -> BoardDetail:
        if board_id not in self.boards:
            raise NotFoundError(f"Board {board_id} not found", status_code=404)
        return BoardDetail(
            public_id=board_id,
            name=self.boards[board_id].name,
            lists=list(self.lists[board_id]),
            cards=self.board_cards(board_id),
            labels=list(self.labels[board_id]),
        )

    async def list_lists(self, board_id: str) -> list[BoardList]:
        return list(self.lists[board_id])

    async def create_list(self, board_id: str, name: str, position: int) -> BoardList:
        self.writes.append(("create_list", name))
        board_list = BoardList(public_id=self._next_id("list"), name=name, position=position)
        self.lists[board_id].append(board_list)
        return board_list

    async def list_labels(self, board_id: str) -> list[Label]:
        return list(self.labels[board_id])

    async def create_label(self, board_id: str, name: str, colour_code: str) -> Label:
        if self.fail_create_label is not None:
            raise self.fail_create_label
        if any(label.name.lower() == name.lower() for label in self.labels[board_id]):
            raise ClientError("Label already exists", status_code=409)
        self.writes.append(("create_label", name))
        label = Label(public_id=self._next_id("label"), name=name, colour_code=colour_code)
        self.labels[board_id].append(label)
        return label

    async def list_cards(self, board_id: str) -> list[Card]:
        return self.board_cards(board_id)

    async def create_card(self, list_id: str, title: str, description: str, label_ids: list[str]) -> Card:
        self.writes.append(("create_card", title))
        card = Card(
            public_id=self._next_id("card"),
            title=title,
            list_public_id=list_id,
            description=description,
            label_public_ids=list(label_ids),
        )
        self.cards[card.public_id] = card
        self.card_board[card.public_id] = self._board_of_list(list_id)
        return card

    async def update_card(
        self,
        card_id: str,
        title: str,
        description: str,
        list_id: str,
        label_ids: list[str],
    ) -> Card:
        if card_id not in self.cards:
            raise NotFoundError(f"Card {card_id} not found", status_code=404)
        self.writes.append(("update_card", card_id))
        card = Card(
            public_id=card_id,
            title=title,
            list_public_id=list_id,
            description=description,
            label_public_ids=list(label_ids),
        )
        self.cards[card_id] = card
        return card

    async def delete_card(self, card_id: str) -> None:
        if card_id not in self.cards:
            raise NotFoundError(f"Card {card_id} not found", status_code=404)
        self.writes.append(("delete_card", card_id))
        del self.cards[card_id]
        del self.card_board[card_id]


@pytest.fixture
def list_names() -> ListNamesConfig:
    return ListNamesConfig()


@pytest.fixture
def qa_list_names() -> ListNamesConfig:
    return ListNamesConfig(ready_for_qa="🔍 Ready for QA", quality_assurance="🧪 Quality Assurance")


@pytest.fixture
def repository() -> RepositoryConfig:
    return RepositoryConfig(full_name="acme/widgets")


@pytest.fixture
def config() -> Config:
    return Config.model_validate(
        {
            "kanbn": {"base_url": "https://kan.acme.dev", "workspace_url_slug": "ACME"},
            "github": {"repositories": ["acme/widgets"]},
            "sync": {"issue_delay_seconds": 0},
        }
    )


@pytest.fixture
def fake_kanbn() -> FakeKanbnClient:
    return FakeKanbnClient()


@pytest.fixture
def bug_label() -> IssueLabel:
    return IssueLabel(name="bug", color="d73a4a")


@pytest.fixture(autouse=True)
def _restore_package_logger():
    """Undo setup_logging() so handlers bound to captured streams do not leak."""
    logger = logging.getLogger("kanbn_sync")
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
    logger.handlers[:] = handlers
    logger.setLevel(level)
    logger.propagate = propagate
