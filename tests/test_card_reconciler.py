"""Tests for the idempotent card upsert."""

from __future__ import annotations

import pytest
from conftest import FakeKanbnClient, make_issue, make_pr

from kanbn_sync.config import ListNamesConfig, RepositoryConfig
from kanbn_sync.sync.card_content import card_description
from kanbn_sync.sync.card_index import CardIndex
from kanbn_sync.sync.card_reconciler import CardReconciler
from kanbn_sync.sync.errors import SyncError
from kanbn_sync.sync.github_client import IssueLabel
from kanbn_sync.sync.label_manager import LabelManager


class TestCardReconciler:
    """Test create, update and no-op paths."""

    @pytest.fixture
    def board_id(self, fake_kanbn: FakeKanbnClient, list_names: ListNamesConfig) -> str:
        return fake_kanbn.add_board("acme - widgets", list_names.ordered())

    @pytest.fixture
    def list_map(self, fake_kanbn: FakeKanbnClient, board_id: str, list_names: ListNamesConfig) -> dict[str, str]:
        return {name: fake_kanbn.list_id(board_id, name) for name in list_names.ordered()}

    @pytest.fixture
    def reconciler(self, fake_kanbn: FakeKanbnClient, list_names: ListNamesConfig) -> CardReconciler:
        return CardReconciler(fake_kanbn, LabelManager(fake_kanbn), list_names)

    def _index(self, fake_kanbn: FakeKanbnClient, board_id: str, repository: RepositoryConfig) -> CardIndex:
        return CardIndex.build(fake_kanbn.board_cards(board_id), repository.url)

    @pytest.mark.asyncio
    async def test_creates_card_in_backlog(
        self,
        fake_kanbn: FakeKanbnClient,
        reconciler: CardReconciler,
        repository: RepositoryConfig,
        board_id: str,
        list_map: dict[str, str],
        list_names: ListNamesConfig,
        bug_label: IssueLabel,
    ) -> None:
        issue = make_issue(1, labels=[bug_label])
        index = self._index(fake_kanbn, board_id, repository)

        wrote = await reconciler.sync_issue_card(issue, repository, board_id, list_map, index)

        assert wrote is True
        card = index.get(1)
        assert card.title == "#1: Fix login"
        assert card.list_public_id == list_map[list_names.backlog]
        assert len(card.label_public_ids) == 1

    @pytest.mark.asyncio
    async def test_second_run_is_a_no_op(
        self,
        fake_kanbn: FakeKanbnClient,
        reconciler: CardReconciler,
        repository: RepositoryConfig,
        board_id: str,
        list_map: dict[str, str],
        bug_label: IssueLabel,
    ) -> None:
        issue = make_issue(1, labels=[bug_label], body="Details")
        await reconciler.sync_issue_card(
            issue, repository, board_id, list_map, self._index(fake_kanbn, board_id, repository)
        )
        writes_after_first = list(fake_kanbn.writes)

        # Fresh snapshot, as the next cycle would take
        wrote = await reconciler.sync_issue_card(
            issue, repository, board_id, list_map, self._index(fake_kanbn, board_id, repository)
        )

        assert wrote is False
        assert fake_kanbn.writes == writes_after_first

    @pytest.mark.asyncio
    async def test_closing_moves_card(
        self,
        fake_kanbn: FakeKanbnClient,
        reconciler: CardReconciler,
        repository: RepositoryConfig,
        board_id: str,
        list_map: dict[str, str],
        list_names: ListNamesConfig,
    ) -> None:
        existing = fake_kanbn.add_card(
            board_id, list_names.backlog, "#1: Fix login", card_description(make_issue(1))
        )
        index = self._index(fake_kanbn, board_id, repository)

        wrote = await reconciler.sync_issue_card(make_issue(1, state="closed"), repository, board_id, list_map, index)

        assert wrote is True
        assert fake_kanbn.cards[existing.public_id].list_public_id == list_map[list_names.completed]
        assert ("create_card", "#1: Fix login") not in fake_kanbn.writes

    @pytest.mark.asyncio
    async def test_legacy_title_rewritten(
        self,
        fake_kanbn: FakeKanbnClient,
        reconciler: CardReconciler,
        repository: RepositoryConfig,
        board_id: str,
        list_map: dict[str, str],
        list_names: ListNamesConfig,
    ) -> None:
        issue = make_issue(1)
        existing = fake_kanbn.add_card(board_id, list_names.backlog, "[#1] Fix login", card_description(issue))

        await reconciler.sync_issue_card(
            issue, repository, board_id, list_map, self._index(fake_kanbn, board_id, repository)
        )

        assert fake_kanbn.cards[existing.public_id].title == "#1: Fix login"
        assert len(fake_kanbn.board_cards(board_id)) == 1

    @pytest.mark.asyncio
    async def test_deleted_card_recovers_by_rescan(
        self,
        fake_kanbn: FakeKanbnClient,
        reconciler: CardReconciler,
        repository: RepositoryConfig,
        board_id: str,
        list_map: dict[str, str],
        list_names: ListNamesConfig,
    ) -> None:
        """The snapshot card was deleted, but another card for the issue exists."""
        stale = fake_kanbn.add_card(board_id, list_names.backlog, "#1: Old title")
        index = self._index(fake_kanbn, board_id, repository)
        del fake_kanbn.cards[stale.public_id]
        del fake_kanbn.card_board[stale.public_id]
        other = fake_kanbn.add_card(board_id, list_names.backlog, "#1: Another copy")

        wrote = await reconciler.sync_issue_card(make_issue(1), repository, board_id, list_map, index)

        assert wrote is True
        assert fake_kanbn.board_cards(board_id) == [fake_kanbn.cards[other.public_id]]
        assert fake_kanbn.cards[other.public_id].title == "#1: Fix login"
        assert index.get(1).public_id == other.public_id

    @pytest.mark.asyncio
    async def test_recovered_card_already_current_is_not_a_write(
        self,
        fake_kanbn: FakeKanbnClient,
        reconciler: CardReconciler,
        repository: RepositoryConfig,
        board_id: str,
        list_map: dict[str, str],
        list_names: ListNamesConfig,
    ) -> None:
        issue = make_issue(1)
        stale = fake_kanbn.add_card(board_id, list_names.backlog, "#1: Old title")
        index = self._index(fake_kanbn, board_id, repository)
        del fake_kanbn.cards[stale.public_id]
        del fake_kanbn.card_board[stale.public_id]
        current = fake_kanbn.add_card(board_id, list_names.backlog, "#1: Fix login", card_description(issue))
        writes_before = list(fake_kanbn.writes)

        wrote = await reconciler.sync_issue_card(issue, repository, board_id, list_map, index)

        assert wrote is False
        assert index.get(1).public_id == current.public_id
        assert fake_kanbn.writes == writes_before

    @pytest.mark.asyncio
    async def test_deleted_card_recreated_when_none_left(
        self,
        fake_kanbn: FakeKanbnClient,
        reconciler: CardReconciler,
        repository: RepositoryConfig,
        board_id: str,
        list_map: dict[str, str],
        list_names: ListNamesConfig,
    ) -> None:
        stale = fake_kanbn.add_card(board_id, list_names.backlog, "#1: Old title")
        index = self._index(fake_kanbn, board_id, repository)
        del fake_kanbn.cards[stale.public_id]
        del fake_kanbn.card_board[stale.public_id]

        await reconciler.sync_issue_card(make_issue(1), repository, board_id, list_map, index)

        cards = fake_kanbn.board_cards(board_id)
        assert len(cards) == 1
        assert cards[0].title == "#1: Fix login"

    @pytest.mark.asyncio
    async def test_missing_target_list_raises(
        self,
        fake_kanbn: FakeKanbnClient,
        reconciler: CardReconciler,
        repository: RepositoryConfig,
        board_id: str,
        list_names: ListNamesConfig,
    ) -> None:
        index = self._index(fake_kanbn, board_id, repository)

        with pytest.raises(SyncError, match="not found"):
            await reconciler.sync_issue_card(
                make_issue(1, state="closed"), repository, board_id, {list_names.backlog: "x"}, index
            )

    @pytest.mark.asyncio
    async def test_pr_aware_routing(
        self,
        fake_kanbn: FakeKanbnClient,
        repository: RepositoryConfig,
        qa_list_names: ListNamesConfig,
    ) -> None:
        board_id = fake_kanbn.add_board("acme - widgets", qa_list_names.ordered())
        list_map = {name: fake_kanbn.list_id(board_id, name) for name in qa_list_names.ordered()}
        reconciler = CardReconciler(fake_kanbn, LabelManager(fake_kanbn), qa_list_names)
        index = CardIndex.build([], repository.url)

        await reconciler.sync_issue_card(
            make_issue(1), repository, board_id, list_map, index, pull_request=make_pr(requested_reviewers=["rev"])
        )

        assert index.get(1).list_public_id == list_map[qa_list_names.quality_assurance]


class TestAtMostOneCard:
    """Duplicates on the board collapse to a single card per issue."""

    @pytest.mark.asyncio
    async def test_duplicates_then_reconcile(
        self, fake_kanbn: FakeKanbnClient, repository: RepositoryConfig, list_names: ListNamesConfig
    ) -> None:
        board_id = fake_kanbn.add_board("acme - widgets", list_names.ordered())
        list_map = {name: fake_kanbn.list_id(board_id, name) for name in list_names.ordered()}
        for title in ("#1: Fix login", "[#1] Fix login", "1: Fix login"):
            fake_kanbn.add_card(board_id, list_names.backlog, title)

        index = CardIndex.build(fake_kanbn.board_cards(board_id), repository.url)
        await index.resolve_duplicates(fake_kanbn)
        reconciler = CardReconciler(fake_kanbn, LabelManager(fake_kanbn), list_names)
        await reconciler.sync_issue_card(make_issue(1), repository, board_id, list_map, index)

        cards = CardIndex.build(fake_kanbn.board_cards(board_id), repository.url)
        assert len(fake_kanbn.board_cards(board_id)) == 1
        assert cards.duplicates() == {}
