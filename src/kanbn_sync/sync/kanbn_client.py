"""Kanbn API client for board, list, label and card operations.

This module wraps ``RateLimitedClient`` with typed operations against the
Kanbn REST API (``/api/v1``). Uses KAN_API_KEY for authentication.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from kanbn_sync.sync.remote import RateLimitedClient

logger = logging.getLogger(__name__)


@dataclass
class Workspace:
    """Represents a Kanbn workspace."""

    public_id: str
    name: str
    slug: str | None = None


@dataclass
class Board:
    """Represents a Kanbn board."""

    public_id: str
    name: str


@dataclass
class BoardList:
    """Represents a list (column) on a board."""

    public_id: str
    name: str
    position: int | None = None


@dataclass
class Label:
    """Represents a board label."""

    public_id: str
    name: str
    colour_code: str = ""


@dataclass
class Card:
    """Represents a Kanbn card."""

    public_id: str
    title: str
    list_public_id: str
    description: str = ""
    label_public_ids: list[str] = field(default_factory=list)


@dataclass
class BoardDetail:
    """Full board snapshot: lists, every card, and every known label."""

    public_id: str
    name: str
    lists: list[BoardList] = field(default_factory=list)
    cards: list[Card] = field(default_factory=list)
    labels: list[Label] = field(default_factory=list)


def _parse_label(data: dict[str, Any]) -> Label:
    return Label(
        public_id=data["publicId"],
        name=data.get("name", ""),
        colour_code=data.get("colourCode") or "",
    )


def _parse_card(data: dict[str, Any], list_public_id: str = "") -> Card:
    return Card(
        public_id=data["publicId"],
        title=data.get("title") or "",
        list_public_id=data.get("listPublicId") or list_public_id,
        description=data.get("description") or "",
        label_public_ids=[label["publicId"] for label in data.get("labels") or [] if "publicId" in label],
    )


def _parse_board_detail(data: dict[str, Any]) -> BoardDetail:
    """Flatten the nested ``GET /boards/{id}`` payload."""
    lists: list[BoardList] = []
    cards: list[Card] = []
    labels: dict[str, Label] = {}

    for label_data in data.get("labels") or []:
        label = _parse_label(label_data)
        labels.setdefault(label.public_id, label)

    for index, list_data in enumerate(data.get("lists") or []):
        board_list = BoardList(
            public_id=list_data["publicId"],
            name=list_data.get("name", ""),
            position=list_data.get("index", index),
        )
        lists.append(board_list)
        for card_data in list_data.get("cards") or []:
            cards.append(_parse_card(card_data, board_list.public_id))
            # Older Kanbn versions only expose labels through the cards
            for label_data in card_data.get("labels") or []:
                if "publicId" in label_data:
                    label = _parse_label(label_data)
                    labels.setdefault(label.public_id, label)

    return BoardDetail(
        public_id=data.get("publicId", ""),
        name=data.get("name", ""),
        lists=lists,
        cards=cards,
        labels=list(labels.values()),
    )


class KanbnClient:
    """Typed Kanbn API operations built on the rate-limited executor.

    Write operations honour ``dry_run``: they are logged and synthetic
    objects are returned without touching the remote board.
    """

    def __init__(self, remote: RateLimitedClient, dry_run: bool = False) -> None:
        """Initialize the Kanbn client.

        Args:
            remote: Rate-limited executor (must be entered as a context manager).
            dry_run: If True, log write operations without executing.
        """
        self.remote = remote
        self.dry_run = dry_run

    # =========================================================================
    # Workspace Operations
    # =========================================================================

    async def list_workspaces(self) -> list[Workspace]:
        """List the workspaces the API key can access.

        The endpoint returns ``{role, workspace}`` pairs; only the workspace
        objects are kept.
        """
        items = await self.remote.execute("GET", "/workspaces") or []
        return [
            Workspace(
                public_id=item["workspace"]["publicId"],
                name=item["workspace"].get("name", ""),
                slug=item["workspace"].get("slug"),
            )
            for item in items
            if "workspace" in item
        ]

    async def find_workspace_by_slug(self, slug: str) -> Workspace | None:
        """Find a workspace by its URL slug."""
        for workspace in await self.list_workspaces():
            if workspace.slug == slug:
                return workspace
        return None

    # =========================================================================
    # Board Operations
    # =========================================================================

    @staticmethod
    def _boards_endpoint(workspace_id: str | None) -> str:
        return f"/workspaces/{workspace_id}/boards" if workspace_id else "/boards"

    async def list_boards(self, workspace_id: str | None = None) -> list[Board]:
        """List boards, scoped to a workspace when one is given."""
        data = await self.remote.execute("GET", self._boards_endpoint(workspace_id)) or []
        return [Board(public_id=b["publicId"], name=b.get("name", "")) for b in data]

    async def create_board(
        self,
        name: str,
        list_names: list[str],
        label_names: list[str] | None = None,
        workspace_id: str | None = None,
    ) -> Board:
        """Create a board with its initial lists.

        The API rejects board creation unless both ``lists`` and ``labels``
        arrays are present, so both are always sent.
        """
        if self.dry_run:
            logger.info(f"[DRY RUN] Would create board '{name}' with lists {list_names}")
            return Board(public_id=f"dry-run-board-{name}", name=name)

        data = await self.remote.execute(
            "POST",
            self._boards_endpoint(workspace_id),
            body={
                "name": name,
                "lists": list(list_names),
                "labels": list(label_names or []),
            },
        )
        return Board(public_id=data["publicId"], name=data.get("name", name))

    async def get_board(self, board_id: str) -> BoardDetail:
        """Fetch a board with its lists, cards and labels."""
        data = await self.remote.execute("GET", f"/boards/{board_id}")
        return _parse_board_detail(data or {})

    # =========================================================================
    # List Operations
    # =========================================================================

    async def list_lists(self, board_id: str) -> list[BoardList]:
        """Get the lists of a board."""
        return (await self.get_board(board_id)).lists

    async def create_list(self, board_id: str, name: str, position: int) -> BoardList:
        """Create a list on a board at the given position."""
        if self.dry_run:
            logger.info(f"[DRY RUN] Would create list '{name}' on board {board_id}")
            return BoardList(public_id=f"dry-run-list-{name}", name=name, position=position)

        data = await self.remote.execute(
            "POST",
            "/lists",
            body={"boardPublicId": board_id, "name": name, "position": position},
        )
        return BoardList(public_id=data["publicId"], name=data.get("name", name), position=position)

    # =========================================================================
    # Label Operations
    # =========================================================================

    async def list_labels(self, board_id: str) -> list[Label]:
        """Get every label known on a board."""
        return (await self.get_board(board_id)).labels

    async def create_label(self, board_id: str, name: str, colour_code: str) -> Label:
        """Create a label.

        Args:
            board_id: Board public ID.
            name: Label name.
            colour_code: Exactly 7 characters, e.g. ``#808080``.
        """
        if self.dry_run:
            logger.info(f"[DRY RUN] Would create label '{name}' with colour {colour_code}")
            return Label(public_id=f"dry-run-label-{name}", name=name, colour_code=colour_code)

        data = await self.remote.execute(
            "POST",
            "/labels",
            body={"name": name, "boardPublicId": board_id, "colourCode": colour_code},
        )
        return Label(
            public_id=data["publicId"],
            name=data.get("name", name),
            colour_code=data.get("colourCode", colour_code),
        )

    async def update_label(
        self,
        label_id: str,
        name: str | None = None,
        colour_code: str | None = None,
    ) -> Label:
        """Rename or recolour a label."""
        update_data: dict[str, str] = {}
        if name is not None:
            update_data["name"] = name
        if colour_code is not None:
            update_data["colourCode"] = colour_code

        if self.dry_run:
            logger.info(f"[DRY RUN] Would update label {label_id}: {update_data}")
            return Label(public_id=label_id, name=name or "", colour_code=colour_code or "")

        data = await self.remote.execute("PUT", f"/labels/{label_id}", body=update_data)
        return _parse_label(data)

    async def delete_label(self, label_id: str) -> None:
        """Delete a label."""
        if self.dry_run:
            logger.info(f"[DRY RUN] Would delete label {label_id}")
            return
        await self.remote.execute("DELETE", f"/labels/{label_id}")

    # =========================================================================
    # Card Operations
    # =========================================================================

    async def list_cards(self, board_id: str) -> list[Card]:
        """Get every card on a board, across all lists."""
        return (await self.get_board(board_id)).cards

    async def create_card(
        self,
        list_id: str,
        title: str,
        description: str,
        label_ids: list[str],
    ) -> Card:
        """Create a card at the end of a list.

        The creation contract requires ``labelPublicIds`` and
        ``memberPublicIds`` arrays; cards are never assigned members.
        """
        if self.dry_run:
            logger.info(f"[DRY RUN] Would create card '{title}'")
            return Card(
                public_id=f"dry-run-card-{title}",
                title=title,
                list_public_id=list_id,
                description=description,
                label_public_ids=list(label_ids),
            )

        data = await self.remote.execute(
            "POST",
            "/cards",
            body={
                "title": title,
                "description": description,
                "listPublicId": list_id,
                "position": "end",
                "labelPublicIds": list(label_ids),
                "memberPublicIds": [],
            },
        )
        return Card(
            public_id=data["publicId"],
            title=data.get("title", title),
            list_public_id=data.get("listPublicId", list_id),
            description=data.get("description", description),
            label_public_ids=list(label_ids),
        )

    async def update_card(
        self,
        card_id: str,
        title: str,
        description: str,
        list_id: str,
        label_ids: list[str],
    ) -> Card:
        """Update a card in place; the label set is always resent."""
        if self.dry_run:
            logger.info(f"[DRY RUN] Would update card {card_id} ('{title}')")
            return Card(
                public_id=card_id,
                title=title,
                list_public_id=list_id,
                description=description,
                label_public_ids=list(label_ids),
            )

        await self.remote.execute(
            "PATCH",
            f"/cards/{card_id}",
            body={
                "title": title,
                "description": description,
                "listPublicId": list_id,
                "labelPublicIds": list(label_ids),
            },
        )
        return Card(
            public_id=card_id,
            title=title,
            list_public_id=list_id,
            description=description,
            label_public_ids=list(label_ids),
        )

    async def delete_card(self, card_id: str) -> None:
        """Delete a card."""
        if self.dry_run:
            logger.info(f"[DRY RUN] Would delete card {card_id}")
            return
        await self.remote.execute("DELETE", f"/cards/{card_id}")
