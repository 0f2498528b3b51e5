"""Tests for the kanbn-sync CLI."""

from __future__ import annotations

import re
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from typer.testing import CliRunner

from kanbn_sync.cli import app

VALID_KEY = "kan_" + "a1b2c3d4" * 5

runner = CliRunner()


def _plain(output: str) -> str:
    return re.sub(r"\x1b\[[0-9;]*m", "", output)


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(
        "kanbn:\n"
        "  base_url: https://kan.acme.dev\n"
        "  workspace_url_slug: ACME\n"
        "github:\n"
        "  repositories:\n"
        "    acme/widgets: Widgets\n",
        encoding="utf-8",
    )
    return path


class TestCheckCommand:
    """Test the check command."""

    def test_valid_config(self, config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KAN_API_KEY", VALID_KEY)
        monkeypatch.delenv("GITHUB_TOKEN", raising=False)

        result = runner.invoke(app, ["check", "--config", str(config_file)])

        output = _plain(result.output)
        assert result.exit_code == 0
        assert "Configuration is valid" in output
        assert "acme/widgets" in output

    def test_missing_api_key(self, config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("KAN_API_KEY", raising=False)

        result = runner.invoke(app, ["check", "--config", str(config_file)])

        assert result.exit_code == 1
        assert "KAN_API_KEY is required" in _plain(result.output)

    def test_missing_file(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["check", "--config", str(tmp_path / "nope.yaml")])

        assert result.exit_code == 1

    def test_invalid_file(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("github:\n  repositories:\n    - not-a-repo\n", encoding="utf-8")

        result = runner.invoke(app, ["check", "--config", str(path)])

        assert result.exit_code == 1
        assert "Invalid configuration" in _plain(result.output)


class TestSyncCommand:
    def test_unknown_repository(self, config_file: Path) -> None:
        result = runner.invoke(app, ["sync", "--config", str(config_file), "--repo", "acme/other"])

        assert result.exit_code == 1
        assert "not configured" in _plain(result.output)

    def test_invalid_config_exits(self, config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("KAN_API_KEY", raising=False)

        result = runner.invoke(app, ["sync", "--config", str(config_file)])

        assert result.exit_code == 1
        assert "Configuration errors" in _plain(result.output)


class TestWorkspacesCommand:
    def test_requires_api_key(self, config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("KAN_API_KEY", raising=False)

        result = runner.invoke(app, ["workspaces", "--config", str(config_file)])

        assert result.exit_code == 1

    def test_lists_workspaces(self, config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        from kanbn_sync.sync.kanbn_client import Workspace

        monkeypatch.setenv("KAN_API_KEY", VALID_KEY)
        with patch(
            "kanbn_sync.cli.KanbnClient.list_workspaces",
            new_callable=AsyncMock,
            return_value=[Workspace("ws1", "Acme", "ACME")],
        ):
            result = runner.invoke(app, ["workspaces", "--config", str(config_file)])

        output = _plain(result.output)
        assert result.exit_code == 0
        assert "ACME" in output
        assert "ws1" in output
