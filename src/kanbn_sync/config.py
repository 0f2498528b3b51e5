"""Configuration management for kanbn-sync."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

# Without a GitHub token the 60 requests/hour quota cannot sustain faster polling
MIN_SYNC_INTERVAL_MINUTES = 5

DEFAULT_CONFIG_PATHS = (
    Path("config/config.yaml"),
    Path("config/config.json"),
    Path("config.yaml"),
    Path("config.json"),
)

_EXAMPLE_API_KEY = "kan_xxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxx"
_EXAMPLE_REPOS = ("your-username/repo-one", "your-username/repo-two", "your-username/repo-three")
_EXAMPLE_BOARD_NAMES = ("My Custom Board Name", "Another Board", "Third Repository")


class _AliasedModel(BaseModel):
    """Accept both snake_case keys and the camelCase keys of config.json."""

    model_config = ConfigDict(populate_by_name=True)


class KanbnConfig(_AliasedModel):
    """Kanbn instance settings."""

    base_url: str = Field(default="", alias="baseUrl", description="Kanbn instance URL")
    workspace_url_slug: str = Field(
        default="",
        alias="workspaceUrlSlug",
        description="Workspace URL slug from Kanbn settings (e.g. 'MAT')",
    )


class RepositoryConfig(_AliasedModel):
    """One mirrored GitHub repository."""

    full_name: str = Field(alias="repo", description="Repository in 'owner/name' format")
    board_name: str | None = Field(default=None, alias="boardName", description="Custom board name")
    board_slug: str | None = Field(default=None, alias="boardSlug")
    visibility: Literal["private", "public"] | None = None

    @field_validator("full_name")
    @classmethod
    def _check_full_name(cls, value: str) -> str:
        owner, _, name = value.partition("/")
        if not owner or not name or "/" in name:
            raise ValueError(f"Repository must be in 'owner/name' format, got '{value}'")
        return value

    @property
    def owner(self) -> str:
        return self.full_name.split("/", 1)[0]

    @property
    def name(self) -> str:
        return self.full_name.split("/", 1)[1]

    @property
    def display_name(self) -> str:
        """Board name: the custom one, else ``owner - name``."""
        return self.board_name or self.full_name.replace("/", " - ")

    @property
    def url(self) -> str:
        return f"https://github.com/{self.full_name}"


class GitHubConfig(_AliasedModel):
    """GitHub source settings."""

    repositories: list[RepositoryConfig] = Field(default_factory=list)

    @field_validator("repositories", mode="before")
    @classmethod
    def _normalize_repositories(cls, value: Any) -> Any:
        # Array of "owner/repo" strings, or mapping of "owner/repo" -> board name
        if value is None:
            return []
        if isinstance(value, dict):
            return [{"full_name": repo, "board_name": board_name} for repo, board_name in value.items()]
        if isinstance(value, list):
            return [{"full_name": item} if isinstance(item, str) else item for item in value]
        return value


class SyncConfig(_AliasedModel):
    """Sync loop settings."""

    interval_minutes: int = Field(default=MIN_SYNC_INTERVAL_MINUTES, alias="intervalMinutes", ge=1)
    issue_delay_seconds: float = Field(
        default=0.1,
        alias="issueDelaySeconds",
        description="Pause between issues, on top of the client's request delay",
    )
    include_comment_count: bool = Field(
        default=False,
        alias="includeCommentCount",
        description="Add the comment count to card descriptions (one extra GitHub call per issue)",
    )
    dry_run: bool = Field(default=False, alias="dryRun", description="Log board writes without executing")


class ListNamesConfig(_AliasedModel):
    """Board list names. Ready-for-QA and Quality-Assurance are optional.

    When both optional lists are set, issues with a linked pull request are
    routed by its review state; otherwise any linked PR means In Progress.
    """

    backlog: str = "📝 Backlog"
    selected: str = "✨ Selected"
    in_progress: str = Field(default="⚙️ In Progress", alias="inProgress")
    ready_for_qa: str | None = Field(default=None, alias="readyForQa")
    quality_assurance: str | None = Field(default=None, alias="qualityAssurance")
    completed: str = "🎉 Completed/Closed"

    @property
    def pr_aware(self) -> bool:
        """Whether the pull-request review lists are configured."""
        return bool(self.ready_for_qa and self.quality_assurance)

    def ordered(self) -> list[str]:
        """Canonical list names in board order."""
        names = [self.backlog, self.selected, self.in_progress]
        if self.pr_aware:
            names += [self.ready_for_qa, self.quality_assurance]  # type: ignore[list-item]
        names.append(self.completed)
        return names


class Config(_AliasedModel):
    """kanbn-sync configuration."""

    kanbn: KanbnConfig = Field(default_factory=KanbnConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    lists: ListNamesConfig = Field(default_factory=ListNamesConfig)

    @property
    def repositories(self) -> list[RepositoryConfig]:
        return self.github.repositories

    def repository(self, full_name: str) -> RepositoryConfig | None:
        """Look up a configured repository by ``owner/name``."""
        for repo in self.repositories:
            if repo.full_name == full_name:
                return repo
        return None

    @classmethod
    def find_path(cls) -> Path | None:
        """Return the first existing default config path."""
        for path in DEFAULT_CONFIG_PATHS:
            if path.exists():
                return path
        return None

    @classmethod
    def load(cls, config_path: Path | None = None) -> Config:
        """Load configuration from a YAML or JSON file.

        Raises:
            FileNotFoundError: If no config file exists.
        """
        if config_path is None:
            config_path = cls.find_path()
        if config_path is None or not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path or DEFAULT_CONFIG_PATHS[0]}")

        # JSON is valid YAML, so one parser covers config.json too
        with config_path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls.model_validate(data)

    def save(self, config_path: Path) -> None:
        """Save configuration to file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with config_path.open("w", encoding="utf-8") as f:
            yaml.dump(self.model_dump(mode="json"), f, default_flow_style=False, allow_unicode=True)


@dataclass
class Secrets:
    """Credentials read from the environment, never from the config file."""

    kan_api_key: str = ""
    github_token: str | None = None

    @classmethod
    def from_env(cls) -> Secrets:
        return cls(
            kan_api_key=os.getenv("KAN_API_KEY", ""),
            github_token=os.getenv("GITHUB_TOKEN") or None,
        )


@dataclass
class ConfigCheck:
    """Result of validating a configuration."""

    valid: bool
    errors: list[str] = field(default_factory=list)
    has_placeholders: bool = False


def verify_config(config: Config, secrets: Secrets) -> ConfigCheck:
    """Check required settings and detect values copied from the examples."""
    errors: list[str] = []
    has_placeholders = False

    api_key = secrets.kan_api_key
    if not api_key:
        errors.append("KAN_API_KEY is required in the environment")
    elif api_key == _EXAMPLE_API_KEY or "xxxxxxxx" in api_key:
        errors.append("KAN_API_KEY still contains the placeholder value from env.example")
        has_placeholders = True
    elif not api_key.startswith("kan_") or len(api_key) < 40:
        errors.append('KAN_API_KEY does not look like a Kanbn API key (should start with "kan_" and be 40+ characters)')

    base_url = config.kanbn.base_url
    if not base_url:
        errors.append("kanbn.base_url is required")
    elif "example.com" in base_url:
        errors.append("kanbn.base_url still contains the placeholder value from the example config")
        has_placeholders = True

    slug = config.kanbn.workspace_url_slug
    if not slug:
        errors.append("kanbn.workspace_url_slug is required")
    elif slug == "YOUR_WORKSPACE_SLUG" or any(word in slug.lower() for word in ("your", "example", "placeholder")):
        errors.append("kanbn.workspace_url_slug still contains a placeholder value")
        has_placeholders = True

    repos = config.repositories
    if not repos:
        errors.append('github.repositories is required (list of "owner/repo", or mapping of "owner/repo" to board name)')
    else:
        placeholder_repos = [r.full_name for r in repos if r.full_name in _EXAMPLE_REPOS or "your-username" in r.full_name]
        if placeholder_repos:
            errors.append(f"github.repositories still contains placeholder values ({', '.join(placeholder_repos)})")
            has_placeholders = True
        if any(r.board_name in _EXAMPLE_BOARD_NAMES for r in repos):
            errors.append("github.repositories still contains example board names")
            has_placeholders = True

    return ConfigCheck(valid=not errors, errors=errors, has_placeholders=has_placeholders)


def effective_interval(config: Config, secrets: Secrets) -> int:
    """Sync interval in minutes, clamped to the minimum without a GitHub token."""
    interval = config.sync.interval_minutes
    if interval < MIN_SYNC_INTERVAL_MINUTES and not secrets.github_token:
        return MIN_SYNC_INTERVAL_MINUTES
    return interval
