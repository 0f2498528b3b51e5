"""Long-running sync service.

Wires the API clients, orchestrator, scheduler and config watcher
together and applies configuration reloads while running.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from kanbn_sync.config import Config, Secrets, effective_interval, verify_config
from kanbn_sync.config_watcher import ConfigWatcher
from kanbn_sync.scheduler import SyncScheduler
from kanbn_sync.sync.errors import ConfigurationError, ServerError
from kanbn_sync.sync.github_client import GitHubClient
from kanbn_sync.sync.kanbn_client import KanbnClient
from kanbn_sync.sync.orchestrator import CycleReport, SyncOrchestrator
from kanbn_sync.sync.remote import RateLimitedClient

logger = logging.getLogger(__name__)

WORKSPACE_MAX_ATTEMPTS = 5
WORKSPACE_INITIAL_BACKOFF = 1.0  # seconds


class SyncService:
    """Owns every long-lived component of a running sync.

    Usage:
        async with SyncService(config, secrets, config_path) as service:
            await service.start()
            ...
            await service.stop()
    """

    def __init__(
        self,
        config: Config,
        secrets: Secrets,
        config_path: Path | None = None,
        dry_run: bool = False,
    ) -> None:
        """Initialize the service.

        Args:
            config: Loaded configuration.
            secrets: Credentials from the environment.
            config_path: File to watch for changes (no hot reload if None).
            dry_run: Log board writes without executing, on top of ``sync.dry_run``.
        """
        self.config = config
        self.secrets = secrets
        self.config_path = config_path
        self.dry_run = dry_run or config.sync.dry_run
        self.workspace_id: str | None = None

        self._remote: RateLimitedClient | None = None
        self._github: GitHubClient | None = None
        self._orchestrator: SyncOrchestrator | None = None
        self.scheduler: SyncScheduler | None = None
        self.watcher: ConfigWatcher | None = None

    async def __aenter__(self) -> SyncService:
        """Validate configuration, open clients and resolve the workspace.

        Raises:
            ConfigurationError: If the configuration is invalid or the
                workspace slug does not exist.
        """
        check = verify_config(self.config, self.secrets)
        if not check.valid:
            for error in check.errors:
                logger.error(f"[CONFIG] {error}")
            raise ConfigurationError("Configuration is invalid", check.errors)

        if not self.secrets.github_token:
            logger.warning("[CONFIG] GITHUB_TOKEN not set, using unauthenticated GitHub access (60 requests/hour)")

        self._remote = RateLimitedClient(self.config.kanbn.base_url, self.secrets.kan_api_key)
        await self._remote.__aenter__()
        self._github = GitHubClient(token=self.secrets.github_token)
        await self._github.__aenter__()

        try:
            kanbn = KanbnClient(self._remote, dry_run=self.dry_run)
            self.workspace_id = await self.resolve_workspace(kanbn, self.config.kanbn.workspace_url_slug)
        except BaseException:
            await self._close_clients()
            raise

        self._orchestrator = SyncOrchestrator(self.config, kanbn, self._github, self.workspace_id)
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        await self.stop()
        await self._close_clients()

    async def _close_clients(self) -> None:
        if self._github:
            await self._github.__aexit__(None, None, None)
            self._github = None
        if self._remote:
            await self._remote.__aexit__(None, None, None)
            self._remote = None

    @property
    def orchestrator(self) -> SyncOrchestrator:
        if self._orchestrator is None:
            raise RuntimeError("SyncService must be used as async context manager")
        return self._orchestrator

    @staticmethod
    async def resolve_workspace(kanbn: KanbnClient, slug: str) -> str:
        """Resolve a workspace URL slug to its public ID.

        Server errors are retried with exponential backoff.

        Raises:
            ConfigurationError: If no workspace has this slug.
            ServerError: If the API keeps failing.
        """
        backoff = WORKSPACE_INITIAL_BACKOFF
        for attempt in range(WORKSPACE_MAX_ATTEMPTS):
            try:
                workspaces = await kanbn.list_workspaces()
                break
            except ServerError:
                if attempt == WORKSPACE_MAX_ATTEMPTS - 1:
                    raise
                wait_time = backoff * (2**attempt)
                logger.warning(f"[CONFIG] Server error when fetching workspaces, retrying in {wait_time:.0f}s...")
                await asyncio.sleep(wait_time)

        for workspace in workspaces:
            if workspace.slug == slug:
                logger.info(f'[CONFIG] Using workspace "{workspace.name}" ({workspace.public_id})')
                return workspace.public_id

        available = ", ".join(w.slug or w.name for w in workspaces) or "none"
        raise ConfigurationError(
            f'Workspace with slug "{slug}" not found. Available workspaces: {available}',
            [f"kanbn.workspace_url_slug '{slug}' does not match any workspace"],
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start periodic syncing and, when a config path is known, hot reload."""
        self.scheduler = SyncScheduler(lambda: self.orchestrator.run_one_cycle(scheduled=True))
        await self.scheduler.start(effective_interval(self.config, self.secrets))

        if self.config_path is not None:
            self.watcher = ConfigWatcher(self.config_path, self.config)
            self.watcher.on_change(self._on_config_change)
            await self.watcher.start()

    async def stop(self) -> None:
        if self.watcher:
            await self.watcher.stop()
            self.watcher = None
        if self.scheduler:
            await self.scheduler.stop()
            self.scheduler = None

    async def run_one_cycle(self, only: str | None = None) -> CycleReport | None:
        """Run a cycle now. Raises CycleInProgressError if one is running."""
        return await self.orchestrator.run_one_cycle(only=only)

    async def _on_config_change(self, old: Config, new: Config) -> None:
        """Apply a reloaded configuration."""
        check = verify_config(new, self.secrets)
        if not check.valid:
            for error in check.errors:
                logger.error(f"[CONFIG] {error}")
            logger.error("[CONFIG] Reloaded configuration is invalid, keeping the previous one")
            return

        if new.kanbn.base_url != old.kanbn.base_url:
            logger.warning("[CONFIG] kanbn.base_url changed; restart the service to apply it")

        self.config = new
        self.orchestrator.update_config(new)

        if new.kanbn.workspace_url_slug != old.kanbn.workspace_url_slug:
            logger.info(f"[CONFIG] Workspace changed to {new.kanbn.workspace_url_slug}, re-resolving")
            try:
                workspace_id = await self.resolve_workspace(self.orchestrator.kanbn, new.kanbn.workspace_url_slug)
            except (ConfigurationError, ServerError) as e:
                logger.error(f"[CONFIG] {e}")
            else:
                self.workspace_id = workspace_id
                self.orchestrator.set_workspace(workspace_id)
                self.orchestrator.reset_caches()

        old_interval = effective_interval(old, self.secrets)
        new_interval = effective_interval(new, self.secrets)
        if new_interval != old_interval and self.scheduler:
            self.scheduler.reschedule(new_interval)

        logger.info(f"[CONFIG] Configuration reloaded ({len(new.repositories)} repositories)")

    def health(self) -> dict[str, Any]:
        """Snapshot of service state for status output."""
        check = verify_config(self.config, self.secrets)
        report = self._orchestrator.last_report if self._orchestrator else None
        status: dict[str, Any] = {
            "status": "ok" if check.valid else "invalid_config",
            "config_valid": check.valid,
            "config_errors": check.errors,
            "workspace_id": self.workspace_id,
            "dry_run": self.dry_run,
            "cycle_running": bool(self._orchestrator and self._orchestrator.is_running),
            "next_run_at": self.scheduler.next_run_at.isoformat()
            if self.scheduler and self.scheduler.next_run_at
            else None,
            "last_cycle": None,
        }
        if report is not None:
            status["last_cycle"] = {
                "started_at": report.started_at.isoformat(),
                "finished_at": report.finished_at.isoformat() if report.finished_at else None,
                "created": report.total("created"),
                "updated": report.total("updated"),
                "unchanged": report.total("unchanged"),
                "errors": report.total("errors"),
                "rate_limited": report.rate_limited,
            }
        return status
