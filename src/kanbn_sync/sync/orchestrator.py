"""Two-phase sync cycle across every configured repository.

Phase 1 makes sure each repository has a board with the canonical lists.
Phase 2 mirrors the repository's issues onto that board, one issue at a
time. A GitHub rate limit ends phase 2 for the cycle; any other failure
is confined to the repository or issue it happened on.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from kanbn_sync.sync.card_index import CardIndex
from kanbn_sync.sync.card_reconciler import CardReconciler
from kanbn_sync.sync.errors import CycleInProgressError, RateLimitError, SyncError
from kanbn_sync.sync.github_client import find_prs_for_issue
from kanbn_sync.sync.label_manager import LabelManager
from kanbn_sync.sync.provisioner import BoardProvisioner

if TYPE_CHECKING:
    from kanbn_sync.config import Config, RepositoryConfig
    from kanbn_sync.sync.github_client import GitHubClient, GitHubIssue, GitHubPullRequest
    from kanbn_sync.sync.kanbn_client import KanbnClient

logger = logging.getLogger(__name__)

# Extra pause after an issue failed on a rate limit, on top of the issue delay
RATE_LIMIT_PAUSE = 1.0  # seconds


@dataclass
class RepositoryReport:
    """Outcome of one repository in a cycle."""

    repository: str
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    errors: int = 0
    duplicates_removed: int = 0
    skipped: bool = False
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None or self.errors > 0


@dataclass
class CycleReport:
    """Outcome of one reconciliation cycle."""

    started_at: datetime
    finished_at: datetime | None = None
    repositories: list[RepositoryReport] = field(default_factory=list)
    rate_limited: bool = False
    rate_limit_reset: datetime | None = None
    next_run_at: datetime | None = None

    @property
    def has_errors(self) -> bool:
        return self.rate_limited or any(r.failed for r in self.repositories)

    def total(self, attribute: str) -> int:
        """Sum a counter (``created``, ``updated``...) over all repositories."""
        return sum(getattr(r, attribute) for r in self.repositories)


class SyncOrchestrator:
    """Runs reconciliation cycles and owns the per-process caches.

    Handles:
    - Board and list provisioning (phase 1)
    - Duplicate cleanup, label seeding and card upserts (phase 2)
    - Refusing to start a cycle while another one is running
    """

    def __init__(
        self,
        config: Config,
        kanbn: KanbnClient,
        github: GitHubClient,
        workspace_id: str | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Loaded configuration.
            kanbn: Kanbn client (its executor must already be entered).
            github: GitHub client (must already be entered).
            workspace_id: Workspace boards are created in.
        """
        self.config = config
        self.kanbn = kanbn
        self.github = github
        self.provisioner = BoardProvisioner(kanbn, config.lists, workspace_id)
        self.label_manager = LabelManager(kanbn)
        self.reconciler = CardReconciler(kanbn, self.label_manager, config.lists)
        self.last_report: CycleReport | None = None
        self._cycle_lock = asyncio.Lock()
        self._fetch_comments = True

    @property
    def is_running(self) -> bool:
        """Whether a cycle is in progress."""
        return self._cycle_lock.locked()

    def reset_caches(self) -> None:
        """Forget every cached board, list and label ID."""
        self.provisioner.reset()
        self.label_manager.reset()
        logger.info("[SYNC] Cleared board, list and label caches")

    def set_workspace(self, workspace_id: str | None) -> None:
        if workspace_id != self.provisioner.workspace_id:
            self.provisioner.set_workspace(workspace_id)
            self.label_manager.reset()

    def update_config(self, config: Config) -> None:
        """Apply a reloaded configuration to the next cycle."""
        self.config = config
        self.provisioner.set_list_names(config.lists)
        self.reconciler.list_names = config.lists

    # =========================================================================
    # Cycle
    # =========================================================================

    async def run_one_cycle(self, only: str | None = None, scheduled: bool = False) -> CycleReport | None:
        """Run phase 1 and phase 2 for every (or one) repository.

        Args:
            only: Restrict the cycle to one ``owner/name`` repository.
            scheduled: Timer-driven call; an overlapping tick is skipped
                instead of raising.

        Returns:
            The cycle report, or None when a scheduled tick was skipped.

        Raises:
            CycleInProgressError: A manual call overlapped a running cycle.
            SyncError: ``only`` names a repository that is not configured.
        """
        if self._cycle_lock.locked():
            if scheduled:
                logger.info("[SYNC] Previous cycle still running, skipping this tick")
                return None
            raise CycleInProgressError("A sync cycle is already in progress")

        async with self._cycle_lock:
            repositories = self._select_repositories(only)
            report = CycleReport(started_at=datetime.now().astimezone())
            self._fetch_comments = True
            logger.info(f"[SYNC] Starting sync cycle for {len(repositories)} repositories")

            boards = await self._provision(repositories, report)
            await self._reconcile(repositories, boards, report)

            report.finished_at = datetime.now().astimezone()
            self.last_report = report
            logger.info(
                f"[SYNC] Cycle finished: {report.total('created')} created, "
                f"{report.total('updated')} updated, {report.total('unchanged')} unchanged, "
                f"{report.total('errors')} errors"
            )
            return report

    def _select_repositories(self, only: str | None) -> list[RepositoryConfig]:
        if only is None:
            return list(self.config.repositories)
        repository = self.config.repository(only)
        if repository is None:
            raise SyncError(f"Repository {only} is not configured")
        return [repository]

    async def _provision(
        self,
        repositories: list[RepositoryConfig],
        report: CycleReport,
    ) -> dict[str, tuple[str, dict[str, str]]]:
        """Phase 1: board and lists for every repository.

        Returns:
            full name -> (board ID, list map) for the repositories that
            provisioned successfully.
        """
        logger.info(f"[PHASE 1] Ensuring boards and lists for {len(repositories)} repositories")
        boards: dict[str, tuple[str, dict[str, str]]] = {}

        for repository in repositories:
            try:
                board_id = await self.provisioner.ensure_board(repository)
                list_map = await self.provisioner.ensure_lists(board_id, repository)
            except Exception as e:
                logger.error(
                    f"[PHASE 1] Failed to provision board for {repository.full_name}: {e}",
                    exc_info=not isinstance(e, SyncError),
                )
                report.repositories.append(RepositoryReport(repository=repository.full_name, error=str(e)))
                continue
            boards[repository.full_name] = (board_id, list_map)

        logger.info(f"[PHASE 1] {len(boards)}/{len(repositories)} boards ready")
        return boards

    async def _reconcile(
        self,
        repositories: list[RepositoryConfig],
        boards: dict[str, tuple[str, dict[str, str]]],
        report: CycleReport,
    ) -> None:
        """Phase 2: issues to cards, repository by repository."""
        for repository in repositories:
            if repository.full_name not in boards:
                continue

            if report.rate_limited:
                report.repositories.append(RepositoryReport(repository=repository.full_name, skipped=True))
                continue

            board_id, list_map = boards[repository.full_name]
            repo_report = RepositoryReport(repository=repository.full_name)
            report.repositories.append(repo_report)

            try:
                await self.sync_repository(repository, board_id, list_map, repo_report)
            except RateLimitError as e:
                repo_report.error = str(e)
                if e.service != "github":
                    logger.error(f"[PHASE 2] Kanbn rate limit while syncing {repository.full_name}: {e}")
                    continue
                report.rate_limited = True
                report.rate_limit_reset = e.reset_at
                logger.error(f"[PHASE 2] {e} Skipping remaining repositories this cycle.")
            except Exception as e:
                repo_report.error = str(e)
                logger.error(
                    f"[PHASE 2] Failed to sync {repository.full_name}: {e}", exc_info=not isinstance(e, SyncError)
                )

    async def sync_repository(
        self,
        repository: RepositoryConfig,
        board_id: str,
        list_map: dict[str, str],
        repo_report: RepositoryReport,
    ) -> None:
        """Mirror one repository's issues onto its board.

        Raises:
            RateLimitError: GitHub throttled a request.
            SyncError: The board snapshot or the issue listing failed.
        """
        logger.info(f"[PHASE 2] Syncing issues for {repository.full_name}")

        snapshot = await self.kanbn.get_board(board_id)
        card_index = CardIndex.build(snapshot.cards, repository.url)
        resolution = await card_index.resolve_duplicates(self.kanbn, repository.full_name)
        repo_report.duplicates_removed = len(resolution.deleted)
        self.label_manager.load_board_labels(board_id, snapshot.labels)

        listing = await self.github.fetch_issue_listing(repository.owner, repository.name)
        issues = listing.issues
        pull_requests, pr_fetch_failed = await self._fetch_pull_requests(repository)
        # Without the PR listing, the PR entries of the issue listing are the only references left
        references = [pr for pr in listing.pull_requests if pr.state == "open"] if pr_fetch_failed else []
        logger.info(f"[PHASE 2] {len(issues)} issues, {len(card_index)} matched cards in {repository.full_name}")

        delay = self.config.sync.issue_delay_seconds
        for position, issue in enumerate(issues):
            if position and delay:
                await asyncio.sleep(delay)

            existed = issue.number in card_index
            try:
                pull_request, pr_lookup_failed = await self._linked_pull_request(
                    repository, issue, pull_requests, references
                )
                comment_count = await self._comment_count(repository, issue)
                wrote = await self.reconciler.sync_issue_card(
                    issue,
                    repository,
                    board_id,
                    list_map,
                    card_index,
                    pull_request=pull_request,
                    pr_lookup_failed=pr_lookup_failed,
                    comment_count=comment_count,
                )
            except RateLimitError as e:
                if e.service == "github":
                    raise
                repo_report.errors += 1
                logger.error(f"[CARD] Rate limited syncing issue #{issue.number} in {repository.full_name}: {e}")
                await asyncio.sleep(RATE_LIMIT_PAUSE)
                continue
            except Exception as e:
                repo_report.errors += 1
                logger.error(
                    f"[CARD] Failed to sync issue #{issue.number} in {repository.full_name}: {e}",
                    exc_info=not isinstance(e, SyncError),
                )
                continue

            if not wrote:
                repo_report.unchanged += 1
            elif existed:
                repo_report.updated += 1
            else:
                repo_report.created += 1

        logger.info(
            f"[PHASE 2] {repository.full_name}: {repo_report.created} created, {repo_report.updated} updated, "
            f"{repo_report.unchanged} unchanged, {repo_report.errors} errors"
        )

    async def _fetch_pull_requests(self, repository: RepositoryConfig) -> tuple[list[GitHubPullRequest], bool]:
        """Open PRs of the repository, used to route linked issues.

        Returns:
            (pull requests, whether the listing failed)
        """
        try:
            return await self.github.fetch_pull_requests(repository.owner, repository.name), False
        except RateLimitError:
            raise
        except SyncError as e:
            logger.warning(f"[PHASE 2] Could not fetch pull requests for {repository.full_name}: {e}")
            return [], True

    async def _linked_pull_request(
        self,
        repository: RepositoryConfig,
        issue: GitHubIssue,
        pull_requests: list[GitHubPullRequest],
        references: list[GitHubPullRequest],
    ) -> tuple[GitHubPullRequest | None, bool]:
        """Find the open PR that references an issue.

        ``references`` is only non-empty when the PR listing failed; each
        referencing entry is then fetched on its own.

        Returns:
            (linked pull request, whether a referencing PR could not be fetched)
        """
        if issue.is_closed:
            return None, False
        matches = find_prs_for_issue(pull_requests, issue.number)
        if matches:
            return matches[0], False

        referencing = find_prs_for_issue(references, issue.number)
        for reference in referencing:
            try:
                return await self.github.fetch_pull_request(repository.owner, repository.name, reference.number), False
            except RateLimitError:
                raise
            except SyncError as e:
                logger.warning(f"[CARD] Could not fetch PR #{reference.number} linked to #{issue.number}: {e}")
        return None, bool(referencing)

    async def _comment_count(self, repository: RepositoryConfig, issue: GitHubIssue) -> int | None:
        if not self.config.sync.include_comment_count:
            return None
        if not self._fetch_comments:
            return issue.comments
        try:
            comments = await self.github.fetch_comments(repository.owner, repository.name, issue.number)
        except RateLimitError as e:
            self._fetch_comments = False
            logger.warning(f"[CARD] {e} Using listed comment counts for the rest of this cycle.")
            return issue.comments
        except SyncError as e:
            # The listing already carries a count, use it rather than failing the card
            logger.debug(f"[CARD] Falling back to listed comment count for #{issue.number}: {e}")
            return issue.comments
        return len(comments)
