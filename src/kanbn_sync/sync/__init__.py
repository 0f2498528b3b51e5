"""GitHub issue to Kanbn board synchronization module."""

from kanbn_sync.sync.card_index import CardIndex
from kanbn_sync.sync.card_reconciler import CardReconciler
from kanbn_sync.sync.errors import (
    APIError,
    ClientError,
    ConfigurationError,
    CycleInProgressError,
    NotFoundError,
    RateLimitError,
    ServerError,
    SyncError,
)
from kanbn_sync.sync.github_client import GitHubClient
from kanbn_sync.sync.kanbn_client import KanbnClient
from kanbn_sync.sync.label_manager import LabelManager
from kanbn_sync.sync.list_router import determine_list
from kanbn_sync.sync.orchestrator import CycleReport, RepositoryReport, SyncOrchestrator
from kanbn_sync.sync.provisioner import BoardProvisioner
from kanbn_sync.sync.remote import RateLimitedClient

__all__ = [
    "APIError",
    "BoardProvisioner",
    "CardIndex",
    "CardReconciler",
    "ClientError",
    "ConfigurationError",
    "CycleInProgressError",
    "CycleReport",
    "GitHubClient",
    "KanbnClient",
    "LabelManager",
    "NotFoundError",
    "RateLimitError",
    "RateLimitedClient",
    "RepositoryReport",
    "ServerError",
    "SyncError",
    "SyncOrchestrator",
    "determine_list",
]
