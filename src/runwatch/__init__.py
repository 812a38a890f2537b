from .config import RunWatchConfig
from .github_api import GitHubApiError, GitHubRunClient
from .logging_config import configure_logging
from .models import ConnectionState, RunConclusion, RunSnapshot, RunStatus, WatchedWorkflow, WebhookEvent, WorkflowInfo, WorkflowState
from .notifications import LoggingNotifier, NotificationIntent, NotificationKind
from .poller import PollingScheduler
from .reconcile import RunReconciler
from .relay import RelayClient, create_channel, parse_webhook_event
from .service import RunWatchService
from .subscriptions import SubscriptionManager
from .watchlist import JsonFileRegistry, load_watchlist

__all__ = [
    "RunWatchConfig",
    "GitHubApiError",
    "GitHubRunClient",
    "configure_logging",
    "ConnectionState",
    "RunConclusion",
    "RunSnapshot",
    "RunStatus",
    "WatchedWorkflow",
    "WebhookEvent",
    "WorkflowInfo",
    "WorkflowState",
    "LoggingNotifier",
    "NotificationIntent",
    "NotificationKind",
    "PollingScheduler",
    "RunReconciler",
    "RelayClient",
    "create_channel",
    "parse_webhook_event",
    "RunWatchService",
    "SubscriptionManager",
    "JsonFileRegistry",
    "load_watchlist",
]
