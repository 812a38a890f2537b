from __future__ import annotations

from dataclasses import dataclass
import enum
import logging
from typing import Any, Dict, Optional

from .models import RunConclusion, RunSnapshot

_COMPLETED_TITLES = {
    RunConclusion.SUCCESS: "Workflow Succeeded",
    RunConclusion.FAILURE: "Workflow Failed",
    RunConclusion.CANCELLED: "Workflow Cancelled",
    RunConclusion.TIMED_OUT: "Workflow Timed Out",
    RunConclusion.ACTION_REQUIRED: "Action Required",
}


class NotificationKind(str, enum.Enum):
    STARTED = "started"
    COMPLETED = "completed"


@dataclass(frozen=True)
class NotificationIntent:
    kind: NotificationKind
    run: RunSnapshot
    workflow_name: str
    repository_full_name: str

    @property
    def title(self) -> str:
        if self.kind is NotificationKind.STARTED:
            return "Workflow Started"
        return _COMPLETED_TITLES.get(self.run.conclusion, "Workflow Completed")

    @property
    def body(self) -> str:
        branch = self.run.head_branch or "unknown"
        return f"{self.workflow_name} in {self.repository_full_name} - #{self.run.run_number} ({branch})"

    @property
    def url(self) -> str:
        return self.run.html_url

    @property
    def identifier(self) -> str:
        # Stable per run and kind so a desktop notifier can replace, not stack.
        return f"run-{self.kind.value}-{self.run.id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identifier": self.identifier,
            "kind": self.kind.value,
            "title": self.title,
            "body": self.body,
            "url": self.url,
            "run_id": self.run.id,
            "workflow_id": self.run.workflow_id,
            "repo": self.repository_full_name,
        }


class LoggingNotifier:
    """Delivers notification intents as log records (headless front end)."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._logger = logger or logging.getLogger("runwatch.notifications")

    def __call__(self, intent: NotificationIntent) -> None:
        self._logger.info(
            f"{intent.title}: {intent.body}",
            extra={
                "kind": intent.kind.value,
                "run_id": intent.run.id,
                "workflow_id": intent.run.workflow_id,
                "repo": intent.repository_full_name,
                "url": intent.url,
            },
        )
