from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import enum
from typing import Any, Dict, Optional


class RunDecodeError(ValueError):
    """A workflow_run object is missing fields or carries unusable values."""


class RunStatus(str, enum.Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    WAITING = "waiting"
    PENDING = "pending"
    REQUESTED = "requested"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value: object) -> "RunStatus":
        # GitHub adds values without notice; never fail on them.
        return cls.UNKNOWN


class RunConclusion(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"
    ACTION_REQUIRED = "action_required"
    NEUTRAL = "neutral"
    STALE = "stale"
    STARTUP_FAILURE = "startup_failure"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value: object) -> "RunConclusion":
        return cls.UNKNOWN


# Anything not yet completed; drives the fast poll interval.
ACTIVE_STATUSES = frozenset(
    {
        RunStatus.QUEUED,
        RunStatus.IN_PROGRESS,
        RunStatus.WAITING,
        RunStatus.PENDING,
        RunStatus.REQUESTED,
    }
)
# Statuses that count as "running" for the started notification.
STARTED_STATUSES = frozenset({RunStatus.QUEUED, RunStatus.IN_PROGRESS})


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def _parse_timestamp(raw: Any, *, name: str) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if not isinstance(raw, str):
        raise RunDecodeError(f"invalid_{name}")
    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        value = datetime.fromisoformat(text)
    except ValueError as exc:
        raise RunDecodeError(f"invalid_{name}") from exc
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _require_int(data: Dict[str, Any], key: str) -> int:
    raw = data.get(key)
    if isinstance(raw, bool) or raw is None:
        raise RunDecodeError(f"missing_{key}")
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise RunDecodeError(f"invalid_{key}") from exc


def _require_str(data: Dict[str, Any], key: str) -> str:
    raw = data.get(key)
    if not isinstance(raw, str):
        raise RunDecodeError(f"missing_{key}")
    return raw


@dataclass(frozen=True)
class WatchedWorkflow:
    """
    A (repository, workflow id) pair the user opted to track.

    Identity is the pair only; the display name does not take part in
    equality or hashing.
    """

    repository_full_name: str
    workflow_id: int
    workflow_name: str = field(default="", compare=False)

    def __post_init__(self) -> None:
        full_name = str(self.repository_full_name).strip()
        owner, sep, repo = full_name.partition("/")
        if not sep or not owner or not repo or "/" in repo:
            raise ValueError(f"invalid repository full name: {self.repository_full_name!r}")
        object.__setattr__(self, "repository_full_name", full_name)
        object.__setattr__(self, "workflow_id", int(self.workflow_id))

    @property
    def key(self) -> str:
        return f"{self.repository_full_name}/{self.workflow_id}"

    @property
    def owner(self) -> str:
        return self.repository_full_name.split("/", 1)[0]

    @property
    def repo(self) -> str:
        return self.repository_full_name.split("/", 1)[1]

    @property
    def display_name(self) -> str:
        return self.workflow_name or "Workflow"


@dataclass(frozen=True)
class RunSnapshot:
    id: int
    name: str
    status: RunStatus
    workflow_id: int
    run_number: int
    event: str
    html_url: str
    head_branch: Optional[str] = None
    conclusion: Optional[RunConclusion] = None
    updated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    head_sha: str = ""
    run_attempt: Optional[int] = None

    def __post_init__(self) -> None:
        # A conclusion only means something once the run has completed.
        if self.status is not RunStatus.COMPLETED and self.conclusion is not None:
            object.__setattr__(self, "conclusion", None)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_completed(self) -> bool:
        return self.status is RunStatus.COMPLETED

    @classmethod
    def from_api(cls, data: Any) -> "RunSnapshot":
        """Decode one `workflow_run` object from the GitHub REST/webhook payload."""

        if not isinstance(data, dict):
            raise RunDecodeError("invalid_workflow_run")

        raw_status = data.get("status")
        if raw_status is None:
            raise RunDecodeError("missing_status")
        status = RunStatus(str(raw_status))

        raw_conclusion = data.get("conclusion")
        conclusion = None if raw_conclusion is None else RunConclusion(str(raw_conclusion))

        head_branch = data.get("head_branch")
        run_attempt = data.get("run_attempt")
        return cls(
            id=_require_int(data, "id"),
            name=_require_str(data, "name"),
            status=status,
            conclusion=conclusion,
            workflow_id=_require_int(data, "workflow_id"),
            run_number=_require_int(data, "run_number"),
            event=_require_str(data, "event"),
            html_url=_require_str(data, "html_url"),
            head_branch=head_branch if isinstance(head_branch, str) else None,
            head_sha=str(data.get("head_sha") or ""),
            updated_at=_parse_timestamp(data.get("updated_at"), name="updated_at"),
            created_at=_parse_timestamp(data.get("created_at"), name="created_at"),
            run_attempt=int(run_attempt) if isinstance(run_attempt, int) else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "head_branch": self.head_branch,
            "head_sha": self.head_sha,
            "status": self.status.value,
            "conclusion": self.conclusion.value if self.conclusion is not None else None,
            "workflow_id": self.workflow_id,
            "html_url": self.html_url,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "run_number": self.run_number,
            "run_attempt": self.run_attempt,
            "event": self.event,
        }


@dataclass(frozen=True)
class WebhookEvent:
    action: str
    run: RunSnapshot
    repository_full_name: str


class WorkflowState(str, enum.Enum):
    ACTIVE = "active"
    DISABLED_MANUALLY = "disabled_manually"
    DISABLED_INACTIVITY = "disabled_inactivity"
    DELETION_IN_PROGRESS = "deletion_in_progress"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value: object) -> "WorkflowState":
        return cls.UNKNOWN


@dataclass(frozen=True)
class WorkflowInfo:
    """A workflow definition of a repository, as listed by the Actions API."""

    id: int
    name: str
    path: str
    state: WorkflowState
    html_url: str

    @classmethod
    def from_api(cls, data: Any) -> "WorkflowInfo":
        if not isinstance(data, dict):
            raise RunDecodeError("invalid_workflow")
        return cls(
            id=_require_int(data, "id"),
            name=_require_str(data, "name"),
            path=_require_str(data, "path"),
            state=WorkflowState(str(data.get("state") or "unknown")),
            html_url=str(data.get("html_url") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "state": self.state.value,
            "html_url": self.html_url,
        }
