from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence, Union

from .config import RunWatchConfig
from .models import STARTED_STATUSES, RunSnapshot, RunStatus, WatchedWorkflow, WebhookEvent
from .notifications import NotificationIntent, NotificationKind

logger = logging.getLogger("runwatch.reconcile")

SettingsProvider = Callable[[], RunWatchConfig]
NotificationHandler = Callable[[NotificationIntent], Union[None, Awaitable[None]]]
FollowupPoll = Callable[[WatchedWorkflow], Awaitable[None]]
SleepFn = Callable[[float], Awaitable[Any]]


def transition_kind(previous: Optional[RunStatus], current: RunStatus) -> Optional[NotificationKind]:
    """
    Decide whether moving from `previous` to `current` is worth a notification.

    `previous` is None when the run id was never observed before.
    """

    if current in STARTED_STATUSES:
        if previous is None or previous not in STARTED_STATUSES:
            return NotificationKind.STARTED
        return None
    if current is RunStatus.COMPLETED:
        if previous is not None and previous is not RunStatus.COMPLETED:
            return NotificationKind.COMPLETED
    return None


def merge_run(runs: Sequence[RunSnapshot], run: RunSnapshot) -> list[RunSnapshot]:
    """Replace the run with the same id in place, or put it first when new."""

    merged = list(runs)
    for i, existing in enumerate(merged):
        if existing.id == run.id:
            merged[i] = run
            return merged
    merged.insert(0, run)
    return merged


class RunReconciler:
    """
    Single writer for the current run lists and the previous-status table.

    Both the poller and the relay feed observations in here; batches for the
    same workflow are serialized by a per-workflow lock while different
    workflows reconcile independently.
    """

    def __init__(
        self,
        *,
        settings: SettingsProvider = RunWatchConfig,
        on_notification: Optional[NotificationHandler] = None,
        followup_poll: Optional[FollowupPoll] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self._settings = settings
        self._on_notification = on_notification
        self._followup_poll = followup_poll
        self._sleep = sleep
        self._watched: dict[int, WatchedWorkflow] = {}
        self._runs: dict[int, list[RunSnapshot]] = {}
        self._previous: dict[int, RunStatus] = {}
        self._locks: dict[int, asyncio.Lock] = {}
        self._followups: dict[int, asyncio.Task[None]] = {}

    @property
    def watched(self) -> list[WatchedWorkflow]:
        return list(self._watched.values())

    def set_watched(self, workflows: Iterable[WatchedWorkflow]) -> None:
        self._watched = {wf.workflow_id: wf for wf in workflows}
        for workflow_id in list(self._runs.keys()):
            if workflow_id not in self._watched:
                del self._runs[workflow_id]
        for workflow_id in list(self._followups.keys()):
            if workflow_id not in self._watched:
                self._followups.pop(workflow_id).cancel()

    def runs_for(self, workflow_id: int) -> list[RunSnapshot]:
        return list(self._runs.get(workflow_id) or [])

    def current_runs(self) -> dict[int, list[RunSnapshot]]:
        return {wid: list(runs) for wid, runs in self._runs.items()}

    def previous_status(self, run_id: int) -> Optional[RunStatus]:
        return self._previous.get(run_id)

    def has_pending_followup(self, workflow_id: int) -> bool:
        task = self._followups.get(workflow_id)
        return task is not None and not task.done()

    def _lock_for(self, workflow_id: int) -> asyncio.Lock:
        lock = self._locks.get(workflow_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[workflow_id] = lock
        return lock

    async def handle_runs(self, workflow_id: int, runs: Sequence[RunSnapshot]) -> list[NotificationIntent]:
        async with self._lock_for(workflow_id):
            intents = self._reconcile(workflow_id, list(runs))
        await self._emit(intents)
        return intents

    async def handle_webhook_event(self, event: WebhookEvent) -> list[NotificationIntent]:
        watched = self._find_watched(event.repository_full_name, event.run.workflow_id)
        if watched is None:
            logger.debug(
                "webhook event for unwatched workflow",
                extra={"workflow_id": event.run.workflow_id, "repo": event.repository_full_name},
            )
            return []

        workflow_id = watched.workflow_id
        async with self._lock_for(workflow_id):
            merged = merge_run(self._runs.get(workflow_id) or [], event.run)
            intents = self._reconcile(workflow_id, merged)
        await self._emit(intents)
        self._schedule_followup(watched)
        return intents

    def _find_watched(self, repository_full_name: str, workflow_id: int) -> Optional[WatchedWorkflow]:
        watched = self._watched.get(workflow_id)
        if watched is None:
            return None
        if watched.repository_full_name.casefold() != repository_full_name.casefold():
            return None
        return watched

    def _reconcile(self, workflow_id: int, runs: list[RunSnapshot]) -> list[NotificationIntent]:
        previous_runs = self._runs.get(workflow_id)
        self._runs[workflow_id] = runs

        if not previous_runs:
            # Baseline: seed prior state without a burst of "started" alerts on first load.
            for run in runs:
                self._previous[run.id] = run.status
            return []

        notify = bool(self._settings().notifications_enabled)
        watched = self._watched.get(workflow_id)
        workflow_name = watched.display_name if watched is not None else "Workflow"
        repo_name = watched.repository_full_name if watched is not None else ""

        intents: list[NotificationIntent] = []
        for run in runs:
            kind = transition_kind(self._previous.get(run.id), run.status)
            if kind is not None and notify:
                intents.append(
                    NotificationIntent(
                        kind=kind,
                        run=run,
                        workflow_name=workflow_name,
                        repository_full_name=repo_name,
                    )
                )
            self._previous[run.id] = run.status
        return intents

    async def _emit(self, intents: list[NotificationIntent]) -> None:
        if self._on_notification is None:
            return
        for intent in intents:
            try:
                result = self._on_notification(intent)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "notification delivery failed",
                    extra={
                        "err_id": "ERR-RUNWATCH-0003",
                        "msg_id": "MSG-RUNWATCH-0003",
                        "run_id": intent.run.id,
                        "kind": intent.kind.value,
                    },
                )

    def _schedule_followup(self, watched: WatchedWorkflow) -> None:
        poll = self._followup_poll
        if poll is None:
            return
        existing = self._followups.pop(watched.workflow_id, None)
        if existing is not None:
            existing.cancel()
        delay = float(self._settings().followup_poll_delay_sec)
        self._followups[watched.workflow_id] = asyncio.create_task(self._run_followup(watched, delay, poll))

    async def _run_followup(self, watched: WatchedWorkflow, delay: float, poll: FollowupPoll) -> None:
        try:
            await self._sleep(delay)
            await poll(watched)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "follow-up poll failed",
                extra={
                    "err_id": "ERR-RUNWATCH-0008",
                    "msg_id": "MSG-RUNWATCH-0008",
                    "workflow_id": watched.workflow_id,
                },
            )
        finally:
            current = asyncio.current_task()
            if self._followups.get(watched.workflow_id) is current:
                del self._followups[watched.workflow_id]

    async def cancel_followups(self) -> None:
        tasks = list(self._followups.values())
        self._followups.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def close(self) -> None:
        await self.cancel_followups()
