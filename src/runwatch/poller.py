from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from .config import MIN_ACTIVE_POLL_INTERVAL_SEC, MIN_POLL_INTERVAL_SEC
from .github_api import RunApi
from .models import RunSnapshot, WatchedWorkflow

logger = logging.getLogger("runwatch.poller")

RunsHandler = Callable[[int, list[RunSnapshot]], Union[None, Awaitable[None]]]
SleepFn = Callable[[float], Awaitable[Any]]


class PollingScheduler:
    """
    Periodically fetches the latest runs of every watched workflow.

    The sleep between polls is the active interval while the last batch saw
    any non-completed run, else the base interval.
    """

    def __init__(
        self,
        api: RunApi,
        *,
        on_runs_updated: Optional[RunsHandler] = None,
        interval_sec: float = 30.0,
        active_interval_sec: float = 10.0,
        runs_per_workflow: int = 5,
        sleep: SleepFn = asyncio.sleep,
    ):
        self._api = api
        self._on_runs_updated = on_runs_updated
        self._base_interval = max(float(interval_sec), MIN_POLL_INTERVAL_SEC)
        self._active_interval = max(float(active_interval_sec), MIN_ACTIVE_POLL_INTERVAL_SEC)
        self._runs_per_workflow = max(1, int(runs_per_workflow))
        self._sleep = sleep
        self._task: Optional[asyncio.Task[None]] = None
        self._has_active_runs = False

    @property
    def base_interval(self) -> float:
        return self._base_interval

    @property
    def active_interval(self) -> float:
        return self._active_interval

    @property
    def has_active_runs(self) -> bool:
        return self._has_active_runs

    @property
    def effective_interval(self) -> float:
        return self._active_interval if self._has_active_runs else self._base_interval

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def set_interval(self, seconds: float) -> None:
        self._base_interval = max(float(seconds), MIN_POLL_INTERVAL_SEC)

    def set_active_interval(self, seconds: float) -> None:
        self._active_interval = max(float(seconds), MIN_ACTIVE_POLL_INTERVAL_SEC)

    async def start(self, workflows: Sequence[WatchedWorkflow]) -> None:
        await self.stop()
        snapshot = list(workflows)
        if not snapshot:
            return
        self._task = asyncio.create_task(self._poll_loop(snapshot))

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def poll_once(self, workflows: Sequence[WatchedWorkflow]) -> None:
        await self._poll_all(list(workflows))

    async def _poll_loop(self, workflows: list[WatchedWorkflow]) -> None:
        await self._poll_all(workflows)
        while True:
            await self._sleep(self.effective_interval)
            await self._poll_all(workflows)

    async def _poll_all(self, workflows: list[WatchedWorkflow]) -> None:
        if not workflows:
            return
        results = await asyncio.gather(*(self._fetch(wf) for wf in workflows))

        succeeded = [(wf, runs) for wf, runs in zip(workflows, results) if runs is not None]
        any_active = any(run.is_active for _, runs in succeeded for run in runs)
        self._has_active_runs = any_active
        for workflow, runs in succeeded:
            await self._deliver(workflow, runs)
        logger.debug(
            "poll batch complete",
            extra={"reason": f"workflows={len(workflows)} active={any_active}"},
        )

    async def _fetch(self, workflow: WatchedWorkflow) -> Optional[list[RunSnapshot]]:
        try:
            return await self._api.list_runs(
                workflow.repository_full_name,
                workflow.workflow_id,
                self._runs_per_workflow,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Network, rate limit and decode failures all count as "no active runs".
            logger.warning(
                "poll failed",
                extra={
                    "err_id": "ERR-RUNWATCH-0001",
                    "msg_id": "MSG-RUNWATCH-0001",
                    "workflow_id": workflow.workflow_id,
                    "repo": workflow.repository_full_name,
                    "reason": f"{type(exc).__name__}: {exc}",
                },
            )
            return None

    async def _deliver(self, workflow: WatchedWorkflow, runs: list[RunSnapshot]) -> None:
        if self._on_runs_updated is None:
            return
        try:
            result = self._on_runs_updated(workflow.workflow_id, runs)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "runs handler failed",
                extra={
                    "err_id": "ERR-RUNWATCH-0002",
                    "msg_id": "MSG-RUNWATCH-0002",
                    "workflow_id": workflow.workflow_id,
                },
            )
