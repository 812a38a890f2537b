from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, MutableMapping, Optional

import httpx

from .config import RunWatchConfig
from .github_api import RunApi
from .models import ConnectionState, RunSnapshot, WatchedWorkflow
from .poller import PollingScheduler
from .reconcile import NotificationHandler, RunReconciler, SettingsProvider
from .relay import ChannelProvisioningError, RelayClient, StateHandler, create_channel
from .subscriptions import SubscriptionManager, SyncResult

logger = logging.getLogger("runwatch.service")

ChannelFactory = Callable[[], Awaitable[str]]
SleepFn = Callable[[float], Awaitable[Any]]


class RunWatchService:
    """
    Owns the watched set and wires poller, relay, webhook manager and
    reconciler together.

    Settings are read through `settings()` whenever polling is (re)started,
    webhooks are toggled or a batch is reconciled.
    """

    def __init__(
        self,
        api: RunApi,
        *,
        settings: SettingsProvider = RunWatchConfig,
        registry: Optional[MutableMapping[str, int]] = None,
        channel_url: Optional[str] = None,
        on_channel_created: Optional[Callable[[str], None]] = None,
        on_notification: Optional[NotificationHandler] = None,
        on_connection_state_changed: Optional[StateHandler] = None,
        channel_factory: Optional[ChannelFactory] = None,
        relay_transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self._api = api
        self._settings = settings
        self._registry: MutableMapping[str, int] = registry if registry is not None else {}
        self._on_channel_created = on_channel_created
        self._on_connection_state_changed = on_connection_state_changed
        self._channel_factory = channel_factory or self._provision_channel
        self._sleep = sleep
        self._watched: list[WatchedWorkflow] = []
        self._refresh_tasks: set[asyncio.Task[None]] = set()
        self._webhooks_active = False
        self.last_error: Optional[str] = None

        cfg = settings()
        self._channel_url = channel_url or cfg.relay_channel_url
        self._reconciler = RunReconciler(
            settings=settings,
            on_notification=on_notification,
            followup_poll=self._followup_poll,
            sleep=sleep,
        )
        self._poller = PollingScheduler(
            api,
            on_runs_updated=self._reconciler.handle_runs,
            interval_sec=cfg.poll_interval_sec,
            active_interval_sec=cfg.active_poll_interval_sec,
            runs_per_workflow=cfg.runs_per_workflow,
            sleep=sleep,
        )
        self._relay = RelayClient(
            on_event=self._reconciler.handle_webhook_event,
            on_state_changed=self._relay_state_changed,
            read_timeout_sec=cfg.relay_read_timeout_sec,
            backoff_initial_sec=cfg.relay_backoff_initial_sec,
            backoff_max_sec=cfg.relay_backoff_max_sec,
            transport=relay_transport,
            sleep=sleep,
        )
        self._subscriptions = SubscriptionManager(api)

    @property
    def watched(self) -> list[WatchedWorkflow]:
        return list(self._watched)

    @property
    def poller(self) -> PollingScheduler:
        return self._poller

    @property
    def reconciler(self) -> RunReconciler:
        return self._reconciler

    @property
    def channel_url(self) -> Optional[str]:
        return self._channel_url

    @property
    def connection_state(self) -> ConnectionState:
        return self._relay.state

    @property
    def webhooks_active(self) -> bool:
        return self._webhooks_active

    def runs_for(self, workflow_id: int) -> list[RunSnapshot]:
        return self._reconciler.runs_for(workflow_id)

    async def start(self, workflows: Iterable[WatchedWorkflow] = ()) -> None:
        self._set_watched(workflows)
        await self.restart_polling()
        if self._settings().webhooks_enabled:
            await self.enable_webhooks()

    async def watch(self, workflow: WatchedWorkflow) -> bool:
        if workflow in self._watched:
            return False
        self._set_watched([*self._watched, workflow])
        await self._watched_changed()
        return True

    async def unwatch(self, workflow: WatchedWorkflow) -> bool:
        if workflow not in self._watched:
            return False
        self._set_watched([wf for wf in self._watched if wf != workflow])
        await self._watched_changed()
        return True

    def _set_watched(self, workflows: Iterable[WatchedWorkflow]) -> None:
        unique: list[WatchedWorkflow] = []
        for wf in workflows:
            if wf not in unique:
                unique.append(wf)
        self._watched = unique
        self._reconciler.set_watched(unique)

    async def _watched_changed(self) -> None:
        await self.restart_polling()
        if self._webhooks_active:
            await self.sync_subscriptions()

    async def restart_polling(self) -> None:
        cfg = self._settings()
        self._poller.set_interval(cfg.poll_interval_sec)
        self._poller.set_active_interval(cfg.active_poll_interval_sec)
        if not cfg.polling_enabled or not self._watched:
            await self._poller.stop()
            return
        await self._poller.start(self._watched)

    async def refresh_now(self) -> None:
        await self._poller.poll_once(self._watched)

    def schedule_refresh(self, delay_sec: float = 3.0) -> asyncio.Task[None]:
        """Refresh shortly after a workflow dispatch so the new run shows up."""

        task = asyncio.create_task(self._delayed_refresh(float(delay_sec)))
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_tasks.discard)
        return task

    async def _delayed_refresh(self, delay_sec: float) -> None:
        await self._sleep(delay_sec)
        await self.refresh_now()

    async def _followup_poll(self, workflow: WatchedWorkflow) -> None:
        logger.debug("follow-up poll after webhook event", extra={"workflow_id": workflow.workflow_id})
        await self.refresh_now()

    async def _provision_channel(self) -> str:
        cfg = self._settings()
        return await create_channel(cfg.relay_new_url, timeout_sec=cfg.http_timeout_sec)

    async def enable_webhooks(self) -> bool:
        if self._channel_url is None:
            try:
                channel = await self._channel_factory()
            except ChannelProvisioningError as exc:
                # Surfaced once; the user retries explicitly.
                self.last_error = str(exc)
                logger.error(
                    "relay channel provisioning failed",
                    extra={"err_id": "ERR-RUNWATCH-0010", "msg_id": "MSG-RUNWATCH-0010", "reason": str(exc)},
                )
                return False
            self._channel_url = channel
            logger.info("relay channel provisioned", extra={"reason": channel})
            if self._on_channel_created is not None:
                self._on_channel_created(channel)

        self.last_error = None
        self._webhooks_active = True
        await self._relay.start(self._channel_url)
        await self.sync_subscriptions()
        return True

    async def disable_webhooks(self) -> list[str]:
        self._webhooks_active = False
        await self._relay.stop()
        # Follow-ups belong to pushed events; none may poll after this returns.
        await self._reconciler.cancel_followups()
        return await self._subscriptions.disable_all(self._registry)

    async def sync_subscriptions(self) -> Optional[SyncResult]:
        if self._channel_url is None:
            return None
        return await self._subscriptions.sync(self._watched, self._channel_url, self._registry)

    async def sign_out(self) -> None:
        await self._poller.stop()
        if self._webhooks_active:
            await self.disable_webhooks()
        self._set_watched([])

    async def close(self) -> None:
        await self._poller.stop()
        await self._relay.stop()
        await self._reconciler.close()
        tasks = list(self._refresh_tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _relay_state_changed(self, state: ConnectionState) -> None:
        if self._on_connection_state_changed is not None:
            self._on_connection_state_changed(state)
