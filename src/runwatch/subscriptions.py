from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Iterable, MutableMapping, Optional

from .github_api import RunApi
from .models import WatchedWorkflow

logger = logging.getLogger("runwatch.subscriptions")


@dataclass(frozen=True)
class SyncResult:
    created: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class SubscriptionManager:
    """
    Keeps one repository webhook per watched repository, pointed at the relay
    channel.

    The registry (repository full name -> hook id) belongs to the caller; it is
    only touched while holding this manager's lock, so concurrent `sync` /
    `disable_all` calls never interleave.
    """

    def __init__(self, api: RunApi, *, max_concurrency: int = 4):
        self._api = api
        self._lock = asyncio.Lock()
        self._max_concurrency = max(1, int(max_concurrency))

    async def sync(
        self,
        watched: Iterable[WatchedWorkflow],
        channel_url: str,
        registry: MutableMapping[str, int],
    ) -> SyncResult:
        async with self._lock:
            wanted = {wf.repository_full_name for wf in watched}

            stale = {repo: registry[repo] for repo in list(registry.keys()) if repo not in wanted}
            for repo in stale:
                # The hook may already be gone; drop the entry whatever happens remotely.
                del registry[repo]
            deleted = await self._delete_many(stale)

            missing = sorted(repo for repo in wanted if repo not in registry)
            semaphore = asyncio.Semaphore(self._max_concurrency)
            results = await asyncio.gather(
                *(self._create(repo, channel_url, semaphore) for repo in missing)
            )

            created: list[str] = []
            failed: list[str] = []
            for repo, hook_id in zip(missing, results):
                if hook_id is None:
                    failed.append(repo)
                    continue
                registry[repo] = hook_id
                created.append(repo)

            logger.info(
                "subscriptions synced",
                extra={"reason": f"created={len(created)} deleted={len(deleted)} failed={len(failed)}"},
            )
            return SyncResult(created=created, deleted=deleted, failed=failed)

    async def disable_all(self, registry: MutableMapping[str, int]) -> list[str]:
        async with self._lock:
            entries = dict(registry)
            deleted = await self._delete_many(entries)
            registry.clear()
            logger.info("subscriptions disabled", extra={"reason": f"deleted={len(deleted)}"})
            return deleted

    async def _delete_many(self, entries: dict[str, int]) -> list[str]:
        if not entries:
            return []
        semaphore = asyncio.Semaphore(self._max_concurrency)
        repos = list(entries.keys())
        outcomes = await asyncio.gather(
            *(self._delete(repo, entries[repo], semaphore) for repo in repos)
        )
        return [repo for repo, ok in zip(repos, outcomes) if ok]

    async def _create(self, repo: str, channel_url: str, semaphore: asyncio.Semaphore) -> Optional[int]:
        async with semaphore:
            try:
                hook_id = await self._api.create_subscription(repo, channel_url)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # Usually missing admin rights on the repository; skip it.
                logger.warning(
                    "webhook creation skipped",
                    extra={
                        "err_id": "ERR-RUNWATCH-0006",
                        "msg_id": "MSG-RUNWATCH-0006",
                        "repo": repo,
                        "reason": f"{type(exc).__name__}: {exc}",
                    },
                )
                return None
        logger.info("webhook created", extra={"repo": repo})
        return hook_id

    async def _delete(self, repo: str, hook_id: int, semaphore: asyncio.Semaphore) -> bool:
        async with semaphore:
            try:
                await self._api.delete_subscription(repo, hook_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(
                    "webhook deletion failed",
                    extra={
                        "err_id": "ERR-RUNWATCH-0007",
                        "msg_id": "MSG-RUNWATCH-0007",
                        "repo": repo,
                        "reason": f"{type(exc).__name__}: {exc}",
                    },
                )
                return False
        logger.info("webhook deleted", extra={"repo": repo})
        return True
