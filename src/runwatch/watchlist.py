from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Iterator, MutableMapping, Optional, Union

import yaml

from .models import WatchedWorkflow


class WatchlistValidationError(ValueError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


_ALLOWED_TOP_LEVEL_KEYS = {"version", "workflows"}
_ALLOWED_WORKFLOW_KEYS = {"repository", "workflow_id", "name"}


def parse_watchlist(text: str) -> list[WatchedWorkflow]:
    """
    Parse a watch list:

        workflows:
          - repository: octocat/hello
            workflow_id: 42
            name: CI
    """

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise WatchlistValidationError("invalid_yaml") from exc

    if data is None:
        return []
    if not isinstance(data, dict):
        raise WatchlistValidationError("invalid_yaml_root")

    unknown_top = set(data.keys()) - _ALLOWED_TOP_LEVEL_KEYS
    if unknown_top:
        raise WatchlistValidationError(f"unknown_top_level_keys: {sorted(unknown_top)}")

    items = data.get("workflows") or []
    if not isinstance(items, list):
        raise WatchlistValidationError("invalid_workflows")

    out: list[WatchedWorkflow] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise WatchlistValidationError(f"invalid_workflow_entry: {index}")
        unknown = set(item.keys()) - _ALLOWED_WORKFLOW_KEYS
        if unknown:
            raise WatchlistValidationError(f"unknown_workflow_keys: {index}: {sorted(unknown)}")
        repository = item.get("repository")
        if not isinstance(repository, str) or not repository.strip():
            raise WatchlistValidationError(f"missing_repository: {index}")
        workflow_id = item.get("workflow_id")
        if isinstance(workflow_id, bool) or not isinstance(workflow_id, int):
            raise WatchlistValidationError(f"invalid_workflow_id: {index}")
        name = item.get("name") or ""
        if not isinstance(name, str):
            raise WatchlistValidationError(f"invalid_name: {index}")
        try:
            workflow = WatchedWorkflow(repository.strip(), workflow_id, name)
        except ValueError as exc:
            raise WatchlistValidationError(f"invalid_repository: {index}") from exc
        if workflow not in out:
            out.append(workflow)
    return out


def load_watchlist(path: Union[str, Path]) -> list[WatchedWorkflow]:
    p = Path(path).expanduser()
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as exc:
        raise WatchlistValidationError(f"unreadable_watchlist: {p}") from exc
    return parse_watchlist(text)


class JsonFileRegistry(MutableMapping[str, int]):
    """
    Webhook registry (repository full name -> hook id) persisted as JSON,
    together with the provisioned relay channel URL.

    Every mutation is written through with an atomic replace.
    """

    def __init__(self, path: Union[str, Path]):
        self._path = Path(path).expanduser()
        self._hooks: Dict[str, int] = {}
        self._channel_url: Optional[str] = None
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def channel_url(self) -> Optional[str]:
        return self._channel_url

    @channel_url.setter
    def channel_url(self, value: Optional[str]) -> None:
        self._channel_url = value
        self._save()

    def _load(self) -> None:
        if not self._path.is_file():
            return
        try:
            data: Any = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return
        if not isinstance(data, dict):
            return
        hooks = data.get("hooks")
        if isinstance(hooks, dict):
            self._hooks = {
                str(k): int(v) for k, v in hooks.items() if isinstance(v, int) and not isinstance(v, bool)
            }
        channel = data.get("channel_url")
        self._channel_url = channel if isinstance(channel, str) and channel else None

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(
            json.dumps({"channel_url": self._channel_url, "hooks": self._hooks}, ensure_ascii=True, indent=2),
            encoding="utf-8",
        )
        os.replace(tmp, self._path)

    def __getitem__(self, key: str) -> int:
        return self._hooks[key]

    def __setitem__(self, key: str, value: int) -> None:
        self._hooks[key] = int(value)
        self._save()

    def __delitem__(self, key: str) -> None:
        del self._hooks[key]
        self._save()

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._hooks))

    def __len__(self) -> int:
        return len(self._hooks)

    def clear(self) -> None:
        self._hooks = {}
        self._save()
