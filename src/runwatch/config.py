from __future__ import annotations

from dataclasses import dataclass, replace
import os
from pathlib import Path
import re
from typing import Any, Optional


_DOTENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

MIN_POLL_INTERVAL_SEC = 10.0
MIN_ACTIVE_POLL_INTERVAL_SEC = 5.0


def _parse_dotenv_line(line: str) -> tuple[str, str] | None:
    raw = str(line).strip()
    if not raw or raw.startswith("#"):
        return None
    if raw.startswith("export "):
        raw = raw[7:].strip()
    if "=" not in raw:
        return None
    key, value = raw.split("=", 1)
    key = key.strip()
    if not _DOTENV_KEY_RE.fullmatch(key):
        return None
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        quote = value[0]
        body = value[1:-1]
        if quote == '"':
            try:
                body = bytes(body, encoding="utf-8").decode("unicode_escape")
            except UnicodeDecodeError:
                pass
        return key, body
    # Inline comments only count when preceded by whitespace.
    if " #" in value:
        value = value.split(" #", 1)[0].strip()
    return key, value


def _read_dotenv_values() -> dict[str, str]:
    raw_enabled = str(os.environ.get("RUNWATCH_LOAD_DOTENV", "1")).strip().lower()
    if raw_enabled in {"0", "false", "no", "off"}:
        return {}

    env_file = str(os.environ.get("RUNWATCH_ENV_FILE", ".env")).strip()
    if not env_file:
        return {}

    path = Path(env_file).expanduser()
    if not path.is_absolute():
        path = Path.cwd() / path
    if not path.is_file():
        return {}

    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        return {}

    out: dict[str, str] = {}
    for line in text.splitlines():
        parsed = _parse_dotenv_line(line)
        if parsed is None:
            continue
        key, value = parsed
        out[key] = value
    return out


@dataclass(frozen=True)
class RunWatchConfig:
    """
    Settings for the run synchronization engine.

    Every component reads these through a settings provider on each relevant
    operation, so a new instance (e.g. from `with_overrides`) takes effect on
    the next poll / batch without restarting anything.
    """

    # GitHub REST API
    api_base_url: str = "https://api.github.com"
    github_token: Optional[str] = None
    http_timeout_sec: float = 30.0

    # Polling
    poll_interval_sec: float = 30.0
    active_poll_interval_sec: float = 10.0
    runs_per_workflow: int = 5
    polling_enabled: bool = True

    # Notifications (state tracking continues when disabled)
    notifications_enabled: bool = True

    # Webhook relay (smee.io style SSE channel)
    webhooks_enabled: bool = False
    relay_channel_url: Optional[str] = None
    relay_new_url: str = "https://smee.io/new"
    # Idle keep-alive on the relay is well below this; a dead stream is noticed within minutes.
    relay_read_timeout_sec: float = 300.0
    relay_backoff_initial_sec: float = 1.0
    relay_backoff_max_sec: float = 60.0
    # Delay before the full poll that follows a pushed event.
    followup_poll_delay_sec: float = 3.0

    # Local files used by the command line front end.
    watchlist_path: str = "runwatch.yaml"
    registry_path: str = ".runwatch/registry.json"

    def with_overrides(self, **overrides: Any) -> "RunWatchConfig":
        return replace(self, **overrides)

    @property
    def effective_poll_interval_sec(self) -> float:
        return max(float(self.poll_interval_sec), MIN_POLL_INTERVAL_SEC)

    @property
    def effective_active_poll_interval_sec(self) -> float:
        return max(float(self.active_poll_interval_sec), MIN_ACTIVE_POLL_INTERVAL_SEC)

    @classmethod
    def from_env(cls) -> "RunWatchConfig":
        """
        Load config from RUNWATCH_* env vars (and an optional .env file).

        Process env wins over the .env file. Values that fail to parse fall
        back to the dataclass default instead of raising.
        """

        dotenv_values = _read_dotenv_values()

        def _env_raw(name: str, default: Optional[str] = None) -> Optional[str]:
            raw = os.environ.get(name)
            if raw is None or raw == "":
                raw = dotenv_values.get(name)
            if raw is None or raw == "":
                return default
            return raw

        def _env_float(name: str, default: float) -> float:
            raw = _env_raw(name)
            if raw is None:
                return default
            try:
                return float(raw)
            except ValueError:
                return default

        def _env_bool(name: str, default: bool) -> bool:
            raw = _env_raw(name)
            if raw is None:
                return default
            v = raw.strip().lower()
            if v in {"1", "true", "yes", "on"}:
                return True
            if v in {"0", "false", "no", "off"}:
                return False
            return default

        def _env_int(name: str, default: int) -> int:
            raw = _env_raw(name)
            if raw is None:
                return default
            try:
                return int(raw)
            except ValueError:
                return default

        token = _env_raw("RUNWATCH_GITHUB_TOKEN") or _env_raw("GITHUB_TOKEN")
        channel_url = _env_raw("RUNWATCH_RELAY_CHANNEL_URL")

        return cls(
            api_base_url=_env_raw("RUNWATCH_API_BASE_URL", cls.api_base_url) or cls.api_base_url,
            github_token=(token.strip() if token is not None and token.strip() != "" else None),
            http_timeout_sec=_env_float("RUNWATCH_HTTP_TIMEOUT_SEC", cls.http_timeout_sec),
            poll_interval_sec=_env_float("RUNWATCH_POLL_INTERVAL_SEC", cls.poll_interval_sec),
            active_poll_interval_sec=_env_float(
                "RUNWATCH_ACTIVE_POLL_INTERVAL_SEC", cls.active_poll_interval_sec
            ),
            runs_per_workflow=_env_int("RUNWATCH_RUNS_PER_WORKFLOW", cls.runs_per_workflow),
            polling_enabled=_env_bool("RUNWATCH_POLLING_ENABLED", cls.polling_enabled),
            notifications_enabled=_env_bool("RUNWATCH_NOTIFICATIONS_ENABLED", cls.notifications_enabled),
            webhooks_enabled=_env_bool("RUNWATCH_WEBHOOKS_ENABLED", cls.webhooks_enabled),
            relay_channel_url=(
                channel_url.strip() if channel_url is not None and channel_url.strip() != "" else None
            ),
            relay_new_url=_env_raw("RUNWATCH_RELAY_NEW_URL", cls.relay_new_url) or cls.relay_new_url,
            relay_read_timeout_sec=_env_float("RUNWATCH_RELAY_READ_TIMEOUT_SEC", cls.relay_read_timeout_sec),
            relay_backoff_initial_sec=_env_float(
                "RUNWATCH_RELAY_BACKOFF_INITIAL_SEC", cls.relay_backoff_initial_sec
            ),
            relay_backoff_max_sec=_env_float("RUNWATCH_RELAY_BACKOFF_MAX_SEC", cls.relay_backoff_max_sec),
            followup_poll_delay_sec=_env_float(
                "RUNWATCH_FOLLOWUP_POLL_DELAY_SEC", cls.followup_poll_delay_sec
            ),
            watchlist_path=_env_raw("RUNWATCH_WATCHLIST", cls.watchlist_path) or cls.watchlist_path,
            registry_path=_env_raw("RUNWATCH_REGISTRY", cls.registry_path) or cls.registry_path,
        )
