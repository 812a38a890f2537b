from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Optional

from .config import RunWatchConfig
from .github_api import GitHubApiError, GitHubRunClient
from .logging_config import configure_logging
from .models import ConnectionState, RunSnapshot, WatchedWorkflow
from .notifications import LoggingNotifier
from .relay import ChannelProvisioningError, create_channel
from .service import RunWatchService
from .watchlist import JsonFileRegistry, WatchlistValidationError, load_watchlist

_ERR_ID = "ERR-RUNWATCH-0018"
_ERR_MSG = "invalid command line arguments (check the input format)"

logger = logging.getLogger("runwatch.cli")


class _CliInputError(ValueError):
    pass


class _RunwatchArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        usage = self.format_usage().strip()
        raise _CliInputError(
            f"{_ERR_ID}: {_ERR_MSG}\n"
            f"- reason: {message}\n"
            f"- usage: {usage}\n"
            "- hint: runwatch <subcommand> -h"
        )


def _build_parser() -> argparse.ArgumentParser:
    p = _RunwatchArgumentParser(prog="runwatch")
    p.add_argument("--api-base-url", default=None, help="Override RUNWATCH_API_BASE_URL")
    sub = p.add_subparsers(dest="command", required=True, parser_class=_RunwatchArgumentParser)

    w = sub.add_parser("watch", help="Watch workflows and log notifications")
    w.add_argument("--watchlist", default=None, help="YAML watch list (default: RUNWATCH_WATCHLIST)")
    w.add_argument("--registry", default=None, help="webhook registry JSON (default: RUNWATCH_REGISTRY)")
    w.add_argument("--interval", type=float, default=None, help="base poll interval (sec, >=10)")
    w.add_argument("--active-interval", type=float, default=None, help="poll interval while runs are active (sec, >=5)")
    w.add_argument("--webhooks", dest="webhooks", action="store_true", default=None)
    w.add_argument("--no-webhooks", dest="webhooks", action="store_false", default=None)
    w.add_argument("--no-notifications", dest="notifications", action="store_false", default=None)
    w.add_argument("--once", action="store_true", help="poll once, print runs as JSON lines and exit")

    r = sub.add_parser("runs", help="List recent runs of one workflow")
    r.add_argument("--repo", required=True, help="owner/name")
    r.add_argument("--workflow-id", type=int, required=True)
    r.add_argument("--limit", type=int, default=10)
    r.add_argument("--output", choices=["json", "table"], default="json")

    wl = sub.add_parser("workflows", help="List the workflows of a repository")
    wl.add_argument("--repo", required=True, help="owner/name")
    wl.add_argument("--output", choices=["json", "table"], default="json")

    d = sub.add_parser("dispatch", help="Trigger a workflow_dispatch run, then show the latest runs")
    d.add_argument("--repo", required=True, help="owner/name")
    d.add_argument("--workflow-id", type=int, required=True)
    d.add_argument("--ref", required=True, help="branch or tag to run on")
    d.add_argument("--input", action="append", default=[], help="workflow input as key=value (repeatable)")
    d.add_argument("--refresh-delay", type=float, default=3.0, help="seconds to wait before fetching runs")

    c = sub.add_parser("channel", help="Provision a new relay channel and print its URL")
    c.add_argument("--new-url", default=None, help="Override RUNWATCH_RELAY_NEW_URL")
    return p


def _print_json(obj: Any) -> None:
    sys.stdout.write(json.dumps(obj, ensure_ascii=True) + "\n")
    sys.stdout.flush()


def _print_table(headers: list[str], rows: list[list[str]]) -> None:
    if not rows:
        sys.stdout.write("(no items)\n")
        sys.stdout.flush()
        return
    widths = [len(h) for h in headers]
    for row in rows:
        for idx, cell in enumerate(row):
            widths[idx] = max(widths[idx], len(cell))

    def _line(cells: list[str]) -> str:
        return "  ".join(cells[idx].ljust(widths[idx]) for idx in range(len(headers)))

    sys.stdout.write(_line(headers) + "\n")
    for row in rows:
        sys.stdout.write(_line(row) + "\n")
    sys.stdout.flush()


def _run_rows(runs: list[RunSnapshot]) -> list[list[str]]:
    return [
        [
            str(run.id),
            f"#{run.run_number}",
            run.status.value,
            run.conclusion.value if run.conclusion is not None else "-",
            run.head_branch or "-",
            run.updated_at.isoformat() if run.updated_at else "-",
        ]
        for run in runs
    ]


def _config_from_args(args: argparse.Namespace) -> RunWatchConfig:
    cfg = RunWatchConfig.from_env()
    overrides: dict[str, Any] = {}
    if args.api_base_url:
        overrides["api_base_url"] = str(args.api_base_url)
    if getattr(args, "interval", None) is not None:
        overrides["poll_interval_sec"] = float(args.interval)
    if getattr(args, "active_interval", None) is not None:
        overrides["active_poll_interval_sec"] = float(args.active_interval)
    if getattr(args, "webhooks", None) is not None:
        overrides["webhooks_enabled"] = bool(args.webhooks)
    if getattr(args, "notifications", None) is not None:
        overrides["notifications_enabled"] = bool(args.notifications)
    if getattr(args, "watchlist", None):
        overrides["watchlist_path"] = str(args.watchlist)
    if getattr(args, "registry", None):
        overrides["registry_path"] = str(args.registry)
    if getattr(args, "new_url", None):
        overrides["relay_new_url"] = str(args.new_url)
    if overrides:
        cfg = cfg.with_overrides(**overrides)
    return cfg


def _make_api(cfg: RunWatchConfig) -> GitHubRunClient:
    return GitHubRunClient.from_config(cfg)


async def _cmd_runs(args: argparse.Namespace, cfg: RunWatchConfig) -> int:
    api = _make_api(cfg)
    try:
        runs = await api.list_runs(str(args.repo), int(args.workflow_id), int(args.limit))
    finally:
        await api.close()
    if args.output == "table":
        _print_table(["id", "number", "status", "conclusion", "branch", "updated_at"], _run_rows(runs))
    else:
        for run in runs:
            _print_json(run.to_dict())
    return 0


async def _cmd_workflows(args: argparse.Namespace, cfg: RunWatchConfig) -> int:
    api = _make_api(cfg)
    try:
        workflows = await api.list_workflows(str(args.repo))
    finally:
        await api.close()
    if args.output == "table":
        rows = [[str(wf.id), wf.name, wf.state.value, wf.path] for wf in workflows]
        _print_table(["id", "name", "state", "path"], rows)
    else:
        for wf in workflows:
            _print_json(wf.to_dict())
    return 0


def _parse_inputs(items: list[str]) -> dict[str, str]:
    out: dict[str, str] = {}
    for item in items:
        key, sep, value = str(item).partition("=")
        key = key.strip()
        if not sep or not key:
            raise _CliInputError(
                f"{_ERR_ID}: {_ERR_MSG}\n"
                f"- reason: invalid --input {item!r}\n"
                "- hint: use --input key=value"
            )
        out[key] = value
    return out


async def _cmd_dispatch(args: argparse.Namespace, cfg: RunWatchConfig) -> int:
    inputs = _parse_inputs(list(args.input))
    workflow = WatchedWorkflow(str(args.repo), int(args.workflow_id))
    api = _make_api(cfg)
    # Only the one-shot refresh below may poll.
    service_cfg = cfg.with_overrides(polling_enabled=False, webhooks_enabled=False)
    service = RunWatchService(api, settings=lambda: service_cfg)
    try:
        await api.dispatch_workflow(workflow.repository_full_name, workflow.workflow_id, str(args.ref), inputs)
        logger.info(
            "workflow dispatched",
            extra={"repo": workflow.repository_full_name, "workflow_id": workflow.workflow_id},
        )
        await service.start([workflow])
        await service.schedule_refresh(float(args.refresh_delay))
        for run in service.runs_for(workflow.workflow_id):
            _print_json(run.to_dict())
        return 0
    finally:
        await service.close()
        await api.close()


async def _cmd_channel(cfg: RunWatchConfig) -> int:
    url = await create_channel(cfg.relay_new_url, timeout_sec=cfg.http_timeout_sec)
    sys.stdout.write(url + "\n")
    sys.stdout.flush()
    return 0


def _log_connection_state(state: ConnectionState) -> None:
    logger.info("relay connection state", extra={"state": state.value})


async def _cmd_watch(args: argparse.Namespace, cfg: RunWatchConfig) -> int:
    workflows = load_watchlist(cfg.watchlist_path)
    if not workflows:
        raise _CliInputError(
            f"{_ERR_ID}: {_ERR_MSG}\n"
            f"- reason: watch list is empty ({cfg.watchlist_path})\n"
            "- hint: add entries under `workflows:`"
        )

    registry = JsonFileRegistry(cfg.registry_path)

    def _remember_channel(url: str) -> None:
        registry.channel_url = url

    api = _make_api(cfg)
    service = RunWatchService(
        api,
        settings=lambda: cfg,
        registry=registry,
        channel_url=registry.channel_url,
        on_channel_created=_remember_channel,
        on_notification=LoggingNotifier(),
        on_connection_state_changed=_log_connection_state,
    )
    try:
        if args.once:
            service.reconciler.set_watched(workflows)
            await service.poller.poll_once(workflows)
            for wf in workflows:
                for run in service.runs_for(wf.workflow_id):
                    _print_json({"workflow": wf.key, **run.to_dict()})
            return 0

        await service.start(workflows)
        if cfg.webhooks_enabled and service.last_error:
            logger.warning("webhooks unavailable; polling only", extra={"reason": service.last_error})
        # Runs until cancelled (Ctrl-C).
        await asyncio.Event().wait()
        return 0
    finally:
        await service.close()
        await api.close()


async def _run(args: argparse.Namespace) -> int:
    configure_logging(service="runwatch:cli")
    cfg = _config_from_args(args)
    if args.command == "runs":
        return await _cmd_runs(args, cfg)
    if args.command == "workflows":
        return await _cmd_workflows(args, cfg)
    if args.command == "dispatch":
        return await _cmd_dispatch(args, cfg)
    if args.command == "channel":
        return await _cmd_channel(cfg)
    if args.command == "watch":
        return await _cmd_watch(args, cfg)
    raise _CliInputError(f"{_ERR_ID}: {_ERR_MSG}\n- reason: unknown command {args.command!r}")


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    try:
        args = parser.parse_args(argv)
    except _CliInputError as exc:
        sys.stderr.write(f"{exc}\n")
        return 1
    try:
        return asyncio.run(_run(args))
    except _CliInputError as exc:
        sys.stderr.write(f"{exc}\n")
        return 1
    except WatchlistValidationError as exc:
        sys.stderr.write(
            f"{_ERR_ID}: invalid watch list\n"
            f"- reason: {exc.reason}\n"
            "- hint: workflows: [{repository: owner/name, workflow_id: 123, name: CI}]\n"
        )
        return 1
    except ValueError as exc:
        sys.stderr.write(f"{_ERR_ID}: {_ERR_MSG}\n- reason: {exc}\n")
        return 1
    except GitHubApiError as exc:
        sys.stderr.write(
            "ERR-RUNWATCH-HTTP: GitHub request failed\n"
            f"- reason: {exc} ({exc.code})\n"
            "- hint: check RUNWATCH_GITHUB_TOKEN and repository access\n"
        )
        return 1
    except ChannelProvisioningError as exc:
        sys.stderr.write(
            "ERR-RUNWATCH-0010: relay channel provisioning failed\n"
            f"- reason: {exc}\n"
            "- hint: check network access to the relay (RUNWATCH_RELAY_NEW_URL)\n"
        )
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
