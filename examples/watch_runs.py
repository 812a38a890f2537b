import argparse
import asyncio

from runwatch import (
    GitHubRunClient,
    LoggingNotifier,
    RunWatchConfig,
    RunWatchService,
    configure_logging,
    load_watchlist,
)


async def main() -> None:
    p = argparse.ArgumentParser()
    p.add_argument("--watchlist", default="examples/runwatch.yaml")
    p.add_argument("--webhooks", action="store_true", help="also listen on a relay channel")
    args = p.parse_args()

    configure_logging(service="runwatch:example")
    cfg = RunWatchConfig.from_env().with_overrides(webhooks_enabled=args.webhooks)
    api = GitHubRunClient.from_config(cfg)
    service = RunWatchService(api, settings=lambda: cfg, on_notification=LoggingNotifier())
    try:
        await service.start(load_watchlist(args.watchlist))
        while True:
            await asyncio.sleep(60)
            for wf in service.watched:
                latest = service.runs_for(wf.workflow_id)[:1]
                if latest:
                    print(f"{wf.key}: #{latest[0].run_number} {latest[0].status.value}")
    finally:
        await service.close()
        await api.close()


if __name__ == "__main__":
    asyncio.run(main())
