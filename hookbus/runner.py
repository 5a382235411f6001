"""Entry point: bootstrap stores, router, webhook engine, replay coordinator; run a command."""

import argparse
import asyncio
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from hookbus.events import EventRouter, EventStore
from hookbus.logging_config import setup_logging
from hookbus.replay import ReplayCoordinator
from hookbus.settings import get_setting, load_settings
from hookbus.webhooks import (
    BackoffPolicy,
    EndpointNotFoundError,
    EndpointStore,
    WebhookDeliveryEngine,
)

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


@dataclass
class Components:
    event_store: EventStore
    endpoint_store: EndpointStore
    router: EventRouter
    engine: WebhookDeliveryEngine
    replay: ReplayCoordinator

    async def close(self) -> None:
        await self.event_store.close()
        await self.endpoint_store.close()


def build_components(settings: dict[str, Any], project_root: Path = _PROJECT_ROOT) -> Components:
    """Wire every component from settings. Nothing is opened until first use."""
    db_path = project_root / get_setting(settings, "storage.db_path", "data/hookbus.db")
    busy_timeout = get_setting(settings, "storage.busy_timeout", 5000)
    router_cfg = settings.get("router", {})
    replay_cfg = settings.get("replay", {})
    webhooks_cfg = settings.get("webhooks", {})

    backoff = BackoffPolicy.from_settings(webhooks_cfg)
    event_store = EventStore(db_path, busy_timeout=busy_timeout)
    endpoint_store = EndpointStore(db_path, busy_timeout=busy_timeout)
    router = EventRouter(
        event_store,
        poll_interval=router_cfg.get("poll_interval", 1.0),
        batch_size=router_cfg.get("batch_size", 20),
        handler_timeout=router_cfg.get("handler_timeout", 30.0),
        max_concurrent_events=router_cfg.get("max_concurrent_events", 8),
    )
    engine = WebhookDeliveryEngine(
        endpoint_store,
        timeout=webhooks_cfg.get("timeout", 10.0),
        fail_event_on_delivery_error=webhooks_cfg.get("fail_event_on_delivery_error", True),
        header_prefix=webhooks_cfg.get("header_prefix", "X-Hookbus"),
        backoff=backoff,
    )
    engine.attach(router, webhooks_cfg.get("subscribe_pattern", "*"))
    replay = ReplayCoordinator(
        router,
        engine,
        backoff=backoff,
        max_retries=replay_cfg.get("max_retries", 3),
        batch_size=replay_cfg.get("batch_size", 100),
        stale_timeout=replay_cfg.get("stale_timeout", 300),
    )
    return Components(event_store, endpoint_store, router, engine, replay)


async def _run_forever(c: Components) -> None:
    await c.router.start()
    try:
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        pass
    finally:
        await c.router.stop()


async def _command(c: Components, args: argparse.Namespace) -> int:
    if args.command == "run":
        await _run_forever(c)
    elif args.command == "replay":
        report = await c.replay.replay_failed()
        print(report.model_dump_json(indent=2))
    elif args.command == "stats":
        print((await c.router.get_statistics()).model_dump_json(indent=2))
    elif args.command == "history":
        events = await c.router.get_event_history(
            event_type=args.type, event_source=args.source, status=args.status, limit=args.limit
        )
        for e in events:
            line = f"{e.id}  {e.status.value:<10}  {e.event_type:<28}  {e.event_source}"
            if e.retry_count:
                line += f"  retries={e.retry_count}"
            if e.error_message:
                line += f"  error={e.error_message}"
            print(line)
    elif args.command == "endpoint-register":
        ep = await c.engine.register_endpoint(
            args.tenant, args.name, args.url, args.patterns, secret=args.secret
        )
        print(f"{ep.id}  secret={ep.secret}")
    elif args.command == "endpoint-test":
        attempt = await c.engine.test_endpoint(args.endpoint_id)
        print(f"{attempt.status.value}  http={attempt.http_status}  error={attempt.error}")
        return 0 if attempt.delivered else 1
    elif args.command == "endpoint-reset":
        await c.engine.reset_endpoint(args.endpoint_id)
    elif args.command == "endpoint-list":
        for ep in await c.engine.list_endpoints(args.tenant):
            state = "enabled" if ep.enabled else "disabled"
            print(
                f"{ep.id}  {ep.name:<20}  {state:<8}  failures={ep.failure_count}  "
                f"{ep.url}  {','.join(ep.event_types)}"
            )
    elif args.command == "endpoint-log":
        for a in await c.engine.get_delivery_log(args.endpoint_id, limit=args.limit):
            print(
                f"{a.id}  {a.status.value:<9}  #{a.attempt_number}  {a.event_type:<24}  "
                f"http={a.http_status}  error={a.error}"
            )
    return 0


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hookbus", description="Event bus and webhook delivery")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run the router and webhook delivery until interrupted")
    sub.add_parser("replay", help="Run one replay pass (for an external scheduler)")
    sub.add_parser("stats", help="Event counts by status")

    history = sub.add_parser("history", help="Recent events, newest first")
    history.add_argument("--type")
    history.add_argument("--source")
    history.add_argument("--status", choices=["pending", "processing", "completed", "failed"])
    history.add_argument("--limit", type=int, default=50)

    register = sub.add_parser("endpoint-register", help="Register a webhook endpoint")
    register.add_argument("tenant")
    register.add_argument("name")
    register.add_argument("url")
    register.add_argument("patterns", nargs="+")
    register.add_argument("--secret")

    for name, help_text in (
        ("endpoint-test", "Send a signed webhook.test delivery"),
        ("endpoint-reset", "Reset an endpoint's failure count"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("endpoint_id")

    listing = sub.add_parser("endpoint-list", help="List a tenant's endpoints")
    listing.add_argument("tenant")

    log = sub.add_parser("endpoint-log", help="Delivery attempts, newest first")
    log.add_argument("endpoint_id")
    log.add_argument("--limit", type=int, default=100)
    return parser


async def main_async(argv: list[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    settings = load_settings()
    setup_logging(_PROJECT_ROOT, settings, force_console=args.command == "run")
    components = build_components(settings)
    try:
        return await _command(components, args)
    except (EndpointNotFoundError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    finally:
        await components.close()


def main() -> None:
    """Synchronous entry for `python -m hookbus`."""
    load_dotenv(_PROJECT_ROOT / ".env")
    try:
        code = asyncio.run(main_async())
    except KeyboardInterrupt:
        code = 0  # run: router already stopped via CancelledError
    sys.exit(code)


__all__ = ["Components", "build_components", "main", "main_async"]
