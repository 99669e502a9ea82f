"""
mintsaga — Command Line

Usage:
    # Print the authoritative snapshot for a holder
    python -m lifecycle.cli items --holder 0xabc...

    # Run the eligibility check for one item (no signature requested)
    python -m lifecycle.cli verify --holder 0xabc... --item 42

    # Follow the push channel and print every applied snapshot and notice
    python -m lifecycle.cli watch --holder 0xabc...

    # Serve the HTTP view
    python -m lifecycle.cli serve --port 8080
"""

import argparse
import json
import sys
import time

from gateway.config import load_settings
from gateway.logging import configure_logging
from gateway.realtime import ITEM_UPDATE
from lifecycle.errors import LifecycleError
from lifecycle.runtime import Runtime, build_runtime
from lifecycle.types import ItemStatus


_STATUS_MARKERS = {
    ItemStatus.COLLECTING: " ",
    ItemStatus.ELIGIBLE: "◐",
    ItemStatus.CONVERTIBLE: "◑",
    ItemStatus.CONVERTED: "●",
    ItemStatus.RECLAIMABLE: "↺",
}


def cmd_items(args, runtime: Runtime):
    """Print the holder's items as the backend reports them."""
    coord = runtime.coordinator
    coord.set_holder(args.holder)
    try:
        coord.refresh()
    except LifecycleError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    views = coord.views()
    if args.json:
        print(json.dumps([v.to_dict() for v in views], indent=2))
        return

    print(f"\nItems for {args.holder} ({len(views)})")
    print(f"{'─' * 60}")
    for v in views:
        item = v.item
        marker = _STATUS_MARKERS.get(item.status, "?")
        ref = f"  #{item.ledger_ref}" if item.ledger_ref else ""
        print(f"  {marker} {item.id:>6}  {item.collected_units:>3}/{item.total_units:<3}  {item.status.value}{ref}")
    print()


def cmd_verify(args, runtime: Runtime):
    """Run the local allowance check and the backend verification for one item."""
    print(f"\n{'═' * 60}", file=sys.stderr)
    print(f"  VERIFY: item {args.item}", file=sys.stderr)
    print(f"  holder: {args.holder}", file=sys.stderr)
    print(f"{'═' * 60}", file=sys.stderr, flush=True)

    try:
        result = runtime.verifier.verify(args.item, args.holder)
    except LifecycleError as e:
        print(f"\n  ✗ UNAVAILABLE: {e}", file=sys.stderr)
        sys.exit(1)

    mark = "✓ ELIGIBLE" if result.eligible else "✗ INELIGIBLE"
    print(f"\n  {mark}: {result.message}", file=sys.stderr)
    if result.conversion_params:
        print(json.dumps(result.conversion_params, indent=2, default=str))
    if not result.eligible:
        sys.exit(2)


def cmd_watch(args, runtime: Runtime):
    """Follow pushes until interrupted."""
    coord = runtime.coordinator

    def show_snapshot(data):
        count = len(data.get("items") or data.get("nfts") or []) if isinstance(data, dict) else 0
        print(f"  ← ItemUpdate ({count} items)", file=sys.stderr, flush=True)

    runtime.channel.subscribe(ITEM_UPDATE, show_snapshot)
    runtime.channel.add_state_listener(
        lambda state, retries, delay_ms: print(
            f"  ~ channel {state.value} (retry={retries})", file=sys.stderr, flush=True,
        )
    )

    print(f"\n{'═' * 60}", file=sys.stderr)
    print(f"  WATCHING: {args.holder}", file=sys.stderr)
    print(f"  channel:  {runtime.settings.channel.url}", file=sys.stderr)
    print(f"{'═' * 60}\n", file=sys.stderr, flush=True)

    runtime.start(holder=args.holder)
    try:
        coord.refresh()
    except LifecycleError as e:
        print(f"  initial query failed: {e}", file=sys.stderr)

    try:
        while True:
            for notice in coord.drain_notices():
                print(f"  [{notice.level.value:7s}] item {notice.item_id}: {notice.message}", flush=True)
            time.sleep(args.interval)
    except KeyboardInterrupt:
        print("\n  stopped", file=sys.stderr)


def cmd_serve(args, runtime: Runtime):
    """Serve the HTTP view with uvicorn."""
    import uvicorn
    from api.server import create_app

    runtime.start(holder=args.holder)
    uvicorn.run(create_app(runtime), host=args.host, port=args.port, log_level="warning")


def main():
    parser = argparse.ArgumentParser(
        description="mintsaga — item conversion lifecycle",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", default=None, help="Base config YAML (default: mintsaga.yaml)")
    parser.add_argument("--env", default="", help="Config overlay profile (dev, staging, prod)")
    parser.add_argument("--log-level", default=None, help="Override logging.level")

    subs = parser.add_subparsers(dest="command", help="Command")

    items_p = subs.add_parser("items", help="Print the holder's authoritative snapshot")
    items_p.add_argument("--holder", required=True)
    items_p.add_argument("--json", action="store_true", help="Print JSON instead of a table")

    verify_p = subs.add_parser("verify", help="Check one item's conversion eligibility")
    verify_p.add_argument("--holder", required=True)
    verify_p.add_argument("--item", required=True)

    watch_p = subs.add_parser("watch", help="Follow the push channel")
    watch_p.add_argument("--holder", required=True)
    watch_p.add_argument("--interval", type=float, default=1.0, help="Notice print interval (s)")

    serve_p = subs.add_parser("serve", help="Run the HTTP API")
    serve_p.add_argument("--host", default="127.0.0.1")
    serve_p.add_argument("--port", type=int, default=8080)
    serve_p.add_argument("--holder", default=None, help="Holder to track from startup")

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    settings = load_settings(args.config, env=args.env)
    configure_logging(args.log_level or settings.log_level, json_lines=args.command == "serve")
    runtime = build_runtime(settings)

    try:
        if args.command == "items":
            cmd_items(args, runtime)
        elif args.command == "verify":
            cmd_verify(args, runtime)
        elif args.command == "watch":
            cmd_watch(args, runtime)
        elif args.command == "serve":
            cmd_serve(args, runtime)
    finally:
        runtime.close()


if __name__ == "__main__":
    main()
