#!/usr/bin/env python3
"""
CLI tool for operating a running sync bridge.

Usage:
    python -m syncbridge.cli status
    python -m syncbridge.cli dead-letters --entity-type device
    python -m syncbridge.cli dead-letters evt-123
    python -m syncbridge.cli replay evt-123
    python -m syncbridge.cli purge evt-123
    python -m syncbridge.cli resync tenant
    python -m syncbridge.cli classify GET /api/device/abc
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

import httpx
from colorama import Fore, Style, init as colorama_init


STATE_COLORS = {
    "healthy": Fore.GREEN,
    "degraded": Fore.RED,
    "Acknowledged": Fore.GREEN,
    "DeadLettered": Fore.RED,
    "read": Fore.CYAN,
    "write": Fore.YELLOW,
    "pass_through": Fore.MAGENTA,
}


def colorize(text: str, color: str) -> str:
    return f"{color}{text}{Style.RESET_ALL}"


def print_json(data: Any, indent: int = 2) -> None:
    print(json.dumps(data, indent=indent, default=str))


def print_error(response: httpx.Response) -> int:
    print(colorize(f"Error: {response.status_code}", Fore.RED), file=sys.stderr)
    print(response.text, file=sys.stderr)
    return 1


async def _request(args, method: str, path: str, **kwargs) -> httpx.Response:
    async with httpx.AsyncClient(base_url=args.base_url, timeout=args.timeout) as client:
        return await client.request(method, path, **kwargs)


def print_dead_letter(record: dict, verbose: bool = False) -> None:
    print(
        f"{colorize(record['event_id'], Style.BRIGHT)}  "
        f"{record['entity_type']}/{record['entity_id']} {record['operation']}  "
        f"{colorize('[' + record['error_class'] + ']', Fore.RED)} "
        f"attempts={record['attempts']} replays={record['replay_count']}"
    )
    print(f"  {colorize('last error:', Fore.CYAN)} {record['last_error']}")
    print(f"  {colorize('failed:', Fore.CYAN)} {record['first_failed_at']} .. {record['last_failed_at']}")
    if verbose:
        print(colorize("  event:", Fore.CYAN))
        print_json(record["event"])


async def cmd_status(args):
    """Show health and statistics."""
    response = await _request(args, "GET", "/health")
    if response.status_code != 200:
        return print_error(response)
    health = response.json()

    status = health["status"]
    print(colorize("\nStatus:", Style.BRIGHT), colorize(status, STATE_COLORS.get(status, "")))

    print(colorize("\nConsumers:", Style.BRIGHT))
    for name, stats in health["consumers"].items():
        running = colorize("running", Fore.GREEN) if stats.get("running") else colorize("stopped", Fore.RED)
        print(
            f"  {name}: {running} processed={stats.get('processed', 0)} "
            f"dead_lettered={stats.get('dead_lettered', 0)} cursor={stats.get('cursor')}"
        )
        if stats.get("failure"):
            print(f"    {colorize('failure:', Fore.RED)} {stats['failure']}")

    pending = health["dead_letters"].get("pending", 0)
    color = Fore.RED if pending else Fore.GREEN
    print(colorize("\nDead letters pending:", Style.BRIGHT), colorize(str(pending), color))

    if args.verbose:
        response = await _request(args, "GET", "/stats")
        if response.status_code == 200:
            print(colorize("\nStats:", Style.BRIGHT))
            print_json(response.json())
    return 0


async def cmd_dead_letters(args):
    """List dead letters, or show one."""
    if args.event_id:
        response = await _request(args, "GET", f"/dead-letters/{args.event_id}")
        if response.status_code != 200:
            return print_error(response)
        print_dead_letter(response.json(), verbose=True)
        return 0

    params = {}
    if args.entity_type:
        params["entity_type"] = args.entity_type
    if args.limit:
        params["limit"] = args.limit
    response = await _request(args, "GET", "/dead-letters", params=params)
    if response.status_code != 200:
        return print_error(response)

    data = response.json()
    print(colorize(f"\n{data['count']} dead letter(s)", Style.BRIGHT))
    for record in data["dead_letters"]:
        print_dead_letter(record, verbose=args.verbose)
    return 0


async def cmd_replay(args):
    """Replay a dead-lettered event."""
    response = await _request(args, "POST", f"/dead-letters/{args.event_id}/replay")
    if response.status_code != 200:
        return print_error(response)
    result = response.json()
    state = result["state"]
    print(
        colorize("Replay:", Style.BRIGHT),
        colorize(state, STATE_COLORS.get(state, "")),
        f"after {result['attempts']} attempt(s)",
    )
    if result.get("error"):
        print(f"  {colorize('error:', Fore.RED)} {result['error']}")
    return 0 if result["resolved"] else 2


async def cmd_purge(args):
    """Drop a dead letter without replaying it."""
    response = await _request(args, "DELETE", f"/dead-letters/{args.event_id}")
    if response.status_code != 200:
        return print_error(response)
    print(colorize("Purged", Fore.GREEN), args.event_id)
    return 0


async def cmd_resync(args):
    """Reconcile the legacy platform with the authority for one entity type."""
    params = {"allow_empty": "true"} if args.allow_empty else None
    response = await _request(args, "POST", f"/resync/{args.entity_type}", params=params)
    if response.status_code != 200:
        return print_error(response)
    summary = response.json()
    print(colorize(f"\nResync {summary['run_id']} ({summary['entity_type']}):", Style.BRIGHT))
    for key in ("authority", "legacy", "updated", "deleted", "acknowledged", "dead_lettered", "skipped"):
        print(f"  {colorize(key + ':', Fore.CYAN)} {summary.get(key, 0)}")
    return 0 if not summary.get("dead_lettered") else 2


async def cmd_classify(args):
    """Show how a request would be routed."""
    response = await _request(args, "GET", "/routing/classify", params={"method": args.method, "url": args.url})
    if response.status_code != 200:
        return print_error(response)
    match = response.json()
    classification = match["classification"]
    print(
        f"{match['method']} {match['path']} -> "
        f"{colorize(classification, STATE_COLORS.get(classification, ''))}"
    )
    if match.get("operation"):
        print(f"  {colorize('operation:', Fore.CYAN)} {match['operation']} ({match['entity']})")
    if match.get("path_params"):
        print(f"  {colorize('path params:', Fore.CYAN)} {match['path_params']}")
    if match.get("query_params"):
        print(f"  {colorize('query params:', Fore.CYAN)} {match['query_params']}")
    return 0


COMMANDS = {
    "status": cmd_status,
    "dead-letters": cmd_dead_letters,
    "replay": cmd_replay,
    "purge": cmd_purge,
    "resync": cmd_resync,
    "classify": cmd_classify,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="CLI tool for the Sync Bridge",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--base-url",
        default="http://localhost:8060",
        help="Base URL of the sync bridge operator API",
    )
    parser.add_argument("--timeout", type=float, default=130.0, help="Request timeout in seconds")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show full records")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("status", help="Health, consumers and pending dead letters")

    dl_parser = subparsers.add_parser("dead-letters", help="List dead letters or show one")
    dl_parser.add_argument("event_id", nargs="?", help="Show a single record")
    dl_parser.add_argument("--entity-type", choices=["device", "tenant"])
    dl_parser.add_argument("--limit", type=int)

    replay_parser = subparsers.add_parser("replay", help="Replay a dead-lettered event")
    replay_parser.add_argument("event_id")

    purge_parser = subparsers.add_parser("purge", help="Purge a dead letter")
    purge_parser.add_argument("event_id")

    resync_parser = subparsers.add_parser("resync", help="Full resync of one entity type")
    resync_parser.add_argument("entity_type", choices=["device", "tenant"])
    resync_parser.add_argument(
        "--allow-empty",
        action="store_true",
        help="Proceed even if the read model is empty, deleting every legacy entity of the type",
    )

    classify_parser = subparsers.add_parser("classify", help="Classify a request against the routing table")
    classify_parser.add_argument("method")
    classify_parser.add_argument("url")

    return parser


def main(argv: list[str] | None = None):
    colorama_init()
    parser = build_parser()
    args = parser.parse_args(argv)

    command = COMMANDS.get(args.command)
    if command is None:
        parser.print_help()
        return 1

    try:
        return asyncio.run(command(args))
    except httpx.TransportError as e:
        print(colorize(f"Cannot reach {args.base_url}: {e}", Fore.RED), file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main() or 0)
