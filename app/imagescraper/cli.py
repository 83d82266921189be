"""Command line entry point: run a session headlessly and manage local stores."""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Sequence

from . import config
from .config_validation import validate_runtime_config
from .delivery import DeadLetterStore, DeliveryClient
from .fingerprints import FingerprintStore
from .orchestrator import SessionManager
from .session import SessionStatus
from .settings import Settings, load_settings
from .utils import ensure_dirs, log_line


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Product image scraper")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Scrape a list of item identifiers and deliver the results.")
    run.add_argument("items", nargs="*", help="Item identifiers (or use --file).")
    run.add_argument("--file", type=Path, default=None, help="Read identifiers from a text file.")
    run.add_argument("--webhook-url", default=None)
    run.add_argument("--zone", default=None, help="Delivery zone (postal code).")
    run.add_argument("--delay-ms", type=int, default=None)
    run.add_argument("--export", choices=["csv", "json"], default=None)
    run.add_argument(
        "--wait-delivery",
        type=float,
        default=120.0,
        help="Seconds to wait for the webhook queue to drain before exiting.",
    )

    dead = sub.add_parser("dead-letters", help="Inspect or replay failed webhook deliveries.")
    dead_sub = dead.add_subparsers(dest="action", required=True)
    dead_sub.add_parser("list")
    retry = dead_sub.add_parser("retry")
    retry.add_argument("id", type=int)
    dead_sub.add_parser("clear")

    fingerprints = sub.add_parser("fingerprints", help="Manage processed item fingerprints.")
    fingerprints_sub = fingerprints.add_subparsers(dest="action", required=True)
    fingerprints_sub.add_parser("count")
    fingerprints_sub.add_parser("clear")

    return parser


def _read_items(args: argparse.Namespace) -> str:
    chunks = list(args.items or [])
    if args.file is not None:
        chunks.append(args.file.read_text(encoding="utf-8"))
    return "\n".join(chunks)


def _run(args: argparse.Namespace) -> int:
    overrides = {
        "webhook_url": args.webhook_url,
        "target_zone": args.zone,
        "inter_item_delay_ms": args.delay_ms,
    }
    settings = Settings.from_dict(
        {key: value for key, value in overrides.items() if value is not None},
        base=load_settings(),
    )

    manager = SessionManager()
    response = manager.start_session(_read_items(args), settings)
    if not response.get("success"):
        log_line(f"[CLI] {response.get('error')}")
        return 2

    session_id = response["sessionId"]
    log_line(
        f"[CLI] Session {session_id}: {response['totalItems']} item(s), "
        f"{response['skippedItems']} skipped"
    )
    manager.wait_for_session(session_id)

    if args.export:
        exported = manager.export_results(args.export)
        if exported.get("success"):
            log_line(f"[CLI] Exported {config.EXPORTS_DIR / exported['filename']}")
        else:
            log_line(f"[CLI] Export skipped: {exported.get('error')}")

    if not manager.delivery.wait_idle(args.wait_delivery):
        log_line("[CLI] Webhook queue still busy; pending deliveries are lost on exit")
        return 1

    session = manager.last_session
    return 0 if session is not None and session.status == SessionStatus.COMPLETE else 1


def _dead_letters(args: argparse.Namespace) -> int:
    store = DeadLetterStore()
    if args.action == "list":
        print(json.dumps(store.list(), indent=2))
        return 0
    if args.action == "clear":
        removed = store.clear()
        print(f"Removed {removed} dead letter(s)")
        return 0

    result = DeliveryClient(store).retry_dead_letter(args.id)
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.success else 1


def _fingerprints(args: argparse.Namespace) -> int:
    store = FingerprintStore()
    if args.action == "clear":
        store.clear()
        print("Fingerprints cleared")
    else:
        print(len(store))
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    ensure_dirs()
    try:
        validate_runtime_config("cli")
    except ValueError as exc:
        parser.error(str(exc))

    if args.command == "run":
        return _run(args)
    if args.command == "dead-letters":
        return _dead_letters(args)
    return _fingerprints(args)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())


__all__ = ["main"]
