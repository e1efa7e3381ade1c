#!/usr/bin/env python3
"""CLI utility that prints a patient's health timeline from a running MediTrack server."""
from __future__ import annotations

import argparse
import sys

from meditrack.fetchers import FetchError, RecordFetcher, load_timeline
from meditrack.models import ALL_EVENT_TYPES
from meditrack.timeline import filter_by_type


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Log in, fetch a patient's appointments and history, and print the combined timeline."
    )
    parser.add_argument("patient_id", type=int, help="Patient identifier")
    parser.add_argument(
        "--base-url",
        default="http://127.0.0.1:8000",
        help="FastAPI server base URL (default: %(default)s)",
    )
    parser.add_argument(
        "--username",
        default="admin",
        help="Username for /auth/login (default: %(default)s)",
    )
    parser.add_argument(
        "--password",
        default="changeme",
        help="Password for /auth/login (default: %(default)s)",
    )
    parser.add_argument(
        "--types",
        default=",".join(event_type.value for event_type in ALL_EVENT_TYPES),
        help="Comma separated categories to show (default: all)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=15.0,
        help="HTTP timeout in seconds (default: %(default)s)",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    selected = [part.strip() for part in args.types.split(",") if part.strip()]
    try:
        with RecordFetcher(args.base_url, timeout=args.timeout) as fetcher:
            fetcher.login(args.username, args.password)
            events = filter_by_type(load_timeline(fetcher, args.patient_id), selected)
    except FetchError as exc:
        print(f"❌ {exc}", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"❌ {exc}", file=sys.stderr)
        return 2

    if not events:
        print("No events to show.")
        return 0
    for event in events:
        status = f" [{event.status}]" if event.status else ""
        print(f"{event.date:%Y-%m-%d}  {event.type.value:<11} {event.title}{status}")
        if event.description:
            print(f"{'':24}{event.description}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
