"""Soft-end learning sessions with no activity for a number of days."""
from __future__ import annotations

import argparse
import json
import logging
from datetime import timedelta
from typing import Optional, Sequence

import db
from engines.engagement import EngagementAccumulator

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--days",
        type=int,
        default=5,
        help="End sessions whose last activity is older than this many days (default: 5)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List the sessions that would be ended without changing them",
    )
    return parser


def end_stale_sessions(days: int, *, dry_run: bool = False, accumulator: Optional[EngagementAccumulator] = None) -> dict:
    if days < 0:
        raise ValueError("--days must not be negative")
    cutoff = db.format_timestamp(db.utc_now() - timedelta(days=days))
    stale = db.list_stale_sessions(cutoff)
    ended = []
    if not dry_run:
        engine = accumulator or EngagementAccumulator()
        for session in stale:
            engine.end_session(session["id"])
            ended.append(session["id"])
        logger.info("Ended %d stale session(s) inactive since before %s", len(ended), cutoff)
    return {
        "cutoff": cutoff,
        "dry_run": dry_run,
        "stale": [s["id"] for s in stale],
        "ended": ended,
    }


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.days < 0:
        parser.error("--days must not be negative")
    logging.basicConfig(level=logging.INFO)
    db.init()
    report = end_stale_sessions(args.days, dry_run=args.dry_run)
    print(json.dumps(report, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
