#!/usr/bin/env python3
"""Re-dispatch notifications for outbox events left pending (idempotent).

Run from cron or by hand after a dispatch outage:
  python scripts/retry_notifications.py --limit 500
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.pms import create_app  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--limit", type=int, default=100, help="Maximum outbox events to process")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s %(message)s")
    app = create_app()
    stats = app.extensions["pms.notifications"].retry_pending(limit=max(1, args.limit))
    print(f"attempted={stats['attempted']} dispatched={stats['dispatched']} failed={stats['failed']}")
    if stats["failed"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
