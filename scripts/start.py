#!/usr/bin/env python3
"""
Production startup: run the release phase, then replace this process with
gunicorn serving `app.wsgi:app`.

Environment:
  PORT             listen port (default 8080)
  WEB_CONCURRENCY  gunicorn worker processes (default 2)

Each worker process runs its own notification delivery pool
(NOTIFICATION_WORKERS threads), started lazily after fork.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _int_env(name: str, default: int, *, low: int, high: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        value = low - 1
    if not low <= value <= high:
        print(f"ERROR: {name}={raw!r} must be an integer {low}-{high}.", flush=True)
        sys.exit(1)
    return value


def main() -> None:
    port = _int_env("PORT", 8080, low=1, high=65535)
    workers = _int_env("WEB_CONCURRENCY", 2, low=1, high=64)

    from scripts.release import run_release

    try:
        run_release()
    except Exception as e:
        print(f"Release failed: {e}", flush=True)
        sys.exit(1)

    print(f"=== Starting gunicorn on 0.0.0.0:{port} with {workers} workers ===", flush=True)
    # gunicorn becomes PID 1 and receives signals directly.
    os.execvp(
        "gunicorn",
        [
            "gunicorn",
            "app.wsgi:app",
            "--bind", f"0.0.0.0:{port}",
            "--workers", str(workers),
            "--timeout", "60",
            "--preload",
            "--access-logfile", "-",
            "--error-logfile", "-",
        ],
    )


if __name__ == "__main__":
    main()
