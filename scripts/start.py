#!/usr/bin/env python3
"""
Production entrypoint: release phase, then gunicorn in place of this process.

The worker timeout is sized from EVIDENCE_PROBE_TIMEOUT_SECONDS so a
request that walks every evidence candidate (all misses, each at the
storage timeout) is not killed halfway through.

Usage:
    python scripts/start.py
"""

from __future__ import annotations

import math
import os
import sys
from collections.abc import Mapping
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Candidates a full public URL reference expands to; a miss downloads each in turn.
_MAX_EVIDENCE_CANDIDATES = 12
_MIN_WORKER_TIMEOUT = 30


def parse_port(value: str | None) -> int:
    raw = (value or "").strip() or "8080"
    try:
        port = int(raw)
    except ValueError:
        raise ValueError(f"Invalid PORT value {raw!r}; must be an integer 1-65535.") from None
    if not 1 <= port <= 65535:
        raise ValueError(f"Invalid PORT value {raw!r}; must be an integer 1-65535.")
    return port


def worker_timeout(environ: Mapping[str, str]) -> int:
    try:
        per_lookup = float(environ.get("EVIDENCE_PROBE_TIMEOUT_SECONDS") or 5)
    except ValueError:
        per_lookup = 5.0
    return max(_MIN_WORKER_TIMEOUT, math.ceil(per_lookup * _MAX_EVIDENCE_CANDIDATES) + 10)


def gunicorn_argv(environ: Mapping[str, str]) -> list[str]:
    port = parse_port(environ.get("PORT"))
    workers = (environ.get("WEB_CONCURRENCY") or "2").strip()
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", workers,
        "--timeout", str(worker_timeout(environ)),
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def main() -> None:
    try:
        argv = gunicorn_argv(os.environ)
    except ValueError as e:
        print(f"ERROR: {e}", flush=True)
        sys.exit(1)

    from scripts.release import ReleaseError, run_release

    try:
        run_release()
    except ReleaseError as e:
        print(f"Release aborted: {e}", flush=True)
        sys.exit(1)

    print(f"Starting {' '.join(argv[1:6])}", flush=True)
    os.execvp(argv[0], argv)


if __name__ == "__main__":
    main()
