"""Diagnose session-count discrepancies in the analytics store.

Usage:
  set -a
  source backend/.env
  set +a
  python3 backend/diagnose_sessions.py [days]
"""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path


ENV_PATH = Path(__file__).resolve().parent / ".env"
DEFAULT_DAYS = 30


def load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if value.startswith(("'", '"')) and value.endswith(("'", '"')) and len(value) >= 2:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def parse_days(argv: list[str]) -> int:
    if not argv:
        return DEFAULT_DAYS
    try:
        days = int(argv[0])
    except ValueError:
        return DEFAULT_DAYS
    return days if days >= 1 else DEFAULT_DAYS


async def run(days: int) -> list[str]:
    # Settings are read at import time, after the env file is loaded.
    from leadfunnel.db import AsyncSessionLocal, engine
    from leadfunnel.funnel.diagnostics import diagnose_sessions, format_report
    from leadfunnel.funnel.timewindow import window_start

    try:
        async with AsyncSessionLocal() as db:
            report = await diagnose_sessions(db, window_start(days))
    finally:
        await engine.dispose()
    return [f"Store: {engine.url.render_as_string(hide_password=True)}", ""] + format_report(report)


def main(argv: list[str] | None = None) -> int:
    load_env_file(ENV_PATH)
    days = parse_days(sys.argv[1:] if argv is None else argv)
    try:
        lines = asyncio.run(run(days))
    except Exception as exc:
        print(f"Diagnostics failed: {exc}")
        return 1
    for line in lines:
        print(line)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
