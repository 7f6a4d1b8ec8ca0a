"""Retention cleanup for login sessions.

Deletes rows from `sessions` that can no longer authenticate anyone:
- revoked sessions (logged out)
- sessions older than the session lifetime (OAS_SESSION_DAYS, 14 by default)

Intended to be run from an OS scheduler (systemd timer / cron) or by hand.

Run:
  python3 -m oas_mvp.ops.cleanup_sessions --db oas_mvp/data/oas.db --days 14

Exit codes:
  0 success
  2 DB missing
"""

from __future__ import annotations

import argparse
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path


def _parse_iso(s: str) -> datetime | None:
    s = (s or "").strip()
    if not s:
        return None
    # sqlite stores ISO like 2026-02-08T14:06:00+00:00; tolerate Z
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class Result:
    scanned: int = 0
    revoked: int = 0
    expired: int = 0
    unparseable: int = 0
    db_rows_deleted: int = 0


def cleanup(db_path: Path, days: int, now: datetime | None = None) -> Result:
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    cutoff = now - timedelta(days=days)

    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row

    res = Result()
    doomed: list[str] = []

    rows = conn.execute("SELECT token, created_at, revoked_at FROM sessions ORDER BY created_at ASC").fetchall()
    for r in rows:
        res.scanned += 1

        if r["revoked_at"]:
            res.revoked += 1
            doomed.append(str(r["token"]))
            continue

        created_at = _parse_iso(str(r["created_at"] or ""))
        if not created_at:
            # Leave it for a human to look at.
            res.unparseable += 1
            continue

        if created_at < cutoff:
            res.expired += 1
            doomed.append(str(r["token"]))

    for token in doomed:
        conn.execute("DELETE FROM sessions WHERE token=?", (token,))
        res.db_rows_deleted += 1

    conn.commit()
    conn.close()
    return res


def main(argv: list[str] | None = None) -> None:
    ap = argparse.ArgumentParser(description="Delete revoked and expired login sessions.")
    ap.add_argument("--db", default=os.environ.get("OAS_DB_PATH", "oas_mvp/data/oas.db"))
    ap.add_argument("--days", type=int, default=int(os.environ.get("OAS_SESSION_DAYS", "14")))
    args = ap.parse_args(argv)

    db_path = Path(args.db)
    if not db_path.exists():
        raise SystemExit(2)

    res = cleanup(db_path=db_path, days=args.days)
    print(res)


if __name__ == "__main__":
    main()
