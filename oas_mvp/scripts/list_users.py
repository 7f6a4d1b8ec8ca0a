#!/usr/bin/env python3
"""Print the user table.

Run:
  python3 -m oas_mvp.scripts.list_users [--admins]
"""

from __future__ import annotations

import argparse
import sqlite3

from oas_mvp.app.main import db, init_db


def list_users(admins_only: bool = False) -> list[sqlite3.Row]:
    sql = "SELECT id, username, email, is_admin, is_deleted, created_at FROM users"
    if admins_only:
        sql += " WHERE is_admin=1"
    with db() as conn:
        return conn.execute(sql + " ORDER BY id ASC").fetchall()


def main(argv: list[str] | None = None) -> None:
    ap = argparse.ArgumentParser(description="List users.")
    ap.add_argument("--admins", action="store_true", help="only show admins")
    args = ap.parse_args(argv)

    init_db()
    rows = list_users(admins_only=args.admins)
    for r in rows:
        flags = []
        if r["is_admin"]:
            flags.append("admin")
        if r["is_deleted"]:
            flags.append("deleted")
        print(f"{r['id']:>4}  {r['username']:<20} {r['email']:<32} {','.join(flags)}")
    print(f"{len(rows)} user(s)")


if __name__ == "__main__":
    main()
