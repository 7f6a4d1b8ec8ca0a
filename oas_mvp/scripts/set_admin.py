#!/usr/bin/env python3
"""Grant or revoke admin rights for a user.

Run:
  python3 -m oas_mvp.scripts.set_admin alice@example.com
  python3 -m oas_mvp.scripts.set_admin alice@example.com --revoke

Exit codes:
  0 updated
  1 no such user
"""

from __future__ import annotations

import argparse
import sys

from oas_mvp.app.main import audit, db, init_db


def set_admin(email_or_username: str, admin: bool = True) -> bool:
    key = (email_or_username or "").strip()
    with db() as conn:
        row = conn.execute(
            "SELECT id, username FROM users WHERE (email=? OR username=?) AND is_deleted=0",
            (key.lower(), key),
        ).fetchone()
        if not row:
            return False
        conn.execute("UPDATE users SET is_admin=? WHERE id=?", (1 if admin else 0, row["id"]))
        audit("user", str(row["id"]), "grant_admin" if admin else "revoke_admin", "cli", conn=conn)
    return True


def main(argv: list[str] | None = None) -> None:
    ap = argparse.ArgumentParser(description="Grant or revoke admin rights.")
    ap.add_argument("email", help="email address or username")
    ap.add_argument("--revoke", action="store_true", help="remove admin rights instead of granting them")
    args = ap.parse_args(argv)

    init_db()
    ok = set_admin(args.email, admin=not args.revoke)
    if not ok:
        print(f"❌ No user matches {args.email!r}")
        sys.exit(1)

    print(f"✅ {'Revoked' if args.revoke else 'Granted'} admin for {args.email}")
    sys.exit(0)


if __name__ == "__main__":
    main()
