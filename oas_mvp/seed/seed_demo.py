"""Seed the local SQLite DB with demo users and example audit workflows.

Local-only data to make the MVP feel usable in demos. Safe to run twice:
users and swarms that already exist (by username / slug) are left alone.

Run:
  python3 -m oas_mvp.seed.seed_demo

Then start the app:
  uvicorn oas_mvp.app.main:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import json
import sqlite3

from oas_mvp.app.layout import process_imported_workflow
from oas_mvp.app.main import DB_PATH, audit, create_user, db, init_db, insert_swarm

DEMO_USERS = [
    # (username, email, password, is_admin)
    ("admin", "admin@example.com", "admin", True),
    ("alice", "alice@example.com", "alice", False),
    ("bob", "bob@example.com", "bob", False),
]


def _step(sid: str, label: str, description: str, instructions: str, outputs: list[str]) -> dict:
    return {
        "id": sid,
        "data": {
            "label": label,
            "description": description,
            "instructions": instructions,
            "outputs": outputs,
        },
    }


def _chain(ids: list[str]) -> list[dict]:
    return [{"source": a, "target": b} for a, b in zip(ids, ids[1:])]


SWARMS = [
    {
        "owner": "alice",
        "category": "planning",
        "name": "IT General Controls Risk Assessment",
        "description": "Scope ITGC testing by mapping in-scope applications to access, change and operations risks.",
        "featured": True,
        "steps": [
            _step("inventory", "Inventory in-scope systems", "List financially relevant applications and their infrastructure.",
                  "Pull the application inventory and tag systems that feed the general ledger.", ["System inventory"]),
            _step("risks", "Map ITGC risks", "Map each system to access, change management and operations risks.",
                  "Use the ITGC risk library; record residual risk per domain.", ["Risk matrix"]),
            _step("controls", "Identify key controls", "Select key controls that address the mapped risks.",
                  "Prefer automated controls where available.", ["Key control list"]),
            _step("plan", "Draft test plan", "Set test approach and sample sizes per control.",
                  "Align sample sizes with the methodology table.", ["ITGC test plan"]),
        ],
    },
    {
        "owner": "alice",
        "category": "fieldwork",
        "name": "User Access Review Testing",
        "description": "Test that periodic user access reviews were performed completely and on time.",
        "featured": False,
        "steps": [
            _step("population", "Obtain review population", "Get the list of access reviews performed in the period.",
                  "Confirm completeness against the review schedule.", ["Review population"]),
            _step("sample", "Select sample", "Pick reviews to test.",
                  "Use random selection; document the seed.", ["Sample selection"]),
            _step("inspect", "Inspect evidence", "Check reviewer sign-off, timeliness and removals.",
                  "Trace a subset of removals to the system.", ["Test workpaper"]),
            _step("exceptions", "Evaluate exceptions", "Assess deviations and their root cause.",
                  "Discuss with control owner before concluding.", ["Exception log"]),
        ],
    },
    {
        "owner": "bob",
        "category": "reporting",
        "name": "Audit Findings Report Drafting",
        "description": "Turn validated exceptions into findings with condition, criteria, cause, effect and recommendation.",
        "featured": True,
        "steps": [
            _step("collect", "Collect validated exceptions", "Gather exceptions agreed with management.",
                  "Only include exceptions with owner acknowledgement.", ["Exception summary"]),
            _step("draft", "Draft findings", "Write each finding in the standard format.",
                  "Rate each finding using the rating scale.", ["Draft findings"]),
            _step("review", "Quality review", "Peer review the draft report.",
                  "Resolve all review notes before release.", ["Review notes"]),
        ],
    },
    {
        "owner": "bob",
        "category": "preplanning",
        "name": "Engagement Kickoff Checklist",
        "description": "Independence confirmations, stakeholder list and document request for a new engagement.",
        "featured": False,
        "steps": [
            _step("independence", "Confirm independence", "Collect independence confirmations from the team.",
                  "Block fieldwork until all confirmations are in.", ["Independence log"]),
            _step("stakeholders", "Identify stakeholders", "List process owners and executive sponsors.",
                  "Confirm with the engagement lead.", ["Stakeholder list"]),
            _step("pbc", "Issue document request", "Send the prepared-by-client list.",
                  "Set due dates two weeks before fieldwork.", ["PBC list"]),
        ],
    },
]


def _ensure_user(conn: sqlite3.Connection, username: str, email: str, password: str, admin: bool) -> int:
    row = conn.execute("SELECT id FROM users WHERE username=?", (username,)).fetchone()
    if row:
        return int(row["id"])
    return create_user(conn, username, email, password, name=username.capitalize(), is_admin=admin, actor="seed")


def main() -> None:
    init_db()

    created = 0
    with db() as conn:
        user_ids = {u: _ensure_user(conn, u, e, pw, admin) for u, e, pw, admin in DEMO_USERS}

        for s in SWARMS:
            slug = s["name"].lower().replace(" ", "-")
            if conn.execute("SELECT 1 FROM swarms WHERE slug=?", (slug,)).fetchone():
                continue

            ids = [st["id"] for st in s["steps"]]
            graph = process_imported_workflow(s["steps"], _chain(ids))
            swarm_id = insert_swarm(
                conn,
                user_id=user_ids[s["owner"]],
                name=s["name"],
                slug=slug,
                description=s["description"],
                nodes_json=json.dumps(graph["nodes"], ensure_ascii=False),
                edges_json=json.dumps(graph["edges"], ensure_ascii=False),
                metadata_json=json.dumps({"phase": s["category"]}, ensure_ascii=False),
                category_id=s["category"],
                is_public=True,
            )
            if s["featured"]:
                conn.execute("UPDATE swarms SET is_featured=1 WHERE id=?", (swarm_id,))
            audit("swarm", swarm_id, "create", "seed", note="seed_demo", conn=conn)
            created += 1

    print(f"Seeded {created} swarm(s) into {DB_PATH}")
    print("Demo logins: " + ", ".join(f"{u}/{pw}" for u, _, pw, _ in DEMO_USERS))


if __name__ == "__main__":
    main()
