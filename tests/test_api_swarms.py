from __future__ import annotations

import io
import json

from docx import Document
from fastapi.testclient import TestClient

from conftest import create_swarm, login
from oas_mvp.app import main
from oas_mvp.app.ingest import parse_workflow


def test_create_swarm_generates_unique_slugs(client: TestClient, alice: int) -> None:
    first = create_swarm(client, "Cash Walkthrough")
    second = create_swarm(client, "Cash Walkthrough")
    third = create_swarm(client, "Cash Walkthrough")

    assert first["slug"] == "cash-walkthrough"
    assert second["slug"] == "cash-walkthrough-1"
    assert third["slug"] == "cash-walkthrough-2"
    assert first["publishedAt"] is not None
    assert first["category"]["name"] == "Fieldwork"
    assert first["userId"] == str(alice)


def test_private_swarm_has_no_published_at(client: TestClient, alice: int) -> None:
    s = create_swarm(client, "Draft", is_public=False)
    assert s["publishedAt"] is None
    assert s["is_public"] is False


def test_create_validation_errors(client: TestClient, alice: int) -> None:
    r = client.post("/api/swarms", json={"name": "", "slug": "x"})
    assert r.status_code == 400
    body = r.json()
    assert body["detail"] == "Validation error"
    assert body["errors"]

    r = client.post(
        "/api/swarms",
        json={"name": "X", "slug": "x", "description": "d", "categoryId": "nope"},
    )
    assert r.status_code == 400
    assert "Unknown category" in r.json()["detail"]

    r = client.post(
        "/api/swarms",
        json={"name": "X", "slug": "x", "description": "d", "categoryId": "planning", "workflowNodes": "{}"},
    )
    assert r.status_code == 400


def test_listing_only_shows_public_unless_own_profile(client: TestClient, alice: int, make_user) -> None:
    create_swarm(client, "Public One")
    create_swarm(client, "Secret One", is_public=False)

    listing = client.get("/api/swarms").json()
    assert [s["name"] for s in listing["swarms"]] == ["Public One"]
    assert listing["total"] == 1
    assert listing["hasMore"] is False

    own = client.get("/api/swarms", params={"userId": "alice"}).json()
    assert {s["name"] for s in own["swarms"]} == {"Public One", "Secret One"}

    make_user("bob")
    with TestClient(main.app) as bob:
        login(bob, "bob")
        theirs = bob.get("/api/swarms", params={"userId": str(alice)}).json()
        assert [s["name"] for s in theirs["swarms"]] == ["Public One"]


def test_private_swarm_visibility(client: TestClient, alice: int, make_user) -> None:
    secret = create_swarm(client, "Secret", is_public=False)
    assert client.get(f"/api/swarms/{secret['slug']}").status_code == 200

    with TestClient(main.app) as anon:
        assert anon.get(f"/api/swarms/{secret['id']}").status_code == 404

    make_user("bob")
    with TestClient(main.app) as bob:
        login(bob, "bob")
        assert bob.get(f"/api/swarms/{secret['id']}").status_code == 404


def test_listing_filters_and_pagination(client: TestClient, alice: int) -> None:
    create_swarm(client, "Inventory Count", categoryId="fieldwork")
    create_swarm(client, "Risk Assessment", categoryId="planning")
    create_swarm(client, "Report Draft 100%", categoryId="reporting")

    by_cat = client.get("/api/swarms", params={"categoryId": "planning"}).json()
    assert [s["name"] for s in by_cat["swarms"]] == ["Risk Assessment"]

    by_cats = client.get("/api/swarms", params={"categoryIds": "planning,reporting"}).json()
    assert by_cats["total"] == 2

    pct = client.get("/api/swarms", params={"search": "100%"}).json()
    assert [s["name"] for s in pct["swarms"]] == ["Report Draft 100%"]

    in_nodes = client.get("/api/swarms", params={"search": "Start"}).json()
    assert in_nodes["total"] == 3

    page = client.get("/api/swarms", params={"limit": 2, "offset": 0}).json()
    assert len(page["swarms"]) == 2
    assert page["hasMore"] is True
    rest = client.get("/api/swarms", params={"limit": 2, "offset": 2}).json()
    assert len(rest["swarms"]) == 1
    assert rest["hasMore"] is False


def test_sort_by_popular_and_rating(client: TestClient, alice: int) -> None:
    a = create_swarm(client, "A")
    b = create_swarm(client, "B")
    client.post("/api/favorites", json={"swarmId": b["id"]})
    client.post("/api/ratings", json={"swarmId": a["id"], "rating": 5})

    popular = client.get("/api/swarms", params={"sortBy": "popular"}).json()
    assert popular["swarms"][0]["name"] == "B"
    assert popular["swarms"][0]["isFavorited"] is True
    assert popular["swarms"][1]["isFavorited"] is False

    rated = client.get("/api/swarms", params={"sortBy": "rating"}).json()
    assert rated["swarms"][0]["name"] == "A"

    assert client.get("/api/swarms", params={"sortBy": "bogus"}).status_code == 400


def test_patch_sets_published_at_once(client: TestClient, alice: int) -> None:
    s = create_swarm(client, "Later", is_public=False)

    r = client.patch(f"/api/swarms/{s['id']}", json={"is_public": True})
    assert r.status_code == 200
    published = r.json()["publishedAt"]
    assert published is not None

    client.patch(f"/api/swarms/{s['id']}", json={"is_public": False})
    again = client.patch(f"/api/swarms/{s['id']}", json={"is_public": True, "name": "Renamed"}).json()
    assert again["publishedAt"] == published
    assert again["name"] == "Renamed"


def test_patch_and_delete_require_owner(client: TestClient, alice: int, make_user) -> None:
    s = create_swarm(client, "Mine")
    make_user("bob")
    with TestClient(main.app) as bob:
        login(bob, "bob")
        assert bob.patch(f"/api/swarms/{s['id']}", json={"name": "Stolen"}).status_code == 403
        assert bob.delete(f"/api/swarms/{s['id']}").status_code == 403

    assert client.patch(f"/api/swarms/{s['id']}", json={"is_featured": True}).status_code == 403


def test_admin_can_edit_any_swarm(client: TestClient, alice: int, admin_client: TestClient) -> None:
    s = create_swarm(client, "Mine")
    r = admin_client.patch(f"/api/swarms/{s['id']}", json={"is_featured": True})
    assert r.status_code == 200
    assert r.json()["is_featured"] is True


def test_soft_delete_hides_swarm(client: TestClient, alice: int) -> None:
    s = create_swarm(client, "Gone")
    assert client.delete(f"/api/swarms/{s['id']}").json() == {"success": True}
    assert client.get(f"/api/swarms/{s['id']}").status_code == 404
    assert client.get("/api/swarms").json()["total"] == 0

    with main.db() as conn:
        row = conn.execute("SELECT is_deleted FROM swarms WHERE id=?", (s["id"],)).fetchone()
    assert row["is_deleted"] == 1


def test_swarms_of_deleted_users_are_hidden(client: TestClient, alice: int) -> None:
    create_swarm(client, "Orphan")
    with main.db() as conn:
        conn.execute("UPDATE users SET is_deleted=1 WHERE id=?", (alice,))
    assert client.get("/api/swarms").json()["total"] == 0


def test_export_json_round_trips_through_the_parser(client: TestClient, alice: int) -> None:
    s = create_swarm(client, "Cash Walkthrough", workflowMetadata='{"phase": "fieldwork"}')

    r = client.get(f"/api/swarms/{s['id']}/export.json")
    assert r.status_code == 200
    assert "cash-walkthrough-workflow.json" in r.headers["content-disposition"]

    envelope = r.json()
    assert envelope["version"] == "1.0"
    wf = envelope["data"]["workflows"][0]
    assert wf["name"] == "Fieldwork: Cash Walkthrough"
    assert wf["diagramJson"]["metadata"] == {"phase": "fieldwork"}

    parsed = parse_workflow(r.content)
    assert parsed.name == "Fieldwork: Cash Walkthrough"
    assert parsed.raw_nodes == json.loads(s["workflowNodes"])

    assert client.get(f"/api/swarms/{s['id']}").json()["downloads_count"] == 1


def test_export_requires_login(client: TestClient, alice: int) -> None:
    s = create_swarm(client, "Cash Walkthrough")
    with TestClient(main.app) as anon:
        assert anon.get(f"/api/swarms/{s['id']}/export.json").status_code == 401


def test_export_docx(client: TestClient, alice: int) -> None:
    nodes = [
        {"id": "b", "position": {"x": 400, "y": 0}, "data": {"label": "Second", "outputs": ["Memo"]}},
        {"id": "a", "position": {"x": 0, "y": 0}, "data": {"label": "First", "instructions": "Do it"}},
    ]
    s = create_swarm(client, "Handout", workflowNodes=json.dumps(nodes))

    r = client.get(f"/swarms/{s['slug']}/export.docx")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("application/vnd.openxmlformats")

    doc = Document(io.BytesIO(r.content))
    assert doc.paragraphs[0].text == "Handout"
    rows = [[c.text for c in row.cells] for row in doc.tables[0].rows]
    assert rows[1][0] == "1. First"
    assert rows[1][2] == "Do it"
    assert rows[2][0] == "2. Second"
    assert rows[2][3] == "Memo"


def test_views_are_batched(client: TestClient, alice: int) -> None:
    s = create_swarm(client, "Viewed")
    client.get(f"/api/swarms/{s['id']}")
    client.get(f"/api/swarms/{s['id']}")
    assert main.view_counts.pending() == {s["id"]: 2}

    with main.db() as conn:
        main.view_counts.flush(conn)
    assert client.get(f"/api/swarms/{s['id']}").json()["views_count"] == 2


def test_categories_include_counts_and_colors(client: TestClient, alice: int) -> None:
    cats = {c["slug"]: c for c in client.get("/api/categories").json()}
    assert set(cats) == {"preplanning", "planning", "fieldwork", "reporting", "other"}
    assert cats["fieldwork"]["swarmCount"] == 0
    assert cats["fieldwork"]["color"] == "bg-amber-100 text-amber-700 border-amber-200"

    create_swarm(client, "Counted")
    create_swarm(client, "Hidden", is_public=False)
    cats = {c["slug"]: c for c in client.get("/api/categories").json()}
    assert cats["fieldwork"]["swarmCount"] == 1


def test_category_color_lookup() -> None:
    assert main.category_color("PrePlanning", True) == "bg-purple-100 text-purple-700 border-purple-200"
    assert main.category_color("Unknown", True) == main.CATEGORY_COLORS["Other"]
    assert main.category_color("Planning") == main.UNSELECTED_CATEGORY_STYLE


def test_generate_slug() -> None:
    assert main.generate_slug("  Cash & Bank: Walkthrough!! ") == "cash-bank-walkthrough"
    assert main.generate_slug("***") == ""


def test_html_pages_render(client: TestClient, alice: int) -> None:
    s = create_swarm(client, "Rendered Swarm")
    home = client.get("/")
    assert home.status_code == 200
    assert "Rendered Swarm" in home.text

    page = client.get(f"/swarms/{s['slug']}")
    assert page.status_code == 200
    assert "Start" in page.text

    missing = client.get("/swarms/nope", headers={"accept": "text/html"})
    assert missing.status_code == 404
    assert "Swarm not found" in missing.text
